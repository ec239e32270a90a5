#!/usr/bin/env python3
"""
Loan Health Core Entry Point

Starts the FastAPI server (port 8091 unless LOAN_HEALTH_API_PORT is set).
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from loan_health.api import run_server
from loan_health.config import get_config


if __name__ == "__main__":
    settings = get_config()
    print("Starting Loan Health Core...")
    print(f"Storage: {settings.database_url}")
    print(f"API available at: http://localhost:{settings.api_port}")
    print(f"Documentation at: http://localhost:{settings.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Loan Health Core...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
