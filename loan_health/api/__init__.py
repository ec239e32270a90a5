"""
Loan Health API Application Factory

Query API and commands of the loan health core. Runs on port 8091 by default.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from .dependencies import LoanHealthSystem, get_system, set_system
from .loans import router as loans_router
from .repayments import router as repayments_router
from ..config import get_config
from ..logging_config import setup_logging


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Loan Health API",
        description="Microloan repayment health, delinquency, recovery and refinance",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(repayments_router, prefix="/repayments", tags=["Repayments"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "loan_health_api",
            "version": "1.0.0"
        }

    return app


app = create_app()


def run_server(host: str = None, port: int = None, debug: bool = False):
    """Run the API server with settings from the environment"""
    settings = get_config()
    setup_logging(settings.log_level, log_format=settings.log_format, log_file=settings.log_file)
    uvicorn.run(
        "loan_health.api:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=debug,
        log_level="debug" if debug else "info"
    )


__all__ = ["app", "create_app", "run_server", "LoanHealthSystem", "get_system", "set_system"]
