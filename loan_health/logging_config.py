"""
Structured Logging Module

One JSON object per line for every loan health operation. Records may carry
``loan_id``, ``action``, ``correlation_id`` and ``extra`` attributes, attached
through ``log_action``.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional

STRUCTURED_FIELDS = ("correlation_id", "loan_id", "action", "extra")

PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """Renders a record as a single JSON line, omitting unset fields"""

    def format(self, record):
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in STRUCTURED_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "loan_health",
                  log_format: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Attach a single handler to ``logger_name``, replacing any previous one

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        logger_name: Logger to configure
        log_format: "json", or anything else for plain text lines
        log_file: Write to this file instead of stderr
    """
    logger = logging.getLogger(logger_name)
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if log_format == "json" else logging.Formatter(PLAIN_FORMAT))

    logger.addHandler(handler)
    logger.setLevel(level.upper())
    logger.propagate = False
    return logger


def get_logger(name: str = "loan_health") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               loan_id: Optional[str] = None, action: Optional[str] = None,
               correlation_id: Optional[str] = None, extra: Optional[dict] = None):
    """Log ``message`` at ``level`` with whichever structured fields are given"""
    given = {"loan_id": loan_id, "action": action, "correlation_id": correlation_id, "extra": extra}
    logger.log(
        logging.getLevelName(level.upper()),
        message,
        extra={name: value for name, value in given.items() if value}
    )
