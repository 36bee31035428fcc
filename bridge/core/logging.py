"""
Logging configuration for the migration bridge.

Sets up structured JSON logging for deployed environments and a readable
format for local development.
"""

import json
import logging
import sys
from typing import Any, Dict, Optional

from bridge.core.config import settings

# Attributes every LogRecord carries; anything else arrived via ``extra=``
_RESERVED_ATTRS = set(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime"}

# Keys that must never reach the log output in clear text
_REDACTED_KEYS = {"password", "temporary_password", "temporaryPassword", "token"}


def redact(data: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``data`` with credential values masked."""
    return {
        key: ("***REDACTED***" if key in _REDACTED_KEYS and value else value)
        for key, value in data.items()
    }


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging in production."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON with single-line exception traces."""
        log_data: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            exception_text = self.formatException(record.exc_info)
            log_data["exception"] = exception_text.replace("\n", "\\n")
            exc_type_name: str | None = (
                record.exc_info[0].__name__ if record.exc_info[0] else None
            )
            if exc_type_name:
                log_data["exc_type"] = exc_type_name

        if record.stack_info:
            log_data["stack_info"] = record.stack_info.replace("\n", "\\n")

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS and not key.startswith("_")
        }
        if extra:
            log_data.update(redact(extra))

        return json.dumps(log_data, default=str)


def setup_logging(log_level: Optional[str] = None) -> None:
    """
    Configure logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
                   Defaults to settings.LOG_LEVEL.
    """
    if log_level is None:
        log_level = settings.LOG_LEVEL or ("DEBUG" if settings.DEBUG else "INFO")

    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    formatter: logging.Formatter
    if settings.DEBUG:
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    else:
        formatter = JSONFormatter(datefmt="%Y-%m-%d %H:%M:%S")

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Quieten chatty libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").setLevel(logging.INFO)
    logging.getLogger("sqlalchemy").setLevel(logging.ERROR)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.ERROR)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("boto3").setLevel(logging.WARNING)
    logging.getLogger("passlib").setLevel(logging.ERROR)

    logging.info(f"Logging configured with level: {log_level.upper()}")


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance with the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)
