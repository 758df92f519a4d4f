"""Structured logging configuration."""
import logging
import json
import sys
from datetime import datetime, timezone
from typing import Any

from intranet.core.config import settings


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Add context fields if present
        if hasattr(record, "context"):
            log_data.update(record.context)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class ContextFormatter(logging.Formatter):
    """Human-readable formatter that appends key=value context."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = getattr(record, "context", None)
        if context:
            pairs = " ".join(f"{k}={v}" for k, v in context.items())
            line = f"{line} | {pairs}"
        return line


class StructuredLogger:
    """
    Structured logger wrapper for consistent logging.

    Keyword arguments passed to the level methods are attached to the record
    as context and rendered by the configured formatter.
    """

    def __init__(self, name: str, json_format: bool = False):
        """Initialize the logger."""
        self.logger = logging.getLogger(name)
        self._setup_handler(json_format)

    def _setup_handler(self, json_format: bool) -> None:
        """Set up the log handler with appropriate formatter."""
        if self.logger.handlers:
            return  # Already configured

        handler = logging.StreamHandler(sys.stdout)

        if json_format:
            handler.setFormatter(JSONFormatter())
        else:
            handler.setFormatter(
                ContextFormatter(
                    "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                    datefmt="%Y-%m-%d %H:%M:%S",
                )
            )

        self.logger.addHandler(handler)
        self.logger.setLevel(settings.LOG_LEVEL.upper())

    def _log(self, level: int, message: str, exc_info: bool = False, **context: Any) -> None:
        """Log with context."""
        extra = {"context": context} if context else None
        self.logger.log(level, message, exc_info=exc_info, extra=extra)

    def info(self, message: str, **context: Any) -> None:
        """Log info level message."""
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        """Log warning level message."""
        self._log(logging.WARNING, message, **context)

    def error(self, message: str, **context: Any) -> None:
        """Log error level message."""
        self._log(logging.ERROR, message, **context)

    def debug(self, message: str, **context: Any) -> None:
        """Log debug level message."""
        self._log(logging.DEBUG, message, **context)

    def exception(self, message: str, **context: Any) -> None:
        """Log exception with traceback."""
        self._log(logging.ERROR, message, exc_info=True, **context)


def get_logger(name: str, json_format: bool = None) -> StructuredLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (typically __name__)
        json_format: If True, output JSON formatted logs (defaults to LOG_JSON)

    Returns:
        StructuredLogger instance
    """
    if json_format is None:
        json_format = settings.LOG_JSON
    return StructuredLogger(name, json_format)


# Default application logger
logger = get_logger("intranet-expenses")
