"""JSON logging for the WAL cleaner."""

import json
import logging
import sys
from typing import Any, Dict, Optional

# Attributes every LogRecord carries; anything else came in through ``extra``
_RESERVED_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """Render each record as a single JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        context = getattr(record, "context", None)
        if isinstance(context, dict):
            for key, value in context.items():
                log_obj.setdefault(key, value)

        # Plain ``extra={...}`` keys passed without log_with_context
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and key != "context":
                log_obj.setdefault(key, value)

        if record.exc_info:
            log_obj["error"] = self.formatException(record.exc_info)
            log_obj["error_type"] = record.exc_info[0].__name__ if record.exc_info[0] else None

        # Paths, datetimes and exceptions end up as their str()
        return json.dumps(log_obj, default=str)


def setup_logging(logger_name: str = "walcleaner", level: str = "INFO") -> logging.Logger:
    """
    Configure JSON logging on stdout.

    Args:
        logger_name: Name of the logger
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)
    logger.setLevel(getattr(logging, level.upper()))

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)

    return logger


def log_with_context(
    logger: logging.Logger, level: str, message: str, extra: Optional[Dict[str, Any]] = None
) -> None:
    """
    Log message with structured context fields.

    Args:
        logger: Logger instance
        level: Log level (debug, info, warning, error, ...)
        message: Log message
        extra: Fields merged into the JSON document
    """
    log_method = getattr(logger, level.lower())
    log_method(message, extra={"context": extra or {}})
