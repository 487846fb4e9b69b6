"""Logging setup with optional JSON output and workflow context fields."""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional


TEXT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Record attributes lifted to the top level of JSON logs
CONTEXT_FIELDS = ("request_id", "listing_id", "participant_id", "operation_id")

# Noisy third-party loggers capped at WARNING
QUIET_LOGGERS = ("httpx", "httpcore", "urllib3", "sqlalchemy.engine", "alembic")


class JSONFormatter(logging.Formatter):
    """
    Render log records as one JSON object per line.

    Anything passed as ``extra={"extra_data": {...}}`` ends up under ``extra``;
    listing/participant/operation ids set by ``ContextLogger`` are top-level keys.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_data"):
            log_data["extra"] = record.extra_data

        for key in CONTEXT_FIELDS:
            if hasattr(record, key):
                log_data[key] = getattr(record, key)

        return json.dumps(log_data, default=str)


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that stamps every record with fixed context.

    Usage:
        logger = get_context_logger(__name__, listing_id=7)
        logger.info("Cancelling purchase")  # record carries listing_id=7
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple[str, Dict[str, Any]]:
        extra = kwargs.get("extra", {})
        extra.update(self.extra)
        kwargs["extra"] = extra
        return msg, kwargs


def _build_formatter(json_format: bool) -> logging.Formatter:
    if json_format:
        return JSONFormatter()
    return logging.Formatter(TEXT_LOG_FORMAT, DATE_FORMAT)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    json_format: bool = False,
) -> None:
    """
    Configure root logging for the API, CLI, and migrations.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Optional path to a log file.
        json_format: If True, use JSON structured logging.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    for handler in handlers:
        handler.setFormatter(_build_formatter(json_format))

    logging.basicConfig(level=level, handlers=handlers, force=True)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the specified name."""
    return logging.getLogger(name)


def get_context_logger(name: str, **context: Any) -> ContextLogger:
    """
    Get a logger with context that will be included in all log messages.

    Args:
        name: Name of the logger (usually __name__).
        **context: Context key-value pairs, e.g. listing_id or operation_id.

    Returns:
        ContextLogger adapter.
    """
    return ContextLogger(logging.getLogger(name), context)


def log_external_call(
    logger: logging.Logger,
    service: str,
    operation: str,
    success: bool,
    duration_ms: float,
    **extra: Any,
) -> None:
    """
    Log a call to an external collaborator with standard fields.

    Args:
        logger: Logger instance to use.
        service: Collaborator name ("storage", "directory", "messaging").
        operation: Operation performed (e.g., "upload_attachment").
        success: Whether the call succeeded.
        duration_ms: Duration of the call in milliseconds.
        **extra: Additional context to log.
    """
    log_data = {
        "service": service,
        "operation": operation,
        "success": success,
        "duration_ms": round(duration_ms, 2),
        **extra,
    }

    if success:
        logger.info(
            f"External call: {service}.{operation} completed in {duration_ms:.2f}ms",
            extra={"extra_data": log_data},
        )
    else:
        logger.warning(
            f"External call: {service}.{operation} failed after {duration_ms:.2f}ms",
            extra={"extra_data": log_data},
        )


__all__ = [
    "setup_logging",
    "get_logger",
    "get_context_logger",
    "log_external_call",
    "JSONFormatter",
    "ContextLogger",
]
