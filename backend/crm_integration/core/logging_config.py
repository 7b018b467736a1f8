"""
Structured JSON logging configuration.

Provides:
- JSON formatted logs for easy parsing
- Correlation IDs for request tracking
- Contextual information (contact, task) in sync job logs
"""

import json
import logging
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp


correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

CONTEXT_FIELDS = ("correlation_id", "contact_id", "task_id")

_RESERVED_ATTRS = {
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'message', 'pathname', 'process', 'processName', 'relativeCreated',
    'thread', 'threadName', 'exc_info', 'exc_text', 'stack_info',
    'taskName', *CONTEXT_FIELDS,
}


class JSONFormatter(logging.Formatter):
    """
    Format log records as JSON for structured logging.

    Each log entry includes:
    - timestamp (ISO 8601)
    - level
    - message
    - logger name
    - correlation_id, contact_id, task_id (if available)
    - extra fields
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = getattr(record, "correlation_id", None) or correlation_id_var.get()
        if correlation_id:
            log_entry["correlation_id"] = correlation_id

        for field in ("contact_id", "task_id"):
            if hasattr(record, field):
                log_entry[field] = getattr(record, field)

        log_entry["function"] = record.funcName
        log_entry["module"] = record.module
        log_entry["line"] = record.lineno

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info)
            }

        extra_fields = {
            k: v for k, v in record.__dict__.items()
            if k not in _RESERVED_ATTRS
        }
        if extra_fields:
            log_entry["extra"] = extra_fields

        return json.dumps(log_entry, default=str)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add correlation IDs to requests.

    Reuses an incoming X-Correlation-ID header or generates a new one, stores
    it on the request state and in a context variable so every log line
    emitted while handling the request carries it.
    """

    def __init__(self, app: ASGIApp):
        super().__init__(app)

    async def dispatch(self, request: Request, call_next: Any) -> Any:
        correlation_id = request.headers.get("X-Correlation-ID") or str(uuid4())
        request.state.correlation_id = correlation_id
        token = correlation_id_var.set(correlation_id)

        try:
            response = await call_next(request)
        finally:
            correlation_id_var.reset(token)

        response.headers["X-Correlation-ID"] = correlation_id
        return response


def setup_structured_logging(log_level: str = "INFO") -> None:
    """
    Configure structured JSON logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    formatter = JSONFormatter()

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(formatter)
    root_logger.addHandler(json_handler)

    # Silence noisy loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.info("Structured JSON logging configured")


def get_logger_with_context(
    name: str,
    correlation_id: Optional[str] = None,
    contact_id: Optional[int] = None,
    task_id: Optional[int] = None,
) -> logging.LoggerAdapter:
    """
    Get a logger with contextual information.

    Args:
        name: Logger name
        correlation_id: Correlation ID for request tracking
        contact_id: Contact being processed
        task_id: Background task being executed

    Returns:
        LoggerAdapter with context
    """
    logger = logging.getLogger(name)

    extra: Dict[str, Any] = {}
    if correlation_id:
        extra["correlation_id"] = correlation_id
    if contact_id is not None:
        extra["contact_id"] = contact_id
    if task_id is not None:
        extra["task_id"] = task_id

    return logging.LoggerAdapter(logger, extra)
