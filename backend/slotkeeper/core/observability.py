"""
Observability Middleware and Utilities

Provides:
- Correlation ID tracking across requests and background jobs
- Logging configuration (human-readable in debug, JSON lines otherwise)
- Request/response logging

Every HTTP request gets a correlation ID taken from the X-Correlation-ID
header or generated; background jobs use their job ID. The ID is attached
to every log record by ``CorrelationIdFilter``.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from slotkeeper.core.config import settings


# Context variable for correlation ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

logger = logging.getLogger("slotkeeper.requests")

# Structured context keys copied into JSON log lines when present
CONTEXT_FIELDS = ("tenant_id", "slot_id", "entry_id", "job_id", "job_type", "notification_id")


def get_correlation_id() -> Optional[str]:
    """Get current correlation ID from context."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str]):
    """Set correlation ID in context. Returns a token for ``reset_correlation_id``."""
    return correlation_id_var.set(correlation_id)


def reset_correlation_id(token) -> None:
    correlation_id_var.reset(token)


class CorrelationIdFilter(logging.Filter):
    """Attach the current correlation ID to every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id() or "-"
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record):
        payload = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
            "correlation_id": getattr(record, "correlation_id", "-"),
        }
        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(level: Optional[str] = None, debug: Optional[bool] = None) -> None:
    """Configure the root logger - JSON format in production, human-readable in dev."""
    level = level or settings.log_level
    debug = settings.debug if debug is None else debug

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level))
    root_logger.handlers.clear()

    if debug:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - [%(correlation_id)s] %(message)s"
        ))
    else:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JSONFormatter())

    handler.addFilter(CorrelationIdFilter())
    root_logger.addHandler(handler)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add correlation IDs to requests.

    Extracts correlation ID from X-Correlation-ID header or generates new one.
    Adds correlation ID to response headers.
    """

    HEADER_NAME = "X-Correlation-ID"

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not settings.correlation_ids_enabled:
            return await call_next(request)

        correlation_id = request.headers.get(self.HEADER_NAME) or str(uuid.uuid4())
        token = set_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers[self.HEADER_NAME] = correlation_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs request method, path, status and timing."""

    # Paths to exclude from logging
    EXCLUDED_PATHS = {"/health", "/health/ready", "/metrics", "/favicon.ico"}

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.EXCLUDED_PATHS:
            return await call_next(request)

        start_time = time.time()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.time() - start_time) * 1000
            logger.exception(
                f"{request.method} {request.url.path} failed after {duration_ms:.2f}ms"
            )
            raise

        duration_ms = (time.time() - start_time) * 1000
        log_level = logging.WARNING if response.status_code >= 400 else logging.INFO
        logger.log(
            log_level,
            f"{request.method} {request.url.path} completed {response.status_code} in {duration_ms:.2f}ms",
        )
        return response
