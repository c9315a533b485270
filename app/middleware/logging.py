"""
Structured Logging Middleware

Provides JSON-formatted request/response logging for observability.
Every request is tagged with a correlation id, taken from the
``x-correlation-id`` header the bridge sends or generated here.
"""

import json
import logging
import re
import time
import uuid
from collections.abc import Callable
from contextvars import ContextVar
from datetime import datetime, timezone

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

CORRELATION_HEADER = "x-correlation-id"

# Tenant-scoped routes: /tenants/{id}/... and /metrics/tenant/{id}
TENANT_PATH = re.compile(r"^/(?:tenants|metrics/tenant)/([^/]+)")

# Context variable for the correlation id (task-local)
correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")

EXTRA_FIELDS = (
    "tenant_id",
    "subject",
    "event",
    "method",
    "path",
    "status_code",
    "duration_ms",
    "client_ip",
    "error_code",
    "reason",
)


class RequestIdFilter(logging.Filter):
    """Logging filter to add the correlation id to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get("")
        return True


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs logs in a format suitable for log aggregation systems
    like ELK Stack, Loki, or CloudWatch.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", ""),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key in EXTRA_FIELDS:
            if hasattr(record, key):
                log_data[key] = getattr(record, key)

        return json.dumps(log_data, default=str)


def client_ip_of(request: Request) -> str:
    client_ip = request.headers.get(
        "X-Forwarded-For", request.headers.get("X-Real-IP", request.client.host if request.client else "unknown")
    )
    if client_ip and "," in client_ip:
        client_ip = client_ip.split(",")[0].strip()
    return client_ip


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware for structured request/response logging.

    Features:
    - Correlation id for tracing (echoed on the response)
    - Request/response timing
    - Client IP tracking
    """

    def __init__(self, app: ASGIApp, logger_name: str = "control_plane.access"):
        super().__init__(app)
        self.logger = logging.getLogger(logger_name)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        correlation_id_var.set(correlation_id)
        request.state.correlation_id = correlation_id

        start_time = time.perf_counter()
        client_ip = client_ip_of(request)

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            self._log_request(request, 500, duration_ms, client_ip, error=str(e))
            raise

        duration_ms = (time.perf_counter() - start_time) * 1000
        response.headers[CORRELATION_HEADER] = correlation_id
        self._log_request(request, response.status_code, duration_ms, client_ip)
        return response

    def _log_request(
        self,
        request: Request,
        status_code: int,
        duration_ms: float,
        client_ip: str,
        error: str | None = None,
    ) -> None:
        """Log the request with structured data."""
        # Skip probe endpoints to reduce noise
        if request.url.path.startswith("/health") or request.url.path == "/metrics":
            return

        if status_code >= 500:
            log_level = logging.ERROR
        elif status_code >= 400:
            log_level = logging.WARNING
        else:
            log_level = logging.INFO

        extra = {
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "duration_ms": round(duration_ms, 2),
            "client_ip": client_ip,
        }

        principal = getattr(request.state, "principal", None)
        if principal is not None:
            extra["subject"] = principal.subject
        match = TENANT_PATH.match(request.url.path)
        if match:
            extra["tenant_id"] = match.group(1)

        message = f"{request.method} {request.url.path} - {status_code} ({duration_ms:.2f}ms)"
        if error:
            message += f" - Error: {error}"

        self.logger.log(log_level, message, extra=extra)


def setup_structured_logging(
    log_level: str = "INFO",
    json_format: bool = True,
    log_file: str | None = None,
) -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_format: Use JSON formatter (True for production)
        log_file: Optional file path for log output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper()))
    root_logger.handlers.clear()

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()

    if json_format:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - [%(correlation_id)s] %(message)s")
        )

    handler.addFilter(RequestIdFilter())
    root_logger.addHandler(handler)

    loggers_config = {
        "app": log_level,
        "control_plane.access": log_level,
        "uvicorn": "WARNING",
        "uvicorn.access": "WARNING",
        "sqlalchemy.engine": "WARNING",
        "apscheduler": "WARNING",
        "botocore": "WARNING",
        "docker": "WARNING",
        "httpx": "WARNING",
    }

    for logger_name, level in loggers_config.items():
        logging.getLogger(logger_name).setLevel(getattr(logging, level.upper()))


def get_correlation_id() -> str:
    """Get the current correlation id from context."""
    return correlation_id_var.get("")


def bind_correlation_id(correlation_id: str | None = None) -> str:
    """Set a correlation id for work started outside a request (scheduled jobs)."""
    correlation_id = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(correlation_id)
    return correlation_id
