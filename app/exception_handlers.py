"""
Global Exception Handlers

Centralized exception handling so every error reaching a bridge caller has
the same shape.

Error Response Format:
{
    "error": "ConflictError",
    "message": "Another lifecycle operation is in progress for this tenant",
    "code": "OPERATION_IN_PROGRESS",
    "details": {"tenant_id": "..."},
    "path": "/tenants/.../scale",
    "correlation_id": "5b0f...",
    "timestamp": "2026-01-01T00:00:00+00:00"
}

`code` is stable and machine-readable. `details` of 5xx responses is only
included in development.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.config import settings
from app.exceptions import (
    AuthError,
    ConflictError,
    ControlPlaneError,
    ErrorCode,
    InternalError,
    NotFound,
    ValidationError,
)
from app.middleware.logging import get_correlation_id

logger = logging.getLogger(__name__)


def create_error_response(
    status_code: int,
    error: str,
    message: str,
    code: str | ErrorCode,
    details: dict[str, Any] | None = None,
    path: str | None = None,
) -> JSONResponse:
    """
    Create a standardized error response.

    Args:
        status_code: HTTP status code
        error: Taxonomy kind (ValidationError, AuthError, ...)
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional error details
        path: Request path that caused the error
    """
    body: dict[str, Any] = {
        "error": error,
        "message": message,
        "code": code.value if isinstance(code, ErrorCode) else code,
    }

    # Internal details never leave the process outside development
    if details and (status_code < 500 or settings.is_development):
        body["details"] = details

    if path:
        body["path"] = path

    body["correlation_id"] = get_correlation_id() or None
    body["timestamp"] = datetime.now(timezone.utc).isoformat()

    headers = {"x-correlation-id": body["correlation_id"]} if body["correlation_id"] else None
    return JSONResponse(status_code=status_code, content=body, headers=headers)


def error_response_for(exc: ControlPlaneError, path: str | None = None) -> JSONResponse:
    """Render a taxonomy exception; also used by middleware that cannot raise into handlers."""
    return create_error_response(
        status_code=exc.status_code,
        error=exc.error,
        message=exc.message,
        code=exc.code,
        details=exc.details or None,
        path=path,
    )


def taxonomy_for_status(status_code: int) -> ControlPlaneError:
    """Map a bare HTTP status onto the error taxonomy."""
    if status_code in (401, 403):
        return AuthError(message="Not authorized", status_code=status_code)
    if status_code == 404:
        return NotFound("Resource")
    if status_code == 409:
        return ConflictError()
    if status_code >= 500:
        return InternalError()
    return ValidationError(message="Bad request")


async def control_plane_exception_handler(request: Request, exc: ControlPlaneError) -> JSONResponse:
    """Handle taxonomy exceptions raised by services and routes."""
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "%s: %s",
        exc.error,
        exc.message,
        extra={
            "status_code": exc.status_code,
            "error_code": exc.code.value,
            "path": request.url.path,
            "details": exc.details,
        },
    )
    return error_response_for(exc, path=request.url.path)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle standard HTTP exceptions (unknown routes, wrong methods, ...)."""
    mapped = taxonomy_for_status(exc.status_code)
    logger.warning(
        "HTTPException: %s",
        exc.detail,
        extra={"status_code": exc.status_code, "path": request.url.path},
    )
    return create_error_response(
        status_code=exc.status_code,
        error=mapped.error,
        message=str(exc.detail),
        code=mapped.code,
        path=request.url.path,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle request body / parameter validation errors."""
    errors = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"] if loc != "body")
        errors.append({"field": field, "message": error["msg"], "type": error["type"]})

    logger.warning("Validation error on %s", request.url.path, extra={"errors": errors})

    return create_error_response(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        error=ValidationError.error,
        message="Validation error",
        code=ErrorCode.VALIDATION_FAILED,
        details={"validation_errors": errors},
        path=request.url.path,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions as InternalError."""
    logger.error(
        "Unhandled exception: %s",
        exc,
        exc_info=True,
        extra={"path": request.url.path, "method": request.method},
    )
    return create_error_response(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        error=InternalError.error,
        message="An unexpected error occurred. Please try again later.",
        code=ErrorCode.INTERNAL_ERROR,
        details={"exception": f"{type(exc).__name__}: {exc}"},
        path=request.url.path,
    )


def register_exception_handlers(app) -> None:
    """
    Register all exception handlers with the FastAPI app.

    Args:
        app: The FastAPI application instance
    """
    app.add_exception_handler(ControlPlaneError, control_plane_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    logger.info("Exception handlers registered successfully")
