"""
Control Plane Exception Classes

Every failure that crosses a component boundary is one of six kinds:
ValidationError, AuthError, ConflictError, InfraUnavailable, NotFound and
InternalError. Each carries a stable machine-readable code so bridge callers
can branch on it without parsing messages.
"""

from enum import Enum
from typing import Any

from fastapi import status


class ErrorCode(str, Enum):
    """Stable error codes returned in the ``code`` field of error responses."""

    # Validation
    VALIDATION_FAILED = "VALIDATION_FAILED"
    NOT_DEDICATED = "NOT_DEDICATED"
    PLAN_CEILING_EXCEEDED = "PLAN_CEILING_EXCEEDED"

    # Authentication / authorization
    AUTH_TOKEN_INVALID = "AUTH_TOKEN_INVALID"
    AUTH_TOKEN_EXPIRED = "AUTH_TOKEN_EXPIRED"
    AUTH_ROLE_FORBIDDEN = "AUTH_ROLE_FORBIDDEN"
    AUTH_SIGNATURE_INVALID = "AUTH_SIGNATURE_INVALID"
    AUTH_TIMESTAMP_OUT_OF_WINDOW = "AUTH_TIMESTAMP_OUT_OF_WINDOW"
    ENDPOINT_NOT_ALLOWED = "ENDPOINT_NOT_ALLOWED"

    # Conflicts
    CONFLICT = "CONFLICT"
    PROVISION_CONFLICT = "PROVISION_CONFLICT"
    OPERATION_IN_PROGRESS = "OPERATION_IN_PROGRESS"
    INVALID_TRANSITION = "INVALID_TRANSITION"

    # Infrastructure
    INFRA_UNAVAILABLE = "INFRA_UNAVAILABLE"

    # Lookup
    NOT_FOUND = "NOT_FOUND"

    # Everything else
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ControlPlaneError(Exception):
    """Base exception class for all control plane errors"""

    error = "ControlPlaneError"

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.error, "message": self.message, "code": self.code.value}
        if self.details:
            payload["details"] = self.details
        return payload


# ============================================================================
# Validation
# ============================================================================


class ValidationError(ControlPlaneError):
    """Raised for bad input. Never retried."""

    error = "ValidationError"

    def __init__(
        self,
        message: str = "Validation failed",
        field: str | None = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: dict[str, Any] | None = None,
    ):
        details = dict(details or {})
        if field:
            details["field"] = field
        super().__init__(message=message, status_code=status.HTTP_400_BAD_REQUEST, code=code, details=details)


class NotDedicated(ValidationError):
    """Raised when a dedicated-only operation targets a shared-pool tenant"""

    def __init__(self, tenant_id: str):
        super().__init__(
            message="Tenant runs in the shared pool; promote it to dedicated before scaling",
            code=ErrorCode.NOT_DEDICATED,
            details={"tenant_id": tenant_id},
        )


class PlanCeilingExceeded(ValidationError):
    """Raised when requested resources exceed what the tenant's plan allows"""

    def __init__(self, resource: str, requested: int, ceiling: int, plan: str):
        super().__init__(
            message=f"{resource}={requested} exceeds the {plan} plan ceiling of {ceiling}",
            field=resource,
            code=ErrorCode.PLAN_CEILING_EXCEEDED,
            details={"requested": requested, "ceiling": ceiling, "plan": plan},
        )


# ============================================================================
# Authentication & Authorization
# ============================================================================


class AuthError(ControlPlaneError):
    """Raised when a bridge request fails token, signature or endpoint checks"""

    error = "AuthError"

    def __init__(
        self,
        message: str = "Authentication failed",
        code: ErrorCode = ErrorCode.AUTH_TOKEN_INVALID,
        status_code: int = status.HTTP_401_UNAUTHORIZED,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message=message, status_code=status_code, code=code, details=details)


# ============================================================================
# Conflicts
# ============================================================================


class ConflictError(ControlPlaneError):
    """Raised on duplicate resources or competing lifecycle operations"""

    error = "ConflictError"

    def __init__(
        self,
        message: str = "Conflict",
        code: ErrorCode = ErrorCode.CONFLICT,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message=message, status_code=status.HTTP_409_CONFLICT, code=code, details=details)


class ProvisionConflict(ConflictError):
    """Raised when the requested subdomain is already taken"""

    def __init__(self, subdomain: str):
        super().__init__(
            message=f"Subdomain '{subdomain}' is already taken",
            code=ErrorCode.PROVISION_CONFLICT,
            details={"subdomain": subdomain},
        )


class OperationInProgress(ConflictError):
    """Raised when another lifecycle operation holds the tenant lease"""

    def __init__(self, tenant_id: str, holder: str | None = None):
        details = {"tenant_id": tenant_id}
        if holder:
            details["held_by"] = holder
        super().__init__(
            message="Another lifecycle operation is in progress for this tenant",
            code=ErrorCode.OPERATION_IN_PROGRESS,
            details=details,
        )


class InvalidTransition(ConflictError):
    """Raised when a conditional status update finds the tenant in another state"""

    def __init__(self, tenant_id: str, current: str, target: str):
        super().__init__(
            message=f"Cannot transition tenant from '{current}' to '{target}'",
            code=ErrorCode.INVALID_TRANSITION,
            details={"tenant_id": tenant_id, "current_status": current, "target_status": target},
        )


# ============================================================================
# Infrastructure
# ============================================================================


class InfraUnavailable(ControlPlaneError):
    """Raised when the container engine, proxy, storage or a remote API cannot be reached.

    Retryable by the scheduled job that owns the work, never by the request handler.
    """

    error = "InfraUnavailable"
    retryable = True

    def __init__(self, adapter: str, message: str | None = None, details: dict[str, Any] | None = None):
        self.adapter = adapter
        details = dict(details or {})
        details["adapter"] = adapter
        super().__init__(
            message=message or f"{adapter} is unavailable",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            code=ErrorCode.INFRA_UNAVAILABLE,
            details=details,
        )


# ============================================================================
# Lookup & Internal
# ============================================================================


class NotFound(ControlPlaneError):
    """Raised when a tenant, backup or event does not exist"""

    error = "NotFound"

    def __init__(self, resource_type: str, resource_id: Any | None = None):
        message = f"{resource_type} not found"
        if resource_id is not None:
            message = f"{resource_type} with id '{resource_id}' not found"
        super().__init__(
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            code=ErrorCode.NOT_FOUND,
            details={"resource_type": resource_type, "resource_id": resource_id},
        )


class InternalError(ControlPlaneError):
    """Unexpected failure. Always logged with the correlation id."""

    error = "InternalError"

    def __init__(self, message: str = "An unexpected error occurred", details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            code=ErrorCode.INTERNAL_ERROR,
            details=details,
        )
