"""
Rate Limiting for the bridge API

Limits are keyed by the authenticated bridge subject (falling back to the
client address). The storage URI comes from settings; point it at Redis
(``redis://...``) whenever more than one replica serves traffic, otherwise each
process keeps its own counters.
"""

from fastapi import Request
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from app.config import settings


def bridge_key(request: Request) -> str:
    principal = getattr(request.state, "principal", None)
    if principal is not None:
        return f"bridge:{principal.subject}"
    return get_remote_address(request)


# Create rate limiter instance
limiter = Limiter(
    key_func=bridge_key,
    default_limits=[settings.rate_limit_default],
    storage_uri=settings.rate_limit_storage_uri,
    enabled=settings.rate_limit_enabled,
    headers_enabled=True,  # Include rate limit headers in responses
)


def configure_rate_limiting(app):
    """
    Configure rate limiting for the FastAPI application.

    Args:
        app: FastAPI application instance
    """
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
