"""
Bridge Authentication Middleware

The bridge is the only caller of this service. Every request except the public
probes passes three checks, in order:

1. bearer token (signature, expiry, role claim)
2. request signature over ``timestamp\\nbody`` within the tolerance window
3. the endpoint allow-list

The allow-list is a typed routing table built once at import time; ``:id``
matches exactly one path segment.
"""

import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from app.auth import SIGNATURE_HEADER, TIMESTAMP_HEADER, decode_bridge_token, verify_signature
from app.exception_handlers import error_response_for
from app.exceptions import AuthError, ErrorCode
from app.middleware.logging import client_ip_of
from app.utils.metrics import record_auth_failure

logger = logging.getLogger(__name__)

WILDCARD = ":id"
SEGMENT_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")

MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

# Probes reachable without bridge credentials
PUBLIC_PATHS = frozenset({"/health", "/health/live", "/health/ready", "/health/detailed", "/metrics"})


@dataclass(frozen=True)
class AllowedEndpoint:
    method: str
    pattern: str

    @property
    def segments(self) -> tuple[str, ...]:
        return tuple(s for s in self.pattern.split("/") if s)

    def matches(self, segments: tuple[str, ...]) -> bool:
        for expected, actual in zip(self.segments, segments):
            if expected == WILDCARD:
                if not SEGMENT_PATTERN.match(actual):
                    return False
            elif expected != actual:
                return False
        return True


class EndpointAllowList:
    """Endpoints indexed by (method, segment count); lookups never build regexes."""

    def __init__(self, entries: Iterable[AllowedEndpoint]):
        self._table: dict[tuple[str, int], list[AllowedEndpoint]] = {}
        for entry in entries:
            self._table.setdefault((entry.method, len(entry.segments)), []).append(entry)

    def match(self, method: str, path: str) -> AllowedEndpoint | None:
        segments = tuple(s for s in path.split("/") if s)
        for entry in self._table.get((method.upper(), len(segments)), ()):
            if entry.matches(segments):
                return entry
        return None

    def __contains__(self, item: tuple[str, str]) -> bool:
        method, path = item
        return self.match(method, path) is not None


ALLOWED_ENDPOINTS = EndpointAllowList(
    [
        AllowedEndpoint("POST", "/tenants"),
        AllowedEndpoint("POST", "/tenants/:id/scale"),
        AllowedEndpoint("POST", "/tenants/:id/backup"),
        AllowedEndpoint("POST", "/tenants/:id/promote"),
        AllowedEndpoint("POST", "/autoscale/run"),
        AllowedEndpoint("POST", "/enforcement/run"),
        AllowedEndpoint("POST", "/enforcement/events/:id/acknowledge"),
        AllowedEndpoint("GET", "/health"),
        AllowedEndpoint("GET", "/metrics/tenant/:id"),
    ]
)


def bearer_token_of(request: Request) -> str:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise AuthError("Missing or invalid Authorization header", code=ErrorCode.AUTH_TOKEN_INVALID)
    return token.strip()


class BridgeAuthMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, allow_list: EndpointAllowList = ALLOWED_ENDPOINTS):
        super().__init__(app)
        self.allow_list = allow_list

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path.rstrip("/") or "/"
        if request.method in ("GET", "HEAD") and path in PUBLIC_PATHS:
            return await call_next(request)

        try:
            principal = decode_bridge_token(bearer_token_of(request))

            signature = request.headers.get(SIGNATURE_HEADER)
            if request.method in MUTATING_METHODS or signature:
                body = await request.body()
                verify_signature(request.headers.get(TIMESTAMP_HEADER), body, signature)

            if self.allow_list.match(request.method, path) is None:
                raise AuthError(
                    "Endpoint not allowed",
                    code=ErrorCode.ENDPOINT_NOT_ALLOWED,
                    status_code=403,
                    details={"method": request.method, "path": path},
                )
        except AuthError as e:
            record_auth_failure(e.code.value)
            logger.warning(
                "Bridge request rejected: %s",
                e.message,
                extra={
                    "reason": e.code.value,
                    "client_ip": client_ip_of(request),
                    "method": request.method,
                    "path": path,
                },
            )
            return error_response_for(e, path=path)

        request.state.principal = principal
        return await call_next(request)
