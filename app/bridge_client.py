"""
Outbound bridge client.

Used by the surrounding web application to call the control plane. Each call
is one of a closed set of actions; the action decides the HTTP method and the
path, so a caller can never reach an endpoint outside the allow-list by
passing a free-form string.
"""

import json
import logging
import uuid
from datetime import timedelta
from enum import Enum
from typing import Any, Optional

import httpx

from app.auth import create_service_token, sign_request
from app.config import settings
from app.constants.roles import BRIDGE_ROLE
from app.exceptions import InfraUnavailable, ValidationError
from app.middleware.logging import CORRELATION_HEADER, get_correlation_id

logger = logging.getLogger(__name__)


class BridgeAction(str, Enum):
    PROVISION = "provision"
    SCALE = "scale"
    BACKUP = "backup"
    PROMOTE = "promote"
    RUN_AUTOSCALE = "run_autoscale"
    RUN_ENFORCEMENT = "run_enforcement"
    HEALTH = "health"
    TENANT_METRICS = "tenant_metrics"


def route_for(action: BridgeAction, tenant_id: Optional[str] = None) -> tuple[str, str]:
    """(method, path) for an action."""
    match action:
        case BridgeAction.PROVISION:
            return "POST", "/tenants"
        case BridgeAction.SCALE:
            return "POST", f"/tenants/{_require_tenant(action, tenant_id)}/scale"
        case BridgeAction.BACKUP:
            return "POST", f"/tenants/{_require_tenant(action, tenant_id)}/backup"
        case BridgeAction.PROMOTE:
            return "POST", f"/tenants/{_require_tenant(action, tenant_id)}/promote"
        case BridgeAction.RUN_AUTOSCALE:
            return "POST", "/autoscale/run"
        case BridgeAction.RUN_ENFORCEMENT:
            return "POST", "/enforcement/run"
        case BridgeAction.HEALTH:
            return "GET", "/health"
        case BridgeAction.TENANT_METRICS:
            return "GET", f"/metrics/tenant/{_require_tenant(action, tenant_id)}"


def _require_tenant(action: BridgeAction, tenant_id: Optional[str]) -> str:
    if not tenant_id:
        raise ValidationError(f"Action '{action.value}' requires a tenant id")
    return tenant_id


class BridgeClient:
    """Signs and sends control plane calls."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        subject: str = "bridge",
        role: str = BRIDGE_ROLE.value,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ):
        self.subject = subject
        self.role = role
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.bridge_base_url,
            transport=transport,
            timeout=timeout,
            headers={"User-Agent": "RP9-Bridge/1.0"},
        )

    def build_headers(self, body: str, correlation_id: Optional[str] = None) -> dict[str, str]:
        token = create_service_token(self.subject, self.role, ttl=timedelta(minutes=5))
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {token}",
            CORRELATION_HEADER: correlation_id or get_correlation_id() or str(uuid.uuid4()),
            **sign_request(body),
        }

    async def call(
        self,
        action: BridgeAction,
        tenant_id: Optional[str] = None,
        body: Optional[dict[str, Any]] = None,
    ) -> httpx.Response:
        method, path = route_for(BridgeAction(action), tenant_id)
        # The exact bytes signed are the bytes sent
        content = json.dumps(body or {}, separators=(",", ":")) if method != "GET" else ""
        headers = self.build_headers(content)
        try:
            response = await self._client.request(method, path, content=content or None, headers=headers)
        except httpx.HTTPError as e:
            raise InfraUnavailable("control_plane", f"Unable to reach control plane: {e}") from e

        logger.info(
            "Bridge %s %s -> %d",
            method,
            path,
            response.status_code,
            extra={"tenant_id": tenant_id, "status_code": response.status_code},
        )
        return response

    async def aclose(self) -> None:
        await self._client.aclose()
