"""Billing entitlement lookups."""

from __future__ import annotations

import logging

import httpx

from app.config import settings
from app.exceptions import InfraUnavailable
from app.infra.base import with_timeout

logger = logging.getLogger(__name__)

ADAPTER = "billing"


class BillingEntitlementsClient:
    """Reads the entitlement numbers billing has already computed for a tenant.

    When no billing API is configured, ``fetch`` returns ``None`` and the
    caller falls back to the quota row.
    """

    def __init__(
        self,
        base_url: str | None,
        api_key: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/") if base_url else None
        self._client = httpx.AsyncClient(
            transport=transport,
            timeout=settings.infra_timeout_seconds,
            headers={"Authorization": f"Bearer {api_key}"} if api_key else {},
        )

    @property
    def enabled(self) -> bool:
        return self.base_url is not None

    async def fetch(self, entitlement_ref: str | None) -> dict | None:
        if not self.enabled or not entitlement_ref:
            return None
        url = f"{self.base_url}/entitlements/{entitlement_ref}"
        try:
            response = await with_timeout(ADAPTER, "fetch", self._client.get(url))
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Entitlement fetch failed for ref=%s: %s", entitlement_ref, e)
            raise InfraUnavailable(ADAPTER, f"Entitlement fetch failed: {e}") from e
        try:
            data = response.json()
        except ValueError as e:
            raise InfraUnavailable(ADAPTER, "Billing returned a non-JSON entitlement body") from e
        limits = data.get("limits", data) if isinstance(data, dict) else None
        if not isinstance(limits, dict):
            raise InfraUnavailable(ADAPTER, f"Unexpected entitlement payload for ref={entitlement_ref}")
        return limits

    async def aclose(self) -> None:
        await self._client.aclose()
