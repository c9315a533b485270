"""
Workflow runtime client.

Talks to the shared pool's management API (slot allocation, per-tenant state
export, usage) and to dedicated runtimes (state import). All calls go through
one ``httpx.AsyncClient``.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from app.config import settings
from app.exceptions import InfraUnavailable
from app.infra.base import with_timeout

logger = logging.getLogger(__name__)

ADAPTER = "runtime"

STATE_SECTIONS = ("database", "workflows", "credentials", "files")


class RuntimeClient:
    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            transport=transport,
            timeout=timeout or settings.infra_timeout_seconds,
            headers={"X-N8N-API-KEY": api_key} if api_key else {},
        )

    async def _request(self, operation: str, method: str, url: str, allow_404: bool = False, **kwargs) -> Any:
        try:
            response = await with_timeout(ADAPTER, operation, self._client.request(method, url, **kwargs))
            if allow_404 and response.status_code == 404:
                return None
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("Runtime %s %s failed: %s", method, url, e)
            raise InfraUnavailable(ADAPTER, f"Runtime {operation} failed: {e}") from e
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as e:
            raise InfraUnavailable(ADAPTER, f"Runtime {operation} returned a non-JSON body") from e
        if not isinstance(data, dict):
            raise InfraUnavailable(ADAPTER, f"Runtime {operation} returned {type(data).__name__}, expected an object")
        return data

    def _shared(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def allocate_shared(self, tenant_id: str, subdomain: str, workers: int) -> str:
        """Reserve a shared-pool slot and return the tenant's login URL."""
        data = await self._request(
            "allocate_shared",
            "POST",
            self._shared("/api/v1/tenants"),
            json={"tenant_id": tenant_id, "subdomain": subdomain, "workers": workers},
        )
        return data.get("login_url") or f"https://{subdomain}.{settings.proxy_domain}"

    async def release_shared(self, tenant_id: str) -> None:
        await self._request("release_shared", "DELETE", self._shared(f"/api/v1/tenants/{tenant_id}"), allow_404=True)

    async def export_state(self, tenant_id: str, sections: list[str], base_url: str | None = None) -> dict:
        """Export the requested sections of a tenant's state.

        Only the listed sections are returned; a section that was not requested
        never leaves the runtime.
        """
        url = f"{(base_url or self.base_url).rstrip('/')}/api/v1/tenants/{tenant_id}/export"
        data = await self._request("export_state", "POST", url, json={"sections": list(sections)})
        return {section: data.get(section) for section in sections}

    async def import_state(self, base_url: str, tenant_id: str, payload: dict) -> dict:
        url = f"{base_url.rstrip('/')}/api/v1/tenants/{tenant_id}/import"
        return await self._request("import_state", "POST", url, json=payload)

    async def usage(self, tenant_id: str, base_url: str | None = None) -> dict:
        """Current load and usage counters for one tenant."""
        url = f"{(base_url or self.base_url).rstrip('/')}/api/v1/tenants/{tenant_id}/usage"
        return await self._request("usage", "GET", url)

    async def ping(self) -> bool:
        await self._request("ping", "GET", self._shared("/healthz"))
        return True

    async def aclose(self) -> None:
        await self._client.aclose()
