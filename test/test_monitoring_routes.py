"""
Tests for the health probes and metrics endpoints
"""

import pytest
from fastapi import status

from app.models.tenant import TenantMode
from utils.factories import add_sample, create_test_tenant


class TestHealthProbes:
    @pytest.mark.asyncio
    async def test_liveness(self, client):
        response = await client.get("/health")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "healthy"
        assert "uptime_seconds" in data
        assert "version" in data

    @pytest.mark.asyncio
    async def test_readiness_checks_registry(self, client):
        response = await client.get("/health/ready")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "ready"
        assert data["checks"]["registry"]["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_detailed_health_all_up(self, client, infra):
        response = await client.get("/health/detailed")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "healthy"
        assert set(data["checks"]) == {
            "registry",
            "container_engine",
            "proxy",
            "object_storage",
            "shared_runtime",
            "pool_capacity",
        }

    @pytest.mark.asyncio
    async def test_detailed_health_degraded_when_adapter_down(self, client, infra):
        infra.proxy.available = False

        response = await client.get("/health/detailed")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "degraded"
        assert data["checks"]["proxy"]["status"] == "unhealthy"
        assert data["checks"]["registry"]["status"] == "healthy"


class TestMetricsEndpoints:
    @pytest.mark.asyncio
    async def test_prometheus_exposition(self, client, test_db, infra):
        await create_test_tenant(test_db, infra, mode=TenantMode.DEDICATED, plan="pro")

        response = await client.get("/metrics")

        assert response.status_code == status.HTTP_200_OK
        assert response.headers["content-type"].startswith("text/plain")
        body = response.text
        assert "rp9_tenants_total" in body
        assert 'resource_type="cpu_cores"' in body
        assert "rp9_uptime_seconds" in body

    @pytest.mark.asyncio
    async def test_tenant_snapshot(self, client, bridge_headers, test_db, infra):
        tenant = await create_test_tenant(test_db, infra)
        await add_sample(test_db, tenant.tenant_id, executions_month=42)

        response = await client.get(f"/metrics/tenant/{tenant.tenant_id}", headers=bridge_headers(""))

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["tenant_id"] == tenant.tenant_id
        assert data["metrics"]["executions_month"] == 42
        assert data["limits"]["executions_monthly"] == 1000

    @pytest.mark.asyncio
    async def test_tenant_snapshot_requires_auth(self, client, test_db, infra):
        tenant = await create_test_tenant(test_db, infra)

        response = await client.get(f"/metrics/tenant/{tenant.tenant_id}")

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
