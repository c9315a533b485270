"""
HTTP tests for the tenant, autoscale and enforcement routes
"""

import json
from datetime import timedelta

import pytest
from fastapi import status

from app.config import settings
from app.models.tenant import TenantMode
from app.utils.clock import utcnow
from utils.factories import add_sample, add_sustained_samples, create_test_tenant


async def post(client, bridge_headers, path, payload=None):
    body = json.dumps(payload) if payload is not None else ""
    return await client.post(path, content=body, headers=bridge_headers(body))


class TestProvisionRoute:
    @pytest.mark.asyncio
    async def test_provision_shared_tenant(self, client, bridge_headers, infra):
        response = await post(
            client, bridge_headers, "/tenants",
            {"name": "Acme", "email": "ops@acme.io", "subdomain": "acme"},
        )

        assert response.status_code == status.HTTP_201_CREATED
        data = response.json()
        assert data["subdomain"] == "acme"
        assert data["mode"] == "shared"
        assert data["status"] == "active"
        assert data["login_url"] == "https://shared.rp9.io/acme"

    @pytest.mark.asyncio
    async def test_provision_dedicated_tenant(self, client, bridge_headers, infra):
        response = await post(
            client, bridge_headers, "/tenants",
            {"name": "Beta", "email": "ops@beta.io", "subdomain": "beta", "mode": "dedicated", "plan": "pro"},
        )

        assert response.status_code == status.HTTP_201_CREATED
        data = response.json()
        assert data["login_url"] == f"https://beta.{settings.proxy_domain}"
        assert data["container_status"] == "running"
        assert data["cpu_cores"] == 2

    @pytest.mark.asyncio
    async def test_duplicate_subdomain_conflicts(self, client, bridge_headers, infra):
        payload = {"name": "Acme", "email": "ops@acme.io", "subdomain": "acme"}
        await post(client, bridge_headers, "/tenants", payload)

        response = await post(client, bridge_headers, "/tenants", payload)

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.json()["code"] == "PROVISION_CONFLICT"

    @pytest.mark.asyncio
    async def test_invalid_body_is_422(self, client, bridge_headers, infra):
        response = await post(
            client, bridge_headers, "/tenants", {"name": "Acme", "email": "not-an-email", "subdomain": "ac"}
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        data = response.json()
        assert data["error"] == "ValidationError"
        assert data["code"] == "VALIDATION_FAILED"
        fields = {e["field"] for e in data["details"]["validation_errors"]}
        assert {"email", "subdomain"} <= fields

    @pytest.mark.asyncio
    async def test_unavailable_infra_is_503(self, client, bridge_headers, infra):
        infra.proxy.available = False
        response = await post(
            client, bridge_headers, "/tenants", {"name": "Acme", "email": "ops@acme.io", "subdomain": "acme"}
        )

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        assert response.json()["error"] == "InfraUnavailable"


class TestScaleRoute:
    @pytest.mark.asyncio
    async def test_scale_dedicated_tenant(self, client, bridge_headers, test_db, infra):
        tenant = await create_test_tenant(test_db, infra, mode=TenantMode.DEDICATED, plan="pro")

        response = await post(client, bridge_headers, f"/tenants/{tenant.tenant_id}/scale", {"cpu": 4, "memory_mb": 4096})

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["method"] == "live"
        assert data["resources_before"]["cpu_cores"] == 2
        assert data["resources_after"]["cpu_cores"] == 4
        assert data["tenant"]["memory_mb"] == 4096

    @pytest.mark.asyncio
    async def test_scale_shared_tenant_is_rejected(self, client, bridge_headers, test_db, infra):
        tenant = await create_test_tenant(test_db, infra)

        response = await post(client, bridge_headers, f"/tenants/{tenant.tenant_id}/scale", {"cpu": 2})

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["code"] == "NOT_DEDICATED"

    @pytest.mark.asyncio
    async def test_scale_above_ceiling(self, client, bridge_headers, test_db, infra):
        tenant = await create_test_tenant(test_db, infra, mode=TenantMode.DEDICATED)

        response = await post(client, bridge_headers, f"/tenants/{tenant.tenant_id}/scale", {"cpu": 3})

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["code"] == "PLAN_CEILING_EXCEEDED"

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, client, bridge_headers, infra):
        response = await post(client, bridge_headers, "/tenants/does-not-exist/scale", {"cpu": 2})

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["error"] == "NotFound"


class TestBackupRoute:
    @pytest.mark.asyncio
    async def test_backup_without_credentials(self, client, bridge_headers, test_db, infra):
        tenant = await create_test_tenant(test_db, infra)

        response = await post(
            client, bridge_headers, f"/tenants/{tenant.tenant_id}/backup", {"includes_credentials": False}
        )

        assert response.status_code == status.HTTP_201_CREATED
        data = response.json()
        assert data["status"] == "completed"
        assert data["includes_credentials"] is False
        assert data["storage_bucket"] == infra.storage.bucket
        assert data["storage_path"] in infra.storage.objects

    @pytest.mark.asyncio
    async def test_backup_with_empty_body(self, client, bridge_headers, test_db, infra):
        tenant = await create_test_tenant(test_db, infra)

        response = await post(client, bridge_headers, f"/tenants/{tenant.tenant_id}/backup")

        assert response.status_code == status.HTTP_201_CREATED
        assert response.json()["backup_type"] == "manual"


class TestPromoteRoute:
    @pytest.mark.asyncio
    async def test_immediate_promotion(self, client, bridge_headers, test_db, infra):
        tenant = await create_test_tenant(test_db, infra)

        response = await post(client, bridge_headers, f"/tenants/{tenant.tenant_id}/promote", {})

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "completed"

    @pytest.mark.asyncio
    async def test_scheduled_promotion_is_accepted(self, client, bridge_headers, test_db, infra, monkeypatch):
        tenant = await create_test_tenant(test_db, infra)
        monkeypatch.setattr("app.scheduler.schedule_promotion", lambda tenant_id, window, ttl: f"promote_{tenant_id}")
        window = (utcnow() + timedelta(hours=1)).isoformat()

        response = await post(client, bridge_headers, f"/tenants/{tenant.tenant_id}/promote", {"window": window})

        assert response.status_code == status.HTTP_202_ACCEPTED
        data = response.json()
        assert data["status"] == "scheduled"
        assert data["job_id"] == f"promote_{tenant.tenant_id}"

    @pytest.mark.asyncio
    async def test_ttl_out_of_range(self, client, bridge_headers, test_db, infra):
        tenant = await create_test_tenant(test_db, infra)

        response = await post(client, bridge_headers, f"/tenants/{tenant.tenant_id}/promote", {"ttl_minutes": 0})

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


class TestJobRoutes:
    @pytest.mark.asyncio
    async def test_autoscale_cycle(self, client, bridge_headers, test_db, infra):
        tenant = await create_test_tenant(test_db, infra, mode=TenantMode.DEDICATED, plan="pro")
        await add_sustained_samples(test_db, tenant.tenant_id, settings.autoscale_sustain_seconds, cpu_percent=97.0)

        response = await post(client, bridge_headers, "/autoscale/run", {})

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["evaluated"] == 1
        assert data["events"][0]["action"] == "scale_up"

    @pytest.mark.asyncio
    async def test_autoscale_manual_trigger(self, client, bridge_headers, test_db, infra):
        tenant = await create_test_tenant(test_db, infra, mode=TenantMode.DEDICATED, plan="pro")

        response = await post(
            client, bridge_headers, "/autoscale/run",
            {"tenant_id": tenant.tenant_id, "action": "add_worker", "workers": 4},
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["trigger_type"] == "manual"
        assert data["status"] == "completed"

    @pytest.mark.asyncio
    async def test_autoscale_is_safe_to_repeat(self, client, bridge_headers, test_db, infra):
        await create_test_tenant(test_db, infra)

        first = await post(client, bridge_headers, "/autoscale/run")
        second = await post(client, bridge_headers, "/autoscale/run")

        assert first.status_code == second.status_code == status.HTTP_200_OK
        assert second.json()["events"] == []

    @pytest.mark.asyncio
    async def test_enforcement_cycle(self, client, bridge_headers, test_db, infra):
        tenant = await create_test_tenant(test_db, infra)

        response = await post(client, bridge_headers, "/enforcement/run", {})

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["evaluated"] == 1
        assert data["outcomes"][tenant.tenant_id]["result"]["skipped"] == "no_metrics"

    @pytest.mark.asyncio
    async def test_acknowledge_enforcement_event(self, client, bridge_headers, test_db, infra):
        tenant = await create_test_tenant(test_db, infra)
        await add_sample(test_db, tenant.tenant_id, executions_month=850)
        run = await post(client, bridge_headers, "/enforcement/run", {})
        limits = run.json()["outcomes"][tenant.tenant_id]["result"]["limits"]
        event_id = next(item["event_id"] for item in limits if item["limit_type"] == "executions_monthly")

        response = await post(client, bridge_headers, f"/enforcement/events/{event_id}/acknowledge")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "acknowledged"
        assert data["acknowledged_at"] is not None

    @pytest.mark.asyncio
    async def test_acknowledge_unknown_event(self, client, bridge_headers):
        response = await post(client, bridge_headers, "/enforcement/events/missing/acknowledge")

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["code"] == "NOT_FOUND"
