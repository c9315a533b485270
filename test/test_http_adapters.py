"""
Tests for the httpx-based adapters (billing entitlements, workflow runtime)
"""

import httpx
import pytest

from app.exceptions import InfraUnavailable
from app.infra.entitlements import BillingEntitlementsClient
from app.infra.runtime import RuntimeClient
from app.services.enforcement_service import EnforcementEngine
from app.services.registry import TenantRegistry
from utils.factories import add_sample, create_test_tenant


def responding(status_code=200, **kwargs) -> httpx.MockTransport:
    return httpx.MockTransport(lambda request: httpx.Response(status_code, **kwargs))


class TestBillingEntitlementsClient:
    @pytest.mark.asyncio
    async def test_limits_unwrapped(self):
        client = BillingEntitlementsClient(
            "http://billing", transport=responding(json={"limits": {"executions_monthly": 500}})
        )
        try:
            assert await client.fetch("sub_1") == {"executions_monthly": 500}
        finally:
            await client.aclose()

    @pytest.mark.asyncio
    async def test_disabled_without_base_url(self):
        client = BillingEntitlementsClient(None)
        try:
            assert await client.fetch("sub_1") is None
        finally:
            await client.aclose()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "transport",
        [
            responding(text="<html>maintenance</html>"),
            responding(json=["executions_monthly", 500]),
            responding(json={"limits": "unlimited"}),
            responding(503),
        ],
    )
    async def test_bad_responses_are_infra_unavailable(self, transport):
        client = BillingEntitlementsClient("http://billing", transport=transport)
        try:
            with pytest.raises(InfraUnavailable) as exc_info:
                await client.fetch("sub_1")
            assert exc_info.value.adapter == "billing"
        finally:
            await client.aclose()


class TestRuntimeClient:
    @pytest.mark.asyncio
    async def test_export_returns_only_requested_sections(self):
        client = RuntimeClient(
            "http://pool", transport=responding(json={"database": {"version": "1"}, "credentials": ["x"]})
        )
        try:
            assert await client.export_state("t-1", ["database"]) == {"database": {"version": "1"}}
        finally:
            await client.aclose()

    @pytest.mark.asyncio
    async def test_non_json_body_is_infra_unavailable(self):
        client = RuntimeClient("http://pool", transport=responding(text="Bad Gateway"))
        try:
            with pytest.raises(InfraUnavailable) as exc_info:
                await client.usage("t-1")
            assert exc_info.value.adapter == "runtime"
        finally:
            await client.aclose()

    @pytest.mark.asyncio
    async def test_non_object_body_is_infra_unavailable(self):
        client = RuntimeClient("http://pool", transport=responding(json=[1, 2, 3]))
        try:
            with pytest.raises(InfraUnavailable):
                await client.export_state("t-1", ["database"])
        finally:
            await client.aclose()


class TestMalformedBillingDuringEnforcement:
    @pytest.mark.asyncio
    async def test_reported_as_entitlement_failure(self, test_db, infra):
        tenant = await create_test_tenant(test_db, infra)
        quotas = await TenantRegistry(test_db).get_quotas(tenant.tenant_id)
        quotas.billing_entitlement_ref = "sub_123"
        await test_db.commit()
        await add_sample(test_db, tenant.tenant_id, executions_month=999)
        infra.entitlements = BillingEntitlementsClient("http://billing", transport=responding(text="not json"))

        try:
            result = await EnforcementEngine(infra).run_cycle()
        finally:
            await infra.entitlements.aclose()

        assert result["errors"] == {}
        assert [f["tenant_id"] for f in result["entitlement_failures"]] == [tenant.tenant_id]
