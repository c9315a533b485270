"""
Tests for the outbound bridge client
"""

import httpx
import pytest

from app.auth import SIGNATURE_HEADER, TIMESTAMP_HEADER
from app.bridge_client import BridgeAction, BridgeClient, route_for
from app.exceptions import InfraUnavailable, ValidationError
from main import app


class TestRouteFor:
    def test_actions_map_to_allow_listed_routes(self):
        assert route_for(BridgeAction.PROVISION) == ("POST", "/tenants")
        assert route_for(BridgeAction.SCALE, "t-1") == ("POST", "/tenants/t-1/scale")
        assert route_for(BridgeAction.TENANT_METRICS, "t-1") == ("GET", "/metrics/tenant/t-1")
        assert route_for(BridgeAction.RUN_ENFORCEMENT) == ("POST", "/enforcement/run")

    def test_tenant_actions_need_a_tenant(self):
        with pytest.raises(ValidationError):
            route_for(BridgeAction.BACKUP)

    def test_free_form_action_rejected(self):
        with pytest.raises(ValueError):
            route_for(BridgeAction("delete_tenant"))


class TestBridgeClient:
    @pytest.mark.asyncio
    async def test_signed_calls_are_accepted(self, setup_test_database, infra):
        client = BridgeClient(base_url="http://test", transport=httpx.ASGITransport(app=app))
        try:
            created = await client.call(
                BridgeAction.PROVISION, body={"name": "Acme", "email": "ops@acme.io", "subdomain": "acme"}
            )
            assert created.status_code == 201
            tenant_id = created.json()["tenant_id"]

            snapshot = await client.call(BridgeAction.TENANT_METRICS, tenant_id)
            assert snapshot.status_code == 200
            assert snapshot.json()["subdomain"] == "acme"

            run = await client.call(BridgeAction.RUN_ENFORCEMENT)
            assert run.status_code == 200
        finally:
            await client.aclose()

    @pytest.mark.asyncio
    async def test_headers_carry_token_signature_and_correlation(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(request.headers)
            return httpx.Response(200, json={})

        client = BridgeClient(base_url="http://test", transport=httpx.MockTransport(handler))
        try:
            await client.call(BridgeAction.RUN_AUTOSCALE, body={"tenant_id": "t-1"})
        finally:
            await client.aclose()

        assert seen["authorization"].startswith("Bearer ")
        assert SIGNATURE_HEADER in seen
        assert TIMESTAMP_HEADER in seen
        assert seen["x-correlation-id"]

    @pytest.mark.asyncio
    async def test_unreachable_control_plane(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = BridgeClient(base_url="http://test", transport=httpx.MockTransport(handler))
        try:
            with pytest.raises(InfraUnavailable):
                await client.call(BridgeAction.HEALTH)
        finally:
            await client.aclose()
