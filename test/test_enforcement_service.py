"""
Tests for the enforcement engine
"""

import pytest
from sqlalchemy import select

from app.infra.proxy import router_name_for
from app.models.enforcement import EnforcementAction, EnforcementEvent, EnforcementStatus, LimitType, Severity
from app.models.tenant import TenantStatus
from app.services.enforcement_service import EnforcementEngine, next_action, severity_for
from app.services.lifecycle_service import LifecycleManager
from app.services.registry import TenantRegistry
from utils.factories import add_sample, create_test_tenant


async def events_for(db, tenant_id):
    result = await db.execute(
        select(EnforcementEvent)
        .where(EnforcementEvent.tenant_id == tenant_id)
        .order_by(EnforcementEvent.created_at)
        .execution_options(populate_existing=True)
    )
    return result.scalars().all()


def executions_limit(result, tenant_id):
    limits = result["outcomes"][tenant_id]["result"]["limits"]
    return next(item for item in limits if item["limit_type"] == LimitType.EXECUTIONS_MONTHLY.value)


async def cycle_with(db, engine, tenant_id, executions):
    await add_sample(db, tenant_id, executions_month=executions)
    result = await engine.run_cycle()
    assert not result["errors"]
    return executions_limit(result, tenant_id)


class TestLadder:
    def test_severity_bands(self):
        assert severity_for(50) == Severity.INFO
        assert severity_for(80) == Severity.WARNING
        assert severity_for(95) == Severity.CRITICAL

    def test_standard_plan_ladder(self):
        executions = LimitType.EXECUTIONS_MONTHLY
        assert next_action(EnforcementAction.WARNING, executions, 96, False) == EnforcementAction.THROTTLE
        assert next_action(EnforcementAction.THROTTLE, executions, 96, False) is None
        assert next_action(EnforcementAction.THROTTLE, executions, 100, False) == EnforcementAction.SUSPEND
        assert next_action(EnforcementAction.SUSPEND, executions, 150, False) is None

    def test_soft_limits_never_suspend(self):
        assert next_action(EnforcementAction.THROTTLE, LimitType.CPU_USAGE, 150, False) is None

    def test_overage_plans_stop_at_billing(self):
        assert next_action(EnforcementAction.WARNING, LimitType.STORAGE, 99, True) == EnforcementAction.OVERAGE_BILLING
        assert next_action(EnforcementAction.OVERAGE_BILLING, LimitType.STORAGE, 200, True) is None


class TestEnforcementCycle:
    @pytest.mark.asyncio
    async def test_graduated_escalation_and_resolution(self, test_db, infra):
        tenant = await create_test_tenant(test_db, infra, subdomain="acme")
        tenant_id = tenant.tenant_id
        engine = EnforcementEngine(infra)
        router = router_name_for("acme")

        first = await cycle_with(test_db, engine, tenant_id, 950)
        assert first["action"] == EnforcementAction.WARNING.value
        assert first["severity"] == Severity.CRITICAL.value
        assert first["notification_sent"] is True
        assert infra.notifier.kinds() == ["enforcement.warning"]

        second = await cycle_with(test_db, engine, tenant_id, 950)
        assert second["action"] == EnforcementAction.THROTTLE.value
        assert infra.proxy.routes[router].throttled is True

        # 95% is below the suspend band, so throttle holds
        for _ in range(2):
            held = await cycle_with(test_db, engine, tenant_id, 950)
            assert held["action"] == EnforcementAction.THROTTLE.value

        await cycle_with(test_db, engine, tenant_id, 1000)
        suspended = await cycle_with(test_db, engine, tenant_id, 1000)
        assert suspended["action"] == EnforcementAction.SUSPEND.value
        assert (await TenantRegistry(test_db).get(tenant_id)).status == TenantStatus.SUSPENDED.value

        resolved = await cycle_with(test_db, engine, tenant_id, 100)
        assert resolved["status"] == EnforcementStatus.RESOLVED.value
        refreshed = await TenantRegistry(test_db).get(tenant_id)
        assert refreshed.status == TenantStatus.ACTIVE.value
        assert "throttled" not in refreshed.metadata_
        assert infra.proxy.routes[router].throttled is False

        events = await events_for(test_db, tenant_id)
        assert len(events) == 1
        assert events[0].status == EnforcementStatus.RESOLVED.value
        assert [h["action"] for h in events[0].metadata_["history"]] == ["throttle", "suspend"]
        assert infra.notifier.kinds() == [
            "enforcement.warning",
            "enforcement.throttle",
            "enforcement.suspend",
            "enforcement.suspend",
        ]

    @pytest.mark.asyncio
    async def test_suspension_held_until_every_limit_resolves(self, test_db, infra):
        tenant = await create_test_tenant(test_db, infra, subdomain="acme")
        tenant_id = tenant.tenant_id
        engine = EnforcementEngine(infra)
        router = router_name_for("acme")

        for _ in range(4):
            await add_sample(test_db, tenant_id, executions_month=1000, storage_gb=5.0)
            result = await engine.run_cycle()
            assert not result["errors"]
        events = await events_for(test_db, tenant_id)
        assert {e.limit_type: e.action for e in events} == {
            LimitType.EXECUTIONS_MONTHLY.value: EnforcementAction.SUSPEND.value,
            LimitType.STORAGE.value: EnforcementAction.SUSPEND.value,
        }
        assert (await TenantRegistry(test_db).get(tenant_id)).status == TenantStatus.SUSPENDED.value

        # Executions drop back, storage is still full
        await add_sample(test_db, tenant_id, executions_month=0, storage_gb=5.0)
        await engine.run_cycle()

        statuses = {e.limit_type: e.status for e in await events_for(test_db, tenant_id)}
        assert statuses[LimitType.EXECUTIONS_MONTHLY.value] == EnforcementStatus.RESOLVED.value
        assert statuses[LimitType.STORAGE.value] == EnforcementStatus.ACTIVE.value
        held = await TenantRegistry(test_db).get(tenant_id)
        assert held.status == TenantStatus.SUSPENDED.value
        assert held.metadata_.get("throttled") is True

        await add_sample(test_db, tenant_id, executions_month=0, storage_gb=1.0)
        await engine.run_cycle()

        released = await TenantRegistry(test_db).get(tenant_id)
        assert released.status == TenantStatus.ACTIVE.value
        assert "throttled" not in released.metadata_
        assert infra.proxy.routes[router].throttled is False

    @pytest.mark.asyncio
    async def test_suspension_placed_elsewhere_is_not_lifted(self, test_db, infra):
        tenant = await create_test_tenant(test_db, infra)
        tenant_id = tenant.tenant_id
        engine = EnforcementEngine(infra)
        for executions in (1000, 1000, 1000):
            await cycle_with(test_db, engine, tenant_id, executions)
        await LifecycleManager(test_db, infra).suspend(tenant_id, "billing dispute", actor="ops")

        suspended = await cycle_with(test_db, engine, tenant_id, 1000)
        assert suspended["action"] == EnforcementAction.SUSPEND.value
        events = await events_for(test_db, tenant_id)
        assert events[0].metadata_["applied_suspend"] is False

        resolved = await cycle_with(test_db, engine, tenant_id, 0)
        assert resolved["status"] == EnforcementStatus.RESOLVED.value
        assert (await TenantRegistry(test_db).get(tenant_id)).status == TenantStatus.SUSPENDED.value

    @pytest.mark.asyncio
    async def test_action_never_steps_down_while_over_threshold(self, test_db, infra):
        tenant = await create_test_tenant(test_db, infra)
        engine = EnforcementEngine(infra)

        await cycle_with(test_db, engine, tenant.tenant_id, 960)
        await cycle_with(test_db, engine, tenant.tenant_id, 960)
        warning_band = await cycle_with(test_db, engine, tenant.tenant_id, 850)

        assert warning_band["action"] == EnforcementAction.THROTTLE.value
        assert warning_band["severity"] == Severity.CRITICAL.value

    @pytest.mark.asyncio
    async def test_breach_inside_cooldown_reopens_at_previous_rank(self, test_db, infra):
        tenant = await create_test_tenant(test_db, infra, subdomain="acme")
        engine = EnforcementEngine(infra)
        for executions in (960, 960, 100):
            await cycle_with(test_db, engine, tenant.tenant_id, executions)

        reopened = await cycle_with(test_db, engine, tenant.tenant_id, 850)

        assert reopened["action"] == EnforcementAction.THROTTLE.value
        assert reopened["status"] == EnforcementStatus.ACTIVE.value
        assert infra.proxy.routes[router_name_for("acme")].throttled is True
        events = await events_for(test_db, tenant.tenant_id)
        assert len(events) == 1
        assert events[0].metadata_["reopened"] == 1

    @pytest.mark.asyncio
    async def test_overage_plan_bills_instead_of_throttling(self, test_db, infra):
        tenant = await create_test_tenant(test_db, infra, plan="enterprise")
        engine = EnforcementEngine(infra)

        await cycle_with(test_db, engine, tenant.tenant_id, 99000)
        billed = await cycle_with(test_db, engine, tenant.tenant_id, 120000)

        assert billed["action"] == EnforcementAction.OVERAGE_BILLING.value
        refreshed = await TenantRegistry(test_db).get(tenant.tenant_id)
        assert refreshed.status == TenantStatus.ACTIVE.value
        assert "throttled" not in refreshed.metadata_

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, test_db, infra):
        tenant = await create_test_tenant(test_db, infra)
        quotas = await TenantRegistry(test_db).get_quotas(tenant.tenant_id)
        quotas.enforcement_enabled = False
        await test_db.commit()

        await add_sample(test_db, tenant.tenant_id, executions_month=990)
        result = await EnforcementEngine(infra).evaluate_tenant(test_db, tenant.tenant_id)

        assert result["dry_run"] is True
        report = next(r for r in result["limits"] if r["limit_type"] == LimitType.EXECUTIONS_MONTHLY.value)
        assert report["would_apply"] == EnforcementAction.WARNING.value
        assert await events_for(test_db, tenant.tenant_id) == []
        assert infra.notifier.sent == []

    @pytest.mark.asyncio
    async def test_entitlement_snapshot_overrides_quota(self, test_db, infra):
        tenant = await create_test_tenant(test_db, infra)
        quotas = await TenantRegistry(test_db).get_quotas(tenant.tenant_id)
        quotas.billing_entitlement_ref = "sub_123"
        await test_db.commit()
        infra.entitlements.snapshots["sub_123"] = {"executions_monthly": 100}

        await add_sample(test_db, tenant.tenant_id, executions_month=90)
        result = await EnforcementEngine(infra).evaluate_tenant(test_db, tenant.tenant_id)

        limit = next(r for r in result["limits"] if r["limit_type"] == LimitType.EXECUTIONS_MONTHLY.value)
        assert limit["usage_percentage"] == 90.0
        assert limit["action"] == EnforcementAction.WARNING.value

    @pytest.mark.asyncio
    async def test_billing_outage_skips_enforcement(self, test_db, infra):
        tenant = await create_test_tenant(test_db, infra)
        await add_sample(test_db, tenant.tenant_id, executions_month=999)
        infra.entitlements.available = False

        result = await EnforcementEngine(infra).run_cycle()

        assert result["outcomes"][tenant.tenant_id]["result"]["skipped"] == "entitlements_unavailable"
        assert [f["tenant_id"] for f in result["entitlement_failures"]] == [tenant.tenant_id]
        assert await events_for(test_db, tenant.tenant_id) == []

    @pytest.mark.asyncio
    async def test_failed_notification_is_retried(self, test_db, infra):
        tenant = await create_test_tenant(test_db, infra)
        engine = EnforcementEngine(infra)
        infra.notifier.failures = 1

        first = await cycle_with(test_db, engine, tenant.tenant_id, 850)
        assert first["notification_sent"] is False
        assert infra.notifier.sent == []

        second = await cycle_with(test_db, engine, tenant.tenant_id, 850)
        assert second["notification_sent"] is True
        assert infra.notifier.kinds() == ["enforcement.warning"]

        await cycle_with(test_db, engine, tenant.tenant_id, 850)
        assert infra.notifier.kinds() == ["enforcement.warning"]

    @pytest.mark.asyncio
    async def test_tenant_without_metrics_is_skipped(self, test_db, infra):
        tenant = await create_test_tenant(test_db, infra)
        result = await EnforcementEngine(infra).evaluate_tenant(test_db, tenant.tenant_id)
        assert result == {"tenant_id": tenant.tenant_id, "skipped": "no_metrics"}

    @pytest.mark.asyncio
    async def test_acknowledge_keeps_event_open(self, test_db, infra):
        tenant = await create_test_tenant(test_db, infra)
        engine = EnforcementEngine(infra)
        opened = await cycle_with(test_db, engine, tenant.tenant_id, 850)

        event = await engine.acknowledge(test_db, opened["event_id"])
        assert event.status == EnforcementStatus.ACKNOWLEDGED.value
        assert event.acknowledged_at is not None

        again = await cycle_with(test_db, engine, tenant.tenant_id, 860)
        assert again["event_id"] == opened["event_id"]
        assert len(await events_for(test_db, tenant.tenant_id)) == 1
