"""
Tests for the autoscale engine
"""

import asyncio
from datetime import timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from app.config import settings
from app.exceptions import ConflictError, NotDedicated, PlanCeilingExceeded
from app.models.autoscale import AutoscaleEvent, AutoscaleStatus, ScaleAction, TriggerType
from app.models.tenant import TenantMode, TenantStatus
from app.services.autoscale_service import AutoscaleEngine, decide, sustained
from app.services.registry import TenantRegistry
from app.utils.clock import utcnow
from utils.factories import add_sample, add_sustained_samples, create_test_tenant

SUSTAIN = settings.autoscale_sustain_seconds


def sample(age_seconds: int, **values):
    defaults = {
        "queue_wait_p95_seconds": 0.0,
        "executions_per_minute": 0.0,
        "cpu_percent": 50.0,
        "memory_percent": 50.0,
    }
    defaults.update(values)
    return SimpleNamespace(collected_at=utcnow() - timedelta(seconds=age_seconds), **defaults)


def samples_over(span: int, step: int = 60, **values):
    return [sample(age, **values) for age in range(0, span + 1, step)]


def tenant_stub(mode="dedicated", plan="pro", cpu_cores=2, memory_mb=2048, workers=2):
    return SimpleNamespace(
        mode=mode, plan=plan, cpu_cores=cpu_cores, memory_mb=memory_mb, workers=workers,
        is_dedicated=mode == "dedicated",
    )


class TestSustained:
    def test_needs_the_full_window(self):
        hot = lambda s: s.cpu_percent > 80  # noqa: E731
        assert sustained(samples_over(SUSTAIN, cpu_percent=95), hot) is True
        assert sustained(samples_over(SUSTAIN - 60, cpu_percent=95), hot) is False

    def test_a_cool_sample_breaks_the_run(self):
        hot = lambda s: s.cpu_percent > 80  # noqa: E731
        run = samples_over(SUSTAIN, cpu_percent=95)
        run[2].cpu_percent = 10
        assert sustained(run, hot) is False

    def test_stale_samples_do_not_count(self):
        stale = [sample(settings.metrics_max_age_seconds + 60 + age, cpu_percent=95) for age in range(0, SUSTAIN + 1, 60)]
        assert sustained(stale, lambda s: s.cpu_percent > 80) is False

    def test_no_samples(self):
        assert sustained([], lambda s: True) is False


class TestDecide:
    def test_shared_tenant_promotes_on_queue_wait(self):
        decision = decide(tenant_stub(mode="shared", plan="starter"), samples_over(SUSTAIN, queue_wait_p95_seconds=9))
        assert decision.action == ScaleAction.PROMOTE_DEDICATED
        assert decision.trigger.trigger_type == TriggerType.QUEUE_WAIT_P95

    def test_shared_tenant_ignores_cpu(self):
        assert decide(tenant_stub(mode="shared"), samples_over(SUSTAIN, cpu_percent=99)) is None

    def test_scale_up_wins_and_coalesces_add_worker(self):
        decision = decide(
            tenant_stub(),
            samples_over(SUSTAIN, cpu_percent=95, memory_percent=90, queue_wait_p95_seconds=9),
        )
        assert decision.action == ScaleAction.SCALE_UP
        assert decision.changes == {"cpu_cores": 3, "memory_mb": 3072}
        assert decision.coalesced == [TriggerType.QUEUE_WAIT_P95.value]

    def test_add_worker_on_executions(self):
        decision = decide(tenant_stub(), samples_over(SUSTAIN, executions_per_minute=40))
        assert decision.action == ScaleAction.ADD_WORKER
        assert decision.changes == {"workers": 3}

    def test_idle_tenant_scales_down(self):
        decision = decide(tenant_stub(cpu_cores=4, memory_mb=4096, workers=1), samples_over(SUSTAIN, cpu_percent=5, memory_percent=10))
        assert decision.action == ScaleAction.SCALE_DOWN
        assert decision.changes == {"cpu_cores": 3, "memory_mb": 3276}

    def test_changes_capped_at_plan_ceiling(self):
        # starter ceiling is 2 cores; already there, so no decision
        stub = tenant_stub(plan="starter", cpu_cores=2, memory_mb=2048, workers=1)
        assert decide(stub, samples_over(SUSTAIN, cpu_percent=95)) is None

    def test_nothing_to_do(self):
        assert decide(tenant_stub(workers=1, cpu_cores=1), samples_over(SUSTAIN)) is None


class TestAutoscaleCycle:
    @pytest.mark.asyncio
    async def test_shared_tenant_with_sustained_queue_wait_is_promoted(self, test_db, infra):
        tenant = await create_test_tenant(test_db, infra, subdomain="acme")
        await add_sustained_samples(test_db, tenant.tenant_id, SUSTAIN + 60, queue_wait_p95_seconds=12.0)

        result = await AutoscaleEngine(infra).run_cycle()

        assert result["evaluated"] == 1
        events = (await test_db.execute(select(AutoscaleEvent))).scalars().all()
        assert len(events) == 1
        assert events[0].action == ScaleAction.PROMOTE_DEDICATED.value
        assert events[0].status == AutoscaleStatus.COMPLETED.value
        assert events[0].success is True
        assert events[0].resources_after is not None

        promoted = await TenantRegistry(test_db).get(tenant.tenant_id)
        assert promoted.mode == TenantMode.DEDICATED.value
        assert promoted.status == TenantStatus.ACTIVE.value
        assert promoted.login_url == f"https://acme.{settings.proxy_domain}"

    @pytest.mark.asyncio
    async def test_dedicated_tenant_scales_up(self, test_db, infra):
        tenant = await create_test_tenant(test_db, infra, mode=TenantMode.DEDICATED, plan="pro")
        await add_sustained_samples(test_db, tenant.tenant_id, SUSTAIN, cpu_percent=97.0, memory_percent=40.0)

        result = await AutoscaleEngine(infra).run_cycle()

        assert result["events"][0]["action"] == ScaleAction.SCALE_UP.value
        assert result["events"][0]["status"] == AutoscaleStatus.COMPLETED.value
        assert (await TenantRegistry(test_db).get(tenant.tenant_id)).cpu_cores == 3

    @pytest.mark.asyncio
    async def test_tenant_with_event_in_flight_is_skipped(self, test_db, infra):
        tenant = await create_test_tenant(test_db, infra, mode=TenantMode.DEDICATED, plan="pro")
        await add_sustained_samples(test_db, tenant.tenant_id, SUSTAIN, cpu_percent=97.0)
        test_db.add(
            AutoscaleEvent(
                tenant_id=tenant.tenant_id, trigger_type="manual", action="add_worker",
                status=AutoscaleStatus.IN_PROGRESS.value, action_details={}, metadata_={},
            )
        )
        await test_db.commit()

        result = await AutoscaleEngine(infra).run_cycle()

        assert result["evaluated"] == 1
        assert result["events"] == []
        count = await test_db.execute(select(func.count()).select_from(AutoscaleEvent))
        assert count.scalar() == 1

    @pytest.mark.asyncio
    async def test_repeated_cycles_never_open_two_inflight_events(self, test_db, infra):
        tenant = await create_test_tenant(test_db, infra, mode=TenantMode.DEDICATED, plan="pro")
        await add_sustained_samples(test_db, tenant.tenant_id, SUSTAIN, executions_per_minute=50.0)
        engine = AutoscaleEngine(infra)

        for _ in range(3):
            await engine.run_cycle()
            inflight = await test_db.execute(
                select(func.count()).select_from(AutoscaleEvent).where(
                    AutoscaleEvent.status.in_([AutoscaleStatus.PENDING.value, AutoscaleStatus.IN_PROGRESS.value])
                )
            )
            assert inflight.scalar() == 0

    @pytest.mark.asyncio
    async def test_registry_rejects_second_inflight_event(self, test_db, infra):
        tenant = await create_test_tenant(test_db, infra, mode=TenantMode.DEDICATED, plan="pro")
        for status in (AutoscaleStatus.PENDING, AutoscaleStatus.IN_PROGRESS):
            test_db.add(
                AutoscaleEvent(
                    tenant_id=tenant.tenant_id, trigger_type="cpu_usage", action="scale_up",
                    status=status.value, action_details={}, metadata_={},
                )
            )
        with pytest.raises(IntegrityError):
            await test_db.commit()
        await test_db.rollback()

    @pytest.mark.asyncio
    async def test_failed_scale_records_failure(self, test_db, infra):
        tenant = await create_test_tenant(test_db, infra, mode=TenantMode.DEDICATED, plan="pro")
        await add_sustained_samples(test_db, tenant.tenant_id, SUSTAIN, cpu_percent=97.0)
        infra.container_engine.available = False

        result = await AutoscaleEngine(infra).run_cycle()

        event = result["events"][0]
        assert event["status"] == AutoscaleStatus.FAILED.value
        assert event["error_message"]

    @pytest.mark.asyncio
    async def test_abandoned_event_is_failed_and_unblocks_tenant(self, test_db, infra):
        tenant = await create_test_tenant(test_db, infra, mode=TenantMode.DEDICATED, plan="pro")
        await add_sustained_samples(test_db, tenant.tenant_id, SUSTAIN, cpu_percent=97.0)
        long_ago = utcnow() - timedelta(seconds=settings.lease_ttl_seconds + 60)
        abandoned = AutoscaleEvent(
            tenant_id=tenant.tenant_id, trigger_type="manual", action="add_worker",
            status=AutoscaleStatus.IN_PROGRESS.value, action_details={}, metadata_={},
            created_at=long_ago, updated_at=long_ago,
        )
        test_db.add(abandoned)
        await test_db.commit()

        result = await AutoscaleEngine(infra).run_cycle()

        assert [e["status"] for e in result["events"]] == [AutoscaleStatus.COMPLETED.value]
        swept = await test_db.execute(
            select(AutoscaleEvent).where(AutoscaleEvent.id == abandoned.id).execution_options(populate_existing=True)
        )
        event = swept.scalars().one()
        assert event.status == AutoscaleStatus.FAILED.value
        assert event.success is False


class TestManualTrigger:
    @pytest.mark.asyncio
    async def test_manual_add_worker(self, test_db, infra):
        tenant = await create_test_tenant(test_db, infra, mode=TenantMode.DEDICATED, plan="pro")

        result = await AutoscaleEngine(infra).trigger_manual(test_db, tenant.tenant_id, ScaleAction.ADD_WORKER)

        assert result["status"] == AutoscaleStatus.COMPLETED.value
        assert result["trigger_type"] == TriggerType.MANUAL.value
        assert (await TenantRegistry(test_db).get(tenant.tenant_id)).workers == 3

    @pytest.mark.asyncio
    async def test_manual_trigger_conflicts_with_inflight_event(self, test_db, infra):
        tenant = await create_test_tenant(test_db, infra, mode=TenantMode.DEDICATED, plan="pro")
        test_db.add(
            AutoscaleEvent(
                tenant_id=tenant.tenant_id, trigger_type="cpu_usage", action="scale_up",
                status=AutoscaleStatus.PENDING.value, action_details={}, metadata_={},
            )
        )
        await test_db.commit()

        with pytest.raises(ConflictError):
            await AutoscaleEngine(infra).trigger_manual(test_db, tenant.tenant_id, ScaleAction.ADD_WORKER)

    @pytest.mark.asyncio
    async def test_interrupted_scale_fails_event_and_reraises(self, test_db, infra):
        tenant = await create_test_tenant(test_db, infra, mode=TenantMode.DEDICATED, plan="pro")
        engine = AutoscaleEngine(infra)
        infra.container_engine.resize_gate = asyncio.Event()

        task = asyncio.create_task(engine.trigger_manual(test_db, tenant.tenant_id, ScaleAction.SCALE_UP))
        await asyncio.wait_for(infra.container_engine.resize_entered.wait(), timeout=5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        events = await test_db.execute(select(AutoscaleEvent).execution_options(populate_existing=True))
        assert [(e.action, e.status) for e in events.scalars().all()] == [
            (ScaleAction.SCALE_UP.value, AutoscaleStatus.FAILED.value)
        ]
        infra.container_engine.resize_gate = None
        retried = await engine.trigger_manual(test_db, tenant.tenant_id, ScaleAction.SCALE_UP)
        assert retried["status"] == AutoscaleStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_manual_scale_on_shared_tenant(self, test_db, infra):
        tenant = await create_test_tenant(test_db, infra)
        with pytest.raises(NotDedicated):
            await AutoscaleEngine(infra).trigger_manual(test_db, tenant.tenant_id, ScaleAction.SCALE_UP)

    @pytest.mark.asyncio
    async def test_manual_changes_checked_against_ceiling(self, test_db, infra):
        tenant = await create_test_tenant(test_db, infra, mode=TenantMode.DEDICATED, plan="starter")
        with pytest.raises(PlanCeilingExceeded):
            await AutoscaleEngine(infra).trigger_manual(
                test_db, tenant.tenant_id, ScaleAction.SCALE_UP, {"cpu_cores": 16}
            )
        count = await test_db.execute(select(func.count()).select_from(AutoscaleEvent))
        assert count.scalar() == 0

    @pytest.mark.asyncio
    async def test_stale_metrics_do_nothing(self, test_db, infra):
        tenant = await create_test_tenant(test_db, infra, mode=TenantMode.DEDICATED, plan="pro")
        await add_sample(
            test_db, tenant.tenant_id, collected_at=utcnow() - timedelta(seconds=settings.metrics_max_age_seconds + 30),
            cpu_percent=99.0,
        )
        result = await AutoscaleEngine(infra).evaluate_tenant(test_db, tenant.tenant_id)
        assert result == {"tenant_id": tenant.tenant_id, "action": None}
