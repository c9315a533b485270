"""
Autoscale Engine

Every cycle, each active tenant without an in-flight AutoscaleEvent is checked
against the configured trigger thresholds. A trigger only counts when the
newest metric sample is fresh and an unbroken run of breaching samples covers
``autoscale_sustain_seconds``. All triggers that fire for a tenant in one cycle
collapse into a single event whose action is chosen by fixed precedence:
promote_dedicated > scale_up > add_worker > scale_down > remove_worker.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app import database
from app.config import settings
from app.constants.plans import ceiling_for
from app.exceptions import ConflictError, NotDedicated
from app.infra import Infrastructure
from app.models.autoscale import (
    ACTION_PRECEDENCE,
    INFLIGHT_STATUSES,
    AutoscaleEvent,
    AutoscaleStatus,
    ScaleAction,
    TriggerType,
)
from app.models.metric_sample import TenantMetricSample
from app.models.tenant import TenantInstance, TenantStatus
from app.services.lifecycle_service import SCALABLE_FIELDS, LifecycleManager, validate_against_ceiling
from app.services.promotion_service import RESULT_COMPLETED, PromotionService
from app.services.registry import TenantRegistry
from app.utils.clock import ensure_utc, utcnow
from app.utils.fanout import run_per_tenant
from app.utils.metrics import record_autoscale_event

logger = logging.getLogger(__name__)

MIN_MEMORY_MB = 1024


@dataclass
class Trigger:
    trigger_type: TriggerType
    value: float
    threshold: float


@dataclass
class ScaleDecision:
    action: ScaleAction
    trigger: Trigger
    changes: dict[str, int] = field(default_factory=dict)
    coalesced: list[str] = field(default_factory=list)


def sustained(samples: list[TenantMetricSample], breaching: Callable[[TenantMetricSample], bool], now=None) -> bool:
    """
    True when the newest sample is fresh and the unbroken run of breaching
    samples ending at it spans at least ``autoscale_sustain_seconds``.

    ``samples`` must be ordered newest first.
    """
    if not samples:
        return False
    now = now or utcnow()
    newest = ensure_utc(samples[0].collected_at)
    if now - newest > timedelta(seconds=settings.metrics_max_age_seconds):
        return False

    oldest_breach = None
    for sample in samples:
        if not breaching(sample):
            break
        oldest_breach = ensure_utc(sample.collected_at)
    if oldest_breach is None:
        return False
    return (newest - oldest_breach) >= timedelta(seconds=settings.autoscale_sustain_seconds)


def _cap(plan: str, changes: dict[str, int]) -> dict[str, int]:
    ceiling = ceiling_for(plan)
    return {name: min(value, getattr(ceiling, name)) for name, value in changes.items()}


def decide(tenant: TenantInstance, samples: list[TenantMetricSample], now=None) -> ScaleDecision | None:
    """Pick at most one action for the tenant from its recent samples."""
    if not samples:
        return None
    latest = samples[0]
    candidates: list[ScaleDecision] = []

    queue_wait = Trigger(
        TriggerType.QUEUE_WAIT_P95, latest.queue_wait_p95_seconds, settings.autoscale_queue_wait_p95_threshold
    )
    executions = Trigger(
        TriggerType.EXECUTIONS_PER_MIN, latest.executions_per_minute, settings.autoscale_executions_min_threshold
    )
    cpu = Trigger(TriggerType.CPU_USAGE, latest.cpu_percent, settings.autoscale_cpu_threshold)
    memory = Trigger(TriggerType.MEMORY_USAGE, latest.memory_percent, settings.autoscale_memory_threshold)

    queue_hot = sustained(samples, lambda s: s.queue_wait_p95_seconds > queue_wait.threshold, now)
    executions_hot = sustained(samples, lambda s: s.executions_per_minute > executions.threshold, now)
    cpu_hot = sustained(samples, lambda s: s.cpu_percent > cpu.threshold, now)
    memory_hot = sustained(samples, lambda s: s.memory_percent > memory.threshold, now)

    if not tenant.is_dedicated:
        # Shared tenants can only grow by leaving the pool
        if queue_hot or executions_hot:
            candidates.append(ScaleDecision(ScaleAction.PROMOTE_DEDICATED, queue_wait if queue_hot else executions))
    else:
        if cpu_hot or memory_hot:
            changes = {}
            if cpu_hot:
                changes["cpu_cores"] = tenant.cpu_cores + 1
            if memory_hot:
                changes["memory_mb"] = int(tenant.memory_mb * 1.5)
            candidates.append(ScaleDecision(ScaleAction.SCALE_UP, cpu if cpu_hot else memory, changes))
        if queue_hot or executions_hot:
            candidates.append(
                ScaleDecision(
                    ScaleAction.ADD_WORKER, queue_wait if queue_hot else executions, {"workers": tenant.workers + 1}
                )
            )
        idle = sustained(
            samples,
            lambda s: s.cpu_percent < settings.autoscale_scale_down_cpu
            and s.memory_percent < settings.autoscale_scale_down_memory,
            now,
        )
        if idle and tenant.cpu_cores > 1:
            candidates.append(
                ScaleDecision(
                    ScaleAction.SCALE_DOWN,
                    Trigger(TriggerType.CPU_USAGE, latest.cpu_percent, settings.autoscale_scale_down_cpu),
                    {"cpu_cores": tenant.cpu_cores - 1, "memory_mb": max(int(tenant.memory_mb * 0.8), MIN_MEMORY_MB)},
                )
            )
        quiet = sustained(samples, lambda s: s.queue_wait_p95_seconds < 1 and s.executions_per_minute < 2, now)
        if quiet and tenant.workers > 1:
            candidates.append(
                ScaleDecision(
                    ScaleAction.REMOVE_WORKER,
                    Trigger(TriggerType.QUEUE_WAIT_P95, latest.queue_wait_p95_seconds, 1.0),
                    {"workers": tenant.workers - 1},
                )
            )

    for candidate in candidates:
        if candidate.changes:
            candidate.changes = _cap(tenant.plan, candidate.changes)
    # A change already at the ceiling is a no-op
    candidates = [
        c for c in candidates
        if c.action == ScaleAction.PROMOTE_DEDICATED
        or any(getattr(tenant, name) != value for name, value in c.changes.items())
    ]
    if not candidates:
        return None

    candidates.sort(key=lambda c: ACTION_PRECEDENCE[c.action])
    chosen = candidates[0]
    chosen.coalesced = [c.trigger.trigger_type.value for c in candidates[1:]]
    return chosen


class AutoscaleEngine:
    """Periodic and manual scaling decisions."""

    def __init__(self, infra: Infrastructure):
        self.infra = infra

    async def run_cycle(self) -> dict[str, Any]:
        """Evaluate every active tenant once. Safe to call repeatedly."""
        async with database.AsyncSessionLocal() as db:
            await fail_stale_events(db)
            tenant_ids = await TenantRegistry(db).list_ids(statuses=[TenantStatus.ACTIVE])

        outcomes = await run_per_tenant(
            tenant_ids, self.evaluate_tenant, settings.max_concurrent_tenant_ops, job="autoscale"
        )
        events = [o["result"] for o in outcomes.values() if o["ok"] and o["result"].get("event_id")]
        errors = {tenant_id: o for tenant_id, o in outcomes.items() if not o["ok"]}
        logger.info("Autoscale cycle: %d tenants, %d events, %d errors", len(tenant_ids), len(events), len(errors))
        return {"evaluated": len(tenant_ids), "events": events, "errors": errors}

    async def evaluate_tenant(self, db: AsyncSession, tenant_id: str) -> dict[str, Any]:
        registry = TenantRegistry(db)
        tenant = await registry.get(tenant_id)
        if tenant.status != TenantStatus.ACTIVE.value:
            return {"tenant_id": tenant_id, "skipped": "not_active"}
        if await registry.has_inflight_autoscale(tenant_id):
            return {"tenant_id": tenant_id, "skipped": "event_in_flight"}

        samples = await self._recent_samples(db, tenant_id)
        decision = decide(tenant, samples)
        if decision is None:
            return {"tenant_id": tenant_id, "action": None}

        event = await self._open_event(db, tenant, decision)
        if event is None:
            return {"tenant_id": tenant_id, "skipped": "event_in_flight"}
        return await self._execute(db, tenant, event, decision)

    async def trigger_manual(
        self,
        db: AsyncSession,
        tenant_id: str,
        action: ScaleAction,
        changes: dict[str, int] | None = None,
    ) -> dict[str, Any]:
        """Run one action without threshold checks; still one in-flight event per tenant."""
        registry = TenantRegistry(db)
        tenant = await registry.get(tenant_id)
        action = ScaleAction(action)
        changes = {k: v for k, v in (changes or {}).items() if k in SCALABLE_FIELDS and v is not None}
        if action == ScaleAction.PROMOTE_DEDICATED:
            if tenant.is_dedicated:
                raise ConflictError("Tenant already runs on a dedicated container", details={"tenant_id": tenant_id})
        else:
            if not tenant.is_dedicated:
                raise NotDedicated(tenant_id)
            if not changes:
                changes = self._default_changes(tenant, action)
            target = {name: changes.get(name, getattr(tenant, name)) for name in SCALABLE_FIELDS}
            validate_against_ceiling(tenant.plan, target)

        decision = ScaleDecision(action, Trigger(TriggerType.MANUAL, 0.0, 0.0), changes)
        event = await self._open_event(db, tenant, decision)
        if event is None:
            raise ConflictError(
                "An autoscale event is already in flight for this tenant", details={"tenant_id": tenant_id}
            )
        return await self._execute(db, tenant, event, decision)

    @staticmethod
    def _default_changes(tenant: TenantInstance, action: ScaleAction) -> dict[str, int]:
        if action == ScaleAction.SCALE_UP:
            return {"cpu_cores": tenant.cpu_cores + 1, "memory_mb": int(tenant.memory_mb * 1.5)}
        if action == ScaleAction.SCALE_DOWN:
            return {
                "cpu_cores": max(tenant.cpu_cores - 1, 1),
                "memory_mb": max(int(tenant.memory_mb * 0.8), MIN_MEMORY_MB),
            }
        if action == ScaleAction.ADD_WORKER:
            return {"workers": tenant.workers + 1}
        if action == ScaleAction.REMOVE_WORKER:
            return {"workers": max(tenant.workers - 1, 1)}
        return {}

    async def _recent_samples(self, db: AsyncSession, tenant_id: str) -> list[TenantMetricSample]:
        window = settings.autoscale_sustain_seconds + settings.metrics_max_age_seconds
        since = utcnow() - timedelta(seconds=window)
        result = await db.execute(
            select(TenantMetricSample)
            .where(TenantMetricSample.tenant_id == tenant_id, TenantMetricSample.collected_at >= since)
            .order_by(TenantMetricSample.collected_at.desc())
            .limit(500)
        )
        return list(result.scalars().all())

    async def _open_event(self, db: AsyncSession, tenant: TenantInstance, decision: ScaleDecision) -> AutoscaleEvent | None:
        """Insert the pending event; the partial unique index rejects a second in-flight one."""
        now = utcnow()
        event = AutoscaleEvent(
            tenant_id=tenant.tenant_id,
            trigger_type=decision.trigger.trigger_type.value,
            trigger_value=decision.trigger.value,
            trigger_threshold=decision.trigger.threshold,
            action=decision.action.value,
            action_details={"changes": decision.changes, "coalesced_triggers": decision.coalesced},
            status=AutoscaleStatus.PENDING.value,
            resources_before=tenant.resources(),
            created_at=now,
            updated_at=now,
            metadata_={},
        )
        db.add(event)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.info("Autoscale event already in flight", extra={"tenant_id": tenant.tenant_id})
            return None
        record_autoscale_event(decision.action.value, decision.trigger.trigger_type.value, AutoscaleStatus.PENDING.value)
        return event

    async def _execute(
        self, db: AsyncSession, tenant: TenantInstance, event: AutoscaleEvent, decision: ScaleDecision
    ) -> dict[str, Any]:
        tenant_id = tenant.tenant_id
        event_id = event.id
        event.status = AutoscaleStatus.IN_PROGRESS.value
        event.started_at = utcnow()
        event.updated_at = event.started_at
        await db.commit()

        status = AutoscaleStatus.COMPLETED
        error_message = None
        resources_after = None
        try:
            if decision.action == ScaleAction.PROMOTE_DEDICATED:
                result = await PromotionService(db, self.infra).promote(tenant_id, actor="autoscale")
                if result["status"] != RESULT_COMPLETED:
                    raise ConflictError(f"Promotion ended {result['status']}", details=result)
            else:
                await LifecycleManager(db, self.infra).scale(tenant_id, actor="autoscale", **decision.changes)
            resources_after = (await TenantRegistry(db).get(tenant_id)).resources()
        except ConflictError as e:
            await db.rollback()
            status = AutoscaleStatus.CANCELLED
            error_message = e.message
        except asyncio.CancelledError:
            # The event must not stay in flight, or it blocks the tenant's next one
            await db.rollback()
            await self._finish(db, event_id, decision, AutoscaleStatus.FAILED, "interrupted before completion", None)
            raise
        except Exception as e:
            await db.rollback()
            status = AutoscaleStatus.FAILED
            error_message = getattr(e, "message", None) or str(e)
            logger.warning(
                "Autoscale %s failed for %s: %s", decision.action.value, tenant_id, error_message,
                extra={"tenant_id": tenant_id, "event": "autoscale_failed"},
            )

        return await self._finish(db, event_id, decision, status, error_message, resources_after)

    async def _finish(
        self,
        db: AsyncSession,
        event_id: str,
        decision: ScaleDecision,
        status: AutoscaleStatus,
        error_message: str | None,
        resources_after: dict | None,
    ) -> dict[str, Any]:
        result = await db.execute(
            select(AutoscaleEvent).where(AutoscaleEvent.id == event_id).execution_options(populate_existing=True)
        )
        event = result.scalars().one()
        now = utcnow()
        event.status = status.value
        event.success = status == AutoscaleStatus.COMPLETED
        event.error_message = error_message
        event.resources_after = resources_after
        event.completed_at = now
        event.updated_at = now
        await db.commit()
        record_autoscale_event(decision.action.value, decision.trigger.trigger_type.value, status.value)
        logger.info(
            "Autoscale %s for %s: %s", decision.action.value, event.tenant_id, status.value,
            extra={"tenant_id": event.tenant_id, "event": "autoscale"},
        )
        return {
            "tenant_id": event.tenant_id,
            "event_id": event_id,
            "action": decision.action.value,
            "trigger_type": decision.trigger.trigger_type.value,
            "status": status.value,
            "error_message": error_message,
        }


async def fail_stale_events(db: AsyncSession, now=None) -> int:
    """Mark events left in flight longer than the lease TTL as failed."""
    now = now or utcnow()
    cutoff = now - timedelta(seconds=settings.lease_ttl_seconds)
    result = await db.execute(
        update(AutoscaleEvent)
        .where(AutoscaleEvent.status.in_(INFLIGHT_STATUSES), AutoscaleEvent.updated_at < cutoff)
        .values(
            status=AutoscaleStatus.FAILED.value,
            success=False,
            error_message="abandoned in flight",
            completed_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount:
        logger.warning("Failed %d autoscale events abandoned in flight", result.rowcount)
    return result.rowcount
