"""
Enforcement Engine

Compares each tenant's latest usage with its quota (or the billing entitlement
snapshot when one is available) and walks an EnforcementEvent through a
graduated ladder:

    warning -> throttle -> suspend            (standard plans)
    warning -> overage_billing  (terminal)    (plans that allow paid overage)

While usage stays at or above the warning band the action never steps down;
``enforcement_escalate_cycles`` consecutive critical cycles raise it one rank.
Dropping below the warning band for ``enforcement_resolve_cycles`` cycles
resolves the event and lifts any throttle or suspension enforcement applied.
A resolved event that breaches again inside the cool-down window is reopened
at the rank it had, which prevents flapping.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app import database
from app.config import settings
from app.exceptions import ControlPlaneError, InfraUnavailable, NotFound
from app.infra import Infrastructure
from app.models.enforcement import (
    OPEN_STATUSES,
    SEVERITY_RANK,
    SUSPENDABLE_LIMITS,
    EnforcementAction,
    EnforcementEvent,
    EnforcementStatus,
    LimitType,
    Severity,
)
from app.models.metric_sample import TenantMetricSample
from app.models.tenant import TenantInstance, TenantQuotas, TenantStatus
from app.services.lifecycle_service import LifecycleManager
from app.services.registry import TenantRegistry
from app.utils.clock import utcnow
from app.utils.fanout import run_per_tenant
from app.utils.metrics import record_enforcement_event

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024

# Limit type -> quota column it is measured against
LIMIT_COLUMNS: dict[LimitType, str] = {
    LimitType.EXECUTIONS_MONTHLY: "executions_monthly",
    LimitType.CONCURRENT_EXECUTIONS: "concurrent_executions",
    LimitType.CPU_USAGE: "cpu_limit_percent",
    LimitType.MEMORY_USAGE: "memory_limit_mb",
    LimitType.STORAGE: "storage_limit_gb",
    LimitType.API_CALLS: "api_calls_hourly",
}


@dataclass
class Measurement:
    limit_type: LimitType
    current: float
    limit: float

    @property
    def percent(self) -> float:
        return round(self.current / self.limit * 100, 2)


def measurements_for(sample: TenantMetricSample, limits: dict[str, int]) -> list[Measurement]:
    """Usage vs limit per limit type; a limit of 0 disables that check."""
    usage = {
        LimitType.EXECUTIONS_MONTHLY: sample.executions_month,
        LimitType.CONCURRENT_EXECUTIONS: sample.concurrent_executions,
        LimitType.CPU_USAGE: sample.cpu_percent,
        LimitType.MEMORY_USAGE: sample.memory_bytes / BYTES_PER_MB,
        LimitType.STORAGE: sample.storage_gb,
        LimitType.API_CALLS: sample.api_calls_hour,
    }
    measurements = []
    for limit_type, column in LIMIT_COLUMNS.items():
        limit = limits.get(column) or 0
        if limit <= 0:
            continue
        measurements.append(Measurement(limit_type, float(usage[limit_type] or 0), float(limit)))
    return measurements


def severity_for(percent: float) -> Severity:
    if percent >= settings.enforcement_critical_percent:
        return Severity.CRITICAL
    if percent >= settings.enforcement_warning_percent:
        return Severity.WARNING
    return Severity.INFO


def next_action(
    current: EnforcementAction, limit_type: LimitType, percent: float, overage_allowed: bool
) -> EnforcementAction | None:
    """One rank up the ladder, or None when the event cannot escalate further."""
    if current in (EnforcementAction.OVERAGE_BILLING, EnforcementAction.SUSPEND):
        return None
    if current == EnforcementAction.WARNING:
        return EnforcementAction.OVERAGE_BILLING if overage_allowed else EnforcementAction.THROTTLE
    # throttle -> suspend only for hard limits at or above the suspend band
    if limit_type in SUSPENDABLE_LIMITS and percent >= settings.enforcement_suspend_percent:
        return EnforcementAction.SUSPEND
    return None


def notification_state(event: EnforcementEvent) -> str:
    return f"{event.status}:{event.action}:{event.severity}"


class EnforcementEngine:
    """Periodic quota enforcement."""

    def __init__(self, infra: Infrastructure):
        self.infra = infra

    async def run_cycle(self) -> dict[str, Any]:
        async with database.AsyncSessionLocal() as db:
            tenant_ids = await TenantRegistry(db).list_ids(statuses=[TenantStatus.ACTIVE, TenantStatus.SUSPENDED])

        outcomes = await run_per_tenant(
            tenant_ids, self.evaluate_tenant, settings.max_concurrent_tenant_ops, job="enforcement"
        )
        entitlement_failures = [
            {"tenant_id": tenant_id, "error": o["result"]["error"]}
            for tenant_id, o in outcomes.items()
            if o["ok"] and o["result"].get("skipped") == "entitlements_unavailable"
        ]
        if entitlement_failures:
            logger.warning(
                "Enforcement skipped %d tenants: billing entitlements unavailable", len(entitlement_failures)
            )
        return {
            "evaluated": len(tenant_ids),
            "outcomes": outcomes,
            "entitlement_failures": entitlement_failures,
            "errors": {tenant_id: o for tenant_id, o in outcomes.items() if not o["ok"]},
        }

    async def evaluate_tenant(self, db: AsyncSession, tenant_id: str) -> dict[str, Any]:
        registry = TenantRegistry(db)
        tenant = await registry.get(tenant_id)
        quotas = await registry.get_quotas(tenant_id)

        try:
            entitlements = await self.infra.entitlements.fetch(quotas.billing_entitlement_ref)
        except InfraUnavailable as e:
            # Fail safe: never guess a limit
            logger.warning("Skipping enforcement: %s", e.message, extra={"tenant_id": tenant_id})
            return {"tenant_id": tenant_id, "skipped": "entitlements_unavailable", "error": e.message}
        if entitlements is not None:
            await registry.touch_quota_sync(quotas, entitlements)

        sample = await self._latest_sample(db, tenant_id)
        if sample is None:
            return {"tenant_id": tenant_id, "skipped": "no_metrics"}

        measurements = measurements_for(sample, quotas.effective_limits(entitlements))
        if not quotas.enforcement_enabled:
            return {"tenant_id": tenant_id, "dry_run": True, "limits": await self._dry_run(db, tenant_id, measurements)}

        results = []
        for measurement in measurements:
            results.append(await self._evaluate_limit(db, tenant, quotas, measurement))
        return {"tenant_id": tenant_id, "dry_run": False, "limits": results}

    async def _latest_sample(self, db: AsyncSession, tenant_id: str) -> TenantMetricSample | None:
        result = await db.execute(
            select(TenantMetricSample)
            .where(TenantMetricSample.tenant_id == tenant_id)
            .order_by(TenantMetricSample.collected_at.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def _open_event(self, db: AsyncSession, tenant_id: str, limit_type: LimitType) -> EnforcementEvent | None:
        result = await db.execute(
            select(EnforcementEvent)
            .where(
                EnforcementEvent.tenant_id == tenant_id,
                EnforcementEvent.limit_type == limit_type.value,
                EnforcementEvent.status.in_(OPEN_STATUSES),
            )
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def _get_event(self, db: AsyncSession, event_id: str) -> EnforcementEvent:
        result = await db.execute(
            select(EnforcementEvent).where(EnforcementEvent.id == event_id).execution_options(populate_existing=True)
        )
        return result.scalars().one()

    async def _held_elsewhere(self, db: AsyncSession, tenant_id: str, event_id: str, flag: str) -> bool:
        """True when another open event of the tenant recorded ``flag`` as applied."""
        result = await db.execute(
            select(EnforcementEvent)
            .where(
                EnforcementEvent.tenant_id == tenant_id,
                EnforcementEvent.id != event_id,
                EnforcementEvent.status.in_(OPEN_STATUSES),
            )
            .execution_options(populate_existing=True)
        )
        return any((other.metadata_ or {}).get(flag) for other in result.scalars().all())

    async def _recently_resolved(self, db: AsyncSession, tenant_id: str, limit_type: LimitType) -> EnforcementEvent | None:
        since = utcnow() - timedelta(minutes=settings.enforcement_cooldown_minutes)
        result = await db.execute(
            select(EnforcementEvent)
            .where(
                EnforcementEvent.tenant_id == tenant_id,
                EnforcementEvent.limit_type == limit_type.value,
                EnforcementEvent.status == EnforcementStatus.RESOLVED.value,
                EnforcementEvent.resolved_at >= since,
            )
            .order_by(EnforcementEvent.resolved_at.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def _dry_run(self, db: AsyncSession, tenant_id: str, measurements: list[Measurement]) -> list[dict]:
        """What would happen, with no writes and no side effects."""
        report = []
        for m in measurements:
            severity = severity_for(m.percent)
            event = await self._open_event(db, tenant_id, m.limit_type)
            if severity == Severity.INFO:
                would = "resolve" if event is not None else None
            elif event is None:
                would = EnforcementAction.WARNING.value
            else:
                would = event.action
            report.append(
                {"limit_type": m.limit_type.value, "usage_percentage": m.percent, "severity": severity.value,
                 "would_apply": would}
            )
        if any(r["would_apply"] for r in report):
            logger.info("Enforcement dry run: %s", report, extra={"tenant_id": tenant_id})
        return report

    # =========================================================================
    # Per-limit state machine
    # =========================================================================

    async def _evaluate_limit(
        self, db: AsyncSession, tenant: TenantInstance, quotas: TenantQuotas, m: Measurement
    ) -> dict[str, Any]:
        tenant_id = tenant.tenant_id
        severity = severity_for(m.percent)
        event = await self._open_event(db, tenant_id, m.limit_type)

        if severity == Severity.INFO:
            if event is None:
                return {"limit_type": m.limit_type.value, "usage_percentage": m.percent, "action": None}
            return await self._cool_down(db, tenant, event, m)

        if event is None:
            event = await self._open_or_reopen(db, tenant, m, severity)
            if event is None:
                return {"limit_type": m.limit_type.value, "skipped": "concurrent_update"}
            if event.action in (EnforcementAction.THROTTLE.value, EnforcementAction.SUSPEND.value):
                # Reopened above warning; the side effect lifted at resolution comes back
                event = await self._escalate(db, tenant, event, EnforcementAction(event.action), m)
            await self._notify(db, tenant, event)
            return self._summary(event)

        meta = dict(event.metadata_ or {})
        meta["below_cycles"] = 0
        meta["critical_cycles"] = meta.get("critical_cycles", 0) + 1 if severity == Severity.CRITICAL else 0
        event.current_usage = m.current
        event.limit_value = m.limit
        event.usage_percentage = m.percent
        if SEVERITY_RANK[severity] > SEVERITY_RANK[Severity(event.severity)]:
            event.severity = severity.value
        event.metadata_ = meta
        event.updated_at = utcnow()
        await db.commit()

        if meta["critical_cycles"] >= settings.enforcement_escalate_cycles:
            overage_allowed = tenant.plan in settings.overage_plans
            target = next_action(EnforcementAction(event.action), m.limit_type, m.percent, overage_allowed)
            if target is not None:
                event = await self._escalate(db, tenant, event, target, m)

        await self._notify(db, tenant, event)
        return self._summary(event)

    async def _open_or_reopen(
        self, db: AsyncSession, tenant: TenantInstance, m: Measurement, severity: Severity
    ) -> EnforcementEvent | None:
        now = utcnow()
        critical = 1 if severity == Severity.CRITICAL else 0
        previous = await self._recently_resolved(db, tenant.tenant_id, m.limit_type)
        if previous is not None:
            # Inside the cool-down window the event comes back at its old rank
            meta = dict(previous.metadata_ or {})
            meta.update(below_cycles=0, critical_cycles=critical, reopened=meta.get("reopened", 0) + 1)
            previous.status = EnforcementStatus.ACTIVE.value
            previous.resolved_at = None
            previous.current_usage = m.current
            previous.limit_value = m.limit
            previous.usage_percentage = m.percent
            previous.severity = severity.value
            previous.metadata_ = meta
            previous.updated_at = now
            event = previous
            logger.info(
                "Reopened %s enforcement at %s", m.limit_type.value, event.action,
                extra={"tenant_id": tenant.tenant_id, "event": "enforcement_reopened"},
            )
        else:
            event = EnforcementEvent(
                tenant_id=tenant.tenant_id,
                limit_type=m.limit_type.value,
                current_usage=m.current,
                limit_value=m.limit,
                usage_percentage=m.percent,
                action=EnforcementAction.WARNING.value,
                severity=severity.value,
                status=EnforcementStatus.ACTIVE.value,
                notification_sent=False,
                created_at=now,
                updated_at=now,
                metadata_={"below_cycles": 0, "critical_cycles": critical},
            )
            db.add(event)

        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.info("Open enforcement event already exists", extra={"tenant_id": tenant.tenant_id})
            return None
        record_enforcement_event(event.action, event.limit_type, event.severity)
        return event

    async def _escalate(
        self,
        db: AsyncSession,
        tenant: TenantInstance,
        event: EnforcementEvent,
        target: EnforcementAction,
        m: Measurement,
    ) -> EnforcementEvent:
        """Apply the side effect first; only a successful one changes the recorded action."""
        tenant_id = tenant.tenant_id
        event_id = event.id
        applied: dict[str, bool] = {}
        try:
            if target == EnforcementAction.SUSPEND:
                # A suspension enforcement did not place is not ours to lift later
                current = await TenantRegistry(db).get(tenant_id)
                owned = current.status != TenantStatus.SUSPENDED.value or await self._held_elsewhere(
                    db, tenant_id, event_id, "applied_suspend"
                )
            await self._apply(db, tenant_id, target, m)
            if target == EnforcementAction.THROTTLE:
                applied["applied_throttle"] = True
            elif target == EnforcementAction.SUSPEND:
                applied["applied_suspend"] = owned
        except ControlPlaneError as e:
            await db.rollback()
            event = await self._get_event(db, event_id)
            meta = dict(event.metadata_ or {})
            meta.update(pending_action=target.value, last_action_error=e.message)
            event.metadata_ = meta
            event.updated_at = utcnow()
            await db.commit()
            logger.warning(
                "Enforcement %s failed, retrying next cycle: %s", target.value, e.message,
                extra={"tenant_id": tenant_id, "error_code": e.code.value},
            )
            return event

        event = await self._get_event(db, event_id)
        meta = dict(event.metadata_ or {})
        meta.pop("pending_action", None)
        meta.pop("last_action_error", None)
        meta.update(critical_cycles=0, **applied)
        meta["history"] = [*meta.get("history", []), {"action": target.value, "at": utcnow().isoformat()}]
        event.action = target.value
        event.severity = Severity.CRITICAL.value
        event.metadata_ = meta
        event.updated_at = utcnow()
        await db.commit()
        record_enforcement_event(event.action, event.limit_type, event.severity)
        logger.warning(
            "Enforcement escalated %s to %s at %.1f%%", m.limit_type.value, target.value, m.percent,
            extra={"tenant_id": tenant_id, "event": "enforcement_escalated"},
        )
        return event

    async def _apply(self, db: AsyncSession, tenant_id: str, action: EnforcementAction, m: Measurement) -> None:
        lifecycle = LifecycleManager(db, self.infra)
        match action:
            case EnforcementAction.THROTTLE:
                await lifecycle.set_throttle(tenant_id, True)
            case EnforcementAction.SUSPEND:
                await lifecycle.suspend(tenant_id, f"{m.limit_type.value} at {m.percent:.1f}% of limit")
            case EnforcementAction.OVERAGE_BILLING | EnforcementAction.WARNING:
                # Billing reads overage from the event row; nothing to change on the runtime
                return

    async def _cool_down(
        self, db: AsyncSession, tenant: TenantInstance, event: EnforcementEvent, m: Measurement
    ) -> dict[str, Any]:
        event_id = event.id
        meta = dict(event.metadata_ or {})
        meta["below_cycles"] = meta.get("below_cycles", 0) + 1
        meta["critical_cycles"] = 0
        event.current_usage = m.current
        event.usage_percentage = m.percent
        event.metadata_ = meta
        event.updated_at = utcnow()
        await db.commit()
        if meta["below_cycles"] < settings.enforcement_resolve_cycles:
            return self._summary(event)

        lifecycle = LifecycleManager(db, self.infra)
        try:
            # Another open limit may still need the same side effect
            if meta.get("applied_suspend") and not await self._held_elsewhere(
                db, tenant.tenant_id, event_id, "applied_suspend"
            ):
                await lifecycle.resume(tenant.tenant_id, actor="enforcement")
            if meta.get("applied_throttle") and not await self._held_elsewhere(
                db, tenant.tenant_id, event_id, "applied_throttle"
            ):
                await lifecycle.set_throttle(tenant.tenant_id, False)
        except ControlPlaneError as e:
            await db.rollback()
            event = await self._get_event(db, event_id)
            meta = dict(event.metadata_ or {})
            meta["last_action_error"] = e.message
            event.metadata_ = meta
            await db.commit()
            logger.warning("Could not lift enforcement: %s", e.message, extra={"tenant_id": tenant.tenant_id})
            return self._summary(event)

        event = await self._get_event(db, event_id)
        meta = dict(event.metadata_ or {})
        meta.pop("applied_suspend", None)
        meta.pop("applied_throttle", None)
        now = utcnow()
        event.status = EnforcementStatus.RESOLVED.value
        event.resolved_at = now
        event.updated_at = now
        event.metadata_ = meta
        await db.commit()
        logger.info(
            "Enforcement %s resolved at %.1f%%", m.limit_type.value, m.percent,
            extra={"tenant_id": tenant.tenant_id, "event": "enforcement_resolved"},
        )
        await self._notify(db, tenant, event)
        return self._summary(event)

    # =========================================================================
    # Notifications
    # =========================================================================

    async def _notify(self, db: AsyncSession, tenant: TenantInstance, event: EnforcementEvent) -> None:
        """Send exactly one notification per (status, action, severity) state."""
        state = notification_state(event)
        meta = dict(event.metadata_ or {})
        if meta.get("notified_state") == state:
            return

        event.notification_sent = False
        payload = {
            "tenant_id": tenant.tenant_id,
            "subdomain": tenant.subdomain,
            "email": tenant.email,
            "event_id": event.id,
            "limit_type": event.limit_type,
            "action": event.action,
            "severity": event.severity,
            "status": event.status,
            "usage_percentage": event.usage_percentage,
        }
        try:
            channel = await self.infra.notifier.send(f"enforcement.{event.action}", payload)
        except InfraUnavailable as e:
            # notified_state is left unchanged, so the next cycle retries
            meta["notification_error"] = e.message
            event.metadata_ = meta
            await db.commit()
            logger.warning("Enforcement notification failed: %s", e.message, extra={"tenant_id": tenant.tenant_id})
            return

        meta.pop("notification_error", None)
        meta["notified_state"] = state
        event.notification_sent = True
        event.notification_type = channel
        event.metadata_ = meta
        await db.commit()

    @staticmethod
    def _summary(event: EnforcementEvent) -> dict[str, Any]:
        return {
            "event_id": event.id,
            "limit_type": event.limit_type,
            "usage_percentage": event.usage_percentage,
            "action": event.action,
            "severity": event.severity,
            "status": event.status,
            "notification_sent": event.notification_sent,
        }

    async def acknowledge(self, db: AsyncSession, event_id: str) -> EnforcementEvent:
        """Mark an open event as seen by an operator. It stays open until usage drops."""
        result = await db.execute(
            select(EnforcementEvent).where(EnforcementEvent.id == event_id).execution_options(populate_existing=True)
        )
        event = result.scalars().first()
        if event is None:
            raise NotFound("EnforcementEvent", event_id)
        if event.status == EnforcementStatus.ACTIVE.value:
            event.status = EnforcementStatus.ACKNOWLEDGED.value
            event.acknowledged_at = utcnow()
            event.updated_at = event.acknowledged_at
            await db.commit()
        return event
