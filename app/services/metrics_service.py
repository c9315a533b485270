"""
Metrics Collector

Pulls per-tenant load and usage from the runtime (and container stats for
dedicated tenants), persists a TenantMetricSample for the autoscale and
enforcement engines, and keeps the Prometheus gauges current.
"""

import logging
from datetime import timedelta
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app import database
from app.config import settings
from app.infra import Infrastructure
from app.models.autoscale import AutoscaleEvent
from app.models.backup import TenantBackup
from app.models.enforcement import OPEN_STATUSES, EnforcementEvent
from app.models.metric_sample import TenantMetricSample
from app.models.tenant import TenantInstance, TenantStatus
from app.services.registry import TenantRegistry
from app.utils.clock import utcnow
from app.utils.fanout import run_per_tenant
from app.utils.metrics import BACKUPS_TOTAL, TENANT_RESOURCES, TENANTS_TOTAL, record_tenant_load

logger = logging.getLogger(__name__)

COLLECTED_STATUSES = (TenantStatus.ACTIVE, TenantStatus.SUSPENDED)

SAMPLE_RETENTION = timedelta(days=7)


def _number(usage: dict, key: str, default: float = 0.0) -> float:
    value = usage.get(key)
    return float(value) if isinstance(value, (int, float)) else default


class MetricsCollector:
    def __init__(self, infra: Infrastructure):
        self.infra = infra

    async def collect(self, db: AsyncSession, tenant: TenantInstance) -> TenantMetricSample:
        """Take one sample for a tenant; container stats win over runtime-reported cpu/memory."""
        base_url = tenant.runtime_url if tenant.is_dedicated else None
        usage = await self.infra.runtime.usage(tenant.tenant_id, base_url=base_url)

        cpu_percent = _number(usage, "cpu_percent")
        memory_percent = _number(usage, "memory_percent")
        memory_bytes = int(_number(usage, "memory_bytes"))
        if tenant.is_dedicated and tenant.container_id and tenant.status == TenantStatus.ACTIVE.value:
            stats = await self.infra.container_engine.stats(tenant.container_id)
            cpu_percent = stats["cpu_percent"]
            memory_percent = stats["memory_percent"]
            memory_bytes = stats["memory_bytes"]

        success_rate = usage.get("success_rate_percent")
        sample = TenantMetricSample(
            tenant_id=tenant.tenant_id,
            collected_at=utcnow(),
            queue_wait_p95_seconds=_number(usage, "queue_wait_p95_seconds"),
            executions_per_minute=_number(usage, "executions_per_minute"),
            cpu_percent=cpu_percent,
            memory_percent=memory_percent,
            memory_bytes=memory_bytes,
            success_rate_percent=float(success_rate) if isinstance(success_rate, (int, float)) else None,
            active_workers=usage.get("active_workers"),
            executions_month=int(_number(usage, "executions_month")),
            concurrent_executions=int(_number(usage, "concurrent_executions")),
            storage_gb=_number(usage, "storage_gb"),
            api_calls_hour=int(_number(usage, "api_calls_hour")),
        )
        db.add(sample)
        await db.commit()

        record_tenant_load(
            tenant.subdomain,
            sample.queue_wait_p95_seconds,
            sample.cpu_percent,
            sample.memory_bytes,
            sample.executions_per_minute,
        )
        return sample

    async def collect_all(self) -> dict[str, Any]:
        async with database.AsyncSessionLocal() as db:
            tenant_ids = await TenantRegistry(db).list_ids(statuses=list(COLLECTED_STATUSES))

        async def _work(db: AsyncSession, tenant_id: str) -> dict:
            tenant = await TenantRegistry(db).get(tenant_id)
            sample = await self.collect(db, tenant)
            return {"collected_at": sample.collected_at.isoformat()}

        outcomes = await run_per_tenant(tenant_ids, _work, settings.max_concurrent_tenant_ops, job="metrics")

        async with database.AsyncSessionLocal() as db:
            pruned = await self.prune_samples(db)
        failed = [tenant_id for tenant_id, o in outcomes.items() if not o["ok"]]
        logger.debug("Collected metrics for %d tenants (%d failed)", len(outcomes) - len(failed), len(failed))
        return {"collected": len(outcomes) - len(failed), "failed": failed, "pruned": pruned}

    async def prune_samples(self, db: AsyncSession) -> int:
        result = await db.execute(
            delete(TenantMetricSample).where(TenantMetricSample.collected_at < utcnow() - SAMPLE_RETENTION)
        )
        await db.commit()
        return result.rowcount or 0

    async def refresh_fleet_gauges(self, db: AsyncSession) -> None:
        """Recompute tenant, resource and backup gauges from the registry."""
        TENANTS_TOTAL.clear()
        rows = await db.execute(
            select(TenantInstance.mode, TenantInstance.status, TenantInstance.plan, func.count()).group_by(
                TenantInstance.mode, TenantInstance.status, TenantInstance.plan
            )
        )
        for mode, status, plan, count in rows.all():
            TENANTS_TOTAL.labels(mode=mode, status=status, plan=plan).set(count)

        TENANT_RESOURCES.clear()
        tenants = await db.execute(
            select(TenantInstance).where(TenantInstance.status != TenantStatus.FAILED.value)
        )
        for tenant in tenants.scalars().all():
            for resource_type, value in tenant.resources().items():
                TENANT_RESOURCES.labels(
                    tenant_id=tenant.tenant_id, subdomain=tenant.subdomain, resource_type=resource_type
                ).set(value)

        BACKUPS_TOTAL.clear()
        backups = await db.execute(
            select(TenantBackup.status, TenantBackup.backup_type, func.count()).group_by(
                TenantBackup.status, TenantBackup.backup_type
            )
        )
        for status, backup_type, count in backups.all():
            BACKUPS_TOTAL.labels(status=status, backup_type=backup_type).set(count)

    async def tenant_snapshot(self, db: AsyncSession, tenant_id: str) -> dict[str, Any]:
        """Structured per-tenant view: allocation, limits, latest sample and open events."""
        registry = TenantRegistry(db)
        tenant = await registry.get(tenant_id)
        quotas = await registry.get_quotas(tenant_id)

        latest = await db.execute(
            select(TenantMetricSample)
            .where(TenantMetricSample.tenant_id == tenant_id)
            .order_by(TenantMetricSample.collected_at.desc())
            .limit(1)
        )
        sample = latest.scalars().first()

        enforcement = await db.execute(
            select(EnforcementEvent).where(
                EnforcementEvent.tenant_id == tenant_id, EnforcementEvent.status.in_(OPEN_STATUSES)
            )
        )
        autoscale = await db.execute(
            select(AutoscaleEvent)
            .where(AutoscaleEvent.tenant_id == tenant_id)
            .order_by(AutoscaleEvent.created_at.desc())
            .limit(5)
        )
        last_backup = await db.execute(
            select(TenantBackup)
            .where(TenantBackup.tenant_id == tenant_id)
            .order_by(TenantBackup.created_at.desc())
            .limit(1)
        )
        backup = last_backup.scalars().first()

        return {
            "tenant_id": tenant.tenant_id,
            "subdomain": tenant.subdomain,
            "mode": tenant.mode,
            "status": tenant.status,
            "plan": tenant.plan,
            "container_status": tenant.container_status,
            "resources": tenant.resources(),
            "limits": quotas.effective_limits(quotas.entitlements or None),
            "enforcement_enabled": quotas.enforcement_enabled,
            "metrics": sample.as_dict() if sample else None,
            "enforcement": [
                {
                    "event_id": e.id,
                    "limit_type": e.limit_type,
                    "action": e.action,
                    "severity": e.severity,
                    "status": e.status,
                    "usage_percentage": e.usage_percentage,
                }
                for e in enforcement.scalars().all()
            ],
            "autoscale": [
                {"event_id": e.id, "action": e.action, "status": e.status, "trigger_type": e.trigger_type}
                for e in autoscale.scalars().all()
            ],
            "last_backup": (
                {"backup_id": backup.id, "status": backup.status, "created_at": backup.created_at.isoformat()}
                if backup
                else None
            ),
        }
