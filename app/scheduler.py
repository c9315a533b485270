from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from datetime import datetime, timezone
from typing import Optional
from app import database
from app.config import settings
from app.exceptions import ControlPlaneError, InfraUnavailable
from app.middleware.logging import bind_correlation_id
from app.models.tenant import TenantMode, TenantStatus
from app.services.autoscale_service import AutoscaleEngine
from app.services.backup_service import BACKUP_ELIGIBLE_STATUSES, BackupManager, run_scheduled_backups
from app.services.enforcement_service import EnforcementEngine
from app.services.lifecycle_service import LifecycleManager
from app.services.metrics_service import MetricsCollector
from app.services.promotion_service import PromotionService
from app.services.registry import TenantRegistry
from app.utils.clock import ensure_utc
from app.utils.fanout import run_per_tenant
import logging

scheduler = AsyncIOScheduler(timezone=timezone.utc)

logger = logging.getLogger(__name__)

# Adapters the jobs run against; set by start_scheduler()
_infra = None


def _require_infra():
    if _infra is None:
        raise RuntimeError("Scheduler jobs need start_scheduler(infra) to run first")
    return _infra


async def collect_metrics():
    bind_correlation_id()
    await MetricsCollector(_require_infra()).collect_all()


async def autoscale_cycle():
    bind_correlation_id()
    await AutoscaleEngine(_require_infra()).run_cycle()


async def enforcement_cycle():
    bind_correlation_id()
    await EnforcementEngine(_require_infra()).run_cycle()


async def probe_container_health():
    bind_correlation_id()
    infra = _require_infra()
    async with database.AsyncSessionLocal() as db:
        tenant_ids = await TenantRegistry(db).list_ids(statuses=[TenantStatus.ACTIVE], modes=[TenantMode.DEDICATED.value])

    async def _probe(db, tenant_id):
        return await LifecycleManager(db, infra).probe_health(tenant_id)

    await run_per_tenant(tenant_ids, _probe, settings.max_concurrent_tenant_ops, job="health_probe")


async def daily_backups():
    bind_correlation_id()
    async with database.AsyncSessionLocal() as db:
        tenant_ids = await TenantRegistry(db).list_ids(statuses=list(BACKUP_ELIGIBLE_STATUSES))
    await run_scheduled_backups(_require_infra(), tenant_ids)


async def expire_backups():
    bind_correlation_id()
    async with database.AsyncSessionLocal() as db:
        await BackupManager(db, _require_infra()).expire_backups()


async def run_promotion(tenant_id: str, ttl_minutes: Optional[int] = None):
    bind_correlation_id()
    async with database.AsyncSessionLocal() as db:
        try:
            result = await PromotionService(db, _require_infra()).promote(
                tenant_id, ttl_minutes=ttl_minutes, actor="scheduler"
            )
        except ControlPlaneError as e:
            logger.warning(
                "[Scheduler] Promotion of tenant %s failed: %s", tenant_id, e.message,
                extra={"tenant_id": tenant_id, "error_code": e.code.value},
            )
            return
    logger.info("[Scheduler] Promotion of tenant %s finished: %s", tenant_id, result["status"])


def schedule_promotion(tenant_id: str, window: datetime, ttl_minutes: Optional[int] = None) -> str:
    if not scheduler.running:
        raise InfraUnavailable("scheduler", "Scheduler is not running; promotion windows cannot be honored")
    job_id = f"promote_{tenant_id}"
    scheduler.add_job(
        run_promotion,
        trigger=DateTrigger(run_date=window),
        args=[tenant_id, ttl_minutes],
        id=job_id,
        replace_existing=True,
        # A late start still runs
        misfire_grace_time=None,
    )
    logger.info(f"[Scheduler] Promotion of tenant {tenant_id} scheduled at {window}")
    return job_id


async def restore_scheduled_promotions() -> int:
    """Re-register promotion windows kept in tenant metadata; a missed window runs now."""
    async with database.AsyncSessionLocal() as db:
        registry = TenantRegistry(db)
        tenant_ids = await registry.list_ids(
            statuses=[TenantStatus.ACTIVE, TenantStatus.SUSPENDED], modes=[TenantMode.SHARED.value]
        )
        pending = []
        for tenant_id in tenant_ids:
            metadata = (await registry.get(tenant_id)).metadata_ or {}
            if metadata.get("promotion_scheduled_for"):
                pending.append((tenant_id, metadata["promotion_scheduled_for"], metadata.get("promotion_ttl_minutes")))

    now = datetime.now(timezone.utc)
    for tenant_id, window, ttl_minutes in pending:
        run_at = max(ensure_utc(datetime.fromisoformat(window)), now)
        schedule_promotion(tenant_id, run_at, ttl_minutes)
    if pending:
        logger.info(f"[Scheduler] Restored {len(pending)} scheduled promotions")
    return len(pending)


def start_scheduler(infra) -> None:
    global _infra
    _infra = infra

    jobs = [
        (collect_metrics, IntervalTrigger(seconds=settings.metrics_interval_seconds)),
        (autoscale_cycle, IntervalTrigger(seconds=settings.autoscale_interval_seconds)),
        (enforcement_cycle, IntervalTrigger(seconds=settings.enforcement_interval_seconds)),
        (probe_container_health, IntervalTrigger(seconds=settings.health_probe_interval_seconds)),
        (daily_backups, CronTrigger(hour=settings.backup_hour_utc, minute=0, timezone=timezone.utc)),
        (expire_backups, IntervalTrigger(minutes=settings.backup_expiry_interval_minutes)),
    ]
    for func, trigger in jobs:
        # One run at a time per job; a slow cycle is skipped, not stacked
        scheduler.add_job(func, trigger=trigger, id=func.__name__, replace_existing=True, max_instances=1, coalesce=True)

    if not scheduler.running:
        scheduler.start()
    logger.info(f"[Scheduler] Started with {len(jobs)} periodic jobs")


def shutdown_scheduler() -> None:
    global _infra
    if scheduler.running:
        scheduler.shutdown(wait=False)
    _infra = None
