"""
Promotion (shared -> dedicated)

A promotion is a fixed sequence of steps keyed by a migration id kept in the
tenant's metadata. Every step is written to ``tenant_migration_steps`` when it
starts and when it completes, so re-invoking ``promote`` on a tenant stuck in
``migrating`` runs only the steps that have not completed yet.
"""

import asyncio
import functools
import json
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.exceptions import ConflictError, ErrorCode, InfraUnavailable, ValidationError
from app.infra import Infrastructure
from app.infra.container_engine import build_container_spec
from app.infra.proxy import build_routing_spec
from app.models.backup import BackupType
from app.models.migration import MIGRATION_STEPS, MigrationStep, MigrationStepName, StepStatus
from app.models.tenant import ContainerStatus, TenantInstance, TenantMode, TenantStatus, new_id
from app.services.backup_service import BackupManager
from app.services.lifecycle_service import LifecycleManager, public_url_for
from app.services.registry import TenantRegistry
from app.utils.clock import ensure_utc, utcnow

logger = logging.getLogger(__name__)

EXPORT_SECTIONS = ["database", "workflows", "credentials", "files"]

RESULT_COMPLETED = "completed"
RESULT_SCHEDULED = "scheduled"
RESULT_INCOMPLETE = "incomplete"


def state_key_for(tenant_id: str, migration_id: str) -> str:
    return f"tenants/{tenant_id}/migrations/{migration_id}/state.json"


class PromotionService:
    def __init__(self, db: AsyncSession, infra: Infrastructure):
        self.db = db
        self.infra = infra
        self.registry = TenantRegistry(db)
        self.lifecycle = LifecycleManager(db, infra)

    async def promote(
        self,
        tenant_id: str,
        window: datetime | None = None,
        ttl_minutes: int | None = None,
        actor: str = "bridge",
    ) -> dict[str, Any]:
        """
        Promote a shared-pool tenant to a dedicated container.

        Args:
            tenant_id: Tenant to promote
            window: Start time; one far enough in the future is scheduled instead of run
            ttl_minutes: Time budget for this invocation; unfinished steps are left for a resume
            actor: Who requested the promotion

        Returns:
            dict with ``status`` (completed, scheduled or incomplete), the
            migration id and the completed/remaining steps
        """
        if ttl_minutes is not None and ttl_minutes < 1:
            raise ValidationError("ttl_minutes must be at least 1", field="ttl_minutes")

        tenant = await self.registry.get(tenant_id)
        self._check_promotable(tenant)

        now = utcnow()
        if window is not None and ensure_utc(window) > now + timedelta(seconds=settings.promotion_schedule_lead_seconds):
            return await self._schedule(tenant, ensure_utc(window), ttl_minutes, actor)

        owner = await self.registry.acquire_lease(tenant_id, "promote")
        try:
            tenant = await self.registry.get(tenant_id)
            self._check_promotable(tenant)
            migration_id = (tenant.metadata_ or {}).get("migration_id")
            if tenant.status == TenantStatus.MIGRATING.value and migration_id:
                logger.info("Resuming migration %s", migration_id, extra={"tenant_id": tenant_id})
            else:
                migration_id = new_id()
                metadata = dict(tenant.metadata_ or {})
                metadata.update(
                    migration_id=migration_id,
                    migration_started_at=now.isoformat(),
                    pre_migration_status=tenant.status,
                )
                metadata.pop("promotion_scheduled_for", None)
                metadata.pop("promotion_ttl_minutes", None)
                tenant = await self.registry.transition(
                    tenant_id,
                    TenantStatus.MIGRATING,
                    actor,
                    "promote_start",
                    details={"migration_id": migration_id},
                    metadata_=metadata,
                )

            deadline = now + timedelta(minutes=ttl_minutes or settings.promotion_default_ttl_minutes)
            return await self._run_steps(tenant_id, migration_id, owner, deadline, actor)
        finally:
            await self.registry.release_lease(tenant_id, owner)

    def _check_promotable(self, tenant: TenantInstance) -> None:
        if tenant.status == TenantStatus.MIGRATING.value:
            return
        if tenant.mode != TenantMode.SHARED.value:
            raise ConflictError(
                "Tenant already runs on a dedicated container",
                code=ErrorCode.INVALID_TRANSITION,
                details={"tenant_id": tenant.tenant_id, "mode": tenant.mode},
            )
        if tenant.status not in (TenantStatus.ACTIVE.value, TenantStatus.SUSPENDED.value):
            raise ConflictError(
                f"Tenant is {tenant.status} and cannot be promoted",
                code=ErrorCode.INVALID_TRANSITION,
                details={"tenant_id": tenant.tenant_id, "current_status": tenant.status},
            )

    async def _schedule(self, tenant: TenantInstance, window: datetime, ttl_minutes: int | None, actor: str) -> dict:
        from app.scheduler import schedule_promotion

        job_id = schedule_promotion(tenant.tenant_id, window, ttl_minutes)
        await self.registry.merge_metadata(
            tenant.tenant_id, promotion_scheduled_for=window.isoformat(), promotion_ttl_minutes=ttl_minutes
        )
        logger.info(
            "Promotion of %s scheduled for %s by %s", tenant.subdomain, window.isoformat(), actor,
            extra={"tenant_id": tenant.tenant_id, "event": "promote_scheduled"},
        )
        return {
            "status": RESULT_SCHEDULED,
            "tenant_id": tenant.tenant_id,
            "scheduled_for": window.isoformat(),
            "job_id": job_id,
        }

    # =========================================================================
    # Step log
    # =========================================================================

    async def completed_steps(self, migration_id: str) -> dict[str, dict]:
        result = await self.db.execute(
            select(MigrationStep)
            .where(MigrationStep.migration_id == migration_id, MigrationStep.status == StepStatus.COMPLETED.value)
            .execution_options(populate_existing=True)
        )
        return {step.step: dict(step.output or {}) for step in result.scalars().all()}

    async def _step_row(self, migration_id: str, tenant_id: str, step: MigrationStepName) -> MigrationStep:
        result = await self.db.execute(
            select(MigrationStep)
            .where(MigrationStep.migration_id == migration_id, MigrationStep.step == step.value)
            .execution_options(populate_existing=True)
        )
        row = result.scalars().first()
        if row is None:
            row = MigrationStep(migration_id=migration_id, tenant_id=tenant_id, step=step.value, attempts=0, output={})
            self.db.add(row)
        return row

    async def _run_steps(self, tenant_id: str, migration_id: str, owner: str, deadline: datetime, actor: str) -> dict:
        outputs = await self.completed_steps(migration_id)
        handlers: dict[MigrationStepName, Callable[[TenantInstance, str, dict], Awaitable[dict]]] = {
            MigrationStepName.PRE_MIGRATION_BACKUP: self._pre_migration_backup,
            MigrationStepName.EXPORT_STATE: self._export_state,
            MigrationStepName.CREATE_CONTAINER: self._create_container,
            MigrationStepName.WAIT_HEALTHY: self._wait_healthy,
            MigrationStepName.IMPORT_STATE: self._import_state,
            MigrationStepName.SWITCH_ROUTING: self._switch_routing,
            MigrationStepName.RELEASE_SHARED_SLOT: self._release_shared_slot,
            MigrationStepName.FINALIZE: functools.partial(self._finalize, actor=actor),
        }

        executed: list[str] = []
        for step in MIGRATION_STEPS:
            if step.value in outputs:
                continue
            if utcnow() >= deadline:
                remaining = [s.value for s in MIGRATION_STEPS if s.value not in outputs]
                logger.warning(
                    "Migration %s hit its deadline with %d steps left", migration_id, len(remaining),
                    extra={"tenant_id": tenant_id},
                )
                return self._result(RESULT_INCOMPLETE, tenant_id, migration_id, outputs, executed, remaining)

            await self.registry.renew_lease(tenant_id, owner)
            tenant = await self.registry.get(tenant_id)
            outputs[step.value] = await self._run_step(tenant, migration_id, step, handlers[step], outputs)
            executed.append(step.value)

        return self._result(RESULT_COMPLETED, tenant_id, migration_id, outputs, executed, [])

    async def _run_step(self, tenant, migration_id, step, handler, outputs) -> dict:
        tenant_id = tenant.tenant_id
        row = await self._step_row(migration_id, tenant_id, step)
        row.status = StepStatus.RUNNING.value
        row.attempts = (row.attempts or 0) + 1
        row.started_at = utcnow()
        row.updated_at = row.started_at
        row.error_message = None
        await self.db.commit()

        try:
            output = await asyncio.wait_for(
                handler(tenant, migration_id, outputs), settings.migration_step_timeout_seconds
            )
        except asyncio.TimeoutError as e:
            await self._record_failure(migration_id, tenant_id, step, "step timed out")
            raise InfraUnavailable(
                "migration",
                f"Migration step {step.value} timed out",
                details={"migration_id": migration_id, "step": step.value},
            ) from e
        except Exception as e:
            await self._record_failure(migration_id, tenant_id, step, str(e))
            raise

        row = await self._step_row(migration_id, tenant_id, step)
        row.status = StepStatus.COMPLETED.value
        row.output = output
        row.completed_at = utcnow()
        row.updated_at = row.completed_at
        await self.db.commit()
        logger.info(
            "Migration %s step %s completed", migration_id, step.value,
            extra={"tenant_id": tenant_id, "event": "migration_step"},
        )
        return output

    async def _record_failure(self, migration_id: str, tenant_id: str, step: MigrationStepName, message: str) -> None:
        await self.db.rollback()
        row = await self._step_row(migration_id, tenant_id, step)
        row.status = StepStatus.FAILED.value
        row.error_message = message
        row.updated_at = utcnow()
        await self.db.commit()
        logger.error(
            "Migration %s step %s failed: %s", migration_id, step.value, message,
            extra={"tenant_id": tenant_id, "event": "migration_step_failed"},
        )

    @staticmethod
    def _result(status, tenant_id, migration_id, outputs, executed, remaining) -> dict:
        return {
            "status": status,
            "tenant_id": tenant_id,
            "migration_id": migration_id,
            "executed_steps": executed,
            "completed_steps": [s.value for s in MIGRATION_STEPS if s.value in outputs],
            "remaining_steps": remaining,
        }

    # =========================================================================
    # Steps
    # =========================================================================

    async def _pre_migration_backup(self, tenant: TenantInstance, migration_id: str, outputs: dict) -> dict:
        backup = await BackupManager(self.db, self.infra).backup(
            tenant.tenant_id, BackupType.PRE_MIGRATION, actor="promotion"
        )
        return {"backup_id": backup.id, "storage_path": backup.storage_path}

    async def _export_state(self, tenant: TenantInstance, migration_id: str, outputs: dict) -> dict:
        state = await self.infra.runtime.export_state(tenant.tenant_id, EXPORT_SECTIONS)
        body = json.dumps(state, default=str).encode()
        key = state_key_for(tenant.tenant_id, migration_id)
        size = await self.infra.storage.put_object(key, body, content_type="application/json")
        return {"state_key": key, "size_bytes": size}

    async def _create_container(self, tenant: TenantInstance, migration_id: str, outputs: dict) -> dict:
        spec = build_container_spec(
            tenant.tenant_id, tenant.subdomain, tenant.cpu_cores, tenant.memory_mb, tenant.workers
        )
        container_id = await self.infra.container_engine.ensure_container(spec)
        await self.registry.update(
            tenant.tenant_id,
            container_id=container_id,
            container_name=spec.name,
            container_status=ContainerStatus.RUNNING.value,
            health_failures=0,
        )
        return {"container_id": container_id, "container_name": spec.name, "internal_url": spec.internal_url}

    async def _wait_healthy(self, tenant: TenantInstance, migration_id: str, outputs: dict) -> dict:
        container_id = outputs[MigrationStepName.CREATE_CONTAINER.value]["container_id"]
        await self.lifecycle.wait_healthy(container_id)
        return {"container_id": container_id, "healthy_at": utcnow().isoformat()}

    async def _import_state(self, tenant: TenantInstance, migration_id: str, outputs: dict) -> dict:
        key = outputs[MigrationStepName.EXPORT_STATE.value]["state_key"]
        internal_url = outputs[MigrationStepName.CREATE_CONTAINER.value]["internal_url"]
        payload = json.loads(await self.infra.storage.get_object(key))
        result = await self.infra.runtime.import_state(internal_url, tenant.tenant_id, payload)
        return {"imported": sorted(payload.keys()), "result": result or {}}

    async def _switch_routing(self, tenant: TenantInstance, migration_id: str, outputs: dict) -> dict:
        internal_url = outputs[MigrationStepName.CREATE_CONTAINER.value]["internal_url"]
        throttled = bool((tenant.metadata_ or {}).get("throttled"))
        route = build_routing_spec(tenant.subdomain, internal_url, throttled=throttled)
        await self.infra.proxy.apply_route(route)
        await self.registry.update(tenant.tenant_id, runtime_url=internal_url, router_name=route.router_name)
        return {"router_name": route.router_name, "backend_url": internal_url}

    async def _release_shared_slot(self, tenant: TenantInstance, migration_id: str, outputs: dict) -> dict:
        await self.infra.runtime.release_shared(tenant.tenant_id)
        in_use = None
        if (tenant.metadata_ or {}).get("shared_slot"):
            in_use = await self.infra.pool.release()
            await self.registry.merge_metadata(tenant.tenant_id, shared_slot=None)
        return {"released": True, "pool_in_use": in_use}

    async def _finalize(self, tenant: TenantInstance, migration_id: str, outputs: dict, actor: str = "system") -> dict:
        metadata = dict(tenant.metadata_ or {})
        previous_status = metadata.pop("pre_migration_status", None)
        metadata.pop("migration_id", None)
        metadata.pop("migration_started_at", None)
        metadata.update(
            previous_mode=TenantMode.SHARED.value,
            promoted_at=utcnow().isoformat(),
            last_migration_id=migration_id,
        )
        login_url = public_url_for(tenant.subdomain)
        await self.registry.transition(
            tenant.tenant_id,
            TenantStatus.ACTIVE,
            actor,
            "promote_complete",
            details={"migration_id": migration_id, "previous_status": previous_status},
            mode=TenantMode.DEDICATED.value,
            login_url=login_url,
            metadata_=metadata,
        )
        return {"login_url": login_url, "mode": TenantMode.DEDICATED.value}
