"""
Tests for shared -> dedicated promotion
"""

from datetime import timedelta

import pytest
from sqlalchemy import select

from app.config import settings
from app.exceptions import ConflictError, InfraUnavailable, ValidationError
from app.models.backup import BackupType, TenantBackup
from app.models.migration import MIGRATION_STEPS, MigrationStep, StepStatus
from app.models.tenant import TenantMode, TenantStatus
from app.services import promotion_service
from app.services.promotion_service import RESULT_COMPLETED, RESULT_INCOMPLETE, RESULT_SCHEDULED, PromotionService
from app.services.registry import TenantRegistry
from app.utils.clock import utcnow
from utils.factories import create_test_tenant

ALL_STEPS = [step.value for step in MIGRATION_STEPS]


class TestPromotion:
    @pytest.mark.asyncio
    async def test_promotes_shared_tenant(self, test_db, infra):
        tenant = await create_test_tenant(test_db, infra, subdomain="acme")

        result = await PromotionService(test_db, infra).promote(tenant.tenant_id)

        assert result["status"] == RESULT_COMPLETED
        assert result["executed_steps"] == ALL_STEPS

        promoted = await TenantRegistry(test_db).get(tenant.tenant_id)
        assert promoted.mode == TenantMode.DEDICATED.value
        assert promoted.status == TenantStatus.ACTIVE.value
        assert promoted.login_url == f"https://acme.{settings.proxy_domain}"
        assert promoted.container_id is not None
        assert promoted.metadata_["previous_mode"] == "shared"
        assert "migration_id" not in promoted.metadata_
        assert "shared_slot" not in promoted.metadata_

        assert infra.pool.used == 0
        assert infra.runtime.released == [tenant.tenant_id]
        assert infra.runtime.imports[0]["sections"] == ["credentials", "database", "files", "workflows"]

    @pytest.mark.asyncio
    async def test_takes_pre_migration_backup(self, test_db, infra):
        tenant = await create_test_tenant(test_db, infra)

        await PromotionService(test_db, infra).promote(tenant.tenant_id)

        result = await test_db.execute(select(TenantBackup).where(TenantBackup.tenant_id == tenant.tenant_id))
        backups = result.scalars().all()
        assert [b.backup_type for b in backups] == [BackupType.PRE_MIGRATION.value]

    @pytest.mark.asyncio
    async def test_resume_skips_completed_steps(self, test_db, infra):
        tenant = await create_test_tenant(test_db, infra)
        infra.runtime.import_failures = 1
        service = PromotionService(test_db, infra)

        with pytest.raises(InfraUnavailable):
            await service.promote(tenant.tenant_id)

        stuck = await TenantRegistry(test_db).get(tenant.tenant_id)
        assert stuck.status == TenantStatus.MIGRATING.value
        migration_id = stuck.metadata_["migration_id"]
        failed = await test_db.execute(
            select(MigrationStep).where(MigrationStep.migration_id == migration_id, MigrationStep.status == StepStatus.FAILED.value)
        )
        assert [row.step for row in failed.scalars().all()] == ["import_state"]
        assert stuck.lease_owner is None

        result = await service.promote(tenant.tenant_id)

        assert result["status"] == RESULT_COMPLETED
        assert result["migration_id"] == migration_id
        assert result["executed_steps"] == ALL_STEPS[ALL_STEPS.index("import_state"):]
        assert len(infra.container_engine.called("ensure_container")) == 1
        # One export for the pre-migration backup, one for the state transfer
        assert len(infra.runtime.exports) == 2

    @pytest.mark.asyncio
    async def test_deadline_leaves_remaining_steps(self, test_db, infra, monkeypatch):
        tenant = await create_test_tenant(test_db, infra)
        clock = {"now": utcnow()}
        monkeypatch.setattr(promotion_service, "utcnow", lambda: clock["now"])

        def jump():
            clock["now"] = clock["now"] + timedelta(minutes=5)

        # The state export is the second export of the run; move time past the deadline there
        exports = iter([None, jump])

        def on_export():
            hook = next(exports, None)
            if hook is not None:
                hook()

        infra.runtime.on_export = on_export

        result = await PromotionService(test_db, infra).promote(tenant.tenant_id, ttl_minutes=1)

        assert result["status"] == RESULT_INCOMPLETE
        assert result["completed_steps"] == ["pre_migration_backup", "export_state"]
        assert result["remaining_steps"] == ALL_STEPS[2:]
        assert (await TenantRegistry(test_db).get(tenant.tenant_id)).status == TenantStatus.MIGRATING.value

        monkeypatch.setattr(promotion_service, "utcnow", utcnow)
        resumed = await PromotionService(test_db, infra).promote(tenant.tenant_id)
        assert resumed["status"] == RESULT_COMPLETED
        assert resumed["executed_steps"] == ALL_STEPS[2:]

    @pytest.mark.asyncio
    async def test_future_window_is_scheduled(self, test_db, infra, monkeypatch):
        tenant = await create_test_tenant(test_db, infra)
        scheduled = []
        monkeypatch.setattr(
            "app.scheduler.schedule_promotion",
            lambda tenant_id, window, ttl: scheduled.append((tenant_id, window, ttl)) or f"promote_{tenant_id}",
        )
        window = utcnow() + timedelta(hours=2)

        result = await PromotionService(test_db, infra).promote(tenant.tenant_id, window=window, ttl_minutes=30)

        assert result["status"] == RESULT_SCHEDULED
        assert result["job_id"] == f"promote_{tenant.tenant_id}"
        assert scheduled == [(tenant.tenant_id, window, 30)]
        refreshed = await TenantRegistry(test_db).get(tenant.tenant_id)
        assert refreshed.mode == TenantMode.SHARED.value
        assert refreshed.metadata_["promotion_scheduled_for"] == window.isoformat()

    @pytest.mark.asyncio
    async def test_future_window_without_scheduler_is_refused(self, test_db, infra):
        tenant = await create_test_tenant(test_db, infra)

        with pytest.raises(InfraUnavailable):
            await PromotionService(test_db, infra).promote(
                tenant.tenant_id, window=utcnow() + timedelta(hours=2)
            )

        refreshed = await TenantRegistry(test_db).get(tenant.tenant_id)
        assert "promotion_scheduled_for" not in (refreshed.metadata_ or {})
        assert refreshed.status == TenantStatus.ACTIVE.value

    @pytest.mark.asyncio
    async def test_dedicated_tenant_cannot_be_promoted(self, test_db, infra):
        tenant = await create_test_tenant(test_db, infra, mode=TenantMode.DEDICATED)
        with pytest.raises(ConflictError):
            await PromotionService(test_db, infra).promote(tenant.tenant_id)

    @pytest.mark.asyncio
    async def test_invalid_ttl(self, test_db, infra):
        tenant = await create_test_tenant(test_db, infra)
        with pytest.raises(ValidationError):
            await PromotionService(test_db, infra).promote(tenant.tenant_id, ttl_minutes=0)
