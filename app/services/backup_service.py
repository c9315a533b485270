"""
Backup Service

Snapshots a tenant runtime's state to object storage as a tar.gz archive:

- ``manifest.json`` with the format version and include flags
- one JSON member per included section (database, workflows, credentials, files)

Sections that were not requested are never exported nor written.
"""

import asyncio
import io
import json
import logging
import tarfile
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.exceptions import ConflictError, InfraUnavailable, InternalError, NotFound
from app.infra import Infrastructure
from app.models.backup import BACKUP_FORMAT_VERSION, BackupStatus, BackupType, TenantBackup
from app.models.tenant import TenantStatus, new_id
from app.services.registry import TenantRegistry
from app.utils.clock import ensure_utc, utcnow
from app.utils.fanout import run_per_tenant

logger = logging.getLogger(__name__)

DEFAULT_INCLUDES = {"database": True, "workflows": True, "credentials": True, "files": False}

BACKUP_ELIGIBLE_STATUSES = (TenantStatus.ACTIVE, TenantStatus.SUSPENDED)


def storage_key_for(tenant_id: str, backup_id: str, created_at: datetime) -> str:
    return f"tenants/{tenant_id}/backups/{created_at:%Y%m%dT%H%M%SZ}-{backup_id}.tar.gz"


def build_archive(manifest: dict, sections: dict[str, Any]) -> bytes:
    """Pack the manifest and the included sections into an in-memory tar.gz."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        members = {"manifest.json": manifest}
        for section, included in manifest["includes"].items():
            if included:
                members[f"{section}.json"] = sections.get(section)
        for name, content in members.items():
            data = json.dumps(content, default=str, indent=2).encode()
            info = tarfile.TarInfo(name=name)
            info.size = len(data)
            info.mtime = int(utcnow().timestamp())
            archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


class BackupManager:
    """Service for tenant runtime backups."""

    def __init__(self, db: AsyncSession, infra: Infrastructure):
        self.db = db
        self.infra = infra
        self.registry = TenantRegistry(db)

    async def get_backup(self, backup_id: str) -> TenantBackup:
        result = await self.db.execute(
            select(TenantBackup).where(TenantBackup.id == backup_id).execution_options(populate_existing=True)
        )
        backup = result.scalars().first()
        if backup is None:
            raise NotFound("TenantBackup", backup_id)
        return backup

    async def list_backups(self, tenant_id: str, limit: int = 50) -> list[TenantBackup]:
        result = await self.db.execute(
            select(TenantBackup)
            .where(TenantBackup.tenant_id == tenant_id)
            .order_by(TenantBackup.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def backup(
        self,
        tenant_id: str,
        backup_type: BackupType = BackupType.MANUAL,
        includes: dict[str, bool] | None = None,
        actor: str = "bridge",
    ) -> TenantBackup:
        """
        Create a backup.

        Every call produces an independent record with its own storage key;
        duplicate requests are not merged.

        Args:
            tenant_id: Tenant to snapshot
            backup_type: daily, weekly, manual, pre_migration or pre_upgrade
            includes: Section flags; missing keys fall back to DEFAULT_INCLUDES
            actor: Who requested the backup, for the audit trail

        Returns:
            The completed backup record
        """
        tenant = await self.registry.get(tenant_id)
        quotas = await self.registry.get_quotas(tenant_id)
        flags = {**DEFAULT_INCLUDES, **{k: bool(v) for k, v in (includes or {}).items() if k in DEFAULT_INCLUDES}}

        backup_id = new_id()
        created_at = utcnow()
        backup = TenantBackup(
            id=backup_id,
            tenant_id=tenant_id,
            backup_type=BackupType(backup_type).value,
            status=BackupStatus.RUNNING.value,
            storage_bucket=self.infra.storage.bucket,
            storage_path=storage_key_for(tenant_id, backup_id, created_at),
            includes_database=flags["database"],
            includes_workflows=flags["workflows"],
            includes_credentials=flags["credentials"],
            includes_files=flags["files"],
            retention_until=created_at + timedelta(days=quotas.retention_days),
            backup_version=BACKUP_FORMAT_VERSION,
            created_at=created_at,
            updated_at=created_at,
            metadata_={"requested_by": actor},
        )
        self.db.add(backup)
        await self.db.commit()
        logger.info(
            "Backup %s started (%s) for %s", backup_id, backup.backup_type, tenant.subdomain,
            extra={"tenant_id": tenant_id, "event": "backup_started"},
        )

        try:
            await self._perform_backup(tenant, backup)
        except InfraUnavailable as e:
            await self._mark_failed(backup_id, e.message)
            raise InfraUnavailable(e.adapter, e.message, details={"backup_id": backup_id}) from e
        except asyncio.CancelledError:
            await self._mark_failed(backup_id, "interrupted before completion")
            raise
        except Exception as e:
            logger.error("Backup %s crashed", backup_id, exc_info=True, extra={"tenant_id": tenant_id})
            await self._mark_failed(backup_id, str(e))
            raise InternalError("Backup failed", details={"backup_id": backup_id}) from e
        return backup

    async def _perform_backup(self, tenant, backup: TenantBackup) -> None:
        flags = backup.include_flags()
        sections = [name for name, included in flags.items() if included]
        base_url = tenant.runtime_url if tenant.is_dedicated else None
        state = await self.infra.runtime.export_state(tenant.tenant_id, sections, base_url=base_url)

        manifest = {
            "format_version": BACKUP_FORMAT_VERSION,
            "backup_id": backup.id,
            "tenant_id": tenant.tenant_id,
            "subdomain": tenant.subdomain,
            "backup_type": backup.backup_type,
            "created_at": backup.created_at.isoformat(),
            "includes": flags,
        }
        archive = build_archive(manifest, state)
        size = await self.infra.storage.put_object(backup.storage_path, archive)

        now = utcnow()
        backup.status = BackupStatus.COMPLETED.value
        backup.size_bytes = size
        backup.completed_at = now
        backup.updated_at = now
        database = state.get("database")
        backup.compatibility_version = database.get("version") if isinstance(database, dict) else None
        await self.db.commit()
        logger.info(
            "Backup %s completed: %s (%s MB)", backup.id, backup.storage_path, backup.size_mb,
            extra={"tenant_id": tenant.tenant_id, "event": "backup_completed"},
        )

    async def _mark_failed(self, backup_id: str, message: str) -> None:
        await self.db.rollback()
        backup = await self.get_backup(backup_id)
        now = utcnow()
        backup.status = BackupStatus.FAILED.value
        backup.error_message = message
        backup.completed_at = now
        backup.updated_at = now
        await self.db.commit()
        logger.warning("Backup %s failed: %s", backup.id, message, extra={"tenant_id": backup.tenant_id})

    async def mark_restore_tested(self, backup_id: str) -> TenantBackup:
        """Record that an out-of-band restore test validated this backup."""
        backup = await self.get_backup(backup_id)
        if backup.status != BackupStatus.COMPLETED.value:
            raise ConflictError(f"Only completed backups can be restore-tested (status={backup.status})")
        now = utcnow()
        backup.restore_tested = True
        backup.restore_tested_at = now
        backup.updated_at = now
        await self.db.commit()
        return backup

    async def fail_stale_backups(self, now: datetime | None = None) -> int:
        """Mark backups stuck in ``running`` longer than the lease TTL as failed."""
        now = now or utcnow()
        cutoff = now - timedelta(seconds=settings.lease_ttl_seconds)
        result = await self.db.execute(
            update(TenantBackup)
            .where(TenantBackup.status == BackupStatus.RUNNING.value, TenantBackup.updated_at < cutoff)
            .values(
                status=BackupStatus.FAILED.value,
                error_message="abandoned while running",
                completed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount:
            logger.warning("Failed %d backups abandoned while running", result.rowcount)
        return result.rowcount

    async def expire_backups(self, now: datetime | None = None) -> dict[str, int]:
        """
        Retention sweep.

        Deletes the stored objects of backups past ``retention_until`` and marks
        their rows ``expired``. A storage failure leaves the row as-is so the
        next sweep retries it.
        """
        now = now or utcnow()
        await self.fail_stale_backups(now)
        result = await self.db.execute(
            select(TenantBackup).where(
                TenantBackup.status.in_([BackupStatus.COMPLETED.value, BackupStatus.FAILED.value]),
                TenantBackup.retention_until < now,
            )
        )
        expired = 0
        errors = 0
        for backup in result.scalars().all():
            if ensure_utc(backup.retention_until) >= now:
                continue
            if backup.status == BackupStatus.COMPLETED.value:
                try:
                    await self.infra.storage.delete_object(backup.storage_path)
                except InfraUnavailable as e:
                    logger.warning("Could not delete %s: %s", backup.storage_path, e.message)
                    errors += 1
                    continue
            backup.status = BackupStatus.EXPIRED.value
            backup.updated_at = now
            expired += 1
        await self.db.commit()
        if expired or errors:
            logger.info("Backup expiry sweep: expired=%d errors=%d", expired, errors)
        return {"expired": expired, "errors": errors}


def scheduled_backup_type(now: datetime) -> BackupType:
    weekday = now.strftime("%a").lower()
    if weekday == settings.backup_weekly_day.lower()[:3]:
        return BackupType.WEEKLY
    return BackupType.DAILY


async def run_scheduled_backups(infra: Infrastructure, tenant_ids: list[str], now: datetime | None = None) -> dict:
    """Daily backup for every tenant (weekly on the configured weekday)."""
    backup_type = scheduled_backup_type(now or utcnow())

    async def _work(db: AsyncSession, tenant_id: str) -> dict:
        backup = await BackupManager(db, infra).backup(tenant_id, backup_type, actor="scheduler")
        return {"backup_id": backup.id, "storage_path": backup.storage_path}

    outcomes = await run_per_tenant(tenant_ids, _work, settings.max_concurrent_tenant_ops, job="backup")
    failed = [tenant_id for tenant_id, outcome in outcomes.items() if not outcome["ok"]]
    logger.info("Scheduled %s backups: %d ok, %d failed", backup_type.value, len(outcomes) - len(failed), len(failed))
    return {"backup_type": backup_type.value, "outcomes": outcomes, "failed": failed}

