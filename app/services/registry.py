"""
Tenant Registry

The only writer of tenant rows. Status changes are conditional updates keyed
by ``tenant_id`` and the expected source statuses, so two components acting on
the same tenant cannot overwrite each other: the loser sees a zero row count
and gets an InvalidTransition. Lifecycle operations additionally take a
short-lived lease on the row.
"""

import logging
import uuid
from datetime import timedelta
from typing import Any, Iterable

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.exceptions import InvalidTransition, NotFound, OperationInProgress, ProvisionConflict
from app.models.autoscale import INFLIGHT_STATUSES, AutoscaleEvent
from app.models.tenant import TenantInstance, TenantQuotas, TenantStatus, sources_for
from app.utils.activity_log import log_activity
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)


class TenantRegistry:
    """Registry-mediated reads and writes of tenant state."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # =========================================================================
    # Reads
    # =========================================================================

    async def get(self, tenant_id: str) -> TenantInstance:
        result = await self.db.execute(
            select(TenantInstance)
            .where(TenantInstance.tenant_id == tenant_id)
            .execution_options(populate_existing=True)
        )
        tenant = result.scalars().first()
        if tenant is None:
            raise NotFound("Tenant", tenant_id)
        return tenant

    async def find_by_subdomain(self, subdomain: str) -> TenantInstance | None:
        result = await self.db.execute(
            select(TenantInstance)
            .where(TenantInstance.subdomain == subdomain)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def get_quotas(self, tenant_id: str) -> TenantQuotas:
        result = await self.db.execute(
            select(TenantQuotas)
            .where(TenantQuotas.tenant_id == tenant_id)
            .execution_options(populate_existing=True)
        )
        quotas = result.scalars().first()
        if quotas is None:
            raise NotFound("TenantQuotas", tenant_id)
        return quotas

    async def list_ids(
        self,
        statuses: Iterable[TenantStatus] | None = None,
        modes: Iterable[str] | None = None,
    ) -> list[str]:
        query = select(TenantInstance.tenant_id).order_by(TenantInstance.created_at)
        if statuses:
            query = query.where(TenantInstance.status.in_([s.value for s in statuses]))
        if modes:
            query = query.where(TenantInstance.mode.in_(list(modes)))
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def has_inflight_autoscale(self, tenant_id: str) -> bool:
        result = await self.db.execute(
            select(AutoscaleEvent.id).where(
                AutoscaleEvent.tenant_id == tenant_id,
                AutoscaleEvent.status.in_(INFLIGHT_STATUSES),
            )
        )
        return result.first() is not None

    # =========================================================================
    # Writes
    # =========================================================================

    async def create(self, tenant: TenantInstance, quotas: TenantQuotas, actor: str) -> TenantInstance:
        """Insert a tenant with its quotas; the subdomain unique constraint reserves the name."""
        self.db.add(tenant)
        try:
            await self.db.flush()
            quotas.tenant_id = tenant.tenant_id
            self.db.add(quotas)
            log_activity(
                self.db,
                tenant.tenant_id,
                "provision",
                actor,
                to_status=tenant.status,
                details={"mode": tenant.mode, "plan": tenant.plan, "subdomain": tenant.subdomain},
            )
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            logger.info("Provision conflict on subdomain=%s: %s", tenant.subdomain, e.orig)
            raise ProvisionConflict(tenant.subdomain) from e
        logger.info("Tenant created: tenant_id=%s subdomain=%s", tenant.tenant_id, tenant.subdomain)
        return tenant

    async def transition(
        self,
        tenant_id: str,
        target: TenantStatus,
        actor: str,
        action: str,
        details: dict[str, Any] | None = None,
        **changes: Any,
    ) -> TenantInstance:
        """Move a tenant to ``target`` iff its current status allows it."""
        allowed = sources_for(target)
        now = utcnow()
        current = await self.get(tenant_id)
        from_status = current.status

        values = dict(changes)
        values.update(status=target.value, updated_at=now)
        result = await self.db.execute(
            update(TenantInstance)
            .where(TenantInstance.tenant_id == tenant_id, TenantInstance.status.in_(allowed))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            latest = await self.get(tenant_id)
            raise InvalidTransition(tenant_id, latest.status, target.value)

        log_activity(
            self.db, tenant_id, action, actor, from_status=from_status, to_status=target.value, details=details
        )
        await self.db.commit()
        return await self.get(tenant_id)

    async def update(
        self,
        tenant_id: str,
        actor: str | None = None,
        action: str | None = None,
        details: dict[str, Any] | None = None,
        expected_status: Iterable[TenantStatus] | None = None,
        **changes: Any,
    ) -> TenantInstance:
        """Update non-status fields, optionally guarded by the current status."""
        query = update(TenantInstance).where(TenantInstance.tenant_id == tenant_id)
        if expected_status is not None:
            query = query.where(TenantInstance.status.in_([s.value for s in expected_status]))
        changes["updated_at"] = utcnow()
        result = await self.db.execute(
            query.values(**changes).execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            latest = await self.get(tenant_id)
            raise InvalidTransition(tenant_id, latest.status, latest.status)

        if action:
            log_activity(self.db, tenant_id, action, actor or "system", details=details)
        await self.db.commit()
        return await self.get(tenant_id)

    async def merge_metadata(self, tenant_id: str, **entries: Any) -> TenantInstance:
        """Merge keys into the metadata bag; a value of None removes the key."""
        tenant = await self.get(tenant_id)
        metadata = dict(tenant.metadata_ or {})
        for key, value in entries.items():
            if value is None:
                metadata.pop(key, None)
            else:
                metadata[key] = value
        return await self.update(tenant_id, metadata_=metadata)

    async def touch_quota_sync(self, quotas: TenantQuotas, entitlements: dict) -> None:
        """The one quota write the control plane performs."""
        now = utcnow()
        await self.db.execute(
            update(TenantQuotas)
            .where(TenantQuotas.id == quotas.id)
            .values(entitlements=entitlements, last_sync_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    # =========================================================================
    # Leases
    # =========================================================================

    async def acquire_lease(self, tenant_id: str, operation: str, ttl_seconds: int | None = None) -> str:
        """Take the per-tenant lease or raise OperationInProgress."""
        owner = f"{operation}:{uuid.uuid4().hex[:12]}"
        now = utcnow()
        expires = now + timedelta(seconds=ttl_seconds or settings.lease_ttl_seconds)
        result = await self.db.execute(
            update(TenantInstance)
            .where(
                and_(
                    TenantInstance.tenant_id == tenant_id,
                    or_(TenantInstance.lease_owner.is_(None), TenantInstance.lease_expires_at < now),
                )
            )
            .values(lease_owner=owner, lease_expires_at=expires)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount != 1:
            tenant = await self.get(tenant_id)
            raise OperationInProgress(tenant_id, tenant.lease_owner)
        logger.debug("Lease acquired: tenant=%s owner=%s", tenant_id, owner)
        return owner

    async def renew_lease(self, tenant_id: str, owner: str, ttl_seconds: int | None = None) -> None:
        expires = utcnow() + timedelta(seconds=ttl_seconds or settings.lease_ttl_seconds)
        result = await self.db.execute(
            update(TenantInstance)
            .where(TenantInstance.tenant_id == tenant_id, TenantInstance.lease_owner == owner)
            .values(lease_expires_at=expires)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount != 1:
            raise OperationInProgress(tenant_id)

    async def release_lease(self, tenant_id: str, owner: str) -> None:
        await self.db.execute(
            update(TenantInstance)
            .where(TenantInstance.tenant_id == tenant_id, TenantInstance.lease_owner == owner)
            .values(lease_owner=None, lease_expires_at=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        logger.debug("Lease released: tenant=%s owner=%s", tenant_id, owner)
