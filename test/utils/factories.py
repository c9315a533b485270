"""
Factory helpers for building registry state in tests
"""

import itertools
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.metric_sample import TenantMetricSample
from app.models.tenant import TenantInstance, TenantMode
from app.services.lifecycle_service import LifecycleManager, ProvisionRequest
from app.utils.clock import utcnow

_counter = itertools.count(1)


async def create_test_tenant(
    db: AsyncSession,
    infra,
    subdomain: str | None = None,
    mode: TenantMode = TenantMode.SHARED,
    plan: str = "starter",
    email: str = "owner@example.com",
) -> TenantInstance:
    """Provision a tenant through the lifecycle manager so it ends up active."""
    subdomain = subdomain or f"tenant-{next(_counter)}"
    return await LifecycleManager(db, infra).provision(
        ProvisionRequest(name=f"{subdomain} inc", email=email, subdomain=subdomain, mode=mode, plan=plan),
        actor="test",
    )


async def add_sample(
    db: AsyncSession,
    tenant_id: str,
    collected_at: datetime | None = None,
    **values,
) -> TenantMetricSample:
    sample = TenantMetricSample(tenant_id=tenant_id, collected_at=collected_at or utcnow(), **values)
    db.add(sample)
    await db.commit()
    return sample


async def add_sustained_samples(
    db: AsyncSession,
    tenant_id: str,
    span_seconds: int,
    step_seconds: int = 60,
    **values,
) -> list[TenantMetricSample]:
    """Samples every ``step_seconds`` from ``span_seconds`` ago up to now, all with the same values."""
    now = utcnow()
    samples = []
    for offset in range(span_seconds, -1, -step_seconds):
        samples.append(await add_sample(db, tenant_id, collected_at=now - timedelta(seconds=offset), **values))
    return samples
