"""
Per-tenant fan-out for the periodic jobs.

Each tenant's work item runs in its own session under a shared semaphore, so a
slow container engine call for one tenant never blocks the others and the
engine never sees more than ``max_concurrent_tenant_ops`` calls at once. A
failing tenant is recorded in the outcome and never aborts the batch.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app import database
from app.exceptions import ControlPlaneError
from app.middleware.logging import bind_correlation_id

logger = logging.getLogger(__name__)

TenantWork = Callable[[AsyncSession, str], Awaitable[Any]]


async def run_per_tenant(
    tenant_ids: Iterable[str],
    work: TenantWork,
    limit: int,
    job: str,
) -> dict[str, dict[str, Any]]:
    """Run ``work(db, tenant_id)`` for every tenant; never raises for one tenant's failure."""
    semaphore = asyncio.Semaphore(max(1, limit))

    async def _one(tenant_id: str) -> tuple[str, dict[str, Any]]:
        async with semaphore:
            bind_correlation_id()
            async with database.AsyncSessionLocal() as db:
                try:
                    result = await work(db, tenant_id)
                    return tenant_id, {"ok": True, "result": result}
                except ControlPlaneError as e:
                    await db.rollback()
                    logger.warning(
                        "%s failed for tenant %s: %s",
                        job,
                        tenant_id,
                        e.message,
                        extra={"tenant_id": tenant_id, "error_code": e.code.value},
                    )
                    return tenant_id, {"ok": False, "error": e.error, "code": e.code.value, "message": e.message}
                except Exception as e:
                    await db.rollback()
                    logger.error("%s crashed for tenant %s", job, tenant_id, exc_info=True, extra={"tenant_id": tenant_id})
                    return tenant_id, {"ok": False, "error": "InternalError", "code": "INTERNAL_ERROR", "message": str(e)}

    results = await asyncio.gather(*(_one(tenant_id) for tenant_id in tenant_ids))
    return dict(results)
