"""
Autoscale Routes

POST /autoscale/run → one evaluation cycle over all active tenants, or a
manual trigger for a single tenant when the body names one.
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.infra import Infrastructure, get_infra
from app.middleware.rate_limit import limiter
from app.models.autoscale import ScaleAction
from app.services.autoscale_service import AutoscaleEngine

router = APIRouter(tags=["Autoscale"])
logger = logging.getLogger(__name__)


class ManualTrigger(BaseModel):
    tenant_id: Optional[str] = None
    action: Optional[ScaleAction] = None
    cpu: Optional[int] = Field(None, ge=1)
    memory_mb: Optional[int] = Field(None, ge=1)
    workers: Optional[int] = Field(None, ge=1)


@router.post("/autoscale/run")
@limiter.limit(settings.rate_limit_tenant_ops)
async def run_autoscale(
    request: Request,
    response: Response,
    body: ManualTrigger | None = None,
    db: AsyncSession = Depends(get_db),
    infra: Infrastructure = Depends(get_infra),
) -> dict[str, Any]:
    """Safe to call repeatedly: a tenant with an event in flight is skipped."""
    engine = AutoscaleEngine(infra)
    if body is not None and body.tenant_id and body.action:
        changes = {"cpu_cores": body.cpu, "memory_mb": body.memory_mb, "workers": body.workers}
        return await engine.trigger_manual(db, body.tenant_id, body.action, changes)
    return await engine.run_cycle()
