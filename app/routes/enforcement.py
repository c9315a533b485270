"""
Enforcement Routes

POST /enforcement/run → one quota enforcement cycle over all tenants.
POST /enforcement/events/{id}/acknowledge → mark an open event as seen.
"""

from typing import Any

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.infra import Infrastructure, get_infra
from app.middleware.rate_limit import limiter
from app.services.enforcement_service import EnforcementEngine

router = APIRouter(tags=["Enforcement"])


@router.post("/enforcement/run")
@limiter.limit(settings.rate_limit_tenant_ops)
async def run_enforcement(
    request: Request,
    response: Response,
    infra: Infrastructure = Depends(get_infra),
) -> dict[str, Any]:
    return await EnforcementEngine(infra).run_cycle()


@router.post("/enforcement/events/{event_id}/acknowledge")
async def acknowledge_event(
    event_id: str,
    db: AsyncSession = Depends(get_db),
    infra: Infrastructure = Depends(get_infra),
) -> dict[str, Any]:
    event = await EnforcementEngine(infra).acknowledge(db, event_id)
    return {
        "event_id": event.id,
        "tenant_id": event.tenant_id,
        "limit_type": event.limit_type,
        "action": event.action,
        "status": event.status,
        "acknowledged_at": event.acknowledged_at.isoformat() if event.acknowledged_at else None,
    }
