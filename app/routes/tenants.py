"""
Tenant Routes

POST /tenants                  → provision a tenant (shared or dedicated)
POST /tenants/{id}/scale       → resize a dedicated tenant
POST /tenants/{id}/backup      → snapshot a tenant to object storage
POST /tenants/{id}/promote     → move a shared tenant to a dedicated container

Only reachable through the bridge; authentication happens in
BridgeAuthMiddleware before any of these handlers run.
"""

import logging

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.infra import Infrastructure, get_infra
from app.middleware.rate_limit import limiter
from app.models.backup import TenantBackup
from app.schemas.tenant import (
    BackupRequest,
    BackupResponse,
    PromoteRequest,
    PromoteResponse,
    ScaleRequest,
    ScaleResponse,
    TenantCreate,
    TenantResponse,
)
from app.services.backup_service import BackupManager
from app.services.lifecycle_service import LifecycleManager, ProvisionRequest
from app.services.promotion_service import RESULT_COMPLETED, PromotionService

router = APIRouter(tags=["Tenants"])
logger = logging.getLogger(__name__)


def actor_of(request: Request) -> str:
    principal = getattr(request.state, "principal", None)
    return principal.subject if principal is not None else "bridge"


def backup_response(backup: TenantBackup) -> BackupResponse:
    return BackupResponse(
        backup_id=backup.id,
        tenant_id=backup.tenant_id,
        backup_type=backup.backup_type,
        status=backup.status,
        storage_bucket=backup.storage_bucket,
        storage_path=backup.storage_path,
        size_bytes=backup.size_bytes,
        includes_database=backup.includes_database,
        includes_workflows=backup.includes_workflows,
        includes_credentials=backup.includes_credentials,
        includes_files=backup.includes_files,
        retention_until=backup.retention_until,
        created_at=backup.created_at,
        completed_at=backup.completed_at,
    )


@router.post("/tenants", response_model=TenantResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.rate_limit_tenant_ops)
async def provision_tenant(
    request: Request,
    response: Response,
    body: TenantCreate,
    db: AsyncSession = Depends(get_db),
    infra: Infrastructure = Depends(get_infra),
):
    tenant = await LifecycleManager(db, infra).provision(
        ProvisionRequest(
            name=body.name,
            email=body.email,
            subdomain=body.subdomain,
            mode=body.mode,
            plan=body.plan,
            region=body.region,
        ),
        actor=actor_of(request),
    )
    return TenantResponse.model_validate(tenant)


@router.post("/tenants/{tenant_id}/scale", response_model=ScaleResponse)
@limiter.limit(settings.rate_limit_tenant_ops)
async def scale_tenant(
    request: Request,
    response: Response,
    tenant_id: str,
    body: ScaleRequest,
    db: AsyncSession = Depends(get_db),
    infra: Infrastructure = Depends(get_infra),
):
    tenant, summary = await LifecycleManager(db, infra).scale(
        tenant_id,
        cpu_cores=body.cpu,
        memory_mb=body.memory_mb,
        workers=body.workers,
        actor=actor_of(request),
    )
    return ScaleResponse(
        tenant=TenantResponse.model_validate(tenant),
        method=summary["method"],
        resources_before=summary["before"],
        resources_after=summary["after"],
    )


@router.post("/tenants/{tenant_id}/backup", response_model=BackupResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.rate_limit_tenant_ops)
async def backup_tenant(
    request: Request,
    response: Response,
    tenant_id: str,
    body: BackupRequest | None = None,
    db: AsyncSession = Depends(get_db),
    infra: Infrastructure = Depends(get_infra),
):
    body = body or BackupRequest()
    backup = await BackupManager(db, infra).backup(
        tenant_id,
        backup_type=body.backup_type,
        includes=body.include_flags(),
        actor=actor_of(request),
    )
    return backup_response(backup)


@router.post("/tenants/{tenant_id}/promote", response_model=PromoteResponse)
@limiter.limit(settings.rate_limit_tenant_ops)
async def promote_tenant(
    request: Request,
    response: Response,
    tenant_id: str,
    body: PromoteRequest | None = None,
    db: AsyncSession = Depends(get_db),
    infra: Infrastructure = Depends(get_infra),
):
    """200 when the migration finished, 202 when it was scheduled or needs a resume."""
    body = body or PromoteRequest()
    result = await PromotionService(db, infra).promote(
        tenant_id, window=body.window, ttl_minutes=body.ttl_minutes, actor=actor_of(request)
    )
    payload = PromoteResponse(**result).model_dump()
    if result["status"] != RESULT_COMPLETED:
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=payload)
    return payload
