"""
Monitoring Routes

Liveness/readiness probes, an aggregated dependency health view, Prometheus
exposition and the per-tenant metrics snapshot.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app import database
from app.config import settings
from app.database import get_db
from app.exceptions import InfraUnavailable
from app.infra import Infrastructure, get_infra
from app.services.metrics_service import MetricsCollector
from app.utils.metrics import set_app_info, update_health_status, update_uptime

router = APIRouter(tags=["Monitoring"])
logger = logging.getLogger(__name__)

# Application start time for uptime calculation
APP_START_TIME = time.time()

# Initialize app info metrics
set_app_info(version=settings.app_version, environment=settings.environment)

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"


class HealthStatus(BaseModel):
    """Health check response model."""

    status: str
    timestamp: str
    version: str
    uptime_seconds: float


class DetailedHealth(BaseModel):
    """Detailed health check response model."""

    status: str
    timestamp: str
    version: str
    environment: str
    uptime_seconds: float
    checks: dict[str, dict[str, Any]]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _liveness() -> HealthStatus:
    return HealthStatus(
        status=HEALTHY,
        timestamp=_now(),
        version=settings.app_version,
        uptime_seconds=round(time.time() - APP_START_TIME, 2),
    )


@router.get("/health", response_model=HealthStatus)
async def health_check() -> HealthStatus:
    """
    Liveness probe endpoint.

    Fast and independent of every external service.
    """
    return _liveness()


@router.get("/health/live", response_model=HealthStatus)
async def liveness_check() -> HealthStatus:
    return _liveness()


async def _check_registry() -> dict[str, Any]:
    start = time.perf_counter()
    try:
        async with database.AsyncSessionLocal() as db:
            await db.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        logger.warning("Registry health check failed: %s", e)
        return {"status": UNHEALTHY, "error": str(e), "response_time_ms": _elapsed_ms(start)}
    return {"status": HEALTHY, "response_time_ms": _elapsed_ms(start)}


async def _check_adapter(ping) -> dict[str, Any]:
    start = time.perf_counter()
    try:
        await ping()
    except InfraUnavailable as e:
        return {"status": UNHEALTHY, "error": e.message, "response_time_ms": _elapsed_ms(start)}
    return {"status": HEALTHY, "response_time_ms": _elapsed_ms(start)}


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)


@router.get("/health/ready")
async def readiness_check() -> JSONResponse:
    """
    Readiness probe endpoint.

    The registry is the only hard dependency; without it no request can be
    served, so the probe answers 503.
    """
    registry = await _check_registry()
    ready = registry["status"] == HEALTHY
    update_health_status("registry", ready)
    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ready" if ready else "not_ready", "timestamp": _now(), "checks": {"registry": registry}},
    )


@router.get("/health/detailed", response_model=DetailedHealth)
async def detailed_health_check(infra: Infrastructure = Depends(get_infra)):
    """
    Aggregated dependency health.

    ``healthy`` when everything answers, ``degraded`` when an adapter is
    down, ``unhealthy`` (503) when the registry is down.
    """
    adapters = {
        "container_engine": infra.container_engine.ping,
        "proxy": infra.proxy.ping,
        "object_storage": infra.storage.ping,
        "shared_runtime": infra.runtime.ping,
        "pool_capacity": infra.pool.ping,
    }
    results = await asyncio.gather(
        _check_registry(), *(_check_adapter(ping) for ping in adapters.values())
    )
    checks = dict(zip(["registry", *adapters], results))
    for name, check in checks.items():
        update_health_status(name, check["status"] == HEALTHY)

    if checks["registry"]["status"] != HEALTHY:
        overall = UNHEALTHY
    elif any(check["status"] != HEALTHY for check in checks.values()):
        overall = DEGRADED
    else:
        overall = HEALTHY

    body = DetailedHealth(
        status=overall,
        timestamp=_now(),
        version=settings.app_version,
        environment=settings.environment,
        uptime_seconds=round(time.time() - APP_START_TIME, 2),
        checks=checks,
    )
    if overall == UNHEALTHY:
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body.model_dump())
    return body


@router.get("/metrics")
async def prometheus_metrics(request: Request) -> Response:
    """
    Prometheus metrics endpoint.

    Fleet gauges are recomputed from the registry at scrape time; if the
    registry is unreachable the last values are served.
    """
    update_uptime(APP_START_TIME)
    try:
        async with database.AsyncSessionLocal() as db:
            await MetricsCollector(request.app.state.infra).refresh_fleet_gauges(db)
    except SQLAlchemyError as e:
        logger.warning("Could not refresh fleet gauges: %s", e)
        update_health_status("registry", False)

    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )


@router.get("/metrics/tenant/{tenant_id}")
async def tenant_metrics(
    tenant_id: str,
    db: AsyncSession = Depends(get_db),
    infra: Infrastructure = Depends(get_infra),
) -> dict[str, Any]:
    """Structured per-tenant snapshot."""
    return await MetricsCollector(infra).tenant_snapshot(db, tenant_id)
