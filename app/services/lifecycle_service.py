"""
Tenant Lifecycle Manager

Creates, scales, suspends and resumes tenant runtimes. Promotion lives in
promotion_service.

Every registry write is committed before the next infrastructure call, so no
database transaction stays open across network I/O. Lifecycle operations on a
tenant (scale, promote, suspend, resume) are serialized by the registry lease.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.constants.plans import PlanTier, ceiling_for, entitlements_for, resources_for
from app.exceptions import (
    ConflictError,
    ControlPlaneError,
    ErrorCode,
    InfraUnavailable,
    InternalError,
    InvalidTransition,
    NotDedicated,
    PlanCeilingExceeded,
    ProvisionConflict,
    ValidationError,
)
from app.infra import Infrastructure
from app.infra.container_engine import LiveResizeUnsupported, build_container_spec
from app.infra.proxy import build_routing_spec
from app.models.tenant import ContainerStatus, TenantInstance, TenantMode, TenantQuotas, TenantStatus
from app.services.registry import TenantRegistry
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)

SUBDOMAIN_PATTERN = re.compile(r"^[a-z0-9](?:[a-z0-9-]{1,48})[a-z0-9]$")
RESERVED_SUBDOMAINS = frozenset({"www", "api", "app", "admin", "traefik", "status", "mail"})

SCALABLE_FIELDS = ("cpu_cores", "memory_mb", "workers")


@dataclass
class ProvisionRequest:
    name: str
    email: str
    subdomain: str
    mode: TenantMode = TenantMode.SHARED
    plan: PlanTier = PlanTier.STARTER
    region: str | None = None


def validate_subdomain(subdomain: str) -> str:
    subdomain = subdomain.strip().lower()
    if not SUBDOMAIN_PATTERN.match(subdomain) or "--" in subdomain:
        raise ValidationError(
            "Subdomain must be 3-50 characters of lowercase letters, digits and single hyphens",
            field="subdomain",
        )
    if subdomain in RESERVED_SUBDOMAINS:
        raise ValidationError(f"Subdomain '{subdomain}' is reserved", field="subdomain")
    return subdomain


def public_url_for(subdomain: str) -> str:
    return f"https://{subdomain}.{settings.proxy_domain}"


def validate_against_ceiling(plan: str, target: dict[str, int]) -> None:
    ceiling = ceiling_for(plan)
    for field in SCALABLE_FIELDS:
        value = target[field]
        if value < 1:
            raise ValidationError(f"{field} must be at least 1", field=field)
        limit = getattr(ceiling, field)
        if value > limit:
            raise PlanCeilingExceeded(field, value, limit, plan)


class LifecycleManager:
    """Tenant provisioning and run-state changes."""

    def __init__(self, db: AsyncSession, infra: Infrastructure):
        self.db = db
        self.infra = infra
        self.registry = TenantRegistry(db)

    # =========================================================================
    # Provisioning
    # =========================================================================

    async def provision(self, request: ProvisionRequest, actor: str = "bridge") -> TenantInstance:
        """
        Create a tenant runtime and bring it to ``active``.

        A retry for the same subdomain and email while the tenant is still
        ``provisioning`` resumes the earlier attempt instead of conflicting.
        """
        subdomain = validate_subdomain(request.subdomain)
        mode = TenantMode(request.mode)
        plan = PlanTier(request.plan)

        existing = await self.registry.find_by_subdomain(subdomain)
        if existing is not None:
            if existing.status == TenantStatus.PROVISIONING.value and existing.email == request.email:
                logger.info("Resuming provisioning of %s", subdomain, extra={"tenant_id": existing.tenant_id})
                tenant = existing
            else:
                raise ProvisionConflict(subdomain)
        else:
            resources = resources_for(plan.value)
            entitlements = entitlements_for(plan.value)
            tenant = TenantInstance(
                name=request.name,
                email=request.email,
                subdomain=subdomain,
                mode=mode.value,
                status=TenantStatus.PROVISIONING.value,
                plan=plan.value,
                region=request.region or "us-east",
                metadata_={},
                **resources.as_dict(),
            )
            quotas = TenantQuotas(enforcement_enabled=True, metadata_={}, entitlements={}, **entitlements.as_dict())
            tenant = await self.registry.create(tenant, quotas, actor)

        tenant_id = tenant.tenant_id
        try:
            if tenant.is_dedicated:
                return await self._bring_up_dedicated(tenant, actor)
            return await self._bring_up_shared(tenant, actor)
        except InfraUnavailable as e:
            # Stays provisioning; the same request can be retried
            await self.registry.merge_metadata(tenant_id, last_error=e.message)
            raise
        except ControlPlaneError:
            raise
        except Exception as e:
            logger.error("Provisioning crashed for %s", subdomain, exc_info=True, extra={"tenant_id": tenant_id})
            await self.db.rollback()
            await self.mark_failed(tenant_id, f"provisioning error: {e}", actor)
            raise InternalError("Provisioning failed", details={"tenant_id": tenant_id}) from e

    async def _bring_up_shared(self, tenant: TenantInstance, actor: str) -> TenantInstance:
        # A resumed attempt may already hold a pool slot
        if not (tenant.metadata_ or {}).get("shared_slot"):
            await self.infra.pool.acquire()
            tenant = await self.registry.merge_metadata(tenant.tenant_id, shared_slot=True)

        login_url = await self.infra.runtime.allocate_shared(tenant.tenant_id, tenant.subdomain, tenant.workers)
        route = build_routing_spec(tenant.subdomain, settings.shared_runtime_base_url)
        await self.infra.proxy.apply_route(route)

        metadata = dict(tenant.metadata_ or {})
        metadata.pop("last_error", None)
        return await self.registry.transition(
            tenant.tenant_id,
            TenantStatus.ACTIVE,
            actor,
            "provision_complete",
            details={"mode": tenant.mode},
            login_url=login_url,
            runtime_url=settings.shared_runtime_base_url,
            router_name=route.router_name,
            last_healthcheck_at=utcnow(),
            metadata_=metadata,
        )

    async def _bring_up_dedicated(self, tenant: TenantInstance, actor: str) -> TenantInstance:
        spec = build_container_spec(
            tenant.tenant_id, tenant.subdomain, tenant.cpu_cores, tenant.memory_mb, tenant.workers
        )
        container_id = await self.infra.container_engine.ensure_container(spec)
        tenant = await self.registry.update(
            tenant.tenant_id,
            container_id=container_id,
            container_name=spec.name,
            container_status=ContainerStatus.RUNNING.value,
            runtime_url=spec.internal_url,
        )

        route = build_routing_spec(tenant.subdomain, spec.internal_url)
        await self.infra.proxy.apply_route(route)
        await self.wait_healthy(container_id)

        metadata = dict(tenant.metadata_ or {})
        metadata.pop("last_error", None)
        return await self.registry.transition(
            tenant.tenant_id,
            TenantStatus.ACTIVE,
            actor,
            "provision_complete",
            details={"mode": tenant.mode, "container_id": container_id},
            login_url=public_url_for(tenant.subdomain),
            router_name=route.router_name,
            container_status=ContainerStatus.RUNNING.value,
            health_failures=0,
            last_healthcheck_at=utcnow(),
            metadata_=metadata,
        )

    async def wait_healthy(self, container_id: str, timeout: float | None = None) -> None:
        """Poll the container until it reports healthy or the wait expires."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + (timeout or settings.health_wait_seconds)
        while True:
            health = await self.infra.container_engine.health(container_id)
            if health.healthy:
                return
            if health.status == ContainerStatus.FAILED.value or loop.time() >= deadline:
                raise InfraUnavailable(
                    "container_engine",
                    f"Container {container_id} did not become healthy (status={health.status})",
                )
            await asyncio.sleep(settings.health_poll_seconds)

    # =========================================================================
    # Scaling
    # =========================================================================

    async def scale(
        self,
        tenant_id: str,
        cpu_cores: int | None = None,
        memory_mb: int | None = None,
        workers: int | None = None,
        actor: str = "bridge",
    ) -> tuple[TenantInstance, dict[str, Any]]:
        """
        Resize a dedicated tenant's container.

        CPU and memory are changed in place when the engine supports it;
        a worker-count change, or a refused live resize, recreates the
        container on the same data volume.

        Returns:
            Tuple of (updated tenant, change summary)
        """
        tenant = await self.registry.get(tenant_id)
        if not tenant.is_dedicated:
            raise NotDedicated(tenant_id)
        if tenant.status != TenantStatus.ACTIVE.value:
            raise ConflictError(
                f"Tenant is {tenant.status}; only active tenants can be scaled",
                code=ErrorCode.INVALID_TRANSITION,
                details={"tenant_id": tenant_id, "current_status": tenant.status},
            )

        requested = {"cpu_cores": cpu_cores, "memory_mb": memory_mb, "workers": workers}
        target = {
            field: getattr(tenant, field) if requested[field] is None else requested[field]
            for field in SCALABLE_FIELDS
        }
        validate_against_ceiling(tenant.plan, target)

        owner = await self.registry.acquire_lease(tenant_id, "scale")
        try:
            tenant = await self.registry.get(tenant_id)
            before = {field: getattr(tenant, field) for field in SCALABLE_FIELDS}
            if before == target:
                return tenant, {"before": before, "after": target, "method": "noop"}

            method = await self._apply_resources(tenant, target)
            summary = {"before": before, "after": target, "method": method}
            tenant = await self.registry.update(
                tenant_id,
                actor=actor,
                action="scale",
                details=summary,
                expected_status=[TenantStatus.ACTIVE],
                **{field: target[field] for field in SCALABLE_FIELDS},
            )
            logger.info(
                "Scaled tenant %s via %s: %s -> %s", tenant.subdomain, method, before, target,
                extra={"tenant_id": tenant_id, "event": "scale"},
            )
            return tenant, summary
        finally:
            await self.registry.release_lease(tenant_id, owner)

    async def _apply_resources(self, tenant: TenantInstance, target: dict[str, int]) -> str:
        engine = self.infra.container_engine
        if target["workers"] == tenant.workers:
            try:
                await engine.update_resources(tenant.container_id, target["cpu_cores"], target["memory_mb"])
                return "live"
            except LiveResizeUnsupported as e:
                logger.info("Live resize refused for %s, recreating: %s", tenant.subdomain, e)

        spec = build_container_spec(
            tenant.tenant_id, tenant.subdomain, target["cpu_cores"], target["memory_mb"], target["workers"]
        )
        container_id = await engine.recreate(spec)
        await self.registry.update(tenant.tenant_id, container_id=container_id, container_name=spec.name)
        await self.wait_healthy(container_id)
        return "recreate"

    # =========================================================================
    # Run state
    # =========================================================================

    async def suspend(self, tenant_id: str, reason: str, actor: str = "enforcement") -> TenantInstance:
        """Withdraw routing, then stop the container. Data is kept."""
        tenant = await self.registry.get(tenant_id)
        if tenant.status == TenantStatus.SUSPENDED.value:
            return tenant
        if tenant.status != TenantStatus.ACTIVE.value:
            raise InvalidTransition(tenant_id, tenant.status, TenantStatus.SUSPENDED.value)

        owner = await self.registry.acquire_lease(tenant_id, "suspend")
        try:
            if tenant.router_name:
                await self.infra.proxy.remove_route(tenant.router_name)

            metadata = dict(tenant.metadata_ or {})
            metadata["suspension_reason"] = reason
            tenant = await self.registry.transition(
                tenant_id,
                TenantStatus.SUSPENDED,
                actor,
                "suspend",
                details={"reason": reason},
                metadata_=metadata,
            )

            if tenant.is_dedicated and tenant.container_id:
                await self.infra.container_engine.stop(tenant.container_id)
                tenant = await self.registry.update(tenant_id, container_status=ContainerStatus.STOPPED.value)
            return tenant
        finally:
            await self.registry.release_lease(tenant_id, owner)

    async def resume(self, tenant_id: str, actor: str = "bridge") -> TenantInstance:
        tenant = await self.registry.get(tenant_id)
        if tenant.status == TenantStatus.ACTIVE.value:
            return tenant
        if tenant.status != TenantStatus.SUSPENDED.value:
            raise InvalidTransition(tenant_id, tenant.status, TenantStatus.ACTIVE.value)

        owner = await self.registry.acquire_lease(tenant_id, "resume")
        try:
            changes: dict[str, Any] = {}
            if tenant.is_dedicated and tenant.container_id:
                await self.infra.container_engine.start(tenant.container_id)
                changes["container_status"] = ContainerStatus.RUNNING.value
                changes["health_failures"] = 0

            metadata = dict(tenant.metadata_ or {})
            route = build_routing_spec(tenant.subdomain, tenant.runtime_url, throttled=bool(metadata.get("throttled")))
            await self.infra.proxy.apply_route(route)

            metadata.pop("suspension_reason", None)
            return await self.registry.transition(
                tenant_id,
                TenantStatus.ACTIVE,
                actor,
                "resume",
                router_name=route.router_name,
                metadata_=metadata,
                **changes,
            )
        finally:
            await self.registry.release_lease(tenant_id, owner)

    async def set_throttle(self, tenant_id: str, throttled: bool, actor: str = "enforcement") -> TenantInstance:
        """Add or remove the proxy rate-limit middleware on the tenant's route."""
        tenant = await self.registry.get(tenant_id)
        if tenant.status == TenantStatus.ACTIVE.value and tenant.runtime_url:
            route = build_routing_spec(tenant.subdomain, tenant.runtime_url, throttled=throttled)
            await self.infra.proxy.apply_route(route)

        metadata = dict(tenant.metadata_ or {})
        if throttled:
            metadata["throttled"] = True
        else:
            metadata.pop("throttled", None)
        return await self.registry.update(
            tenant_id,
            actor=actor,
            action="throttle" if throttled else "unthrottle",
            metadata_=metadata,
        )

    async def mark_failed(self, tenant_id: str, reason: str, actor: str = "system") -> TenantInstance:
        tenant = await self.registry.get(tenant_id)
        metadata = dict(tenant.metadata_ or {})
        metadata["failure_reason"] = reason
        return await self.registry.transition(
            tenant_id, TenantStatus.FAILED, actor, "mark_failed", details={"reason": reason}, metadata_=metadata
        )

    # =========================================================================
    # Health
    # =========================================================================

    async def probe_health(self, tenant_id: str) -> dict[str, Any]:
        """
        Reconcile ``container_status`` with the engine.

        The third consecutive failed probe flips the container to ``failed``
        and raises a single alert; the tenant's status is left alone.
        """
        tenant = await self.registry.get(tenant_id)
        if not tenant.is_dedicated or not tenant.container_id:
            return {"tenant_id": tenant_id, "skipped": True}

        health = await self.infra.container_engine.health(tenant.container_id)
        now = utcnow()
        if health.healthy:
            await self.registry.update(
                tenant_id, container_status=health.status, health_failures=0, last_healthcheck_at=now
            )
            return {"tenant_id": tenant_id, "healthy": True, "container_status": health.status}

        failures = (tenant.health_failures or 0) + 1
        already_failed = tenant.container_status == ContainerStatus.FAILED.value
        tripped = failures >= settings.health_probe_failure_threshold
        container_status = ContainerStatus.FAILED.value if tripped or already_failed else health.status

        await self.registry.update(
            tenant_id,
            actor="health_probe" if tripped and not already_failed else None,
            action="container_failed" if tripped and not already_failed else None,
            details={"consecutive_failures": failures},
            container_status=container_status,
            health_failures=failures,
            last_healthcheck_at=now,
        )

        alerted = False
        if tripped and not already_failed:
            logger.error(
                "Container for %s failed %d consecutive probes", tenant.subdomain, failures,
                extra={"tenant_id": tenant_id, "event": "container_failed"},
            )
            await self.infra.notifier.send(
                "tenant.container_failed",
                {
                    "tenant_id": tenant_id,
                    "subdomain": tenant.subdomain,
                    "container_id": tenant.container_id,
                    "consecutive_failures": failures,
                },
            )
            alerted = True

        return {
            "tenant_id": tenant_id,
            "healthy": False,
            "container_status": container_status,
            "consecutive_failures": failures,
            "alerted": alerted,
        }
