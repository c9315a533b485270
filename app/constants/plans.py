"""
Plan Constants

Default resource allocations, scale ceilings and billing entitlements per
plan tier. Entitlements seed ``tenant_quotas`` at provisioning; billing may
later override them through the entitlement reference.
"""

from dataclasses import asdict, dataclass
from enum import Enum


class PlanTier(str, Enum):
    """Billing plan tiers."""

    STARTER = "starter"
    PRO = "pro"
    ENTERPRISE = "enterprise"


@dataclass(frozen=True)
class PlanResources:
    cpu_cores: int
    memory_mb: int
    workers: int
    storage_gb: int

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class PlanCeiling:
    cpu_cores: int
    memory_mb: int
    workers: int


@dataclass(frozen=True)
class PlanEntitlements:
    executions_monthly: int
    concurrent_executions: int
    cpu_limit_percent: int
    memory_limit_mb: int
    storage_limit_gb: int
    api_calls_hourly: int
    webhook_endpoints: int
    retention_days: int

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


PLAN_RESOURCES: dict[PlanTier, PlanResources] = {
    PlanTier.STARTER: PlanResources(cpu_cores=1, memory_mb=1024, workers=1, storage_gb=10),
    PlanTier.PRO: PlanResources(cpu_cores=2, memory_mb=2048, workers=2, storage_gb=20),
    PlanTier.ENTERPRISE: PlanResources(cpu_cores=4, memory_mb=4096, workers=4, storage_gb=50),
}

PLAN_CEILINGS: dict[PlanTier, PlanCeiling] = {
    PlanTier.STARTER: PlanCeiling(cpu_cores=2, memory_mb=2048, workers=2),
    PlanTier.PRO: PlanCeiling(cpu_cores=8, memory_mb=16384, workers=8),
    PlanTier.ENTERPRISE: PlanCeiling(cpu_cores=32, memory_mb=32768, workers=20),
}

PLAN_ENTITLEMENTS: dict[PlanTier, PlanEntitlements] = {
    PlanTier.STARTER: PlanEntitlements(
        executions_monthly=1000,
        concurrent_executions=2,
        cpu_limit_percent=100,
        memory_limit_mb=1024,
        storage_limit_gb=5,
        api_calls_hourly=100,
        webhook_endpoints=5,
        retention_days=7,
    ),
    PlanTier.PRO: PlanEntitlements(
        executions_monthly=10000,
        concurrent_executions=10,
        cpu_limit_percent=200,
        memory_limit_mb=2048,
        storage_limit_gb=20,
        api_calls_hourly=1000,
        webhook_endpoints=20,
        retention_days=30,
    ),
    PlanTier.ENTERPRISE: PlanEntitlements(
        executions_monthly=100000,
        concurrent_executions=50,
        cpu_limit_percent=400,
        memory_limit_mb=4096,
        storage_limit_gb=100,
        api_calls_hourly=10000,
        webhook_endpoints=100,
        retention_days=90,
    ),
}


def resources_for(plan: str) -> PlanResources:
    return PLAN_RESOURCES[PlanTier(plan)]


def ceiling_for(plan: str) -> PlanCeiling:
    return PLAN_CEILINGS[PlanTier(plan)]


def entitlements_for(plan: str) -> PlanEntitlements:
    return PLAN_ENTITLEMENTS[PlanTier(plan)]
