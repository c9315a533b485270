"""
Tenant models.

TenantInstance is the registry row for one tenant runtime (shared-pool slot or
dedicated container). TenantQuotas holds the entitlement numbers billing has
already computed; the control plane only reads them, apart from
``last_sync_at`` and the cached entitlement snapshot.

Tenants are never deleted, only marked ``failed``/``suspended``, so the audit
history stays intact.
"""

import enum
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
)

from app.database import Base
from app.utils.clock import utcnow


def new_id() -> str:
    return str(uuid.uuid4())


class TenantMode(str, enum.Enum):
    SHARED = "shared"
    DEDICATED = "dedicated"


class TenantStatus(str, enum.Enum):
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    MIGRATING = "migrating"
    FAILED = "failed"


class ContainerStatus(str, enum.Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"
    RESTARTING = "restarting"


# provisioning -> active <-> suspended; active/suspended -> migrating -> active;
# any state -> failed (terminal until manual intervention)
ALLOWED_TRANSITIONS: dict[TenantStatus, frozenset[TenantStatus]] = {
    TenantStatus.PROVISIONING: frozenset({TenantStatus.ACTIVE, TenantStatus.FAILED}),
    TenantStatus.ACTIVE: frozenset({TenantStatus.SUSPENDED, TenantStatus.MIGRATING, TenantStatus.FAILED}),
    TenantStatus.SUSPENDED: frozenset({TenantStatus.ACTIVE, TenantStatus.MIGRATING, TenantStatus.FAILED}),
    TenantStatus.MIGRATING: frozenset({TenantStatus.ACTIVE, TenantStatus.FAILED}),
    TenantStatus.FAILED: frozenset(),
}


def sources_for(target: TenantStatus) -> list[str]:
    """Statuses from which ``target`` may be entered."""
    return [source.value for source, targets in ALLOWED_TRANSITIONS.items() if target in targets]


class TenantInstance(Base):
    __tablename__ = "tenant_instances"

    tenant_id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(100), nullable=False)
    subdomain = Column(String(50), nullable=False, unique=True)  # DNS-safe, e.g. "acme"
    email = Column(String(254), nullable=False)
    mode = Column(String(20), nullable=False, default=TenantMode.SHARED.value)
    status = Column(String(20), nullable=False, default=TenantStatus.PROVISIONING.value)
    plan = Column(String(20), nullable=False)
    region = Column(String(50), nullable=False, default="us-east")

    # Resource allocation
    cpu_cores = Column(Integer, nullable=False)
    memory_mb = Column(Integer, nullable=False)
    workers = Column(Integer, nullable=False)
    storage_gb = Column(Integer, nullable=False)

    # Routing
    login_url = Column(String(255), nullable=True)  # public URL
    runtime_url = Column(String(255), nullable=True)  # backend URL the proxy forwards to
    router_name = Column(String(100), nullable=True)

    # Container identity (dedicated mode)
    container_id = Column(String(80), nullable=True)
    container_name = Column(String(100), nullable=True)
    container_status = Column(String(20), nullable=True)
    health_failures = Column(Integer, nullable=False, default=0)

    # Per-tenant lease serializing lifecycle operations
    lease_owner = Column(String(80), nullable=True)
    lease_expires_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_healthcheck_at = Column(DateTime(timezone=True), nullable=True)

    # Use metadata_ as Python attr to avoid shadowing SQLAlchemy Base.metadata
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)

    __table_args__ = (
        Index("idx_tenant_instances_status", "status"),
        Index("idx_tenant_instances_mode_status", "mode", "status"),
    )

    def __repr__(self) -> str:
        return f"<TenantInstance(tenant_id={self.tenant_id}, subdomain='{self.subdomain}', status={self.status})>"

    @property
    def is_dedicated(self) -> bool:
        return self.mode == TenantMode.DEDICATED.value

    def resources(self) -> dict[str, int]:
        return {
            "cpu_cores": self.cpu_cores,
            "memory_mb": self.memory_mb,
            "workers": self.workers,
            "storage_gb": self.storage_gb,
        }


class TenantQuotas(Base):
    __tablename__ = "tenant_quotas"

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(36), ForeignKey("tenant_instances.tenant_id"), nullable=False, unique=True)

    executions_monthly = Column(Integer, nullable=False)
    concurrent_executions = Column(Integer, nullable=False)
    cpu_limit_percent = Column(Integer, nullable=False)
    memory_limit_mb = Column(Integer, nullable=False)
    storage_limit_gb = Column(Integer, nullable=False)
    api_calls_hourly = Column(Integer, nullable=False)
    webhook_endpoints = Column(Integer, nullable=False)
    retention_days = Column(Integer, nullable=False)

    enforcement_enabled = Column(Boolean, nullable=False, default=True)
    billing_entitlement_ref = Column(String(120), nullable=True)
    entitlements = Column(JSON, nullable=False, default=dict)  # last snapshot fetched from billing
    last_sync_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)

    __table_args__ = (
        CheckConstraint("executions_monthly >= 0", name="ck_quotas_executions_non_negative"),
        CheckConstraint("concurrent_executions >= 0", name="ck_quotas_concurrency_non_negative"),
        CheckConstraint("cpu_limit_percent >= 0", name="ck_quotas_cpu_non_negative"),
        CheckConstraint("memory_limit_mb >= 0", name="ck_quotas_memory_non_negative"),
        CheckConstraint("storage_limit_gb >= 0", name="ck_quotas_storage_non_negative"),
        CheckConstraint("api_calls_hourly >= 0", name="ck_quotas_api_calls_non_negative"),
        CheckConstraint("webhook_endpoints >= 0", name="ck_quotas_webhooks_non_negative"),
        CheckConstraint("retention_days >= 0", name="ck_quotas_retention_non_negative"),
    )

    # Limit columns a billing entitlement snapshot may override
    LIMIT_FIELDS = (
        "executions_monthly",
        "concurrent_executions",
        "cpu_limit_percent",
        "memory_limit_mb",
        "storage_limit_gb",
        "api_calls_hourly",
        "webhook_endpoints",
    )

    def effective_limits(self, entitlements: dict | None = None) -> dict[str, int]:
        """Quota row values overridden by a (non-negative) entitlement snapshot."""
        limits = {field: getattr(self, field) for field in self.LIMIT_FIELDS}
        for field, value in (entitlements or {}).items():
            if field in limits and isinstance(value, (int, float)) and value >= 0:
                limits[field] = int(value)
        return limits
