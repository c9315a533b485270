"""
Enforcement Event Model

One row per limit-violation instance of a (tenant, limit type). While a row is
active/acknowledged it is the only open row for that pair; a resolved row may be
reopened if usage climbs back inside the cool-down window.
"""

from enum import Enum

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, ForeignKey, Index, String, text

from app.database import Base
from app.models.tenant import new_id
from app.utils.clock import utcnow


class LimitType(str, Enum):
    EXECUTIONS_MONTHLY = "executions_monthly"
    CONCURRENT_EXECUTIONS = "concurrent_executions"
    CPU_USAGE = "cpu_usage"
    MEMORY_USAGE = "memory_usage"
    STORAGE = "storage"
    API_CALLS = "api_calls"


# Limit types whose breach may end in suspension
SUSPENDABLE_LIMITS = frozenset({LimitType.EXECUTIONS_MONTHLY, LimitType.STORAGE})


class EnforcementAction(str, Enum):
    WARNING = "warning"
    THROTTLE = "throttle"
    SUSPEND = "suspend"
    OVERAGE_BILLING = "overage_billing"


ACTION_RANK: dict[EnforcementAction, int] = {
    EnforcementAction.WARNING: 1,
    EnforcementAction.THROTTLE: 2,
    EnforcementAction.OVERAGE_BILLING: 2,
    EnforcementAction.SUSPEND: 3,
}


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


SEVERITY_RANK: dict[Severity, int] = {Severity.INFO: 0, Severity.WARNING: 1, Severity.CRITICAL: 2}


class EnforcementStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"
    ACKNOWLEDGED = "acknowledged"


class NotificationType(str, Enum):
    EMAIL = "email"
    SLACK = "slack"
    WEBHOOK = "webhook"
    IN_APP = "in_app"


OPEN_STATUSES = (EnforcementStatus.ACTIVE.value, EnforcementStatus.ACKNOWLEDGED.value)
_OPEN_PREDICATE = text("status IN ('active', 'acknowledged')")


class EnforcementEvent(Base):
    __tablename__ = "enforcement_events"

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(36), ForeignKey("tenant_instances.tenant_id"), nullable=False)

    limit_type = Column(String(30), nullable=False)
    current_usage = Column(Float, nullable=False)
    limit_value = Column(Float, nullable=False)
    usage_percentage = Column(Float, nullable=False)

    action = Column(String(20), nullable=False, default=EnforcementAction.WARNING.value)
    severity = Column(String(20), nullable=False, default=Severity.WARNING.value)
    status = Column(String(20), nullable=False, default=EnforcementStatus.ACTIVE.value)

    notification_sent = Column(Boolean, nullable=False, default=False)
    notification_type = Column(String(20), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    acknowledged_at = Column(DateTime(timezone=True), nullable=True)
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)

    __table_args__ = (
        Index(
            "uq_enforcement_events_open_limit",
            "tenant_id",
            "limit_type",
            unique=True,
            postgresql_where=_OPEN_PREDICATE,
            sqlite_where=_OPEN_PREDICATE,
        ),
        Index("idx_enforcement_events_tenant_status", "tenant_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<EnforcementEvent(id={self.id}, tenant_id={self.tenant_id}, "
            f"limit_type={self.limit_type}, action={self.action}, status={self.status})>"
        )

    @property
    def action_rank(self) -> int:
        return ACTION_RANK[EnforcementAction(self.action)]
