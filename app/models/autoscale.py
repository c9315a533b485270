"""
Autoscale Event Model

One row per scaling decision. The partial unique index allows a single
pending/in_progress event per tenant, which serializes competing scale
decisions at the database level.
"""

from enum import Enum

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, ForeignKey, Index, String, Text, text

from app.database import Base
from app.models.tenant import new_id
from app.utils.clock import utcnow


class TriggerType(str, Enum):
    QUEUE_WAIT_P95 = "queue_wait_p95"
    EXECUTIONS_PER_MIN = "executions_per_min"
    CPU_USAGE = "cpu_usage"
    MEMORY_USAGE = "memory_usage"
    MANUAL = "manual"


class ScaleAction(str, Enum):
    SCALE_UP = "scale_up"
    SCALE_DOWN = "scale_down"
    ADD_WORKER = "add_worker"
    REMOVE_WORKER = "remove_worker"
    PROMOTE_DEDICATED = "promote_dedicated"


# Lower number wins when several triggers fire in the same cycle
ACTION_PRECEDENCE: dict[ScaleAction, int] = {
    ScaleAction.PROMOTE_DEDICATED: 0,
    ScaleAction.SCALE_UP: 1,
    ScaleAction.ADD_WORKER: 2,
    ScaleAction.SCALE_DOWN: 3,
    ScaleAction.REMOVE_WORKER: 4,
}


class AutoscaleStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


INFLIGHT_STATUSES = (AutoscaleStatus.PENDING.value, AutoscaleStatus.IN_PROGRESS.value)
_INFLIGHT_PREDICATE = text("status IN ('pending', 'in_progress')")


class AutoscaleEvent(Base):
    __tablename__ = "autoscale_events"

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(36), ForeignKey("tenant_instances.tenant_id"), nullable=False)

    trigger_type = Column(String(30), nullable=False)
    trigger_value = Column(Float, nullable=True)
    trigger_threshold = Column(Float, nullable=True)
    action = Column(String(30), nullable=False)
    action_details = Column(JSON, nullable=False, default=dict)

    status = Column(String(20), nullable=False, default=AutoscaleStatus.PENDING.value)
    resources_before = Column(JSON, nullable=True)
    resources_after = Column(JSON, nullable=True)
    success = Column(Boolean, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)

    __table_args__ = (
        Index(
            "uq_autoscale_events_inflight_tenant",
            "tenant_id",
            unique=True,
            postgresql_where=_INFLIGHT_PREDICATE,
            sqlite_where=_INFLIGHT_PREDICATE,
        ),
        Index("idx_autoscale_events_tenant_created", "tenant_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<AutoscaleEvent(id={self.id}, tenant_id={self.tenant_id}, action={self.action}, status={self.status})>"
