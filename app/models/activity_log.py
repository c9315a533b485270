from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String

from ..database import Base
from ..utils.clock import utcnow


class AuditRecord(Base):
    """Audit trail entry for a tenant lifecycle transition."""

    __tablename__ = "tenant_audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(36), ForeignKey("tenant_instances.tenant_id"), nullable=False)
    action = Column(String(50), nullable=False)  # provision, scale, suspend, promote, ...
    actor = Column(String(100), nullable=False)  # api, autoscale, enforcement, scheduler
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=True)
    correlation_id = Column(String(64), nullable=True)
    details = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (Index("idx_audit_tenant_action_created", "tenant_id", "action", "created_at"),)
