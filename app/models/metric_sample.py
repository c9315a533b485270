"""
Tenant metric samples.

Written by the metrics collector on every collection cycle; read by the
autoscale engine (sustained-trigger window) and the enforcement engine
(latest usage).
"""

from sqlalchemy import BigInteger, Column, DateTime, Float, ForeignKey, Index, Integer, String

from app.database import Base
from app.utils.clock import utcnow


class TenantMetricSample(Base):
    __tablename__ = "tenant_metric_samples"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(36), ForeignKey("tenant_instances.tenant_id"), nullable=False)
    collected_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    # Load signals
    queue_wait_p95_seconds = Column(Float, nullable=False, default=0.0)
    executions_per_minute = Column(Float, nullable=False, default=0.0)
    cpu_percent = Column(Float, nullable=False, default=0.0)
    memory_percent = Column(Float, nullable=False, default=0.0)
    memory_bytes = Column(BigInteger, nullable=False, default=0)
    success_rate_percent = Column(Float, nullable=True)
    active_workers = Column(Integer, nullable=True)

    # Usage counters
    executions_month = Column(Integer, nullable=False, default=0)
    concurrent_executions = Column(Integer, nullable=False, default=0)
    storage_gb = Column(Float, nullable=False, default=0.0)
    api_calls_hour = Column(Integer, nullable=False, default=0)

    __table_args__ = (Index("idx_metric_samples_tenant_collected", "tenant_id", "collected_at"),)

    def as_dict(self) -> dict:
        return {
            "collected_at": self.collected_at.isoformat() if self.collected_at else None,
            "queue_wait_p95_seconds": self.queue_wait_p95_seconds,
            "executions_per_minute": self.executions_per_minute,
            "cpu_percent": self.cpu_percent,
            "memory_percent": self.memory_percent,
            "memory_bytes": self.memory_bytes,
            "success_rate_percent": self.success_rate_percent,
            "active_workers": self.active_workers,
            "executions_month": self.executions_month,
            "concurrent_executions": self.concurrent_executions,
            "storage_gb": self.storage_gb,
            "api_calls_hour": self.api_calls_hour,
        }
