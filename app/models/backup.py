"""
Tenant Backup Model

One row per backup run. Created ``running``, moves once to ``completed`` or
``failed``, and becomes ``expired`` when the retention sweep passes
``retention_until``.
"""

from enum import Enum

from sqlalchemy import JSON, BigInteger, Boolean, Column, DateTime, ForeignKey, Index, String, Text

from app.database import Base
from app.models.tenant import new_id
from app.utils.clock import utcnow

BACKUP_FORMAT_VERSION = "1.0"


class BackupStatus(str, Enum):
    """Backup status enumeration."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


class BackupType(str, Enum):
    """Backup type enumeration."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MANUAL = "manual"
    PRE_MIGRATION = "pre_migration"
    PRE_UPGRADE = "pre_upgrade"


class TenantBackup(Base):
    """
    Snapshot of a tenant runtime stored in object storage.

    Stores:
    - Object location (bucket + key) and size
    - Which content sections were included
    - Retention deadline and restore-test flag
    """

    __tablename__ = "tenant_backups"

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(36), ForeignKey("tenant_instances.tenant_id"), nullable=False)

    backup_type = Column(String(20), nullable=False, default=BackupType.MANUAL.value)
    status = Column(String(20), nullable=False, default=BackupStatus.RUNNING.value)

    storage_bucket = Column(String(100), nullable=False)
    storage_path = Column(String(500), nullable=False)
    size_bytes = Column(BigInteger, nullable=True)

    # What's included in the backup
    includes_database = Column(Boolean, nullable=False, default=True)
    includes_workflows = Column(Boolean, nullable=False, default=True)
    includes_credentials = Column(Boolean, nullable=False, default=True)
    includes_files = Column(Boolean, nullable=False, default=False)

    restore_tested = Column(Boolean, nullable=False, default=False)
    restore_tested_at = Column(DateTime(timezone=True), nullable=True)

    retention_until = Column(DateTime(timezone=True), nullable=False)
    backup_version = Column(String(20), nullable=False, default=BACKUP_FORMAT_VERSION)
    compatibility_version = Column(String(50), nullable=True)  # runtime version that produced it
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)

    __table_args__ = (
        Index("idx_tenant_backups_tenant_created", "tenant_id", "created_at"),
        Index("idx_tenant_backups_status_retention", "status", "retention_until"),
    )

    def __repr__(self) -> str:
        return f"<TenantBackup(id={self.id}, tenant_id={self.tenant_id}, status={self.status})>"

    @property
    def size_mb(self) -> float | None:
        if self.size_bytes:
            return round(self.size_bytes / (1024 * 1024), 2)
        return None

    def include_flags(self) -> dict[str, bool]:
        return {
            "database": self.includes_database,
            "workflows": self.includes_workflows,
            "credentials": self.includes_credentials,
            "files": self.includes_files,
        }
