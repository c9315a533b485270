"""
Migration step log for shared -> dedicated promotion.

Each (migration_id, step) pair is unique, so a resumed promotion finds the
steps that already completed and skips them.
"""

from enum import Enum

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint

from app.database import Base
from app.models.tenant import new_id
from app.utils.clock import utcnow


class MigrationStepName(str, Enum):
    PRE_MIGRATION_BACKUP = "pre_migration_backup"
    EXPORT_STATE = "export_state"
    CREATE_CONTAINER = "create_container"
    WAIT_HEALTHY = "wait_healthy"
    IMPORT_STATE = "import_state"
    SWITCH_ROUTING = "switch_routing"
    RELEASE_SHARED_SLOT = "release_shared_slot"
    FINALIZE = "finalize"


# Execution order
MIGRATION_STEPS: tuple[MigrationStepName, ...] = tuple(MigrationStepName)


class StepStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class MigrationStep(Base):
    __tablename__ = "tenant_migration_steps"

    id = Column(String(36), primary_key=True, default=new_id)
    migration_id = Column(String(36), nullable=False, index=True)
    tenant_id = Column(String(36), ForeignKey("tenant_instances.tenant_id"), nullable=False)
    step = Column(String(40), nullable=False)
    status = Column(String(20), nullable=False, default=StepStatus.RUNNING.value)
    attempts = Column(Integer, nullable=False, default=0)
    output = Column(JSON, nullable=False, default=dict)
    error_message = Column(Text, nullable=True)

    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (UniqueConstraint("migration_id", "step", name="uq_migration_step"),)

    def __repr__(self) -> str:
        return f"<MigrationStep(migration_id={self.migration_id}, step={self.step}, status={self.status})>"
