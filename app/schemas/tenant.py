from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from app.constants.plans import PlanTier
from app.models.backup import BackupType
from app.models.tenant import TenantMode


class TenantCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    subdomain: str = Field(..., min_length=3, max_length=50)
    mode: TenantMode = TenantMode.SHARED
    plan: PlanTier = PlanTier.STARTER
    region: Optional[str] = Field(None, max_length=50)


class TenantResponse(BaseModel):
    tenant_id: str
    name: str
    subdomain: str
    email: str
    mode: str
    status: str
    plan: str
    region: str
    cpu_cores: int
    memory_mb: int
    workers: int
    storage_gb: int
    login_url: Optional[str]
    container_status: Optional[str]
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ScaleRequest(BaseModel):
    """Omitted fields keep their current value."""

    cpu: Optional[int] = Field(None, ge=1, description="CPU cores")
    memory_mb: Optional[int] = Field(None, ge=1)
    workers: Optional[int] = Field(None, ge=1)


class ScaleResponse(BaseModel):
    tenant: TenantResponse
    method: str
    resources_before: dict[str, int]
    resources_after: dict[str, int]


class BackupRequest(BaseModel):
    backup_type: BackupType = BackupType.MANUAL
    includes_database: bool = True
    includes_workflows: bool = True
    includes_credentials: bool = True
    includes_files: bool = False

    def include_flags(self) -> dict[str, bool]:
        return {
            "database": self.includes_database,
            "workflows": self.includes_workflows,
            "credentials": self.includes_credentials,
            "files": self.includes_files,
        }


class BackupResponse(BaseModel):
    backup_id: str
    tenant_id: str
    backup_type: str
    status: str
    storage_bucket: str
    storage_path: str
    size_bytes: Optional[int]
    includes_database: bool
    includes_workflows: bool
    includes_credentials: bool
    includes_files: bool
    retention_until: datetime
    created_at: datetime
    completed_at: Optional[datetime]


class PromoteRequest(BaseModel):
    window: Optional[datetime] = Field(None, description="Start time; omitted means now")
    ttl_minutes: Optional[int] = Field(None, ge=1, le=240)


class PromoteResponse(BaseModel):
    status: str
    tenant_id: str
    migration_id: Optional[str] = None
    scheduled_for: Optional[str] = None
    job_id: Optional[str] = None
    executed_steps: list[str] = []
    completed_steps: list[str] = []
    remaining_steps: list[str] = []

