from .tenant import (
    BackupRequest,
    BackupResponse,
    PromoteRequest,
    PromoteResponse,
    ScaleRequest,
    ScaleResponse,
    TenantCreate,
    TenantResponse,
)

# Define the public API of this module
__all__ = [
    "TenantCreate",
    "TenantResponse",
    "ScaleRequest",
    "ScaleResponse",
    "BackupRequest",
    "BackupResponse",
    "PromoteRequest",
    "PromoteResponse",
]
