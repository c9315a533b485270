from .activity_log import AuditRecord
from .autoscale import AutoscaleEvent
from .backup import TenantBackup
from .enforcement import EnforcementEvent
from .metric_sample import TenantMetricSample
from .migration import MigrationStep
from .tenant import TenantInstance, TenantQuotas

__all__ = [
    "AuditRecord",
    "AutoscaleEvent",
    "TenantBackup",
    "EnforcementEvent",
    "TenantMetricSample",
    "MigrationStep",
    "TenantInstance",
    "TenantQuotas",
]
