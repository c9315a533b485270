"""
Prometheus Metrics Module

Provides control plane metrics using the prometheus_client library.
Metrics are exposed at /metrics for Prometheus scraping.
"""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

# =============================================================================
# Application Info
# =============================================================================

APP_INFO = Info("rp9_orchestrator_app", "Control plane application information")


def set_app_info(version: str, environment: str) -> None:
    """Set application info labels."""
    APP_INFO.info({"version": version, "environment": environment})


# =============================================================================
# Fleet Metrics (refreshed from the registry at scrape time)
# =============================================================================

TENANTS_TOTAL = Gauge(
    "rp9_tenants_total",
    "Total number of tenants by mode and status",
    ["mode", "status", "plan"],
)

TENANT_RESOURCES = Gauge(
    "rp9_tenant_resources",
    "Resource allocation per tenant",
    ["tenant_id", "subdomain", "resource_type"],  # cpu_cores, memory_mb, workers, storage_gb
)

BACKUPS_TOTAL = Gauge(
    "rp9_backups_total",
    "Total backups by status and type",
    ["status", "backup_type"],
)

# =============================================================================
# Per-tenant Load Metrics (set on every collection cycle)
# =============================================================================

TENANT_QUEUE_WAIT_P95 = Gauge(
    "rp9_tenant_queue_wait_p95_seconds",
    "Queue wait time p95 by tenant",
    ["tenant"],
)

TENANT_CPU_PERCENT = Gauge(
    "rp9_tenant_cpu_percent",
    "CPU usage percentage by tenant",
    ["tenant"],
)

TENANT_MEM_BYTES = Gauge(
    "rp9_tenant_mem_bytes",
    "Memory usage in bytes by tenant",
    ["tenant"],
)

TENANT_EXECUTIONS_MIN = Gauge(
    "rp9_tenant_executions_min",
    "Executions per minute by tenant",
    ["tenant"],
)

# =============================================================================
# Decision Counters
# =============================================================================

AUTOSCALE_EVENTS_TOTAL = Counter(
    "rp9_autoscale_events_total",
    "Total autoscale events by action and trigger",
    ["action", "trigger_type", "status"],
)

ENFORCEMENT_EVENTS_TOTAL = Counter(
    "rp9_enforcement_events_total",
    "Total enforcement action transitions",
    ["action", "limit_type", "severity"],
)

# =============================================================================
# Bridge & Infrastructure
# =============================================================================

BRIDGE_AUTH_FAILURES_TOTAL = Counter(
    "rp9_bridge_auth_failures_total",
    "Rejected bridge requests by reason",
    ["reason"],
)

INFRA_CALL_DURATION_SECONDS = Histogram(
    "rp9_infra_call_duration_seconds",
    "Infrastructure adapter call duration in seconds",
    ["adapter", "operation"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

# =============================================================================
# Application Health Metrics
# =============================================================================

APP_UPTIME_SECONDS = Gauge(
    "rp9_uptime_seconds",
    "Application uptime in seconds",
)

HEALTH_CHECK_STATUS = Gauge(
    "rp9_health_check_status",
    "Health check status (1=healthy, 0=unhealthy)",
    ["service"],  # registry, container_engine, proxy, object_storage, ...
)


# =============================================================================
# Helper Functions
# =============================================================================


def update_uptime(start_time: float) -> None:
    """Update application uptime metric."""
    APP_UPTIME_SECONDS.set(time.time() - start_time)


def update_health_status(service: str, healthy: bool) -> None:
    """Update health check status for a service."""
    HEALTH_CHECK_STATUS.labels(service=service).set(1 if healthy else 0)


def record_tenant_load(subdomain: str, queue_wait_p95: float, cpu_percent: float, mem_bytes: int, executions_min: float) -> None:
    TENANT_QUEUE_WAIT_P95.labels(tenant=subdomain).set(queue_wait_p95)
    TENANT_CPU_PERCENT.labels(tenant=subdomain).set(cpu_percent)
    TENANT_MEM_BYTES.labels(tenant=subdomain).set(mem_bytes)
    TENANT_EXECUTIONS_MIN.labels(tenant=subdomain).set(executions_min)


def record_autoscale_event(action: str, trigger_type: str, status: str) -> None:
    AUTOSCALE_EVENTS_TOTAL.labels(action=action, trigger_type=trigger_type, status=status).inc()


def record_enforcement_event(action: str, limit_type: str, severity: str) -> None:
    ENFORCEMENT_EVENTS_TOTAL.labels(action=action, limit_type=limit_type, severity=severity).inc()


def record_auth_failure(reason: str) -> None:
    BRIDGE_AUTH_FAILURES_TOTAL.labels(reason=reason).inc()
