from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv
from typing import Optional

from app.constants.roles import DEFAULT_BRIDGE_ROLES

load_dotenv()


class Settings(BaseSettings):
    # Application settings
    app_name: str = "Fleet Control Plane"
    app_version: str = "1.0.0"
    debug: bool = False
    environment: str = "development"
    port: int = 8080
    log_level: str = "INFO"
    log_json: bool = True

    # Registry settings
    database_url: str

    # Bridge authentication settings
    jwt_secret: str
    hmac_secret: str
    jwt_algorithm: str = "HS256"
    token_max_ttl_seconds: int = 600
    signature_tolerance_seconds: int = 300
    bridge_allowed_roles: list[str] = [role.value for role in DEFAULT_BRIDGE_ROLES]
    bridge_base_url: str = "http://localhost:8080"

    # Object storage settings (S3 / MinIO)
    s3_endpoint: Optional[str] = None
    s3_bucket: str = "tenant-backups"
    s3_access_key: Optional[str] = None
    s3_secret_key: Optional[str] = None
    s3_region: str = "us-east-1"

    # Reverse proxy settings (Traefik file provider)
    proxy_domain: str = "rp9.io"
    proxy_config_dir: str = "/etc/traefik/dynamic"
    proxy_cert_resolver: str = "letsencrypt"
    proxy_entrypoint: str = "websecure"
    throttle_average: int = 50
    throttle_burst: int = 100

    # Container engine settings
    docker_base_url: Optional[str] = None
    runtime_image: str = "n8nio/n8n:latest"
    runtime_network: str = "rp9-network"
    runtime_port: int = 5678
    container_prefix: str = "n8n"

    # Shared runtime pool
    shared_runtime_base_url: str = "http://shared-runtime:5678"
    shared_runtime_api_key: str = ""
    shared_pool_capacity: int = 200

    # Redis (shared pool counter)
    redis_url: str = "redis://localhost:6379/0"

    # Billing entitlements
    billing_api_url: Optional[str] = None
    billing_api_key: str = ""

    # Notifications
    notification_webhook_url: Optional[str] = None
    notification_webhook_secret: str = ""

    # Rate limiting (use a redis:// URI when running more than one replica)
    rate_limit_enabled: bool = True
    rate_limit_storage_uri: str = "memory://"
    rate_limit_default: str = "300/minute"
    rate_limit_tenant_ops: str = "30/minute"

    # Scheduler settings
    scheduler_enabled: bool = True
    autoscale_interval_seconds: int = 60
    enforcement_interval_seconds: int = 300
    metrics_interval_seconds: int = 60
    health_probe_interval_seconds: int = 60
    backup_hour_utc: int = 3
    backup_weekly_day: str = "sun"
    backup_expiry_interval_minutes: int = 60
    max_concurrent_tenant_ops: int = 10

    # Timeouts and leases
    infra_timeout_seconds: float = 30.0
    migration_step_timeout_seconds: float = 300.0
    health_wait_seconds: float = 120.0
    health_poll_seconds: float = 2.0
    lease_ttl_seconds: int = 900

    # Autoscale thresholds
    autoscale_queue_wait_p95_threshold: float = 5.0
    autoscale_cpu_threshold: float = 80.0
    autoscale_memory_threshold: float = 85.0
    autoscale_executions_min_threshold: float = 10.0
    autoscale_scale_down_cpu: float = 20.0
    autoscale_scale_down_memory: float = 30.0
    autoscale_sustain_seconds: int = 300
    metrics_max_age_seconds: int = 300

    # Enforcement bands
    enforcement_warning_percent: float = 80.0
    enforcement_critical_percent: float = 95.0
    enforcement_suspend_percent: float = 100.0
    enforcement_escalate_cycles: int = 2
    enforcement_resolve_cycles: int = 1
    enforcement_cooldown_minutes: int = 60
    overage_plans: list[str] = ["enterprise"]

    # Health probes
    health_probe_failure_threshold: int = 3

    # Promotion
    promotion_schedule_lead_seconds: int = 60
    promotion_default_ttl_minutes: int = 10

    # OpenTelemetry
    otel_exporter_endpoint: Optional[str] = None
    otel_service_name: str = "fleet-control-plane"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @property
    def is_development(self) -> bool:
        return self.environment == "development"


settings = Settings()
