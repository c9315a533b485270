"""Create fleet registry tables

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "a1b2c3d4e5f6"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

INFLIGHT = sa.text("status IN ('pending', 'in_progress')")
OPEN = sa.text("status IN ('active', 'acknowledged')")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # Create tenant_instances table
    op.create_table(
        "tenant_instances",
        sa.Column("tenant_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("subdomain", sa.String(length=50), nullable=False),
        sa.Column("email", sa.String(length=254), nullable=False),
        sa.Column("mode", sa.String(length=20), nullable=False, server_default="shared"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="provisioning"),
        sa.Column("plan", sa.String(length=20), nullable=False),
        sa.Column("region", sa.String(length=50), nullable=False, server_default="us-east"),
        sa.Column("cpu_cores", sa.Integer(), nullable=False),
        sa.Column("memory_mb", sa.Integer(), nullable=False),
        sa.Column("workers", sa.Integer(), nullable=False),
        sa.Column("storage_gb", sa.Integer(), nullable=False),
        sa.Column("login_url", sa.String(length=255), nullable=True),
        sa.Column("runtime_url", sa.String(length=255), nullable=True),
        sa.Column("router_name", sa.String(length=100), nullable=True),
        sa.Column("container_id", sa.String(length=80), nullable=True),
        sa.Column("container_name", sa.String(length=100), nullable=True),
        sa.Column("container_status", sa.String(length=20), nullable=True),
        sa.Column("health_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lease_owner", sa.String(length=80), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.Column("last_healthcheck_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint("tenant_id"),
        sa.UniqueConstraint("subdomain"),
    )
    op.create_index("idx_tenant_instances_status", "tenant_instances", ["status"])
    op.create_index("idx_tenant_instances_mode_status", "tenant_instances", ["mode", "status"])

    # Create tenant_quotas table
    op.create_table(
        "tenant_quotas",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("tenant_id", sa.String(length=36), nullable=False),
        sa.Column("executions_monthly", sa.Integer(), nullable=False),
        sa.Column("concurrent_executions", sa.Integer(), nullable=False),
        sa.Column("cpu_limit_percent", sa.Integer(), nullable=False),
        sa.Column("memory_limit_mb", sa.Integer(), nullable=False),
        sa.Column("storage_limit_gb", sa.Integer(), nullable=False),
        sa.Column("api_calls_hourly", sa.Integer(), nullable=False),
        sa.Column("webhook_endpoints", sa.Integer(), nullable=False),
        sa.Column("retention_days", sa.Integer(), nullable=False),
        sa.Column("enforcement_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("billing_entitlement_ref", sa.String(length=120), nullable=True),
        sa.Column("entitlements", sa.JSON(), nullable=False),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.CheckConstraint("executions_monthly >= 0", name="ck_quotas_executions_non_negative"),
        sa.CheckConstraint("concurrent_executions >= 0", name="ck_quotas_concurrency_non_negative"),
        sa.CheckConstraint("cpu_limit_percent >= 0", name="ck_quotas_cpu_non_negative"),
        sa.CheckConstraint("memory_limit_mb >= 0", name="ck_quotas_memory_non_negative"),
        sa.CheckConstraint("storage_limit_gb >= 0", name="ck_quotas_storage_non_negative"),
        sa.CheckConstraint("api_calls_hourly >= 0", name="ck_quotas_api_calls_non_negative"),
        sa.CheckConstraint("webhook_endpoints >= 0", name="ck_quotas_webhooks_non_negative"),
        sa.CheckConstraint("retention_days >= 0", name="ck_quotas_retention_non_negative"),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenant_instances.tenant_id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id"),
    )

    # Create tenant_backups table
    op.create_table(
        "tenant_backups",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("tenant_id", sa.String(length=36), nullable=False),
        sa.Column("backup_type", sa.String(length=20), nullable=False, server_default="manual"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="running"),
        sa.Column("storage_bucket", sa.String(length=100), nullable=False),
        sa.Column("storage_path", sa.String(length=500), nullable=False),
        sa.Column("size_bytes", sa.BigInteger(), nullable=True),
        sa.Column("includes_database", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("includes_workflows", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("includes_credentials", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("includes_files", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("restore_tested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("restore_tested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retention_until", sa.DateTime(timezone=True), nullable=False),
        sa.Column("backup_version", sa.String(length=20), nullable=False, server_default="1.0"),
        sa.Column("compatibility_version", sa.String(length=50), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        *_timestamps(),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenant_instances.tenant_id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_tenant_backups_tenant_created", "tenant_backups", ["tenant_id", "created_at"])
    op.create_index("idx_tenant_backups_status_retention", "tenant_backups", ["status", "retention_until"])

    # Create autoscale_events table
    op.create_table(
        "autoscale_events",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("tenant_id", sa.String(length=36), nullable=False),
        sa.Column("trigger_type", sa.String(length=30), nullable=False),
        sa.Column("trigger_value", sa.Float(), nullable=True),
        sa.Column("trigger_threshold", sa.Float(), nullable=True),
        sa.Column("action", sa.String(length=30), nullable=False),
        sa.Column("action_details", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("resources_before", sa.JSON(), nullable=True),
        sa.Column("resources_after", sa.JSON(), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        *_timestamps(),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenant_instances.tenant_id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "uq_autoscale_events_inflight_tenant",
        "autoscale_events",
        ["tenant_id"],
        unique=True,
        postgresql_where=INFLIGHT,
        sqlite_where=INFLIGHT,
    )
    op.create_index("idx_autoscale_events_tenant_created", "autoscale_events", ["tenant_id", "created_at"])

    # Create enforcement_events table
    op.create_table(
        "enforcement_events",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("tenant_id", sa.String(length=36), nullable=False),
        sa.Column("limit_type", sa.String(length=30), nullable=False),
        sa.Column("current_usage", sa.Float(), nullable=False),
        sa.Column("limit_value", sa.Float(), nullable=False),
        sa.Column("usage_percentage", sa.Float(), nullable=False),
        sa.Column("action", sa.String(length=20), nullable=False, server_default="warning"),
        sa.Column("severity", sa.String(length=20), nullable=False, server_default="warning"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column("notification_sent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("notification_type", sa.String(length=20), nullable=True),
        *_timestamps(),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenant_instances.tenant_id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "uq_enforcement_events_open_limit",
        "enforcement_events",
        ["tenant_id", "limit_type"],
        unique=True,
        postgresql_where=OPEN,
        sqlite_where=OPEN,
    )
    op.create_index("idx_enforcement_events_tenant_status", "enforcement_events", ["tenant_id", "status"])

    # Create tenant_metric_samples table
    op.create_table(
        "tenant_metric_samples",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(length=36), nullable=False),
        sa.Column("collected_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("queue_wait_p95_seconds", sa.Float(), nullable=False, server_default="0"),
        sa.Column("executions_per_minute", sa.Float(), nullable=False, server_default="0"),
        sa.Column("cpu_percent", sa.Float(), nullable=False, server_default="0"),
        sa.Column("memory_percent", sa.Float(), nullable=False, server_default="0"),
        sa.Column("memory_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("success_rate_percent", sa.Float(), nullable=True),
        sa.Column("active_workers", sa.Integer(), nullable=True),
        sa.Column("executions_month", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("concurrent_executions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("storage_gb", sa.Float(), nullable=False, server_default="0"),
        sa.Column("api_calls_hour", sa.Integer(), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenant_instances.tenant_id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_metric_samples_tenant_collected", "tenant_metric_samples", ["tenant_id", "collected_at"])

    # Create tenant_migration_steps table
    op.create_table(
        "tenant_migration_steps",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("migration_id", sa.String(length=36), nullable=False),
        sa.Column("tenant_id", sa.String(length=36), nullable=False),
        sa.Column("step", sa.String(length=40), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="running"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("output", sa.JSON(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenant_instances.tenant_id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("migration_id", "step", name="uq_migration_step"),
    )
    op.create_index("ix_tenant_migration_steps_migration_id", "tenant_migration_steps", ["migration_id"])

    # Create tenant_audit_log table
    op.create_table(
        "tenant_audit_log",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(length=36), nullable=False),
        sa.Column("action", sa.String(length=50), nullable=False),
        sa.Column("actor", sa.String(length=100), nullable=False),
        sa.Column("from_status", sa.String(length=20), nullable=True),
        sa.Column("to_status", sa.String(length=20), nullable=True),
        sa.Column("correlation_id", sa.String(length=64), nullable=True),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenant_instances.tenant_id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_audit_tenant_action_created", "tenant_audit_log", ["tenant_id", "action", "created_at"])


def downgrade() -> None:
    op.drop_table("tenant_audit_log")
    op.drop_table("tenant_migration_steps")
    op.drop_table("tenant_metric_samples")
    op.drop_index("uq_enforcement_events_open_limit", table_name="enforcement_events")
    op.drop_table("enforcement_events")
    op.drop_index("uq_autoscale_events_inflight_tenant", table_name="autoscale_events")
    op.drop_table("autoscale_events")
    op.drop_table("tenant_backups")
    op.drop_table("tenant_quotas")
    op.drop_table("tenant_instances")
