"""initial

Revision ID: 0001_initial
Revises:
Create Date: 2026-01-01 00:00:00
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

PLATFORMS = ("SLACK", "GOOGLE", "DROPBOX", "NOTION", "FIGMA", "LINEAR", "JIRA")
ACTION_TYPES = ("ARCHIVE_FILE", "UPDATE_PERMISSIONS", "ARCHIVE_CHANNEL", "REMOVE_GUEST", "REVOKE_ACCESS")


def _uuid() -> sa.Uuid:
    return sa.Uuid(as_uuid=True)


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)


def _tenant_fk() -> sa.Column:
    return sa.Column(
        "tenant_id",
        _uuid(),
        sa.ForeignKey("tenants.tenant_id", ondelete="CASCADE"),
        nullable=False,
    )


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("tenant_id", _uuid(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("plan_tier", sa.String(length=32), nullable=False),
        sa.Column("free_audits_used", sa.Integer(), nullable=False),
        sa.Column("free_audit_reset_at", sa.DateTime(timezone=True)),
        _created_at(),
    )

    op.create_table(
        "integrations",
        sa.Column("integration_id", _uuid(), primary_key=True),
        _tenant_fk(),
        sa.Column("platform", sa.Enum(*PLATFORMS, name="integration_platform"), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("refresh_token", sa.Text()),
        sa.Column("expires_at", sa.DateTime(timezone=True)),
        sa.Column("metadata_json", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="1"),
        sa.Column(
            "sync_status",
            sa.Enum("IDLE", "SYNCING", "ERROR", name="integration_sync_status"),
            nullable=False,
        ),
        sa.Column("last_sync_at", sa.DateTime(timezone=True)),
        sa.Column("last_error", sa.Text()),
        sa.Column("last_error_at", sa.DateTime(timezone=True)),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("tenant_id", "platform", name="uq_integrations_tenant_platform"),
    )
    op.create_index("ix_integrations_tenant_active", "integrations", ["tenant_id", "is_active"])

    op.create_table(
        "activity_events",
        sa.Column("event_id", _uuid(), primary_key=True),
        _tenant_fk(),
        sa.Column("user_id", sa.String(length=128)),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("metadata_json", sa.JSON(), nullable=False),
        _created_at(),
    )
    op.create_index("ix_activity_events_tenant_created", "activity_events", ["tenant_id", "created_at"])

    op.create_table(
        "audit_results",
        sa.Column("audit_result_id", _uuid(), primary_key=True),
        _tenant_fk(),
        sa.Column("score", sa.Integer(), nullable=False),
        sa.Column("estimated_savings", sa.Float(), nullable=False),
        sa.Column("storage_waste", sa.Float(), nullable=False),
        sa.Column("license_waste", sa.Float(), nullable=False),
        sa.Column("wasted_storage_mb", sa.Float(), nullable=False),
        sa.Column("storage_used_gb", sa.Float(), nullable=False),
        sa.Column("duplicate_files", sa.Integer(), nullable=False),
        sa.Column("public_files", sa.Integer(), nullable=False),
        sa.Column("inactive_users", sa.Integer(), nullable=False),
        sa.Column("guest_users", sa.Integer(), nullable=False),
        sa.Column("active_risks", sa.Integer(), nullable=False),
        sa.Column("critical_risks", sa.Integer(), nullable=False),
        sa.Column("moderate_risks", sa.Integer(), nullable=False),
        sa.Column("total_files", sa.Integer(), nullable=False),
        sa.Column("total_users", sa.Integer(), nullable=False),
        sa.Column("platforms", sa.JSON(), nullable=False),
        sa.Column("platform_errors", sa.JSON(), nullable=False),
        sa.Column("created_by", sa.String(length=128)),
        _created_at(),
    )
    op.create_index("ix_audit_results_tenant_created", "audit_results", ["tenant_id", "created_at"])

    op.create_table(
        "file_records",
        sa.Column("file_record_id", _uuid(), primary_key=True),
        sa.Column(
            "audit_result_id",
            _uuid(),
            sa.ForeignKey("audit_results.audit_result_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("tenant_id", _uuid(), nullable=False),
        sa.Column("name", sa.String(length=512), nullable=False),
        sa.Column("size_mb", sa.Float(), nullable=False),
        sa.Column("file_type", sa.String(length=32), nullable=False),
        sa.Column("source", sa.Enum(*PLATFORMS, name="file_source_platform"), nullable=False),
        sa.Column("external_id", sa.String(length=255), nullable=False),
        sa.Column("mime_type", sa.String(length=255)),
        sa.Column("file_hash", sa.String(length=128)),
        sa.Column("url", sa.Text()),
        sa.Column("path", sa.Text()),
        sa.Column("owner_email", sa.String(length=320)),
        sa.Column("is_public", sa.Boolean(), nullable=False),
        sa.Column("shared_with", sa.JSON(), nullable=False),
        sa.Column("is_duplicate", sa.Boolean(), nullable=False),
        sa.Column("duplicate_group", sa.String(length=255)),
        sa.Column("last_accessed", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_file_records_audit", "file_records", ["audit_result_id"])
    op.create_index("ix_file_records_tenant_source", "file_records", ["tenant_id", "source"])

    op.create_table(
        "score_trends",
        sa.Column("trend_id", _uuid(), primary_key=True),
        _tenant_fk(),
        sa.Column("month", sa.String(length=7), nullable=False),
        sa.Column("score", sa.Integer(), nullable=False),
        sa.Column("active_risks", sa.Integer(), nullable=False),
        sa.Column("estimated_savings", sa.Float(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("tenant_id", "month", name="uq_score_trends_tenant_month"),
    )

    op.create_table(
        "playbooks",
        sa.Column("playbook_id", _uuid(), primary_key=True),
        _tenant_fk(),
        sa.Column(
            "audit_result_id",
            _uuid(),
            sa.ForeignKey("audit_results.audit_result_id", ondelete="SET NULL"),
        ),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("impact", sa.String(length=255), nullable=False),
        sa.Column(
            "impact_type",
            sa.Enum("SECURITY", "SAVINGS", "EFFICIENCY", name="playbook_impact_type"),
            nullable=False,
        ),
        sa.Column("source", sa.Enum(*PLATFORMS, name="playbook_source_platform"), nullable=False),
        sa.Column("risk", sa.Enum("LOW", "MEDIUM", "HIGH", "CRITICAL", name="playbook_risk"), nullable=False),
        sa.Column("item_count", sa.Integer(), nullable=False),
        sa.Column("estimated_savings", sa.Float(), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "PENDING", "APPROVED", "EXECUTING", "EXECUTED", "FAILED", "DISMISSED", name="playbook_status"
            ),
            nullable=False,
        ),
        sa.Column("approved_at", sa.DateTime(timezone=True)),
        sa.Column("approved_by", sa.String(length=128)),
        sa.Column("executed_at", sa.DateTime(timezone=True)),
        sa.Column("executed_by", sa.String(length=128)),
        sa.Column("items_processed", sa.Integer(), nullable=False),
        sa.Column("items_failed", sa.Integer(), nullable=False),
        sa.Column("execution_duration_ms", sa.Integer()),
        _created_at(),
    )
    op.create_index("ix_playbooks_tenant_status", "playbooks", ["tenant_id", "status"])
    op.create_index("ix_playbooks_audit_result", "playbooks", ["audit_result_id"])

    op.create_table(
        "playbook_items",
        sa.Column("item_id", _uuid(), primary_key=True),
        sa.Column(
            "playbook_id",
            _uuid(),
            sa.ForeignKey("playbooks.playbook_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("item_name", sa.String(length=512), nullable=False),
        sa.Column("item_type", sa.String(length=32), nullable=False),
        sa.Column("external_id", sa.String(length=255), nullable=False),
        sa.Column("metadata_json", sa.JSON(), nullable=False),
        sa.Column("is_selected", sa.Boolean(), nullable=False, server_default="1"),
    )

    op.create_table(
        "audit_log_entries",
        sa.Column("entry_id", _uuid(), primary_key=True),
        _tenant_fk(),
        sa.Column(
            "playbook_id",
            _uuid(),
            sa.ForeignKey("playbooks.playbook_id", ondelete="SET NULL"),
        ),
        sa.Column("action_type", sa.Enum(*ACTION_TYPES, name="audit_log_action_type"), nullable=False),
        sa.Column("target", sa.String(length=255), nullable=False),
        sa.Column("target_type", sa.String(length=32), nullable=False),
        sa.Column("executor", sa.String(length=128), nullable=False),
        sa.Column("user_id", sa.String(length=128)),
        sa.Column(
            "status",
            sa.Enum("PENDING", "SUCCESS", "FAILED", name="audit_log_status"),
            nullable=False,
        ),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.Column("undo_actions", sa.JSON(), nullable=False),
        sa.Column("undo_expires_at", sa.DateTime(timezone=True)),
        _created_at(),
    )
    op.create_index("ix_audit_log_entries_tenant_created", "audit_log_entries", ["tenant_id", "created_at"])
    op.create_index("ix_audit_log_entries_playbook", "audit_log_entries", ["playbook_id"])

    op.create_table(
        "archived_files",
        sa.Column("archive_id", _uuid(), primary_key=True),
        _tenant_fk(),
        sa.Column("platform", sa.Enum(*PLATFORMS, name="archive_platform"), nullable=False),
        sa.Column("external_id", sa.String(length=255), nullable=False),
        sa.Column("file_name", sa.String(length=512), nullable=False),
        sa.Column("size_bytes", sa.BigInteger(), nullable=False),
        sa.Column("mime_type", sa.String(length=255)),
        sa.Column("content_sha256", sa.String(length=64)),
        sa.Column("storage_provider", sa.String(length=32), nullable=False),
        sa.Column("storage_key", sa.String(length=1024), nullable=False),
        sa.Column(
            "status",
            sa.Enum("STAGED", "ARCHIVED", "RESTORED", "DELETED", name="archive_status"),
            nullable=False,
        ),
        sa.Column("original_path", sa.Text()),
        sa.Column("original_parent_id", sa.String(length=255)),
        sa.Column("original_metadata", sa.JSON(), nullable=False),
        sa.Column("archived_by", sa.String(length=128)),
        sa.Column("archived_at", sa.DateTime(timezone=True)),
        sa.Column("expires_at", sa.DateTime(timezone=True)),
        sa.Column("restored_at", sa.DateTime(timezone=True)),
        sa.Column("restored_by", sa.String(length=128)),
        sa.Column("restored_external_id", sa.String(length=255)),
        sa.Column("deleted_at", sa.DateTime(timezone=True)),
        sa.Column("expiry_warning_sent_at", sa.DateTime(timezone=True)),
        sa.Column("final_warning_sent_at", sa.DateTime(timezone=True)),
        sa.Column("last_error", sa.Text()),
        _created_at(),
    )
    op.create_index("ix_archived_files_tenant_status", "archived_files", ["tenant_id", "status"])
    op.create_index("ix_archived_files_status_expires", "archived_files", ["status", "expires_at"])

    op.create_table(
        "job_events",
        sa.Column("event_id", _uuid(), primary_key=True),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("tenant_id", _uuid()),
        sa.Column("payload_json", sa.JSON(), nullable=False),
        sa.Column("dedupe_key", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("deliver_after", sa.DateTime(timezone=True)),
        sa.Column("last_error", sa.String(length=255)),
        sa.Column("result_json", sa.JSON()),
        _created_at(),
    )
    op.create_index("ix_job_events_status_deliver", "job_events", ["status", "deliver_after"])
    op.create_index("ix_job_events_dedupe", "job_events", ["dedupe_key"], unique=True)

    op.create_table(
        "job_runs",
        sa.Column("run_key", sa.String(length=255), primary_key=True),
        sa.Column("job_name", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("completed_steps", sa.JSON(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "job_heartbeats",
        sa.Column("name", sa.String(length=64), primary_key=True),
        sa.Column("last_heartbeat", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("last_success_at", sa.DateTime(timezone=True)),
        sa.Column("runner_id", sa.String(length=128)),
        sa.Column("last_error", sa.String(length=128)),
        sa.Column("last_error_at", sa.DateTime(timezone=True)),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("job_heartbeats")
    op.drop_table("job_runs")
    op.drop_index("ix_job_events_dedupe", table_name="job_events")
    op.drop_index("ix_job_events_status_deliver", table_name="job_events")
    op.drop_table("job_events")
    op.drop_index("ix_archived_files_status_expires", table_name="archived_files")
    op.drop_index("ix_archived_files_tenant_status", table_name="archived_files")
    op.drop_table("archived_files")
    op.drop_index("ix_audit_log_entries_playbook", table_name="audit_log_entries")
    op.drop_index("ix_audit_log_entries_tenant_created", table_name="audit_log_entries")
    op.drop_table("audit_log_entries")
    op.drop_table("playbook_items")
    op.drop_index("ix_playbooks_audit_result", table_name="playbooks")
    op.drop_index("ix_playbooks_tenant_status", table_name="playbooks")
    op.drop_table("playbooks")
    op.drop_table("score_trends")
    op.drop_index("ix_file_records_tenant_source", table_name="file_records")
    op.drop_index("ix_file_records_audit", table_name="file_records")
    op.drop_table("file_records")
    op.drop_table("audit_results")
    op.drop_index("ix_activity_events_tenant_created", table_name="activity_events")
    op.drop_table("activity_events")
    op.drop_index("ix_integrations_tenant_active", table_name="integrations")
    op.drop_table("integrations")
    op.drop_table("tenants")
    for enum_name in (
        "archive_status",
        "archive_platform",
        "audit_log_status",
        "audit_log_action_type",
        "playbook_status",
        "playbook_risk",
        "playbook_source_platform",
        "playbook_impact_type",
        "file_source_platform",
        "integration_sync_status",
        "integration_platform",
    ):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
