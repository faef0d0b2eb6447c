"""Create record store and alerting engine tables.

Revision ID: 0001_alerting_schema
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "0001_alerting_schema"
down_revision = None
branch_labels = None
depends_on = None


def _timestamp(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    """Create all tables used by the alerting engine."""
    op.create_table(
        "companies",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=200), nullable=False),
    )
    op.create_table(
        "sites",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), sa.ForeignKey("companies.id"), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
    )
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), sa.ForeignKey("companies.id"), nullable=False),
        sa.Column("site_id", sa.Integer(), sa.ForeignKey("sites.id"), nullable=True),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("full_name", sa.String(length=200), nullable=True),
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _timestamp("deleted_at"),
    )
    op.create_table(
        "notification_preferences",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("notification_type", sa.String(length=100), nullable=False),
        sa.Column("frequency", sa.String(length=32), nullable=False),
        sa.UniqueConstraint("user_id", "notification_type", name="uq_preference_user_type"),
    )
    op.create_table(
        "obligations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), sa.ForeignKey("companies.id"), nullable=False),
        sa.Column("site_id", sa.Integer(), sa.ForeignKey("sites.id"), nullable=True),
        sa.Column("title", sa.String(length=500), nullable=False),
        _timestamp("deleted_at"),
    )
    op.create_table(
        "deadlines",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("obligation_id", sa.Integer(), sa.ForeignKey("obligations.id"), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
    )
    op.create_index("ix_deadlines_status_due", "deadlines", ["status", "due_date"])
    op.create_table(
        "evidence_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), sa.ForeignKey("companies.id"), nullable=False),
        sa.Column("title", sa.String(length=500), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("expiry_date", sa.Date(), nullable=True),
    )
    op.create_table(
        "obligation_evidence_links",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("obligation_id", sa.Integer(), sa.ForeignKey("obligations.id"), nullable=False),
        sa.Column("evidence_id", sa.Integer(), sa.ForeignKey("evidence_items.id"), nullable=False),
        _timestamp("created_at"),
        _timestamp("unlinked_at"),
    )
    op.create_index(
        "ix_obligation_evidence_links_obligation",
        "obligation_evidence_links",
        ["obligation_id"],
    )
    op.create_table(
        "review_queue_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), sa.ForeignKey("companies.id"), nullable=True),
        sa.Column("site_id", sa.Integer(), sa.ForeignKey("sites.id"), nullable=True),
        sa.Column("obligation_id", sa.Integer(), sa.ForeignKey("obligations.id"), nullable=True),
        sa.Column("review_type", sa.String(length=100), nullable=False),
        sa.Column("review_status", sa.String(length=32), nullable=False),
        _timestamp("created_at"),
    )
    op.create_table(
        "contractor_licences",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), sa.ForeignKey("companies.id"), nullable=False),
        sa.Column("site_id", sa.Integer(), sa.ForeignKey("sites.id"), nullable=True),
        sa.Column("contractor_name", sa.String(length=200), nullable=False),
        sa.Column("licence_number", sa.String(length=100), nullable=True),
        sa.Column("expiry_date", sa.Date(), nullable=False),
        _timestamp("renewed_at"),
        _timestamp("deleted_at"),
    )
    op.create_table(
        "generators",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), sa.ForeignKey("companies.id"), nullable=False),
        sa.Column("site_id", sa.Integer(), sa.ForeignKey("sites.id"), nullable=True),
        sa.Column("identifier", sa.String(length=100), nullable=False),
        sa.Column("next_stack_test_due", sa.Date(), nullable=True),
        _timestamp("last_test_completed_at"),
        _timestamp("deleted_at"),
    )

    op.create_table(
        "escalation_states",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("entity_type", sa.String(length=50), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=True),
        sa.Column("site_id", sa.Integer(), nullable=True),
        sa.Column("escalation_level", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("escalated_at"),
        _timestamp("last_notification_at"),
        sa.Column("last_notification_level", sa.Integer(), nullable=True),
        _timestamp("window_started_at", nullable=False),
        _timestamp("updated_at"),
        sa.UniqueConstraint("entity_type", "entity_id", name="uq_escalation_state_item"),
    )
    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("recipient_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("recipient_address", sa.String(length=320), nullable=True),
        sa.Column("company_id", sa.Integer(), nullable=True),
        sa.Column("site_id", sa.Integer(), nullable=True),
        sa.Column("notification_type", sa.String(length=100), nullable=False),
        sa.Column("channel", sa.String(length=20), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("entity_type", sa.String(length=50), nullable=True),
        sa.Column("entity_id", sa.Integer(), nullable=True),
        sa.Column("escalation_level", sa.Integer(), nullable=True),
        sa.Column("subject", sa.String(length=500), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("action_url", sa.String(length=1000), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        _timestamp("scheduled_for", nullable=False),
        _timestamp("created_at", nullable=False),
        _timestamp("updated_at"),
        _timestamp("sent_at"),
        sa.Column("delivery_provider", sa.String(length=50), nullable=True),
        sa.Column("delivery_provider_id", sa.String(length=200), nullable=True),
        sa.Column("delivery_status", sa.String(length=50), nullable=True),
        sa.Column("delivery_error", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("digest_type", sa.String(length=10), nullable=True),
        sa.Column("digest_window", sa.String(length=10), nullable=True),
        _timestamp("locked_until"),
        sa.Column("lease_token", sa.String(length=64), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
    )
    op.create_index(
        "ix_notifications_delivery_provider_id",
        "notifications",
        ["delivery_provider_id"],
    )
    op.create_index(
        "ix_notifications_item_level",
        "notifications",
        ["recipient_id", "entity_type", "entity_id", "escalation_level", "created_at"],
    )
    op.create_index(
        "ix_notifications_status_scheduled",
        "notifications",
        ["status", "scheduled_for"],
    )
    op.create_index(
        "ix_notifications_recipient_created",
        "notifications",
        ["recipient_id", "channel", "created_at"],
    )
    op.create_table(
        "escalation_history",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("entity_type", sa.String(length=50), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("previous_level", sa.Integer(), nullable=False),
        sa.Column("new_level", sa.Integer(), nullable=False),
        sa.Column("hours_pending", sa.Float(), nullable=True),
        sa.Column("escalated_to", sa.JSON(), nullable=False),
        sa.Column("notification_sent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("reason", sa.String(length=100), nullable=True),
        _timestamp("escalated_at"),
        _timestamp("created_at", nullable=False),
    )
    op.create_index(
        "ix_escalation_history_item",
        "escalation_history",
        ["entity_type", "entity_id"],
    )
    op.create_table(
        "dead_letters",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "notification_id",
            sa.Integer(),
            sa.ForeignKey("notifications.id"),
            nullable=True,
        ),
        sa.Column("job_type", sa.String(length=100), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("created_at", nullable=False),
        _timestamp("resolved_at"),
    )
    op.create_table(
        "job_runs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("job_name", sa.String(length=100), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        _timestamp("started_at", nullable=False),
        _timestamp("heartbeat_at", nullable=False),
        _timestamp("finished_at"),
        sa.Column("stats", sa.JSON(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
    )
    op.create_index("ix_job_runs_status_heartbeat", "job_runs", ["status", "heartbeat_at"])


def downgrade() -> None:
    """Drop all alerting engine tables."""
    op.drop_index("ix_job_runs_status_heartbeat", table_name="job_runs")
    op.drop_table("job_runs")
    op.drop_table("dead_letters")
    op.drop_index("ix_escalation_history_item", table_name="escalation_history")
    op.drop_table("escalation_history")
    op.drop_index("ix_notifications_recipient_created", table_name="notifications")
    op.drop_index("ix_notifications_status_scheduled", table_name="notifications")
    op.drop_index("ix_notifications_item_level", table_name="notifications")
    op.drop_index("ix_notifications_delivery_provider_id", table_name="notifications")
    op.drop_table("notifications")
    op.drop_table("escalation_states")
    op.drop_table("generators")
    op.drop_table("contractor_licences")
    op.drop_table("review_queue_items")
    op.drop_index(
        "ix_obligation_evidence_links_obligation",
        table_name="obligation_evidence_links",
    )
    op.drop_table("obligation_evidence_links")
    op.drop_table("evidence_items")
    op.drop_index("ix_deadlines_status_due", table_name="deadlines")
    op.drop_table("deadlines")
    op.drop_table("obligations")
    op.drop_table("notification_preferences")
    op.drop_table("users")
    op.drop_table("sites")
    op.drop_table("companies")
