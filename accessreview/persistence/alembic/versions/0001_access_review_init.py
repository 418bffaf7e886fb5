"""access review init

Revision ID: 0001_access_review_init
Revises:
Create Date: 2026-10-16 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_access_review_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "scheduled_reviews",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("scope", postgresql.JSONB(), nullable=False),
        sa.Column("frequency", sa.String(), nullable=False),
        sa.Column("day_of_week", sa.Integer(), nullable=True),
        sa.Column("day_of_month", sa.Integer(), nullable=True),
        sa.Column("month_of_year", sa.Integer(), nullable=True),
        sa.Column("time", sa.String(), nullable=False, server_default="09:00"),
        sa.Column("timezone", sa.String(), nullable=False, server_default="UTC"),
        sa.Column("review_period_days", sa.Integer(), nullable=False, server_default="14"),
        sa.Column("reminder_days", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("auto_execute", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_campaign_id", sa.String(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_scheduled_reviews_created_by", "scheduled_reviews", ["created_by"])
    # The due-schedule scan filters on enabled and next_run_at every tick.
    op.create_index("ix_scheduled_reviews_enabled_next_run", "scheduled_reviews", ["enabled", "next_run_at"])

    op.create_table(
        "access_review_campaigns",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("scope", postgresql.JSONB(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="draft"),
        sa.Column("total_items", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reviewed_items", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retained_items", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("removed_items", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(), nullable=False),
        sa.Column(
            "scheduled_review_id",
            sa.String(),
            sa.ForeignKey("scheduled_reviews.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_access_review_campaigns_status_due", "access_review_campaigns", ["status", "due_date"])
    op.create_index("ix_access_review_campaigns_created_by", "access_review_campaigns", ["created_by"])
    op.create_index(
        "ix_access_review_campaigns_scheduled_review_id", "access_review_campaigns", ["scheduled_review_id"]
    )

    op.create_table(
        "access_review_items",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "campaign_id",
            sa.String(),
            sa.ForeignKey("access_review_campaigns.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("resource_type", sa.String(), nullable=False),
        sa.Column("resource_id", sa.String(), nullable=False),
        sa.Column("resource_name", sa.String(), nullable=False),
        sa.Column("resource_path", sa.Text(), nullable=True),
        sa.Column("site_url", sa.String(), nullable=True),
        sa.Column("site_id", sa.String(), nullable=True),
        sa.Column("drive_id", sa.String(), nullable=True),
        sa.Column("permission_id", sa.String(), nullable=False),
        sa.Column("permission_type", sa.String(), nullable=True),
        sa.Column("granted_to", sa.String(), nullable=False),
        sa.Column("granted_to_id", sa.String(), nullable=True),
        sa.Column("granted_to_type", sa.String(), nullable=True),
        sa.Column("access_level", sa.String(), nullable=False),
        sa.Column("permission_origin", sa.String(), nullable=False),
        sa.Column("sharing_link_type", sa.String(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        # Collection relies on this key to make re-runs no-ops.
        sa.UniqueConstraint("campaign_id", "permission_id", name="uq_access_review_items_campaign_permission"),
    )
    op.create_index("ix_access_review_items_campaign_id", "access_review_items", ["campaign_id"])
    op.create_index(
        "ix_access_review_items_campaign_resource_type", "access_review_items", ["campaign_id", "resource_type"]
    )

    op.create_table(
        "access_review_decisions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "item_id",
            sa.String(),
            sa.ForeignKey("access_review_items.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("decision", sa.String(), nullable=False),
        sa.Column("justification", sa.Text(), nullable=True),
        sa.Column("reviewer_id", sa.String(), nullable=False),
        sa.Column("reviewer_email", sa.String(), nullable=True),
        sa.Column("decided_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("execution_status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("execution_error", sa.Text(), nullable=True),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_access_review_decisions_item_id", "access_review_decisions", ["item_id"])
    op.create_index(
        "ix_access_review_decisions_decision_status", "access_review_decisions", ["decision", "execution_status"]
    )

    op.create_table(
        "access_review_notifications",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column(
            "campaign_id",
            sa.String(),
            sa.ForeignKey("access_review_campaigns.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    # Reminder and overdue dedup look up notifications by campaign, type and day.
    op.create_index(
        "ix_access_review_notifications_campaign_type",
        "access_review_notifications",
        ["campaign_id", "type", "created_at"],
    )
    op.create_index("ix_access_review_notifications_user_read", "access_review_notifications", ["user_id", "read_at"])


def downgrade() -> None:
    op.drop_index("ix_access_review_notifications_user_read", table_name="access_review_notifications")
    op.drop_index("ix_access_review_notifications_campaign_type", table_name="access_review_notifications")
    op.drop_table("access_review_notifications")
    op.drop_index("ix_access_review_decisions_decision_status", table_name="access_review_decisions")
    op.drop_index("ix_access_review_decisions_item_id", table_name="access_review_decisions")
    op.drop_table("access_review_decisions")
    op.drop_index("ix_access_review_items_campaign_resource_type", table_name="access_review_items")
    op.drop_index("ix_access_review_items_campaign_id", table_name="access_review_items")
    op.drop_table("access_review_items")
    op.drop_index("ix_access_review_campaigns_scheduled_review_id", table_name="access_review_campaigns")
    op.drop_index("ix_access_review_campaigns_created_by", table_name="access_review_campaigns")
    op.drop_index("ix_access_review_campaigns_status_due", table_name="access_review_campaigns")
    op.drop_table("access_review_campaigns")
    op.drop_index("ix_scheduled_reviews_enabled_next_run", table_name="scheduled_reviews")
    op.drop_index("ix_scheduled_reviews_created_by", table_name="scheduled_reviews")
    op.drop_table("scheduled_reviews")
