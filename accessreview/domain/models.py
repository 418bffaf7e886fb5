from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


CAMPAIGN_STATUS_DRAFT = "draft"
CAMPAIGN_STATUS_COLLECTING = "collecting"
CAMPAIGN_STATUS_IN_REVIEW = "in_review"
CAMPAIGN_STATUS_COMPLETED = "completed"
# Lifecycle order; a campaign only ever moves forward through these.
CAMPAIGN_STATUSES = (
    CAMPAIGN_STATUS_DRAFT,
    CAMPAIGN_STATUS_COLLECTING,
    CAMPAIGN_STATUS_IN_REVIEW,
    CAMPAIGN_STATUS_COMPLETED,
)

DECISION_RETAIN = "retain"
DECISION_REMOVE = "remove"
DECISIONS = (DECISION_RETAIN, DECISION_REMOVE)

EXECUTION_PENDING = "pending"
EXECUTION_COMPLETED = "completed"
EXECUTION_FAILED = "failed"

NOTIFICATION_CAMPAIGN_STARTED = "campaign_started"
NOTIFICATION_CAMPAIGN_DUE_SOON = "campaign_due_soon"
NOTIFICATION_CAMPAIGN_OVERDUE = "campaign_overdue"
NOTIFICATION_REVIEW_ASSIGNED = "review_assigned"
NOTIFICATION_EXECUTION_COMPLETE = "execution_complete"
NOTIFICATION_SCHEDULE_TRIGGERED = "schedule_triggered"
NOTIFICATION_TYPES = (
    NOTIFICATION_CAMPAIGN_STARTED,
    NOTIFICATION_CAMPAIGN_DUE_SOON,
    NOTIFICATION_CAMPAIGN_OVERDUE,
    NOTIFICATION_REVIEW_ASSIGNED,
    NOTIFICATION_EXECUTION_COMPLETE,
    NOTIFICATION_SCHEDULE_TRIGGERED,
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid4().hex


class UtcDateTime(TypeDecorator):
    """Timezone-aware datetime column that always round-trips as UTC.

    SQLite drops tzinfo on storage, so values are normalized to UTC on the way
    in and UTC is re-attached on the way out. PostgreSQL keeps its native
    ``timestamptz`` behaviour.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class JsonType(TypeDecorator):
    """JSONB on PostgreSQL, generic JSON elsewhere."""

    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect: Any) -> Any:
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(JSON())


class Base(DeclarativeBase):
    pass


class Campaign(Base):
    __tablename__ = "access_review_campaigns"
    __table_args__ = (
        Index("ix_access_review_campaigns_status_due", "status", "due_date"),
        Index("ix_access_review_campaigns_created_by", "created_by"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Validated CampaignScope payload; frozen once the campaign leaves draft.
    scope: Mapped[dict[str, Any]] = mapped_column(JsonType)
    status: Mapped[str] = mapped_column(String, default=CAMPAIGN_STATUS_DRAFT, nullable=False)
    # Derived counters: always recomputed from decisions, never incremented in place.
    total_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reviewed_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    retained_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    removed_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    due_date: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    start_date: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    created_by: Mapped[str] = mapped_column(String)
    scheduled_review_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("scheduled_reviews.id", ondelete="SET NULL"), nullable=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, onupdate=_utc_now)


class ScheduledReview(Base):
    __tablename__ = "scheduled_reviews"
    __table_args__ = (
        Index("ix_scheduled_reviews_enabled_next_run", "enabled", "next_run_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    scope: Mapped[dict[str, Any]] = mapped_column(JsonType)
    frequency: Mapped[str] = mapped_column(String)
    day_of_week: Mapped[int | None] = mapped_column(Integer, nullable=True)
    day_of_month: Mapped[int | None] = mapped_column(Integer, nullable=True)
    month_of_year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    time: Mapped[str] = mapped_column(String, default="09:00")
    timezone: Mapped[str] = mapped_column(String, default="UTC")
    review_period_days: Mapped[int] = mapped_column(Integer, default=14)
    reminder_days: Mapped[list[int]] = mapped_column(JsonType, default=list)
    # Auto-execute only ever resolves undecided items as retain.
    auto_execute: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    next_run_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    last_run_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    last_campaign_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_by: Mapped[str] = mapped_column(String, index=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, onupdate=_utc_now)


class ReviewItem(Base):
    __tablename__ = "access_review_items"
    __table_args__ = (
        # One review item per grant per campaign; conflicts during collection are no-ops.
        UniqueConstraint("campaign_id", "permission_id", name="uq_access_review_items_campaign_permission"),
        Index("ix_access_review_items_campaign_resource_type", "campaign_id", "resource_type"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    campaign_id: Mapped[str] = mapped_column(
        String, ForeignKey("access_review_campaigns.id", ondelete="CASCADE"), index=True
    )
    resource_type: Mapped[str] = mapped_column(String)
    resource_id: Mapped[str] = mapped_column(String)
    resource_name: Mapped[str] = mapped_column(String)
    resource_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    site_url: Mapped[str | None] = mapped_column(String, nullable=True)
    site_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Drive-scoped resources need the drive id to address the permission on removal.
    drive_id: Mapped[str | None] = mapped_column(String, nullable=True)
    permission_id: Mapped[str] = mapped_column(String)
    permission_type: Mapped[str | None] = mapped_column(String, nullable=True)
    granted_to: Mapped[str] = mapped_column(String)
    granted_to_id: Mapped[str | None] = mapped_column(String, nullable=True)
    granted_to_type: Mapped[str | None] = mapped_column(String, nullable=True)
    access_level: Mapped[str] = mapped_column(String)
    permission_origin: Mapped[str] = mapped_column(String)
    sharing_link_type: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)


class Decision(Base):
    __tablename__ = "access_review_decisions"
    __table_args__ = (
        Index("ix_access_review_decisions_decision_status", "decision", "execution_status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    # Unique item reference keeps the item/decision relation strictly 1:1.
    item_id: Mapped[str] = mapped_column(
        String, ForeignKey("access_review_items.id", ondelete="CASCADE"), unique=True, index=True
    )
    decision: Mapped[str] = mapped_column(String)
    justification: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewer_id: Mapped[str] = mapped_column(String)
    reviewer_email: Mapped[str | None] = mapped_column(String, nullable=True)
    decided_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)
    execution_status: Mapped[str] = mapped_column(String, default=EXECUTION_PENDING, nullable=False)
    execution_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    executed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)


class Notification(Base):
    __tablename__ = "access_review_notifications"
    __table_args__ = (
        Index("ix_access_review_notifications_campaign_type", "campaign_id", "type", "created_at"),
        Index("ix_access_review_notifications_user_read", "user_id", "read_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String)
    campaign_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("access_review_campaigns.id", ondelete="CASCADE"), nullable=True
    )
    type: Mapped[str] = mapped_column(String)
    title: Mapped[str] = mapped_column(String)
    message: Mapped[str] = mapped_column(Text)
    read_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)
