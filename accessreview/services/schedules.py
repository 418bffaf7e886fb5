from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from accessreview.core.errors import InvalidConfigError, InvalidStateError, NotFoundError
from accessreview.core.pagination import page_request, pagination_meta
from accessreview.domain.models import NOTIFICATION_SCHEDULE_TRIGGERED, Campaign, ScheduledReview
from accessreview.domain.schemas import CampaignScope, RecurrenceConfig, parse_recurrence, parse_scope
from accessreview.services.campaigns import create_campaign
from accessreview.services.notifications import create_notification
from accessreview.services.recurrence import next_run_for


logger = logging.getLogger(__name__)

RECURRENCE_FIELDS = ("frequency", "day_of_week", "day_of_month", "month_of_year", "time", "timezone")
DEFAULT_REVIEW_PERIOD_DAYS = 14


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _recurrence_of(schedule: ScheduledReview) -> RecurrenceConfig:
    return parse_recurrence({name: getattr(schedule, name) for name in RECURRENCE_FIELDS})


def _validate_period(review_period_days: int) -> int:
    if int(review_period_days) < 1:
        raise InvalidConfigError("review_period_days must be at least 1")
    return int(review_period_days)


def _validate_reminders(reminder_days: list[int] | None) -> list[int]:
    values = [int(day) for day in (reminder_days or [])]
    if any(day < 0 for day in values):
        raise InvalidConfigError("reminder_days must be non-negative")
    return sorted(set(values), reverse=True)


def schedule_payload(schedule: ScheduledReview) -> dict[str, Any]:
    return {
        "id": schedule.id,
        "name": schedule.name,
        "description": schedule.description,
        "scope": schedule.scope,
        "frequency": schedule.frequency,
        "day_of_week": schedule.day_of_week,
        "day_of_month": schedule.day_of_month,
        "month_of_year": schedule.month_of_year,
        "time": schedule.time,
        "timezone": schedule.timezone,
        "review_period_days": schedule.review_period_days,
        "reminder_days": list(schedule.reminder_days or []),
        "auto_execute": schedule.auto_execute,
        "enabled": schedule.enabled,
        "next_run_at": schedule.next_run_at.isoformat() if schedule.next_run_at else None,
        "last_run_at": schedule.last_run_at.isoformat() if schedule.last_run_at else None,
        "last_campaign_id": schedule.last_campaign_id,
        "created_by": schedule.created_by,
        "created_at": schedule.created_at.isoformat() if schedule.created_at else None,
        "updated_at": schedule.updated_at.isoformat() if schedule.updated_at else None,
    }


async def create_schedule(
    *,
    session: AsyncSession,
    name: str,
    scope: CampaignScope | dict[str, Any],
    recurrence: RecurrenceConfig | dict[str, Any],
    created_by: str,
    description: str | None = None,
    review_period_days: int = DEFAULT_REVIEW_PERIOD_DAYS,
    reminder_days: list[int] | None = None,
    auto_execute: bool = False,
    enabled: bool = True,
    now: datetime | None = None,
) -> ScheduledReview:
    # Validate everything up front; a rejected schedule never leaves a row behind.
    cleaned_name = (name or "").strip()
    if not cleaned_name:
        raise InvalidConfigError("schedule name is required")
    parsed_scope = parse_scope(scope)
    parsed_recurrence = parse_recurrence(recurrence)
    schedule = ScheduledReview(
        name=cleaned_name,
        description=description,
        scope=parsed_scope.model_dump(),
        frequency=parsed_recurrence.frequency,
        day_of_week=parsed_recurrence.day_of_week,
        day_of_month=parsed_recurrence.day_of_month,
        month_of_year=parsed_recurrence.month_of_year,
        time=parsed_recurrence.time,
        timezone=parsed_recurrence.timezone,
        review_period_days=_validate_period(review_period_days),
        reminder_days=_validate_reminders(reminder_days),
        auto_execute=bool(auto_execute),
        enabled=bool(enabled),
        next_run_at=next_run_for(parsed_recurrence, now=now),
        created_by=created_by,
    )
    session.add(schedule)
    await session.commit()
    logger.info(
        "schedule_created",
        extra={"schedule_id": schedule.id, "next_run_at": schedule.next_run_at.isoformat()},
    )
    return schedule


async def get_schedule(*, session: AsyncSession, schedule_id: str) -> ScheduledReview:
    schedule = await session.get(ScheduledReview, schedule_id)
    if schedule is None:
        raise NotFoundError("schedule", schedule_id)
    return schedule


async def list_schedules(
    *,
    session: AsyncSession,
    created_by: str | None = None,
    page: int | None = None,
    limit: int | None = None,
) -> dict[str, Any]:
    request = page_request(page, limit)
    filters = []
    if created_by:
        filters.append(ScheduledReview.created_by == created_by)
    rows = (
        await session.execute(
            select(ScheduledReview)
            .where(*filters)
            .order_by(ScheduledReview.created_at.desc(), ScheduledReview.id)
            .offset(request.offset)
            .limit(request.limit)
        )
    ).scalars().all()
    total = (await session.execute(select(func.count(ScheduledReview.id)).where(*filters))).scalar_one()
    return {"schedules": list(rows), "pagination": pagination_meta(total=int(total), request=request)}


async def update_schedule(
    *,
    session: AsyncSession,
    schedule_id: str,
    changes: dict[str, Any],
    now: datetime | None = None,
) -> ScheduledReview:
    """Apply a partial update.

    ``next_run_at`` is recomputed when any recurrence field changes, or when a
    disabled schedule is re-enabled so it does not fire for a missed window.
    """
    schedule = await get_schedule(session=session, schedule_id=schedule_id)
    recurrence_changes = {key: changes[key] for key in RECURRENCE_FIELDS if key in changes}
    parsed_recurrence: RecurrenceConfig | None = None
    if recurrence_changes:
        merged = {name: getattr(schedule, name) for name in RECURRENCE_FIELDS}
        merged.update(recurrence_changes)
        parsed_recurrence = parse_recurrence(merged)
    parsed_scope = parse_scope(changes["scope"]) if changes.get("scope") is not None else None
    if "name" in changes and not (changes["name"] or "").strip():
        raise InvalidConfigError("schedule name is required")
    review_period = (
        _validate_period(changes["review_period_days"]) if changes.get("review_period_days") is not None else None
    )
    reminders = _validate_reminders(changes["reminder_days"]) if changes.get("reminder_days") is not None else None

    re_enabled = bool(changes.get("enabled")) and not schedule.enabled
    if "name" in changes:
        schedule.name = changes["name"].strip()
    if "description" in changes:
        schedule.description = changes["description"]
    if parsed_scope is not None:
        schedule.scope = parsed_scope.model_dump()
    if review_period is not None:
        schedule.review_period_days = review_period
    if reminders is not None:
        schedule.reminder_days = reminders
    if changes.get("auto_execute") is not None:
        schedule.auto_execute = bool(changes["auto_execute"])
    if changes.get("enabled") is not None:
        schedule.enabled = bool(changes["enabled"])
    if parsed_recurrence is not None:
        for name in RECURRENCE_FIELDS:
            setattr(schedule, name, getattr(parsed_recurrence, name))
    if parsed_recurrence is not None or re_enabled:
        schedule.next_run_at = next_run_for(parsed_recurrence or _recurrence_of(schedule), now=now)
    await session.commit()
    return schedule


async def delete_schedule(*, session: AsyncSession, schedule_id: str) -> None:
    schedule = await get_schedule(session=session, schedule_id=schedule_id)
    # Spawned campaigns outlive their schedule; only the back-reference is cleared.
    campaigns = (
        await session.execute(select(Campaign).where(Campaign.scheduled_review_id == schedule_id))
    ).scalars().all()
    for campaign in campaigns:
        campaign.scheduled_review_id = None
    await session.delete(schedule)
    await session.commit()
    logger.info("schedule_deleted", extra={"schedule_id": schedule_id})


async def materialize_schedule(
    *,
    session: AsyncSession,
    schedule: ScheduledReview,
    now: datetime,
    triggered_by: str | None = None,
) -> Campaign:
    """Spawn a draft campaign from a schedule and advance its run bookkeeping.

    The campaign, the schedule update and the ``schedule_triggered``
    notification commit together.
    """
    recurrence = _recurrence_of(schedule)
    owner = triggered_by or schedule.created_by
    campaign = await create_campaign(
        session=session,
        name=f"{schedule.name} - {now.date().isoformat()}",
        description=f"Auto-generated from schedule: {schedule.name}",
        scope=schedule.scope,
        created_by=owner,
        due_date=now + timedelta(days=int(schedule.review_period_days)),
        scheduled_review_id=schedule.id,
        commit=False,
    )
    schedule.last_run_at = now
    schedule.next_run_at = next_run_for(recurrence, now=now)
    schedule.last_campaign_id = campaign.id
    await create_notification(
        session=session,
        user_id=schedule.created_by,
        campaign_id=campaign.id,
        notification_type=NOTIFICATION_SCHEDULE_TRIGGERED,
        title="Scheduled review started",
        message=(
            f'A new access review campaign "{campaign.name}" has been created '
            f'from your schedule "{schedule.name}".'
        ),
        created_at=now,
        commit=False,
    )
    await session.commit()
    logger.info(
        "schedule_materialized",
        extra={
            "schedule_id": schedule.id,
            "campaign_id": campaign.id,
            "next_run_at": schedule.next_run_at.isoformat(),
        },
    )
    return campaign


async def run_schedule(
    *,
    session: AsyncSession,
    schedule_id: str,
    triggered_by: str | None = None,
    now: datetime | None = None,
) -> Campaign:
    schedule = await get_schedule(session=session, schedule_id=schedule_id)
    if not schedule.enabled:
        raise InvalidStateError(f"schedule {schedule_id} is disabled")
    return await materialize_schedule(
        session=session,
        schedule=schedule,
        now=now or _utc_now(),
        triggered_by=triggered_by,
    )


async def list_due_schedule_ids(session: AsyncSession, now: datetime) -> list[str]:
    result = await session.execute(
        select(ScheduledReview.id)
        .where(
            ScheduledReview.enabled.is_(True),
            ScheduledReview.next_run_at.is_not(None),
            ScheduledReview.next_run_at <= now,
        )
        .order_by(ScheduledReview.next_run_at, ScheduledReview.id)
    )
    return list(result.scalars().all())
