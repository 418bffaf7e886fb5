from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from accessreview.core.errors import InvalidConfigError, InvalidStateError, NotFoundError
from accessreview.domain.models import (
    CAMPAIGN_STATUS_DRAFT,
    NOTIFICATION_SCHEDULE_TRIGGERED,
    Campaign,
    ScheduledReview,
)
from accessreview.persistence.db import SessionLocal
from accessreview.services import schedules as schedule_service
from accessreview.services.notifications import count_notifications
from accessreview.tests.utils.permissions import FINANCE_SITE_URL


NOW = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)


async def _weekly(session, **overrides) -> ScheduledReview:
    payload = {
        "session": session,
        "name": "Weekly finance",
        "scope": {"site_urls": [FINANCE_SITE_URL]},
        "recurrence": {"frequency": "weekly", "day_of_week": 1},
        "created_by": "owner-1",
        "reminder_days": [1, 3, 3],
        "now": NOW,
    }
    payload.update(overrides)
    return await schedule_service.create_schedule(**payload)


@pytest.mark.asyncio
async def test_create_schedule_computes_next_run() -> None:
    async with SessionLocal() as session:
        schedule = await _weekly(session)

    assert schedule.next_run_at == datetime(2024, 1, 8, 9, 0, tzinfo=timezone.utc)
    assert schedule.reminder_days == [3, 1]
    assert schedule.review_period_days == schedule_service.DEFAULT_REVIEW_PERIOD_DAYS
    assert schedule.enabled is True


@pytest.mark.asyncio
async def test_create_schedule_rejects_bad_config_without_writing() -> None:
    async with SessionLocal() as session:
        with pytest.raises(InvalidConfigError):
            await _weekly(session, recurrence={"frequency": "hourly"})
        with pytest.raises(InvalidConfigError):
            await _weekly(session, scope={"site_urls": []})
        with pytest.raises(InvalidConfigError):
            await _weekly(session, review_period_days=0)
        with pytest.raises(InvalidConfigError):
            await _weekly(session, reminder_days=[-1])
        total = (await session.execute(select(func.count(ScheduledReview.id)))).scalar_one()

    assert total == 0


@pytest.mark.asyncio
async def test_update_schedule_recomputes_next_run_on_recurrence_change() -> None:
    async with SessionLocal() as session:
        schedule = await _weekly(session)
        updated = await schedule_service.update_schedule(
            session=session,
            schedule_id=schedule.id,
            changes={"frequency": "monthly", "day_of_month": 31},
            now=datetime(2024, 4, 5, tzinfo=timezone.utc),
        )
        renamed = await schedule_service.update_schedule(
            session=session,
            schedule_id=schedule.id,
            changes={"name": "Monthly finance", "auto_execute": True},
            now=datetime(2024, 4, 6, tzinfo=timezone.utc),
        )

    assert updated.frequency == "monthly"
    assert updated.next_run_at == datetime(2024, 4, 30, 9, 0, tzinfo=timezone.utc)
    # Non-recurrence edits leave the computed run untouched.
    assert renamed.next_run_at == datetime(2024, 4, 30, 9, 0, tzinfo=timezone.utc)
    assert renamed.name == "Monthly finance"
    assert renamed.auto_execute is True


@pytest.mark.asyncio
async def test_reenabling_schedule_skips_missed_window() -> None:
    async with SessionLocal() as session:
        schedule = await _weekly(session, enabled=False)
        later = datetime(2024, 3, 6, 12, 0, tzinfo=timezone.utc)
        updated = await schedule_service.update_schedule(
            session=session, schedule_id=schedule.id, changes={"enabled": True}, now=later
        )

    assert updated.enabled is True
    assert updated.next_run_at == datetime(2024, 3, 11, 9, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_materialize_schedule_creates_draft_campaign_and_advances() -> None:
    run_at = datetime(2024, 1, 8, 9, 0, tzinfo=timezone.utc)
    async with SessionLocal() as session:
        schedule = await _weekly(session, review_period_days=10)
        campaign = await schedule_service.materialize_schedule(session=session, schedule=schedule, now=run_at)
        triggered = await count_notifications(
            session=session, campaign_id=campaign.id, notification_type=NOTIFICATION_SCHEDULE_TRIGGERED
        )

    assert campaign.status == CAMPAIGN_STATUS_DRAFT
    assert campaign.name == "Weekly finance - 2024-01-08"
    assert campaign.scheduled_review_id == schedule.id
    assert campaign.due_date == run_at + timedelta(days=10)
    assert campaign.scope["site_urls"] == [FINANCE_SITE_URL]
    assert schedule.last_run_at == run_at
    assert schedule.last_campaign_id == campaign.id
    assert schedule.next_run_at == datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)
    assert schedule.next_run_at > schedule.last_run_at
    assert triggered == 1


@pytest.mark.asyncio
async def test_run_schedule_refuses_disabled_schedule() -> None:
    async with SessionLocal() as session:
        schedule = await _weekly(session, enabled=False)
        with pytest.raises(InvalidStateError):
            await schedule_service.run_schedule(session=session, schedule_id=schedule.id)
        with pytest.raises(NotFoundError):
            await schedule_service.run_schedule(session=session, schedule_id="missing")
        total = (await session.execute(select(func.count(Campaign.id)))).scalar_one()

    assert total == 0


@pytest.mark.asyncio
async def test_run_schedule_assigns_campaign_to_trigger_user() -> None:
    async with SessionLocal() as session:
        schedule = await _weekly(session)
        campaign = await schedule_service.run_schedule(
            session=session, schedule_id=schedule.id, triggered_by="operator-9", now=NOW
        )

    assert campaign.created_by == "operator-9"


@pytest.mark.asyncio
async def test_list_due_schedule_ids_skips_disabled_and_future() -> None:
    async with SessionLocal() as session:
        due = await _weekly(session)
        await _weekly(session, enabled=False)
        await _weekly(session, recurrence={"frequency": "yearly", "month_of_year": 12, "day_of_month": 1})
        due_ids = await schedule_service.list_due_schedule_ids(
            session, datetime(2024, 1, 8, 9, 0, tzinfo=timezone.utc)
        )

    assert due_ids == [due.id]


@pytest.mark.asyncio
async def test_delete_schedule_keeps_spawned_campaigns() -> None:
    async with SessionLocal() as session:
        schedule = await _weekly(session)
        schedule_id = schedule.id
        campaign = await schedule_service.run_schedule(session=session, schedule_id=schedule_id, now=NOW)
        campaign_id = campaign.id
        await schedule_service.delete_schedule(session=session, schedule_id=schedule_id)
        kept = await session.get(Campaign, campaign_id)
        listing = await schedule_service.list_schedules(session=session, created_by="owner-1")

    assert kept is not None
    assert kept.scheduled_review_id is None
    assert listing["pagination"]["total"] == 0
