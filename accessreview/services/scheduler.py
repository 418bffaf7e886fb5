"""Periodic schedule runner.

One tick runs three phases in a fixed order: due-schedule materialization,
due-soon reminders, then overdue handling. Ticks never overlap: a process-wide
``SchedulerState`` guards the current process and, when Redis is reachable, a
``SET NX EX`` lock guards every instance sharing that Redis. An overlapping
tick returns ``{"status": "skipped_running"}`` instead of queueing.

Each schedule and campaign is processed in its own session so a bad row only
fails itself. A failing phase is logged and the next phase still runs, except
when the database itself is unreachable: that aborts the tick and the next
tick retries.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, time, timezone
import logging
from typing import Any, Awaitable, Callable, Iterable
from uuid import uuid4

from sqlalchemy import select

from accessreview.core.config import get_settings
from accessreview.core.errors import InvalidConfigError
from accessreview.domain.models import (
    CAMPAIGN_STATUS_IN_REVIEW,
    NOTIFICATION_CAMPAIGN_DUE_SOON,
    NOTIFICATION_CAMPAIGN_OVERDUE,
    NOTIFICATION_EXECUTION_COMPLETE,
    Campaign,
    ScheduledReview,
)
from accessreview.persistence.db import SessionLocal, is_persistence_unavailable
from accessreview.services.campaigns import mark_campaign_completed
from accessreview.services.decisions import bulk_retain_all, list_undecided_item_ids, system_reviewer
from accessreview.services.notifications import create_notification, has_notification
from accessreview.services.resilience import get_resilience_redis
from accessreview.services.schedules import list_due_schedule_ids, materialize_schedule


logger = logging.getLogger(__name__)

PHASE_DUE_SCHEDULES = "due_schedules"
PHASE_REMINDERS = "reminders"
PHASE_OVERDUE = "overdue"
PHASES = (PHASE_DUE_SCHEDULES, PHASE_REMINDERS, PHASE_OVERDUE)

AUTO_RETAIN_JUSTIFICATION = "Auto-retained due to review period expiration"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime:
    if value is None:
        return _utc_now()
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(slots=True)
class SchedulerState:
    """Process-wide runner state.

    Created lazily by ``get_scheduler_state()`` on first use and torn down by
    ``reset_scheduler_state()``; the lock binds to the event loop it is first
    awaited on, so tests and workers reset it when they own a new loop.
    """

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    lock_owner: str | None = None
    last_tick_started_at: datetime | None = None
    last_tick_finished_at: datetime | None = None
    last_result: dict[str, Any] | None = None


_state: SchedulerState | None = None


def get_scheduler_state() -> SchedulerState:
    global _state
    if _state is None:
        _state = SchedulerState()
    return _state


def reset_scheduler_state() -> None:
    global _state
    _state = None


@dataclass(slots=True)
class SchedulerLock:
    token: str
    redis: Any | None


async def acquire_scheduler_lock() -> SchedulerLock | None:
    # The local guard always applies; Redis adds cross-instance exclusion when available.
    state = get_scheduler_state()
    if state.lock.locked():
        return None
    await state.lock.acquire()
    token = uuid4().hex
    state.lock_owner = token

    settings = get_settings()
    redis = await get_resilience_redis()
    if redis is not None:
        ttl_s = max(5, int(settings.scheduler_lock_ttl_s))
        try:
            acquired = await redis.set(settings.scheduler_lock_key, token, nx=True, ex=ttl_s)
        except Exception:
            state.lock_owner = None
            state.lock.release()
            raise
        if not acquired:
            state.lock_owner = None
            state.lock.release()
            return None
    return SchedulerLock(token=token, redis=redis)


async def release_scheduler_lock(lock: SchedulerLock) -> None:
    # Release only locks this tick still owns so a newer holder is never clobbered.
    state = get_scheduler_state()
    try:
        if lock.redis is not None:
            key = get_settings().scheduler_lock_key
            current = await lock.redis.get(key)
            value = current.decode("utf-8") if isinstance(current, (bytes, bytearray)) else str(current or "")
            if value == lock.token:
                await lock.redis.delete(key)
    finally:
        if state.lock.locked() and state.lock_owner == lock.token:
            state.lock_owner = None
            state.lock.release()


def _start_of_day(now: datetime) -> datetime:
    return datetime.combine(now.date(), time.min, tzinfo=timezone.utc)


async def _isolated(
    unit_ids: Iterable[str],
    handler: Callable[[str], Awaitable[bool]],
    *,
    event: str,
) -> dict[str, Any]:
    # Run one unit per id; row-level failures are counted, persistence outages abort the phase.
    processed = 0
    failed: list[str] = []
    for unit_id in unit_ids:
        try:
            if await handler(unit_id):
                processed += 1
        except Exception as exc:  # noqa: BLE001 - isolate one bad row from the rest of the phase.
            if is_persistence_unavailable(exc):
                raise
            logger.exception(event, extra={"unit_id": unit_id})
            failed.append(unit_id)
    return {"processed": processed, "failed": failed}


async def check_due_schedules(*, now: datetime | None = None) -> dict[str, Any]:
    """Materialize a draft campaign for every enabled schedule whose run is due."""
    timestamp = _as_utc(now)
    async with SessionLocal() as session:
        schedule_ids = await list_due_schedule_ids(session, timestamp)
    campaign_ids: list[str] = []

    async def _run(schedule_id: str) -> bool:
        async with SessionLocal() as session:
            schedule = await session.get(ScheduledReview, schedule_id)
            # Re-check under a fresh session; another tick or a manual run may have advanced it.
            if (
                schedule is None
                or not schedule.enabled
                or schedule.next_run_at is None
                or schedule.next_run_at > timestamp
            ):
                return False
            campaign = await materialize_schedule(session=session, schedule=schedule, now=timestamp)
            campaign_ids.append(campaign.id)
            return True

    result = await _isolated(schedule_ids, _run, event="scheduled_review_failed")
    return {"triggered": result["processed"], "failed": result["failed"], "campaign_ids": campaign_ids}


def _reminder_offsets(schedule: ScheduledReview | None) -> set[int]:
    # A schedule's own reminder days win; otherwise the configured defaults apply.
    if schedule is not None and schedule.reminder_days:
        return {int(day) for day in schedule.reminder_days}
    return {int(day) for day in get_settings().reminder_offsets_days}


async def check_reminders(*, now: datetime | None = None) -> dict[str, Any]:
    """Send at most one due-soon reminder per campaign per UTC day."""
    timestamp = _as_utc(now)
    today = _start_of_day(timestamp)
    async with SessionLocal() as session:
        campaign_ids = (
            await session.execute(
                select(Campaign.id)
                .where(
                    Campaign.status == CAMPAIGN_STATUS_IN_REVIEW,
                    Campaign.due_date.is_not(None),
                    Campaign.due_date >= today,
                )
                .order_by(Campaign.due_date, Campaign.id)
            )
        ).scalars().all()

    async def _remind(campaign_id: str) -> bool:
        async with SessionLocal() as session:
            campaign = await session.get(Campaign, campaign_id)
            if campaign is None or campaign.due_date is None or campaign.status != CAMPAIGN_STATUS_IN_REVIEW:
                return False
            schedule = (
                await session.get(ScheduledReview, campaign.scheduled_review_id)
                if campaign.scheduled_review_id
                else None
            )
            days = (campaign.due_date.astimezone(timezone.utc).date() - timestamp.date()).days
            if days not in _reminder_offsets(schedule):
                return False
            if await has_notification(
                session=session,
                campaign_id=campaign_id,
                notification_type=NOTIFICATION_CAMPAIGN_DUE_SOON,
                since=today,
            ):
                return False
            plural = "s" if days != 1 else ""
            await create_notification(
                session=session,
                user_id=campaign.created_by,
                campaign_id=campaign_id,
                notification_type=NOTIFICATION_CAMPAIGN_DUE_SOON,
                title=f"Review due in {days} day{plural}",
                message=f'Access review campaign "{campaign.name}" is due in {days} day{plural}.',
                created_at=timestamp,
            )
            return True

    result = await _isolated(campaign_ids, _remind, event="campaign_reminder_failed")
    return {"reminders_sent": result["processed"], "failed": result["failed"]}


async def _auto_resolve(session: Any, campaign: Campaign, now: datetime) -> None:
    # Auto-execution only ever retains; nothing is removed without a human decision.
    campaign_id = campaign.id
    owner = campaign.created_by
    name = campaign.name
    outcome = await bulk_retain_all(
        session=session,
        campaign_id=campaign_id,
        reviewer=system_reviewer(),
        justification=AUTO_RETAIN_JUSTIFICATION,
        now=now,
    )
    campaign = await session.get(Campaign, campaign_id)
    await mark_campaign_completed(session=session, campaign=campaign, now=now)
    await create_notification(
        session=session,
        user_id=owner,
        campaign_id=campaign_id,
        notification_type=NOTIFICATION_EXECUTION_COMPLETE,
        title="Access review auto-completed",
        message=(
            f'Access review campaign "{name}" has been auto-completed. '
            f"{outcome['success']} pending items were auto-retained."
        ),
        created_at=now,
    )
    logger.info("campaign_auto_completed", extra={"campaign_id": campaign_id, "retained": outcome["success"]})


async def check_overdue_campaigns(*, now: datetime | None = None) -> dict[str, Any]:
    """Flag overdue in-review campaigns once, auto-resolving those whose schedule allows it."""
    timestamp = _as_utc(now)
    async with SessionLocal() as session:
        campaign_ids = (
            await session.execute(
                select(Campaign.id)
                .where(
                    Campaign.status == CAMPAIGN_STATUS_IN_REVIEW,
                    Campaign.due_date.is_not(None),
                    Campaign.due_date < timestamp,
                )
                .order_by(Campaign.due_date, Campaign.id)
            )
        ).scalars().all()
    auto_completed: list[str] = []

    async def _handle(campaign_id: str) -> bool:
        async with SessionLocal() as session:
            campaign = await session.get(Campaign, campaign_id)
            if campaign is None or campaign.status != CAMPAIGN_STATUS_IN_REVIEW:
                return False
            if not await has_notification(
                session=session,
                campaign_id=campaign_id,
                notification_type=NOTIFICATION_CAMPAIGN_OVERDUE,
            ):
                undecided = await list_undecided_item_ids(session, campaign_id)
                await create_notification(
                    session=session,
                    user_id=campaign.created_by,
                    campaign_id=campaign_id,
                    notification_type=NOTIFICATION_CAMPAIGN_OVERDUE,
                    title="Access review overdue",
                    message=(
                        f'Access review campaign "{campaign.name}" is overdue. '
                        f"{len(undecided)} items still need review."
                    ),
                    created_at=timestamp,
                )
            if not campaign.scheduled_review_id:
                return True
            schedule = await session.get(ScheduledReview, campaign.scheduled_review_id)
            if schedule is not None and schedule.auto_execute:
                await _auto_resolve(session, campaign, timestamp)
                auto_completed.append(campaign_id)
            return True

    result = await _isolated(campaign_ids, _handle, event="campaign_overdue_failed")
    return {"overdue": result["processed"], "auto_completed": auto_completed, "failed": result["failed"]}


_PHASE_HANDLERS: dict[str, Callable[..., Awaitable[dict[str, Any]]]] = {
    PHASE_DUE_SCHEDULES: check_due_schedules,
    PHASE_REMINDERS: check_reminders,
    PHASE_OVERDUE: check_overdue_campaigns,
}


def resolve_phases(phases: Iterable[str] | None) -> list[str]:
    if phases is None:
        return list(PHASES)
    requested = set(phases)
    unknown = requested - set(PHASES)
    if unknown:
        raise InvalidConfigError(f"unknown scheduler phase(s): {', '.join(sorted(unknown))}")
    # Keep the canonical order regardless of how callers list the phases.
    return [phase for phase in PHASES if phase in requested]


async def run_scheduler_tick(
    *,
    phases: Iterable[str] | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    selected = resolve_phases(phases)
    lock = await acquire_scheduler_lock()
    if lock is None:
        logger.info("scheduler_tick_skipped_running")
        return {"status": "skipped_running"}

    state = get_scheduler_state()
    timestamp = _as_utc(now)
    state.last_tick_started_at = _utc_now()
    results: dict[str, Any] = {}
    status = "ok"
    try:
        for phase in selected:
            try:
                results[phase] = await _PHASE_HANDLERS[phase](now=timestamp)
            except Exception as exc:  # noqa: BLE001 - a failed phase must not block the next one.
                if is_persistence_unavailable(exc):
                    logger.error("scheduler_tick_aborted_persistence_unavailable", extra={"phase": phase})
                    raise
                logger.exception("scheduler_phase_failed", extra={"phase": phase})
                results[phase] = {"status": "failed", "error": str(exc)}
                status = "partial"
    finally:
        await release_scheduler_lock(lock)
        state.last_tick_finished_at = _utc_now()

    summary = {"status": status, "now": timestamp.isoformat(), "phases": results}
    state.last_result = summary
    logger.info("scheduler_tick_finished", extra={"status": status, "phases": list(results)})
    return summary


async def run_scheduler_loop() -> None:
    # Tick on a fixed cadence and keep going after failures; the next tick retries.
    interval = max(1, int(get_settings().scheduler_interval_s))
    while True:
        if get_settings().scheduler_enabled:
            try:
                await run_scheduler_tick()
            except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
                logger.exception("scheduler tick failed")
        await asyncio.sleep(interval)
