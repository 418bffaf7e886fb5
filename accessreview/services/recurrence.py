"""Next-run calculation for scheduled access reviews.

All arithmetic happens on calendar dates in the schedule's own timezone; the
wall-clock ``time`` is attached last and the result is converted to UTC. The
search always begins at "tomorrow" in that timezone, so the result is strictly
after ``now`` and repeated application yields a strictly increasing sequence.
"""

from __future__ import annotations

import calendar
from datetime import date, datetime, time as dt_time, timedelta, timezone as dt_timezone
from zoneinfo import ZoneInfo

from accessreview.domain.schemas import RecurrenceConfig, parse_recurrence, parse_time_of_day


QUARTER_START_MONTHS = (1, 4, 7, 10)
DEFAULT_DAY_OF_WEEK = 1  # Monday, with 0 = Sunday


def _utc_now() -> datetime:
    return datetime.now(dt_timezone.utc)


def _clamped_date(year: int, month: int, day: int) -> date:
    # Short months clamp to their last day instead of spilling into the next month.
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day, last_day))


def _shift_month(year: int, month: int, months: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + months
    return index // 12, index % 12 + 1


def _sunday_based_weekday(value: date) -> int:
    # Python counts Monday as 0; schedules count Sunday as 0.
    return (value.weekday() + 1) % 7


def _weekly(start: date, day_of_week: int | None) -> date:
    target = DEFAULT_DAY_OF_WEEK if day_of_week is None else day_of_week
    return start + timedelta(days=(target - _sunday_based_weekday(start)) % 7)


def _monthly(start: date, day_of_month: int | None) -> date:
    day = day_of_month or 1
    candidate = _clamped_date(start.year, start.month, day)
    if candidate < start:
        year, month = _shift_month(start.year, start.month, 1)
        candidate = _clamped_date(year, month, day)
    return candidate


def _quarterly(today: date, day_of_month: int | None) -> date:
    # Always the quarter after the one containing today, even if day_of_month is still ahead.
    day = day_of_month or 1
    year, month = _shift_month(today.year, ((today.month - 1) // 3) * 3 + 1, 3)
    return _clamped_date(year, month, day)


def _yearly(start: date, month_of_year: int | None, day_of_month: int | None) -> date:
    month = month_of_year or 1
    day = day_of_month or 1
    candidate = _clamped_date(start.year, month, day)
    if candidate < start:
        candidate = _clamped_date(start.year + 1, month, day)
    return candidate


def next_run_for(config: RecurrenceConfig, *, now: datetime | None = None) -> datetime:
    """Return the next UTC run time for a validated recurrence config."""
    current = now or _utc_now()
    if current.tzinfo is None:
        current = current.replace(tzinfo=dt_timezone.utc)
    zone = ZoneInfo(config.timezone)
    hour, minute = parse_time_of_day(config.time)
    tomorrow = current.astimezone(zone).date() + timedelta(days=1)

    if config.frequency == "weekly":
        target = _weekly(tomorrow, config.day_of_week)
    elif config.frequency == "monthly":
        target = _monthly(tomorrow, config.day_of_month)
    elif config.frequency == "quarterly":
        target = _quarterly(tomorrow - timedelta(days=1), config.day_of_month)
    else:
        target = _yearly(tomorrow, config.month_of_year, config.day_of_month)

    local = datetime.combine(target, dt_time(hour, minute), tzinfo=zone)
    return local.astimezone(dt_timezone.utc)


def next_run(
    *,
    frequency: str,
    day_of_week: int | None = None,
    day_of_month: int | None = None,
    month_of_year: int | None = None,
    time: str = "09:00",
    timezone: str = "UTC",
    now: datetime | None = None,
) -> datetime:
    """Validate raw recurrence fields and compute the next run.

    Raises ``InvalidConfigError`` for unknown frequencies, out-of-range days,
    malformed ``HH:MM`` times, or unknown IANA timezones.
    """
    config = parse_recurrence(
        {
            "frequency": frequency,
            "day_of_week": day_of_week,
            "day_of_month": day_of_month,
            "month_of_year": month_of_year,
            "time": time,
            "timezone": timezone,
        }
    )
    return next_run_for(config, now=now)
