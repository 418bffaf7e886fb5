from __future__ import annotations

from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, ValidationError, field_validator

from accessreview.core.errors import InvalidConfigError


Frequency = Literal["weekly", "monthly", "quarterly", "yearly"]


class CampaignScope(BaseModel):
    # Typed scope replaces free-form JSON so internal logic never re-validates map keys.
    site_urls: list[str] = Field(min_length=1)
    include_drives: bool = True
    include_subfolders: bool = True
    max_depth: int = Field(default=3, ge=0, le=20)

    model_config = {"extra": "forbid"}

    @field_validator("site_urls")
    @classmethod
    def _strip_site_urls(cls, value: list[str]) -> list[str]:
        cleaned = [url.strip() for url in value if url and url.strip()]
        if not cleaned:
            raise ValueError("at least one site url is required")
        # Preserve order while dropping duplicate sites so each site is walked once.
        return list(dict.fromkeys(cleaned))


class RecurrenceConfig(BaseModel):
    frequency: Frequency
    day_of_week: int | None = Field(default=None, ge=0, le=6)
    day_of_month: int | None = Field(default=None, ge=1, le=31)
    month_of_year: int | None = Field(default=None, ge=1, le=12)
    time: str = "09:00"
    timezone: str = "UTC"

    model_config = {"extra": "forbid"}

    @field_validator("time")
    @classmethod
    def _validate_time(cls, value: str) -> str:
        parse_time_of_day(value)
        return value

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone: {value}") from exc
        return value


def parse_time_of_day(value: str) -> tuple[int, int]:
    # Accept strict 24h HH:MM so schedules never depend on locale parsing.
    parts = value.split(":")
    if len(parts) != 2 or not all(part.isdigit() for part in parts):
        raise ValueError(f"time must be HH:MM, got {value!r}")
    hour, minute = int(parts[0]), int(parts[1])
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"time out of range: {value!r}")
    return hour, minute


def _format_errors(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in error['loc']) or 'value'}: {error['msg']}"
        for error in exc.errors()
    )


def parse_scope(payload: CampaignScope | dict[str, Any]) -> CampaignScope:
    # Normalize boundary payloads into a validated scope, surfacing domain errors.
    if isinstance(payload, CampaignScope):
        return payload
    try:
        return CampaignScope.model_validate(payload)
    except ValidationError as exc:
        raise InvalidConfigError(f"invalid campaign scope: {_format_errors(exc)}") from exc


def parse_recurrence(payload: RecurrenceConfig | dict[str, Any]) -> RecurrenceConfig:
    if isinstance(payload, RecurrenceConfig):
        return payload
    try:
        return RecurrenceConfig.model_validate(payload)
    except ValidationError as exc:
        raise InvalidConfigError(f"invalid recurrence: {_format_errors(exc)}") from exc
