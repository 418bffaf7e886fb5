from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from accessreview.apps.api.deps import Principal, get_current_principal, get_db
from accessreview.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from accessreview.apps.api.response import Page, SuccessEnvelope, page_response, success_response
from accessreview.apps.api.routes.campaigns import CampaignResponse
from accessreview.services import schedules as schedule_service
from accessreview.services.campaigns import campaign_payload


router = APIRouter(prefix="/schedules", tags=["schedules"], responses=DEFAULT_ERROR_RESPONSES)


class ScheduleCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str | None = None
    scope: dict[str, Any]
    frequency: Literal["weekly", "monthly", "quarterly", "yearly"]
    day_of_week: int | None = None
    day_of_month: int | None = None
    month_of_year: int | None = None
    time: str = "09:00"
    timezone: str = "UTC"
    review_period_days: int = Field(default=schedule_service.DEFAULT_REVIEW_PERIOD_DAYS, ge=1, le=365)
    reminder_days: list[int] = Field(default_factory=list)
    auto_execute: bool = False
    enabled: bool = True

    model_config = {"extra": "forbid"}


class ScheduleUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    scope: dict[str, Any] | None = None
    frequency: Literal["weekly", "monthly", "quarterly", "yearly"] | None = None
    day_of_week: int | None = None
    day_of_month: int | None = None
    month_of_year: int | None = None
    time: str | None = None
    timezone: str | None = None
    review_period_days: int | None = Field(default=None, ge=1, le=365)
    reminder_days: list[int] | None = None
    auto_execute: bool | None = None
    enabled: bool | None = None

    model_config = {"extra": "forbid"}


class ScheduleResponse(BaseModel):
    id: str
    name: str
    description: str | None
    scope: dict[str, Any]
    frequency: str
    day_of_week: int | None
    day_of_month: int | None
    month_of_year: int | None
    time: str
    timezone: str
    review_period_days: int
    reminder_days: list[int]
    auto_execute: bool
    enabled: bool
    next_run_at: str | None
    last_run_at: str | None
    last_campaign_id: str | None
    created_by: str
    created_at: str | None
    updated_at: str | None


def _to_response(schedule) -> ScheduleResponse:
    return ScheduleResponse(**schedule_service.schedule_payload(schedule))


@router.get("", response_model=SuccessEnvelope[Page[ScheduleResponse]])
async def list_schedules(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await schedule_service.list_schedules(
        session=db, created_by=principal.user_id, page=page, limit=limit
    )
    items = [_to_response(schedule) for schedule in result["schedules"]]
    return page_response(request=request, items=items, pagination=result["pagination"])


@router.post("", status_code=status.HTTP_201_CREATED, response_model=SuccessEnvelope[ScheduleResponse])
async def create_schedule(
    request: Request,
    payload: ScheduleCreateRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    schedule = await schedule_service.create_schedule(
        session=db,
        name=payload.name,
        description=payload.description,
        scope=payload.scope,
        # Exclude unset fields so the recurrence model applies its own defaults.
        recurrence=payload.model_dump(
            include={"frequency", "day_of_week", "day_of_month", "month_of_year", "time", "timezone"},
            exclude_none=True,
        ),
        review_period_days=payload.review_period_days,
        reminder_days=payload.reminder_days,
        auto_execute=payload.auto_execute,
        enabled=payload.enabled,
        created_by=principal.user_id,
    )
    return success_response(request=request, data=_to_response(schedule))


@router.get("/{schedule_id}", response_model=SuccessEnvelope[ScheduleResponse])
async def get_schedule(
    schedule_id: str,
    request: Request,
    _principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    schedule = await schedule_service.get_schedule(session=db, schedule_id=schedule_id)
    return success_response(request=request, data=_to_response(schedule))


@router.patch("/{schedule_id}", response_model=SuccessEnvelope[ScheduleResponse])
async def update_schedule(
    schedule_id: str,
    request: Request,
    payload: ScheduleUpdateRequest,
    _principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Only fields the client actually sent participate in the update.
    schedule = await schedule_service.update_schedule(
        session=db,
        schedule_id=schedule_id,
        changes=payload.model_dump(exclude_unset=True),
    )
    return success_response(request=request, data=_to_response(schedule))


@router.delete("/{schedule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_schedule(
    schedule_id: str,
    _principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> Response:
    await schedule_service.delete_schedule(session=db, schedule_id=schedule_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{schedule_id}/run", status_code=status.HTTP_201_CREATED, response_model=SuccessEnvelope[CampaignResponse])
async def run_schedule(
    schedule_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    campaign = await schedule_service.run_schedule(
        session=db, schedule_id=schedule_id, triggered_by=principal.user_id
    )
    return success_response(request=request, data=CampaignResponse(**campaign_payload(campaign)))
