from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from accessreview.apps.api.deps import Principal, get_current_principal
from accessreview.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from accessreview.apps.api.response import SuccessEnvelope, success_response
from accessreview.services.scheduler import get_scheduler_state, run_scheduler_tick


router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)


class SchedulerRunRequest(BaseModel):
    # Omit the phase to run a full tick.
    phase: Literal["due_schedules", "reminders", "overdue"] | None = None


class SchedulerStatusResponse(BaseModel):
    running: bool
    last_tick_started_at: str | None
    last_tick_finished_at: str | None
    last_result: dict[str, Any] | None


@router.post("/scheduler/run", response_model=SuccessEnvelope[dict[str, Any]])
async def run_scheduler(
    request: Request,
    payload: SchedulerRunRequest | None = None,
    _principal: Principal = Depends(get_current_principal),
) -> dict:
    # Operational trigger for one tick; overlapping runs report skipped_running.
    phases = [payload.phase] if payload is not None and payload.phase else None
    result = await run_scheduler_tick(phases=phases)
    return success_response(request=request, data=result)


@router.get("/scheduler", response_model=SuccessEnvelope[SchedulerStatusResponse])
async def scheduler_status(
    request: Request,
    _principal: Principal = Depends(get_current_principal),
) -> dict:
    state = get_scheduler_state()
    data = SchedulerStatusResponse(
        running=state.lock.locked(),
        last_tick_started_at=state.last_tick_started_at.isoformat() if state.last_tick_started_at else None,
        last_tick_finished_at=state.last_tick_finished_at.isoformat() if state.last_tick_finished_at else None,
        last_result=state.last_result,
    )
    return success_response(request=request, data=data)
