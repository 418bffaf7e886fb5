from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from accessreview.apps.api.deps import Principal, get_current_principal, get_db
from accessreview.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from accessreview.apps.api.response import SuccessEnvelope, success_response
from accessreview.apps.api.routes.campaigns import DecisionResponse, ItemResponse
from accessreview.services import campaigns as campaign_service
from accessreview.services.decisions import DecisionInput, bulk_decisions, submit_decision


router = APIRouter(tags=["decisions"], responses=DEFAULT_ERROR_RESPONSES)


class DecisionRequest(BaseModel):
    decision: Literal["retain", "remove"]
    justification: str | None = Field(default=None, max_length=2000)

    model_config = {"extra": "forbid"}


class BulkDecisionEntry(DecisionRequest):
    item_id: str = Field(min_length=1)


class BulkDecisionRequest(BaseModel):
    decisions: list[BulkDecisionEntry] = Field(min_length=1, max_length=1000)


class BulkDecisionError(BaseModel):
    item_id: str
    error: str


class BulkDecisionResponse(BaseModel):
    success: int
    failed: int
    errors: list[BulkDecisionError]


@router.get("/items/{item_id}", response_model=SuccessEnvelope[ItemResponse])
async def get_item(
    item_id: str,
    request: Request,
    _principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    item, decision = await campaign_service.get_item(session=db, item_id=item_id)
    return success_response(request=request, data=ItemResponse(**campaign_service.item_payload(item, decision)))


@router.put("/items/{item_id}/decision", response_model=SuccessEnvelope[DecisionResponse])
async def put_decision(
    item_id: str,
    request: Request,
    payload: DecisionRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # PUT because resubmitting overwrites the single decision for the item.
    row = await submit_decision(
        session=db,
        item_id=item_id,
        decision=payload.decision,
        justification=payload.justification,
        reviewer=principal.as_reviewer(),
    )
    return success_response(request=request, data=DecisionResponse(**campaign_service.decision_payload(row)))


@router.post("/decisions/bulk", response_model=SuccessEnvelope[BulkDecisionResponse])
async def post_bulk_decisions(
    request: Request,
    payload: BulkDecisionRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await bulk_decisions(
        session=db,
        decisions=[
            DecisionInput(item_id=entry.item_id, decision=entry.decision, justification=entry.justification)
            for entry in payload.decisions
        ],
        reviewer=principal.as_reviewer(),
    )
    return success_response(request=request, data=BulkDecisionResponse(**result))
