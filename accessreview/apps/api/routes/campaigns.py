from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from accessreview.apps.api.deps import Principal, get_current_principal, get_db, get_source
from accessreview.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from accessreview.apps.api.response import Page, SuccessEnvelope, page_response, success_response
from accessreview.providers.permissions.base import PermissionSource
from accessreview.services import campaigns as campaign_service
from accessreview.services.decisions import bulk_retain_all
from accessreview.services.execution import execute_campaign


router = APIRouter(prefix="/campaigns", tags=["campaigns"], responses=DEFAULT_ERROR_RESPONSES)


class CampaignCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str | None = None
    # Validated by the service so malformed scopes surface as INVALID_CONFIG.
    scope: dict[str, Any]
    due_date: datetime | None = None

    model_config = {"extra": "forbid"}


class CampaignUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    scope: dict[str, Any] | None = None
    due_date: datetime | None = None

    model_config = {"extra": "forbid"}


class ExecuteRequest(BaseModel):
    retry_failed: bool = False


class RetainAllRequest(BaseModel):
    justification: str | None = Field(default=None, max_length=2000)


class CampaignResponse(BaseModel):
    id: str
    name: str
    description: str | None
    scope: dict[str, Any]
    status: str
    total_items: int
    reviewed_items: int
    retained_items: int
    removed_items: int
    due_date: str | None
    start_date: str | None
    completed_at: str | None
    created_by: str
    scheduled_review_id: str | None
    created_at: str | None
    updated_at: str | None


class DecisionResponse(BaseModel):
    id: str
    item_id: str
    decision: str
    justification: str | None
    reviewer_id: str
    reviewer_email: str | None
    decided_at: str | None
    execution_status: str
    execution_error: str | None
    executed_at: str | None


class ItemResponse(BaseModel):
    id: str
    campaign_id: str
    resource_type: str
    resource_id: str
    resource_name: str
    resource_path: str | None
    site_url: str | None
    site_id: str | None
    drive_id: str | None
    permission_id: str
    permission_type: str | None
    granted_to: str
    granted_to_id: str | None
    granted_to_type: str | None
    access_level: str
    permission_origin: str
    sharing_link_type: str | None
    expires_at: str | None
    decision: DecisionResponse | None


class CollectionSummary(BaseModel):
    inserted: int
    duplicates: int
    skipped_inherited: int
    sites_walked: int
    sites_failed: list[str]
    resources_failed: int
    cancelled: bool


class CampaignStartResponse(BaseModel):
    campaign: CampaignResponse
    collection: CollectionSummary


class ExecutionSummary(BaseModel):
    success: int
    failed: int
    skipped: int
    completed: bool


class RetainAllResponse(BaseModel):
    success: int
    total: int


def _to_response(campaign) -> CampaignResponse:
    return CampaignResponse(**campaign_service.campaign_payload(campaign))


@router.get("", response_model=SuccessEnvelope[Page[CampaignResponse]])
async def list_campaigns(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Scope listings to the caller's own campaigns.
    result = await campaign_service.list_campaigns(
        session=db,
        created_by=principal.user_id,
        status=status_filter,
        page=page,
        limit=limit,
    )
    items = [_to_response(campaign) for campaign in result["campaigns"]]
    return page_response(request=request, items=items, pagination=result["pagination"])


@router.post("", status_code=status.HTTP_201_CREATED, response_model=SuccessEnvelope[CampaignResponse])
async def create_campaign(
    request: Request,
    payload: CampaignCreateRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    campaign = await campaign_service.create_campaign(
        session=db,
        name=payload.name,
        description=payload.description,
        scope=payload.scope,
        due_date=payload.due_date,
        created_by=principal.user_id,
    )
    return success_response(request=request, data=_to_response(campaign))


@router.get("/{campaign_id}", response_model=SuccessEnvelope[CampaignResponse])
async def get_campaign(
    campaign_id: str,
    request: Request,
    _principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    campaign = await campaign_service.get_campaign(session=db, campaign_id=campaign_id)
    return success_response(request=request, data=_to_response(campaign))


@router.patch("/{campaign_id}", response_model=SuccessEnvelope[CampaignResponse])
async def update_campaign(
    campaign_id: str,
    request: Request,
    payload: CampaignUpdateRequest,
    _principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    campaign = await campaign_service.update_campaign(
        session=db,
        campaign_id=campaign_id,
        name=payload.name,
        description=payload.description,
        due_date=payload.due_date,
        scope=payload.scope,
    )
    return success_response(request=request, data=_to_response(campaign))


@router.delete("/{campaign_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_campaign(
    campaign_id: str,
    _principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> Response:
    await campaign_service.delete_campaign(session=db, campaign_id=campaign_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{campaign_id}/start", response_model=SuccessEnvelope[CampaignStartResponse])
async def start_campaign(
    campaign_id: str,
    request: Request,
    source: PermissionSource = Depends(get_source),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Collection runs inline; a client disconnect leaves the campaign collecting for a later resume.
    result = await campaign_service.start_campaign(session=db, campaign_id=campaign_id, source=source)
    data = CampaignStartResponse(
        campaign=_to_response(result["campaign"]),
        collection=CollectionSummary(**result["collection"]),
    )
    return success_response(request=request, data=data)


@router.post("/{campaign_id}/complete", response_model=SuccessEnvelope[CampaignResponse])
async def complete_campaign(
    campaign_id: str,
    request: Request,
    _principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    campaign = await campaign_service.complete_campaign(session=db, campaign_id=campaign_id)
    return success_response(request=request, data=_to_response(campaign))


@router.post("/{campaign_id}/execute", response_model=SuccessEnvelope[ExecutionSummary])
async def execute(
    campaign_id: str,
    request: Request,
    payload: ExecuteRequest | None = None,
    source: PermissionSource = Depends(get_source),
    db: AsyncSession = Depends(get_db),
) -> dict:
    retry_failed = payload.retry_failed if payload is not None else False
    result = await execute_campaign(
        session=db,
        campaign_id=campaign_id,
        source=source,
        retry_failed=retry_failed,
    )
    return success_response(request=request, data=ExecutionSummary(**result))


@router.post("/{campaign_id}/retain-all", response_model=SuccessEnvelope[RetainAllResponse])
async def retain_all(
    campaign_id: str,
    request: Request,
    payload: RetainAllRequest | None = None,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await bulk_retain_all(
        session=db,
        campaign_id=campaign_id,
        reviewer=principal.as_reviewer(),
        justification=payload.justification if payload is not None else None,
    )
    return success_response(request=request, data=RetainAllResponse(**result))


@router.get("/{campaign_id}/stats", response_model=SuccessEnvelope[dict[str, Any]])
async def campaign_stats(
    campaign_id: str,
    request: Request,
    _principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    stats = await campaign_service.get_campaign_stats(session=db, campaign_id=campaign_id)
    return success_response(request=request, data=stats)


@router.get("/{campaign_id}/report", response_model=SuccessEnvelope[dict[str, Any]])
async def campaign_report(
    campaign_id: str,
    request: Request,
    _principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    report = await campaign_service.get_campaign_report(session=db, campaign_id=campaign_id)
    return success_response(request=request, data=report)


@router.get("/{campaign_id}/items", response_model=SuccessEnvelope[Page[ItemResponse]])
async def list_items(
    campaign_id: str,
    request: Request,
    resource_type: str | None = Query(default=None),
    granted_to_type: str | None = Query(default=None),
    decision: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1),
    _principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await campaign_service.list_items(
        session=db,
        campaign_id=campaign_id,
        resource_type=resource_type,
        granted_to_type=granted_to_type,
        decision=decision,
        page=page,
        limit=limit,
    )
    items = [ItemResponse(**campaign_service.item_payload(item, row_decision)) for item, row_decision in result["items"]]
    return page_response(request=request, items=items, pagination=result["pagination"])
