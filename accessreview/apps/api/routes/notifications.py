from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, Response, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from accessreview.apps.api.deps import Principal, get_current_principal, get_db
from accessreview.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from accessreview.apps.api.response import Pagination, SuccessEnvelope, success_response
from accessreview.services import notifications as notification_service


router = APIRouter(prefix="/notifications", tags=["notifications"], responses=DEFAULT_ERROR_RESPONSES)


class NotificationResponse(BaseModel):
    id: str
    campaign_id: str | None
    type: str
    title: str
    message: str
    read_at: str | None
    created_at: str | None


class NotificationInbox(BaseModel):
    items: list[NotificationResponse]
    unread_count: int
    pagination: Pagination


class MarkAllReadResponse(BaseModel):
    updated: int


def _to_response(row) -> NotificationResponse:
    return NotificationResponse(
        id=row.id,
        campaign_id=row.campaign_id,
        type=row.type,
        title=row.title,
        message=row.message,
        read_at=row.read_at.isoformat() if row.read_at else None,
        created_at=row.created_at.isoformat() if row.created_at else None,
    )


@router.get("", response_model=SuccessEnvelope[NotificationInbox])
async def list_notifications(
    request: Request,
    unread_only: bool = Query(default=False),
    campaign_id: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await notification_service.list_notifications(
        session=db,
        user_id=principal.user_id,
        unread_only=unread_only,
        campaign_id=campaign_id,
        page=page,
        limit=limit,
    )
    inbox = NotificationInbox(
        items=[_to_response(row) for row in result["notifications"]],
        unread_count=result["unread_count"],
        pagination=Pagination(**result["pagination"]),
    )
    return success_response(request=request, data=inbox)


@router.post("/read-all", response_model=SuccessEnvelope[MarkAllReadResponse])
async def mark_all_read(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    updated = await notification_service.mark_all_notifications_read(session=db, user_id=principal.user_id)
    return success_response(request=request, data=MarkAllReadResponse(updated=updated))


@router.post("/{notification_id}/read", response_model=SuccessEnvelope[NotificationResponse])
async def mark_read(
    notification_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await notification_service.mark_notification_read(
        session=db, notification_id=notification_id, user_id=principal.user_id
    )
    return success_response(request=request, data=_to_response(row))


@router.delete("/{notification_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_notification(
    notification_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> Response:
    await notification_service.delete_notification(
        session=db, notification_id=notification_id, user_id=principal.user_id
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
