from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from accessreview.core.errors import InvalidConfigError, NotFoundError
from accessreview.core.pagination import page_request, pagination_meta
from accessreview.domain.models import NOTIFICATION_TYPES, Notification


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def create_notification(
    *,
    session: AsyncSession,
    user_id: str,
    notification_type: str,
    title: str,
    message: str,
    campaign_id: str | None = None,
    created_at: datetime | None = None,
    commit: bool = True,
) -> Notification:
    # Persisted notifications are the sink; delivery channels read from this table.
    if notification_type not in NOTIFICATION_TYPES:
        raise InvalidConfigError(f"unknown notification type: {notification_type}")
    row = Notification(
        user_id=user_id,
        campaign_id=campaign_id,
        type=notification_type,
        title=title,
        message=message,
        created_at=created_at or _utc_now(),
    )
    session.add(row)
    if commit:
        await session.commit()
    else:
        await session.flush()
    logger.info(
        "notification_emitted",
        extra={"notification_type": notification_type, "campaign_id": campaign_id, "user_id": user_id},
    )
    return row


async def has_notification(
    *,
    session: AsyncSession,
    campaign_id: str,
    notification_type: str,
    since: datetime | None = None,
) -> bool:
    # Existence check backing reminder (per-day) and overdue (once-ever) dedup.
    query = select(Notification.id).where(
        Notification.campaign_id == campaign_id,
        Notification.type == notification_type,
    )
    if since is not None:
        query = query.where(Notification.created_at >= since)
    result = await session.execute(query.limit(1))
    return result.scalar_one_or_none() is not None


async def count_notifications(*, session: AsyncSession, campaign_id: str, notification_type: str) -> int:
    result = await session.execute(
        select(func.count(Notification.id)).where(
            Notification.campaign_id == campaign_id,
            Notification.type == notification_type,
        )
    )
    return int(result.scalar_one())


async def list_notifications(
    *,
    session: AsyncSession,
    user_id: str,
    unread_only: bool = False,
    campaign_id: str | None = None,
    page: int | None = None,
    limit: int | None = None,
) -> dict[str, Any]:
    request = page_request(page, limit)
    filters = [Notification.user_id == user_id]
    if unread_only:
        filters.append(Notification.read_at.is_(None))
    if campaign_id:
        filters.append(Notification.campaign_id == campaign_id)
    rows = (
        await session.execute(
            select(Notification)
            .where(*filters)
            .order_by(Notification.created_at.desc(), Notification.id)
            .offset(request.offset)
            .limit(request.limit)
        )
    ).scalars().all()
    total = (await session.execute(select(func.count(Notification.id)).where(*filters))).scalar_one()
    unread = (
        await session.execute(
            select(func.count(Notification.id)).where(
                Notification.user_id == user_id,
                Notification.read_at.is_(None),
            )
        )
    ).scalar_one()
    return {
        "notifications": list(rows),
        "unread_count": int(unread),
        "pagination": pagination_meta(total=int(total), request=request),
    }


async def _get_owned(session: AsyncSession, notification_id: str, user_id: str) -> Notification:
    row = await session.get(Notification, notification_id)
    # Hide other users' notifications behind the same not-found error.
    if row is None or row.user_id != user_id:
        raise NotFoundError("notification", notification_id)
    return row


async def mark_notification_read(*, session: AsyncSession, notification_id: str, user_id: str) -> Notification:
    row = await _get_owned(session, notification_id, user_id)
    if row.read_at is None:
        row.read_at = _utc_now()
        await session.commit()
    return row


async def mark_all_notifications_read(*, session: AsyncSession, user_id: str) -> int:
    result = await session.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.read_at.is_(None))
        .values(read_at=_utc_now())
    )
    await session.commit()
    return int(result.rowcount or 0)


async def delete_notification(*, session: AsyncSession, notification_id: str, user_id: str) -> None:
    row = await _get_owned(session, notification_id, user_id)
    await session.delete(row)
    await session.commit()
