from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
import math
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from accessreview.core.errors import InvalidConfigError, InvalidStateError, NotFoundError
from accessreview.core.pagination import page_request, pagination_meta
from accessreview.domain.models import (
    CAMPAIGN_STATUS_COLLECTING,
    CAMPAIGN_STATUS_COMPLETED,
    CAMPAIGN_STATUS_DRAFT,
    CAMPAIGN_STATUS_IN_REVIEW,
    CAMPAIGN_STATUSES,
    DECISION_REMOVE,
    DECISION_RETAIN,
    EXECUTION_COMPLETED,
    EXECUTION_FAILED,
    EXECUTION_PENDING,
    NOTIFICATION_CAMPAIGN_STARTED,
    Campaign,
    Decision,
    Notification,
    ReviewItem,
)
from accessreview.domain.schemas import CampaignScope, parse_scope
from accessreview.providers.permissions.base import PermissionSource
from accessreview.services.collection import collect_campaign
from accessreview.services.notifications import create_notification


logger = logging.getLogger(__name__)

DECISION_FILTER_PENDING = "pending"
ITEM_DECISION_FILTERS = (DECISION_FILTER_PENDING, DECISION_RETAIN, DECISION_REMOVE)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def require_campaign_status(campaign: Campaign, allowed: tuple[str, ...], action: str) -> None:
    # Transitions only move forward; anything outside the allowed set is a state error.
    if campaign.status not in allowed:
        raise InvalidStateError(
            f"cannot {action} campaign {campaign.id} in status {campaign.status}; "
            f"expected one of {', '.join(allowed)}"
        )


def _clean_name(name: str | None) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise InvalidConfigError("campaign name is required")
    return cleaned


def campaign_payload(campaign: Campaign) -> dict[str, Any]:
    return {
        "id": campaign.id,
        "name": campaign.name,
        "description": campaign.description,
        "scope": campaign.scope,
        "status": campaign.status,
        "total_items": campaign.total_items,
        "reviewed_items": campaign.reviewed_items,
        "retained_items": campaign.retained_items,
        "removed_items": campaign.removed_items,
        "due_date": campaign.due_date.isoformat() if campaign.due_date else None,
        "start_date": campaign.start_date.isoformat() if campaign.start_date else None,
        "completed_at": campaign.completed_at.isoformat() if campaign.completed_at else None,
        "created_by": campaign.created_by,
        "scheduled_review_id": campaign.scheduled_review_id,
        "created_at": campaign.created_at.isoformat() if campaign.created_at else None,
        "updated_at": campaign.updated_at.isoformat() if campaign.updated_at else None,
    }


def item_payload(item: ReviewItem, decision: Decision | None) -> dict[str, Any]:
    return {
        "id": item.id,
        "campaign_id": item.campaign_id,
        "resource_type": item.resource_type,
        "resource_id": item.resource_id,
        "resource_name": item.resource_name,
        "resource_path": item.resource_path,
        "site_url": item.site_url,
        "site_id": item.site_id,
        "drive_id": item.drive_id,
        "permission_id": item.permission_id,
        "permission_type": item.permission_type,
        "granted_to": item.granted_to,
        "granted_to_id": item.granted_to_id,
        "granted_to_type": item.granted_to_type,
        "access_level": item.access_level,
        "permission_origin": item.permission_origin,
        "sharing_link_type": item.sharing_link_type,
        "expires_at": item.expires_at.isoformat() if item.expires_at else None,
        "decision": decision_payload(decision) if decision is not None else None,
    }


def decision_payload(decision: Decision) -> dict[str, Any]:
    return {
        "id": decision.id,
        "item_id": decision.item_id,
        "decision": decision.decision,
        "justification": decision.justification,
        "reviewer_id": decision.reviewer_id,
        "reviewer_email": decision.reviewer_email,
        "decided_at": decision.decided_at.isoformat() if decision.decided_at else None,
        "execution_status": decision.execution_status,
        "execution_error": decision.execution_error,
        "executed_at": decision.executed_at.isoformat() if decision.executed_at else None,
    }


async def create_campaign(
    *,
    session: AsyncSession,
    name: str,
    scope: CampaignScope | dict[str, Any],
    created_by: str,
    description: str | None = None,
    due_date: datetime | None = None,
    scheduled_review_id: str | None = None,
    commit: bool = True,
) -> Campaign:
    # Validate the scope before anything is written so bad configs never leave rows behind.
    parsed = parse_scope(scope)
    campaign = Campaign(
        name=_clean_name(name),
        description=description,
        scope=parsed.model_dump(),
        status=CAMPAIGN_STATUS_DRAFT,
        due_date=due_date,
        created_by=created_by,
        scheduled_review_id=scheduled_review_id,
    )
    session.add(campaign)
    if commit:
        await session.commit()
    else:
        await session.flush()
    logger.info("campaign_created", extra={"campaign_id": campaign.id, "created_by": created_by})
    return campaign


async def get_campaign(*, session: AsyncSession, campaign_id: str) -> Campaign:
    campaign = await session.get(Campaign, campaign_id)
    if campaign is None:
        raise NotFoundError("campaign", campaign_id)
    return campaign


async def list_campaigns(
    *,
    session: AsyncSession,
    created_by: str | None = None,
    status: str | None = None,
    page: int | None = None,
    limit: int | None = None,
) -> dict[str, Any]:
    request = page_request(page, limit)
    filters = []
    if created_by:
        filters.append(Campaign.created_by == created_by)
    if status:
        if status not in CAMPAIGN_STATUSES:
            raise InvalidConfigError(f"unknown campaign status: {status}")
        filters.append(Campaign.status == status)
    rows = (
        await session.execute(
            select(Campaign)
            .where(*filters)
            .order_by(Campaign.created_at.desc(), Campaign.id)
            .offset(request.offset)
            .limit(request.limit)
        )
    ).scalars().all()
    total = (await session.execute(select(func.count(Campaign.id)).where(*filters))).scalar_one()
    return {"campaigns": list(rows), "pagination": pagination_meta(total=int(total), request=request)}


async def update_campaign(
    *,
    session: AsyncSession,
    campaign_id: str,
    name: str | None = None,
    description: str | None = None,
    due_date: datetime | None = None,
    scope: CampaignScope | dict[str, Any] | None = None,
) -> Campaign:
    campaign = await get_campaign(session=session, campaign_id=campaign_id)
    parsed_scope = parse_scope(scope) if scope is not None else None
    if parsed_scope is not None and campaign.status != CAMPAIGN_STATUS_DRAFT:
        # Items were collected against the old scope; changing it would orphan them.
        raise InvalidStateError(f"scope of campaign {campaign_id} is frozen once it leaves draft")
    if name is not None:
        campaign.name = _clean_name(name)
    if description is not None:
        campaign.description = description
    if due_date is not None:
        campaign.due_date = due_date
    if parsed_scope is not None:
        campaign.scope = parsed_scope.model_dump()
    await session.commit()
    return campaign


async def delete_campaign(*, session: AsyncSession, campaign_id: str) -> None:
    campaign = await get_campaign(session=session, campaign_id=campaign_id)
    item_ids = select(ReviewItem.id).where(ReviewItem.campaign_id == campaign_id)
    # Delete children explicitly; SQLite does not enforce ON DELETE CASCADE by default.
    await session.execute(delete(Decision).where(Decision.item_id.in_(item_ids)))
    await session.execute(delete(ReviewItem).where(ReviewItem.campaign_id == campaign_id))
    await session.execute(delete(Notification).where(Notification.campaign_id == campaign_id))
    await session.delete(campaign)
    await session.commit()
    logger.info("campaign_deleted", extra={"campaign_id": campaign_id})


async def count_items(session: AsyncSession, campaign_id: str) -> int:
    result = await session.execute(
        select(func.count(ReviewItem.id)).where(ReviewItem.campaign_id == campaign_id)
    )
    return int(result.scalar_one())


async def start_campaign(
    *,
    session: AsyncSession,
    campaign_id: str,
    source: PermissionSource,
    cancel_event: asyncio.Event | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Collect review items for a campaign and open it for review.

    Runs from ``draft``, or from ``collecting`` to resume an interrupted run;
    items collected earlier are kept and never duplicated. When cancelled the
    campaign stays ``collecting``.
    """
    campaign = await get_campaign(session=session, campaign_id=campaign_id)
    require_campaign_status(campaign, (CAMPAIGN_STATUS_DRAFT, CAMPAIGN_STATUS_COLLECTING), "start")
    scope = parse_scope(campaign.scope)
    created_by = campaign.created_by
    campaign_name = campaign.name

    campaign.status = CAMPAIGN_STATUS_COLLECTING
    await session.commit()
    logger.info("campaign_collection_started", extra={"campaign_id": campaign_id})

    collection = await collect_campaign(
        session=session,
        campaign_id=campaign_id,
        scope=scope,
        source=source,
        cancel_event=cancel_event,
    )
    campaign = await get_campaign(session=session, campaign_id=campaign_id)
    if collection["cancelled"]:
        logger.info("campaign_collection_cancelled", extra={"campaign_id": campaign_id})
        return {"campaign": campaign, "collection": collection}

    timestamp = now or _utc_now()
    campaign.total_items = await count_items(session, campaign_id)
    campaign.start_date = timestamp
    campaign.status = CAMPAIGN_STATUS_IN_REVIEW
    await session.commit()
    await create_notification(
        session=session,
        user_id=created_by,
        campaign_id=campaign_id,
        notification_type=NOTIFICATION_CAMPAIGN_STARTED,
        title="Access review started",
        message=f"Campaign '{campaign_name}' collected {campaign.total_items} items and is ready for review.",
        created_at=timestamp,
    )
    logger.info(
        "campaign_in_review",
        extra={"campaign_id": campaign_id, "total_items": campaign.total_items},
    )
    return {"campaign": campaign, "collection": collection}


async def mark_campaign_completed(*, session: AsyncSession, campaign: Campaign, now: datetime) -> Campaign:
    # Shared terminal transition used by explicit completion, execution and overdue handling.
    require_campaign_status(campaign, (CAMPAIGN_STATUS_IN_REVIEW,), "complete")
    campaign.status = CAMPAIGN_STATUS_COMPLETED
    campaign.completed_at = now
    await session.commit()
    logger.info("campaign_completed", extra={"campaign_id": campaign.id})
    return campaign


async def complete_campaign(
    *,
    session: AsyncSession,
    campaign_id: str,
    now: datetime | None = None,
) -> Campaign:
    campaign = await get_campaign(session=session, campaign_id=campaign_id)
    if campaign.status == CAMPAIGN_STATUS_COMPLETED:
        return campaign
    return await mark_campaign_completed(session=session, campaign=campaign, now=now or _utc_now())


def _progress(reviewed: int, total: int) -> int:
    # Round half up so 2.5% reads as 3%, not banker's rounding.
    if total <= 0:
        return 0
    return int(math.floor(reviewed * 100 / total + 0.5))


async def _breakdown(session: AsyncSession, campaign_id: str, column: Any) -> dict[str, dict[str, int]]:
    rows = await session.execute(
        select(
            column,
            func.count(ReviewItem.id),
            func.count(Decision.id),
        )
        .select_from(ReviewItem)
        .outerjoin(Decision, Decision.item_id == ReviewItem.id)
        .where(ReviewItem.campaign_id == campaign_id)
        .group_by(column)
    )
    breakdown: dict[str, dict[str, int]] = {}
    for key, total, reviewed in rows.all():
        label = key or "unknown"
        bucket = breakdown.setdefault(label, {"total": 0, "reviewed": 0})
        bucket["total"] += int(total)
        bucket["reviewed"] += int(reviewed)
    return breakdown


async def _decision_counts(session: AsyncSession, campaign_id: str) -> dict[tuple[str, str], int]:
    rows = await session.execute(
        select(Decision.decision, Decision.execution_status, func.count(Decision.id))
        .join(ReviewItem, ReviewItem.id == Decision.item_id)
        .where(ReviewItem.campaign_id == campaign_id)
        .group_by(Decision.decision, Decision.execution_status)
    )
    return {(decision, status): int(total) for decision, status, total in rows.all()}


async def _summary(session: AsyncSession, campaign_id: str) -> dict[str, int]:
    total = await count_items(session, campaign_id)
    counts = await _decision_counts(session, campaign_id)
    retain = sum(value for (decision, _), value in counts.items() if decision == DECISION_RETAIN)
    remove = sum(value for (decision, _), value in counts.items() if decision == DECISION_REMOVE)
    reviewed = retain + remove
    return {
        "total_items": total,
        "items_with_decisions": reviewed,
        "items_needing_review": max(total - reviewed, 0),
        "review_progress": _progress(reviewed, total),
        "retain_decisions": retain,
        "remove_decisions": remove,
        "executed_removals": counts.get((DECISION_REMOVE, EXECUTION_COMPLETED), 0),
        "failed_removals": counts.get((DECISION_REMOVE, EXECUTION_FAILED), 0),
        "pending_removals": counts.get((DECISION_REMOVE, EXECUTION_PENDING), 0),
    }


async def get_campaign_stats(*, session: AsyncSession, campaign_id: str) -> dict[str, Any]:
    await get_campaign(session=session, campaign_id=campaign_id)
    return {
        "summary": await _summary(session, campaign_id),
        "by_resource_type": await _breakdown(session, campaign_id, ReviewItem.resource_type),
        "by_grantee_type": await _breakdown(session, campaign_id, ReviewItem.granted_to_type),
    }


async def _items_with_decisions(session: AsyncSession, campaign_id: str) -> list[tuple[ReviewItem, Decision | None]]:
    rows = await session.execute(
        select(ReviewItem, Decision)
        .outerjoin(Decision, Decision.item_id == ReviewItem.id)
        .where(ReviewItem.campaign_id == campaign_id)
        .order_by(ReviewItem.resource_path, ReviewItem.id)
    )
    return [(item, decision) for item, decision in rows.all()]


async def get_campaign_report(*, session: AsyncSession, campaign_id: str) -> dict[str, Any]:
    """Assemble the full review report: header, summary, breakdowns and every item."""
    campaign = await get_campaign(session=session, campaign_id=campaign_id)
    summary = await _summary(session, campaign_id)
    rows = await _items_with_decisions(session, campaign_id)

    by_reviewer: dict[str, dict[str, int]] = {}
    for _, decision in rows:
        if decision is None:
            continue
        reviewer = decision.reviewer_email or decision.reviewer_id
        bucket = by_reviewer.setdefault(reviewer, {DECISION_RETAIN: 0, DECISION_REMOVE: 0})
        bucket[decision.decision] = bucket.get(decision.decision, 0) + 1

    return {
        "campaign": campaign_payload(campaign),
        "summary": {
            "total_items": summary["total_items"],
            "retained": summary["retain_decisions"],
            "removed": summary["remove_decisions"],
            "pending": summary["items_needing_review"],
            "executed": summary["executed_removals"],
            "failed": summary["failed_removals"],
            "review_progress": summary["review_progress"],
        },
        "by_resource_type": await _breakdown(session, campaign_id, ReviewItem.resource_type),
        "by_grantee_type": await _breakdown(session, campaign_id, ReviewItem.granted_to_type),
        "by_reviewer": by_reviewer,
        "items": [item_payload(item, decision) for item, decision in rows],
        "generated_at": _utc_now().isoformat(),
    }


async def list_items(
    *,
    session: AsyncSession,
    campaign_id: str,
    resource_type: str | None = None,
    granted_to_type: str | None = None,
    decision: str | None = None,
    page: int | None = None,
    limit: int | None = None,
) -> dict[str, Any]:
    await get_campaign(session=session, campaign_id=campaign_id)
    request = page_request(page, limit)
    filters = [ReviewItem.campaign_id == campaign_id]
    if resource_type:
        filters.append(ReviewItem.resource_type == resource_type)
    if granted_to_type:
        filters.append(ReviewItem.granted_to_type == granted_to_type)
    if decision:
        if decision not in ITEM_DECISION_FILTERS:
            raise InvalidConfigError(f"decision filter must be one of {', '.join(ITEM_DECISION_FILTERS)}")
        if decision == DECISION_FILTER_PENDING:
            filters.append(Decision.id.is_(None))
        else:
            filters.append(Decision.decision == decision)

    base = select(ReviewItem, Decision).outerjoin(Decision, Decision.item_id == ReviewItem.id).where(*filters)
    rows = (
        await session.execute(
            base.order_by(ReviewItem.resource_path, ReviewItem.id).offset(request.offset).limit(request.limit)
        )
    ).all()
    total = (
        await session.execute(
            select(func.count(ReviewItem.id))
            .select_from(ReviewItem)
            .outerjoin(Decision, Decision.item_id == ReviewItem.id)
            .where(*filters)
        )
    ).scalar_one()
    return {
        "items": [(item, row_decision) for item, row_decision in rows],
        "pagination": pagination_meta(total=int(total), request=request),
    }


async def get_item(*, session: AsyncSession, item_id: str) -> tuple[ReviewItem, Decision | None]:
    item = await session.get(ReviewItem, item_id)
    if item is None:
        raise NotFoundError("review item", item_id)
    decision = (
        await session.execute(select(Decision).where(Decision.item_id == item_id))
    ).scalar_one_or_none()
    return item, decision
