from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from accessreview.core.config import get_settings
from accessreview.core.errors import AccessReviewError
from accessreview.domain.models import (
    CAMPAIGN_STATUS_COMPLETED,
    CAMPAIGN_STATUS_IN_REVIEW,
    DECISION_REMOVE,
    EXECUTION_COMPLETED,
    EXECUTION_FAILED,
    EXECUTION_PENDING,
    NOTIFICATION_EXECUTION_COMPLETE,
    Decision,
    ReviewItem,
)
from accessreview.providers.permissions.base import PermissionSource, ResourceRef
from accessreview.services.campaigns import get_campaign, mark_campaign_completed, require_campaign_status
from accessreview.services.decisions import list_undecided_item_ids
from accessreview.services.notifications import create_notification
from accessreview.services.resilience import call_source


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class RemovalTarget:
    decision_id: str
    item_id: str
    permission_id: str
    ref: ResourceRef


@dataclass(frozen=True, slots=True)
class RemovalOutcome:
    target: RemovalTarget
    status: str
    error: str | None = None


async def _load_targets(session: AsyncSession, campaign_id: str, *, retry_failed: bool) -> list[RemovalTarget]:
    statuses = [EXECUTION_PENDING, EXECUTION_FAILED] if retry_failed else [EXECUTION_PENDING]
    rows = await session.execute(
        select(Decision, ReviewItem)
        .join(ReviewItem, ReviewItem.id == Decision.item_id)
        .where(
            ReviewItem.campaign_id == campaign_id,
            Decision.decision == DECISION_REMOVE,
            Decision.execution_status.in_(statuses),
        )
        .order_by(ReviewItem.created_at, ReviewItem.id)
    )
    return [
        RemovalTarget(
            decision_id=decision.id,
            item_id=item.id,
            permission_id=item.permission_id,
            ref=ResourceRef(
                resource_type=item.resource_type,
                resource_id=item.resource_id,
                site_id=item.site_id,
                drive_id=item.drive_id,
            ),
        )
        for decision, item in rows.all()
    ]


async def _record_outcome(session: AsyncSession, outcome: RemovalOutcome, now: datetime) -> None:
    row = await session.get(Decision, outcome.target.decision_id)
    if row is None or row.decision != DECISION_REMOVE:
        # The decision was deleted or flipped to retain while the call was in flight.
        return
    if outcome.status == EXECUTION_COMPLETED:
        row.execution_status = EXECUTION_COMPLETED
        row.executed_at = now
        row.execution_error = None
    else:
        row.execution_status = EXECUTION_FAILED
        row.execution_error = outcome.error
    await session.commit()


async def execute_campaign(
    *,
    session: AsyncSession,
    campaign_id: str,
    source: PermissionSource,
    retry_failed: bool = False,
    cancel_event: asyncio.Event | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Apply approved removals against the permission source.

    Every ``remove`` decision still pending (and, with ``retry_failed``, every
    failed one) is attempted once. Failures are recorded on the decision and
    never stop the pass. Once nothing is left undecided an in-review campaign
    is completed.
    """
    campaign = await get_campaign(session=session, campaign_id=campaign_id)
    require_campaign_status(campaign, (CAMPAIGN_STATUS_IN_REVIEW, CAMPAIGN_STATUS_COMPLETED), "execute")
    created_by = campaign.created_by
    campaign_name = campaign.name
    targets = await _load_targets(session, campaign_id, retry_failed=retry_failed)
    settings = get_settings()
    semaphore = asyncio.Semaphore(max(1, int(settings.execution_max_concurrency)))

    async def _remove(target: RemovalTarget) -> RemovalOutcome | None:
        async with semaphore:
            if cancel_event is not None and cancel_event.is_set():
                return None
            try:
                await call_source(
                    source,
                    lambda: source.delete_permission(target.ref, target.permission_id),
                    operation=f"delete_permission {target.permission_id}",
                )
            except AccessReviewError as exc:
                logger.warning(
                    "removal_failed",
                    extra={"campaign_id": campaign_id, "item_id": target.item_id, "error": str(exc)},
                )
                return RemovalOutcome(target=target, status=EXECUTION_FAILED, error=str(exc))
            return RemovalOutcome(target=target, status=EXECUTION_COMPLETED)

    success = 0
    failed = 0
    skipped = 0
    tasks = [asyncio.ensure_future(_remove(target)) for target in targets]
    try:
        # Removal calls overlap; write-backs happen one at a time on this session.
        for future in asyncio.as_completed(tasks):
            outcome = await future
            if outcome is None:
                skipped += 1
                continue
            await _record_outcome(session, outcome, now or _utc_now())
            if outcome.status == EXECUTION_COMPLETED:
                success += 1
            else:
                failed += 1
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()

    cancelled = cancel_event is not None and cancel_event.is_set()
    completed = False
    campaign = await get_campaign(session=session, campaign_id=campaign_id)
    if not cancelled and campaign.status == CAMPAIGN_STATUS_IN_REVIEW:
        undecided = await list_undecided_item_ids(session, campaign_id)
        if not undecided:
            timestamp = now or _utc_now()
            await mark_campaign_completed(session=session, campaign=campaign, now=timestamp)
            await create_notification(
                session=session,
                user_id=created_by,
                campaign_id=campaign_id,
                notification_type=NOTIFICATION_EXECUTION_COMPLETE,
                title="Access review completed",
                message=f"Campaign '{campaign_name}' finished: {success} removed, {failed} failed.",
                created_at=timestamp,
            )
            completed = True

    logger.info(
        "campaign_execution_finished",
        extra={"campaign_id": campaign_id, "success": success, "failed": failed, "skipped": skipped},
    )
    return {"success": success, "failed": failed, "skipped": skipped, "completed": completed}
