"""Decision ledger: idempotent reviewer verdicts plus derived campaign counters.

Campaign counters are never incremented. Every mutation is followed by a full
recount of decisions joined to the campaign, so concurrent submissions converge
on the correct totals without row locks.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Iterable

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from accessreview.core.config import get_settings
from accessreview.core.errors import AccessReviewError, InvalidConfigError, InvalidStateError, NotFoundError
from accessreview.domain.models import (
    CAMPAIGN_STATUS_IN_REVIEW,
    DECISION_REMOVE,
    DECISION_RETAIN,
    DECISIONS,
    EXECUTION_COMPLETED,
    EXECUTION_PENDING,
    Campaign,
    Decision,
    ReviewItem,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Reviewer:
    id: str
    email: str | None = None


@dataclass(frozen=True, slots=True)
class DecisionInput:
    item_id: str
    decision: str
    justification: str | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def system_reviewer() -> Reviewer:
    settings = get_settings()
    return Reviewer(id=settings.system_reviewer_id, email=settings.system_reviewer_email)


def _validate_decision(value: str) -> str:
    normalized = (value or "").strip().lower()
    if normalized not in DECISIONS:
        raise InvalidConfigError(f"decision must be one of {', '.join(DECISIONS)}, got {value!r}")
    return normalized


async def _load_reviewable_item(session: AsyncSession, item_id: str) -> tuple[str, str]:
    # Return plain ids; ORM rows expire on rollback and must not be touched afterwards.
    item = await session.get(ReviewItem, item_id)
    if item is None:
        raise NotFoundError("review item", item_id)
    campaign = await session.get(Campaign, item.campaign_id)
    if campaign is None:
        raise NotFoundError("campaign", item.campaign_id)
    if campaign.status != CAMPAIGN_STATUS_IN_REVIEW:
        raise InvalidStateError(f"campaign {campaign.id} is {campaign.status}; decisions require in_review")
    return item.id, item.campaign_id


async def _get_decision(session: AsyncSession, item_id: str) -> Decision | None:
    result = await session.execute(select(Decision).where(Decision.item_id == item_id))
    return result.scalar_one_or_none()


def _apply(row: Decision, *, decision: str, justification: str | None, reviewer: Reviewer, now: datetime) -> None:
    if row.decision != decision:
        # An executed removal cannot be undone by flipping the verdict.
        if row.decision == DECISION_REMOVE and row.execution_status == EXECUTION_COMPLETED:
            raise InvalidStateError(f"removal for item {row.item_id} was already executed")
        row.execution_status = EXECUTION_PENDING
        row.execution_error = None
        row.executed_at = None
    row.decision = decision
    row.justification = justification
    row.reviewer_id = reviewer.id
    row.reviewer_email = reviewer.email
    row.decided_at = now


async def _upsert_decision(
    session: AsyncSession,
    *,
    item_id: str,
    decision: str,
    justification: str | None,
    reviewer: Reviewer,
    now: datetime,
) -> Decision:
    existing = await _get_decision(session, item_id)
    if existing is None:
        row = Decision(
            item_id=item_id,
            decision=decision,
            justification=justification,
            reviewer_id=reviewer.id,
            reviewer_email=reviewer.email,
            decided_at=now,
            execution_status=EXECUTION_PENDING,
        )
        session.add(row)
        try:
            await session.commit()
            return row
        except IntegrityError:
            # A concurrent submission created the decision first; fall through and overwrite it.
            await session.rollback()
            existing = await _get_decision(session, item_id)
            if existing is None:
                raise
    _apply(existing, decision=decision, justification=justification, reviewer=reviewer, now=now)
    await session.commit()
    return existing


async def count_decisions(session: AsyncSession, campaign_id: str) -> dict[str, int]:
    rows = await session.execute(
        select(Decision.decision, func.count(Decision.id))
        .join(ReviewItem, ReviewItem.id == Decision.item_id)
        .where(ReviewItem.campaign_id == campaign_id)
        .group_by(Decision.decision)
    )
    counts = {name: int(total) for name, total in rows.all()}
    return {DECISION_RETAIN: counts.get(DECISION_RETAIN, 0), DECISION_REMOVE: counts.get(DECISION_REMOVE, 0)}


async def recompute_campaign_counters(*, session: AsyncSession, campaign_id: str) -> Campaign:
    """Recount decisions for a campaign and persist the derived counters."""
    campaign = await session.get(Campaign, campaign_id)
    if campaign is None:
        raise NotFoundError("campaign", campaign_id)
    counts = await count_decisions(session, campaign_id)
    campaign.retained_items = counts[DECISION_RETAIN]
    campaign.removed_items = counts[DECISION_REMOVE]
    campaign.reviewed_items = counts[DECISION_RETAIN] + counts[DECISION_REMOVE]
    await session.commit()
    return campaign


async def submit_decision(
    *,
    session: AsyncSession,
    item_id: str,
    decision: str,
    reviewer: Reviewer,
    justification: str | None = None,
    now: datetime | None = None,
) -> Decision:
    normalized = _validate_decision(decision)
    item_id, campaign_id = await _load_reviewable_item(session, item_id)
    row = await _upsert_decision(
        session,
        item_id=item_id,
        decision=normalized,
        justification=justification or None,
        reviewer=reviewer,
        now=now or _utc_now(),
    )
    await recompute_campaign_counters(session=session, campaign_id=campaign_id)
    logger.info(
        "decision_submitted",
        extra={"item_id": item_id, "campaign_id": campaign_id, "decision": normalized},
    )
    return row


def _coerce_inputs(decisions: Iterable[DecisionInput | dict[str, Any]]) -> list[DecisionInput]:
    coerced: list[DecisionInput] = []
    for entry in decisions:
        if isinstance(entry, DecisionInput):
            coerced.append(entry)
        else:
            coerced.append(
                DecisionInput(
                    item_id=str(entry.get("item_id") or ""),
                    decision=str(entry.get("decision") or ""),
                    justification=entry.get("justification"),
                )
            )
    return coerced


async def bulk_decisions(
    *,
    session: AsyncSession,
    decisions: Iterable[DecisionInput | dict[str, Any]],
    reviewer: Reviewer,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Upsert many decisions; one bad item never aborts the batch.

    Counters are recomputed once per affected campaign after the batch.
    """
    timestamp = now or _utc_now()
    success = 0
    errors: list[dict[str, str]] = []
    campaign_ids: list[str] = []
    for entry in _coerce_inputs(decisions):
        try:
            normalized = _validate_decision(entry.decision)
            item_id, campaign_id = await _load_reviewable_item(session, entry.item_id)
            await _upsert_decision(
                session,
                item_id=item_id,
                decision=normalized,
                justification=entry.justification or None,
                reviewer=reviewer,
                now=timestamp,
            )
        except (AccessReviewError, IntegrityError) as exc:
            await session.rollback()
            errors.append({"item_id": entry.item_id, "error": str(exc)})
            continue
        success += 1
        if campaign_id not in campaign_ids:
            campaign_ids.append(campaign_id)

    for campaign_id in campaign_ids:
        await recompute_campaign_counters(session=session, campaign_id=campaign_id)
    if errors:
        logger.warning("bulk_decisions_partial_failure", extra={"failed": len(errors), "succeeded": success})
    return {"success": success, "failed": len(errors), "errors": errors}


async def list_undecided_item_ids(session: AsyncSession, campaign_id: str) -> list[str]:
    result = await session.execute(
        select(ReviewItem.id)
        .outerjoin(Decision, Decision.item_id == ReviewItem.id)
        .where(ReviewItem.campaign_id == campaign_id, Decision.id.is_(None))
        .order_by(ReviewItem.created_at, ReviewItem.id)
    )
    return list(result.scalars().all())


async def bulk_retain_all(
    *,
    session: AsyncSession,
    campaign_id: str,
    reviewer: Reviewer,
    justification: str | None = None,
    now: datetime | None = None,
) -> dict[str, int]:
    """Retain every item that has no decision yet; explicit decisions are never overwritten."""
    campaign = await session.get(Campaign, campaign_id)
    if campaign is None:
        raise NotFoundError("campaign", campaign_id)
    if campaign.status != CAMPAIGN_STATUS_IN_REVIEW:
        raise InvalidStateError(f"campaign {campaign_id} is {campaign.status}; decisions require in_review")
    timestamp = now or _utc_now()
    item_ids = await list_undecided_item_ids(session, campaign_id)

    def _row(item_id: str) -> Decision:
        return Decision(
            item_id=item_id,
            decision=DECISION_RETAIN,
            justification=justification,
            reviewer_id=reviewer.id,
            reviewer_email=reviewer.email,
            decided_at=timestamp,
            execution_status=EXECUTION_PENDING,
        )

    success = 0
    session.add_all([_row(item_id) for item_id in item_ids])
    try:
        await session.commit()
        success = len(item_ids)
    except IntegrityError:
        # A reviewer decided some items meanwhile; insert the rest one by one and keep theirs.
        await session.rollback()
        for item_id in item_ids:
            session.add(_row(item_id))
            try:
                await session.commit()
                success += 1
            except IntegrityError:
                await session.rollback()

    await recompute_campaign_counters(session=session, campaign_id=campaign_id)
    logger.info("bulk_retain_all_applied", extra={"campaign_id": campaign_id, "retained": success})
    return {"success": success, "total": len(item_ids)}
