from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import select

from accessreview.core.errors import InvalidStateError
from accessreview.domain.models import (
    CAMPAIGN_STATUS_COMPLETED,
    CAMPAIGN_STATUS_IN_REVIEW,
    EXECUTION_COMPLETED,
    EXECUTION_FAILED,
    EXECUTION_PENDING,
    NOTIFICATION_EXECUTION_COMPLETE,
    Campaign,
    Decision,
)
from accessreview.persistence.db import SessionLocal
from accessreview.providers.permissions.fake import FakePermissionSource
from accessreview.services.campaigns import create_campaign
from accessreview.services.decisions import Reviewer, bulk_decisions, submit_decision
from accessreview.services.execution import execute_campaign
from accessreview.services.notifications import count_notifications
from accessreview.tests.utils.campaigns import create_review_campaign
from accessreview.tests.utils.permissions import FINANCE_SITE_URL


REVIEWER = Reviewer(id="reviewer-1")


async def _statuses(session, item_ids: list[str]) -> dict[str, str]:
    rows = await session.execute(select(Decision.item_id, Decision.execution_status).where(Decision.item_id.in_(item_ids)))
    return dict(rows.all())


@pytest.mark.asyncio
async def test_execute_records_partial_failures_and_keeps_going() -> None:
    source = FakePermissionSource()
    source.failing_deletes.add("perm-01")

    async with SessionLocal() as session:
        campaign, item_ids = await create_review_campaign(session, item_count=4)
        campaign_id = campaign.id
        await bulk_decisions(
            session=session,
            decisions=[
                {"item_id": item_ids[0], "decision": "remove"},
                {"item_id": item_ids[1], "decision": "remove"},
                {"item_id": item_ids[2], "decision": "remove"},
                {"item_id": item_ids[3], "decision": "retain"},
            ],
            reviewer=REVIEWER,
        )

        result = await execute_campaign(session=session, campaign_id=campaign_id, source=source)
        statuses = await _statuses(session, item_ids)
        failed_row = (
            await session.execute(select(Decision).where(Decision.item_id == item_ids[1]))
        ).scalar_one()
        refreshed = await session.get(Campaign, campaign_id)
        completions = await count_notifications(
            session=session, campaign_id=campaign_id, notification_type=NOTIFICATION_EXECUTION_COMPLETE
        )

    assert result == {"success": 2, "failed": 1, "skipped": 0, "completed": True}
    assert statuses == {
        item_ids[0]: EXECUTION_COMPLETED,
        item_ids[1]: EXECUTION_FAILED,
        item_ids[2]: EXECUTION_COMPLETED,
        item_ids[3]: EXECUTION_PENDING,
    }
    assert "perm-01" in (failed_row.execution_error or "")
    assert sorted(permission_id for _, permission_id in source.deleted) == ["perm-00", "perm-02"]
    assert refreshed.status == CAMPAIGN_STATUS_COMPLETED
    assert completions == 1


@pytest.mark.asyncio
async def test_execute_retries_failed_removals_only_when_asked() -> None:
    source = FakePermissionSource()
    source.failing_deletes.add("perm-00")

    async with SessionLocal() as session:
        campaign, item_ids = await create_review_campaign(session, item_count=1)
        campaign_id = campaign.id
        await submit_decision(session=session, item_id=item_ids[0], decision="remove", reviewer=REVIEWER)

        first = await execute_campaign(session=session, campaign_id=campaign_id, source=source)
        source.failing_deletes.clear()
        # Completed campaigns still accept execution passes for leftover removals.
        plain = await execute_campaign(session=session, campaign_id=campaign_id, source=source)
        retried = await execute_campaign(session=session, campaign_id=campaign_id, source=source, retry_failed=True)
        statuses = await _statuses(session, item_ids)

    assert first["failed"] == 1
    assert first["completed"] is True
    assert plain == {"success": 0, "failed": 0, "skipped": 0, "completed": False}
    assert retried["success"] == 1
    assert statuses[item_ids[0]] == EXECUTION_COMPLETED


@pytest.mark.asyncio
async def test_execute_leaves_campaign_open_while_items_are_undecided() -> None:
    source = FakePermissionSource()
    async with SessionLocal() as session:
        campaign, item_ids = await create_review_campaign(session, item_count=3)
        campaign_id = campaign.id
        await submit_decision(session=session, item_id=item_ids[0], decision="remove", reviewer=REVIEWER)

        result = await execute_campaign(session=session, campaign_id=campaign_id, source=source)
        refreshed = await session.get(Campaign, campaign_id)

    assert result["success"] == 1
    assert result["completed"] is False
    assert refreshed.status == CAMPAIGN_STATUS_IN_REVIEW


@pytest.mark.asyncio
async def test_cancelled_execution_skips_removals_and_does_not_complete() -> None:
    source = FakePermissionSource()
    cancel_event = asyncio.Event()
    cancel_event.set()
    async with SessionLocal() as session:
        campaign, item_ids = await create_review_campaign(session, item_count=2)
        campaign_id = campaign.id
        for item_id in item_ids:
            await submit_decision(session=session, item_id=item_id, decision="remove", reviewer=REVIEWER)

        result = await execute_campaign(
            session=session, campaign_id=campaign_id, source=source, cancel_event=cancel_event
        )
        statuses = await _statuses(session, item_ids)
        refreshed = await session.get(Campaign, campaign_id)

    assert result == {"success": 0, "failed": 0, "skipped": 2, "completed": False}
    assert set(statuses.values()) == {EXECUTION_PENDING}
    assert refreshed.status == CAMPAIGN_STATUS_IN_REVIEW
    assert source.deleted == []


@pytest.mark.asyncio
async def test_execute_rejects_draft_campaigns() -> None:
    source = FakePermissionSource()
    async with SessionLocal() as session:
        draft = await create_campaign(
            session=session, name="Draft", scope={"site_urls": [FINANCE_SITE_URL]}, created_by="owner-1"
        )
        with pytest.raises(InvalidStateError):
            await execute_campaign(session=session, campaign_id=draft.id, source=source)
