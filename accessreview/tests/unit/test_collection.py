from __future__ import annotations

import asyncio

import httpx
import pytest
from sqlalchemy import func, select

from accessreview.domain.models import ReviewItem
from accessreview.domain.schemas import CampaignScope
from accessreview.persistence.db import SessionLocal
from accessreview.providers.permissions.graph import GraphPermissionSource
from accessreview.providers.permissions.fake import FakePermissionSource
from accessreview.services.campaigns import create_campaign
from accessreview.services.collection import collect_campaign, walk_site_permissions
from accessreview.services import resilience
from accessreview.services.resilience import RetryPolicy
from accessreview.tests.utils.permissions import (
    FINANCE_SITE_URL,
    HR_SITE_URL,
    seed_finance_site,
    seed_hr_site,
)


def _scope(**overrides) -> CampaignScope:
    payload = {"site_urls": [FINANCE_SITE_URL]}
    payload.update(overrides)
    return CampaignScope.model_validate(payload)


async def _new_campaign(session, scope: CampaignScope) -> str:
    campaign = await create_campaign(session=session, name="Finance", scope=scope, created_by="owner-1")
    return campaign.id


async def _permission_ids(session, campaign_id: str) -> list[str]:
    result = await session.execute(
        select(ReviewItem.permission_id).where(ReviewItem.campaign_id == campaign_id).order_by(ReviewItem.permission_id)
    )
    return list(result.scalars().all())


@pytest.mark.asyncio
async def test_walk_visits_site_drive_and_nested_items_in_order() -> None:
    source = FakePermissionSource()
    seed_finance_site(source)

    walk = await walk_site_permissions(source, FINANCE_SITE_URL, _scope())

    assert walk.found is True
    assert walk.failed_resources == []
    assert [entry.permission.permission_id for entry in walk.entries] == [
        "site-owners",
        "drive-bob",
        "drive-inherited",
        "folder-link",
        "file-carol",
    ]
    file_entry = walk.entries[-1]
    assert file_entry.resource_type == "file"
    assert file_entry.drive_id == "drive-finance"
    assert file_entry.resource_path.endswith("/Documents/Reports/q1.xlsx")


@pytest.mark.asyncio
async def test_walk_respects_max_depth_and_flags() -> None:
    source = FakePermissionSource()
    seed_finance_site(source)

    shallow = await walk_site_permissions(source, FINANCE_SITE_URL, _scope(max_depth=1))
    assert "folder-link" in [entry.permission.permission_id for entry in shallow.entries]
    assert "file-carol" not in [entry.permission.permission_id for entry in shallow.entries]

    roots_only = await walk_site_permissions(source, FINANCE_SITE_URL, _scope(include_subfolders=False))
    assert [entry.resource_type for entry in roots_only.entries] == ["site", "drive", "drive"]

    site_only = await walk_site_permissions(source, FINANCE_SITE_URL, _scope(include_drives=False))
    assert [entry.permission.permission_id for entry in site_only.entries] == ["site-owners"]


@pytest.mark.asyncio
async def test_walk_skips_failing_and_slow_resources() -> None:
    source = FakePermissionSource()
    seed_finance_site(source)
    source.failing_resources.add("drive-finance")
    source.slow_resources["folder-reports"] = 1.0

    walk = await walk_site_permissions(source, FINANCE_SITE_URL, _scope(), timeout_s=0.05)

    assert walk.failed_resources == ["drive-finance", "folder-reports"]
    # The folder's own grants timed out, but its children are still walked.
    assert [entry.permission.permission_id for entry in walk.entries] == ["site-owners", "file-carol"]


@pytest.mark.asyncio
async def test_walk_marks_unknown_site_as_not_found() -> None:
    source = FakePermissionSource()
    walk = await walk_site_permissions(source, "https://contoso.sharepoint.com/sites/missing", _scope())
    assert walk.found is False
    assert walk.entries == []


@pytest.mark.asyncio
async def test_collect_campaign_filters_inherited_and_is_idempotent() -> None:
    source = FakePermissionSource()
    seed_finance_site(source)
    scope = _scope()

    async with SessionLocal() as session:
        campaign_id = await _new_campaign(session, scope)
        first = await collect_campaign(session=session, campaign_id=campaign_id, scope=scope, source=source)
        second = await collect_campaign(session=session, campaign_id=campaign_id, scope=scope, source=source)
        permission_ids = await _permission_ids(session, campaign_id)

    assert first["inserted"] == 4
    assert first["skipped_inherited"] == 1
    assert first["duplicates"] == 0
    assert second["inserted"] == 0
    assert second["duplicates"] == 4
    assert permission_ids == ["drive-bob", "file-carol", "folder-link", "site-owners"]


@pytest.mark.asyncio
async def test_collect_campaign_keeps_going_when_one_site_fails() -> None:
    source = FakePermissionSource()
    seed_finance_site(source)
    seed_hr_site(source)
    source.failing_resources.add("site-finance")
    missing = "https://contoso.sharepoint.com/sites/archive"
    scope = _scope(site_urls=[FINANCE_SITE_URL, HR_SITE_URL, missing])

    async with SessionLocal() as session:
        campaign_id = await _new_campaign(session, scope)
        result = await collect_campaign(session=session, campaign_id=campaign_id, scope=scope, source=source)
        permission_ids = await _permission_ids(session, campaign_id)

    assert sorted(result["sites_failed"]) == sorted([FINANCE_SITE_URL, missing])
    assert result["sites_walked"] == 1
    assert permission_ids == ["hr-drive-erin", "hr-owner"]


@pytest.mark.asyncio
async def test_collect_campaign_scopes_items_per_campaign() -> None:
    source = FakePermissionSource()
    seed_hr_site(source)
    scope = _scope(site_urls=[HR_SITE_URL])

    async with SessionLocal() as session:
        first_id = await _new_campaign(session, scope)
        second_id = await _new_campaign(session, scope)
        await collect_campaign(session=session, campaign_id=first_id, scope=scope, source=source)
        await collect_campaign(session=session, campaign_id=second_id, scope=scope, source=source)
        total = (await session.execute(select(func.count(ReviewItem.id)))).scalar_one()

    # The same grant is reviewed separately in each campaign.
    assert total == 4


@pytest.mark.asyncio
async def test_collect_campaign_honours_cancellation() -> None:
    source = FakePermissionSource()
    seed_finance_site(source)
    scope = _scope()
    cancel_event = asyncio.Event()
    cancel_event.set()

    async with SessionLocal() as session:
        campaign_id = await _new_campaign(session, scope)
        result = await collect_campaign(
            session=session,
            campaign_id=campaign_id,
            scope=scope,
            source=source,
            cancel_event=cancel_event,
        )
        permission_ids = await _permission_ids(session, campaign_id)

    assert result["cancelled"] is True
    assert result["sites_failed"] == []
    assert permission_ids == []


_GRAPH_SITE = {"id": "site-1", "displayName": "Finance", "webUrl": FINANCE_SITE_URL}
_GRAPH_OWNER = {"id": "sp1", "roles": ["owner"], "grantedTo": {"user": {"id": "u1", "email": "alice@contoso.com"}}}


def _graph_source(handler) -> GraphPermissionSource:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GraphPermissionSource(access_token="test-token", base_url="https://graph.test/v1.0", client=client)


@pytest.mark.asyncio
async def test_graph_walk_recovers_from_slow_transient_error(monkeypatch) -> None:
    # Per-attempt timeout equals the walk timeout; the retry still has to land.
    monkeypatch.setattr(
        resilience, "default_retry_policy", lambda: RetryPolicy(timeout_s=0.3, max_attempts=2, backoff_ms=100)
    )
    attempts: list[int] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/sites/contoso.sharepoint.com:/sites/finance"):
            return httpx.Response(200, json=_GRAPH_SITE)
        if request.url.path.endswith("/sites/site-1/permissions"):
            attempts.append(1)
            if len(attempts) == 1:
                await asyncio.sleep(0.25)
                return httpx.Response(503, text="busy")
            return httpx.Response(200, json={"value": [_GRAPH_OWNER]})
        return httpx.Response(404)

    source = _graph_source(handler)
    walk = await walk_site_permissions(source, FINANCE_SITE_URL, _scope(include_drives=False), timeout_s=0.3)
    await source.aclose()

    assert len(attempts) == 2
    assert walk.failed_resources == []
    assert [entry.permission.permission_id for entry in walk.entries] == ["sp1"]


@pytest.mark.asyncio
async def test_malformed_graph_payload_skips_only_that_resource() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/sites/contoso.sharepoint.com:/sites/finance"):
            return httpx.Response(200, json=_GRAPH_SITE)
        if path.endswith("/sites/site-1/permissions"):
            return httpx.Response(200, json={"value": [_GRAPH_OWNER]})
        if path.endswith("/sites/site-1/drives"):
            return httpx.Response(200, json={"value": [{"id": "drive-1", "name": "Documents"}]})
        if path.endswith("/drives/drive-1/root/permissions"):
            # Missing "id" on the grant.
            return httpx.Response(200, json={"value": [{"roles": ["read"], "link": {"scope": "anonymous"}}]})
        return httpx.Response(404)

    source = _graph_source(handler)
    scope = _scope(include_subfolders=False)
    async with SessionLocal() as session:
        campaign_id = await _new_campaign(session, scope)
        result = await collect_campaign(session=session, campaign_id=campaign_id, scope=scope, source=source)
        permission_ids = await _permission_ids(session, campaign_id)
    await source.aclose()

    assert result["sites_walked"] == 1
    assert result["resources_failed"] == 1
    assert permission_ids == ["sp1"]
