from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from accessreview.apps.api.main import create_app
from accessreview.domain.models import (
    CAMPAIGN_STATUS_COMPLETED,
    CAMPAIGN_STATUS_DRAFT,
    CAMPAIGN_STATUS_IN_REVIEW,
    NOTIFICATION_CAMPAIGN_STARTED,
    NOTIFICATION_EXECUTION_COMPLETE,
)
from accessreview.providers.permissions import factory
from accessreview.tests.utils.permissions import FINANCE_SITE_URL, seed_finance_site


OWNER_HEADERS = {"X-User-Id": "owner-1", "X-User-Email": "owner@contoso.com"}


def _client() -> AsyncClient:
    transport = ASGITransport(app=create_app())
    return AsyncClient(transport=transport, base_url="http://test")


@pytest.mark.asyncio
async def test_health_reports_database_ok() -> None:
    async with _client() as client:
        response = await client.get("/v1/health")

    assert response.status_code == 200
    body = response.json()
    assert body["data"] == {"status": "ok", "database": "ok"}
    assert body["meta"]["api_version"] == "v1"
    assert response.headers["X-Request-Id"] == body["meta"]["request_id"]


@pytest.mark.asyncio
async def test_requests_without_identity_are_rejected() -> None:
    async with _client() as client:
        response = await client.get("/v1/campaigns")

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_UNAUTHORIZED"


@pytest.mark.asyncio
async def test_domain_errors_map_to_status_codes() -> None:
    async with _client() as client:
        missing = await client.get(
            "/v1/campaigns/does-not-exist", headers={**OWNER_HEADERS, "X-Request-Id": "req-123"}
        )
        bad_scope = await client.post(
            "/v1/campaigns", json={"name": "Empty", "scope": {"site_urls": []}}, headers=OWNER_HEADERS
        )
        draft = await client.post(
            "/v1/campaigns",
            json={"name": "Finance", "scope": {"site_urls": [FINANCE_SITE_URL]}},
            headers=OWNER_HEADERS,
        )
        campaign_id = draft.json()["data"]["id"]
        complete_draft = await client.post(f"/v1/campaigns/{campaign_id}/complete", headers=OWNER_HEADERS)
        bad_decision = await client.put(
            "/v1/items/anything/decision", json={"decision": "maybe"}, headers=OWNER_HEADERS
        )

    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "NOT_FOUND"
    assert missing.json()["meta"]["request_id"] == "req-123"
    assert bad_scope.status_code == 422
    assert bad_scope.json()["error"]["code"] == "INVALID_CONFIG"
    assert draft.status_code == 201
    assert draft.json()["data"]["status"] == CAMPAIGN_STATUS_DRAFT
    assert complete_draft.status_code == 409
    assert complete_draft.json()["error"]["code"] == "INVALID_STATE"
    assert bad_decision.status_code == 422
    assert bad_decision.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_campaign_lifecycle_end_to_end() -> None:
    source = factory.get_permission_source()
    seed_finance_site(source)

    async with _client() as client:
        created = await client.post(
            "/v1/campaigns",
            json={"name": "Finance Q2", "scope": {"site_urls": [FINANCE_SITE_URL]}},
            headers=OWNER_HEADERS,
        )
        campaign_id = created.json()["data"]["id"]

        started = await client.post(f"/v1/campaigns/{campaign_id}/start", headers=OWNER_HEADERS)
        assert started.status_code == 200
        start_data = started.json()["data"]
        assert start_data["campaign"]["status"] == CAMPAIGN_STATUS_IN_REVIEW
        assert start_data["campaign"]["total_items"] == 4
        assert start_data["collection"]["inserted"] == 4
        assert start_data["collection"]["skipped_inherited"] == 1

        items = await client.get(f"/v1/campaigns/{campaign_id}/items", headers=OWNER_HEADERS)
        by_permission = {item["permission_id"]: item["id"] for item in items.json()["data"]["items"]}
        assert set(by_permission) == {"site-owners", "drive-bob", "folder-link", "file-carol"}

        removal = await client.put(
            f"/v1/items/{by_permission['drive-bob']}/decision",
            json={"decision": "remove", "justification": "Left the team"},
            headers=OWNER_HEADERS,
        )
        assert removal.status_code == 200
        assert removal.json()["data"]["execution_status"] == "pending"
        assert removal.json()["data"]["reviewer_email"] == "owner@contoso.com"

        bulk = await client.post(
            "/v1/decisions/bulk",
            json={
                "decisions": [
                    {"item_id": by_permission["site-owners"], "decision": "retain"},
                    {"item_id": by_permission["folder-link"], "decision": "retain"},
                    {"item_id": by_permission["file-carol"], "decision": "retain"},
                    {"item_id": "missing-item", "decision": "retain"},
                ]
            },
            headers=OWNER_HEADERS,
        )
        assert bulk.json()["data"]["success"] == 3
        assert bulk.json()["data"]["failed"] == 1
        assert bulk.json()["data"]["errors"][0]["item_id"] == "missing-item"

        executed = await client.post(f"/v1/campaigns/{campaign_id}/execute", json={}, headers=OWNER_HEADERS)
        assert executed.json()["data"] == {"success": 1, "failed": 0, "skipped": 0, "completed": True}

        report = await client.get(f"/v1/campaigns/{campaign_id}/report", headers=OWNER_HEADERS)
        report_data = report.json()["data"]
        assert report_data["campaign"]["status"] == CAMPAIGN_STATUS_COMPLETED
        assert report_data["summary"]["retained"] == 3
        assert report_data["summary"]["removed"] == 1
        assert report_data["summary"]["executed"] == 1
        assert report_data["summary"]["review_progress"] == 100
        assert len(report_data["items"]) == 4

        inbox = await client.get("/v1/notifications", headers=OWNER_HEADERS)
        other_inbox = await client.get("/v1/notifications", headers={"X-User-Id": "someone-else"})

    assert [permission_id for _, permission_id in source.deleted] == ["drive-bob"]
    inbox_data = inbox.json()["data"]
    assert {row["type"] for row in inbox_data["items"]} == {
        NOTIFICATION_CAMPAIGN_STARTED,
        NOTIFICATION_EXECUTION_COMPLETE,
    }
    assert inbox_data["unread_count"] == 2
    assert other_inbox.json()["data"]["unread_count"] == 0


@pytest.mark.asyncio
async def test_schedule_run_and_scheduler_ops() -> None:
    async with _client() as client:
        created = await client.post(
            "/v1/schedules",
            json={
                "name": "Monthly finance",
                "scope": {"site_urls": [FINANCE_SITE_URL]},
                "frequency": "monthly",
                "day_of_month": 31,
                "reminder_days": [1, 3],
            },
            headers=OWNER_HEADERS,
        )
        assert created.status_code == 201
        schedule = created.json()["data"]
        assert schedule["next_run_at"] is not None
        assert schedule["reminder_days"] == [3, 1]

        bad = await client.post(
            "/v1/schedules",
            json={"name": "Broken", "scope": {"site_urls": [FINANCE_SITE_URL]}, "frequency": "weekly", "day_of_week": 9},
            headers=OWNER_HEADERS,
        )
        assert bad.status_code == 422

        run = await client.post(f"/v1/schedules/{schedule['id']}/run", headers={"X-User-Id": "operator-2"})
        assert run.status_code == 201
        assert run.json()["data"]["status"] == CAMPAIGN_STATUS_DRAFT
        assert run.json()["data"]["created_by"] == "operator-2"
        assert run.json()["data"]["scheduled_review_id"] == schedule["id"]

        tick = await client.post("/v1/ops/scheduler/run", json={"phase": "reminders"}, headers=OWNER_HEADERS)
        assert tick.status_code == 200
        assert tick.json()["data"]["status"] == "ok"
        assert list(tick.json()["data"]["phases"]) == ["reminders"]

        status = await client.get("/v1/ops/scheduler", headers=OWNER_HEADERS)
        assert status.json()["data"]["running"] is False
        assert status.json()["data"]["last_result"]["status"] == "ok"

        disabled = await client.patch(
            f"/v1/schedules/{schedule['id']}", json={"enabled": False}, headers=OWNER_HEADERS
        )
        assert disabled.json()["data"]["enabled"] is False
        refused = await client.post(f"/v1/schedules/{schedule['id']}/run", headers=OWNER_HEADERS)
        assert refused.status_code == 409
