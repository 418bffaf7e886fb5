from __future__ import annotations

import httpx
import pytest

from accessreview.core.errors import PermissionSourceAuthError, PermissionSourceError
from accessreview.providers.permissions.base import (
    ORIGIN_DIRECT,
    ORIGIN_INHERITED,
    ORIGIN_SHARING_LINK,
    ResourceRef,
)
from accessreview.providers.permissions.graph import (
    GraphPermissionSource,
    parse_permission,
    parse_site_permission,
)
from accessreview.services import resilience
from accessreview.services.resilience import RetryPolicy, is_transient


BASE_URL = "https://graph.test/v1.0"


def _source(handler) -> GraphPermissionSource:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GraphPermissionSource(access_token="test-token", base_url=BASE_URL, client=client)


def test_parse_permission_sharing_links() -> None:
    anonymous = parse_permission({"id": "p1", "roles": ["read"], "link": {"scope": "anonymous", "type": "view"}})
    organization = parse_permission({"id": "p2", "roles": ["write"], "link": {"scope": "organization"}})

    assert anonymous.permission_origin == ORIGIN_SHARING_LINK
    assert anonymous.granted_to == "Anyone with the link"
    assert anonymous.granted_to_type == "anonymous"
    assert anonymous.sharing_link_type == "anonymous"
    assert organization.granted_to_type == "everyone"
    assert organization.access_level == "write"


def test_parse_permission_identities_and_inheritance() -> None:
    user = parse_permission(
        {
            "id": "p3",
            "roles": ["owner"],
            "grantedToV2": {"user": {"id": "u1", "email": "alice@contoso.com", "displayName": "Alice"}},
        }
    )
    group = parse_permission(
        {
            "id": "p4",
            "roles": ["read"],
            "grantedToV2": {"siteGroup": {"id": "g1", "displayName": "Finance Members"}},
            "inheritedFrom": {"driveId": "d1", "id": "root"},
        }
    )
    invited = parse_permission({"id": "p5", "roles": ["read"], "invitation": {"email": "guest@fabrikam.com"}})

    assert (user.granted_to, user.granted_to_id, user.access_level) == ("alice@contoso.com", "u1", "owner")
    assert user.permission_origin == ORIGIN_DIRECT
    assert user.is_independent_grant is True
    assert (group.granted_to, group.granted_to_type) == ("Finance Members", "group")
    assert group.permission_origin == ORIGIN_INHERITED
    assert group.is_independent_grant is False
    assert invited.granted_to == "guest@fabrikam.com"


def test_parse_site_permission_reads_identity_sets() -> None:
    permission = parse_site_permission(
        {
            "id": "sp1",
            "roles": ["write"],
            "grantedToIdentitiesV2": [{"application": {"id": "app-1", "displayName": "Backup Agent"}}],
        }
    )
    assert permission.granted_to == "Backup Agent"
    assert permission.permission_origin == ORIGIN_DIRECT
    assert permission.access_level == "write"


@pytest.mark.asyncio
async def test_list_permissions_follows_next_links() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        assert request.headers["Authorization"] == "Bearer test-token"
        if request.url.path.endswith("/drives/d1/root/permissions"):
            return httpx.Response(
                200,
                json={
                    "value": [{"id": "p1", "roles": ["read"], "grantedTo": {"user": {"id": "u1", "email": "a@x.com"}}}],
                    "@odata.nextLink": f"{BASE_URL}/drives/d1/root/permissions/page-2",
                },
            )
        return httpx.Response(200, json={"value": [{"id": "p2", "roles": ["write"], "link": {"scope": "users"}}]})

    source = _source(handler)
    permissions = await source.list_permissions(ResourceRef(resource_type="drive", resource_id="d1", drive_id="d1"))
    await source.aclose()

    assert [permission.permission_id for permission in permissions] == ["p1", "p2"]
    assert permissions[1].granted_to == "Specific people"
    assert seen == ["/v1.0/drives/d1/root/permissions", "/v1.0/drives/d1/root/permissions/page-2"]


@pytest.mark.asyncio
async def test_get_site_by_url_maps_not_found_to_none() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/sites/contoso.sharepoint.com:/sites/finance"):
            return httpx.Response(
                200, json={"id": "site-1", "displayName": "Finance", "webUrl": "https://contoso.sharepoint.com/sites/finance"}
            )
        return httpx.Response(404, json={"error": {"code": "itemNotFound"}})

    source = _source(handler)
    site = await source.get_site_by_url("https://contoso.sharepoint.com/sites/finance/")
    missing = await source.get_site_by_url("https://contoso.sharepoint.com/sites/gone")
    await source.aclose()

    assert site is not None
    assert (site.id, site.name) == ("site-1", "Finance")
    assert missing is None


@pytest.mark.asyncio
async def test_auth_and_client_errors_are_raised() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "DELETE":
            return httpx.Response(400, text="bad request")
        return httpx.Response(401, json={"error": {"code": "InvalidAuthenticationToken"}})

    source = _source(handler)
    with pytest.raises(PermissionSourceAuthError):
        await source.list_drives("site-1")
    with pytest.raises(PermissionSourceError) as exc_info:
        await source.delete_permission(
            ResourceRef(resource_type="file", resource_id="f1", site_id="site-1", drive_id="d1"), "p1"
        )
    await source.aclose()

    assert exc_info.value.status_code == 400


@pytest.mark.asyncio
async def test_delete_permission_targets_item_endpoint() -> None:
    requests: list[tuple[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append((request.method, request.url.path))
        return httpx.Response(204)

    source = _source(handler)
    await source.delete_permission(ResourceRef(resource_type="folder", resource_id="f9", drive_id="d1"), "p7")
    await source.aclose()

    assert requests == [("DELETE", "/v1.0/drives/d1/items/f9/permissions/p7")]


@pytest.mark.asyncio
async def test_missing_token_raises_auth_error() -> None:
    source = GraphPermissionSource(access_token=None, base_url=BASE_URL, client=httpx.AsyncClient())
    source._access_token = None
    with pytest.raises(PermissionSourceAuthError):
        await source.list_sites()
    await source.aclose()


def test_transient_classification() -> None:
    assert is_transient(httpx.ConnectError("connection refused")) is True
    assert is_transient(httpx.ReadError("connection reset")) is True
    assert is_transient(PermissionSourceError("throttled", status_code=429)) is True
    assert is_transient(PermissionSourceError("unavailable", status_code=503)) is True
    assert is_transient(PermissionSourceError("bad request", status_code=400)) is False
    assert is_transient(PermissionSourceAuthError("expired", status_code=401)) is False


@pytest.mark.asyncio
async def test_dropped_connection_is_retried(monkeypatch) -> None:
    monkeypatch.setattr(
        resilience, "default_retry_policy", lambda: RetryPolicy(timeout_s=1.0, max_attempts=3, backoff_ms=1)
    )
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if len(calls) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"value": [{"id": "d1", "name": "Documents"}]})

    source = _source(handler)
    drives = await source.list_drives("site-1")
    await source.aclose()

    assert [drive.id for drive in drives] == ["d1"]
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_malformed_permission_row_raises_source_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"value": [{"roles": ["read"]}]})

    source = _source(handler)
    with pytest.raises(PermissionSourceError):
        await source.list_permissions(ResourceRef(resource_type="drive", resource_id="d1", drive_id="d1"))
    await source.aclose()
