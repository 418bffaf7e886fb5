from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Callable, TypeVar
from urllib.parse import urlparse

import httpx

from accessreview.core.config import get_settings
from accessreview.core.errors import (
    PermissionSourceAuthError,
    PermissionSourceError,
    PermissionSourceTimeoutError,
)
from accessreview.providers.permissions.base import (
    ORIGIN_DIRECT,
    ORIGIN_INHERITED,
    ORIGIN_SHARING_LINK,
    RESOURCE_DRIVE,
    RESOURCE_SITE,
    DriveInfo,
    DriveItemInfo,
    PermissionInfo,
    ResourceRef,
    SiteInfo,
)
from accessreview.services.resilience import retry_async


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Prefer human-readable labels: emails for users, display names for groups.
_GRANTEE_V2_KINDS = (
    ("user", "user", ("email", "displayName")),
    ("group", "group", ("displayName", "email")),
    ("siteUser", "user", ("loginName", "displayName")),
    ("siteGroup", "group", ("displayName", "loginName")),
)


def _parse_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def _identity_label(identity: dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = identity.get(key)
        if value:
            return str(value)
    return ""


def _access_level(roles: list[str]) -> str:
    normalized = {role.lower() for role in roles}
    if "owner" in normalized or "fullcontrol" in normalized:
        return "owner"
    if "write" in normalized or "sp.full control" in normalized:
        return "write"
    return "read"


def parse_permission(payload: dict[str, Any]) -> PermissionInfo:
    """Normalize a drive item permission resource.

    Sharing links win over identity grants; any non-empty ``inheritedFrom``
    marks the entry inherited regardless of how it was granted.
    """
    granted_to = ""
    granted_to_id: str | None = None
    granted_to_type = "user"
    permission_type = "user"
    origin = ORIGIN_DIRECT
    sharing_link_type: str | None = None

    link = payload.get("link")
    grantees_v2 = payload.get("grantedToV2") or {}
    legacy = payload.get("grantedTo") or {}
    identities = payload.get("grantedToIdentitiesV2") or payload.get("grantedToIdentities") or []
    if link:
        permission_type = "shareLink"
        origin = ORIGIN_SHARING_LINK
        sharing_link_type = link.get("scope")
        if sharing_link_type == "anonymous":
            granted_to, granted_to_type = "Anyone with the link", "anonymous"
        elif sharing_link_type == "organization":
            granted_to, granted_to_type = "People in organization with the link", "everyone"
        else:
            granted_to = "Specific people"
    elif grantees_v2:
        for key, kind, label_keys in _GRANTEE_V2_KINDS:
            identity = grantees_v2.get(key)
            if identity:
                granted_to = _identity_label(identity, *label_keys)
                granted_to_id = identity.get("id")
                granted_to_type = permission_type = kind
                break
    elif legacy.get("user"):
        identity = legacy["user"]
        granted_to = _identity_label(identity, "email", "displayName")
        granted_to_id = identity.get("id")
    elif identities:
        first = identities[0]
        if first.get("group"):
            granted_to = _identity_label(first["group"], "displayName", "email")
            granted_to_id = first["group"].get("id")
            granted_to_type = permission_type = "group"
        elif first.get("user"):
            granted_to = _identity_label(first["user"], "email", "displayName")
            granted_to_id = first["user"].get("id")
    elif payload.get("invitation"):
        granted_to = payload["invitation"].get("email") or ""

    if payload.get("inheritedFrom"):
        origin = ORIGIN_INHERITED

    return PermissionInfo(
        permission_id=str(payload["id"]),
        permission_type=permission_type,
        granted_to=granted_to or "Unknown",
        granted_to_id=granted_to_id,
        granted_to_type=granted_to_type,
        access_level=_access_level(list(payload.get("roles") or [])),
        permission_origin=origin,
        sharing_link_type=sharing_link_type,
        expires_at=_parse_datetime(payload.get("expirationDateTime")),
    )


def _parse_rows(rows: list[dict[str, Any]], parser: Callable[[dict[str, Any]], T], what: str) -> list[T]:
    # A malformed row surfaces as a source error so callers skip the resource.
    try:
        return [parser(row) for row in rows]
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise PermissionSourceError(f"Malformed Graph {what} payload: {exc!r}") from exc


def parse_site_permission(payload: dict[str, Any]) -> PermissionInfo:
    # Site permissions are always direct grants to a user, group or application.
    granted_to = ""
    granted_to_id: str | None = None
    granted_to_type = "user"
    grantee = payload.get("grantedTo") or {}
    identities = payload.get("grantedToIdentitiesV2") or payload.get("grantedToIdentities") or []
    candidates = [grantee] + list(identities)
    for candidate in candidates:
        for key, kind in (("user", "user"), ("group", "group"), ("application", "user")):
            identity = candidate.get(key)
            if identity:
                granted_to = _identity_label(identity, "email", "displayName")
                granted_to_id = identity.get("id")
                granted_to_type = kind
                break
        if granted_to:
            break
    return PermissionInfo(
        permission_id=str(payload["id"]),
        permission_type=granted_to_type,
        granted_to=granted_to or "Unknown",
        granted_to_id=granted_to_id,
        granted_to_type=granted_to_type,
        access_level=_access_level(list(payload.get("roles") or [])),
        permission_origin=ORIGIN_DIRECT,
    )


class GraphPermissionSource:
    """Permission source backed by the Microsoft Graph REST API."""

    # Every request goes through retry_async with a per-attempt timeout.
    bounds_own_calls = True

    def __init__(
        self,
        *,
        access_token: str | None = None,
        base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = get_settings()
        self._access_token = access_token or self._settings.graph_access_token
        self._base_url = (base_url or self._settings.graph_base_url).rstrip("/")
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per source for connection pooling.
        self._client = httpx.AsyncClient(timeout=float(self._settings.permission_source_timeout_s))
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _headers(self) -> dict[str, str]:
        if not self._access_token:
            raise PermissionSourceAuthError("GRAPH_ACCESS_TOKEN is required for the graph permission source")
        return {"Authorization": f"Bearer {self._access_token}", "Accept": "application/json"}

    def _url(self, endpoint: str) -> str:
        return endpoint if endpoint.startswith("http") else f"{self._base_url}{endpoint}"

    async def _send(self, method: str, endpoint: str) -> httpx.Response:
        client = self._get_client()
        headers = self._headers()

        async def _call() -> httpx.Response:
            response = await client.request(method, self._url(endpoint), headers=headers)
            if response.status_code >= 500 or response.status_code == 429:
                # Raise so retry_async can classify the failure as transient.
                raise PermissionSourceError(
                    f"Graph API error: {response.status_code}", status_code=response.status_code
                )
            return response

        try:
            response = await retry_async(_call)
        except httpx.TimeoutException as exc:
            raise PermissionSourceTimeoutError(f"Graph API {method} {endpoint} timed out") from exc
        except TimeoutError as exc:
            raise PermissionSourceTimeoutError(f"Graph API {method} {endpoint} timed out") from exc
        except httpx.HTTPError as exc:
            raise PermissionSourceError(f"Graph API {method} {endpoint} failed: {exc}") from exc

        if response.status_code in {401, 403}:
            raise PermissionSourceAuthError(
                f"Graph API auth error: {response.status_code}", status_code=response.status_code
            )
        if response.status_code >= 400:
            raise PermissionSourceError(
                f"Graph API error: {response.status_code} - {response.text}",
                status_code=response.status_code,
            )
        return response

    async def _get_json(self, endpoint: str) -> dict[str, Any]:
        response = await self._send("GET", endpoint)
        try:
            payload = response.json()
        except ValueError as exc:
            raise PermissionSourceError(f"Graph API returned invalid JSON for {endpoint}") from exc
        if not isinstance(payload, dict):
            raise PermissionSourceError(f"Graph API returned an unexpected body for {endpoint}")
        return payload

    async def _get_collection(self, endpoint: str) -> list[dict[str, Any]]:
        # Follow @odata.nextLink until the collection is exhausted.
        values: list[dict[str, Any]] = []
        next_link: str | None = endpoint
        while next_link:
            payload = await self._get_json(next_link)
            values.extend(payload.get("value") or [])
            next_link = payload.get("@odata.nextLink")
        return values

    @staticmethod
    def _site_from_payload(payload: dict[str, Any]) -> SiteInfo:
        return SiteInfo(
            id=str(payload["id"]),
            name=payload.get("displayName") or payload.get("name") or "Site",
            web_url=payload.get("webUrl") or "",
        )

    async def list_sites(self) -> list[SiteInfo]:
        rows = await self._get_collection("/sites?$top=100&$select=id,displayName,name,webUrl")
        return _parse_rows(rows, self._site_from_payload, "site")

    async def get_site_by_url(self, site_url: str) -> SiteInfo | None:
        parsed = urlparse(site_url)
        if not parsed.hostname:
            return None
        path = parsed.path.rstrip("/")
        endpoint = f"/sites/{parsed.hostname}:{path}" if path else f"/sites/{parsed.hostname}"
        try:
            payload = await self._get_json(endpoint)
        except PermissionSourceError as exc:
            if exc.status_code == 404:
                return None
            raise
        return _parse_rows([payload], self._site_from_payload, "site")[0]

    async def list_drives(self, site_id: str) -> list[DriveInfo]:
        rows = await self._get_collection(f"/sites/{site_id}/drives")
        return _parse_rows(
            rows,
            lambda row: DriveInfo(
                id=str(row["id"]), name=row.get("name") or "Document Library", web_url=row.get("webUrl")
            ),
            "drive",
        )

    async def list_children(self, drive_id: str, item_id: str = "root") -> list[DriveItemInfo]:
        rows = await self._get_collection(f"/drives/{drive_id}/items/{item_id}/children")
        return _parse_rows(
            rows,
            lambda row: DriveItemInfo(
                id=str(row["id"]),
                name=row.get("name") or "",
                is_folder="folder" in row,
                web_url=row.get("webUrl"),
            ),
            "drive item",
        )

    def _permissions_endpoint(self, ref: ResourceRef) -> str:
        if ref.resource_type == RESOURCE_SITE:
            return f"/sites/{ref.resource_id}/permissions"
        drive_id = ref.drive_id or (ref.resource_id if ref.resource_type == RESOURCE_DRIVE else None)
        if not drive_id:
            raise PermissionSourceError(f"drive id required for {ref.resource_type} {ref.resource_id}")
        if ref.resource_type == RESOURCE_DRIVE:
            return f"/drives/{drive_id}/root/permissions"
        return f"/drives/{drive_id}/items/{ref.resource_id}/permissions"

    async def list_permissions(self, ref: ResourceRef) -> list[PermissionInfo]:
        rows = await self._get_collection(self._permissions_endpoint(ref))
        parser = parse_site_permission if ref.resource_type == RESOURCE_SITE else parse_permission
        return _parse_rows(rows, parser, "permission")

    async def delete_permission(self, ref: ResourceRef, permission_id: str) -> None:
        endpoint = f"{self._permissions_endpoint(ref)}/{permission_id}"
        await self._send("DELETE", endpoint)
        logger.info(
            "graph_permission_deleted",
            extra={"resource_type": ref.resource_type, "resource_id": ref.resource_id, "permission_id": permission_id},
        )
