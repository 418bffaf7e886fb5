from __future__ import annotations

import asyncio

from accessreview.core.errors import PermissionSourceError
from accessreview.providers.permissions.base import (
    DriveInfo,
    DriveItemInfo,
    PermissionInfo,
    ResourceRef,
    SiteInfo,
)


def _ref_key(ref: ResourceRef) -> tuple[str, str]:
    return ref.resource_type, ref.resource_id


class FakePermissionSource:
    """In-memory permission source for tests and local runs.

    Resources are registered explicitly; failures and slow calls can be injected
    per resource so soft-failure paths are exercised deterministically.
    """

    bounds_own_calls = False

    def __init__(self) -> None:
        self.sites: dict[str, SiteInfo] = {}
        self.drives: dict[str, list[DriveInfo]] = {}
        self.children: dict[tuple[str, str], list[DriveItemInfo]] = {}
        self.permissions: dict[tuple[str, str], list[PermissionInfo]] = {}
        self.failing_resources: set[str] = set()
        self.failing_deletes: set[str] = set()
        self.slow_resources: dict[str, float] = {}
        self.deleted: list[tuple[str, str]] = []
        self.list_calls = 0

    def add_site(self, site_url: str, site_id: str, name: str = "Site") -> SiteInfo:
        site = SiteInfo(id=site_id, name=name, web_url=site_url)
        self.sites[site_url] = site
        return site

    def add_drive(self, site_id: str, drive_id: str, name: str = "Documents") -> DriveInfo:
        drive = DriveInfo(id=drive_id, name=name, web_url=f"https://fake/{drive_id}")
        self.drives.setdefault(site_id, []).append(drive)
        return drive

    def add_item(
        self,
        drive_id: str,
        item_id: str,
        name: str,
        *,
        parent_id: str = "root",
        is_folder: bool = False,
    ) -> DriveItemInfo:
        item = DriveItemInfo(id=item_id, name=name, is_folder=is_folder)
        self.children.setdefault((drive_id, parent_id), []).append(item)
        return item

    def add_permission(self, resource_type: str, resource_id: str, permission: PermissionInfo) -> None:
        self.permissions.setdefault((resource_type, resource_id), []).append(permission)

    async def _maybe_slow(self, resource_id: str) -> None:
        delay = self.slow_resources.get(resource_id)
        if delay:
            await asyncio.sleep(delay)

    async def list_sites(self) -> list[SiteInfo]:
        return list(self.sites.values())

    async def get_site_by_url(self, site_url: str) -> SiteInfo | None:
        site = self.sites.get(site_url)
        if site is not None and site.id in self.failing_resources:
            raise PermissionSourceError(f"site unavailable: {site_url}", status_code=503)
        return site

    async def list_drives(self, site_id: str) -> list[DriveInfo]:
        return list(self.drives.get(site_id, []))

    async def list_children(self, drive_id: str, item_id: str = "root") -> list[DriveItemInfo]:
        if item_id in self.failing_resources:
            raise PermissionSourceError(f"children unavailable: {item_id}", status_code=403)
        return list(self.children.get((drive_id, item_id), []))

    async def list_permissions(self, ref: ResourceRef) -> list[PermissionInfo]:
        self.list_calls += 1
        await self._maybe_slow(ref.resource_id)
        if ref.resource_id in self.failing_resources:
            raise PermissionSourceError(f"permissions unavailable: {ref.resource_id}", status_code=403)
        return list(self.permissions.get(_ref_key(ref), []))

    async def delete_permission(self, ref: ResourceRef, permission_id: str) -> None:
        await self._maybe_slow(ref.resource_id)
        if permission_id in self.failing_deletes:
            raise PermissionSourceError(f"delete rejected for {permission_id}", status_code=403)
        bucket = self.permissions.get(_ref_key(ref), [])
        self.permissions[_ref_key(ref)] = [perm for perm in bucket if perm.permission_id != permission_id]
        self.deleted.append((ref.resource_id, permission_id))
