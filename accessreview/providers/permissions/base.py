from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol


ORIGIN_DIRECT = "direct"
ORIGIN_INHERITED = "inherited"
ORIGIN_SHARING_LINK = "sharingLink"

RESOURCE_SITE = "site"
RESOURCE_DRIVE = "drive"
RESOURCE_FOLDER = "folder"
RESOURCE_FILE = "file"


@dataclass(frozen=True, slots=True)
class SiteInfo:
    id: str
    name: str
    web_url: str


@dataclass(frozen=True, slots=True)
class DriveInfo:
    id: str
    name: str
    web_url: str | None = None


@dataclass(frozen=True, slots=True)
class DriveItemInfo:
    id: str
    name: str
    is_folder: bool
    web_url: str | None = None


@dataclass(frozen=True, slots=True)
class ResourceRef:
    # Enough addressing to list or delete permissions on any resource type.
    resource_type: str
    resource_id: str
    site_id: str | None = None
    drive_id: str | None = None


@dataclass(frozen=True, slots=True)
class PermissionInfo:
    permission_id: str
    granted_to: str
    access_level: str
    permission_origin: str
    permission_type: str | None = None
    granted_to_id: str | None = None
    granted_to_type: str | None = None
    sharing_link_type: str | None = None
    expires_at: datetime | None = None

    @property
    def is_independent_grant(self) -> bool:
        # Inherited-only entries mirror a parent grant and are reviewed at the parent.
        return self.permission_origin == ORIGIN_DIRECT or self.permission_origin == ORIGIN_SHARING_LINK


@dataclass(frozen=True, slots=True)
class ResourcePermission:
    # One raw permission entry produced while walking a scoped site.
    resource_type: str
    resource_id: str
    resource_name: str
    resource_path: str
    site_url: str
    permission: PermissionInfo
    site_id: str | None = None
    drive_id: str | None = None


class PermissionSource(Protocol):
    # True when each request already carries its own timeout and retry policy.
    bounds_own_calls: bool

    async def list_sites(self) -> list[SiteInfo]:
        ...

    async def get_site_by_url(self, site_url: str) -> SiteInfo | None:
        ...

    async def list_drives(self, site_id: str) -> list[DriveInfo]:
        ...

    async def list_children(self, drive_id: str, item_id: str = "root") -> list[DriveItemInfo]:
        ...

    async def list_permissions(self, ref: ResourceRef) -> list[PermissionInfo]:
        ...

    async def delete_permission(self, ref: ResourceRef, permission_id: str) -> None:
        ...
