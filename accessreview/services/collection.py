"""Collection pipeline: walk scoped sites and turn grants into review items.

Walks are I/O bound and run concurrently per site; inserts for a campaign are
serialized through a single session. Items are keyed by
(campaign_id, permission_id) so re-running collection never duplicates rows.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from accessreview.core.config import get_settings
from accessreview.core.errors import AccessReviewError
from accessreview.domain.models import ReviewItem
from accessreview.domain.schemas import CampaignScope
from accessreview.providers.permissions.base import (
    RESOURCE_DRIVE,
    RESOURCE_FILE,
    RESOURCE_FOLDER,
    RESOURCE_SITE,
    DriveInfo,
    PermissionSource,
    ResourcePermission,
    ResourceRef,
    SiteInfo,
)
from accessreview.services.resilience import call_source


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SiteWalk:
    site_url: str
    entries: list[ResourcePermission] = field(default_factory=list)
    failed_resources: list[str] = field(default_factory=list)
    # False when the site could not be resolved at all.
    found: bool = True


def _cancelled(cancel_event: asyncio.Event | None) -> bool:
    return cancel_event is not None and cancel_event.is_set()


class _SiteWalker:
    # Depth-first walker for one site; every source call is bounded and failures are skipped.

    def __init__(
        self,
        source: PermissionSource,
        scope: CampaignScope,
        walk: SiteWalk,
        *,
        timeout_s: float | None,
        cancel_event: asyncio.Event | None,
    ) -> None:
        self._source = source
        self._scope = scope
        self._walk = walk
        self._timeout_s = timeout_s
        self._cancel_event = cancel_event

    async def _call(self, func: Any, operation: str) -> Any:
        return await call_source(self._source, func, timeout_s=self._timeout_s, operation=operation)

    def _skip(self, resource_id: str, exc: Exception) -> None:
        self._walk.failed_resources.append(resource_id)
        logger.warning(
            "collection_resource_skipped",
            extra={"site_url": self._walk.site_url, "resource_id": resource_id, "error": str(exc)},
        )

    async def _collect(self, ref: ResourceRef, name: str, path: str) -> None:
        try:
            permissions = await self._call(
                lambda: self._source.list_permissions(ref), f"list_permissions {ref.resource_id}"
            )
        except AccessReviewError as exc:
            self._skip(ref.resource_id, exc)
            return
        for permission in permissions:
            self._walk.entries.append(
                ResourcePermission(
                    resource_type=ref.resource_type,
                    resource_id=ref.resource_id,
                    resource_name=name,
                    resource_path=path,
                    site_url=self._walk.site_url,
                    permission=permission,
                    site_id=ref.site_id,
                    drive_id=ref.drive_id,
                )
            )

    async def _walk_children(
        self, site: SiteInfo, drive: DriveInfo, parent_id: str, parent_path: str, depth: int
    ) -> None:
        if depth > self._scope.max_depth or _cancelled(self._cancel_event):
            return
        try:
            children = await self._call(
                lambda: self._source.list_children(drive.id, parent_id), f"list_children {parent_id}"
            )
        except AccessReviewError as exc:
            self._skip(parent_id, exc)
            return
        for child in children:
            if _cancelled(self._cancel_event):
                return
            path = f"{parent_path}/{child.name}"
            ref = ResourceRef(
                resource_type=RESOURCE_FOLDER if child.is_folder else RESOURCE_FILE,
                resource_id=child.id,
                site_id=site.id,
                drive_id=drive.id,
            )
            await self._collect(ref, child.name, path)
            if child.is_folder:
                await self._walk_children(site, drive, child.id, path, depth + 1)

    async def run(self) -> SiteWalk:
        site_url = self._walk.site_url
        try:
            site = await self._call(lambda: self._source.get_site_by_url(site_url), f"get_site {site_url}")
        except AccessReviewError as exc:
            self._skip(site_url, exc)
            self._walk.found = False
            return self._walk
        if site is None:
            self._walk.found = False
            logger.warning("collection_site_not_found", extra={"site_url": site_url})
            return self._walk

        site_path = site.web_url or site_url
        await self._collect(
            ResourceRef(resource_type=RESOURCE_SITE, resource_id=site.id, site_id=site.id),
            site.name,
            site_path,
        )
        if not self._scope.include_drives or _cancelled(self._cancel_event):
            return self._walk

        try:
            drives = await self._call(lambda: self._source.list_drives(site.id), f"list_drives {site.id}")
        except AccessReviewError as exc:
            self._skip(site.id, exc)
            return self._walk
        for drive in drives:
            if _cancelled(self._cancel_event):
                break
            drive_path = f"{site_path}/{drive.name}"
            await self._collect(
                ResourceRef(resource_type=RESOURCE_DRIVE, resource_id=drive.id, site_id=site.id, drive_id=drive.id),
                drive.name,
                drive_path,
            )
            if self._scope.include_subfolders:
                await self._walk_children(site, drive, "root", drive_path, 1)
        return self._walk


async def walk_site_permissions(
    source: PermissionSource,
    site_url: str,
    scope: CampaignScope,
    *,
    timeout_s: float | None = None,
    cancel_event: asyncio.Event | None = None,
) -> SiteWalk:
    """Produce raw permission entries for one scoped site.

    Site permissions come first, then each drive root, then a depth-first walk
    of drive children from depth 1 up to ``scope.max_depth``. A resource whose
    call fails or times out is recorded in ``failed_resources`` and skipped.
    """
    walker = _SiteWalker(
        source,
        scope,
        SiteWalk(site_url=site_url),
        timeout_s=timeout_s,
        cancel_event=cancel_event,
    )
    return await walker.run()


def _to_item(campaign_id: str, entry: ResourcePermission) -> ReviewItem:
    permission = entry.permission
    return ReviewItem(
        campaign_id=campaign_id,
        resource_type=entry.resource_type,
        resource_id=entry.resource_id,
        resource_name=entry.resource_name,
        resource_path=entry.resource_path,
        site_url=entry.site_url,
        site_id=entry.site_id,
        drive_id=entry.drive_id,
        permission_id=permission.permission_id,
        permission_type=permission.permission_type,
        granted_to=permission.granted_to,
        granted_to_id=permission.granted_to_id,
        granted_to_type=permission.granted_to_type,
        access_level=permission.access_level,
        permission_origin=permission.permission_origin,
        sharing_link_type=permission.sharing_link_type,
        expires_at=permission.expires_at,
    )


async def _existing_permission_ids(session: AsyncSession, campaign_id: str) -> set[str]:
    result = await session.execute(
        select(ReviewItem.permission_id).where(ReviewItem.campaign_id == campaign_id)
    )
    return set(result.scalars().all())


async def collect_review_items(
    *,
    session: AsyncSession,
    campaign_id: str,
    entries: Iterable[ResourcePermission],
) -> dict[str, int]:
    """Insert review items for independent grants, treating existing keys as no-ops."""
    existing = await _existing_permission_ids(session, campaign_id)
    pending: list[ResourcePermission] = []
    duplicates = 0
    skipped_inherited = 0
    for entry in entries:
        if not entry.permission.is_independent_grant:
            skipped_inherited += 1
            continue
        if entry.permission.permission_id in existing:
            duplicates += 1
            continue
        existing.add(entry.permission.permission_id)
        pending.append(entry)

    if not pending:
        return {"inserted": 0, "duplicates": duplicates, "skipped_inherited": skipped_inherited}

    inserted = 0
    session.add_all([_to_item(campaign_id, entry) for entry in pending])
    try:
        await session.commit()
        inserted = len(pending)
    except IntegrityError:
        # Another writer inserted some keys first; retry row by row and count conflicts as duplicates.
        await session.rollback()
        for entry in pending:
            session.add(_to_item(campaign_id, entry))
            try:
                await session.commit()
                inserted += 1
            except IntegrityError:
                await session.rollback()
                duplicates += 1
    return {"inserted": inserted, "duplicates": duplicates, "skipped_inherited": skipped_inherited}


async def collect_campaign(
    *,
    session: AsyncSession,
    campaign_id: str,
    scope: CampaignScope,
    source: PermissionSource,
    cancel_event: asyncio.Event | None = None,
) -> dict[str, Any]:
    """Walk every scoped site and persist its review items.

    Sites are walked concurrently up to ``collection_max_concurrency``; each
    finished walk is written back in turn on the caller's session. A site that
    fails is logged and skipped so the remaining sites still land.
    """
    settings = get_settings()
    semaphore = asyncio.Semaphore(max(1, int(settings.collection_max_concurrency)))
    totals: dict[str, Any] = {
        "inserted": 0,
        "duplicates": 0,
        "skipped_inherited": 0,
        "sites_walked": 0,
        "sites_failed": [],
        "resources_failed": 0,
        "cancelled": False,
    }

    async def _bounded_walk(site_url: str) -> SiteWalk:
        async with semaphore:
            if _cancelled(cancel_event):
                return SiteWalk(site_url=site_url, found=False)
            return await walk_site_permissions(source, site_url, scope, cancel_event=cancel_event)

    tasks = {asyncio.ensure_future(_bounded_walk(url)): url for url in scope.site_urls}
    try:
        for future in asyncio.as_completed(list(tasks)):
            try:
                walk = await future
            except AccessReviewError as exc:
                # Walk-level failures are soft; the campaign still collects the other sites.
                logger.warning("campaign_collection_site_failed", extra={"campaign_id": campaign_id, "error": str(exc)})
                totals["sites_failed"].append(str(exc))
                continue
            if not walk.found:
                if not _cancelled(cancel_event):
                    totals["sites_failed"].append(walk.site_url)
                continue
            # Write back partial walks too; a cancelled walk keeps whatever it already gathered.
            counts = await collect_review_items(session=session, campaign_id=campaign_id, entries=walk.entries)
            for key in ("inserted", "duplicates", "skipped_inherited"):
                totals[key] += counts[key]
            totals["sites_walked"] += 1
            totals["resources_failed"] += len(walk.failed_resources)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()

    totals["cancelled"] = _cancelled(cancel_event)
    logger.info(
        "campaign_collection_finished",
        extra={
            "campaign_id": campaign_id,
            "inserted": totals["inserted"],
            "duplicates": totals["duplicates"],
            "sites_failed": len(totals["sites_failed"]),
            "cancelled": totals["cancelled"],
        },
    )
    return totals
