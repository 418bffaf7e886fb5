from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from accessreview.domain.models import CAMPAIGN_STATUS_IN_REVIEW, Campaign, ReviewItem
from accessreview.providers.permissions.base import RESOURCE_FILE, ResourcePermission
from accessreview.services.campaigns import count_items, create_campaign
from accessreview.services.collection import collect_review_items
from accessreview.tests.utils.permissions import FINANCE_SITE_URL, direct_grant


async def create_review_campaign(
    session: AsyncSession,
    *,
    item_count: int,
    created_by: str = "owner-1",
    due_date: datetime | None = None,
    scheduled_review_id: str | None = None,
) -> tuple[Campaign, list[str]]:
    # Skip the collection walk and insert synthetic file grants directly.
    campaign = await create_campaign(
        session=session,
        name="Quarterly finance review",
        scope={"site_urls": [FINANCE_SITE_URL]},
        created_by=created_by,
        due_date=due_date,
        scheduled_review_id=scheduled_review_id,
    )
    entries = [
        ResourcePermission(
            resource_type=RESOURCE_FILE,
            resource_id=f"file-{index:02d}",
            resource_name=f"doc-{index:02d}.docx",
            resource_path=f"{FINANCE_SITE_URL}/Documents/doc-{index:02d}.docx",
            site_url=FINANCE_SITE_URL,
            permission=direct_grant(f"perm-{index:02d}", f"user{index}@contoso.com"),
            site_id="site-finance",
            drive_id="drive-finance",
        )
        for index in range(item_count)
    ]
    await collect_review_items(session=session, campaign_id=campaign.id, entries=entries)
    campaign.total_items = await count_items(session, campaign.id)
    campaign.status = CAMPAIGN_STATUS_IN_REVIEW
    await session.commit()
    result = await session.execute(
        select(ReviewItem.id).where(ReviewItem.campaign_id == campaign.id).order_by(ReviewItem.permission_id)
    )
    return campaign, list(result.scalars().all())
