from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings

from accessreview.core.config import get_settings
from accessreview.persistence.db import SessionLocal
from accessreview.providers.permissions.factory import get_permission_source
from accessreview.services.campaigns import start_campaign
from accessreview.services.execution import execute_campaign
from accessreview.services.scheduler import reset_scheduler_state, run_scheduler_loop, run_scheduler_tick

logger = logging.getLogger(__name__)


async def scheduler_tick(ctx, phase: str | None = None) -> dict:
    # Allow operators to enqueue a single tick (or one phase) alongside the periodic loop.
    return await run_scheduler_tick(phases=[phase] if phase else None)


async def collect_campaign_job(ctx, campaign_id: str) -> dict:
    # Long-running collection belongs on the worker; a retry resumes from collecting.
    source = get_permission_source()
    try:
        async with SessionLocal() as session:
            result = await start_campaign(session=session, campaign_id=campaign_id, source=source)
    finally:
        aclose = getattr(source, "aclose", None)
        if aclose is not None:
            await aclose()
    return {"campaign_id": campaign_id, "status": result["campaign"].status, **result["collection"]}


async def execute_campaign_job(ctx, campaign_id: str, retry_failed: bool = False) -> dict:
    source = get_permission_source()
    try:
        async with SessionLocal() as session:
            return await execute_campaign(
                session=session,
                campaign_id=campaign_id,
                source=source,
                retry_failed=retry_failed,
            )
    finally:
        aclose = getattr(source, "aclose", None)
        if aclose is not None:
            await aclose()


async def _startup(ctx) -> None:
    # Run the schedule loop inside the worker so ticks continue without API traffic.
    reset_scheduler_state()
    ctx["scheduler_task"] = asyncio.create_task(run_scheduler_loop())


async def _shutdown(ctx) -> None:
    # Cancel the loop on shutdown to avoid dangling coroutines.
    task = ctx.get("scheduler_task")
    if task:
        task.cancel()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url or "redis://localhost:6379/0")
    queue_name = settings.scheduler_queue_name
    max_tries = 3
    functions = [scheduler_tick, collect_campaign_job, execute_campaign_job]
    on_startup = _startup
    on_shutdown = _shutdown
