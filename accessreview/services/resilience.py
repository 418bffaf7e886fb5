from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx
from redis.asyncio import Redis
from redis.exceptions import RedisError

from accessreview.core.config import get_settings
from accessreview.core.errors import PermissionSourceTimeoutError


logger = logging.getLogger(__name__)


_lock_client: Redis | None = None
_lock_client_loop: asyncio.AbstractEventLoop | None = None
_lock_client_guard = asyncio.Lock()


async def _connect(redis_url: str) -> Redis | None:
    client = Redis.from_url(redis_url, encoding="utf-8", decode_responses=True)
    try:
        await client.ping()
    except (RedisError, OSError) as exc:
        # Scheduler ticks fall back to the in-process lock.
        logger.warning("scheduler_redis_unreachable", extra={"error": str(exc)})
        return None
    return client


async def get_resilience_redis() -> Redis | None:
    # One client per event loop; tests and scripts spin up fresh loops.
    global _lock_client, _lock_client_loop
    redis_url = get_settings().redis_url
    if not redis_url:
        return None
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    if _lock_client is not None and _lock_client_loop is loop:
        return _lock_client
    async with _lock_client_guard:
        if _lock_client is None or _lock_client_loop is not loop:
            client = await _connect(redis_url)
            if client is None:
                return None
            _lock_client, _lock_client_loop = client, loop
    return _lock_client


@dataclass(frozen=True)
class RetryPolicy:
    timeout_s: float
    max_attempts: int
    backoff_ms: int

    def delay_s(self, attempt: int) -> float:
        # Exponential in the attempt number, jittered by +/-50%.
        base = (self.backoff_ms / 1000.0) * (2 ** (attempt - 1))
        return base * random.uniform(0.5, 1.5)


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_s=float(settings.permission_source_timeout_s),
        max_attempts=max(int(settings.graph_max_attempts), 1),
        backoff_ms=int(settings.graph_retry_backoff_ms),
    )


def is_transient(exc: Exception) -> bool:
    # Throttling, server faults and dropped connections; auth and 4xx errors are final.
    if isinstance(exc, (TimeoutError, OSError, httpx.TransportError)):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and (status == 429 or status >= 500)


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
) -> Any:
    policy = policy or default_retry_policy()
    should_retry = retryable or is_transient
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_s)
        except Exception as exc:  # noqa: BLE001 - re-raised unless transient
            if attempt == policy.max_attempts or not should_retry(exc):
                raise
            logger.info(
                "permission_source_retry",
                extra={"attempt": attempt, "error": str(exc)},
            )
            await asyncio.sleep(policy.delay_s(attempt))
    raise RuntimeError("retry policy allows no attempts")


async def call_with_timeout(
    func: Callable[[], Awaitable[Any]],
    *,
    timeout_s: float | None = None,
    operation: str = "permission_source",
) -> Any:
    # Bound every permission source call so one slow resource cannot stall a campaign.
    limit = timeout_s if timeout_s is not None else float(get_settings().permission_source_timeout_s)
    try:
        return await asyncio.wait_for(func(), timeout=limit)
    except asyncio.TimeoutError as exc:
        raise PermissionSourceTimeoutError(f"{operation} timed out after {limit:.1f}s") from exc


async def call_source(
    source: Any,
    func: Callable[[], Awaitable[Any]],
    *,
    timeout_s: float | None = None,
    operation: str = "permission_source",
) -> Any:
    # An outer deadline would cut off retries and paging in sources that bound each request.
    if getattr(source, "bounds_own_calls", False):
        return await func()
    return await call_with_timeout(func, timeout_s=timeout_s, operation=operation)
