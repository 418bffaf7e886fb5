from __future__ import annotations

import os
import tempfile
from pathlib import Path

# Point settings at a throwaway SQLite database before any accessreview module builds the engine.
_TEST_DB_DIR = Path(tempfile.mkdtemp(prefix="accessreview-tests-"))
os.environ["DATABASE_URL"] = os.environ.get(
    "TEST_DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB_DIR / 'accessreview.db'}"
)
os.environ["REDIS_URL"] = ""
os.environ["PERMISSION_SOURCE"] = "fake"
os.environ["SCHEDULER_ENABLED"] = "false"

import pytest  # noqa: E402

from accessreview.core.config import get_settings  # noqa: E402
from accessreview.domain.models import Base  # noqa: E402
from accessreview.persistence.db import engine  # noqa: E402
from accessreview.providers.permissions import factory  # noqa: E402
from accessreview.services.scheduler import reset_scheduler_state  # noqa: E402


@pytest.fixture(autouse=True)
async def reset_database_between_tests() -> None:
    # Rebuild the schema per test so counters and dedup checks never see leftovers.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Scheduler locks and the shared fake source are process-wide; start every test clean.
    reset_scheduler_state()
    factory._fake_source = None
    yield
    reset_scheduler_state()
    factory._fake_source = None
    get_settings.cache_clear()
