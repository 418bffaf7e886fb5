from __future__ import annotations

import asyncio

from accessreview.domain.models import Base
from accessreview.persistence.db import engine


async def init_db() -> None:
    # Local and SQLite setups skip alembic and create the schema straight from the models.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()
    print("schema_created=true")


if __name__ == "__main__":
    asyncio.run(init_db())
