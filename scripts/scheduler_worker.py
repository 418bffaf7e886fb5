from __future__ import annotations

import asyncio

from accessreview.core.logging import configure_logging
from accessreview.services.scheduler import run_scheduler_loop


async def _main() -> None:
    # Boot a dedicated scheduler loop so schedules fire without API traffic or an arq worker.
    configure_logging()
    await run_scheduler_loop()


if __name__ == "__main__":
    asyncio.run(_main())
