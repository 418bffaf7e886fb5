from __future__ import annotations

import argparse
import asyncio
import json

from accessreview.core.logging import configure_logging
from accessreview.services.scheduler import PHASES, run_scheduler_tick


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one access review scheduler tick.")
    parser.add_argument(
        "--phase",
        action="append",
        choices=PHASES,
        help="Restrict the tick to one phase; repeat to run several. Defaults to all phases.",
    )
    return parser.parse_args()


async def _main(phases: list[str] | None) -> None:
    # Cron-friendly single tick; the Redis lock keeps it from overlapping the worker loop.
    configure_logging()
    result = await run_scheduler_tick(phases=phases)
    print(json.dumps(result, indent=2, default=str))


if __name__ == "__main__":
    args = _parse_args()
    asyncio.run(_main(args.phase))
