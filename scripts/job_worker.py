from __future__ import annotations

import asyncio

from beacon.core.logging import configure_logging
from beacon.workers.job_worker import run_workers


async def _main() -> None:
    # Boot both job queues in one process; each keeps its own concurrency bound.
    configure_logging()
    await run_workers()


if __name__ == "__main__":
    asyncio.run(_main())
