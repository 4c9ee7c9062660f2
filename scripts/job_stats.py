from __future__ import annotations

import asyncio

from beacon.core.logging import configure_logging
from beacon.services.container import build_container


async def print_stats() -> None:
    # Report per-queue counts without starting any workers.
    configure_logging()
    container = build_container(register_schedules=False)
    try:
        for scheduler in container.schedulers():
            stats = await scheduler.get_stats()
            counts = " ".join(f"{key}={value}" for key, value in stats.as_dict().items())
            print(f"queue={scheduler.queue_name} {counts}")
    finally:
        await container.aclose()


if __name__ == "__main__":
    asyncio.run(print_stats())
