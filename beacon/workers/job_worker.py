from __future__ import annotations

import asyncio
import logging
import signal

from beacon.core.config import Settings, get_settings
from beacon.services.container import build_container


logger = logging.getLogger(__name__)


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops lack signal handlers; Ctrl+C still raises KeyboardInterrupt.
            logger.debug("signal_handler_unsupported signal=%s", sig)


async def run_workers(settings: Settings | None = None, *, stop: asyncio.Event | None = None) -> None:
    # Run the monitoring and cleanup queues in one process until signalled.
    settings = settings or get_settings()
    stop = stop or asyncio.Event()
    _install_signal_handlers(stop)
    container = build_container(settings)
    try:
        await container.start()
        logger.info(
            "job_workers_running backend=%s queues=%s",
            settings.job_backend,
            ",".join(scheduler.queue_name for scheduler in container.schedulers()),
        )
        await stop.wait()
    finally:
        await container.aclose()
        logger.info("job_workers_stopped")
