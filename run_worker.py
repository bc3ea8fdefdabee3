#!/usr/bin/env python
"""Run the pipeline workers: three queue lanes plus the cleanup scheduler."""

import asyncio
import logging
import signal

from app.config import get_settings
from app.services.queue.scheduler import CleanupScheduler
from app.workers.settings import mask_redis_url
from app.workers.tasks import build_queue_manager, build_worker_context, shutdown

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("run_worker")


async def main():
    """Run the workers until SIGINT/SIGTERM."""
    ctx = build_worker_context()
    ctx["file_store"].initialize()

    manager = build_queue_manager(ctx)
    logger.info("Starting workers against %s", mask_redis_url(settings.redis_url))
    await manager.start()

    scheduler = CleanupScheduler(manager)
    scheduler.start()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        await stop.wait()
    finally:
        logger.info("Stopping workers...")
        await scheduler.stop()
        await manager.stop()
        await shutdown()


if __name__ == "__main__":
    asyncio.run(main())
