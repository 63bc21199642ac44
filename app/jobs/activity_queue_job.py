"""
Activity queue worker process.

``activity_queue`` runs the worker of a freshly built intelligence engine
until the process receives SIGINT/SIGTERM; deploy one per worker
container. ``activity_queue_drain`` recovers stuck entries, works the
queue until nothing is ready and exits, which suits backfills and cron.

    python -m app.jobs.worker activity_queue
"""

import asyncio
import signal

from app.config import settings
from app.db.pool import db_pool
from app.features.activity_intelligence.bootstrap import build_engine_from_settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


async def start_activity_queue_worker() -> None:
    """Initialize the pool, build the engine and poll the queue until signalled."""
    await db_pool.initialize(role="activity_queue")

    engine = build_engine_from_settings(settings)
    worker = engine.worker

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, worker.stop)
        except NotImplementedError:
            # Windows event loops do not support signal handlers
            logger.warning("Signal handler not supported", signal=sig.name)

    try:
        await worker.start()
    finally:
        logger.info("Activity queue worker exiting", **worker.metrics.to_dict())
        await db_pool.close()


async def drain_activity_queue() -> None:
    """Recover, process everything currently ready, then exit."""
    await db_pool.initialize(role="activity_queue_drain")

    worker = build_engine_from_settings(settings).worker
    try:
        await worker.recover()
        ticks = await worker.run_until_idle()
        logger.info("Activity queue drained", ticks=ticks, **worker.metrics.to_dict())
    finally:
        await db_pool.close()
