"""
Queue cleanup job.

Deletes queue entries that finished successfully more than
QUEUE_CLEANUP_RETENTION_DAYS ago and logs a snapshot of the queue.
Failed entries are kept so operators can inspect and re-trigger them.
"""

import asyncio
from datetime import UTC, datetime, timedelta

from app.config import settings
from app.db.helpers import DatabaseError
from app.db.pool import db_pool
from app.features.activity_intelligence.repository.queue_repository import QueueRepository
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class QueueCleanupJob:
    def __init__(self, queue: QueueRepository, retention_days: int, interval_minutes: int):
        self.queue = queue
        self.retention_days = retention_days
        self.interval_minutes = interval_minutes
        self.is_running = False
        self.last_run_time: datetime | None = None
        self.last_deleted = 0

    async def run_once(self) -> dict:
        if self.is_running:
            logger.warning("Queue cleanup already running, skipping this iteration")
            return {"skipped": True, "reason": "already_running"}

        try:
            self.is_running = True
            now = datetime.now(UTC)
            cutoff = now - timedelta(days=self.retention_days)

            deleted = await self.queue.cleanup_finished(older_than=cutoff)
            stats = await self.queue.get_stats()

            self.last_run_time = now
            self.last_deleted = deleted
            result = {
                "job_run": "queue_cleanup",
                "deleted": deleted,
                "cutoff": cutoff.isoformat(),
                "totals": stats["totals"],
                "oldest_pending_at": stats["oldest_pending_at"],
            }
            logger.info("Queue cleanup completed", **result)
            return result

        finally:
            self.is_running = False

    def get_job_status(self) -> dict:
        return {
            "job_name": "queue_cleanup",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "last_deleted": self.last_deleted,
            "retention_days": self.retention_days,
            "interval_minutes": self.interval_minutes,
        }


async def start_queue_cleanup_scheduler() -> None:
    """Run the cleanup every QUEUE_CLEANUP_INTERVAL_MINUTES until the process exits."""
    await db_pool.initialize(role="queue_cleanup")

    job = QueueCleanupJob(
        QueueRepository(
            max_retries=settings.QUEUE_MAX_RETRIES, processing_node=settings.processing_node()
        ),
        retention_days=settings.QUEUE_CLEANUP_RETENTION_DAYS,
        interval_minutes=settings.QUEUE_CLEANUP_INTERVAL_MINUTES,
    )
    logger.info(
        "Starting queue cleanup scheduler",
        interval_minutes=job.interval_minutes,
        retention_days=job.retention_days,
    )

    try:
        while True:
            try:
                await job.run_once()
                await asyncio.sleep(job.interval_minutes * 60)
            except DatabaseError as e:
                logger.error(
                    "Error in queue cleanup scheduler", error=str(e), operation=e.operation
                )
                # Wait a bit before retrying to avoid tight error loops
                await asyncio.sleep(60)
    finally:
        await db_pool.close()
