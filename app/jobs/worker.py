"""
Entry point for the queue background processes.

    python -m app.jobs.worker activity_queue        # long-running queue worker
    python -m app.jobs.worker activity_queue_drain  # work the ready backlog, then exit
    python -m app.jobs.worker queue_cleanup         # periodic retention cleanup

The job name comes from the first CLI argument, else WORKER_JOB, else
activity_queue. Logging is configured here once, tagged with the job name.
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable

from app.config import settings
from app.infrastructure.observability.logging import get_logger, setup_logging
from app.jobs.activity_queue_job import drain_activity_queue, start_activity_queue_worker
from app.jobs.queue_cleanup_job import start_queue_cleanup_scheduler

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[None]]

JOB_REGISTRY: dict[str, JobCoroutine] = {
    "activity_queue": start_activity_queue_worker,
    "activity_queue_drain": drain_activity_queue,
    "queue_cleanup": start_queue_cleanup_scheduler,
}


def _resolve_job_name() -> str:
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", "activity_queue").strip().lower()


async def run_worker(job_name: str | None = None) -> None:
    """Configure logging for the job and run it to completion."""
    name = (job_name or _resolve_job_name()).strip().lower()
    job = JOB_REGISTRY.get(name)
    if job is None:
        raise ValueError(
            f"Unknown worker job '{name}'. Available jobs: {', '.join(sorted(JOB_REGISTRY))}"
        )

    setup_logging(log_level=settings.LOG_LEVEL, role=name, json_logs=settings.LOG_JSON)
    logger.info(
        "Starting background worker",
        job=name,
        processing_node=settings.processing_node(),
        environment=settings.environment,
    )
    await job()


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
