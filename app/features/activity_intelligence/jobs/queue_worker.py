"""
Activity queue worker.

A single dispatcher per process polls the queue and runs at most one
drain task per prospect, so two entries of the same prospect never run
concurrently while different prospects proceed in parallel. A claimed
entry is heartbeated while it runs; on start the worker resets entries
whose heartbeat went stale because their worker died.
"""

import asyncio
from collections.abc import Awaitable
from datetime import datetime, timedelta

import structlog

from app.db.helpers import DatabaseError
from app.features.activity_intelligence.domain import (
    Clock,
    Decision,
    EngineConfig,
    QueueEntry,
    utc_now,
)
from app.features.activity_intelligence.errors import (
    ActivityIntelligenceError,
    BatchBusyError,
    BatchReprocessingError,
    MissingDependencyError,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

MAX_RECORDED_ERRORS = 50


class QueueWorkerMetrics:
    """Counters for the lifetime of one worker instance."""

    def __init__(self, clock: Clock = utc_now):
        self.clock = clock
        self.reset()

    def reset(self):
        self.start_time = self.clock()
        self.ticks = 0
        self.entries_processed = 0
        self.entries_failed = 0
        self.entries_retried = 0
        self.entries_recovered = 0
        self.actions: dict[str, int] = {}
        self.sweeps: dict[str, int] = {"completed": 0, "cancelled": 0, "failed": 0}
        self.errors: list[dict] = []

    def record_action(self, action: str):
        self.entries_processed += 1
        self.actions[action] = self.actions.get(action, 0) + 1

    def record_sweep(self, status: str):
        self.entries_processed += 1
        self.sweeps[status] = self.sweeps.get(status, 0) + 1

    def record_failure(self, entry_id: str, error: str, status: str | None):
        if status == "pending":
            self.entries_retried += 1
        else:
            self.entries_failed += 1

        self.errors.append(
            {
                "entry_id": entry_id,
                "error": error,
                "status": status,
                "timestamp": self.clock().isoformat(),
            }
        )
        del self.errors[:-MAX_RECORDED_ERRORS]

    def to_dict(self) -> dict:
        return {
            "job_run": "activity_queue",
            "start_time": self.start_time.isoformat(),
            "ticks": self.ticks,
            "entries_processed": self.entries_processed,
            "entries_failed": self.entries_failed,
            "entries_retried": self.entries_retried,
            "entries_recovered": self.entries_recovered,
            "actions": dict(self.actions),
            "sweeps": dict(self.sweeps),
            "errors_count": len(self.errors),
        }


class QueueWorker:
    """
    Polling dispatcher for the activity processing queue.

    Activity entries are routed through the historical decision service;
    reprocessing entries run a sweep on the batch controller. While a
    prospect's slot is held by a sweep, the dispatcher still routes that
    prospect's pending activities so appends and restarts reach the sweep.
    """

    def __init__(
        self,
        queue,
        decision_service,
        batch_controller,
        config: EngineConfig,
        clock: Clock = utc_now,
    ):
        self.queue = queue
        self.decision_service = decision_service
        self.batch_controller = batch_controller
        self.config = config
        self.clock = clock
        self.metrics = QueueWorkerMetrics(clock)
        self.is_running = False
        self.last_tick_time: datetime | None = None
        self._active: dict[str, asyncio.Task] = {}
        self._batch_prospects: dict[str, str] = {}
        self._stop_event: asyncio.Event | None = None

    # =================================================================
    # Loop
    # =================================================================

    async def recover(self) -> dict:
        """Reset entries stuck in processing beyond the staleness threshold."""
        now = self.clock()
        report = await self.queue.reset_stuck_entries(
            stale_before=now - self.config.stale_processing, now=now
        )
        for opportunity_id in report["interrupted_sweeps"]:
            await self.batch_controller.mark_interrupted(opportunity_id)

        self.metrics.entries_recovered += report["requeued"] + len(report["interrupted_sweeps"])
        logger.info("Queue crash recovery finished", **report)
        return report

    async def start(self) -> None:
        """Recover, then poll until stop() is called."""
        if self.is_running:
            logger.warning("Queue worker already running")
            return

        self.is_running = True
        self._stop_event = asyncio.Event()
        logger.info(
            "Queue worker starting",
            processing_node=self.config.processing_node,
            poll_interval_seconds=self.config.poll_interval_seconds,
            max_concurrent_prospects=self.config.max_concurrent_prospects,
        )

        try:
            await self.recover()
            while not self._stop_event.is_set():
                try:
                    await self.tick()
                except DatabaseError as e:
                    logger.error("Queue poll failed", error=str(e), operation=e.operation)

                try:
                    await asyncio.wait_for(
                        self._stop_event.wait(), timeout=self.config.poll_interval_seconds
                    )
                except TimeoutError:
                    pass
        finally:
            await self._drain_active()
            self.is_running = False
            logger.info("Queue worker stopped", **self.metrics.to_dict())

    def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    async def _drain_active(self) -> None:
        if self._active:
            logger.info("Waiting for in-flight prospects", count=len(self._active))
            await asyncio.gather(*self._active.values(), return_exceptions=True)

    async def tick(self) -> int:
        """
        One poll: start drain tasks for ready prospects.

        Returns the number of drain tasks started.
        """
        self.metrics.ticks += 1
        self.last_tick_time = self.clock()

        prospects = await self.queue.list_ready_prospects(
            now=self.last_tick_time, limit=self.config.max_concurrent_prospects * 4
        )

        started = 0
        for prospect_id in prospects:
            if prospect_id in self._active:
                if prospect_id in self._batch_prospects:
                    await self._route_during_batch(prospect_id)
                continue

            if len(self._active) >= self.config.max_concurrent_prospects:
                continue

            task = asyncio.create_task(self.drain_prospect(prospect_id))
            self._active[prospect_id] = task
            task.add_done_callback(lambda _, key=prospect_id: self._active.pop(key, None))
            started += 1

        return started

    async def run_until_idle(self, max_ticks: int = 1000) -> int:
        """Tick until nothing is ready or in flight. Returns the number of ticks run."""
        for ticks in range(1, max_ticks + 1):
            started = await self.tick()
            if not started and not self._active:
                return ticks
            if self._active:
                await asyncio.wait(
                    list(self._active.values()),
                    timeout=self.config.poll_interval_seconds,
                    return_when=asyncio.FIRST_COMPLETED,
                )
        logger.warning("Queue worker did not go idle", max_ticks=max_ticks)
        return max_ticks

    # =================================================================
    # Per-prospect processing
    # =================================================================

    async def drain_prospect(self, prospect_id: str) -> int:
        """Dispatch the prospect's eligible entries one at a time."""
        processed = 0
        with structlog.contextvars.bound_contextvars(prospect_id=prospect_id):
            while True:
                try:
                    entry = await self.queue.dequeue_next(prospect_id, now=self.clock())
                except DatabaseError as e:
                    logger.error("Dequeue failed", error=str(e))
                    break

                if entry is None:
                    break

                await self.dispatch(entry)
                processed += 1

        return processed

    async def dispatch(self, entry: QueueEntry) -> None:
        with structlog.contextvars.bound_contextvars(entry_id=entry.id, entry_kind=entry.kind):
            heartbeat = asyncio.create_task(self._heartbeat(entry))
            try:
                if entry.is_reprocessing:
                    await self._run_sweep(entry)
                else:
                    await self._settle(
                        entry, self.decision_service.route(entry.activity.activity_id)
                    )
            finally:
                heartbeat.cancel()
                await asyncio.gather(heartbeat, return_exceptions=True)

    async def _heartbeat(self, entry: QueueEntry) -> None:
        """
        Keep a claimed entry fresh so crash recovery elsewhere leaves it alone.

        A sweep whose lease was taken away (a restart from another process)
        is cancelled at its next boundary.
        """
        while True:
            await asyncio.sleep(self.config.heartbeat_interval_seconds)
            try:
                held = await self.queue.heartbeat(
                    entry.id, now=self.clock(), lease_id=entry.lease_id
                )
            except DatabaseError as e:
                logger.warning("Queue heartbeat failed", error=str(e))
                continue

            if not held:
                logger.info("Queue entry lease lost")
                if entry.is_reprocessing:
                    self.batch_controller.abandon(entry.opportunity_id, "reprocessing lease lost")
                return

    async def _run_sweep(self, entry: QueueEntry) -> None:
        self._batch_prospects[entry.prospect_id] = entry.opportunity_id
        try:
            outcome = await self.batch_controller.execute(entry)
        except (ActivityIntelligenceError, DatabaseError) as e:
            await self._fail(entry, e, retryable=False)
            return
        finally:
            self._batch_prospects.pop(entry.prospect_id, None)

        self.metrics.record_sweep(outcome.status)
        if outcome.status == "completed":
            await self.queue.mark_done(entry.id, now=self.clock(), lease_id=entry.lease_id)
        elif outcome.status == "failed":
            error = BatchReprocessingError(outcome.error or "Reprocessing sweep failed")
            await self._fail(entry, error, retryable=False)
        # cancelled: the restart already rescheduled the entry and took its lease

    async def _route_during_batch(self, prospect_id: str) -> None:
        """
        Route pending activities of a prospect whose slot a sweep holds.

        Activities that would be processed immediately keep waiting so the
        prospect's chronological order is preserved; appends, schedules and
        restarts are applied now. Nothing here runs the pipeline: an append
        the sweep can no longer take goes back to pending for the prospect's
        drain task.
        """
        for pending in await self.queue.list_pending_activity_entries(prospect_id):
            try:
                decision = await self.decision_service.decide_activity(pending.activity.activity_id)
            except (ActivityIntelligenceError, DatabaseError) as e:
                logger.debug(
                    "Deferring activity during sweep", entry_id=pending.id, error=str(e)
                )
                continue

            if decision.action == "process_now":
                continue

            entry = await self.queue.claim(pending.id, now=self.clock())
            if entry is None:
                continue

            with structlog.contextvars.bound_contextvars(
                prospect_id=prospect_id, entry_id=entry.id, entry_kind=entry.kind
            ):
                if decision.action == "append_to_batch":
                    await self._settle(entry, self._append(decision))
                else:
                    await self._settle(entry, self.decision_service.apply(decision))

    async def _append(self, decision: Decision) -> Decision:
        opportunity_id = decision.opportunity.id
        if not await self.batch_controller.append_activity(opportunity_id, decision.activity):
            raise BatchBusyError(f"Sweep of opportunity {opportunity_id} is settling")
        return decision

    async def _settle(self, entry: QueueEntry, work: Awaitable[Decision]) -> None:
        """Await routing work for an activity entry and record the result on the queue."""
        try:
            decision = await work
        except BatchBusyError as e:
            logger.info("Activity handed back to the queue", reason=str(e))
            await self.queue.release(entry.id, lease_id=entry.lease_id)
            return
        except MissingDependencyError as e:
            await self._fail(entry, e, retryable=False)
            return
        except (ActivityIntelligenceError, DatabaseError) as e:
            await self._fail(entry, e, retryable=e.recoverable)
            return
        except Exception as e:
            logger.error(
                "Unexpected error processing queue entry",
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._fail(entry, e, retryable=True)
            return

        self.metrics.record_action(decision.action)
        await self.queue.mark_done(entry.id, now=self.clock(), lease_id=entry.lease_id)

    async def _fail(self, entry: QueueEntry, error: Exception, *, retryable: bool) -> None:
        status = await self.queue.mark_failed(
            entry.id,
            f"{type(error).__name__}: {error}",
            retryable=retryable,
            now=self.clock(),
            lease_id=entry.lease_id,
        )
        self.metrics.record_failure(entry.id, str(error), status)

    # =================================================================
    # Status
    # =================================================================

    def get_job_status(self) -> dict:
        return {
            "job_name": "activity_queue",
            "is_running": self.is_running,
            "last_tick_time": self.last_tick_time.isoformat() if self.last_tick_time else None,
            "active_prospects": sorted(self._active),
            "batch_prospects": dict(self._batch_prospects),
            "poll_interval_seconds": self.config.poll_interval_seconds,
            "max_concurrent_prospects": self.config.max_concurrent_prospects,
            "processing_node": self.config.processing_node,
            "metrics": self.metrics.to_dict(),
        }

    def health_check(self) -> dict:
        """
        Health check for the queue worker.

        A running worker that has not polled for ten poll intervals is
        reported as stalled.
        """
        try:
            now = self.clock()
            stall_threshold = timedelta(seconds=max(self.config.poll_interval_seconds * 10, 30))
            is_stalled = (
                self.is_running
                and self.last_tick_time is not None
                and (now - self.last_tick_time) > stall_threshold
            )

            health_status = {
                "healthy": not is_stalled,
                "service": "activity_queue_worker",
                "is_running": self.is_running,
                "last_tick_time": self.last_tick_time.isoformat() if self.last_tick_time else None,
                "is_stalled": is_stalled,
                "active_prospects": len(self._active),
                "configuration": {
                    "poll_interval_seconds": self.config.poll_interval_seconds,
                    "max_concurrent_prospects": self.config.max_concurrent_prospects,
                    "ai_concurrency": self.config.ai_concurrency,
                },
            }

            if is_stalled:
                health_status["warning"] = (
                    f"No poll for {(now - self.last_tick_time).total_seconds():.0f} seconds"
                )

            return health_status

        except Exception as e:
            logger.error("Queue worker health check failed", error=str(e))
            return {
                "healthy": False,
                "service": "activity_queue_worker",
                "error": str(e),
            }
