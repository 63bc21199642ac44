"""
Batch reprocessing controller.

Owns the per-opportunity sweep lifecycle:

    idle -> scheduled -> running -> idle
                ^           |
                +- restart -+

Scheduling is a debounced upsert of the opportunity's single reprocessing
queue entry. A running sweep wipes the opportunity's intelligence and
replays every activity in chronological order through the pipeline; a
restart trips its cancellation token, which the sweep honors between
activities and right before each commit.
"""

from __future__ import annotations

import time
from bisect import insort
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Literal

from app.features.activity_intelligence.domain import (
    Activity,
    BatchStatus,
    CancellationToken,
    Clock,
    EngineConfig,
    ProcessingStatus,
    QueueEntry,
    sort_activities,
    utc_now,
)
from app.features.activity_intelligence.errors import (
    BatchReprocessingError,
    MissingDependencyError,
    SweepCancelled,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

SweepStatus = Literal["completed", "cancelled", "failed"]


def _sort_key(activity: Activity):
    return (activity.event_date, activity.created_at, activity.id)


@dataclass
class SweepHandle:
    """In-memory state of one running sweep."""

    opportunity_id: str
    token: CancellationToken = field(default_factory=CancellationToken)
    worklist: list[Activity] = field(default_factory=list)
    seen: set[str] = field(default_factory=set)
    cursor: int = 0  # next worklist index to hand to the pipeline
    completed: int = 0

    @property
    def processed(self) -> int:
        return self.completed

    @property
    def total(self) -> int:
        return len(self.worklist)

    def merge(self, activities: list[Activity]) -> int:
        """Insert unseen activities into the unprocessed remainder, keeping it sorted."""
        added = 0
        remainder = self.worklist[self.cursor :]
        for activity in activities:
            if activity.id in self.seen:
                continue
            self.seen.add(activity.id)
            insort(remainder, activity, key=_sort_key)
            added += 1
        if added:
            self.worklist[self.cursor :] = remainder
        return added


@dataclass(slots=True)
class SweepOutcome:
    opportunity_id: str
    status: SweepStatus
    processed: int = 0
    total: int = 0
    error: str | None = None
    duration_ms: int = 0


class BatchReprocessingController:
    """One instance per process; running sweeps are tracked in memory, everything else in the queue."""

    def __init__(
        self,
        queue,
        repository,
        pipeline,
        config: EngineConfig,
        clock: Clock = utc_now,
    ):
        self.queue = queue
        self.repository = repository
        self.pipeline = pipeline
        self.config = config
        self.clock = clock
        self._running: dict[str, SweepHandle] = {}

    # =================================================================
    # Lifecycle
    # =================================================================

    async def schedule(
        self,
        prospect_id: str,
        opportunity_id: str,
        delay: timedelta | None = None,
        reason: str = "historical activity",
    ) -> QueueEntry:
        """Upsert the reprocessing entry with a fresh debounce horizon."""
        now = self.clock()
        scheduled_for = now + (delay if delay is not None else self.config.debounce_delay)
        return await self.queue.enqueue_or_reschedule_reprocessing(
            prospect_id, opportunity_id, scheduled_for, reason, now=now
        )

    async def cancel(self, opportunity_id: str) -> bool:
        return await self.queue.cancel_reprocessing(opportunity_id)

    async def restart(
        self, prospect_id: str, opportunity_id: str, reason: str = "restart"
    ) -> QueueEntry:
        """Stop a running sweep at its next boundary and schedule a new one."""
        self.abandon(opportunity_id, reason)
        return await self.schedule(prospect_id, opportunity_id, reason=reason)

    def abandon(self, opportunity_id: str, reason: str) -> bool:
        """Trip the cancellation token of a sweep running in this process."""
        handle = self._running.get(opportunity_id)
        if handle is None or handle.token.cancelled:
            return False

        handle.token.cancel(reason)
        logger.info(
            "Running reprocessing sweep cancelled",
            opportunity_id=opportunity_id,
            processed=handle.processed,
            total=handle.total,
            reason=reason,
        )
        return True

    async def status(self, opportunity_id: str) -> BatchStatus:
        handle = self._running.get(opportunity_id)
        if handle is not None:
            return BatchStatus(state="running", processed=handle.processed, total=handle.total)

        entry = await self.queue.get_reprocessing_entry(opportunity_id)
        if entry is None or entry.status in ("done", "failed"):
            return BatchStatus(state="idle")
        if entry.status == "pending":
            return BatchStatus(state="scheduled")

        # Claimed by another worker process, or settling here; progress is persisted on the opportunity
        opportunity = await self.repository.get_opportunity(opportunity_id)
        progress = opportunity.processing_status if opportunity else ProcessingStatus()
        return BatchStatus(state="running", processed=progress.processed, total=progress.total)

    async def is_active(self, opportunity_id: str) -> bool:
        return (await self.status(opportunity_id)).state != "idle"

    def is_running(self, opportunity_id: str) -> bool:
        return opportunity_id in self._running

    async def append_activity(self, opportunity_id: str, activity: Activity) -> bool:
        """
        Hand a real-time activity to the opportunity's batch.

        True only when the batch is guaranteed to process the activity: the
        sweep runs in this process and has not finished its worklist, or the
        sweep is still scheduled and will fetch every activity when it
        starts. A sweep claimed by another process, or one that is already
        settling, cannot take it, so False is returned and the caller keeps
        the activity queued.
        """
        handle = self._running.get(opportunity_id)
        if handle is not None:
            added = handle.merge([activity])
            logger.info(
                "Activity appended to running sweep",
                opportunity_id=opportunity_id,
                activity_id=activity.id,
                added=bool(added),
                total=handle.total,
            )
            return True

        entry = await self.queue.get_reprocessing_entry(opportunity_id)
        if entry is None or entry.status != "pending":
            return False

        logger.debug(
            "Activity absorbed by scheduled sweep",
            opportunity_id=opportunity_id,
            activity_id=activity.id,
        )
        return True

    # =================================================================
    # Execution
    # =================================================================

    async def execute(self, entry: QueueEntry) -> SweepOutcome:
        """
        Run one sweep for the opportunity of a claimed reprocessing entry.

        Returns a SweepOutcome instead of raising so the worker can settle
        the queue entry; only the cancellation token and pipeline errors
        end a sweep early.
        """
        opportunity_id = entry.opportunity_id
        if opportunity_id in self._running:
            raise BatchReprocessingError(
                f"Sweep already running for opportunity {opportunity_id}", operation="execute"
            )

        handle = SweepHandle(opportunity_id=opportunity_id)
        self._running[opportunity_id] = handle
        log = logger.bind(opportunity_id=opportunity_id, entry_id=entry.id)
        start_time = time.time()
        started_at = self.clock()

        try:
            opportunity = await self.repository.get_opportunity(opportunity_id)
            if opportunity is None:
                raise MissingDependencyError(
                    f"Opportunity {opportunity_id} not found", operation="execute"
                )

            await self.queue.absorb_opportunity_activities(opportunity_id, now=started_at)
            await self.repository.reset_opportunity_intelligence(opportunity_id)

            handle.merge(sort_activities(await self.repository.list_opportunity_activities(opportunity_id)))
            await self._save_progress(handle, "processing", started_at)
            log.info("Reprocessing sweep started", total=handle.total, reason=entry.debounce_reason)

            while True:
                while handle.cursor < len(handle.worklist):
                    handle.token.raise_if_cancelled(opportunity_id)

                    if handle.cursor and handle.cursor % self.config.sweep_refresh_interval == 0:
                        await self._refresh(handle, log)

                    activity = handle.worklist[handle.cursor]
                    handle.cursor += 1
                    await self.pipeline.process_activity_for_intelligence(
                        activity.id, opportunity_id=opportunity_id, cancellation=handle.token
                    )
                    handle.completed += 1
                    await self._save_progress(handle, "processing", started_at)

                handle.token.raise_if_cancelled(opportunity_id)
                await self._refresh(handle, log)
                # No await between this check and the pop: appends either land
                # in the worklist before it or find no running sweep after it
                if handle.cursor >= len(handle.worklist):
                    self._running.pop(opportunity_id, None)
                    break

            duration_ms = int((time.time() - start_time) * 1000)
            await self._save_progress(handle, "completed", started_at, duration_ms=duration_ms)
            log.info(
                "Reprocessing sweep completed", processed=handle.processed, duration_ms=duration_ms
            )
            return SweepOutcome(
                opportunity_id=opportunity_id,
                status="completed",
                processed=handle.processed,
                total=handle.total,
                duration_ms=duration_ms,
            )

        except SweepCancelled:
            # Already-committed activities stay; the rescheduled sweep wipes them anyway
            await self._save_progress(handle, "idle", started_at)
            log.info(
                "Reprocessing sweep stopped for restart",
                processed=handle.processed,
                total=handle.total,
                reason=handle.token.reason,
            )
            return SweepOutcome(
                opportunity_id=opportunity_id,
                status="cancelled",
                processed=handle.processed,
                total=handle.total,
                duration_ms=int((time.time() - start_time) * 1000),
            )

        except Exception as e:
            duration_ms = int((time.time() - start_time) * 1000)
            log.error(
                "Reprocessing sweep failed",
                processed=handle.processed,
                total=handle.total,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._save_progress(
                handle, "failed", started_at, duration_ms=duration_ms, error=str(e)
            )
            return SweepOutcome(
                opportunity_id=opportunity_id,
                status="failed",
                processed=handle.processed,
                total=handle.total,
                error=str(e),
                duration_ms=duration_ms,
            )

        finally:
            self._running.pop(opportunity_id, None)

    async def _refresh(self, handle: SweepHandle, log) -> None:
        added = handle.merge(
            await self.repository.list_opportunity_activities(handle.opportunity_id)
        )
        if added:
            log.info("Sweep worklist refreshed", added=added, total=handle.total)

    async def _save_progress(
        self,
        handle: SweepHandle,
        state: str,
        started_at: datetime,
        *,
        duration_ms: int | None = None,
        error: str | None = None,
    ) -> None:
        finished = state in ("completed", "failed")
        status = ProcessingStatus(
            state=state,
            processed=handle.processed,
            total=handle.total,
            started_at=started_at,
            completed_at=self.clock() if finished else None,
            error=error,
            duration_ms=duration_ms,
        )
        try:
            await self.repository.update_processing_status(handle.opportunity_id, status)
        except Exception as e:
            if finished:
                raise
            # Progress counters are informational; the sweep itself carries on
            logger.warning(
                "Failed to persist sweep progress",
                opportunity_id=handle.opportunity_id,
                error=str(e),
            )

    async def mark_interrupted(self, opportunity_id: str) -> None:
        """Record a sweep that a dead worker left half-done."""
        await self.repository.update_processing_status(
            opportunity_id,
            ProcessingStatus(
                state="failed",
                completed_at=self.clock(),
                error="Reprocessing interrupted by worker restart",
            ),
        )

    # =================================================================
    # Status surface
    # =================================================================

    async def get_processing_status(self, opportunity_id: str) -> dict[str, Any]:
        """
        Status for UI consumption.

        Returns ``{type: batch|individual, status, processed?, total?, pending?}``.
        """
        handle = self._running.get(opportunity_id)
        if handle is not None:
            return {
                "type": "batch",
                "status": "processing",
                "processed": handle.processed,
                "total": handle.total,
            }

        opportunity = await self.repository.get_opportunity(opportunity_id)
        if opportunity is None:
            raise MissingDependencyError(
                f"Opportunity {opportunity_id} not found", operation="get_processing_status"
            )
        persisted = opportunity.processing_status

        entry = await self.queue.get_reprocessing_entry(opportunity_id)
        if entry is not None and entry.status == "pending":
            return {"type": "batch", "status": "scheduled"}
        if entry is not None and entry.status == "processing":
            return {
                "type": "batch",
                "status": "processing",
                "processed": persisted.processed,
                "total": persisted.total,
            }

        counts = await self.queue.count_activity_entries(opportunity_id)
        if counts["processing"]:
            return {"type": "individual", "status": "processing", "pending": counts["pending"]}
        if counts["pending"]:
            return {"type": "individual", "status": "pending", "pending": counts["pending"]}

        if persisted.state in ("completed", "failed"):
            status: dict[str, Any] = {
                "type": "batch",
                "status": persisted.state,
                "processed": persisted.processed,
                "total": persisted.total,
            }
            if persisted.error:
                status["error"] = persisted.error
            return status

        return {"type": "individual", "status": "idle"}
