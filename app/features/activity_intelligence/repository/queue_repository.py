"""
Persisted queue store for activity processing.

Every write here is a single statement on an autocommit connection (or a
short explicit transaction), so an acknowledged enqueue survives a crash
and the worker can always resume from the table alone.
"""

from datetime import datetime
from uuid import uuid4

from app.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one, with_db_retry
from app.db.pool import db_pool
from app.features.activity_intelligence.domain import Activity, ActivityRef, QueueEntry
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class QueueRepositoryError(DatabaseError):
    """More specific exception for queue persistence failures."""


class QueueRepository:
    """Postgres-backed queue of activity and opportunity-reprocessing entries."""

    ENTRY_COLUMNS = """
        id, kind, prospect_id, opportunity_id, activity_id, activity_kind, event_date,
        status, enqueued_at, scheduled_for, debounce_reason, retry_count, max_retries,
        processing_started_at, heartbeat_at, processing_completed_at, processing_node,
        lease_id, error_message
    """

    def __init__(self, *, max_retries: int, processing_node: str):
        self.max_retries = max_retries
        self.processing_node = processing_node

    @staticmethod
    def _row_to_entry(row: dict | None) -> QueueEntry | None:
        if not row:
            return None

        activity = None
        if row["kind"] == "activity":
            activity = ActivityRef(
                kind=row["activity_kind"],
                activity_id=str(row["activity_id"]),
                event_date=row["event_date"],
            )

        return QueueEntry(
            id=str(row["id"]),
            kind=row["kind"],
            prospect_id=str(row["prospect_id"]),
            opportunity_id=str(row["opportunity_id"]) if row.get("opportunity_id") else None,
            status=row["status"],
            enqueued_at=row["enqueued_at"],
            activity=activity,
            scheduled_for=row.get("scheduled_for"),
            retry_count=row.get("retry_count", 0),
            max_retries=row.get("max_retries", 3),
            processing_started_at=row.get("processing_started_at"),
            heartbeat_at=row.get("heartbeat_at"),
            processing_completed_at=row.get("processing_completed_at"),
            processing_node=row.get("processing_node"),
            lease_id=row.get("lease_id"),
            error_message=row.get("error_message"),
            debounce_reason=row.get("debounce_reason"),
        )

    async def enqueue_activity(
        self, activity: Activity, opportunity_id: str | None, *, now: datetime
    ) -> QueueEntry:
        """
        Add an activity entry, or revive a finished one for the same activity.

        A pending or processing entry for the activity is left untouched and
        returned as-is.
        """
        query = f"""
            INSERT INTO activity_processing_queue (
                kind, prospect_id, opportunity_id, activity_id, activity_kind,
                event_date, status, enqueued_at, max_retries
            )
            VALUES ('activity', %s, %s, %s, %s, %s, 'pending', %s, %s)
            ON CONFLICT (activity_id) WHERE kind = 'activity'
            DO UPDATE SET
                status = 'pending',
                opportunity_id = COALESCE(EXCLUDED.opportunity_id, activity_processing_queue.opportunity_id),
                event_date = EXCLUDED.event_date,
                enqueued_at = EXCLUDED.enqueued_at,
                retry_count = 0,
                error_message = NULL,
                lease_id = NULL,
                processing_node = NULL,
                processing_started_at = NULL,
                heartbeat_at = NULL,
                processing_completed_at = NULL
            WHERE activity_processing_queue.status IN ('done', 'failed')
            RETURNING {self.ENTRY_COLUMNS}
        """
        params = (
            activity.prospect_id,
            opportunity_id,
            activity.id,
            activity.kind,
            activity.event_date,
            now,
            self.max_retries,
        )

        row = await fetch_one(query, params)
        if row is None:
            # Conflict with an in-flight entry: report the existing one
            row = await fetch_one(
                f"""
                SELECT {self.ENTRY_COLUMNS}
                FROM activity_processing_queue
                WHERE kind = 'activity' AND activity_id = %s
                """,
                (activity.id,),
            )
            if row is None:
                raise QueueRepositoryError(
                    "Failed to enqueue activity", operation="enqueue_activity"
                )
            logger.debug("Activity already queued", activity_id=activity.id, status=row["status"])
            return self._row_to_entry(row)

        logger.info(
            "Activity enqueued",
            activity_id=activity.id,
            prospect_id=activity.prospect_id,
            opportunity_id=opportunity_id,
            event_date=activity.event_date.isoformat(),
        )
        return self._row_to_entry(row)

    async def enqueue_or_reschedule_reprocessing(
        self,
        prospect_id: str,
        opportunity_id: str,
        scheduled_for: datetime,
        reason: str,
        *,
        now: datetime,
    ) -> QueueEntry:
        """
        Upsert the single reprocessing entry of an opportunity.

        Whatever state the existing entry is in, it becomes pending with the
        new debounce horizon and loses its lease, so a sweep still holding the
        old lease can no longer complete it.
        """
        query = f"""
            INSERT INTO activity_processing_queue (
                kind, prospect_id, opportunity_id, status, enqueued_at,
                scheduled_for, debounce_reason, max_retries
            )
            VALUES ('opportunity_reprocessing', %s, %s, 'pending', %s, %s, %s, %s)
            ON CONFLICT (opportunity_id) WHERE kind = 'opportunity_reprocessing'
            DO UPDATE SET
                status = 'pending',
                prospect_id = EXCLUDED.prospect_id,
                scheduled_for = EXCLUDED.scheduled_for,
                debounce_reason = EXCLUDED.debounce_reason,
                enqueued_at = CASE
                    WHEN activity_processing_queue.status IN ('done', 'failed')
                    THEN EXCLUDED.enqueued_at
                    ELSE activity_processing_queue.enqueued_at
                END,
                retry_count = CASE
                    WHEN activity_processing_queue.status IN ('done', 'failed') THEN 0
                    ELSE activity_processing_queue.retry_count
                END,
                error_message = NULL,
                lease_id = NULL,
                processing_node = NULL,
                processing_started_at = NULL,
                heartbeat_at = NULL,
                processing_completed_at = NULL
            RETURNING {self.ENTRY_COLUMNS}
        """
        row = await fetch_one(
            query, (prospect_id, opportunity_id, now, scheduled_for, reason, self.max_retries)
        )
        if row is None:
            raise QueueRepositoryError(
                "Failed to schedule opportunity reprocessing", operation="enqueue_reprocessing"
            )

        logger.info(
            "Opportunity reprocessing scheduled",
            opportunity_id=opportunity_id,
            prospect_id=prospect_id,
            scheduled_for=scheduled_for.isoformat(),
            reason=reason,
        )
        return self._row_to_entry(row)

    async def cancel_reprocessing(self, opportunity_id: str) -> bool:
        """Delete a pending reprocessing entry. Running or finished entries are kept."""
        query = """
            DELETE FROM activity_processing_queue
            WHERE kind = 'opportunity_reprocessing'
              AND opportunity_id = %s
              AND status = 'pending'
        """
        deleted = await execute_query(query, (opportunity_id,))
        if deleted:
            logger.info("Pending opportunity reprocessing cancelled", opportunity_id=opportunity_id)
        return deleted > 0

    async def dequeue_next(self, prospect_id: str, *, now: datetime) -> QueueEntry | None:
        """
        Claim the next eligible entry for one prospect.

        A reprocessing entry whose debounce horizon has passed wins; otherwise
        the pending activity with the earliest event date is claimed. Nothing
        is claimed while another entry of the prospect is processing, in this
        process or any other. The prospect's advisory lock serializes
        concurrent claims so the check and the claim cannot interleave.
        """
        query = f"""
            UPDATE activity_processing_queue
            SET status = 'processing',
                processing_started_at = %s,
                heartbeat_at = %s,
                processing_node = %s,
                lease_id = %s
            WHERE id = (
                SELECT id
                FROM activity_processing_queue
                WHERE prospect_id = %s
                  AND status = 'pending'
                  AND (kind = 'activity' OR scheduled_for <= %s)
                  AND NOT EXISTS (
                      SELECT 1
                      FROM activity_processing_queue busy
                      WHERE busy.prospect_id = %s AND busy.status = 'processing'
                  )
                ORDER BY (kind = 'opportunity_reprocessing') DESC,
                         event_date ASC NULLS LAST,
                         enqueued_at ASC
                FOR UPDATE SKIP LOCKED
                LIMIT 1
            )
            RETURNING {self.ENTRY_COLUMNS}
        """
        params = (now, now, self.processing_node, uuid4().hex, prospect_id, now, prospect_id)

        async with db_pool.transaction() as conn:
            await execute_query(
                "SELECT pg_advisory_xact_lock(hashtext(%s))", (prospect_id,), connection=conn
            )
            row = await fetch_one(query, params, connection=conn)
        return self._row_to_entry(row)

    async def claim(self, entry_id: str, *, now: datetime) -> QueueEntry | None:
        """
        Claim one specific pending entry; None when someone else got it first.

        Used to route a prospect's activities while its sweep holds the
        prospect, so the per-prospect guard of dequeue_next does not apply.
        """
        query = f"""
            UPDATE activity_processing_queue
            SET status = 'processing',
                processing_started_at = %s,
                heartbeat_at = %s,
                processing_node = %s,
                lease_id = %s
            WHERE id = %s AND status = 'pending'
            RETURNING {self.ENTRY_COLUMNS}
        """
        row = await fetch_one(query, (now, now, self.processing_node, uuid4().hex, entry_id))
        return self._row_to_entry(row)

    async def heartbeat(self, entry_id: str, *, now: datetime, lease_id: str | None) -> bool:
        """Stamp a claimed entry as alive. False when the lease is no longer held."""
        query = """
            UPDATE activity_processing_queue
            SET heartbeat_at = %s
            WHERE id = %s
              AND status = 'processing'
              AND lease_id = %s
        """
        return await execute_query(query, (now, entry_id, lease_id)) > 0

    async def release(self, entry_id: str, *, lease_id: str | None) -> bool:
        """Hand a claimed entry back to pending without spending a retry."""
        query = """
            UPDATE activity_processing_queue
            SET status = 'pending',
                processing_started_at = NULL,
                heartbeat_at = NULL,
                processing_node = NULL,
                lease_id = NULL
            WHERE id = %s
              AND status = 'processing'
              AND lease_id = %s
        """
        released = await execute_query(query, (entry_id, lease_id))
        if released:
            logger.info("Queue entry released", entry_id=entry_id)
        return released > 0

    @with_db_retry(max_retries=3)
    async def mark_done(
        self, entry_id: str, *, now: datetime, lease_id: str | None = None
    ) -> bool:
        """Complete an entry; ignored if the lease was taken away by a reschedule."""
        query = """
            UPDATE activity_processing_queue
            SET status = 'done',
                processing_completed_at = %s,
                error_message = NULL,
                lease_id = NULL
            WHERE id = %s
              AND status = 'processing'
              AND (%s::text IS NULL OR lease_id = %s)
        """
        updated = await execute_query(query, (now, entry_id, lease_id, lease_id))
        if not updated:
            logger.info("Queue entry not completed, lease no longer held", entry_id=entry_id)
        return updated > 0

    async def mark_failed(
        self,
        entry_id: str,
        error: str,
        *,
        retryable: bool,
        now: datetime,
        lease_id: str | None = None,
    ) -> str | None:
        """
        Record a failure.

        Retryable failures go back to pending until retry_count exceeds
        max_retries. Returns the resulting status, or None when the lease
        was no longer held.
        """
        truncated_error = (error or "")[:1000]
        query = """
            UPDATE activity_processing_queue
            SET retry_count = retry_count + CASE WHEN %s THEN 1 ELSE 0 END,
                status = CASE
                    WHEN %s AND retry_count + 1 <= max_retries THEN 'pending'
                    ELSE 'failed'
                END,
                processing_completed_at = CASE
                    WHEN %s AND retry_count + 1 <= max_retries THEN NULL
                    ELSE %s
                END,
                processing_started_at = NULL,
                heartbeat_at = NULL,
                processing_node = NULL,
                lease_id = NULL,
                error_message = %s
            WHERE id = %s
              AND status = 'processing'
              AND (%s::text IS NULL OR lease_id = %s)
            RETURNING status, retry_count
        """
        row = await fetch_one(
            query,
            (retryable, retryable, retryable, now, truncated_error, entry_id, lease_id, lease_id),
        )
        if row is None:
            return None

        logger.warning(
            "Queue entry failed",
            entry_id=entry_id,
            status=row["status"],
            retry_count=row["retry_count"],
            retryable=retryable,
            error=truncated_error,
        )
        return row["status"]

    @with_db_retry(max_retries=3)
    async def list_ready_prospects(self, *, now: datetime, limit: int = 100) -> list[str]:
        """Prospects with claimable work, the one waiting longest first."""
        query = """
            SELECT prospect_id, MIN(COALESCE(event_date, scheduled_for)) AS next_at
            FROM activity_processing_queue
            WHERE status = 'pending'
              AND (kind = 'activity' OR scheduled_for <= %s)
            GROUP BY prospect_id
            ORDER BY next_at ASC
            LIMIT %s
        """
        rows = await fetch_all(query, (now, limit))
        return [str(row["prospect_id"]) for row in rows]

    async def list_pending_activity_entries(self, prospect_id: str) -> list[QueueEntry]:
        query = f"""
            SELECT {self.ENTRY_COLUMNS}
            FROM activity_processing_queue
            WHERE prospect_id = %s AND kind = 'activity' AND status = 'pending'
            ORDER BY event_date ASC, enqueued_at ASC
        """
        rows = await fetch_all(query, (prospect_id,))
        return [self._row_to_entry(row) for row in rows]

    async def get_reprocessing_entry(self, opportunity_id: str) -> QueueEntry | None:
        query = f"""
            SELECT {self.ENTRY_COLUMNS}
            FROM activity_processing_queue
            WHERE kind = 'opportunity_reprocessing' AND opportunity_id = %s
        """
        return self._row_to_entry(await fetch_one(query, (opportunity_id,)))

    async def count_activity_entries(self, opportunity_id: str) -> dict[str, int]:
        """Pending/processing activity entries for one opportunity."""
        query = """
            SELECT
                COUNT(*) FILTER (WHERE status = 'pending') AS pending,
                COUNT(*) FILTER (WHERE status = 'processing') AS processing
            FROM activity_processing_queue
            WHERE kind = 'activity' AND opportunity_id = %s
        """
        row = await fetch_one(query, (opportunity_id,)) or {}
        return {"pending": row.get("pending", 0), "processing": row.get("processing", 0)}

    async def absorb_opportunity_activities(self, opportunity_id: str, *, now: datetime) -> int:
        """Close pending activity entries a starting sweep is about to replay."""
        query = """
            UPDATE activity_processing_queue
            SET status = 'done',
                processing_completed_at = %s,
                error_message = NULL
            WHERE kind = 'activity'
              AND opportunity_id = %s
              AND status = 'pending'
        """
        absorbed = await execute_query(query, (now, opportunity_id))
        if absorbed:
            logger.info(
                "Pending activities absorbed by reprocessing sweep",
                opportunity_id=opportunity_id,
                count=absorbed,
            )
        return absorbed

    async def reset_stuck_entries(self, *, stale_before: datetime, now: datetime) -> dict:
        """
        Crash recovery for entries left in processing by a dead worker.

        Staleness is measured from the last heartbeat, so long sweeps and
        slow pipelines of a live worker are left alone. Activity entries go
        back to pending. Interrupted sweeps are failed instead: their
        opportunity was already wiped, so they have to be re-triggered
        rather than silently resumed.
        """
        try:
            async with db_pool.transaction() as conn:
                requeued = await fetch_all(
                    """
                    UPDATE activity_processing_queue
                    SET status = 'pending',
                        processing_started_at = NULL,
                        heartbeat_at = NULL,
                        processing_node = NULL,
                        lease_id = NULL
                    WHERE kind = 'activity'
                      AND status = 'processing'
                      AND COALESCE(heartbeat_at, processing_started_at) < %s
                    RETURNING id
                    """,
                    (stale_before,),
                    connection=conn,
                )
                interrupted = await fetch_all(
                    """
                    UPDATE activity_processing_queue
                    SET status = 'failed',
                        processing_completed_at = %s,
                        processing_node = NULL,
                        lease_id = NULL,
                        error_message = 'Reprocessing interrupted by worker restart'
                    WHERE kind = 'opportunity_reprocessing'
                      AND status = 'processing'
                      AND COALESCE(heartbeat_at, processing_started_at) < %s
                    RETURNING opportunity_id
                    """,
                    (now, stale_before),
                    connection=conn,
                )
        except DatabaseError:
            raise
        except Exception as e:
            raise QueueRepositoryError(
                f"Failed to reset stuck entries: {e}", operation="reset_stuck_entries"
            ) from e

        report = {
            "requeued": len(requeued),
            "interrupted_sweeps": [str(row["opportunity_id"]) for row in interrupted],
        }
        if requeued or interrupted:
            logger.warning("Stuck queue entries reset", **report)
        return report

    async def get_stats(self) -> dict:
        """Entry counts by kind and status plus the oldest pending entry."""
        rows = await fetch_all(
            """
            SELECT kind, status, COUNT(*) AS count, MIN(enqueued_at) AS oldest
            FROM activity_processing_queue
            GROUP BY kind, status
            """
        )

        stats: dict = {"by_kind": {}, "totals": {}, "oldest_pending_at": None}
        oldest_pending = None
        for row in rows:
            stats["by_kind"].setdefault(row["kind"], {})[row["status"]] = row["count"]
            stats["totals"][row["status"]] = stats["totals"].get(row["status"], 0) + row["count"]
            if row["status"] == "pending" and row["oldest"] is not None:
                if oldest_pending is None or row["oldest"] < oldest_pending:
                    oldest_pending = row["oldest"]

        stats["oldest_pending_at"] = oldest_pending.isoformat() if oldest_pending else None
        return stats

    async def cleanup_finished(self, *, older_than: datetime) -> int:
        """Delete done entries completed before the cutoff. Failed entries stay for operators."""
        deleted = await execute_query(
            """
            DELETE FROM activity_processing_queue
            WHERE status = 'done' AND processing_completed_at < %s
            """,
            (older_than,),
        )
        logger.info("Finished queue entries cleaned up", deleted=deleted)
        return deleted
