"""
Error taxonomy for the activity intelligence engine.

Every error carries ``operation`` and ``recoverable`` the same way
DatabaseError does, so the queue worker can decide between a retry and
a terminal failure without inspecting concrete types.
"""


class ActivityIntelligenceError(Exception):
    """Base exception for queue, decision, batch and pipeline failures."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class MissingDependencyError(ActivityIntelligenceError):
    """An activity, opportunity or contact the work depends on does not exist."""

    def __init__(self, message: str, operation: str | None = None):
        super().__init__(message, operation=operation, recoverable=False)


class PipelineError(ActivityIntelligenceError):
    """An AI phase of the intelligence pipeline failed."""


class PipelineTimeoutError(PipelineError):
    """An AI call or the commit exceeded its bounded wait time."""


class CommitError(PipelineError):
    """The Phase 5 transaction aborted; nothing from Phases 1-4 was persisted."""


class SweepCancelled(ActivityIntelligenceError):
    """A running reprocessing sweep observed a restart signal."""

    def __init__(self, opportunity_id: str):
        super().__init__(
            f"Reprocessing sweep for opportunity {opportunity_id} was restarted",
            operation="sweep",
            recoverable=True,
        )
        self.opportunity_id = opportunity_id


class BatchReprocessingError(ActivityIntelligenceError):
    """A reprocessing sweep failed; it is not retried until re-triggered."""

    def __init__(self, message: str, operation: str | None = "execute"):
        super().__init__(message, operation=operation, recoverable=False)


class BatchBusyError(ActivityIntelligenceError):
    """
    The opportunity's sweep is held elsewhere and cannot take the activity now.

    The queue entry goes back to pending without spending a retry; the
    worker that owns the sweep routes it.
    """

    def __init__(self, message: str, operation: str | None = "append_activity"):
        super().__init__(message, operation=operation, recoverable=True)
