"""
Domain models for the activity intelligence feature.

Queue entries, the activity variants, opportunities and contacts are
plain dataclasses shared by the repositories, the services and the API
layer. Intelligence payloads live in domain.intelligence.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

from ..errors import SweepCancelled
from .intelligence import ContactIntelligence, OpportunityIntelligence

QueueItemKind = Literal["activity", "opportunity_reprocessing"]
QueueStatus = Literal["pending", "processing", "done", "failed"]
ActivityKind = Literal["email", "calendar", "generic"]
BatchState = Literal["idle", "scheduled", "running"]
ProcessingState = Literal["idle", "processing", "completed", "failed"]
DecisionAction = Literal[
    "process_now", "append_to_batch", "schedule_reprocessing", "restart_reprocessing"
]

ACTIVITY_KINDS: tuple[str, ...] = ("email", "calendar", "generic")


@dataclass(slots=True)
class ActivityRef:
    """Pointer from a queue entry to one activity row."""

    kind: ActivityKind
    activity_id: str
    event_date: datetime


@dataclass(slots=True)
class EmailActivity:
    id: str
    prospect_id: str
    opportunity_id: str | None
    event_date: datetime
    created_at: datetime
    subject: str
    body: str
    sender: str
    recipients: list[str] = field(default_factory=list)
    ai_summary: str | None = None
    processed_for_opportunities: set[str] = field(default_factory=set)
    contact_ids: list[str] = field(default_factory=list)
    kind: Literal["email"] = "email"


@dataclass(slots=True)
class CalendarActivity:
    id: str
    prospect_id: str
    opportunity_id: str | None
    event_date: datetime
    created_at: datetime
    title: str
    description: str | None = None
    ends_at: datetime | None = None
    attendees: list[str] = field(default_factory=list)
    ai_summary: str | None = None
    processed_for_opportunities: set[str] = field(default_factory=set)
    contact_ids: list[str] = field(default_factory=list)
    kind: Literal["calendar"] = "calendar"


@dataclass(slots=True)
class GenericActivity:
    id: str
    prospect_id: str
    opportunity_id: str | None
    event_date: datetime
    created_at: datetime
    activity_type: str  # "call", "note", "dataroom_visit", ...
    title: str | None = None
    content: str | None = None
    ai_summary: str | None = None
    processed_for_opportunities: set[str] = field(default_factory=set)
    contact_ids: list[str] = field(default_factory=list)
    kind: Literal["generic"] = "generic"


Activity = EmailActivity | CalendarActivity | GenericActivity


def activity_ref(activity: Activity) -> ActivityRef:
    return ActivityRef(kind=activity.kind, activity_id=activity.id, event_date=activity.event_date)


def sort_activities(activities: list[Activity]) -> list[Activity]:
    """Chronological order; ties broken by creation time then id so replays are stable."""
    return sorted(activities, key=lambda activity: (activity.event_date, activity.created_at, activity.id))


@dataclass(slots=True)
class QueueEntry:
    """Represents an activity_processing_queue row."""

    id: str
    kind: QueueItemKind
    prospect_id: str
    opportunity_id: str | None
    status: QueueStatus
    enqueued_at: datetime
    activity: ActivityRef | None = None
    scheduled_for: datetime | None = None
    retry_count: int = 0
    max_retries: int = 3
    processing_started_at: datetime | None = None
    heartbeat_at: datetime | None = None
    processing_completed_at: datetime | None = None
    processing_node: str | None = None
    lease_id: str | None = None
    error_message: str | None = None
    debounce_reason: str | None = None

    @property
    def is_reprocessing(self) -> bool:
        return self.kind == "opportunity_reprocessing"


@dataclass(slots=True)
class ProcessingStatus:
    """Persisted progress of the last batch sweep for an opportunity."""

    state: ProcessingState = "idle"
    processed: int = 0
    total: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    duration_ms: int | None = None


@dataclass(slots=True)
class Opportunity:
    id: str
    prospect_id: str
    name: str
    is_closed: bool
    created_at: datetime
    updated_at: datetime
    contact_ids: list[str] = field(default_factory=list)
    intelligence: OpportunityIntelligence = field(default_factory=OpportunityIntelligence)
    last_intelligence_update_at: datetime | None = None
    processing_status: ProcessingStatus = field(default_factory=ProcessingStatus)


@dataclass(slots=True)
class Contact:
    id: str
    prospect_id: str
    email: str
    name: str | None = None
    opportunity_ids: list[str] = field(default_factory=list)
    intelligence: dict[str, ContactIntelligence] = field(default_factory=dict)

    def intelligence_for(self, opportunity_id: str) -> ContactIntelligence:
        """Return (creating if needed) the intelligence scoped to one opportunity."""
        if opportunity_id not in self.intelligence:
            self.intelligence[opportunity_id] = ContactIntelligence()
        return self.intelligence[opportunity_id]


@dataclass(slots=True)
class BatchStatus:
    state: BatchState
    processed: int = 0
    total: int = 0


@dataclass(slots=True)
class Decision:
    """Routing outcome for one activity."""

    action: DecisionAction
    activity: Activity
    opportunity: Opportunity
    is_historical: bool
    batch_state: BatchState


@dataclass(slots=True)
class IntelligenceCommit:
    """Everything Phase 5 writes in one transaction."""

    activity_id: str
    opportunity: Opportunity
    contacts: list[Contact]
    committed_at: datetime


class CancellationToken:
    """Cooperative restart flag shared by a running sweep and the pipeline runs it drives."""

    __slots__ = ("_cancelled", "reason")

    def __init__(self):
        self._cancelled = False
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str) -> None:
        self._cancelled = True
        self.reason = reason

    def raise_if_cancelled(self, opportunity_id: str) -> None:
        if self._cancelled:
            raise SweepCancelled(opportunity_id)
