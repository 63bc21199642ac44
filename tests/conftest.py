import asyncio
import copy
import itertools
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest

from app.db.helpers import DatabaseError
from app.features.activity_intelligence.bootstrap import build_engine
from app.features.activity_intelligence.domain import (
    ActivityRef,
    Contact,
    EmailActivity,
    EngineConfig,
    GenericActivity,
    Opportunity,
    ProcessingStatus,
    QueueEntry,
    sort_activities,
)
from app.features.activity_intelligence.domain.intelligence import OpportunityIntelligence
from app.features.activity_intelligence.pipeline.agents import (
    ActivityImpact,
    ActivitySummary,
    BehavioralSignals,
    CommunicationPatternResult,
    DealSummary,
    IntelligenceAgents,
    MeddpiccAction,
    MeddpiccActions,
    RelationshipStory,
    ResponsivenessResult,
    RoleAssignmentResult,
    SignalFinding,
)

START = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeQueueRepository:
    """In-memory stand-in for QueueRepository with the same claim/lease rules."""

    def __init__(self, max_retries: int = 2):
        self.max_retries = max_retries
        self.entries: dict[str, QueueEntry] = {}
        self._sequence = itertools.count()
        self._order: dict[str, int] = {}

    def _new_entry(self, **fields) -> QueueEntry:
        entry = QueueEntry(id=uuid4().hex, max_retries=self.max_retries, **fields)
        self.entries[entry.id] = entry
        self._order[entry.id] = next(self._sequence)
        return entry

    def _activity_entry(self, activity_id: str) -> QueueEntry | None:
        for entry in self.entries.values():
            if entry.kind == "activity" and entry.activity.activity_id == activity_id:
                return entry
        return None

    def _claim(self, entry: QueueEntry, now: datetime) -> QueueEntry:
        entry.status = "processing"
        entry.processing_started_at = now
        entry.heartbeat_at = now
        entry.processing_node = "test-node"
        entry.lease_id = uuid4().hex
        return copy.copy(entry)

    def entries_for(self, kind: str) -> list[QueueEntry]:
        return [entry for entry in self.entries.values() if entry.kind == kind]

    async def enqueue_activity(self, activity, opportunity_id, *, now):
        existing = self._activity_entry(activity.id)
        if existing is not None:
            if existing.status in ("pending", "processing"):
                return copy.copy(existing)
            existing.status = "pending"
            existing.opportunity_id = opportunity_id or existing.opportunity_id
            existing.enqueued_at = now
            existing.retry_count = 0
            existing.error_message = None
            existing.lease_id = None
            existing.processing_started_at = None
            existing.heartbeat_at = None
            existing.processing_completed_at = None
            return copy.copy(existing)

        entry = self._new_entry(
            kind="activity",
            prospect_id=activity.prospect_id,
            opportunity_id=opportunity_id,
            status="pending",
            enqueued_at=now,
            activity=ActivityRef(
                kind=activity.kind, activity_id=activity.id, event_date=activity.event_date
            ),
        )
        return copy.copy(entry)

    async def enqueue_or_reschedule_reprocessing(
        self, prospect_id, opportunity_id, scheduled_for, reason, *, now
    ):
        entry = await self.get_reprocessing_entry(opportunity_id)
        if entry is None:
            entry = self._new_entry(
                kind="opportunity_reprocessing",
                prospect_id=prospect_id,
                opportunity_id=opportunity_id,
                status="pending",
                enqueued_at=now,
                scheduled_for=scheduled_for,
                debounce_reason=reason,
            )
            return copy.copy(entry)

        entry = self.entries[entry.id]
        if entry.status in ("done", "failed"):
            entry.enqueued_at = now
            entry.retry_count = 0
        entry.status = "pending"
        entry.scheduled_for = scheduled_for
        entry.debounce_reason = reason
        entry.error_message = None
        entry.lease_id = None
        entry.processing_node = None
        entry.processing_started_at = None
        entry.heartbeat_at = None
        entry.processing_completed_at = None
        return copy.copy(entry)

    async def cancel_reprocessing(self, opportunity_id):
        entry = await self.get_reprocessing_entry(opportunity_id)
        if entry is None or entry.status != "pending":
            return False
        del self.entries[entry.id]
        return True

    def _eligible(self, entry: QueueEntry, now: datetime) -> bool:
        if entry.status != "pending":
            return False
        return entry.kind == "activity" or entry.scheduled_for <= now

    async def dequeue_next(self, prospect_id, *, now):
        if any(
            entry.prospect_id == prospect_id and entry.status == "processing"
            for entry in self.entries.values()
        ):
            return None

        candidates = [
            entry
            for entry in self.entries.values()
            if entry.prospect_id == prospect_id and self._eligible(entry, now)
        ]
        if not candidates:
            return None

        def priority(entry):
            event_date = entry.activity.event_date if entry.activity else datetime.max.replace(tzinfo=UTC)
            return (not entry.is_reprocessing, event_date, entry.enqueued_at, self._order[entry.id])

        return self._claim(min(candidates, key=priority), now)

    async def claim(self, entry_id, *, now):
        entry = self.entries.get(entry_id)
        if entry is None or entry.status != "pending":
            return None
        return self._claim(entry, now)

    def _holds_lease(self, entry: QueueEntry | None, lease_id: str | None) -> bool:
        if entry is None or entry.status != "processing":
            return False
        return lease_id is None or entry.lease_id == lease_id

    async def mark_done(self, entry_id, *, now, lease_id=None):
        entry = self.entries.get(entry_id)
        if not self._holds_lease(entry, lease_id):
            return False
        entry.status = "done"
        entry.processing_completed_at = now
        entry.error_message = None
        entry.lease_id = None
        return True

    async def mark_failed(self, entry_id, error, *, retryable, now, lease_id=None):
        entry = self.entries.get(entry_id)
        if not self._holds_lease(entry, lease_id):
            return None
        if retryable:
            entry.retry_count += 1
        if retryable and entry.retry_count <= entry.max_retries:
            entry.status = "pending"
            entry.processing_completed_at = None
        else:
            entry.status = "failed"
            entry.processing_completed_at = now
        entry.processing_started_at = None
        entry.heartbeat_at = None
        entry.processing_node = None
        entry.lease_id = None
        entry.error_message = error
        return entry.status

    async def heartbeat(self, entry_id, *, now, lease_id):
        entry = self.entries.get(entry_id)
        if entry is None or entry.status != "processing" or entry.lease_id != lease_id:
            return False
        entry.heartbeat_at = now
        return True

    async def release(self, entry_id, *, lease_id):
        entry = self.entries.get(entry_id)
        if entry is None or entry.status != "processing" or entry.lease_id != lease_id:
            return False
        entry.status = "pending"
        entry.processing_started_at = None
        entry.heartbeat_at = None
        entry.processing_node = None
        entry.lease_id = None
        return True

    async def list_ready_prospects(self, *, now, limit=100):
        next_at: dict[str, datetime] = {}
        for entry in self.entries.values():
            if not self._eligible(entry, now):
                continue
            at = entry.activity.event_date if entry.activity else entry.scheduled_for
            if entry.prospect_id not in next_at or at < next_at[entry.prospect_id]:
                next_at[entry.prospect_id] = at
        return sorted(next_at, key=next_at.get)[:limit]

    async def list_pending_activity_entries(self, prospect_id):
        entries = [
            entry
            for entry in self.entries.values()
            if entry.prospect_id == prospect_id
            and entry.kind == "activity"
            and entry.status == "pending"
        ]
        entries.sort(key=lambda entry: (entry.activity.event_date, entry.enqueued_at))
        return [copy.copy(entry) for entry in entries]

    async def get_reprocessing_entry(self, opportunity_id):
        for entry in self.entries.values():
            if entry.is_reprocessing and entry.opportunity_id == opportunity_id:
                return copy.copy(entry)
        return None

    async def count_activity_entries(self, opportunity_id):
        counts = {"pending": 0, "processing": 0}
        for entry in self.entries.values():
            if entry.kind == "activity" and entry.opportunity_id == opportunity_id:
                if entry.status in counts:
                    counts[entry.status] += 1
        return counts

    async def absorb_opportunity_activities(self, opportunity_id, *, now):
        absorbed = 0
        for entry in self.entries.values():
            if (
                entry.kind == "activity"
                and entry.opportunity_id == opportunity_id
                and entry.status == "pending"
            ):
                entry.status = "done"
                entry.processing_completed_at = now
                absorbed += 1
        return absorbed

    async def reset_stuck_entries(self, *, stale_before, now):
        requeued = 0
        interrupted = []
        for entry in self.entries.values():
            if entry.status != "processing":
                continue
            if (entry.heartbeat_at or entry.processing_started_at) >= stale_before:
                continue
            if entry.kind == "activity":
                entry.status = "pending"
                entry.processing_started_at = None
                entry.heartbeat_at = None
                entry.processing_node = None
                entry.lease_id = None
                requeued += 1
            else:
                entry.status = "failed"
                entry.processing_completed_at = now
                entry.lease_id = None
                entry.error_message = "Reprocessing interrupted by worker restart"
                interrupted.append(entry.opportunity_id)
        return {"requeued": requeued, "interrupted_sweeps": interrupted}

    async def get_stats(self):
        stats = {"by_kind": {}, "totals": {}, "oldest_pending_at": None}
        for entry in self.entries.values():
            by_status = stats["by_kind"].setdefault(entry.kind, {})
            by_status[entry.status] = by_status.get(entry.status, 0) + 1
            stats["totals"][entry.status] = stats["totals"].get(entry.status, 0) + 1
        return stats

    async def cleanup_finished(self, *, older_than):
        stale = [
            entry_id
            for entry_id, entry in self.entries.items()
            if entry.status == "done" and entry.processing_completed_at < older_than
        ]
        for entry_id in stale:
            del self.entries[entry_id]
        return len(stale)


class FakeIntelligenceRepository:
    """In-memory store that hands out deep copies, like rows read from Postgres."""

    def __init__(self):
        self.activities: dict = {}
        self.opportunities: dict[str, Opportunity] = {}
        self.contacts: dict[str, Contact] = {}
        self.commits: list[tuple[str, str]] = []
        self.resets: list[str] = []
        self.status_history: list[tuple[str, ProcessingStatus]] = []
        self.fail_commit: Exception | None = None

    # Test setup helpers
    def add_opportunity(self, opportunity_id="opp-1", prospect_id="prospect-1", **fields):
        fields.setdefault("name", f"Deal {opportunity_id}")
        fields.setdefault("is_closed", False)
        fields.setdefault("created_at", START - timedelta(days=90))
        fields.setdefault("updated_at", START - timedelta(days=1))
        opportunity = Opportunity(id=opportunity_id, prospect_id=prospect_id, **fields)
        self.opportunities[opportunity_id] = opportunity
        return opportunity

    def add_contact(self, contact_id="contact-1", prospect_id="prospect-1", opportunity_ids=("opp-1",)):
        contact = Contact(
            id=contact_id,
            prospect_id=prospect_id,
            email=f"{contact_id}@buyer.example",
            name=contact_id.title(),
            opportunity_ids=list(opportunity_ids),
        )
        self.contacts[contact_id] = contact
        for opportunity_id in opportunity_ids:
            if opportunity_id in self.opportunities:
                self.opportunities[opportunity_id].contact_ids.append(contact_id)
        return contact

    def add_email(
        self,
        activity_id,
        event_date,
        opportunity_id="opp-1",
        prospect_id="prospect-1",
        contact_ids=("contact-1",),
    ):
        activity = EmailActivity(
            id=activity_id,
            prospect_id=prospect_id,
            opportunity_id=opportunity_id,
            event_date=event_date,
            created_at=event_date,
            subject=f"Re: {activity_id}",
            body="Can we get pricing for 200 seats before the board meeting?",
            sender="contact-1@buyer.example",
            recipients=["rep@seller.example"],
            contact_ids=list(contact_ids),
        )
        self.activities[activity_id] = activity
        return activity

    def add_note(self, activity_id, event_date, opportunity_id="opp-1", prospect_id="prospect-1"):
        activity = GenericActivity(
            id=activity_id,
            prospect_id=prospect_id,
            opportunity_id=opportunity_id,
            event_date=event_date,
            created_at=event_date,
            activity_type="call",
            title="Discovery call",
            content="Walked through the rollout plan.",
            contact_ids=["contact-1"],
        )
        self.activities[activity_id] = activity
        return activity

    def processed_activity_ids(self, opportunity_id="opp-1") -> list[str]:
        return [activity_id for activity_id, opp_id in self.commits if opp_id == opportunity_id]

    # Repository interface
    async def get_activity(self, activity_id):
        return copy.deepcopy(self.activities.get(activity_id))

    async def list_opportunity_activities(self, opportunity_id):
        return sort_activities(
            [
                copy.deepcopy(activity)
                for activity in self.activities.values()
                if activity.opportunity_id == opportunity_id
            ]
        )

    async def save_activity_summary(self, activity_id, summary):
        self.activities[activity_id].ai_summary = summary

    async def assign_activity_opportunity(self, activity_id, opportunity_id):
        self.activities[activity_id].opportunity_id = opportunity_id

    async def get_opportunity(self, opportunity_id):
        return copy.deepcopy(self.opportunities.get(opportunity_id))

    async def list_prospect_opportunities(self, prospect_id):
        opportunities = [
            copy.deepcopy(opportunity)
            for opportunity in self.opportunities.values()
            if opportunity.prospect_id == prospect_id
        ]
        return sorted(opportunities, key=lambda opportunity: opportunity.updated_at, reverse=True)

    async def get_contacts(self, contact_ids, opportunity_id):
        contacts = []
        for contact_id in sorted(set(contact_ids)):
            stored = self.contacts.get(contact_id)
            if stored is None:
                continue
            contact = copy.deepcopy(stored)
            contact.intelligence = {
                key: value for key, value in contact.intelligence.items() if key == opportunity_id
            }
            contacts.append(contact)
        return contacts

    async def ensure_contact(self, prospect_id, email, name=None):
        for contact in self.contacts.values():
            if contact.prospect_id == prospect_id and contact.email == email:
                return copy.deepcopy(contact)

        opportunity_ids = [
            opportunity.id
            for opportunity in self.opportunities.values()
            if opportunity.prospect_id == prospect_id
        ]
        contact = Contact(
            id=uuid4().hex,
            prospect_id=prospect_id,
            email=email,
            name=name,
            opportunity_ids=opportunity_ids,
        )
        self.contacts[contact.id] = contact
        for opportunity_id in opportunity_ids:
            self.opportunities[opportunity_id].contact_ids.append(contact.id)
        return copy.deepcopy(contact)

    async def commit_intelligence(self, commit):
        if self.fail_commit is not None:
            raise self.fail_commit

        opportunity = commit.opportunity
        for contact in commit.contacts:
            intelligence = contact.intelligence.get(opportunity.id)
            if intelligence is not None:
                self.contacts[contact.id].intelligence[opportunity.id] = copy.deepcopy(intelligence)

        stored = self.opportunities[opportunity.id]
        stored.intelligence = copy.deepcopy(opportunity.intelligence)
        stored.last_intelligence_update_at = opportunity.last_intelligence_update_at
        stored.updated_at = commit.committed_at

        self.activities[commit.activity_id].processed_for_opportunities.add(opportunity.id)
        self.commits.append((commit.activity_id, opportunity.id))

    async def reset_opportunity_intelligence(self, opportunity_id):
        stored = self.opportunities[opportunity_id]
        stored.intelligence = OpportunityIntelligence()
        stored.last_intelligence_update_at = None
        for contact in self.contacts.values():
            contact.intelligence.pop(opportunity_id, None)
        for activity in self.activities.values():
            activity.processed_for_opportunities.discard(opportunity_id)
        self.resets.append(opportunity_id)

    async def update_processing_status(self, opportunity_id, status):
        # UPDATE ... WHERE id = %s touches nothing for an unknown opportunity
        if opportunity_id in self.opportunities:
            self.opportunities[opportunity_id].processing_status = copy.deepcopy(status)
        self.status_history.append((opportunity_id, copy.deepcopy(status)))


class FakeAgents(IntelligenceAgents):
    """Deterministic agents; every call is recorded as (method, activity_id)."""

    def __init__(self):
        self.calls: list[tuple[str, str]] = []
        self.impact_score = 5.0
        self.role = "Champion"
        self.fail_on: dict[str, Exception] = {}
        self.slow_on: set[str] = set()
        self._gates: dict[str, tuple[asyncio.Event, asyncio.Event]] = {}

    def gate(self, activity_id: str) -> tuple[asyncio.Event, asyncio.Event]:
        """Block summarize_deal for one activity; returns (entered, release)."""
        events = (asyncio.Event(), asyncio.Event())
        self._gates[activity_id] = events
        return events

    async def _record(self, name: str, activity_id: str) -> None:
        self.calls.append((name, activity_id))
        if name in self.fail_on:
            raise self.fail_on[name]
        if name in self.slow_on:
            await asyncio.sleep(5)

    def started(self, name: str) -> list[str]:
        return [activity_id for call, activity_id in self.calls if call == name]

    async def summarize_activity(self, activity):
        await self._record("summarize_activity", activity.activity_id)
        return ActivitySummary(summary=f"summary of {activity.activity_id}")

    async def assess_activity_impact(self, request):
        await self._record("assess_activity_impact", request.activity.activity_id)
        return ActivityImpact(score=self.impact_score, reasoning="asked for pricing")

    async def extract_behavioral_signals(self, request):
        await self._record("extract_behavioral_signals", request.activity.activity_id)
        return BehavioralSignals(
            indicators=[
                SignalFinding(indicator="requested pricing", confidence="high", relevance="High")
            ]
        )

    async def analyze_communication_patterns(self, request):
        await self._record("analyze_communication_patterns", request.activity.activity_id)
        return CommunicationPatternResult(response_speed="same day", tone="positive")

    async def analyze_responsiveness(self, request):
        await self._record("analyze_responsiveness", request.activity.activity_id)
        return ResponsivenessResult(status="Engaged", summary="replied within hours")

    async def assign_role(self, request):
        await self._record("assign_role", request.activity.activity_id)
        return RoleAssignmentResult(role=self.role, reasoning="drives the evaluation")

    async def write_relationship_story(self, request):
        await self._record("write_relationship_story", request.activity.activity_id)
        return RelationshipStory(story=f"story after {request.activity.activity_id}")

    async def propose_meddpicc_actions(self, request):
        await self._record("propose_meddpicc_actions", request.activity.activity_id)
        return MeddpiccActions(
            actions=[
                MeddpiccAction(
                    action="add",
                    field="identified_pain",
                    value={"pain": f"pain from {request.activity.activity_id}"},
                    relevance="High",
                )
            ]
        )

    async def summarize_deal(self, request):
        activity_id = request.activity.activity_id
        await self._record("summarize_deal", activity_id)
        if activity_id in self._gates:
            entered, release = self._gates[activity_id]
            entered.set()
            await release.wait()
        return DealSummary(narrative=f"narrative after {activity_id}")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine_config():
    return EngineConfig(
        debounce_delay_ms=60_000,
        historical_grace_ms=300_000,
        stale_processing_ms=300_000,
        heartbeat_interval_seconds=0.01,
        ai_concurrency=3,
        ai_call_timeout_seconds=1.0,
        commit_timeout_seconds=1.0,
        poll_interval_seconds=0.01,
        max_concurrent_prospects=4,
        max_retries=2,
        sweep_refresh_interval=25,
        processing_node="test-node",
    )


@pytest.fixture
def fake_queue():
    return FakeQueueRepository()


@pytest.fixture
def fake_repository():
    repository = FakeIntelligenceRepository()
    repository.add_opportunity()
    repository.add_contact()
    return repository


@pytest.fixture
def fake_agents():
    return FakeAgents()


@pytest.fixture
def engine(engine_config, fake_queue, fake_repository, fake_agents, clock):
    return build_engine(
        engine_config,
        queue=fake_queue,
        repository=fake_repository,
        agents=fake_agents,
        clock=clock,
    )


@pytest.fixture
def fail_commit(fake_repository):
    def _fail(error: Exception | None = None):
        fake_repository.fail_commit = error or DatabaseError(
            "could not serialize access", operation="commit_intelligence"
        )

    return _fail
