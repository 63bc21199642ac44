"""
Intelligence pipeline - derives contact and deal intelligence for one activity.

Phases:
    0. summarize the activity (persisted immediately, idempotent)
    1. per-contact analyses, fanned out under a semaphore
    2. fetch fresh contact/opportunity records (private copies)
    3. apply contact deltas, then write relationship stories
    4. MEDDPICC actions, deal health, deal narrative
    5. one transaction: contacts + opportunity + processed marker

Nothing from Phases 1-4 is visible until Phase 5 commits.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TypeVar

from app.db.helpers import DatabaseError
from app.features.activity_intelligence.domain import (
    Activity,
    CancellationToken,
    Clock,
    Contact,
    ContactIntelligence,
    EngineConfig,
    IntelligenceCommit,
    Opportunity,
    OpportunityIntelligence,
    utc_now,
)
from app.features.activity_intelligence.domain.intelligence import (
    ENGAGEMENT_SCORE_MAX,
    ENGAGEMENT_SCORE_MIN,
    BehavioralIndicator,
    CommunicationPattern,
    NarrativeEntry,
    ResponsivenessSnapshot,
    RoleAssignment,
    ScoreHistoryEntry,
)
from app.features.activity_intelligence.errors import (
    ActivityIntelligenceError,
    CommitError,
    MissingDependencyError,
    PipelineError,
    PipelineTimeoutError,
)
from app.infrastructure.observability.logging import get_logger

from .agents import (
    ActivityContext,
    ActivityImpact,
    BehavioralSignals,
    CommunicationPatternResult,
    ContactAnalysisInput,
    ContactProfile,
    DealContact,
    DealSynthesisInput,
    IntelligenceAgents,
    RelationshipStoryInput,
    ResponsivenessResult,
    RoleAssignmentResult,
    build_activity_context,
)
from .deal_health import apply_deal_health, calculate_deal_health
from .meddpicc import apply_meddpicc_actions

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class ContactAnalysis:
    """Phase 1 output for one contact; pure data, nothing persisted yet."""

    contact_id: str
    impact: ActivityImpact
    signals: BehavioralSignals
    patterns: CommunicationPatternResult
    responsiveness: ResponsivenessResult
    role: RoleAssignmentResult


@dataclass(slots=True)
class PipelineResult:
    activity_id: str
    opportunity_id: str
    skipped: bool = False
    contacts_updated: list[str] = field(default_factory=list)
    duration_ms: float = 0.0


def _profile(contact: Contact) -> ContactProfile:
    return ContactProfile(contact_id=contact.id, email=contact.email, name=contact.name)


def apply_contact_analysis(
    current: ContactIntelligence,
    analysis: ContactAnalysis,
    activity: Activity,
    recorded_at: datetime,
) -> ContactIntelligence:
    """Phase 3 delta application. Returns a new ContactIntelligence."""
    updated = current.model_copy(deep=True)
    event_date = activity.event_date

    previous_score = updated.engagement_score
    new_score = max(
        ENGAGEMENT_SCORE_MIN, min(ENGAGEMENT_SCORE_MAX, previous_score + analysis.impact.score)
    )
    updated.engagement_score = new_score
    updated.score_history.append(
        ScoreHistoryEntry(
            score=new_score,
            delta=new_score - previous_score,
            reasoning=analysis.impact.reasoning,
            activity_id=activity.id,
            activity_date=event_date,
            recorded_at=recorded_at,
        )
    )

    for finding in analysis.signals.indicators:
        updated.behavioral_indicators.append(
            BehavioralIndicator(
                indicator=finding.indicator,
                confidence=finding.confidence,
                relevance=finding.relevance,
                activity_id=activity.id,
                activity_date=event_date,
                recorded_at=recorded_at,
            )
        )

    updated.communication_patterns.append(
        CommunicationPattern(
            **analysis.patterns.model_dump(), activity_id=activity.id, analyzed_at=event_date
        )
    )
    updated.responsiveness.append(
        ResponsivenessSnapshot(**analysis.responsiveness.model_dump(), analyzed_at=event_date)
    )

    # Only record a role when it changes
    role = analysis.role.role
    if role is not None and role != updated.latest_role():
        updated.role_assignments.append(
            RoleAssignment(role=role, reasoning=analysis.role.reasoning, assigned_at=event_date)
        )

    return updated


def next_watermark(current: datetime | None, event_date: datetime, now: datetime) -> datetime:
    """Watermark only moves forward and never past the present."""
    candidate = min(event_date, now)
    if current is None:
        return candidate
    return max(current, candidate)


class IntelligencePipeline:
    """Runs the five phases for exactly one activity per call."""

    def __init__(
        self,
        repository,
        agents: IntelligenceAgents,
        config: EngineConfig,
        clock: Clock = utc_now,
    ):
        self.repository = repository
        self.agents = agents
        self.config = config
        self.clock = clock

    async def _call(self, awaitable: Awaitable[T], operation: str) -> T:
        """Bound one AI call in time and map its failures onto PipelineError."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.config.ai_call_timeout_seconds)
        except TimeoutError as e:
            raise PipelineTimeoutError(
                f"{operation} timed out after {self.config.ai_call_timeout_seconds}s",
                operation=operation,
            ) from e
        except ActivityIntelligenceError:
            raise
        except Exception as e:
            raise PipelineError(
                f"{operation} failed: {e}",
                operation=operation,
                recoverable=getattr(e, "recoverable", True),
            ) from e

    async def _limited(self, semaphore: asyncio.Semaphore, awaitable: Awaitable[T], operation: str) -> T:
        async with semaphore:
            return await self._call(awaitable, operation)

    async def process_activity_for_intelligence(
        self,
        activity_id: str,
        *,
        opportunity_id: str | None = None,
        cancellation: CancellationToken | None = None,
    ) -> PipelineResult:
        """
        Derive and commit intelligence for one activity.

        Args:
            activity_id: Activity to process
            opportunity_id: Target opportunity; defaults to the activity's own
            cancellation: Sweep token, checked right before the commit

        Raises:
            MissingDependencyError: activity, opportunity or contact not found
            PipelineError: an AI call failed or timed out
            CommitError: the Phase 5 transaction did not commit
            SweepCancelled: the owning sweep was restarted before commit
        """
        start_time = time.time()

        activity = await self.repository.get_activity(activity_id)
        if activity is None:
            raise MissingDependencyError(f"Activity {activity_id} not found", operation="load_activity")

        target_id = opportunity_id or activity.opportunity_id
        if not target_id:
            raise MissingDependencyError(
                f"Activity {activity_id} has no opportunity", operation="load_activity"
            )

        log = logger.bind(activity_id=activity_id, opportunity_id=target_id)

        # Phase 0
        context = await self._summarize(activity)

        if target_id in activity.processed_for_opportunities:
            log.info("Activity already processed for opportunity, skipping")
            return PipelineResult(activity_id=activity_id, opportunity_id=target_id, skipped=True)

        snapshot = await self.repository.get_opportunity(target_id)
        if snapshot is None:
            raise MissingDependencyError(
                f"Opportunity {target_id} not found", operation="load_opportunity"
            )
        participants = await self.repository.get_contacts(activity.contact_ids, target_id)

        semaphore = asyncio.Semaphore(self.config.ai_concurrency)

        # Phase 1
        analyses = await self._analyze_contacts(context, participants, snapshot, target_id, semaphore)
        log.debug("Phase 1 complete", contact_count=len(analyses))

        # Phase 2
        opportunity, contacts = await self._load_fresh(activity, target_id)

        # Phase 3
        now = self.clock()
        updated_contacts = await self._apply_contact_updates(
            context, activity, contacts, analyses, target_id, now, semaphore
        )

        # Phase 4
        opportunity.intelligence = await self._synthesize_deal(
            context, activity, opportunity, contacts, now
        )
        opportunity.last_intelligence_update_at = next_watermark(
            opportunity.last_intelligence_update_at, activity.event_date, now
        )

        if cancellation is not None:
            cancellation.raise_if_cancelled(target_id)

        # Phase 5
        await self._commit(
            IntelligenceCommit(
                activity_id=activity.id,
                opportunity=opportunity,
                contacts=updated_contacts,
                committed_at=now,
            )
        )

        duration_ms = round((time.time() - start_time) * 1000, 2)
        log.info(
            "Activity intelligence committed",
            contacts_updated=len(updated_contacts),
            duration_ms=duration_ms,
        )
        return PipelineResult(
            activity_id=activity_id,
            opportunity_id=target_id,
            contacts_updated=[contact.id for contact in updated_contacts],
            duration_ms=duration_ms,
        )

    async def _summarize(self, activity: Activity) -> ActivityContext:
        context = build_activity_context(activity)
        if activity.ai_summary:
            return context

        result = await self._call(self.agents.summarize_activity(context), "summarize_activity")
        await self.repository.save_activity_summary(activity.id, result.summary)
        activity.ai_summary = result.summary
        return context.model_copy(update={"summary": result.summary})

    async def _analyze_contacts(
        self,
        context: ActivityContext,
        contacts: list[Contact],
        opportunity: Opportunity,
        opportunity_id: str,
        semaphore: asyncio.Semaphore,
    ) -> dict[str, ContactAnalysis]:
        requests = [
            ContactAnalysisInput(
                activity=context,
                contact=_profile(contact),
                opportunity_name=opportunity.name,
                current=contact.intelligence.get(opportunity_id) or ContactIntelligence(),
            )
            for contact in contacts
        ]

        calls = []
        for request in requests:
            calls.extend(
                [
                    self._limited(semaphore, self.agents.assess_activity_impact(request), "assess_activity_impact"),
                    self._limited(semaphore, self.agents.extract_behavioral_signals(request), "extract_behavioral_signals"),
                    self._limited(semaphore, self.agents.analyze_communication_patterns(request), "analyze_communication_patterns"),
                    self._limited(semaphore, self.agents.analyze_responsiveness(request), "analyze_responsiveness"),
                    self._limited(semaphore, self.agents.assign_role(request), "assign_role"),
                ]
            )

        results = await asyncio.gather(*calls, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result

        analyses = {}
        for index, request in enumerate(requests):
            impact, signals, patterns, responsiveness, role = results[index * 5 : index * 5 + 5]
            analyses[request.contact.contact_id] = ContactAnalysis(
                contact_id=request.contact.contact_id,
                impact=impact,
                signals=signals,
                patterns=patterns,
                responsiveness=responsiveness,
                role=role,
            )
        return analyses

    async def _load_fresh(self, activity: Activity, opportunity_id: str) -> tuple[Opportunity, list[Contact]]:
        opportunity = await self.repository.get_opportunity(opportunity_id)
        if opportunity is None:
            raise MissingDependencyError(
                f"Opportunity {opportunity_id} not found", operation="load_opportunity"
            )

        wanted = list(dict.fromkeys([*activity.contact_ids, *opportunity.contact_ids]))
        contacts = await self.repository.get_contacts(wanted, opportunity_id)

        found = {contact.id for contact in contacts}
        missing = [contact_id for contact_id in activity.contact_ids if contact_id not in found]
        if missing:
            raise MissingDependencyError(
                f"Contacts not found: {', '.join(missing)}", operation="load_contacts"
            )
        return opportunity, contacts

    async def _apply_contact_updates(
        self,
        context: ActivityContext,
        activity: Activity,
        contacts: list[Contact],
        analyses: dict[str, ContactAnalysis],
        opportunity_id: str,
        now: datetime,
        semaphore: asyncio.Semaphore,
    ) -> list[Contact]:
        updated = []
        for contact in contacts:
            analysis = analyses.get(contact.id)
            if analysis is None:
                continue
            contact.intelligence[opportunity_id] = apply_contact_analysis(
                contact.intelligence_for(opportunity_id), analysis, activity, now
            )
            updated.append(contact)

        stories = await asyncio.gather(
            *[
                self._limited(
                    semaphore,
                    self.agents.write_relationship_story(
                        RelationshipStoryInput(
                            activity=context,
                            contact=_profile(contact),
                            intelligence=contact.intelligence[opportunity_id],
                        )
                    ),
                    "write_relationship_story",
                )
                for contact in updated
            ],
            return_exceptions=True,
        )
        for contact, story in zip(updated, stories):
            if isinstance(story, BaseException):
                raise story
            contact.intelligence[opportunity_id].relationship_story = story.story

        return updated

    async def _synthesize_deal(
        self,
        context: ActivityContext,
        activity: Activity,
        opportunity: Opportunity,
        contacts: list[Contact],
        now: datetime,
    ) -> OpportunityIntelligence:
        current = opportunity.intelligence
        intelligence_by_contact = [
            (contact, contact.intelligence_for(opportunity.id)) for contact in contacts
        ]

        request = DealSynthesisInput(
            activity=context,
            opportunity_id=opportunity.id,
            opportunity_name=opportunity.name,
            meddpicc=current.meddpicc,
            deal_health=current.deal_health,
            previous_narrative=current.narrative,
            contacts=[
                DealContact(
                    contact=_profile(contact),
                    role=intel.latest_role(),
                    engagement_score=intel.engagement_score,
                    relationship_story=intel.relationship_story,
                )
                for contact, intel in intelligence_by_contact
            ],
        )

        proposed = await self._call(
            self.agents.propose_meddpicc_actions(request), "propose_meddpicc_actions"
        )
        meddpicc = apply_meddpicc_actions(
            current.meddpicc, proposed.actions, activity_id=activity.id, applied_at=now
        )

        health = calculate_deal_health(
            current.deal_health, [intel for _, intel in intelligence_by_contact], activity.event_date
        )
        deal_health = apply_deal_health(
            current.deal_health, health, activity_id=activity.id, as_of=activity.event_date
        )

        summary = await self._call(
            self.agents.summarize_deal(
                request.model_copy(update={"meddpicc": meddpicc, "deal_health": deal_health})
            ),
            "summarize_deal",
        )

        updated = current.model_copy(deep=True)
        updated.meddpicc = meddpicc
        updated.deal_health = deal_health
        updated.narrative = summary.narrative
        updated.narrative_history.append(
            NarrativeEntry(narrative=summary.narrative, activity_id=activity.id, recorded_at=now)
        )
        return updated

    async def _commit(self, commit: IntelligenceCommit) -> None:
        try:
            await asyncio.wait_for(
                self.repository.commit_intelligence(commit),
                timeout=self.config.commit_timeout_seconds,
            )
        except TimeoutError as e:
            raise CommitError(
                f"Commit timed out after {self.config.commit_timeout_seconds}s",
                operation="commit",
            ) from e
        except DatabaseError as e:
            raise CommitError(f"Commit failed: {e}", operation="commit") from e
