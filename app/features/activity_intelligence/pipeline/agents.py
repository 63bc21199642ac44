"""
AI call interface for the intelligence pipeline.

The pipeline only sees IntelligenceAgents: nine async calls, each taking
a typed pydantic input and returning a typed pydantic output. The
OpenAI-backed implementation below owns prompts, retries and schema
validation; tests substitute an in-memory implementation.
"""

import json
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from app.features.activity_intelligence.domain import (
    Activity,
    CalendarActivity,
    ContactIntelligence,
    DealHealth,
    EmailActivity,
    GenericActivity,
    Meddpicc,
)
from app.features.activity_intelligence.domain.intelligence import (
    MEDDPICC_KEY_FIELDS,
    PersonRole,
    Relevance,
    ResponsivenessState,
)
from app.infrastructure.observability.logging import get_logger
from app.services.openai_service import OpenAIService

logger = get_logger(__name__)

MeddpiccCategory = Literal[
    "metrics",
    "economic_buyer",
    "decision_criteria",
    "decision_process",
    "paper_process",
    "identified_pain",
    "champion",
    "competition",
]


# =================================================================
# Inputs
# =================================================================


class ActivityContext(BaseModel):
    activity_id: str
    kind: str
    event_date: datetime
    summary: str | None = None
    content: str


class ContactProfile(BaseModel):
    contact_id: str
    email: str
    name: str | None = None


class ContactAnalysisInput(BaseModel):
    activity: ActivityContext
    contact: ContactProfile
    opportunity_name: str
    current: ContactIntelligence


class RelationshipStoryInput(BaseModel):
    activity: ActivityContext
    contact: ContactProfile
    intelligence: ContactIntelligence


class DealContact(BaseModel):
    contact: ContactProfile
    role: PersonRole | None = None
    engagement_score: float = 0.0
    relationship_story: str | None = None


class DealSynthesisInput(BaseModel):
    activity: ActivityContext
    opportunity_id: str
    opportunity_name: str
    meddpicc: Meddpicc
    deal_health: DealHealth
    previous_narrative: str | None = None
    contacts: list[DealContact] = Field(default_factory=list)


# =================================================================
# Outputs
# =================================================================


class ActivitySummary(BaseModel):
    summary: str


class ActivityImpact(BaseModel):
    score: float
    reasoning: str


class SignalFinding(BaseModel):
    indicator: str
    confidence: str
    relevance: Relevance


class BehavioralSignals(BaseModel):
    indicators: list[SignalFinding] = Field(default_factory=list)


class CommunicationPatternResult(BaseModel):
    response_speed: str | None = None
    initiation_ratio: float | None = None
    message_depth: str | None = None
    tone: str | None = None


class ResponsivenessResult(BaseModel):
    status: ResponsivenessState
    summary: str
    is_awaiting_response: bool = False
    active_responding_contact: str | None = None


class RoleAssignmentResult(BaseModel):
    role: PersonRole | None = None
    reasoning: str | None = None


class RelationshipStory(BaseModel):
    story: str


class MeddpiccAction(BaseModel):
    action: Literal["add", "update", "remove"]
    field: MeddpiccCategory
    value: dict[str, Any] = Field(default_factory=dict)
    prior_value: str | None = None
    relevance: Relevance = "Medium"
    reason: str | None = None


class MeddpiccActions(BaseModel):
    actions: list[MeddpiccAction] = Field(default_factory=list)


class DealSummary(BaseModel):
    narrative: str


# =================================================================
# Activity rendering (dispatch on the activity kind)
# =================================================================


def _render_email(activity: EmailActivity) -> str:
    recipients = ", ".join(activity.recipients) or "(none)"
    return (
        f"EMAIL\nFrom: {activity.sender}\nTo: {recipients}\n"
        f"Subject: {activity.subject}\n\n{activity.body}"
    )


def _render_calendar(activity: CalendarActivity) -> str:
    attendees = ", ".join(activity.attendees) or "(none)"
    ends = activity.ends_at.isoformat() if activity.ends_at else "unknown"
    return (
        f"MEETING\nTitle: {activity.title}\nStarts: {activity.event_date.isoformat()}\n"
        f"Ends: {ends}\nAttendees: {attendees}\n\n{activity.description or ''}"
    )


def _render_generic(activity: GenericActivity) -> str:
    return (
        f"{activity.activity_type.upper()}\nTitle: {activity.title or '(untitled)'}\n\n"
        f"{activity.content or ''}"
    )


_RENDERERS = {
    "email": _render_email,
    "calendar": _render_calendar,
    "generic": _render_generic,
}


def build_activity_context(activity: Activity) -> ActivityContext:
    renderer = _RENDERERS.get(activity.kind)
    if renderer is None:
        raise ValueError(f"Unsupported activity kind: {activity.kind}")

    return ActivityContext(
        activity_id=activity.id,
        kind=activity.kind,
        event_date=activity.event_date,
        summary=activity.ai_summary,
        content=renderer(activity),
    )


# =================================================================
# Interface
# =================================================================


class IntelligenceAgents(ABC):
    """The AI calls the pipeline makes. Implementations must be safe to call concurrently."""

    @abstractmethod
    async def summarize_activity(self, activity: ActivityContext) -> ActivitySummary:
        ...

    @abstractmethod
    async def assess_activity_impact(self, request: ContactAnalysisInput) -> ActivityImpact:
        ...

    @abstractmethod
    async def extract_behavioral_signals(self, request: ContactAnalysisInput) -> BehavioralSignals:
        ...

    @abstractmethod
    async def analyze_communication_patterns(
        self, request: ContactAnalysisInput
    ) -> CommunicationPatternResult:
        ...

    @abstractmethod
    async def analyze_responsiveness(self, request: ContactAnalysisInput) -> ResponsivenessResult:
        ...

    @abstractmethod
    async def assign_role(self, request: ContactAnalysisInput) -> RoleAssignmentResult:
        ...

    @abstractmethod
    async def write_relationship_story(self, request: RelationshipStoryInput) -> RelationshipStory:
        ...

    @abstractmethod
    async def propose_meddpicc_actions(self, request: DealSynthesisInput) -> MeddpiccActions:
        ...

    @abstractmethod
    async def summarize_deal(self, request: DealSynthesisInput) -> DealSummary:
        ...


class OpenAIIntelligenceAgents(IntelligenceAgents):
    """IntelligenceAgents backed by JSON-mode chat completions."""

    ROLE_PREAMBLE = (
        "You are a B2B sales intelligence analyst. Reply with a single JSON object "
        "that validates against this JSON schema and nothing else:\n"
    )

    def __init__(self, service: OpenAIService):
        self.service = service

    def _system_message(self, task: str, output_model: type[BaseModel]) -> str:
        schema = json.dumps(output_model.model_json_schema())
        return f"{self.ROLE_PREAMBLE}{schema}\n\n### Task\n{task}"

    async def _generate(
        self, task: str, request: BaseModel, output_model: type[BaseModel], operation: str
    ):
        return await self.service.generate_structured(
            self._system_message(task, output_model),
            request.model_dump_json(),
            output_model,
            operation=operation,
        )

    async def summarize_activity(self, activity: ActivityContext) -> ActivitySummary:
        return await self._generate(
            "Summarize this sales activity in three sentences or fewer. Keep names, "
            "commitments, dates and numbers.",
            activity,
            ActivitySummary,
            "summarize_activity",
        )

    async def assess_activity_impact(self, request: ContactAnalysisInput) -> ActivityImpact:
        return await self._generate(
            "Score how this activity changes the contact's engagement with the deal, "
            "from -10 (strongly negative) to +10 (strongly positive), and explain why.",
            request,
            ActivityImpact,
            "assess_activity_impact",
        )

    async def extract_behavioral_signals(self, request: ContactAnalysisInput) -> BehavioralSignals:
        return await self._generate(
            "List behavioral indicators this contact shows in the activity, each with a "
            "confidence and a relevance of High, Medium or Low.",
            request,
            BehavioralSignals,
            "extract_behavioral_signals",
        )

    async def analyze_communication_patterns(
        self, request: ContactAnalysisInput
    ) -> CommunicationPatternResult:
        return await self._generate(
            "Describe the contact's communication pattern: response speed, how often they "
            "initiate (0-1), message depth and tone.",
            request,
            CommunicationPatternResult,
            "analyze_communication_patterns",
        )

    async def analyze_responsiveness(self, request: ContactAnalysisInput) -> ResponsivenessResult:
        return await self._generate(
            "Classify the contact's current responsiveness and say whether the seller is "
            "waiting on a reply from them.",
            request,
            ResponsivenessResult,
            "analyze_responsiveness",
        )

    async def assign_role(self, request: ContactAnalysisInput) -> RoleAssignmentResult:
        return await self._generate(
            "Assign the contact's buying-committee role for this opportunity, or null when "
            "the activity gives no evidence.",
            request,
            RoleAssignmentResult,
            "assign_role",
        )

    async def write_relationship_story(self, request: RelationshipStoryInput) -> RelationshipStory:
        return await self._generate(
            "Write a short narrative of the relationship with this contact so far, using "
            "their updated intelligence.",
            request,
            RelationshipStory,
            "write_relationship_story",
        )

    async def propose_meddpicc_actions(self, request: DealSynthesisInput) -> MeddpiccActions:
        key_fields = ", ".join(f"{field}.{key}" for field, key in MEDDPICC_KEY_FIELDS.items())
        return await self._generate(
            "Propose add, update or remove actions for the MEDDPICC qualification based on "
            "this activity. Identify entries by their key field "
            f"({key_fields}); for update and remove set prior_value to the existing key.",
            request,
            MeddpiccActions,
            "propose_meddpicc_actions",
        )

    async def summarize_deal(self, request: DealSynthesisInput) -> DealSummary:
        return await self._generate(
            "Write the current deal narrative: where the deal stands, who matters, risks "
            "and next steps.",
            request,
            DealSummary,
            "summarize_deal",
        )
