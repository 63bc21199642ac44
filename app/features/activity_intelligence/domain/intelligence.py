"""
Intelligence aggregates stored on contacts and opportunities.

These are pydantic models because they travel as JSONB: they are
validated when loaded from Postgres and dumped with model_dump(mode="json")
inside the commit transaction.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

PersonRole = Literal[
    "Economic Buyer",
    "Champion",
    "Influencer",
    "User",
    "Blocker",
    "Decision Maker",
    "Other",
    "Uninvolved",
]
ResponsivenessState = Literal[
    "Ghosting", "Delayed", "Engaged", "OOO", "Handed Off", "Disengaged", "Uninvolved"
]
Relevance = Literal["High", "Medium", "Low"]
HealthTrend = Literal["Improving", "Declining", "Stable"]
MomentumDirection = Literal["Accelerating", "Decelerating", "Stable"]

ENGAGEMENT_SCORE_MIN = -50.0
ENGAGEMENT_SCORE_MAX = 50.0

# MEDDPICC category -> field used to identify an entry inside the category
MEDDPICC_KEY_FIELDS: dict[str, str] = {
    "metrics": "metric",
    "economic_buyer": "name",
    "decision_criteria": "criteria",
    "decision_process": "process",
    "paper_process": "process",
    "identified_pain": "pain",
    "champion": "name",
    "competition": "competition",
}


class ScoreHistoryEntry(BaseModel):
    score: float
    delta: float
    reasoning: str
    activity_id: str
    activity_date: datetime
    recorded_at: datetime


class BehavioralIndicator(BaseModel):
    indicator: str
    confidence: str
    relevance: Relevance
    activity_id: str
    activity_date: datetime
    recorded_at: datetime


class CommunicationPattern(BaseModel):
    response_speed: str | None = None
    initiation_ratio: float | None = None
    message_depth: str | None = None
    tone: str | None = None
    activity_id: str
    analyzed_at: datetime


class RoleAssignment(BaseModel):
    role: PersonRole
    reasoning: str | None = None
    assigned_at: datetime


class ResponsivenessSnapshot(BaseModel):
    status: ResponsivenessState
    summary: str
    is_awaiting_response: bool = False
    active_responding_contact: str | None = None
    analyzed_at: datetime


class ContactIntelligence(BaseModel):
    """Per-opportunity intelligence held by one contact."""

    engagement_score: float = 0.0
    score_history: list[ScoreHistoryEntry] = Field(default_factory=list)
    behavioral_indicators: list[BehavioralIndicator] = Field(default_factory=list)
    communication_patterns: list[CommunicationPattern] = Field(default_factory=list)
    role_assignments: list[RoleAssignment] = Field(default_factory=list)
    responsiveness: list[ResponsivenessSnapshot] = Field(default_factory=list)
    relationship_story: str | None = None

    def latest_role(self) -> PersonRole | None:
        if not self.role_assignments:
            return None
        return max(self.role_assignments, key=lambda assignment: assignment.assigned_at).role

    def latest_responsiveness(self) -> ResponsivenessSnapshot | None:
        if not self.responsiveness:
            return None
        return max(self.responsiveness, key=lambda snapshot: snapshot.analyzed_at)


class TemperatureReading(BaseModel):
    temperature: int
    activity_id: str | None = None
    recorded_at: datetime


class DealHealth(BaseModel):
    temperature: int | None = None
    trend: HealthTrend | None = None
    momentum: float | None = None
    momentum_direction: MomentumDirection | None = None
    temperature_history: list[TemperatureReading] = Field(default_factory=list)


class Meddpicc(BaseModel):
    """Each category is a list of loosely-typed entries keyed by MEDDPICC_KEY_FIELDS."""

    metrics: list[dict[str, Any]] = Field(default_factory=list)
    economic_buyer: list[dict[str, Any]] = Field(default_factory=list)
    decision_criteria: list[dict[str, Any]] = Field(default_factory=list)
    decision_process: list[dict[str, Any]] = Field(default_factory=list)
    paper_process: list[dict[str, Any]] = Field(default_factory=list)
    identified_pain: list[dict[str, Any]] = Field(default_factory=list)
    champion: list[dict[str, Any]] = Field(default_factory=list)
    competition: list[dict[str, Any]] = Field(default_factory=list)


class NarrativeEntry(BaseModel):
    narrative: str
    activity_id: str
    recorded_at: datetime


class OpportunityIntelligence(BaseModel):
    meddpicc: Meddpicc = Field(default_factory=Meddpicc)
    deal_health: DealHealth = Field(default_factory=DealHealth)
    narrative: str | None = None
    narrative_history: list[NarrativeEntry] = Field(default_factory=list)
