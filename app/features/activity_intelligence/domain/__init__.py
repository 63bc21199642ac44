"""
Domain subpackage for the activity intelligence feature.
"""

from .config import Clock, EngineConfig, utc_now
from .intelligence import (
    ContactIntelligence,
    DealHealth,
    Meddpicc,
    OpportunityIntelligence,
)
from .models import (
    Activity,
    ActivityRef,
    BatchStatus,
    CalendarActivity,
    CancellationToken,
    Contact,
    Decision,
    EmailActivity,
    GenericActivity,
    IntelligenceCommit,
    Opportunity,
    ProcessingStatus,
    QueueEntry,
    activity_ref,
    sort_activities,
)

__all__ = [
    "Activity",
    "ActivityRef",
    "BatchStatus",
    "CalendarActivity",
    "CancellationToken",
    "Clock",
    "Contact",
    "ContactIntelligence",
    "DealHealth",
    "Decision",
    "EmailActivity",
    "EngineConfig",
    "GenericActivity",
    "IntelligenceCommit",
    "Meddpicc",
    "Opportunity",
    "OpportunityIntelligence",
    "ProcessingStatus",
    "QueueEntry",
    "activity_ref",
    "sort_activities",
    "utc_now",
]
