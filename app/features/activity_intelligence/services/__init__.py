"""
Service layer for the activity intelligence feature.
"""

from .activity_trigger import ActivityTriggerService
from .batch_reprocessing import BatchReprocessingController, SweepOutcome
from .historical_decision import HistoricalDecisionService, select_opportunity

__all__ = [
    "ActivityTriggerService",
    "BatchReprocessingController",
    "HistoricalDecisionService",
    "SweepOutcome",
    "select_opportunity",
]
