"""
Historical decision service - routes one activity to one of four actions.

| real-time? | batch active? | action                |
|------------|---------------|-----------------------|
| yes        | no            | process_now           |
| yes        | yes           | append_to_batch       |
| no         | no            | schedule_reprocessing |
| no         | yes           | restart_reprocessing  |

The service keeps no state of its own: scheduling and restarting both go
through the queue store's reprocessing upsert via the batch controller.
"""

from __future__ import annotations

from datetime import datetime

from app.features.activity_intelligence.domain import (
    Activity,
    Clock,
    Decision,
    EngineConfig,
    Opportunity,
    utc_now,
)
from app.features.activity_intelligence.errors import BatchBusyError, MissingDependencyError
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


def select_opportunity(opportunities: list[Opportunity]) -> Opportunity | None:
    """
    Pick the routing target among a prospect's opportunities.

    A single opportunity always wins. Otherwise the most recently updated
    open one is used, falling back to the most recently updated closed one.
    """
    if not opportunities:
        return None
    if len(opportunities) == 1:
        return opportunities[0]

    by_recency = sorted(opportunities, key=lambda opportunity: opportunity.updated_at, reverse=True)
    for opportunity in by_recency:
        if not opportunity.is_closed:
            return opportunity
    return by_recency[0]


class HistoricalDecisionService:
    """Classifies activities as real-time or historical and applies the routing table."""

    def __init__(self, repository, batch_controller, pipeline, config: EngineConfig, clock: Clock = utc_now):
        self.repository = repository
        self.batch_controller = batch_controller
        self.pipeline = pipeline
        self.config = config
        self.clock = clock

    async def resolve_opportunity(self, activity: Activity) -> Opportunity:
        """Load the activity's opportunity, resolving and persisting one when it has none."""
        if activity.opportunity_id:
            opportunity = await self.repository.get_opportunity(activity.opportunity_id)
            if opportunity is None:
                raise MissingDependencyError(
                    f"Opportunity {activity.opportunity_id} not found",
                    operation="resolve_opportunity",
                )
            return opportunity

        opportunities = await self.repository.list_prospect_opportunities(activity.prospect_id)
        opportunity = select_opportunity(opportunities)
        if opportunity is None:
            raise MissingDependencyError(
                f"Prospect {activity.prospect_id} has no opportunity for activity {activity.id}",
                operation="resolve_opportunity",
            )

        await self.repository.assign_activity_opportunity(activity.id, opportunity.id)
        activity.opportunity_id = opportunity.id
        logger.info(
            "Activity assigned to opportunity",
            activity_id=activity.id,
            opportunity_id=opportunity.id,
            candidates=len(opportunities),
        )
        return opportunity

    def is_historical(self, activity: Activity, opportunity: Opportunity, now: datetime) -> bool:
        """
        An activity is historical when it predates the processing window.

        The window ends at the opportunity's watermark (capped at now) or at
        now when nothing has been processed yet, and reaches back by the
        configured grace period.
        """
        reference = now
        watermark = opportunity.last_intelligence_update_at
        if watermark is not None:
            reference = min(watermark, now)
        return activity.event_date < reference - self.config.historical_grace

    async def decide(self, activity: Activity) -> Decision:
        opportunity = await self.resolve_opportunity(activity)
        historical = self.is_historical(activity, opportunity, self.clock())
        batch = await self.batch_controller.status(opportunity.id)
        active = batch.state in ("scheduled", "running")

        if historical:
            action = "restart_reprocessing" if active else "schedule_reprocessing"
        else:
            action = "append_to_batch" if active else "process_now"

        return Decision(
            action=action,
            activity=activity,
            opportunity=opportunity,
            is_historical=historical,
            batch_state=batch.state,
        )

    async def apply(self, decision: Decision) -> Decision:
        activity = decision.activity
        opportunity = decision.opportunity

        logger.info(
            "Applying activity decision",
            activity_id=activity.id,
            opportunity_id=opportunity.id,
            action=decision.action,
            is_historical=decision.is_historical,
            batch_state=decision.batch_state,
        )

        if decision.action == "process_now":
            await self.pipeline.process_activity_for_intelligence(
                activity.id, opportunity_id=opportunity.id
            )
        elif decision.action == "append_to_batch":
            appended = await self.batch_controller.append_activity(opportunity.id, activity)
            if not appended:
                batch = await self.batch_controller.status(opportunity.id)
                if batch.state != "idle":
                    raise BatchBusyError(
                        f"Opportunity {opportunity.id} is being reprocessed by another worker"
                    )
                # The batch finished between decide() and apply()
                logger.info(
                    "Batch no longer active, processing activity directly",
                    activity_id=activity.id,
                    opportunity_id=opportunity.id,
                )
                await self.pipeline.process_activity_for_intelligence(
                    activity.id, opportunity_id=opportunity.id
                )
                decision.action = "process_now"
        elif decision.action == "schedule_reprocessing":
            await self.batch_controller.schedule(
                opportunity.prospect_id,
                opportunity.id,
                reason=f"historical activity {activity.id}",
            )
        else:
            await self.batch_controller.restart(
                opportunity.prospect_id,
                opportunity.id,
                reason=f"historical activity {activity.id} during batch",
            )

        return decision

    async def decide_activity(self, activity_id: str) -> Decision:
        activity = await self.repository.get_activity(activity_id)
        if activity is None:
            raise MissingDependencyError(f"Activity {activity_id} not found", operation="route")
        return await self.decide(activity)

    async def route(self, activity_id: str) -> Decision:
        """Load, classify and route one activity."""
        return await self.apply(await self.decide_activity(activity_id))
