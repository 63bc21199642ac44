"""
Trigger surface used by webhooks, syncs and user actions.

Every newly created activity goes through enqueue_activity(); routing
decisions happen later, in the worker, so callers never block on AI work.
"""

from app.features.activity_intelligence.domain import Clock, Contact, QueueEntry, utc_now
from app.features.activity_intelligence.errors import MissingDependencyError
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class ActivityTriggerService:
    def __init__(self, queue, repository, clock: Clock = utc_now):
        self.queue = queue
        self.repository = repository
        self.clock = clock

    async def enqueue_activity(self, activity_id: str) -> QueueEntry:
        """
        Durably enqueue one activity for intelligence processing.

        Raises:
            MissingDependencyError: the activity does not exist
        """
        activity = await self.repository.get_activity(activity_id)
        if activity is None:
            raise MissingDependencyError(
                f"Activity {activity_id} not found", operation="enqueue_activity"
            )

        entry = await self.queue.enqueue_activity(
            activity, activity.opportunity_id, now=self.clock()
        )
        logger.debug(
            "Activity trigger accepted",
            activity_id=activity_id,
            entry_id=entry.id,
            status=entry.status,
        )
        return entry

    async def register_contact(
        self, prospect_id: str, email: str, name: str | None = None
    ) -> Contact:
        """Create (or return) the contact for a newly observed counterpart."""
        contact = await self.repository.ensure_contact(prospect_id, email.strip().lower(), name)
        logger.info(
            "Contact registered",
            prospect_id=prospect_id,
            contact_id=contact.id,
            opportunity_count=len(contact.opportunity_ids),
        )
        return contact
