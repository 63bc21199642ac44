"""
Persistence for activities, opportunities and contacts.

Reads hand out private snapshots; the only intelligence writes are the
Phase 5 commit and the reprocessing reset, each inside one transaction.
"""

from dataclasses import asdict
from datetime import datetime
from typing import Any

from psycopg.types.json import Jsonb

from app.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one
from app.db.pool import db_pool
from app.features.activity_intelligence.domain import (
    Activity,
    CalendarActivity,
    Contact,
    ContactIntelligence,
    EmailActivity,
    GenericActivity,
    IntelligenceCommit,
    Opportunity,
    OpportunityIntelligence,
    ProcessingStatus,
    sort_activities,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class IntelligenceRepositoryError(DatabaseError):
    """More specific exception for activity/opportunity/contact persistence failures."""


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def processing_status_to_json(status: ProcessingStatus) -> dict[str, Any]:
    data = asdict(status)
    for key in ("started_at", "completed_at"):
        if data[key] is not None:
            data[key] = data[key].isoformat()
    return data


def processing_status_from_json(data: dict[str, Any] | None) -> ProcessingStatus:
    if not data:
        return ProcessingStatus()
    return ProcessingStatus(
        state=data.get("state", "idle"),
        processed=data.get("processed", 0),
        total=data.get("total", 0),
        started_at=_parse_datetime(data.get("started_at")),
        completed_at=_parse_datetime(data.get("completed_at")),
        error=data.get("error"),
        duration_ms=data.get("duration_ms"),
    )


class IntelligenceRepository:
    """Postgres access for the records the intelligence pipeline reads and writes."""

    ACTIVITY_COLUMNS = """
        id, kind, prospect_id, opportunity_id, event_date, payload, ai_summary,
        processed_for_opportunities, contact_ids, created_at
    """
    OPPORTUNITY_COLUMNS = """
        o.id, o.prospect_id, o.name, o.is_closed, o.intelligence,
        o.last_intelligence_update_at, o.processing_status, o.created_at, o.updated_at,
        COALESCE(
            (SELECT array_agg(oc.contact_id ORDER BY oc.contact_id)
             FROM opportunity_contacts oc WHERE oc.opportunity_id = o.id),
            '{}'
        ) AS contact_ids
    """

    @staticmethod
    def _row_to_activity(row: dict | None) -> Activity | None:
        if not row:
            return None

        payload = row.get("payload") or {}
        common = {
            "id": str(row["id"]),
            "prospect_id": str(row["prospect_id"]),
            "opportunity_id": str(row["opportunity_id"]) if row.get("opportunity_id") else None,
            "event_date": row["event_date"],
            "created_at": row["created_at"],
            "ai_summary": row.get("ai_summary"),
            "processed_for_opportunities": set(row.get("processed_for_opportunities") or []),
            "contact_ids": list(row.get("contact_ids") or []),
        }

        kind = row["kind"]
        if kind == "email":
            return EmailActivity(
                **common,
                subject=payload.get("subject", ""),
                body=payload.get("body", ""),
                sender=payload.get("sender", ""),
                recipients=payload.get("recipients", []),
            )
        if kind == "calendar":
            return CalendarActivity(
                **common,
                title=payload.get("title", ""),
                description=payload.get("description"),
                ends_at=_parse_datetime(payload.get("ends_at")),
                attendees=payload.get("attendees", []),
            )
        if kind == "generic":
            return GenericActivity(
                **common,
                activity_type=payload.get("activity_type", "note"),
                title=payload.get("title"),
                content=payload.get("content"),
            )

        raise IntelligenceRepositoryError(
            f"Unknown activity kind '{kind}' for activity {row['id']}", operation="load_activity"
        )

    @staticmethod
    def _row_to_opportunity(row: dict | None) -> Opportunity | None:
        if not row:
            return None

        return Opportunity(
            id=str(row["id"]),
            prospect_id=str(row["prospect_id"]),
            name=row["name"],
            is_closed=row["is_closed"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            contact_ids=[str(contact_id) for contact_id in row.get("contact_ids") or []],
            intelligence=OpportunityIntelligence.model_validate(row.get("intelligence") or {}),
            last_intelligence_update_at=row.get("last_intelligence_update_at"),
            processing_status=processing_status_from_json(row.get("processing_status")),
        )

    async def get_activity(self, activity_id: str) -> Activity | None:
        query = f"SELECT {self.ACTIVITY_COLUMNS} FROM activities WHERE id = %s"
        return self._row_to_activity(await fetch_one(query, (activity_id,)))

    async def list_opportunity_activities(self, opportunity_id: str) -> list[Activity]:
        """All activities routed to the opportunity, oldest event first."""
        query = f"""
            SELECT {self.ACTIVITY_COLUMNS}
            FROM activities
            WHERE opportunity_id = %s
            ORDER BY event_date ASC, created_at ASC, id ASC
        """
        rows = await fetch_all(query, (opportunity_id,))
        return sort_activities([self._row_to_activity(row) for row in rows])

    async def save_activity_summary(self, activity_id: str, summary: str) -> None:
        """Phase 0 write; intentionally outside the Phase 5 transaction."""
        await execute_query(
            "UPDATE activities SET ai_summary = %s WHERE id = %s", (summary, activity_id)
        )

    async def assign_activity_opportunity(self, activity_id: str, opportunity_id: str) -> None:
        await execute_query(
            "UPDATE activities SET opportunity_id = %s WHERE id = %s AND opportunity_id IS NULL",
            (opportunity_id, activity_id),
        )
        logger.info(
            "Activity routed to opportunity", activity_id=activity_id, opportunity_id=opportunity_id
        )

    async def get_opportunity(self, opportunity_id: str) -> Opportunity | None:
        query = f"SELECT {self.OPPORTUNITY_COLUMNS} FROM opportunities o WHERE o.id = %s"
        return self._row_to_opportunity(await fetch_one(query, (opportunity_id,)))

    async def list_prospect_opportunities(self, prospect_id: str) -> list[Opportunity]:
        query = f"""
            SELECT {self.OPPORTUNITY_COLUMNS}
            FROM opportunities o
            WHERE o.prospect_id = %s
            ORDER BY o.updated_at DESC
        """
        rows = await fetch_all(query, (prospect_id,))
        return [self._row_to_opportunity(row) for row in rows]

    async def get_contacts(self, contact_ids: list[str], opportunity_id: str) -> list[Contact]:
        """Contacts with their intelligence for one opportunity (other scopes are not loaded)."""
        if not contact_ids:
            return []

        query = """
            SELECT
                c.id, c.prospect_id, c.email, c.name,
                COALESCE(
                    (SELECT array_agg(oc.opportunity_id)
                     FROM opportunity_contacts oc WHERE oc.contact_id = c.id),
                    '{}'
                ) AS opportunity_ids,
                coi.intelligence
            FROM contacts c
            LEFT JOIN contact_opportunity_intelligence coi
                ON coi.contact_id = c.id AND coi.opportunity_id = %s
            WHERE c.id = ANY(%s)
            ORDER BY c.id
        """
        rows = await fetch_all(query, (opportunity_id, list(contact_ids)))

        contacts = []
        for row in rows:
            contact = Contact(
                id=str(row["id"]),
                prospect_id=str(row["prospect_id"]),
                email=row["email"],
                name=row.get("name"),
                opportunity_ids=[str(value) for value in row.get("opportunity_ids") or []],
            )
            if row.get("intelligence"):
                contact.intelligence[opportunity_id] = ContactIntelligence.model_validate(
                    row["intelligence"]
                )
            contacts.append(contact)
        return contacts

    async def ensure_contact(self, prospect_id: str, email: str, name: str | None = None) -> Contact:
        """
        Register a newly observed counterpart.

        New contacts are linked to every existing opportunity of the
        prospect; an existing contact is returned unchanged.
        """
        normalized_email = email.strip().lower()
        try:
            async with db_pool.transaction() as conn:
                row = await fetch_one(
                    """
                    INSERT INTO contacts (prospect_id, email, name)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (prospect_id, email) DO NOTHING
                    RETURNING id
                    """,
                    (prospect_id, normalized_email, name),
                    connection=conn,
                )
                created = row is not None
                if not created:
                    row = await fetch_one(
                        "SELECT id FROM contacts WHERE prospect_id = %s AND email = %s",
                        (prospect_id, normalized_email),
                        connection=conn,
                    )
                contact_id = str(row["id"])

                if created:
                    await execute_query(
                        """
                        INSERT INTO opportunity_contacts (opportunity_id, contact_id)
                        SELECT id, %s FROM opportunities WHERE prospect_id = %s
                        ON CONFLICT DO NOTHING
                        """,
                        (contact_id, prospect_id),
                        connection=conn,
                    )
        except DatabaseError:
            raise
        except Exception as e:
            raise IntelligenceRepositoryError(
                f"Failed to register contact: {e}", operation="ensure_contact"
            ) from e

        if created:
            logger.info("Contact registered", contact_id=contact_id, prospect_id=prospect_id)

        contacts = await self.get_contacts([contact_id], opportunity_id="")
        return contacts[0]

    async def commit_intelligence(self, commit: IntelligenceCommit) -> None:
        """
        Phase 5: persist contacts, the opportunity and the processed marker atomically.

        Any failure rolls back every statement of the commit.
        """
        opportunity = commit.opportunity
        try:
            async with db_pool.transaction() as conn:
                for contact in commit.contacts:
                    intelligence = contact.intelligence.get(opportunity.id)
                    if intelligence is None:
                        continue
                    await execute_query(
                        """
                        INSERT INTO contact_opportunity_intelligence (
                            contact_id, opportunity_id, intelligence, updated_at
                        )
                        VALUES (%s, %s, %s, %s)
                        ON CONFLICT (contact_id, opportunity_id)
                        DO UPDATE SET intelligence = EXCLUDED.intelligence,
                                      updated_at = EXCLUDED.updated_at
                        """,
                        (
                            contact.id,
                            opportunity.id,
                            Jsonb(intelligence.model_dump(mode="json")),
                            commit.committed_at,
                        ),
                        connection=conn,
                    )

                updated = await execute_query(
                    """
                    UPDATE opportunities
                    SET intelligence = %s,
                        last_intelligence_update_at = %s,
                        updated_at = %s
                    WHERE id = %s
                    """,
                    (
                        Jsonb(opportunity.intelligence.model_dump(mode="json")),
                        opportunity.last_intelligence_update_at,
                        commit.committed_at,
                        opportunity.id,
                    ),
                    connection=conn,
                )
                if updated != 1:
                    raise IntelligenceRepositoryError(
                        f"Opportunity {opportunity.id} disappeared during commit",
                        operation="commit_intelligence",
                    )

                await execute_query(
                    """
                    UPDATE activities
                    SET processed_for_opportunities = array_append(processed_for_opportunities, %s)
                    WHERE id = %s AND NOT (%s = ANY(processed_for_opportunities))
                    """,
                    (opportunity.id, commit.activity_id, opportunity.id),
                    connection=conn,
                )
        except DatabaseError:
            raise
        except Exception as e:
            raise IntelligenceRepositoryError(
                f"Intelligence commit failed: {e}", operation="commit_intelligence"
            ) from e

        logger.debug(
            "Intelligence committed",
            activity_id=commit.activity_id,
            opportunity_id=opportunity.id,
            contact_count=len(commit.contacts),
        )

    async def reset_opportunity_intelligence(self, opportunity_id: str) -> None:
        """Wipe every intelligence field scoped to the opportunity, in one transaction."""
        try:
            async with db_pool.transaction() as conn:
                await execute_query(
                    """
                    UPDATE opportunities
                    SET intelligence = %s,
                        last_intelligence_update_at = NULL
                    WHERE id = %s
                    """,
                    (Jsonb(OpportunityIntelligence().model_dump(mode="json")), opportunity_id),
                    connection=conn,
                )
                await execute_query(
                    "DELETE FROM contact_opportunity_intelligence WHERE opportunity_id = %s",
                    (opportunity_id,),
                    connection=conn,
                )
                await execute_query(
                    """
                    UPDATE activities
                    SET processed_for_opportunities = array_remove(processed_for_opportunities, %s)
                    WHERE %s = ANY(processed_for_opportunities)
                    """,
                    (opportunity_id, opportunity_id),
                    connection=conn,
                )
        except DatabaseError:
            raise
        except Exception as e:
            raise IntelligenceRepositoryError(
                f"Failed to reset opportunity intelligence: {e}", operation="reset_intelligence"
            ) from e

        logger.info("Opportunity intelligence reset", opportunity_id=opportunity_id)

    async def update_processing_status(self, opportunity_id: str, status: ProcessingStatus) -> None:
        await execute_query(
            "UPDATE opportunities SET processing_status = %s WHERE id = %s",
            (Jsonb(processing_status_to_json(status)), opportunity_id),
        )
