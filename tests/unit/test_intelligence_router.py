from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from app.db.helpers import DatabaseError
from app.features.activity_intelligence.domain import Contact, Opportunity, QueueEntry
from app.features.activity_intelligence.errors import MissingDependencyError
from app.main import app

client = TestClient(app)

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


def _entry(**overrides):
    fields = {
        "id": "entry-1",
        "kind": "activity",
        "prospect_id": "prospect-1",
        "opportunity_id": "opp-1",
        "status": "pending",
        "enqueued_at": NOW,
    }
    fields.update(overrides)
    return QueueEntry(**fields)


@pytest.fixture
def engine():
    engine = SimpleNamespace(
        batch_controller=SimpleNamespace(
            get_processing_status=AsyncMock(),
            restart=AsyncMock(),
            schedule=AsyncMock(),
            cancel=AsyncMock(),
        ),
        trigger=SimpleNamespace(enqueue_activity=AsyncMock(), register_contact=AsyncMock()),
        repository=SimpleNamespace(
            get_opportunity=AsyncMock(
                return_value=Opportunity(
                    id="opp-1",
                    prospect_id="prospect-1",
                    name="Expansion",
                    is_closed=False,
                    created_at=NOW - timedelta(days=30),
                    updated_at=NOW,
                )
            )
        ),
        queue=SimpleNamespace(get_stats=AsyncMock()),
    )
    app.state.intelligence_engine = engine
    yield engine
    app.state.intelligence_engine = None


def test_requests_without_engine_are_unavailable():
    app.state.intelligence_engine = None

    response = client.get("/intelligence/opportunities/opp-1/status")

    assert response.status_code == 503


def test_processing_status(engine):
    engine.batch_controller.get_processing_status.return_value = {
        "type": "batch",
        "status": "processing",
        "processed": 3,
        "total": 10,
    }

    response = client.get("/intelligence/opportunities/opp-1/status")

    assert response.status_code == 200
    body = response.json()
    assert body["type"] == "batch"
    assert body["processed"] == 3
    assert body["total"] == 10


def test_processing_status_unknown_opportunity(engine):
    engine.batch_controller.get_processing_status.side_effect = MissingDependencyError(
        "Opportunity opp-404 not found"
    )

    response = client.get("/intelligence/opportunities/opp-404/status")

    assert response.status_code == 404


def test_enqueue_activity(engine):
    engine.trigger.enqueue_activity.return_value = _entry()

    response = client.post("/intelligence/activities/a1/enqueue")

    assert response.status_code == 202
    assert response.json()["entry_id"] == "entry-1"
    engine.trigger.enqueue_activity.assert_awaited_once_with("a1")


def test_enqueue_missing_activity(engine):
    engine.trigger.enqueue_activity.side_effect = MissingDependencyError("Activity a9 not found")

    response = client.post("/intelligence/activities/a9/enqueue")

    assert response.status_code == 404


def test_enqueue_when_store_is_down(engine):
    engine.trigger.enqueue_activity.side_effect = DatabaseError(
        "Query failed", operation="fetch_one"
    )

    response = client.post("/intelligence/activities/a1/enqueue")

    assert response.status_code == 503


def test_register_contact(engine):
    engine.trigger.register_contact.return_value = Contact(
        id="contact-9",
        prospect_id="prospect-1",
        email="new@buyer.example",
        opportunity_ids=["opp-1"],
    )

    response = client.post(
        "/intelligence/contacts",
        json={"prospect_id": "prospect-1", "email": "New@Buyer.example"},
    )

    assert response.status_code == 201
    assert response.json() == {
        "contact_id": "contact-9",
        "prospect_id": "prospect-1",
        "opportunity_ids": ["opp-1"],
    }


def test_reprocess_without_delay_restarts(engine):
    engine.batch_controller.restart.return_value = _entry(
        kind="opportunity_reprocessing", scheduled_for=NOW
    )

    response = client.post("/intelligence/opportunities/opp-1/reprocess")

    assert response.status_code == 202
    engine.batch_controller.restart.assert_awaited_once_with(
        "prospect-1", "opp-1", reason="manual"
    )
    engine.batch_controller.schedule.assert_not_awaited()


def test_reprocess_with_delay_schedules(engine):
    engine.batch_controller.schedule.return_value = _entry(
        kind="opportunity_reprocessing", scheduled_for=NOW + timedelta(minutes=1)
    )

    response = client.post(
        "/intelligence/opportunities/opp-1/reprocess",
        json={"delay_ms": 60000, "reason": "crm_import"},
    )

    assert response.status_code == 202
    engine.batch_controller.schedule.assert_awaited_once_with(
        "prospect-1", "opp-1", delay=timedelta(minutes=1), reason="crm_import"
    )


def test_reprocess_unknown_opportunity(engine):
    engine.repository.get_opportunity.return_value = None

    response = client.post("/intelligence/opportunities/opp-404/reprocess")

    assert response.status_code == 404


def test_cancel_reprocessing(engine):
    engine.batch_controller.cancel.return_value = True

    response = client.delete("/intelligence/opportunities/opp-1/reprocess")

    assert response.status_code == 200
    assert response.json() == {"opportunity_id": "opp-1", "cancelled": True}


def test_queue_stats(engine):
    engine.queue.get_stats.return_value = {
        "by_kind": {"activity": {"pending": 2}},
        "totals": {"pending": 2},
        "oldest_pending_at": None,
    }

    response = client.get("/intelligence/queue/stats")

    assert response.status_code == 200
    assert response.json()["totals"] == {"pending": 2}
