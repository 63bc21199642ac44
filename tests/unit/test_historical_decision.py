from datetime import UTC, datetime, timedelta

import pytest

from app.features.activity_intelligence.domain import Opportunity
from app.features.activity_intelligence.errors import BatchBusyError, MissingDependencyError
from app.features.activity_intelligence.services.historical_decision import select_opportunity

# FakeClock start
NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


def _opportunity(opportunity_id, updated_days_ago, is_closed=False):
    return Opportunity(
        id=opportunity_id,
        prospect_id="prospect-1",
        name=opportunity_id,
        is_closed=is_closed,
        created_at=NOW - timedelta(days=100),
        updated_at=NOW - timedelta(days=updated_days_ago),
    )


class TestSelectOpportunity:
    def test_no_opportunities(self):
        assert select_opportunity([]) is None

    def test_single_opportunity_wins_even_when_closed(self):
        only = _opportunity("closed", 1, is_closed=True)
        assert select_opportunity([only]) is only

    def test_most_recent_open_opportunity(self):
        candidates = [
            _opportunity("old-open", 20),
            _opportunity("recent-closed", 1, is_closed=True),
            _opportunity("recent-open", 5),
        ]
        assert select_opportunity(candidates).id == "recent-open"

    def test_falls_back_to_most_recent_closed(self):
        candidates = [
            _opportunity("closed-a", 9, is_closed=True),
            _opportunity("closed-b", 3, is_closed=True),
        ]
        assert select_opportunity(candidates).id == "closed-b"


class TestIsHistorical:
    @pytest.fixture
    def service(self, engine):
        return engine.decision_service

    def test_without_watermark_uses_grace_before_now(self, service, fake_repository):
        opportunity = fake_repository.opportunities["opp-1"]

        recent = fake_repository.add_email("recent", NOW - timedelta(minutes=4))
        old = fake_repository.add_email("old", NOW - timedelta(minutes=6))

        assert service.is_historical(recent, opportunity, NOW) is False
        assert service.is_historical(old, opportunity, NOW) is True

    def test_watermark_moves_the_window(self, service, fake_repository):
        opportunity = fake_repository.opportunities["opp-1"]
        opportunity.last_intelligence_update_at = NOW - timedelta(days=1)

        inside = fake_repository.add_email("inside", NOW - timedelta(days=1, minutes=4))
        before = fake_repository.add_email("before", NOW - timedelta(days=1, minutes=6))

        assert service.is_historical(inside, opportunity, NOW) is False
        assert service.is_historical(before, opportunity, NOW) is True

    def test_future_watermark_is_capped_at_now(self, service, fake_repository):
        opportunity = fake_repository.opportunities["opp-1"]
        opportunity.last_intelligence_update_at = NOW + timedelta(days=30)

        activity = fake_repository.add_email("a1", NOW - timedelta(minutes=4))

        assert service.is_historical(activity, opportunity, NOW) is False


class TestDecisionTable:
    @pytest.mark.asyncio
    async def test_realtime_without_batch_processes_now(self, engine, fake_repository):
        fake_repository.add_email("a1", NOW - timedelta(minutes=1))

        decision = await engine.decision_service.decide_activity("a1")

        assert decision.action == "process_now"
        assert decision.is_historical is False
        assert decision.batch_state == "idle"

    @pytest.mark.asyncio
    async def test_realtime_with_scheduled_batch_appends(self, engine, fake_repository):
        fake_repository.add_email("a1", NOW - timedelta(minutes=1))
        await engine.batch_controller.schedule("prospect-1", "opp-1")

        decision = await engine.decision_service.decide_activity("a1")

        assert decision.action == "append_to_batch"
        assert decision.batch_state == "scheduled"

    @pytest.mark.asyncio
    async def test_historical_without_batch_schedules(self, engine, fake_repository):
        fake_repository.add_email("a1", NOW - timedelta(days=2))

        decision = await engine.decision_service.decide_activity("a1")

        assert decision.action == "schedule_reprocessing"
        assert decision.is_historical is True

    @pytest.mark.asyncio
    async def test_historical_with_scheduled_batch_restarts(self, engine, fake_repository):
        fake_repository.add_email("a1", NOW - timedelta(days=2))
        await engine.batch_controller.schedule("prospect-1", "opp-1")

        decision = await engine.decision_service.decide_activity("a1")

        assert decision.action == "restart_reprocessing"

    @pytest.mark.asyncio
    async def test_failed_batch_counts_as_inactive(self, engine, fake_repository, fake_queue, clock):
        fake_repository.add_email("a1", NOW - timedelta(days=2))
        entry = await engine.batch_controller.schedule("prospect-1", "opp-1", delay=timedelta(0))
        claimed = await fake_queue.claim(entry.id, now=clock.now)
        await fake_queue.mark_failed(
            entry.id, "boom", retryable=False, now=clock.now, lease_id=claimed.lease_id
        )

        decision = await engine.decision_service.decide_activity("a1")

        assert decision.action == "schedule_reprocessing"


class TestApply:
    @pytest.mark.asyncio
    async def test_schedule_sets_debounce_horizon(self, engine, fake_repository, fake_queue, clock):
        fake_repository.add_email("a1", NOW - timedelta(days=2))

        decision = await engine.decision_service.route("a1")

        entry = await fake_queue.get_reprocessing_entry("opp-1")
        assert decision.action == "schedule_reprocessing"
        assert entry.scheduled_for == clock.now + timedelta(milliseconds=60_000)
        assert entry.debounce_reason == "historical activity a1"
        assert fake_repository.commits == []

    @pytest.mark.asyncio
    async def test_append_falls_back_to_processing_when_batch_is_gone(
        self, engine, fake_repository, fake_queue
    ):
        fake_repository.add_email("a1", NOW - timedelta(minutes=1))
        await engine.batch_controller.schedule("prospect-1", "opp-1")
        decision = await engine.decision_service.decide_activity("a1")
        await engine.batch_controller.cancel("opp-1")

        applied = await engine.decision_service.apply(decision)

        assert applied.action == "process_now"
        assert fake_repository.commits == [("a1", "opp-1")]

    @pytest.mark.asyncio
    async def test_append_to_scheduled_batch_does_not_process(self, engine, fake_repository):
        fake_repository.add_email("a1", NOW - timedelta(minutes=1))
        await engine.batch_controller.schedule("prospect-1", "opp-1")

        decision = await engine.decision_service.route("a1")

        assert decision.action == "append_to_batch"
        assert fake_repository.commits == []

    @pytest.mark.asyncio
    async def test_append_to_sweep_claimed_elsewhere_keeps_activity_queued(
        self, engine, fake_repository, fake_queue, clock
    ):
        fake_repository.add_email("a1", NOW - timedelta(minutes=1))
        entry = await engine.batch_controller.schedule("prospect-1", "opp-1", delay=timedelta(0))
        await fake_queue.claim(entry.id, now=clock.now)
        decision = await engine.decision_service.decide_activity("a1")

        assert decision.action == "append_to_batch"
        with pytest.raises(BatchBusyError):
            await engine.decision_service.apply(decision)
        assert fake_repository.commits == []


class TestResolveOpportunity:
    @pytest.mark.asyncio
    async def test_unassigned_activity_is_assigned_and_persisted(self, engine, fake_repository):
        fake_repository.add_opportunity("opp-closed", is_closed=True, updated_at=NOW)
        fake_repository.add_email("a1", NOW - timedelta(minutes=1), opportunity_id=None)

        decision = await engine.decision_service.decide_activity("a1")

        assert decision.opportunity.id == "opp-1"
        assert fake_repository.activities["a1"].opportunity_id == "opp-1"

    @pytest.mark.asyncio
    async def test_prospect_without_opportunity(self, engine, fake_repository):
        fake_repository.add_email(
            "a1", NOW - timedelta(minutes=1), opportunity_id=None, prospect_id="lonely"
        )

        with pytest.raises(MissingDependencyError):
            await engine.decision_service.decide_activity("a1")

    @pytest.mark.asyncio
    async def test_unknown_opportunity(self, engine, fake_repository):
        fake_repository.add_email("a1", NOW - timedelta(minutes=1), opportunity_id="opp-404")

        with pytest.raises(MissingDependencyError):
            await engine.decision_service.decide_activity("a1")
