from datetime import UTC, datetime

from app.features.activity_intelligence.domain import Meddpicc
from app.features.activity_intelligence.pipeline.agents import MeddpiccAction
from app.features.activity_intelligence.pipeline.meddpicc import (
    apply_meddpicc_actions,
    normalize_key,
)

APPLIED_AT = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


def _apply(meddpicc, *actions):
    return apply_meddpicc_actions(
        meddpicc, list(actions), activity_id="a1", applied_at=APPLIED_AT
    )


def test_normalize_key_ignores_case_spacing_dashes_and_quotes():
    assert normalize_key("  Slow  Onboarding\u2014Process ") == "slow onboarding-process"
    assert normalize_key("\u201cSSO\u201d") == '"sso"'
    assert normalize_key(None) == ""


def test_add_creates_entry_with_provenance():
    result = _apply(
        Meddpicc(),
        MeddpiccAction(action="add", field="identified_pain", value={"pain": "Manual reporting"}),
    )

    entry = result.identified_pain[0]
    assert entry["pain"] == "Manual reporting"
    assert entry["activity_id"] == "a1"
    assert entry["updated_at"] == APPLIED_AT.isoformat()
    assert entry["relevance"] == "Medium"


def test_input_is_not_mutated():
    original = Meddpicc(champion=[{"name": "Dana"}])

    _apply(original, MeddpiccAction(action="remove", field="champion", prior_value="Dana"))

    assert original.champion == [{"name": "Dana"}]


def test_duplicate_add_is_ignored():
    current = Meddpicc(competition=[{"competition": "Acme CRM"}])

    result = _apply(
        current,
        MeddpiccAction(action="add", field="competition", value={"competition": "acme  crm"}),
    )

    assert len(result.competition) == 1


def test_update_matches_prior_value():
    current = Meddpicc(metrics=[{"metric": "Reduce churn 5%", "owner": "CFO"}])

    result = _apply(
        current,
        MeddpiccAction(
            action="update",
            field="metrics",
            prior_value="reduce churn 5%",
            value={"metric": "Reduce churn 8%"},
            relevance="High",
        ),
    )

    assert result.metrics == [
        {
            "metric": "Reduce churn 8%",
            "owner": "CFO",
            "relevance": "High",
            "reason": None,
            "activity_id": "a1",
            "updated_at": APPLIED_AT.isoformat(),
        }
    ]


def test_update_without_target_is_added():
    result = _apply(
        Meddpicc(),
        MeddpiccAction(action="update", field="economic_buyer", value={"name": "Sam Lee"}),
    )

    assert [entry["name"] for entry in result.economic_buyer] == ["Sam Lee"]


def test_removes_run_before_adds():
    current = Meddpicc(decision_process=[{"process": "Security review"}])

    result = _apply(
        current,
        MeddpiccAction(
            action="add", field="decision_process", value={"process": "Security review"}
        ),
        MeddpiccAction(action="remove", field="decision_process", prior_value="Security review"),
    )

    # The add re-creates the entry removed earlier in the same batch
    assert [entry["process"] for entry in result.decision_process] == ["Security review"]
    assert result.decision_process[0]["activity_id"] == "a1"


def test_low_relevance_and_keyless_actions_are_skipped():
    result = _apply(
        Meddpicc(),
        MeddpiccAction(
            action="add", field="paper_process", value={"process": "Legal"}, relevance="Low"
        ),
        MeddpiccAction(action="add", field="paper_process", value={"owner": "Legal"}),
    )

    assert result.paper_process == []
