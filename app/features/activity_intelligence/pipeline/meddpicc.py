"""
MEDDPICC action application.

The deal-qualification agent proposes add/update/remove actions; this
module applies them to a copy of the opportunity's MEDDPICC. Actions run
removes first, then updates, then adds, so an entry renamed by an update
is not duplicated by a later add. Low-relevance actions are ignored.
"""

import re
from datetime import datetime
from typing import Any

from app.features.activity_intelligence.domain import Meddpicc
from app.features.activity_intelligence.domain.intelligence import MEDDPICC_KEY_FIELDS
from app.infrastructure.observability.logging import get_logger

from .agents import MeddpiccAction

logger = get_logger(__name__)

ACTION_ORDER = {"remove": 0, "update": 1, "add": 2}

_DASHES = re.compile(r"[\u2010-\u2015\u2212]")
_SINGLE_QUOTES = re.compile(r"[\u2018-\u201b\u2032]")
_DOUBLE_QUOTES = re.compile(r"[\u201c-\u201f\u2033]")
_WHITESPACE = re.compile(r"\s+")


def normalize_key(value: Any) -> str:
    """Case-, whitespace-, dash- and quote-insensitive key used for matching entries."""
    if value is None:
        return ""
    text = str(value)
    text = _DASHES.sub("-", text)
    text = _SINGLE_QUOTES.sub("'", text)
    text = _DOUBLE_QUOTES.sub('"', text)
    return _WHITESPACE.sub(" ", text).strip().lower()


def _find_index(entries: list[dict[str, Any]], key_field: str, key: str) -> int | None:
    if not key:
        return None
    for index, entry in enumerate(entries):
        if normalize_key(entry.get(key_field)) == key:
            return index
    return None


def _dedupe(entries: list[dict[str, Any]], key_field: str) -> list[dict[str, Any]]:
    """Keep the last entry per normalized key, in first-seen position."""
    positions: dict[str, int] = {}
    result: list[dict[str, Any]] = []
    for entry in entries:
        key = normalize_key(entry.get(key_field))
        if key and key in positions:
            result[positions[key]] = entry
            continue
        if key:
            positions[key] = len(result)
        result.append(entry)
    return result


def apply_meddpicc_actions(
    meddpicc: Meddpicc,
    actions: list[MeddpiccAction],
    *,
    activity_id: str,
    applied_at: datetime,
) -> Meddpicc:
    """Return a new Meddpicc with the actions applied; the input is left untouched."""
    updated = meddpicc.model_copy(deep=True)
    applied = 0

    for action in sorted(actions, key=lambda item: ACTION_ORDER[item.action]):
        if action.relevance == "Low":
            continue

        key_field = MEDDPICC_KEY_FIELDS[action.field]
        entries: list[dict[str, Any]] = getattr(updated, action.field)
        match_key = normalize_key(action.prior_value or action.value.get(key_field))
        index = _find_index(entries, key_field, match_key)

        entry = {
            **action.value,
            "relevance": action.relevance,
            "reason": action.reason,
            "activity_id": activity_id,
            "updated_at": applied_at.isoformat(),
        }

        if action.action == "remove":
            if index is not None:
                entries.pop(index)
                applied += 1
            continue

        if action.action == "update" and index is not None:
            entries[index] = {**entries[index], **entry}
            applied += 1
            continue

        # "add", or an "update" whose target does not exist yet
        if not entry.get(key_field):
            logger.debug("MEDDPICC action without key skipped", field=action.field)
            continue
        if _find_index(entries, key_field, normalize_key(entry.get(key_field))) is not None:
            continue
        entries.append(entry)
        applied += 1

    for field, key_field in MEDDPICC_KEY_FIELDS.items():
        setattr(updated, field, _dedupe(getattr(updated, field), key_field))

    logger.debug("MEDDPICC actions applied", proposed=len(actions), applied=applied)
    return updated
