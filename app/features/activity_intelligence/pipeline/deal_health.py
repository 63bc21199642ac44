"""
Deterministic deal health indicators.

Temperature is the role-weighted sum of contact engagement scores mapped
onto 0-100 (50 is neutral). Momentum compares each contact's score
change over the last 14 days with the 14 days before that. The trend is
read from the opportunity's temperature history: a regression slope over
the recent window, falling back to the start-to-end delta.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from app.features.activity_intelligence.domain import ContactIntelligence, DealHealth
from app.features.activity_intelligence.domain.intelligence import (
    HealthTrend,
    MomentumDirection,
    ScoreHistoryEntry,
    TemperatureReading,
)

ROLE_WEIGHTS: dict[str, float] = {
    "Economic Buyer": 3.0,
    "Champion": 2.0,
    "User": 1.0,
    "Influencer": 1.5,
    "Decision Maker": 1.0,
    "Blocker": -2.0,
    "Other": 0.5,
    "Uninvolved": 0.0,
}
DEFAULT_ROLE_WEIGHT = 1.0

TEMPERATURE_NORMALIZATION_CAP = 300.0
MOMENTUM_THRESHOLD = 5.0
MOMENTUM_WINDOW = timedelta(days=14)

TREND_WINDOW_SIZE = 30
TREND_MIN_POINTS_FOR_SLOPE = 5
TREND_SLOPE_THRESHOLD = 0.25  # degrees per day
TREND_DELTA_THRESHOLD = 5


@dataclass(slots=True)
class DealHealthResult:
    temperature: int
    trend: HealthTrend
    momentum: float
    momentum_direction: MomentumDirection


def role_weight(intelligence: ContactIntelligence) -> float:
    role = intelligence.latest_role()
    if role is None:
        return DEFAULT_ROLE_WEIGHT
    return ROLE_WEIGHTS.get(role, DEFAULT_ROLE_WEIGHT)


def calculate_temperature(contacts: list[ContactIntelligence]) -> int:
    total_influence = sum(intel.engagement_score * role_weight(intel) for intel in contacts)
    normalized = max(-1.0, min(1.0, total_influence / TEMPERATURE_NORMALIZATION_CAP))
    return round((normalized + 1) * 50)


def _score_change(history: list[ScoreHistoryEntry]) -> float:
    if len(history) < 2:
        return 0.0
    ordered = sorted(history, key=lambda entry: entry.activity_date)
    return ordered[-1].score - ordered[0].score


def calculate_momentum(contacts: list[ContactIntelligence], as_of: datetime) -> float:
    recent_start = as_of - MOMENTUM_WINDOW
    previous_start = as_of - 2 * MOMENTUM_WINDOW

    total = 0.0
    for intel in contacts:
        if len(intel.score_history) < 2:
            continue

        recent = [entry for entry in intel.score_history if entry.activity_date > recent_start]
        previous = [
            entry
            for entry in intel.score_history
            if previous_start < entry.activity_date <= recent_start
        ]
        total += (_score_change(recent) - _score_change(previous)) * role_weight(intel)

    return total


def momentum_direction(momentum: float) -> MomentumDirection:
    if momentum > MOMENTUM_THRESHOLD:
        return "Accelerating"
    if momentum < -MOMENTUM_THRESHOLD:
        return "Decelerating"
    return "Stable"


def determine_trend(
    history: list[TemperatureReading], current_temperature: int, as_of: datetime
) -> HealthTrend:
    points = [(reading.recorded_at, reading.temperature) for reading in history]
    points.append((as_of, current_temperature))

    if len(points) < TREND_MIN_POINTS_FOR_SLOPE:
        return _trend_from_delta(current_temperature - points[0][1])

    window = points[-TREND_WINDOW_SIZE:]
    start = window[0][0]
    xs = [(recorded_at - start).total_seconds() / 86400 for recorded_at, _ in window]
    ys = [temperature for _, temperature in window]

    x_mean = sum(xs) / len(xs)
    y_mean = sum(ys) / len(ys)
    numerator = sum((x - x_mean) * (y - y_mean) for x, y in zip(xs, ys))
    denominator = sum((x - x_mean) ** 2 for x in xs)
    slope_per_day = numerator / denominator if denominator else 0.0

    if slope_per_day > TREND_SLOPE_THRESHOLD:
        return "Improving"
    if slope_per_day < -TREND_SLOPE_THRESHOLD:
        return "Declining"
    return _trend_from_delta(ys[-1] - ys[0])


def _trend_from_delta(delta: float) -> HealthTrend:
    if delta > TREND_DELTA_THRESHOLD:
        return "Improving"
    if delta < -TREND_DELTA_THRESHOLD:
        return "Declining"
    return "Stable"


def calculate_deal_health(
    current: DealHealth, contacts: list[ContactIntelligence], as_of: datetime
) -> DealHealthResult:
    temperature = calculate_temperature(contacts)
    momentum = calculate_momentum(contacts, as_of)
    return DealHealthResult(
        temperature=temperature,
        trend=determine_trend(current.temperature_history, temperature, as_of),
        momentum=round(momentum, 2),
        momentum_direction=momentum_direction(momentum),
    )


def apply_deal_health(
    current: DealHealth, result: DealHealthResult, *, activity_id: str, as_of: datetime
) -> DealHealth:
    """New DealHealth with the result recorded and a temperature reading appended."""
    updated = current.model_copy(deep=True)
    updated.temperature = result.temperature
    updated.trend = result.trend
    updated.momentum = result.momentum
    updated.momentum_direction = result.momentum_direction
    updated.temperature_history.append(
        TemperatureReading(temperature=result.temperature, activity_id=activity_id, recorded_at=as_of)
    )
    return updated
