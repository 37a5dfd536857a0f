# Copyright 2025 ATP Project Contributors
# Licensed under the Apache License, Version 2.0

"""Score guards: confidence, recency decay, SLA penalties and diversity."""

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from ..domain.models import PenaltyRow, UsageRow, as_utc

CONFIDENCE_SAMPLE_CAP = 100
DECAY_HALF_LIFE_DAYS = 30.0
DEFAULT_DECAY_FACTOR = 0.5
DIVERSITY_USAGE_THRESHOLD = 95.0
DIVERSITY_MIN_EPSILON = 0.15
LATENCY_FLOOR_MS = 1.0
COST_FLOOR = 0.0001

_SECONDS_PER_DAY = 86400.0


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def days_since(last_call_at: datetime, now: datetime) -> float:
    return (now - as_utc(last_call_at)).total_seconds() / _SECONDS_PER_DAY


def confidence_score(
    sample_count: int,
    last_call_at: datetime | None,
    now: datetime,
    sample_cap: int = CONFIDENCE_SAMPLE_CAP,
    half_life_days: float = DECAY_HALF_LIFE_DAYS,
    default_decay: float = DEFAULT_DECAY_FACTOR,
) -> float:
    sample_factor = min(sample_count / sample_cap, 1.0)
    if last_call_at is None:
        return sample_factor * default_decay
    return sample_factor * math.exp(-days_since(last_call_at, now) / half_life_days)


def decay_factor(
    last_call_at: datetime | None,
    now: datetime,
    half_life_days: float = DECAY_HALF_LIFE_DAYS,
    default_decay: float = DEFAULT_DECAY_FACTOR,
) -> float:
    if last_call_at is None:
        return default_decay
    return math.exp(-days_since(last_call_at, now) / half_life_days)


@dataclass(frozen=True)
class LatencyCostPoint:
    latency: float
    cost: float


@dataclass
class RelativeScores:
    latency_scores: list[float] = field(default_factory=list)
    cost_scores: list[float] = field(default_factory=list)


def compute_relative_scores(points: Sequence[LatencyCostPoint]) -> RelativeScores:
    """Normalize latency and cost across a batch so 1.0 is best."""
    if not points:
        return RelativeScores()

    max_latency = max(max(p.latency for p in points), LATENCY_FLOOR_MS)
    max_cost = max(max(p.cost for p in points), COST_FLOOR)

    return RelativeScores(
        latency_scores=[clamp01(1 - p.latency / max_latency) for p in points],
        cost_scores=[clamp01(1 - p.cost / max_cost) for p in points],
    )


def penalty_multipliers(penalties: Iterable[PenaltyRow], now: datetime) -> dict[str, float]:
    """Map provider -> multiplier for penalties still in force at ``now``."""
    result: dict[str, float] = {}
    for penalty in penalties:
        if penalty.is_active(now):
            result[penalty.provider] = penalty.penalty_multiplier
    return result


@dataclass(frozen=True)
class DiversityDecision:
    epsilon: float
    triggered: bool
    dominant_provider: str | None = None


def diversity_guard(
    usage_rows: Iterable[UsageRow],
    epsilon: float,
    threshold: float = DIVERSITY_USAGE_THRESHOLD,
    min_epsilon: float = DIVERSITY_MIN_EPSILON,
) -> DiversityDecision:
    """Raise exploration when one provider holds more than ``threshold`` percent of traffic."""
    for row in usage_rows:
        if row.usage_percentage > threshold:
            return DiversityDecision(max(epsilon, min_epsilon), True, row.provider)
    return DiversityDecision(epsilon, False)
