# Copyright 2025 ATP Project Contributors
# Licensed under the Apache License, Version 2.0

"""Exponentially-weighted moving average updates for provider metrics."""

from __future__ import annotations

from datetime import datetime

from ..domain.models import MetricsRow, Outcome

EWMA_LAMBDA = 0.2


def ewma(observation: float, previous: float, lam: float = EWMA_LAMBDA) -> float:
    return lam * observation + (1 - lam) * previous


def compute_ewma_update(
    existing: MetricsRow,
    outcome: Outcome,
    now: datetime,
    lam: float = EWMA_LAMBDA,
) -> MetricsRow:
    """Fold one observation into a metrics row.

    A row without observations is seeded directly from the outcome so the
    zero-valued placeholders never leak into the averages.
    """
    success_value = 1.0 if outcome.success else 0.0

    if not existing.has_observations:
        return existing.copy(
            ewma_latency_ms=outcome.latency_ms,
            ewma_quality=outcome.quality_avg,
            ewma_cost_per_1k=outcome.cost_per_1k,
            ewma_success_rate=success_value,
            sample_count=1,
            cost_ewma=outcome.cost_per_1k,
            last_call_at=now,
        )

    cost_ewma = (
        ewma(outcome.cost_per_1k, existing.cost_ewma, lam) if existing.cost_ewma is not None else outcome.cost_per_1k
    )
    return existing.copy(
        ewma_latency_ms=ewma(outcome.latency_ms, existing.ewma_latency_ms, lam),
        ewma_quality=ewma(outcome.quality_avg, existing.ewma_quality, lam),
        ewma_cost_per_1k=ewma(outcome.cost_per_1k, existing.ewma_cost_per_1k, lam),
        ewma_success_rate=ewma(success_value, existing.ewma_success_rate, lam),
        sample_count=existing.sample_count + 1,
        cost_ewma=cost_ewma,
        last_call_at=now,
    )
