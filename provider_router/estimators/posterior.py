# Copyright 2025 ATP Project Contributors
# Licensed under the Apache License, Version 2.0

"""Bayesian posterior updates for the Thompson ranker.

Quality/success uses a Beta conjugate update; latency and cost use Welford's
online mean/variance with floors so sampling never sees a degenerate
distribution.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..domain.models import MetricsRow, Outcome

LATENCY_VARIANCE_FLOOR = 0.01
COST_VARIANCE_FLOOR = 0.0001
INITIAL_LATENCY_VARIANCE = 1.0
INITIAL_COST_VARIANCE = 0.0001


@dataclass(frozen=True)
class PosteriorState:
    ts_alpha: float
    ts_beta: float
    ts_latency_mean: float
    ts_latency_variance: float
    ts_cost_mean: float
    ts_cost_variance: float

    @classmethod
    def from_row(cls, row: MetricsRow) -> PosteriorState:
        return cls(
            ts_alpha=row.ts_alpha,
            ts_beta=row.ts_beta,
            ts_latency_mean=row.ts_latency_mean,
            ts_latency_variance=row.ts_latency_variance,
            ts_cost_mean=row.ts_cost_mean,
            ts_cost_variance=row.ts_cost_variance,
        )

    def apply_to(self, row: MetricsRow) -> MetricsRow:
        return row.copy(
            ts_alpha=self.ts_alpha,
            ts_beta=self.ts_beta,
            ts_latency_mean=self.ts_latency_mean,
            ts_latency_variance=self.ts_latency_variance,
            ts_cost_mean=self.ts_cost_mean,
            ts_cost_variance=self.ts_cost_variance,
        )


def _welford(mean: float, variance: float, observation: float, n: int, floor: float) -> tuple[float, float]:
    # variance is stored as M2 / (n - 1) for the n - 1 prior samples
    delta = observation - mean
    new_mean = mean + delta / n
    delta2 = observation - new_mean
    m2 = variance * (n - 1) + delta * delta2
    return new_mean, max(floor, m2 / n)


def compute_posterior_update(existing: MetricsRow, outcome: Outcome) -> PosteriorState:
    if not existing.has_observations:
        return PosteriorState(
            ts_alpha=2.0 if outcome.success else 1.0,
            ts_beta=1.0 if outcome.success else 2.0,
            ts_latency_mean=outcome.latency_ms,
            ts_latency_variance=INITIAL_LATENCY_VARIANCE,
            ts_cost_mean=outcome.cost_per_1k,
            ts_cost_variance=INITIAL_COST_VARIANCE,
        )

    n = existing.sample_count + 1
    latency_mean, latency_variance = _welford(
        existing.ts_latency_mean, existing.ts_latency_variance, outcome.latency_ms, n, LATENCY_VARIANCE_FLOOR
    )
    cost_mean, cost_variance = _welford(
        existing.ts_cost_mean, existing.ts_cost_variance, outcome.cost_per_1k, n, COST_VARIANCE_FLOOR
    )

    return PosteriorState(
        ts_alpha=existing.ts_alpha + (1.0 if outcome.success else 0.0),
        ts_beta=existing.ts_beta + (0.0 if outcome.success else 1.0),
        ts_latency_mean=latency_mean,
        ts_latency_variance=latency_variance,
        ts_cost_mean=cost_mean,
        ts_cost_variance=cost_variance,
    )
