"""Tests for the EWMA and posterior updates."""

from datetime import timedelta

import pytest

from conftest import make_row
from provider_router.domain.models import MetricsKey, MetricsRow, Outcome, Scope
from provider_router.estimators import compute_ewma_update, compute_posterior_update
from provider_router.estimators.posterior import COST_VARIANCE_FLOOR, LATENCY_VARIANCE_FLOOR

KEY = MetricsKey(Scope.GLOBAL, None, "summarize", "chat", "openai", "gpt-4o")


def success(latency=400.0, cost=0.004, quality=90.0):
    return Outcome(latency_ms=latency, cost_per_1k=cost, quality_avg=quality, success=True)


def failure(latency=2000.0, cost=0.004, quality=10.0):
    return Outcome(latency_ms=latency, cost_per_1k=cost, quality_avg=quality, success=False)


class TestEwmaUpdate:
    def test_first_observation_seeds_row(self, now):
        row = compute_ewma_update(MetricsRow.empty(KEY), success(), now)
        assert row.sample_count == 1
        assert row.ewma_latency_ms == 400.0
        assert row.ewma_quality == 90.0
        assert row.ewma_cost_per_1k == 0.004
        assert row.cost_ewma == 0.004
        assert row.ewma_success_rate == 1.0
        assert row.last_call_at == now

    def test_blends_with_lambda(self, now):
        existing = make_row("openai", "gpt-4o", latency=500.0, quality=80.0, cost=0.005, success=1.0, samples=10)
        row = compute_ewma_update(existing, failure(latency=1000.0, cost=0.010, quality=30.0), now)
        assert row.ewma_latency_ms == pytest.approx(0.2 * 1000 + 0.8 * 500)
        assert row.ewma_quality == pytest.approx(0.2 * 30 + 0.8 * 80)
        assert row.ewma_cost_per_1k == pytest.approx(0.2 * 0.010 + 0.8 * 0.005)
        assert row.cost_ewma == pytest.approx(0.2 * 0.010 + 0.8 * 0.005)
        assert row.ewma_success_rate == pytest.approx(0.8)
        assert row.sample_count == 11
        assert row.last_call_at == now

    def test_missing_cost_ewma_is_seeded(self, now):
        existing = make_row("openai", "gpt-4o", samples=3)
        existing.cost_ewma = None
        row = compute_ewma_update(existing, success(cost=0.002), now)
        assert row.cost_ewma == 0.002

    def test_custom_lambda(self, now):
        existing = make_row("openai", "gpt-4o", latency=100.0, samples=5)
        row = compute_ewma_update(existing, success(latency=200.0), now, lam=0.5)
        assert row.ewma_latency_ms == pytest.approx(150.0)

    def test_input_row_is_not_mutated(self, now):
        existing = make_row("openai", "gpt-4o", samples=5, last_call_at=now - timedelta(days=1))
        compute_ewma_update(existing, success(), now)
        assert existing.sample_count == 5
        assert existing.last_call_at == now - timedelta(days=1)


class TestPosteriorUpdate:
    def test_first_success(self):
        state = compute_posterior_update(MetricsRow.empty(KEY), success())
        assert (state.ts_alpha, state.ts_beta) == (2.0, 1.0)
        assert state.ts_latency_mean == 400.0
        assert state.ts_latency_variance == 1.0
        assert state.ts_cost_mean == 0.004
        assert state.ts_cost_variance == 0.0001

    def test_first_failure(self):
        state = compute_posterior_update(MetricsRow.empty(KEY), failure())
        assert (state.ts_alpha, state.ts_beta) == (1.0, 2.0)

    def test_beta_counts(self):
        existing = make_row("openai", "gpt-4o", samples=4, ts_alpha=4.0, ts_beta=2.0)
        assert compute_posterior_update(existing, success()).ts_alpha == 5.0
        assert compute_posterior_update(existing, failure()).ts_beta == 3.0

    def test_welford_mean_and_variance(self):
        # One prior sample at 400 ms; second observation at 600 ms
        existing = make_row(
            "openai",
            "gpt-4o",
            samples=1,
            ts_latency_mean=400.0,
            ts_latency_variance=1.0,
            ts_cost_mean=0.004,
            ts_cost_variance=0.0001,
        )
        state = compute_posterior_update(existing, success(latency=600.0, cost=0.004))
        assert state.ts_latency_mean == pytest.approx(500.0)
        # M2 = 1.0 * 1 + 200 * 100, over n = 2
        assert state.ts_latency_variance == pytest.approx(10000.5)
        assert state.ts_cost_mean == pytest.approx(0.004)
        assert state.ts_cost_variance == pytest.approx(COST_VARIANCE_FLOOR)

    def test_variance_floor(self):
        existing = make_row("openai", "gpt-4o", samples=10, ts_latency_mean=300.0, ts_latency_variance=0.0)
        state = compute_posterior_update(existing, success(latency=300.0))
        assert state.ts_latency_variance == LATENCY_VARIANCE_FLOOR

    def test_apply_to_only_touches_posterior_fields(self):
        existing = make_row("openai", "gpt-4o", samples=3, latency=777.0)
        updated = compute_posterior_update(existing, success()).apply_to(existing)
        assert updated.ewma_latency_ms == 777.0
        assert updated.sample_count == 3
        assert updated.ts_alpha == existing.ts_alpha + 1
