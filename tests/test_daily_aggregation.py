"""Tests for the daily cost/performance aggregation job."""

from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from conftest import make_budget
from provider_router.domain.models import DailyCostRow, DailyPerformanceRow, ProviderEvent, RiskLevel
from provider_router.forecast import DailyAggregator
from provider_router.forecast.aggregation import day_bounds

TARGET = date(2025, 6, 14)


def event(provider, cost, *, tenant="tenant-a", feature="summarize", latency=400.0, success=True, day=TARGET, hour=10):
    return ProviderEvent(
        feature=feature,
        purpose="chat",
        provider=provider,
        model="m",
        latency_ms=latency,
        estimated_cost=cost,
        quality_avg=80.0,
        success=success,
        tenant_id=tenant,
        created_at=datetime(day.year, day.month, day.day, hour, tzinfo=timezone.utc),
    )


def aggregator_for(stores, config):
    return DailyAggregator(stores.events, stores.aggregates, stores.budgets, stores.forecasts, config)


async def seed_events(stores):
    for e in (
        event("openai", 0.5),
        event("openai", 1.5, latency=600.0),
        event("google", 1.0, success=False, latency=900.0),
        event("openai", 9.0, tenant=None),
        event("openai", 7.0, day=TARGET - timedelta(days=1)),
        event("openai", 7.0, day=TARGET + timedelta(days=1), hour=0),
    ):
        await stores.events.append(e)


def test_day_bounds():
    start, end = day_bounds(TARGET)
    assert start == datetime(2025, 6, 14, tzinfo=timezone.utc)
    assert end - start == timedelta(days=1)


@pytest.mark.asyncio
class TestDailyCosts:
    async def test_groups_by_tenant_feature_provider(self, stores, config):
        await seed_events(stores)

        result = await aggregator_for(stores, config).aggregate_daily_costs(TARGET)

        assert result.count == 2
        assert result.errors == []
        openai = stores.aggregates.daily_costs[(TARGET, "tenant-a", "summarize", "openai")]
        assert openai.total_cost == pytest.approx(2.0)
        assert openai.total_calls == 2
        assert openai.avg_cost_per_call == pytest.approx(1.0)
        google = stores.aggregates.daily_costs[(TARGET, "tenant-a", "summarize", "google")]
        assert google.total_cost == pytest.approx(1.0)

    async def test_no_events(self, stores, config):
        result = await aggregator_for(stores, config).aggregate_daily_costs(TARGET)
        assert result.count == 0
        assert result.errors == []


@pytest.mark.asyncio
class TestDailyPerformance:
    async def test_includes_events_without_tenant(self, stores, config):
        await seed_events(stores)

        result = await aggregator_for(stores, config).aggregate_daily_performance(TARGET)

        assert result.count == 2
        openai = stores.aggregates.daily_performance[(TARGET, "openai", "summarize")]
        assert openai.total_calls == 3
        assert openai.success_rate == pytest.approx(1.0)
        assert openai.avg_latency == pytest.approx(400.0 * 2 / 3 + 600.0 / 3)
        google = stores.aggregates.daily_performance[(TARGET, "google", "summarize")]
        assert google.error_rate == pytest.approx(1.0)
        assert google.success_rate == 0.0


@pytest.mark.asyncio
class TestForecastState:
    async def test_budget_risk_from_burn_rate(self, stores, config, now):
        await stores.budgets.upsert(make_budget(monthly=50.0))
        await stores.aggregates.upsert_daily_cost(DailyCostRow(TARGET, "tenant-a", "summarize", "openai", 2.0, 2, 1.0))
        await stores.aggregates.upsert_daily_cost(DailyCostRow(TARGET, "tenant-a", "summarize", "google", 1.0, 1, 1.0))

        result = await aggregator_for(stores, config).update_forecast_state(TARGET, now)

        assert result.count == 1
        state = stores.forecasts.states[("tenant-a", "summarize")]
        # Provider rows for the day are summed: 3.0 per day, 90 per month against 50
        assert state.burn_rate == pytest.approx(3.0)
        assert state.projected_monthly_cost == pytest.approx(90.0)
        assert state.sla_risk_level is RiskLevel.HIGH
        assert state.last_updated == now

    async def test_sla_drift_raises_risk(self, stores, config, now):
        await stores.budgets.upsert(make_budget(monthly=10_000.0))
        await stores.aggregates.upsert_daily_cost(
            DailyCostRow(TARGET - timedelta(days=1), "tenant-a", "summarize", "openai", 1.0, 1, 1.0)
        )
        await stores.aggregates.upsert_daily_performance(
            DailyPerformanceRow(TARGET - timedelta(days=10), "openai", "summarize", 100.0, 0.0, 1.0, 10)
        )
        await stores.aggregates.upsert_daily_performance(
            DailyPerformanceRow(TARGET - timedelta(days=1), "openai", "summarize", 200.0, 0.0, 1.0, 10)
        )

        await aggregator_for(stores, config).update_forecast_state(TARGET, now)

        state = stores.forecasts.states[("tenant-a", "summarize")]
        assert state.sla_risk_level is RiskLevel.HIGH
        assert state.performance_drift_score == pytest.approx(0.6)

    async def test_rows_outside_lookback_are_ignored(self, stores, config, now):
        await stores.aggregates.upsert_daily_cost(
            DailyCostRow(TARGET - timedelta(days=30), "tenant-a", "summarize", "openai", 100.0, 1, 100.0)
        )
        result = await aggregator_for(stores, config).update_forecast_state(TARGET, now)
        assert result.count == 0
        assert stores.forecasts.states == {}

    async def test_missing_budget_is_low_risk(self, stores, config, now):
        await stores.aggregates.upsert_daily_cost(DailyCostRow(TARGET, "tenant-z", "summarize", "openai", 5.0, 1, 5.0))
        await aggregator_for(stores, config).update_forecast_state(TARGET, now)
        assert stores.forecasts.states[("tenant-z", "summarize")].sla_risk_level is RiskLevel.LOW

    async def test_cost_trend_is_persisted(self, stores, config, now):
        for offset, cost in ((2, 1.0), (1, 2.0), (0, 3.0)):
            await stores.aggregates.upsert_daily_cost(
                DailyCostRow(TARGET - timedelta(days=offset), "tenant-a", "summarize", "openai", cost, 1, cost)
            )

        await aggregator_for(stores, config).update_forecast_state(TARGET, now)

        state = stores.forecasts.states[("tenant-a", "summarize")]
        assert state.cost_trend_slope == pytest.approx(1.0)
        # 1.0, then .3 * 2 + .7 * 1.0, then .3 * 3 + .7 * 1.3
        assert state.smoothed_daily_cost == pytest.approx(1.81)


@pytest.mark.asyncio
class TestAggregationRun:
    async def test_full_run(self, stores, config):
        await seed_events(stores)
        await stores.budgets.upsert(make_budget(monthly=1000.0))

        report = await aggregator_for(stores, config).run(TARGET)

        assert report.ok
        assert report.cost_rows == 2
        assert report.performance_rows == 2
        assert report.forecasts_updated == 1
        assert report.to_dict()["target_date"] == "2025-06-14"

    async def test_rerun_is_idempotent(self, stores, config):
        await seed_events(stores)
        aggregator = aggregator_for(stores, config)

        await aggregator.run(TARGET)
        first_costs = dict(stores.aggregates.daily_costs)
        await aggregator.run(TARGET)

        assert stores.aggregates.daily_costs == first_costs
        assert len(stores.forecasts.states) == 1

    async def test_upsert_failures_are_collected(self, stores, config):
        await seed_events(stores)
        stores.aggregates.upsert_daily_cost = AsyncMock(side_effect=RuntimeError("disk full"))

        report = await aggregator_for(stores, config).run(TARGET)

        assert not report.ok
        assert report.cost_rows == 0
        assert report.performance_rows == 2
        assert len(report.errors) == 2
        assert all("disk full" in e for e in report.errors)

    async def test_event_log_failure(self, stores, config):
        stores.events.list_between = AsyncMock(side_effect=ConnectionError("log down"))

        report = await aggregator_for(stores, config).run(TARGET)

        assert report.cost_rows == 0
        assert report.performance_rows == 0
        assert len(report.errors) == 2
        assert all(e.startswith("Failed to query events") for e in report.errors)


@pytest.mark.asyncio
class TestUsagePruning:
    async def test_run_prunes_calls_outside_window(self, stores, config, now):
        await stores.usage.record_call("openai", now - timedelta(hours=30))
        await stores.usage.record_call("openai", now - timedelta(hours=1))
        aggregator = DailyAggregator(
            stores.events, stores.aggregates, stores.budgets, stores.forecasts, config, stores.usage
        )

        report = await aggregator.run(TARGET, now)

        assert report.usage_rows_pruned == 1
        assert report.to_dict()["usage_rows_pruned"] == 1
        assert [(row.provider, row.calls) for row in await stores.usage.list_24h(now)] == [("openai", 1)]

    async def test_without_usage_store_nothing_is_pruned(self, stores, config, now):
        await stores.usage.record_call("openai", now - timedelta(hours=30))

        report = await aggregator_for(stores, config).run(TARGET, now)

        assert report.usage_rows_pruned == 0
        assert len(stores.usage.calls["openai"]) == 1

    async def test_prune_failure_is_collected(self, stores, config, now):
        stores.usage.prune = AsyncMock(side_effect=ConnectionError("db down"))
        aggregator = DailyAggregator(
            stores.events, stores.aggregates, stores.budgets, stores.forecasts, config, stores.usage
        )

        report = await aggregator.run(TARGET, now)

        assert not report.ok
        assert report.usage_rows_pruned == 0
        assert report.errors == ["Failed to prune usage calls: db down"]
