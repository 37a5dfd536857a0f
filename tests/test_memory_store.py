"""Tests for the in-memory router stores."""

import asyncio
from datetime import date, timedelta

import pytest

from conftest import FEATURE, PURPOSE, TENANT, make_budget, make_row
from provider_router.domain.models import (
    DailyCostRow,
    DailyPerformanceRow,
    MetricsKey,
    PenaltyRow,
    ProviderEvent,
    Scope,
)


def metrics_key(provider="openai", model="gpt-4o", scope=Scope.GLOBAL, tenant_id=None):
    return MetricsKey.for_scope(scope, tenant_id, FEATURE, PURPOSE, provider, model)


def event(provider, created_at, success=True, tenant_id=TENANT):
    return ProviderEvent(
        feature=FEATURE,
        purpose=PURPOSE,
        provider=provider,
        model="m",
        latency_ms=300.0,
        estimated_cost=0.01,
        quality_avg=0.8,
        success=success,
        tenant_id=tenant_id,
        created_at=created_at,
    )


@pytest.mark.asyncio
class TestMemoryMetricsStore:
    async def test_update_creates_empty_row(self, stores):
        row = await stores.metrics.update(metrics_key(), lambda r: r.copy(sample_count=r.sample_count + 1))

        assert row.sample_count == 1
        assert row.ts_alpha == 1.0
        assert (await stores.metrics.get(metrics_key())).sample_count == 1

    async def test_get_returns_copies(self, stores):
        await stores.metrics.upsert(make_row("openai", "gpt-4o"))

        row = await stores.metrics.get(metrics_key())
        row.sample_count = 999

        assert (await stores.metrics.get(metrics_key())).sample_count == 50

    async def test_missing_row(self, stores):
        assert await stores.metrics.get(metrics_key("nobody")) is None

    async def test_list_rows_filters_scope_and_tenant(self, stores):
        await stores.metrics.upsert(make_row("openai", "gpt-4o"))
        await stores.metrics.upsert(make_row("openai", "gpt-4o", Scope.TENANT, TENANT))
        await stores.metrics.upsert(make_row("google", "gemini", Scope.TENANT, "tenant-b"))
        await stores.metrics.upsert(make_row("openai", "gpt-4o", feature="translate"))

        global_rows = await stores.metrics.list_rows(Scope.GLOBAL, TENANT, FEATURE, PURPOSE)
        tenant_rows = await stores.metrics.list_rows(Scope.TENANT, TENANT, FEATURE, PURPOSE)

        assert [(r.scope, r.tenant_id) for r in global_rows] == [(Scope.GLOBAL, None)]
        assert [(r.provider, r.tenant_id) for r in tenant_rows] == [("openai", TENANT)]

    async def test_concurrent_updates_are_not_lost(self, stores):
        key = metrics_key()

        async def bump():
            await stores.metrics.update(key, lambda r: r.copy(sample_count=r.sample_count + 1))

        await asyncio.gather(*(bump() for _ in range(25)))

        assert (await stores.metrics.get(key)).sample_count == 25


@pytest.mark.asyncio
class TestMemoryGuardStores:
    async def test_budget_roundtrip(self, stores):
        await stores.budgets.upsert(make_budget(usage=42.0))

        assert (await stores.budgets.get(TENANT)).current_month_usage == 42.0
        assert await stores.budgets.get("unknown") is None

    async def test_penalties_active_by_feature(self, stores, now):
        await stores.penalties.upsert(PenaltyRow("openai", FEATURE, 0.5, now + timedelta(minutes=10)))
        await stores.penalties.upsert(PenaltyRow("google", FEATURE, 0.5, now - timedelta(minutes=1)))
        await stores.penalties.upsert(PenaltyRow("anthropic", "translate", 0.5, now + timedelta(minutes=10)))

        active = await stores.penalties.list_active(FEATURE, now)

        assert [p.provider for p in active] == ["openai"]

    async def test_penalty_upsert_replaces(self, stores, now):
        await stores.penalties.upsert(PenaltyRow("openai", FEATURE, 0.5, now + timedelta(minutes=10)))
        await stores.penalties.upsert(PenaltyRow("openai", FEATURE, 0.9, now + timedelta(minutes=20)))

        active = await stores.penalties.list_active(FEATURE, now)

        assert len(active) == 1
        assert active[0].penalty_multiplier == 0.9

    async def test_usage_percentages_over_24h(self, stores, now):
        for _ in range(3):
            await stores.usage.record_call("openai", now - timedelta(hours=1))
        await stores.usage.record_call("google", now - timedelta(hours=2))
        await stores.usage.record_call("google", now - timedelta(hours=30))

        usage = {row.provider: row for row in await stores.usage.list_24h(now)}

        assert usage["openai"].usage_percentage == pytest.approx(75.0)
        assert usage["google"].usage_percentage == pytest.approx(25.0)
        assert usage["google"].calls == 1

    async def test_no_usage(self, stores, now):
        assert await stores.usage.list_24h(now) == []

    async def test_later_query_does_not_drop_earlier_window(self, stores, now):
        await stores.usage.record_call("openai", now - timedelta(hours=2))

        assert await stores.usage.list_24h(now + timedelta(hours=30)) == []
        usage = await stores.usage.list_24h(now)

        assert [(row.provider, row.calls) for row in usage] == [("openai", 1)]

    async def test_usage_prune(self, stores, now):
        await stores.usage.record_call("openai", now - timedelta(hours=1))
        await stores.usage.record_call("openai", now - timedelta(hours=30))
        await stores.usage.record_call("google", now - timedelta(days=2))

        removed = await stores.usage.prune(now - timedelta(hours=24))

        assert removed == 2
        assert set(stores.usage.calls) == {"openai"}
        assert [(row.provider, row.calls) for row in await stores.usage.list_24h(now)] == [("openai", 1)]


@pytest.mark.asyncio
class TestMemoryForecastStores:
    async def test_event_range_is_half_open(self, stores, now):
        start = now - timedelta(days=1)
        await stores.events.append(event("openai", start))
        await stores.events.append(event("google", now - timedelta(hours=1)))
        await stores.events.append(event("anthropic", now))

        events = await stores.events.list_between(start, now)

        assert [e.provider for e in events] == ["openai", "google"]

    async def test_aggregates_sorted_by_date(self, stores):
        for day in (date(2025, 6, 3), date(2025, 6, 1), date(2025, 6, 2)):
            await stores.aggregates.upsert_daily_cost(DailyCostRow(day, TENANT, FEATURE, "openai", 1.0, 10, 0.1))
            await stores.aggregates.upsert_daily_performance(
                DailyPerformanceRow(day, "openai", FEATURE, 300.0, 0.1, 0.9, 10)
            )

        costs = await stores.aggregates.list_daily_costs(date(2025, 6, 1), date(2025, 6, 2))
        performance = await stores.aggregates.list_daily_performance(date(2025, 6, 2), date(2025, 6, 3))

        assert [r.date for r in costs] == [date(2025, 6, 1), date(2025, 6, 2)]
        assert [r.date for r in performance] == [date(2025, 6, 2), date(2025, 6, 3)]

    async def test_aggregate_upsert_is_idempotent(self, stores):
        day = date(2025, 6, 1)
        await stores.aggregates.upsert_daily_cost(DailyCostRow(day, TENANT, FEATURE, "openai", 1.0, 10, 0.1))
        await stores.aggregates.upsert_daily_cost(DailyCostRow(day, TENANT, FEATURE, "openai", 2.0, 20, 0.1))

        costs = await stores.aggregates.list_daily_costs(day, day)

        assert len(costs) == 1
        assert costs[0].total_cost == 2.0
