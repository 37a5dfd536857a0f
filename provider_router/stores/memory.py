# Copyright 2025 ATP Project Contributors
# Licensed under the Apache License, Version 2.0

"""In-memory store implementations.

Suitable for tests and single-process deployments. State is lost on restart.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import date, datetime

from ..domain.models import (
    BudgetConfig,
    DailyCostRow,
    DailyPerformanceRow,
    ForecastState,
    MetricsKey,
    MetricsRow,
    PenaltyRow,
    ProviderEvent,
    Scope,
    UsageRow,
    as_utc,
)
from .base import USAGE_WINDOW, RouterStores, RowMutation


class MemoryMetricsStore:
    def __init__(self) -> None:
        self.rows: dict[MetricsKey, MetricsRow] = {}
        self._locks: dict[MetricsKey, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get(self, key: MetricsKey) -> MetricsRow | None:
        row = self.rows.get(key)
        return row.copy() if row else None

    async def list_rows(self, scope: Scope, tenant_id: str | None, feature: str, purpose: str) -> list[MetricsRow]:
        tenant = tenant_id if scope is Scope.TENANT else None
        return [
            row.copy()
            for key, row in self.rows.items()
            if key.scope is scope and key.tenant_id == tenant and key.feature == feature and key.purpose == purpose
        ]

    async def upsert(self, row: MetricsRow) -> None:
        self.rows[row.key] = row.copy()

    async def update(self, key: MetricsKey, mutate: RowMutation) -> MetricsRow:
        async with self._locks[key]:
            current = self.rows.get(key)
            # Yield so concurrent writers actually contend for the lock
            await asyncio.sleep(0)
            updated = mutate(current.copy() if current else MetricsRow.empty(key))
            self.rows[key] = updated.copy()
            return updated


class MemoryBudgetStore:
    def __init__(self) -> None:
        self.configs: dict[str, BudgetConfig] = {}

    async def get(self, tenant_id: str) -> BudgetConfig | None:
        return self.configs.get(tenant_id)

    async def upsert(self, config: BudgetConfig) -> None:
        self.configs[config.tenant_id] = config


class MemoryPenaltyStore:
    def __init__(self) -> None:
        self.penalties: dict[tuple[str, str], PenaltyRow] = {}

    async def list_active(self, feature: str, now: datetime) -> list[PenaltyRow]:
        return [p for (_, f), p in self.penalties.items() if f == feature and p.is_active(now)]

    async def upsert(self, penalty: PenaltyRow) -> None:
        self.penalties[(penalty.provider, penalty.feature)] = penalty


class MemoryUsageStore:
    def __init__(self) -> None:
        self.calls: dict[str, list[datetime]] = defaultdict(list)

    async def record_call(self, provider: str, at: datetime) -> None:
        self.calls[provider].append(as_utc(at))

    async def list_24h(self, now: datetime) -> list[UsageRow]:
        now = as_utc(now)
        cutoff = now - USAGE_WINDOW
        counts: dict[str, int] = {}
        for provider, timestamps in self.calls.items():
            count = sum(1 for ts in timestamps if cutoff <= ts <= now)
            if count:
                counts[provider] = count

        total = sum(counts.values())
        if total == 0:
            return []
        return [UsageRow(provider, count / total * 100.0, count) for provider, count in counts.items()]

    async def prune(self, before: datetime) -> int:
        before = as_utc(before)
        removed = 0
        for provider, timestamps in list(self.calls.items()):
            kept = [ts for ts in timestamps if ts >= before]
            removed += len(timestamps) - len(kept)
            if kept:
                self.calls[provider] = kept
            else:
                del self.calls[provider]
        return removed


class MemoryEventLog:
    def __init__(self) -> None:
        self.events: list[ProviderEvent] = []

    async def append(self, event: ProviderEvent) -> None:
        self.events.append(event)

    async def list_between(self, start: datetime, end: datetime) -> list[ProviderEvent]:
        return [e for e in self.events if start <= as_utc(e.created_at) < end]


class MemoryForecastStore:
    def __init__(self) -> None:
        self.states: dict[tuple[str, str], ForecastState] = {}

    async def get(self, tenant_id: str, feature: str) -> ForecastState | None:
        return self.states.get((tenant_id, feature))

    async def upsert(self, state: ForecastState) -> None:
        self.states[(state.tenant_id, state.feature)] = state


class MemoryAggregateStore:
    def __init__(self) -> None:
        self.daily_costs: dict[tuple[date, str, str, str], DailyCostRow] = {}
        self.daily_performance: dict[tuple[date, str, str], DailyPerformanceRow] = {}

    async def upsert_daily_cost(self, row: DailyCostRow) -> None:
        self.daily_costs[(row.date, row.tenant_id, row.feature, row.provider)] = row

    async def upsert_daily_performance(self, row: DailyPerformanceRow) -> None:
        self.daily_performance[(row.date, row.provider, row.feature)] = row

    async def list_daily_costs(self, start: date, end: date) -> list[DailyCostRow]:
        rows = [r for r in self.daily_costs.values() if start <= r.date <= end]
        return sorted(rows, key=lambda r: r.date)

    async def list_daily_performance(self, start: date, end: date) -> list[DailyPerformanceRow]:
        rows = [r for r in self.daily_performance.values() if start <= r.date <= end]
        return sorted(rows, key=lambda r: r.date)


def build_memory_stores() -> RouterStores:
    return RouterStores(
        metrics=MemoryMetricsStore(),
        budgets=MemoryBudgetStore(),
        penalties=MemoryPenaltyStore(),
        usage=MemoryUsageStore(),
        events=MemoryEventLog(),
        forecasts=MemoryForecastStore(),
        aggregates=MemoryAggregateStore(),
    )
