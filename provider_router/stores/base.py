# Copyright 2025 ATP Project Contributors
# Licensed under the Apache License, Version 2.0

"""Store interfaces consumed by the rankers, updaters and forecast job.

Every read-then-write the router performs goes through ``MetricsStore.update``
so implementations can make it atomic per key. Usage tracking is append-only
(``UsageStore.record_call``) and percentages are derived at read time, so it
never needs a read-modify-write either.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Protocol

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
)

RowMutation = Callable[[MetricsRow], MetricsRow]

USAGE_WINDOW = timedelta(hours=24)


class MetricsStore(Protocol):
    async def get(self, key: MetricsKey) -> MetricsRow | None: ...

    async def list_rows(self, scope: Scope, tenant_id: str | None, feature: str, purpose: str) -> list[MetricsRow]: ...

    async def upsert(self, row: MetricsRow) -> None: ...

    async def update(self, key: MetricsKey, mutate: RowMutation) -> MetricsRow:
        """Atomically apply ``mutate`` to the row at ``key``.

        ``mutate`` receives the stored row, or an empty row when none exists,
        and returns the row to persist.
        """
        ...


class BudgetStore(Protocol):
    async def get(self, tenant_id: str) -> BudgetConfig | None: ...

    async def upsert(self, config: BudgetConfig) -> None: ...


class PenaltyStore(Protocol):
    async def list_active(self, feature: str, now: datetime) -> list[PenaltyRow]: ...

    async def upsert(self, penalty: PenaltyRow) -> None: ...


class UsageStore(Protocol):
    async def record_call(self, provider: str, at: datetime) -> None: ...

    async def list_24h(self, now: datetime) -> list[UsageRow]: ...

    async def prune(self, before: datetime) -> int:
        """Delete calls recorded before ``before``; returns how many were removed."""
        ...


class EventLog(Protocol):
    async def append(self, event: ProviderEvent) -> None: ...

    async def list_between(self, start: datetime, end: datetime) -> list[ProviderEvent]: ...


class ForecastStore(Protocol):
    async def get(self, tenant_id: str, feature: str) -> ForecastState | None: ...

    async def upsert(self, state: ForecastState) -> None: ...


class AggregateStore(Protocol):
    async def upsert_daily_cost(self, row: DailyCostRow) -> None: ...

    async def upsert_daily_performance(self, row: DailyPerformanceRow) -> None: ...

    async def list_daily_costs(self, start: date, end: date) -> list[DailyCostRow]: ...

    async def list_daily_performance(self, start: date, end: date) -> list[DailyPerformanceRow]: ...


@dataclass
class RouterStores:
    """One implementation of each store the router talks to."""

    metrics: MetricsStore
    budgets: BudgetStore
    penalties: PenaltyStore
    usage: UsageStore
    events: EventLog
    forecasts: ForecastStore
    aggregates: AggregateStore
    close: Callable[[], Awaitable[None]] | None = None

    async def aclose(self) -> None:
        if self.close is not None:
            await self.close()
