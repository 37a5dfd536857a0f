# Copyright 2025 ATP Project Contributors
# Licensed under the Apache License, Version 2.0

"""Daily aggregation job: raw call events -> daily rows -> forecast state.

Every stage upserts on natural keys, so re-running a date overwrites the
same rows. Failures are collected per group and the job keeps going.
"""

from __future__ import annotations

import logging
import statistics
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, time as dt_time, timedelta, timezone
from typing import Any

from .. import metrics
from ..config import RouterConfig
from ..domain.models import (
    DailyCostRow,
    DailyPerformanceRow,
    ForecastState,
    ProviderEvent,
    RiskLevel,
    utcnow,
)
from ..stores.base import USAGE_WINDOW, AggregateStore, BudgetStore, EventLog, ForecastStore, UsageStore
from .engine import NEUTRAL_SLA_TREND, SlaTrend, compute_cost_forecast, compute_sla_trend

logger = logging.getLogger(__name__)

CURRENT_WINDOW_DAYS = 7


@dataclass
class StageResult:
    count: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class AggregationReport:
    target_date: date
    cost_rows: int = 0
    performance_rows: int = 0
    forecasts_updated: int = 0
    usage_rows_pruned: int = 0
    errors: list[str] = field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_date": self.target_date.isoformat(),
            "cost_rows": self.cost_rows,
            "performance_rows": self.performance_rows,
            "forecasts_updated": self.forecasts_updated,
            "usage_rows_pruned": self.usage_rows_pruned,
            "errors": list(self.errors),
            "duration_ms": round(self.duration_ms, 2),
        }


def day_bounds(target_date: date) -> tuple[datetime, datetime]:
    start = datetime.combine(target_date, dt_time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


class DailyAggregator:
    def __init__(
        self,
        event_log: EventLog,
        aggregates: AggregateStore,
        budgets: BudgetStore,
        forecasts: ForecastStore,
        config: RouterConfig | None = None,
        usage: UsageStore | None = None,
    ):
        self.event_log = event_log
        self.aggregates = aggregates
        self.budgets = budgets
        self.forecasts = forecasts
        self.config = config or RouterConfig()
        self.usage = usage

    async def _events_for(self, target_date: date, stage: str, result: StageResult) -> list[ProviderEvent] | None:
        start, end = day_bounds(target_date)
        try:
            return await self.event_log.list_between(start, end)
        except Exception as e:
            self._record(result, stage, f"Failed to query events: {e}")
            return None

    def _record(self, result: StageResult, stage: str, message: str) -> None:
        logger.warning(f"Aggregation {stage}: {message}")
        metrics.record_aggregation_error(stage)
        result.errors.append(message)

    async def aggregate_daily_costs(self, target_date: date) -> StageResult:
        """Group the day's events by (tenant, feature, provider); events without a tenant are skipped."""
        result = StageResult()
        events = await self._events_for(target_date, "costs", result)
        if not events:
            return result

        groups: dict[tuple[str, str, str], list[float]] = defaultdict(list)
        for event in events:
            if not event.tenant_id:
                continue
            groups[(event.tenant_id, event.feature, event.provider)].append(event.estimated_cost or 0.0)

        for (tenant_id, feature, provider), costs in groups.items():
            total = sum(costs)
            row = DailyCostRow(target_date, tenant_id, feature, provider, total, len(costs), total / len(costs))
            try:
                await self.aggregates.upsert_daily_cost(row)
                result.count += 1
            except Exception as e:
                self._record(result, "costs", f"Upsert failed for {tenant_id}/{feature}/{provider}: {e}")
        return result

    async def aggregate_daily_performance(self, target_date: date) -> StageResult:
        result = StageResult()
        events = await self._events_for(target_date, "performance", result)
        if not events:
            return result

        groups: dict[tuple[str, str], list[ProviderEvent]] = defaultdict(list)
        for event in events:
            groups[(event.provider, event.feature)].append(event)

        for (provider, feature), group in groups.items():
            total = len(group)
            success_rate = sum(1 for e in group if e.success) / total
            row = DailyPerformanceRow(
                date=target_date,
                provider=provider,
                feature=feature,
                avg_latency=statistics.fmean(e.latency_ms or 0.0 for e in group),
                error_rate=1 - success_rate,
                success_rate=success_rate,
                total_calls=total,
            )
            try:
                await self.aggregates.upsert_daily_performance(row)
                result.count += 1
            except Exception as e:
                self._record(result, "performance", f"Upsert failed for {provider}/{feature}: {e}")
        return result

    async def _sla_trends(self, start: date, target_date: date, result: StageResult) -> dict[str, SlaTrend]:
        try:
            rows = await self.aggregates.list_daily_performance(start, target_date)
        except Exception as e:
            self._record(result, "forecast", f"Failed to query performance data: {e}")
            return {}

        current_start = target_date - timedelta(days=CURRENT_WINDOW_DAYS)
        current: dict[str, list[DailyPerformanceRow]] = defaultdict(list)
        previous: dict[str, list[DailyPerformanceRow]] = defaultdict(list)
        for row in rows:
            (current if row.date >= current_start else previous)[row.feature].append(row)

        trends = {}
        for feature in set(current) | set(previous):
            cur, prev = current[feature], previous[feature]
            trends[feature] = compute_sla_trend(
                [r.avg_latency for r in cur],
                [r.avg_latency for r in prev],
                statistics.fmean(r.error_rate for r in cur) if cur else 0.0,
                statistics.fmean(r.error_rate for r in prev) if prev else 0.0,
            )
        return trends

    async def update_forecast_state(self, target_date: date, now: datetime | None = None) -> StageResult:
        """Recompute ForecastState for every (tenant, feature) with cost rows in the lookback window."""
        result = StageResult()
        now = now or utcnow()
        start = target_date - timedelta(days=self.config.forecast_lookback_days)

        try:
            cost_rows = await self.aggregates.list_daily_costs(start, target_date)
        except Exception as e:
            self._record(result, "forecast", f"Failed to query cost data: {e}")
            return result

        # Provider rows for the same day are summed into one daily total
        daily_totals: dict[tuple[str, str], dict[date, float]] = defaultdict(lambda: defaultdict(float))
        for row in cost_rows:
            daily_totals[(row.tenant_id, row.feature)][row.date] += row.total_cost

        trends = await self._sla_trends(start, target_date, result)
        budgets: dict[str, float] = {}

        for (tenant_id, feature), by_day in daily_totals.items():
            try:
                if tenant_id not in budgets:
                    budget = await self.budgets.get(tenant_id)
                    budgets[tenant_id] = budget.monthly_budget if budget else 0.0

                series = [by_day[d] for d in sorted(by_day)]
                forecast = compute_cost_forecast(
                    series, budgets[tenant_id], self.config.burn_rate_window_days, self.config.smoothing_alpha
                )
                trend = trends.get(feature, NEUTRAL_SLA_TREND)
                await self.forecasts.upsert(
                    ForecastState(
                        tenant_id=tenant_id,
                        feature=feature,
                        projected_monthly_cost=forecast.projected_monthly_cost,
                        burn_rate=forecast.burn_rate,
                        sla_risk_level=RiskLevel.highest(forecast.budget_risk, trend.sla_risk_level),
                        performance_drift_score=trend.performance_drift_score,
                        last_updated=now,
                        smoothed_daily_cost=forecast.smoothed_daily_cost,
                        cost_trend_slope=forecast.trend_slope,
                    )
                )
                result.count += 1
            except Exception as e:
                self._record(result, "forecast", f"Forecast update failed for {tenant_id}/{feature}: {e}")
        return result

    async def prune_usage(self, now: datetime | None = None) -> StageResult:
        """Drop usage calls that have left the trailing 24h window."""
        result = StageResult()
        if self.usage is None:
            return result
        try:
            result.count = await self.usage.prune((now or utcnow()) - USAGE_WINDOW)
        except Exception as e:
            self._record(result, "usage", f"Failed to prune usage calls: {e}")
        return result

    async def run(self, target_date: date, now: datetime | None = None) -> AggregationReport:
        started = time.perf_counter()
        now = now or utcnow()
        logger.info(f"Daily aggregation starting for {target_date.isoformat()}")

        costs = await self.aggregate_daily_costs(target_date)
        performance = await self.aggregate_daily_performance(target_date)
        forecasts = await self.update_forecast_state(target_date, now)
        pruned = await self.prune_usage(now)

        report = AggregationReport(
            target_date=target_date,
            cost_rows=costs.count,
            performance_rows=performance.count,
            forecasts_updated=forecasts.count,
            usage_rows_pruned=pruned.count,
            errors=costs.errors + performance.errors + forecasts.errors + pruned.errors,
            duration_ms=(time.perf_counter() - started) * 1000,
        )
        logger.info(
            f"Daily aggregation for {target_date.isoformat()} done: {report.cost_rows} cost rows, "
            f"{report.performance_rows} performance rows, {report.forecasts_updated} forecasts, "
            f"{report.usage_rows_pruned} usage rows pruned, {len(report.errors)} errors"
        )
        return report
