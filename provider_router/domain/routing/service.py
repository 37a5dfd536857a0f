# Copyright 2025 ATP Project Contributors
# Licensed under the Apache License, Version 2.0

"""Routing service - provider ranking, outcome learning and forecast hooks."""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from datetime import date, datetime, timedelta

from ... import metrics
from ...config import RouterConfig
from ...error_handling import BestEffortSink, async_error_context, fail_open, handle_async_with_fallback
from ...errors import InvalidRequestError, MetricsStoreUnavailableError
from ...forecast.aggregation import AggregationReport, DailyAggregator
from ...forecast.engine import (
    NEUTRAL_ADJUSTMENTS,
    ForecastAdjustments,
    compute_budget_risk,
    compute_forecast_adjustments,
)
from ...random_source import RandomSource, default_random_source
from ...stores import RouterStores, build_stores
from ..models import (
    Outcome,
    PenaltyRow,
    ProviderCandidate,
    ProviderEvent,
    RiskLevel,
    RoutingStrategy,
    Scope,
    utcnow,
)
from .cost_aware import CostAwareRanker
from .hybrid import HybridRanker
from .scoreboard import ProviderScoreboard
from .strategies import OutcomeReport, Ranker, RankingResult, RankRequest
from .thompson import ThompsonRanker

logger = logging.getLogger(__name__)

FALLBACK_CHAIN: dict[RoutingStrategy, RoutingStrategy] = {
    RoutingStrategy.THOMPSON: RoutingStrategy.COST_AWARE,
    RoutingStrategy.COST_AWARE: RoutingStrategy.HYBRID,
}


class RoutingService:
    """
    Long-lived entry point for provider ranking.

    Owns the stores, the three rankers, the in-process scoreboard and the
    best-effort sink for event and usage writes. Strategy selection maps a
    tenant's configuration to a ranker; unexpected ranker failures fall back
    along thompson -> cost_aware -> hybrid. A metrics store outage is never
    masked by a fallback, since every ranker reads the same rows.
    """

    def __init__(
        self,
        stores: RouterStores,
        config: RouterConfig | None = None,
        rng: RandomSource | None = None,
        scoreboard: ProviderScoreboard | None = None,
        sink: BestEffortSink | None = None,
    ):
        self.stores = stores
        self.config = config or RouterConfig()
        self.rng = rng or default_random_source()
        self.scoreboard = scoreboard or ProviderScoreboard()
        self.sink = sink or BestEffortSink()
        self.aggregator = DailyAggregator(
            stores.events, stores.aggregates, stores.budgets, stores.forecasts, self.config, stores.usage
        )
        self._rankers: dict[RoutingStrategy, Ranker] = {
            RoutingStrategy.HYBRID: HybridRanker(stores, self.config, self.rng),
            RoutingStrategy.COST_AWARE: CostAwareRanker(stores, self.config, self.rng),
            RoutingStrategy.THOMPSON: ThompsonRanker(stores, self.config, self.rng),
        }

    @classmethod
    def from_config(cls, config: RouterConfig, rng: RandomSource | None = None) -> RoutingService:
        return cls(build_stores(config), config, rng)

    def ranker(self, strategy: RoutingStrategy | str) -> Ranker:
        return self._rankers[RoutingStrategy.parse(strategy, self._default_strategy)]

    @property
    def _default_strategy(self) -> RoutingStrategy:
        return RoutingStrategy(self.config.default_strategy)

    async def resolve_strategy(self, strategy: RoutingStrategy | str | None, tenant_id: str | None) -> RoutingStrategy:
        """Explicit strategy, else the tenant's configured one, else the default."""
        if strategy is not None:
            return RoutingStrategy.parse(strategy, self._default_strategy)
        if tenant_id:
            budget = await handle_async_with_fallback(
                lambda: self.stores.budgets.get(tenant_id),
                None,
                context=f"Budget lookup for strategy of tenant {tenant_id} failed",
            )
            if budget is not None and budget.routing_strategy:
                return RoutingStrategy.parse(budget.routing_strategy, self._default_strategy)
        return self._default_strategy

    async def get_forecast_adjustments(self, tenant_id: str | None, feature: str) -> ForecastAdjustments:
        """Adjustments from the stored forecast; neutral when missing or unreadable."""
        if not tenant_id:
            return NEUTRAL_ADJUSTMENTS

        async def load() -> ForecastAdjustments:
            state = await self.stores.forecasts.get(tenant_id, feature)
            if state is None:
                return NEUTRAL_ADJUSTMENTS
            budget = await self.stores.budgets.get(tenant_id)
            budget_risk = compute_budget_risk(state.projected_monthly_cost, budget.monthly_budget if budget else 0.0)
            return compute_forecast_adjustments(
                budget_risk, RiskLevel(state.sla_risk_level), state.performance_drift_score
            )

        return await handle_async_with_fallback(
            load,
            NEUTRAL_ADJUSTMENTS,
            context=f"Forecast adjustments for {tenant_id}/{feature} unavailable",
            on_error=lambda _: metrics.record_store_degraded("forecasts"),
        )

    async def rank(
        self,
        strategy: RoutingStrategy | str | None,
        tenant_id: str | None,
        feature: str,
        purpose: str,
        candidates: Sequence[ProviderCandidate],
        now: datetime | None = None,
    ) -> RankingResult:
        if not feature or not purpose:
            raise InvalidRequestError("feature and purpose are required")

        requested = await self.resolve_strategy(strategy, tenant_id)
        adjustments = None
        if candidates and self.config.forecast_adjustments_enabled and requested is not RoutingStrategy.HYBRID:
            loaded = await self.get_forecast_adjustments(tenant_id, feature)
            adjustments = None if loaded.is_neutral else loaded

        request = RankRequest(tenant_id, feature, purpose, list(candidates), now or utcnow(), adjustments)
        current = requested
        last_error: Exception | None = None

        async with async_error_context(f"{feature}/{purpose} ranking"):
            while True:
                started = time.perf_counter()
                try:
                    result = await self._rankers[current].rank(request)
                    break
                except MetricsStoreUnavailableError:
                    raise
                except Exception as e:
                    next_strategy = FALLBACK_CHAIN.get(current)
                    if not self.config.fallback_enabled or next_strategy is None:
                        raise
                    logger.warning(f"{current.value} ranking failed, falling back to {next_strategy.value}: {e}")
                    metrics.record_fallback(current.value, next_strategy.value)
                    last_error = e
                    current = next_strategy

        metrics.record_rank(current.value, result.mode.value, time.perf_counter() - started)
        if adjustments is not None:
            result.diagnostics["forecast_adjustments"] = adjustments.to_dict()
        if current is not requested:
            result.diagnostics["fallback_triggered"] = True
            result.diagnostics["fallback_from"] = requested.value
            result.diagnostics["fallback_error"] = str(last_error)
        return result

    async def rank_hybrid(
        self,
        tenant_id: str | None,
        feature: str,
        purpose: str,
        candidates: Sequence[ProviderCandidate],
        now: datetime | None = None,
    ) -> RankingResult:
        return await self.rank(RoutingStrategy.HYBRID, tenant_id, feature, purpose, candidates, now)

    async def rank_cost_aware(
        self,
        tenant_id: str | None,
        feature: str,
        purpose: str,
        candidates: Sequence[ProviderCandidate],
        now: datetime | None = None,
    ) -> RankingResult:
        return await self.rank(RoutingStrategy.COST_AWARE, tenant_id, feature, purpose, candidates, now)

    async def rank_thompson(
        self,
        tenant_id: str | None,
        feature: str,
        purpose: str,
        candidates: Sequence[ProviderCandidate],
        now: datetime | None = None,
    ) -> RankingResult:
        return await self.rank(RoutingStrategy.THOMPSON, tenant_id, feature, purpose, candidates, now)

    async def report_outcome(
        self,
        strategy: RoutingStrategy | str,
        scope: Scope | str,
        tenant_id: str | None,
        feature: str,
        purpose: str,
        provider: str,
        model: str,
        outcome: Outcome,
        now: datetime | None = None,
    ) -> bool:
        """Fold one outcome into the metrics row for ``scope``. Never raises."""
        ranker = self.ranker(strategy)
        try:
            report = OutcomeReport(Scope(scope), tenant_id, feature, purpose, provider, model, outcome, now)
            await ranker.report_outcome(report)
        except Exception as e:
            logger.warning(f"Outcome update for {provider}/{model} ({ranker.strategy.value}) failed: {e}")
            metrics.record_outcome_update(ranker.strategy.value, False)
            return False
        metrics.record_outcome_update(ranker.strategy.value, True)
        return True

    async def record_outcome(
        self,
        strategy: RoutingStrategy | str,
        tenant_id: str | None,
        feature: str,
        purpose: str,
        provider: str,
        model: str,
        outcome: Outcome,
        now: datetime | None = None,
    ) -> bool:
        """Report a completed call for every scope it belongs to.

        The event-log append and the usage bump go through the best-effort
        sink; they are at-most-once and never retried.
        """
        now = now or utcnow()
        ok = await self.report_outcome(strategy, Scope.GLOBAL, None, feature, purpose, provider, model, outcome, now)
        if tenant_id:
            ok = (
                await self.report_outcome(
                    strategy, Scope.TENANT, tenant_id, feature, purpose, provider, model, outcome, now
                )
                and ok
            )

        event = ProviderEvent(
            feature=feature,
            purpose=purpose,
            provider=provider,
            model=model,
            latency_ms=outcome.latency_ms,
            estimated_cost=outcome.cost_per_1k,
            quality_avg=outcome.quality_avg,
            success=outcome.success,
            tenant_id=tenant_id,
            created_at=now,
        )
        self.sink.submit("events", lambda: self.stores.events.append(event))
        self.sink.submit("usage", lambda: self.stores.usage.record_call(provider, now))
        self.scoreboard.record(provider, outcome.resolved_type, outcome.latency_ms, now)
        return ok

    async def apply_sla_penalty(
        self,
        provider: str,
        feature: str,
        multiplier: float | None = None,
        ttl_minutes: int | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Upsert a time-bounded penalty for (provider, feature). Never raises."""
        multiplier = self.config.default_penalty_multiplier if multiplier is None else multiplier
        ttl = self.config.default_penalty_ttl_minutes if ttl_minutes is None else ttl_minutes
        expires_at = (now or utcnow()) + timedelta(minutes=ttl)
        return await self._upsert_penalty(PenaltyRow(provider, feature, multiplier, expires_at))

    @fail_open("SLA penalty upsert", on_error=lambda _: metrics.record_sink_failure("penalties"))
    async def _upsert_penalty(self, penalty: PenaltyRow) -> None:
        await self.stores.penalties.upsert(penalty)
        logger.info(
            f"SLA penalty {penalty.penalty_multiplier} applied to {penalty.provider}/{penalty.feature} "
            f"until {penalty.expires_at.isoformat()}"
        )

    async def run_daily_aggregation(self, target_date: date) -> AggregationReport:
        return await self.aggregator.run(target_date)

    async def aclose(self) -> None:
        await self.sink.drain()
        await self.stores.aclose()
