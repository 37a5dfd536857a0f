# Copyright 2025 ATP Project Contributors
# Licensed under the Apache License, Version 2.0

"""Ranker base class, request/result types and shared selection helpers."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from ... import metrics
from ...config import RouterConfig
from ...errors import MetricsStoreUnavailableError
from ...estimators import compute_ewma_update
from ...policies import apply_budget_adjustment, apply_forecast_cost_adjustment, penalty_multipliers, weights_for_mode
from ...policies.weights import BudgetAdjustment, build_weight_table
from ...random_source import RandomSource
from ..models import (
    BudgetConfig,
    CostAwareWeights,
    MetricsKey,
    MetricsRow,
    Outcome,
    ProviderCandidate,
    RoutingMode,
    RoutingStrategy,
    Scope,
    SelectionMode,
    UsageRow,
    as_utc,
    utcnow,
)

if TYPE_CHECKING:
    from ...forecast.engine import ForecastAdjustments
    from ...stores import RouterStores

logger = logging.getLogger(__name__)

TOP_K = 3


@dataclass
class RankRequest:
    tenant_id: str | None
    feature: str
    purpose: str
    candidates: Sequence[ProviderCandidate]
    now: datetime | None = None
    adjustments: ForecastAdjustments | None = None


@dataclass
class ScoredCandidate:
    provider: str
    model: str
    final_score: float
    components: dict[str, float] = field(default_factory=dict)

    @property
    def candidate(self) -> ProviderCandidate:
        return ProviderCandidate(self.provider, self.model)

    def to_dict(self) -> dict[str, Any]:
        return {"provider": self.provider, "model": self.model, "final_score": self.final_score, **self.components}


@dataclass
class RankingResult:
    strategy: RoutingStrategy
    ranked: list[ProviderCandidate]
    selected: ProviderCandidate | None
    mode: SelectionMode
    diagnostics: dict[str, Any] = field(default_factory=dict)
    scores: list[ScoredCandidate] = field(default_factory=list)

    @classmethod
    def empty(cls, strategy: RoutingStrategy) -> RankingResult:
        return cls(strategy, [], None, SelectionMode.EXPLOIT, {"candidates": 0})


@dataclass
class OutcomeReport:
    scope: Scope
    tenant_id: str | None
    feature: str
    purpose: str
    provider: str
    model: str
    outcome: Outcome
    now: datetime | None = None

    @property
    def key(self) -> MetricsKey:
        return MetricsKey.for_scope(self.scope, self.tenant_id, self.feature, self.purpose, self.provider, self.model)


@dataclass
class RankingInputs:
    """Everything a ranker reads from the stores for one request."""

    global_rows: dict[str, MetricsRow]
    tenant_rows: dict[str, MetricsRow]
    budget: BudgetConfig | None = None
    penalties: dict[str, float] = field(default_factory=dict)
    usage: list[UsageRow] = field(default_factory=list)
    degraded: list[str] = field(default_factory=list)

    @property
    def tenant_samples(self) -> int:
        return sum(row.sample_count for row in self.tenant_rows.values())

    def rows_for(self, candidate: ProviderCandidate) -> tuple[MetricsRow | None, MetricsRow | None]:
        return self.global_rows.get(candidate.key), self.tenant_rows.get(candidate.key)


def select_epsilon_greedy(
    scored: Sequence[ScoredCandidate], epsilon: float, rng: RandomSource
) -> tuple[int, SelectionMode]:
    """Return (index, mode): rank 1 unless the draw falls under epsilon.

    On exploration a second draw picks uniformly among the top three. A single
    candidate is always selected, but the mode still reports the draw.
    """
    explore = rng.random() < epsilon
    mode = SelectionMode.EXPLORE if explore else SelectionMode.EXPLOIT
    if explore and len(scored) > 1:
        return pick_from_top(len(scored), rng), mode
    return 0, mode


def pick_from_top(count: int, rng: RandomSource, k: int = TOP_K) -> int:
    top = min(k, count)
    return min(int(rng.random() * top), top - 1)


def latest_call(*rows: MetricsRow | None) -> datetime | None:
    stamps = [as_utc(r.last_call_at) for r in rows if r is not None and r.last_call_at is not None]
    return max(stamps) if stamps else None


def sort_scored(scored: list[ScoredCandidate]) -> list[ScoredCandidate]:
    # sorted() is stable: ties keep input order
    return sorted(scored, key=lambda s: s.final_score, reverse=True)


class Ranker(ABC):
    """Base class for ranking strategies.

    Subclasses score candidates; the base class fetches store inputs and
    applies outcome reports through the store's atomic update.
    """

    strategy: RoutingStrategy

    def __init__(self, stores: RouterStores, config: RouterConfig, rng: RandomSource):
        self.stores = stores
        self.config = config
        self.rng = rng
        self.weight_table = build_weight_table(config.mode_weights)

    @abstractmethod
    async def rank(self, request: RankRequest) -> RankingResult:
        """Rank ``request.candidates`` best first and select one."""

    async def report_outcome(self, report: OutcomeReport) -> MetricsRow:
        now = report.now or utcnow()
        return await self.stores.metrics.update(report.key, lambda row: self.apply_outcome(row, report.outcome, now))

    def apply_outcome(self, row: MetricsRow, outcome: Outcome, now: datetime) -> MetricsRow:
        return compute_ewma_update(row, outcome, now, self.config.ewma_lambda)

    async def fetch_inputs(self, request: RankRequest, now: datetime, include_guards: bool = True) -> RankingInputs:
        """Fetch metrics rows and, optionally, budget, penalties and usage concurrently.

        Metrics rows are required; the other inputs fall back to their neutral
        default when their store fails.
        """
        metrics_store = self.stores.metrics
        global_task = metrics_store.list_rows(Scope.GLOBAL, None, request.feature, request.purpose)
        tenant_task = (
            metrics_store.list_rows(Scope.TENANT, request.tenant_id, request.feature, request.purpose)
            if request.tenant_id
            else _none()
        )
        coros = [global_task, tenant_task]
        if include_guards:
            coros.append(self.stores.budgets.get(request.tenant_id) if request.tenant_id else _none())
            coros.append(self.stores.penalties.list_active(request.feature, now))
            coros.append(self.stores.usage.list_24h(now))

        results = await asyncio.gather(*coros, return_exceptions=True)

        for result in results[:2]:
            if isinstance(result, BaseException):
                logger.error(f"Metrics store unavailable for {request.feature}/{request.purpose}: {result}")
                raise MetricsStoreUnavailableError(str(result)) from result

        inputs = RankingInputs(
            global_rows=_index_rows(results[0]),
            tenant_rows=_index_rows(results[1]),
        )
        if not include_guards:
            return inputs

        budget, penalties, usage = results[2:]
        inputs.budget = self._degrade("budget", budget, None, inputs)
        inputs.penalties = penalty_multipliers(self._degrade("penalties", penalties, [], inputs) or [], now)
        inputs.usage = list(self._degrade("usage", usage, [], inputs) or [])
        return inputs

    def _degrade(self, store: str, result: Any, default: Any, inputs: RankingInputs) -> Any:
        if isinstance(result, BaseException):
            logger.warning(f"{store} store read failed, using neutral default: {result}")
            metrics.record_store_degraded(store)
            inputs.degraded.append(store)
            return default
        return result

    def resolve_weights(
        self, budget: BudgetConfig | None, adjustments: ForecastAdjustments | None
    ) -> tuple[BudgetAdjustment, CostAwareWeights]:
        mode = budget.routing_mode if budget is not None else RoutingMode.BALANCED
        base = weights_for_mode(mode, self.weight_table)
        adjustment = apply_budget_adjustment(base, budget, self.config.soft_limit_cost_boost, self.weight_table)
        weights = adjustment.weights
        if adjustments is not None:
            weights = apply_forecast_cost_adjustment(weights, adjustments.cost_weight_multiplier)
        return adjustment, weights

    def build_result(
        self,
        scored: list[ScoredCandidate],
        index: int,
        mode: SelectionMode,
        diagnostics: dict[str, Any],
    ) -> RankingResult:
        diagnostics.setdefault("fallback_triggered", False)
        diagnostics["candidates"] = len(scored)
        return RankingResult(
            strategy=self.strategy,
            ranked=[s.candidate for s in scored],
            selected=scored[index].candidate,
            mode=mode,
            diagnostics=diagnostics,
            scores=scored[:TOP_K],
        )


async def _none() -> None:
    return None


def _index_rows(rows: list[MetricsRow] | None) -> dict[str, MetricsRow]:
    # Rows without observations are treated as absent
    return {row.candidate_key: row for row in rows or [] if row.has_observations}
