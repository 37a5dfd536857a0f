# Copyright 2025 ATP Project Contributors
# Licensed under the Apache License, Version 2.0

"""Routing-mode objective weights and budget-driven adjustments."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from ..config import DEFAULT_MODE_WEIGHTS
from ..domain.models import BALANCED_WEIGHTS, BudgetConfig, BudgetState, CostAwareWeights, RoutingMode

SOFT_LIMIT_COST_BOOST = 1.5

MODE_WEIGHTS: dict[RoutingMode, CostAwareWeights] = {
    RoutingMode(mode): CostAwareWeights.from_dict(weights) for mode, weights in DEFAULT_MODE_WEIGHTS.items()
}


@dataclass(frozen=True)
class BudgetAdjustment:
    weights: CostAwareWeights
    budget_state: BudgetState
    effective_mode: RoutingMode


def build_weight_table(table: Mapping[str, Mapping[str, float]]) -> dict[RoutingMode, CostAwareWeights]:
    """Turn a config weight table into typed weight vectors."""
    return {RoutingMode(mode): CostAwareWeights.from_dict(dict(weights)) for mode, weights in table.items()}


def weights_for_mode(
    mode: RoutingMode | str | None, table: Mapping[RoutingMode, CostAwareWeights] | None = None
) -> CostAwareWeights:
    table = table or MODE_WEIGHTS
    return table.get(RoutingMode.parse(mode)) or table.get(RoutingMode.BALANCED, BALANCED_WEIGHTS)


def normalize_weights(weights: CostAwareWeights) -> CostAwareWeights:
    return weights.normalized()


def apply_budget_adjustment(
    weights: CostAwareWeights,
    budget_config: BudgetConfig | None,
    soft_limit_boost: float = SOFT_LIMIT_COST_BOOST,
    table: Mapping[RoutingMode, CostAwareWeights] | None = None,
) -> BudgetAdjustment:
    """Adjust weights for the tenant's budget position.

    Hard limit (usage at or over a positive budget) discards the input weights
    and forces cost_saver. Soft limit boosts the cost weight and renormalizes.
    """
    if budget_config is None:
        return BudgetAdjustment(weights, BudgetState.NO_CONFIG, RoutingMode.BALANCED)

    configured_mode = RoutingMode.parse(budget_config.routing_mode)
    budget = budget_config.monthly_budget

    if budget > 0 and budget_config.current_month_usage >= budget:
        return BudgetAdjustment(
            weights_for_mode(RoutingMode.COST_SAVER, table), BudgetState.HARD_LIMIT, RoutingMode.COST_SAVER
        )

    if budget_config.usage_ratio > budget_config.soft_limit_percentage:
        return BudgetAdjustment(weights.scale_cost(soft_limit_boost), BudgetState.SOFT_LIMIT, configured_mode)

    return BudgetAdjustment(weights, BudgetState.UNDER_LIMIT, configured_mode)


def apply_forecast_cost_adjustment(weights: CostAwareWeights, cost_weight_multiplier: float) -> CostAwareWeights:
    """Scale the cost weight by a forecast multiplier and renormalize."""
    if cost_weight_multiplier == 1.0:
        return weights
    return weights.scale_cost(cost_weight_multiplier)
