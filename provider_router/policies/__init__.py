# Copyright 2025 ATP Project Contributors
# Licensed under the Apache License, Version 2.0

"""Blend, weight and guard policies shared by all rankers."""

from .blend import compute_alpha_beta, compute_epsilon
from .guards import (
    DiversityDecision,
    LatencyCostPoint,
    RelativeScores,
    clamp01,
    compute_relative_scores,
    confidence_score,
    decay_factor,
    diversity_guard,
    penalty_multipliers,
)
from .weights import (
    MODE_WEIGHTS,
    BudgetAdjustment,
    apply_budget_adjustment,
    apply_forecast_cost_adjustment,
    normalize_weights,
    weights_for_mode,
)

__all__ = [
    "compute_alpha_beta",
    "compute_epsilon",
    "MODE_WEIGHTS",
    "BudgetAdjustment",
    "apply_budget_adjustment",
    "apply_forecast_cost_adjustment",
    "normalize_weights",
    "weights_for_mode",
    "DiversityDecision",
    "LatencyCostPoint",
    "RelativeScores",
    "clamp01",
    "compute_relative_scores",
    "confidence_score",
    "decay_factor",
    "diversity_guard",
    "penalty_multipliers",
]
