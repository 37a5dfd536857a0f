# Copyright 2025 ATP Project Contributors
# Licensed under the Apache License, Version 2.0

"""Provider ranking engine: blended EWMA, cost-aware and Thompson sampling rankers."""

from .config import RouterConfig
from .domain.models import (
    BudgetConfig,
    Outcome,
    OutcomeType,
    PenaltyRow,
    ProviderCandidate,
    RoutingMode,
    RoutingStrategy,
    Scope,
)
from .domain.routing import RankingResult, RoutingService
from .errors import ErrorCode, MetricsStoreUnavailableError, RouterError
from .random_source import SeededRandom

__version__ = "0.1.0"

__all__ = [
    "BudgetConfig",
    "ErrorCode",
    "MetricsStoreUnavailableError",
    "Outcome",
    "OutcomeType",
    "PenaltyRow",
    "ProviderCandidate",
    "RankingResult",
    "RouterConfig",
    "RouterError",
    "RoutingMode",
    "RoutingService",
    "RoutingStrategy",
    "Scope",
    "SeededRandom",
]
