# Copyright 2025 ATP Project Contributors
# Licensed under the Apache License, Version 2.0

"""Routing domain - provider ranking strategies and the routing service."""

from .cost_aware import CostAwareRanker
from .hybrid import HybridRanker
from .scoreboard import ProviderScoreboard
from .service import RoutingService
from .strategies import OutcomeReport, Ranker, RankingResult, RankRequest, ScoredCandidate
from .thompson import ThompsonRanker

__all__ = [
    "RoutingService",
    "Ranker",
    "RankRequest",
    "RankingResult",
    "OutcomeReport",
    "ScoredCandidate",
    "HybridRanker",
    "CostAwareRanker",
    "ThompsonRanker",
    "ProviderScoreboard",
]
