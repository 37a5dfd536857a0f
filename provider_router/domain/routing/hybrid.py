# Copyright 2025 ATP Project Contributors
# Licensed under the Apache License, Version 2.0

"""Blended global/tenant EWMA ranker with epsilon-greedy exploration."""

from __future__ import annotations

import logging

from ...policies import clamp01, compute_alpha_beta, compute_epsilon
from ..models import MetricsRow, RoutingStrategy, utcnow
from .strategies import RankingResult, RankRequest, Ranker, ScoredCandidate, select_epsilon_greedy, sort_scored

logger = logging.getLogger(__name__)

W_QUALITY = 0.40
W_SUCCESS = 0.30
W_LATENCY = 0.20
W_COST = 0.10
NEUTRAL_SCORE = 0.5


def composite_score(row: MetricsRow | None, latency_cap_ms: float = 5000.0, cost_cap: float = 0.01) -> float:
    """Score one metrics row into [0, 1]; missing rows score neutral."""
    if row is None or not row.has_observations:
        return NEUTRAL_SCORE

    # quality is stored on a 0..100 scale
    quality = clamp01(row.ewma_quality / 100)
    success = clamp01(row.ewma_success_rate)
    latency = clamp01(1 - row.ewma_latency_ms / latency_cap_ms)
    cost = clamp01(1 - row.ewma_cost_per_1k / cost_cap)
    return W_QUALITY * quality + W_SUCCESS * success + W_LATENCY * latency + W_COST * cost


class HybridRanker(Ranker):
    strategy = RoutingStrategy.HYBRID

    async def rank(self, request: RankRequest) -> RankingResult:
        if not request.candidates:
            return RankingResult.empty(self.strategy)

        now = request.now or utcnow()
        inputs = await self.fetch_inputs(request, now, include_guards=False)

        tenant_samples = inputs.tenant_samples
        alpha, beta = compute_alpha_beta(tenant_samples)
        epsilon = compute_epsilon(tenant_samples)

        scored = []
        for candidate in request.candidates:
            global_row, tenant_row = inputs.rows_for(candidate)
            global_score = composite_score(global_row, self.config.latency_cap_ms, self.config.cost_cap)
            tenant_score = composite_score(tenant_row, self.config.latency_cap_ms, self.config.cost_cap)
            scored.append(
                ScoredCandidate(
                    candidate.provider,
                    candidate.model,
                    alpha * global_score + beta * tenant_score,
                    {"global_score": global_score, "tenant_score": tenant_score},
                )
            )

        scored = sort_scored(scored)
        index, mode = select_epsilon_greedy(scored, epsilon, self.rng)
        logger.debug(f"Hybrid ranking for {request.feature}/{request.purpose}: {scored[index].provider} ({mode.value})")

        return self.build_result(
            scored,
            index,
            mode,
            {"alpha": alpha, "beta": beta, "epsilon": epsilon, "tenant_samples": tenant_samples},
        )
