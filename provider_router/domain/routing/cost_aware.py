# Copyright 2025 ATP Project Contributors
# Licensed under the Apache License, Version 2.0

"""Five-objective cost-aware ranker with budget, SLA and diversity guards."""

from __future__ import annotations

import logging

from ... import metrics
from ...policies import (
    LatencyCostPoint,
    clamp01,
    compute_alpha_beta,
    compute_epsilon,
    compute_relative_scores,
    confidence_score,
    decay_factor,
    diversity_guard,
)
from ...policies.blend import blend
from ..models import MetricsRow, RoutingStrategy, utcnow
from .strategies import (
    RankingResult,
    RankRequest,
    Ranker,
    ScoredCandidate,
    latest_call,
    select_epsilon_greedy,
    sort_scored,
)

logger = logging.getLogger(__name__)

DEFAULT_LATENCY_MS = 500.0
DEFAULT_COST = 0.005
NEUTRAL_SCORE = 0.5
DECAY_FLAG_THRESHOLD = 0.99


def _quality(row: MetricsRow | None) -> float:
    return clamp01(row.ewma_quality / 100) if row else NEUTRAL_SCORE


def _stability(row: MetricsRow | None) -> float:
    return clamp01(row.ewma_success_rate) if row else NEUTRAL_SCORE


class CostAwareRanker(Ranker):
    strategy = RoutingStrategy.COST_AWARE

    async def rank(self, request: RankRequest) -> RankingResult:
        if not request.candidates:
            return RankingResult.empty(self.strategy)

        now = request.now or utcnow()
        inputs = await self.fetch_inputs(request, now)
        config = self.config

        tenant_samples = inputs.tenant_samples
        alpha, beta = compute_alpha_beta(tenant_samples)
        budget_adjustment, weights = self.resolve_weights(inputs.budget, request.adjustments)
        diversity = diversity_guard(
            inputs.usage,
            compute_epsilon(tenant_samples),
            config.diversity_usage_threshold,
            config.diversity_min_epsilon,
        )
        if diversity.triggered:
            metrics.record_diversity_triggered(self.strategy.value)

        rows = [inputs.rows_for(c) for c in request.candidates]
        points = [
            LatencyCostPoint(
                latency=blend(
                    alpha,
                    beta,
                    g.ewma_latency_ms if g else None,
                    t.ewma_latency_ms if t else None,
                    DEFAULT_LATENCY_MS,
                ),
                cost=blend(alpha, beta, g.effective_cost if g else None, t.effective_cost if t else None, DEFAULT_COST),
            )
            for g, t in rows
        ]
        relative = compute_relative_scores(points)

        penalty_applied = False
        decay_applied = False
        scored = []
        for i, (candidate, (g, t)) in enumerate(zip(request.candidates, rows)):
            quality = alpha * _quality(g) + beta * _quality(t)
            stability = alpha * _stability(g) + beta * _stability(t)
            total_samples = (g.sample_count if g else 0) + (t.sample_count if t else 0)
            last_call = latest_call(g, t)
            confidence = confidence_score(
                total_samples,
                last_call,
                now,
                config.confidence_sample_cap,
                config.decay_half_life_days,
                config.default_decay_factor,
            )

            raw = weights.score(quality, relative.latency_scores[i], stability, relative.cost_scores[i], confidence)
            penalty = inputs.penalties.get(candidate.provider, 1.0)
            decay = decay_factor(last_call, now, config.decay_half_life_days, config.default_decay_factor)
            penalty_applied = penalty_applied or penalty < 1.0
            decay_applied = decay_applied or decay < DECAY_FLAG_THRESHOLD

            scored.append(
                ScoredCandidate(
                    candidate.provider,
                    candidate.model,
                    raw * penalty * decay,
                    {
                        "quality_score": quality,
                        "latency_score": relative.latency_scores[i],
                        "stability_score": stability,
                        "cost_score": relative.cost_scores[i],
                        "confidence_score": confidence,
                        "penalty_multiplier": penalty,
                        "decay_factor": decay,
                    },
                )
            )

        scored = sort_scored(scored)
        index, mode = select_epsilon_greedy(scored, diversity.epsilon, self.rng)
        logger.debug(
            f"Cost-aware ranking for {request.feature}/{request.purpose}: {scored[index].provider} "
            f"({mode.value}, budget {budget_adjustment.budget_state.value})"
        )

        return self.build_result(
            scored,
            index,
            mode,
            {
                "alpha": alpha,
                "beta": beta,
                "epsilon": diversity.epsilon,
                "tenant_samples": tenant_samples,
                "routing_mode": budget_adjustment.effective_mode.value,
                "budget_state": budget_adjustment.budget_state.value,
                "cost_weight": weights.w_cost,
                "penalty_applied": penalty_applied,
                "decay_applied": decay_applied,
                "diversity_triggered": diversity.triggered,
                "forecast_adjusted": request.adjustments is not None,
                "degraded_stores": list(inputs.degraded),
                "score_breakdown": [s.to_dict() for s in scored[:3]],
            },
        )
