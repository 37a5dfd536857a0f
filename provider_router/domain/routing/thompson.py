# Copyright 2025 ATP Project Contributors
# Licensed under the Apache License, Version 2.0

"""Thompson sampling ranker.

Each candidate gets one posterior draw per objective: a Beta draw for
quality (reused as stability, since success is what the Beta posterior
counts) and Gaussian draws for latency and cost. Selection is the argmax of
the sampled scores; the diversity guard replaces it with a uniform top-3
pick when one provider holds most of the traffic.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from ... import metrics
from ...estimators import compute_posterior_update, sample_beta, sample_normal
from ...estimators.posterior import INITIAL_COST_VARIANCE, INITIAL_LATENCY_VARIANCE
from ...policies import (
    LatencyCostPoint,
    compute_alpha_beta,
    compute_epsilon,
    compute_relative_scores,
    confidence_score,
    decay_factor,
    diversity_guard,
)
from ...policies.blend import blend
from ..models import MetricsRow, Outcome, RoutingStrategy, SelectionMode, utcnow
from .strategies import RankingResult, RankRequest, Ranker, ScoredCandidate, latest_call, pick_from_top, sort_scored

logger = logging.getLogger(__name__)

PRIOR_ALPHA = 1.0
PRIOR_BETA = 1.0
PRIOR_LATENCY_MEAN = 500.0
PRIOR_COST_MEAN = 0.005
DECAY_FLAG_THRESHOLD = 0.99


@dataclass(frozen=True)
class BlendedPosterior:
    alpha: float
    beta: float
    latency_mean: float
    latency_variance: float
    cost_mean: float
    cost_variance: float


def blend_posteriors(
    alpha: float, beta: float, global_row: MetricsRow | None, tenant_row: MetricsRow | None
) -> BlendedPosterior:
    """Blend sufficient statistics across scopes; priors fill in when neither scope has data."""
    g, t = global_row, tenant_row
    return BlendedPosterior(
        alpha=blend(alpha, beta, g.ts_alpha if g else None, t.ts_alpha if t else None, PRIOR_ALPHA),
        beta=blend(alpha, beta, g.ts_beta if g else None, t.ts_beta if t else None, PRIOR_BETA),
        latency_mean=blend(
            alpha, beta, g.ts_latency_mean if g else None, t.ts_latency_mean if t else None, PRIOR_LATENCY_MEAN
        ),
        latency_variance=blend(
            alpha,
            beta,
            g.ts_latency_variance if g else None,
            t.ts_latency_variance if t else None,
            INITIAL_LATENCY_VARIANCE,
        ),
        cost_mean=blend(alpha, beta, g.ts_cost_mean if g else None, t.ts_cost_mean if t else None, PRIOR_COST_MEAN),
        cost_variance=blend(
            alpha, beta, g.ts_cost_variance if g else None, t.ts_cost_variance if t else None, INITIAL_COST_VARIANCE
        ),
    )


class ThompsonRanker(Ranker):
    strategy = RoutingStrategy.THOMPSON

    async def rank(self, request: RankRequest) -> RankingResult:
        if not request.candidates:
            return RankingResult.empty(self.strategy)

        now = request.now or utcnow()
        inputs = await self.fetch_inputs(request, now)
        config = self.config
        adjustments = request.adjustments
        exploration_boost = adjustments is not None and adjustments.exploration_boost

        tenant_samples = inputs.tenant_samples
        alpha, beta = compute_alpha_beta(tenant_samples)
        budget_adjustment, weights = self.resolve_weights(inputs.budget, adjustments)
        diversity = diversity_guard(
            inputs.usage,
            compute_epsilon(tenant_samples),
            config.diversity_usage_threshold,
            config.diversity_min_epsilon,
        )
        if diversity.triggered:
            metrics.record_diversity_triggered(self.strategy.value)

        draws = []
        for candidate in request.candidates:
            g, t = inputs.rows_for(candidate)
            posterior = blend_posteriors(alpha, beta, g, t)
            shape_a, shape_b = posterior.alpha, posterior.beta
            if exploration_boost:
                shape_a *= adjustments.ts_alpha_decay
                shape_b *= adjustments.ts_beta_decay

            quality = sample_beta(shape_a, shape_b, self.rng)
            latency = sample_normal(posterior.latency_mean, posterior.latency_variance, self.rng)
            cost = sample_normal(posterior.cost_mean, posterior.cost_variance, self.rng)
            draws.append((candidate, g, t, quality, latency, cost, shape_a, shape_b))

        # Negative Gaussian draws are clamped before normalization
        relative = compute_relative_scores([LatencyCostPoint(max(d[4], 0.0), max(d[5], 0.0)) for d in draws])

        penalty_applied = False
        decay_applied = False
        scored = []
        for i, (candidate, g, t, quality, _, _, shape_a, shape_b) in enumerate(draws):
            last_call = latest_call(g, t)
            total_samples = (g.sample_count if g else 0) + (t.sample_count if t else 0)
            confidence = confidence_score(
                total_samples,
                last_call,
                now,
                config.confidence_sample_cap,
                config.decay_half_life_days,
                config.default_decay_factor,
            )
            raw = weights.score(quality, relative.latency_scores[i], quality, relative.cost_scores[i], confidence)
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
                        "quality_sample": quality,
                        "latency_score": relative.latency_scores[i],
                        "cost_score": relative.cost_scores[i],
                        "confidence_score": confidence,
                        "penalty_multiplier": penalty,
                        "decay_factor": decay,
                        "ts_alpha": shape_a,
                        "ts_beta": shape_b,
                    },
                )
            )

        scored = sort_scored(scored)
        index, mode = 0, SelectionMode.EXPLOIT
        if diversity.triggered and len(scored) > 1:
            index, mode = pick_from_top(len(scored), self.rng), SelectionMode.EXPLORE
        logger.debug(f"Thompson ranking for {request.feature}/{request.purpose}: {scored[index].provider}")

        return self.build_result(
            scored,
            index,
            mode,
            {
                "alpha": alpha,
                "beta": beta,
                "tenant_samples": tenant_samples,
                "routing_mode": budget_adjustment.effective_mode.value,
                "budget_state": budget_adjustment.budget_state.value,
                "cost_weight": weights.w_cost,
                "penalty_applied": penalty_applied,
                "decay_applied": decay_applied,
                "diversity_triggered": diversity.triggered,
                "exploration_boost": exploration_boost,
                "forecast_adjusted": adjustments is not None,
                "degraded_stores": list(inputs.degraded),
                "score_breakdown": [s.to_dict() for s in scored[:3]],
            },
        )

    def apply_outcome(self, row: MetricsRow, outcome: Outcome, now: datetime) -> MetricsRow:
        # Posterior first: Welford's n comes from the pre-update sample count
        posterior = compute_posterior_update(row, outcome)
        return posterior.apply_to(super().apply_outcome(row, outcome, now))
