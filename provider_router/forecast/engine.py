# Copyright 2025 ATP Project Contributors
# Licensed under the Apache License, Version 2.0

"""Cost burn-rate and SLA drift forecasting.

Pure functions over daily aggregate series. The derived adjustments let
rankers raise the cost weight when spend is trending over budget and boost
exploration when provider performance drifts.
"""

from __future__ import annotations

import statistics
from collections.abc import Sequence
from dataclasses import dataclass

from scipy import stats

from ..domain.models import RiskLevel
from ..policies import clamp01

BURN_RATE_WINDOW_DAYS = 7
DAYS_PER_MONTH = 30
EXP_SMOOTHING_ALPHA = 0.3
BUDGET_HIGH_THRESHOLD = 0.9
BUDGET_MEDIUM_THRESHOLD = 0.7
LATENCY_DRIFT_HIGH = 0.30
LATENCY_DRIFT_MEDIUM = 0.15
ERROR_RATE_TREND_THRESHOLD = 0.10
LATENCY_DRIFT_SATURATION = 0.5
ERROR_TREND_SATURATION = 0.2
COST_WEIGHT_BOOST_FACTOR = 1.25
SLA_PENALTY_FACTOR = 0.8
TS_EXPLORATION_DECAY = 0.95
EXPLORATION_DRIFT_THRESHOLD = 0.5


@dataclass(frozen=True)
class BurnRate:
    burn_rate: float
    projected_monthly_cost: float


@dataclass(frozen=True)
class CostForecast:
    burn_rate: float
    projected_monthly_cost: float
    smoothed_daily_cost: float
    budget_risk: RiskLevel
    trend_slope: float


@dataclass(frozen=True)
class SlaTrend:
    latency_drift: float
    error_rate_trend: float
    sla_risk_level: RiskLevel
    performance_drift_score: float


@dataclass(frozen=True)
class ForecastAdjustments:
    cost_weight_multiplier: float = 1.0
    provider_penalty: float = 1.0
    exploration_boost: bool = False
    ts_alpha_decay: float = 1.0
    ts_beta_decay: float = 1.0

    @property
    def is_neutral(self) -> bool:
        return self == NEUTRAL_ADJUSTMENTS

    def to_dict(self) -> dict[str, float | bool]:
        return {
            "cost_weight_multiplier": self.cost_weight_multiplier,
            "provider_penalty": self.provider_penalty,
            "exploration_boost": self.exploration_boost,
            "ts_alpha_decay": self.ts_alpha_decay,
            "ts_beta_decay": self.ts_beta_decay,
        }


NEUTRAL_ADJUSTMENTS = ForecastAdjustments()
NEUTRAL_SLA_TREND = SlaTrend(0.0, 0.0, RiskLevel.LOW, 0.0)


def compute_burn_rate(daily_costs: Sequence[float], window_days: int = BURN_RATE_WINDOW_DAYS) -> BurnRate:
    """Average daily spend over the trailing window, projected to 30 days."""
    if not daily_costs:
        return BurnRate(0.0, 0.0)
    window = list(daily_costs)[-window_days:]
    burn_rate = sum(window) / len(window)
    return BurnRate(burn_rate, burn_rate * DAYS_PER_MONTH)


def exponential_smoothing(daily_costs: Sequence[float], alpha: float = EXP_SMOOTHING_ALPHA) -> float:
    if not daily_costs:
        return 0.0
    smoothed = daily_costs[0]
    for value in daily_costs[1:]:
        smoothed = alpha * value + (1 - alpha) * smoothed
    return smoothed


def compute_budget_risk(projected_monthly_cost: float, monthly_budget: float) -> RiskLevel:
    if monthly_budget <= 0:
        return RiskLevel.LOW
    ratio = projected_monthly_cost / monthly_budget
    if ratio > BUDGET_HIGH_THRESHOLD:
        return RiskLevel.HIGH
    if ratio > BUDGET_MEDIUM_THRESHOLD:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def compute_trend_slope(daily_costs: Sequence[float]) -> float:
    """Least-squares slope of cost per day; 0 with fewer than two points."""
    if len(daily_costs) < 2:
        return 0.0
    days = list(range(len(daily_costs)))
    slope, _, _, _, _ = stats.linregress(days, list(daily_costs))
    return float(slope)


def compute_cost_forecast(
    daily_costs: Sequence[float],
    monthly_budget: float,
    window_days: int = BURN_RATE_WINDOW_DAYS,
    smoothing_alpha: float = EXP_SMOOTHING_ALPHA,
) -> CostForecast:
    burn = compute_burn_rate(daily_costs, window_days)
    return CostForecast(
        burn_rate=burn.burn_rate,
        projected_monthly_cost=burn.projected_monthly_cost,
        smoothed_daily_cost=exponential_smoothing(daily_costs, smoothing_alpha),
        budget_risk=compute_budget_risk(burn.projected_monthly_cost, monthly_budget),
        trend_slope=compute_trend_slope(daily_costs),
    )


def compute_latency_drift(current: Sequence[float], previous: Sequence[float]) -> float:
    """Relative change in mean latency from the previous window to the current one."""
    if not current or not previous:
        return 0.0
    previous_mean = statistics.fmean(previous)
    if previous_mean <= 0:
        return 0.0
    return (statistics.fmean(current) - previous_mean) / previous_mean


def compute_error_rate_trend(current_error_rate: float, previous_error_rate: float) -> float:
    return current_error_rate - previous_error_rate


def compute_sla_risk_level(latency_drift: float, error_rate_trend: float) -> RiskLevel:
    if latency_drift > LATENCY_DRIFT_HIGH or error_rate_trend > ERROR_RATE_TREND_THRESHOLD:
        return RiskLevel.HIGH
    if latency_drift > LATENCY_DRIFT_MEDIUM or error_rate_trend > ERROR_RATE_TREND_THRESHOLD / 2:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def compute_performance_drift_score(latency_drift: float, error_rate_trend: float) -> float:
    """Severity in [0, 1]: 50% latency drift or a 20-point error increase saturates."""
    latency_part = clamp01(abs(latency_drift) / LATENCY_DRIFT_SATURATION)
    error_part = clamp01(abs(error_rate_trend) / ERROR_TREND_SATURATION)
    return clamp01(0.6 * latency_part + 0.4 * error_part)


def compute_sla_trend(
    current_latencies: Sequence[float],
    previous_latencies: Sequence[float],
    current_error_rate: float,
    previous_error_rate: float,
) -> SlaTrend:
    latency_drift = compute_latency_drift(current_latencies, previous_latencies)
    error_trend = compute_error_rate_trend(current_error_rate, previous_error_rate)
    return SlaTrend(
        latency_drift=latency_drift,
        error_rate_trend=error_trend,
        sla_risk_level=compute_sla_risk_level(latency_drift, error_trend),
        performance_drift_score=compute_performance_drift_score(latency_drift, error_trend),
    )


def compute_forecast_adjustments(
    budget_risk: RiskLevel, sla_risk_level: RiskLevel, performance_drift_score: float
) -> ForecastAdjustments:
    cost_multiplier = 1.0
    if budget_risk is RiskLevel.HIGH:
        cost_multiplier = COST_WEIGHT_BOOST_FACTOR
    elif budget_risk is RiskLevel.MEDIUM:
        cost_multiplier = 1.0 + (COST_WEIGHT_BOOST_FACTOR - 1.0) * 0.5

    provider_penalty = 1.0
    if sla_risk_level is RiskLevel.HIGH:
        provider_penalty = SLA_PENALTY_FACTOR
    elif sla_risk_level is RiskLevel.MEDIUM:
        provider_penalty = 1.0 - (1.0 - SLA_PENALTY_FACTOR) * 0.5

    if performance_drift_score > EXPLORATION_DRIFT_THRESHOLD:
        return ForecastAdjustments(cost_multiplier, provider_penalty, True, TS_EXPLORATION_DECAY, TS_EXPLORATION_DECAY)
    return ForecastAdjustments(cost_multiplier, provider_penalty)
