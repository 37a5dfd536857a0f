# Copyright 2025 ATP Project Contributors
# Licensed under the Apache License, Version 2.0

"""Cost and SLA forecasting plus the daily aggregation job."""

from .aggregation import AggregationReport, DailyAggregator, StageResult
from .engine import (
    NEUTRAL_ADJUSTMENTS,
    BurnRate,
    CostForecast,
    ForecastAdjustments,
    SlaTrend,
    compute_budget_risk,
    compute_burn_rate,
    compute_cost_forecast,
    compute_error_rate_trend,
    compute_forecast_adjustments,
    compute_latency_drift,
    compute_performance_drift_score,
    compute_sla_risk_level,
    compute_sla_trend,
    compute_trend_slope,
    exponential_smoothing,
)

__all__ = [
    "AggregationReport",
    "DailyAggregator",
    "StageResult",
    "NEUTRAL_ADJUSTMENTS",
    "BurnRate",
    "CostForecast",
    "ForecastAdjustments",
    "SlaTrend",
    "compute_budget_risk",
    "compute_burn_rate",
    "compute_cost_forecast",
    "compute_error_rate_trend",
    "compute_forecast_adjustments",
    "compute_latency_drift",
    "compute_performance_drift_score",
    "compute_sla_risk_level",
    "compute_sla_trend",
    "compute_trend_slope",
    "exponential_smoothing",
]
