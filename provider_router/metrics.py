# Copyright 2025 ATP Project Contributors
# Licensed under the Apache License, Version 2.0

"""Prometheus metrics for ranking, outcome updates and the forecast job."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

RANK_TOTAL = Counter("router_rank_total", "Rankings produced", ["strategy", "mode"])
RANK_DURATION = Histogram("router_rank_duration_seconds", "Time spent ranking candidates", ["strategy"])
FALLBACK_TOTAL = Counter(
    "router_fallback_total", "Strategy fallbacks after a ranking failure", ["from_strategy", "to_strategy"]
)
OUTCOME_UPDATES_TOTAL = Counter(
    "router_outcome_updates_total", "Outcome reports applied to provider metrics", ["strategy", "result"]
)
STORE_DEGRADED_TOTAL = Counter(
    "router_store_degraded_total", "Ranking inputs replaced by neutral defaults after a store failure", ["store"]
)
DIVERSITY_TRIGGERED_TOTAL = Counter(
    "router_diversity_triggered_total", "Rankings where the diversity guard raised exploration", ["strategy"]
)
SINK_FAILURES_TOTAL = Counter("router_sink_failures_total", "Best-effort writes that failed", ["sink"])
FORECAST_AGGREGATION_ERRORS_TOTAL = Counter(
    "router_forecast_aggregation_errors_total", "Failures during daily forecast aggregation", ["stage"]
)


def record_rank(strategy: str, mode: str, duration_s: float) -> None:
    RANK_TOTAL.labels(strategy=strategy, mode=mode).inc()
    RANK_DURATION.labels(strategy=strategy).observe(duration_s)


def record_fallback(from_strategy: str, to_strategy: str) -> None:
    FALLBACK_TOTAL.labels(from_strategy=from_strategy, to_strategy=to_strategy).inc()


def record_outcome_update(strategy: str, success: bool) -> None:
    OUTCOME_UPDATES_TOTAL.labels(strategy=strategy, result="ok" if success else "error").inc()


def record_store_degraded(store: str) -> None:
    STORE_DEGRADED_TOTAL.labels(store=store).inc()


def record_diversity_triggered(strategy: str) -> None:
    DIVERSITY_TRIGGERED_TOTAL.labels(strategy=strategy).inc()


def record_sink_failure(sink: str) -> None:
    SINK_FAILURES_TOTAL.labels(sink=sink).inc()


def record_aggregation_error(stage: str) -> None:
    FORECAST_AGGREGATION_ERRORS_TOTAL.labels(stage=stage).inc()
