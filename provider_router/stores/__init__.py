# Copyright 2025 ATP Project Contributors
# Licensed under the Apache License, Version 2.0

"""Persistence for provider metrics, budgets, penalties, usage and forecasts."""

from __future__ import annotations

import logging

from ..config import RouterConfig
from .base import (
    AggregateStore,
    BudgetStore,
    EventLog,
    ForecastStore,
    MetricsStore,
    PenaltyStore,
    RouterStores,
    RowMutation,
    UsageStore,
)
from .memory import build_memory_stores

logger = logging.getLogger(__name__)


def build_stores(config: RouterConfig) -> RouterStores:
    """SQL-backed stores when a database URL is configured, in-memory otherwise."""
    if config.database_url:
        from .sql import build_sql_stores

        logger.info("Using SQL router stores")
        return build_sql_stores(config.database_url)
    logger.info("Using in-memory router stores")
    return build_memory_stores()


__all__ = [
    "AggregateStore",
    "BudgetStore",
    "EventLog",
    "ForecastStore",
    "MetricsStore",
    "PenaltyStore",
    "RouterStores",
    "RowMutation",
    "UsageStore",
    "build_memory_stores",
    "build_stores",
]
