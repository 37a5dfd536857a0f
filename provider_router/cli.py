# Copyright 2025 ATP Project Contributors
# Licensed under the Apache License, Version 2.0

"""Command line entry point for the provider router batch jobs."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import date, timedelta

from .config import RouterConfig
from .domain.models import utcnow
from .errors import RouterError
from .forecast.aggregation import AggregationReport, DailyAggregator
from .stores import build_stores

logger = logging.getLogger(__name__)


def load_config(path: str | None) -> RouterConfig:
    if path:
        return RouterConfig.from_yaml(path)
    return RouterConfig.from_environment()


def yesterday_utc() -> date:
    return utcnow().date() - timedelta(days=1)


async def run_aggregation(config: RouterConfig, target_date: date) -> AggregationReport:
    stores = build_stores(config)
    try:
        aggregator = DailyAggregator(
            stores.events, stores.aggregates, stores.budgets, stores.forecasts, config, stores.usage
        )
        return await aggregator.run(target_date)
    finally:
        await stores.aclose()


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", help="Path to a YAML config file (defaults to environment variables)")

    parser = argparse.ArgumentParser(prog="provider-router", description="Provider router batch tools")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    aggregate_parser = subparsers.add_parser(
        "aggregate", parents=[common], help="Run the daily cost/performance aggregation"
    )
    aggregate_parser.add_argument(
        "--date", type=date.fromisoformat, help="Target date as YYYY-MM-DD (default: yesterday, UTC)"
    )

    subparsers.add_parser("show-config", parents=[common], help="Print the effective configuration")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        config = load_config(args.config)
    except RouterError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "show-config":
        print(json.dumps(config.to_dict(), indent=2, sort_keys=True))
        return 0

    target_date = args.date or yesterday_utc()
    try:
        report = asyncio.run(run_aggregation(config, target_date))
    except RouterError as e:
        logger.error(f"Aggregation for {target_date.isoformat()} failed: {e}")
        return 1

    print(json.dumps(report.to_dict(), indent=2))
    return 0 if report.ok else 1


if __name__ == "__main__":
    sys.exit(main())
