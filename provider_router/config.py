# Copyright 2025 ATP Project Contributors
# Licensed under the Apache License, Version 2.0

"""Configuration for provider ranking, budget guards and forecasting."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_MODE_WEIGHTS: dict[str, dict[str, float]] = {
    "performance": {"w_quality": 0.45, "w_latency": 0.20, "w_stability": 0.20, "w_cost": 0.05, "w_confidence": 0.10},
    "balanced": {"w_quality": 0.20, "w_latency": 0.20, "w_stability": 0.20, "w_cost": 0.20, "w_confidence": 0.20},
    "cost_saver": {"w_quality": 0.25, "w_latency": 0.15, "w_stability": 0.10, "w_cost": 0.40, "w_confidence": 0.10},
}

VALID_STRATEGIES = ("hybrid", "cost_aware", "thompson")

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


@dataclass
class RouterConfig:
    """Configuration for the provider router."""

    # Objective weights per routing mode
    mode_weights: dict[str, dict[str, float]] = field(
        default_factory=lambda: {mode: dict(w) for mode, w in DEFAULT_MODE_WEIGHTS.items()}
    )

    # Budget guard
    soft_limit_cost_boost: float = 1.5

    # Diversity guard (usage share in percent over the trailing 24h)
    diversity_usage_threshold: float = 95.0
    diversity_min_epsilon: float = 0.15

    # Confidence and decay
    decay_half_life_days: float = 30.0
    default_decay_factor: float = 0.5
    confidence_sample_cap: int = 100

    # SLA penalties
    default_penalty_multiplier: float = 0.7
    default_penalty_ttl_minutes: int = 10

    # EWMA scoring
    ewma_lambda: float = 0.2
    latency_cap_ms: float = 5000.0
    cost_cap: float = 0.01

    # Forecasting
    burn_rate_window_days: int = 7
    smoothing_alpha: float = 0.3
    forecast_lookback_days: int = 14
    forecast_adjustments_enabled: bool = True

    # Strategy selection
    default_strategy: str = "cost_aware"
    fallback_enabled: bool = True

    # Infrastructure
    database_url: str | None = None
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Raise ConfigurationError for values the router cannot work with."""
        for mode, weights in self.mode_weights.items():
            total = sum(weights.values())
            if abs(total - 1.0) > 1e-6:
                raise ConfigurationError(f"weights for mode '{mode}' must sum to 1.0, got {total:.4f}")
            if any(w < 0 for w in weights.values()):
                raise ConfigurationError(f"weights for mode '{mode}' must be non-negative")
        if "balanced" not in self.mode_weights:
            raise ConfigurationError("mode_weights must define 'balanced'")
        if self.soft_limit_cost_boost <= 0:
            raise ConfigurationError("soft_limit_cost_boost must be positive")
        if not 0.0 <= self.diversity_min_epsilon <= 1.0:
            raise ConfigurationError("diversity_min_epsilon must be within [0, 1]")
        if self.decay_half_life_days <= 0:
            raise ConfigurationError("decay_half_life_days must be positive")
        if self.confidence_sample_cap <= 0:
            raise ConfigurationError("confidence_sample_cap must be positive")
        if not 0.0 < self.default_penalty_multiplier <= 1.0:
            raise ConfigurationError("default_penalty_multiplier must be within (0, 1]")
        if not 0.0 < self.ewma_lambda <= 1.0:
            raise ConfigurationError("ewma_lambda must be within (0, 1]")
        if not 0.0 < self.smoothing_alpha <= 1.0:
            raise ConfigurationError("smoothing_alpha must be within (0, 1]")
        if self.default_strategy not in VALID_STRATEGIES:
            raise ConfigurationError(f"unknown default_strategy '{self.default_strategy}'")

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if data.get("database_url"):
            data["database_url"] = _redact_url(data["database_url"])
        return data

    @classmethod
    def from_environment(cls) -> RouterConfig:
        """Create configuration from environment variables."""
        return cls(
            mode_weights=_parse_mode_weights(os.getenv("ROUTER_MODE_WEIGHTS")),
            soft_limit_cost_boost=float(os.getenv("ROUTER_SOFT_LIMIT_COST_BOOST", "1.5")),
            diversity_usage_threshold=float(os.getenv("ROUTER_DIVERSITY_USAGE_THRESHOLD", "95")),
            diversity_min_epsilon=float(os.getenv("ROUTER_DIVERSITY_MIN_EPSILON", "0.15")),
            decay_half_life_days=float(os.getenv("ROUTER_DECAY_HALF_LIFE_DAYS", "30")),
            default_decay_factor=float(os.getenv("ROUTER_DEFAULT_DECAY_FACTOR", "0.5")),
            confidence_sample_cap=int(os.getenv("ROUTER_CONFIDENCE_SAMPLE_CAP", "100")),
            default_penalty_multiplier=float(os.getenv("ROUTER_PENALTY_MULTIPLIER", "0.7")),
            default_penalty_ttl_minutes=int(os.getenv("ROUTER_PENALTY_TTL_MINUTES", "10")),
            ewma_lambda=float(os.getenv("ROUTER_EWMA_LAMBDA", "0.2")),
            latency_cap_ms=float(os.getenv("ROUTER_LATENCY_CAP_MS", "5000")),
            cost_cap=float(os.getenv("ROUTER_COST_CAP", "0.01")),
            burn_rate_window_days=int(os.getenv("ROUTER_BURN_RATE_WINDOW_DAYS", "7")),
            smoothing_alpha=float(os.getenv("ROUTER_SMOOTHING_ALPHA", "0.3")),
            forecast_lookback_days=int(os.getenv("ROUTER_FORECAST_LOOKBACK_DAYS", "14")),
            forecast_adjustments_enabled=os.getenv("ROUTER_FORECAST_ADJUSTMENTS", "true").lower() == "true",
            default_strategy=os.getenv("ROUTER_DEFAULT_STRATEGY", "cost_aware"),
            fallback_enabled=os.getenv("ROUTER_FALLBACK_ENABLED", "true").lower() == "true",
            database_url=os.getenv("DATABASE_URL") or None,
            log_level=os.getenv("ROUTER_LOG_LEVEL", "INFO"),
        )

    @classmethod
    def from_yaml(cls, path: str | Path) -> RouterConfig:
        """Load configuration from a YAML file.

        ``${VAR}`` and ``${VAR:default}`` placeholders are substituted from the
        environment before parsing. Keys not present in the file keep their
        defaults; unknown keys are rejected.
        """
        file_path = Path(path)
        try:
            content = file_path.read_text()
        except OSError as e:
            raise ConfigurationError(f"cannot read config file {file_path}: {e}") from e

        data = yaml.safe_load(_substitute_env_vars(content)) or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"config file {file_path} must contain a mapping")

        section = data.get("router", data)
        known = set(cls.__dataclass_fields__)
        unknown = set(section) - known
        if unknown:
            raise ConfigurationError(f"unknown configuration keys: {', '.join(sorted(unknown))}")

        logger.info(f"Loading router config from {file_path}")
        return cls(**section)


def _substitute_env_vars(content: str) -> str:
    def replace_var(match: re.Match[str]) -> str:
        var_name = match.group(1)
        if ":" in var_name:
            var_name, default_value = var_name.split(":", 1)
            return os.getenv(var_name, default_value)
        return os.getenv(var_name, match.group(0))

    return _ENV_PATTERN.sub(replace_var, content)


def _parse_mode_weights(value: str | None) -> dict[str, dict[str, float]]:
    """Parse a JSON weight table override, merged over the defaults."""
    table = {mode: dict(w) for mode, w in DEFAULT_MODE_WEIGHTS.items()}
    if not value:
        return table
    try:
        override = json.loads(value)
    except (json.JSONDecodeError, TypeError) as e:
        raise ConfigurationError(f"ROUTER_MODE_WEIGHTS is not valid JSON: {e}") from e
    for mode, weights in override.items():
        table[mode] = {k: float(v) for k, v in weights.items()}
    return table


def _redact_url(url: str) -> str:
    return re.sub(r"://([^:/@]+):([^@]+)@", r"://\1:***@", url)
