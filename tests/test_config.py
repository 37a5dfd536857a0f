"""Tests for router configuration loading and validation."""

import json

import pytest

from provider_router.config import DEFAULT_MODE_WEIGHTS, RouterConfig
from provider_router.errors import ConfigurationError


def weight_row(quality, latency, stability, cost, confidence):
    return {
        "w_quality": quality,
        "w_latency": latency,
        "w_stability": stability,
        "w_cost": cost,
        "w_confidence": confidence,
    }


class TestValidation:
    def test_defaults(self):
        config = RouterConfig()
        assert config.soft_limit_cost_boost == 1.5
        assert config.diversity_usage_threshold == 95.0
        assert config.default_penalty_ttl_minutes == 10
        assert config.default_strategy == "cost_aware"
        assert config.mode_weights == DEFAULT_MODE_WEIGHTS
        assert config.mode_weights is not DEFAULT_MODE_WEIGHTS

    def test_weights_must_sum_to_one(self):
        weights = {"balanced": weight_row(0.5, 0.2, 0.2, 0.2, 0.2)}
        with pytest.raises(ConfigurationError, match="sum to 1.0"):
            RouterConfig(mode_weights=weights)

    def test_weights_must_be_non_negative(self):
        weights = {"balanced": weight_row(1.2, -0.2, 0.0, 0.0, 0.0)}
        with pytest.raises(ConfigurationError, match="non-negative"):
            RouterConfig(mode_weights=weights)

    def test_balanced_is_required(self):
        weights = {"performance": dict(DEFAULT_MODE_WEIGHTS["performance"])}
        with pytest.raises(ConfigurationError, match="balanced"):
            RouterConfig(mode_weights=weights)

    @pytest.mark.parametrize(
        "field,value",
        [
            ("default_strategy", "round_robin"),
            ("ewma_lambda", 0.0),
            ("default_penalty_multiplier", 1.5),
            ("diversity_min_epsilon", 2.0),
            ("decay_half_life_days", 0),
            ("soft_limit_cost_boost", -1),
        ],
    )
    def test_out_of_range_values(self, field, value):
        with pytest.raises(ConfigurationError):
            RouterConfig(**{field: value})

    def test_to_dict_redacts_password(self):
        config = RouterConfig(database_url="postgresql://router:s3cret@db:5432/router")
        assert config.to_dict()["database_url"] == "postgresql://router:***@db:5432/router"


class TestEnvironment:
    def test_from_environment(self, monkeypatch):
        monkeypatch.setenv("ROUTER_DEFAULT_STRATEGY", "thompson")
        monkeypatch.setenv("ROUTER_PENALTY_TTL_MINUTES", "30")
        monkeypatch.setenv("ROUTER_FALLBACK_ENABLED", "false")
        monkeypatch.setenv("DATABASE_URL", "sqlite:///router.db")

        config = RouterConfig.from_environment()

        assert config.default_strategy == "thompson"
        assert config.default_penalty_ttl_minutes == 30
        assert config.fallback_enabled is False
        assert config.database_url == "sqlite:///router.db"

    def test_mode_weights_override(self, monkeypatch):
        override = {"performance": weight_row(0.6, 0.1, 0.1, 0.1, 0.1)}
        monkeypatch.setenv("ROUTER_MODE_WEIGHTS", json.dumps(override))

        config = RouterConfig.from_environment()

        assert config.mode_weights["performance"]["w_quality"] == 0.6
        assert config.mode_weights["balanced"] == DEFAULT_MODE_WEIGHTS["balanced"]

    def test_invalid_mode_weights_json(self, monkeypatch):
        monkeypatch.setenv("ROUTER_MODE_WEIGHTS", "{not json")
        with pytest.raises(ConfigurationError):
            RouterConfig.from_environment()


class TestYaml:
    def test_router_section_with_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ROUTER_TEST_DB", "sqlite:///from-env.db")
        path = tmp_path / "router.yaml"
        path.write_text(
            "router:\n"
            "  default_strategy: hybrid\n"
            "  database_url: ${ROUTER_TEST_DB}\n"
            "  log_level: ${ROUTER_TEST_UNSET_LEVEL:DEBUG}\n"
            "  diversity_min_epsilon: 0.2\n"
        )

        config = RouterConfig.from_yaml(path)

        assert config.default_strategy == "hybrid"
        assert config.database_url == "sqlite:///from-env.db"
        assert config.log_level == "DEBUG"
        assert config.diversity_min_epsilon == 0.2
        assert config.ewma_lambda == 0.2

    def test_flat_file(self, tmp_path):
        path = tmp_path / "router.yaml"
        path.write_text("latency_cap_ms: 8000\n")
        assert RouterConfig.from_yaml(path).latency_cap_ms == 8000

    def test_empty_file_uses_defaults(self, tmp_path):
        path = tmp_path / "router.yaml"
        path.write_text("")
        assert RouterConfig.from_yaml(path) == RouterConfig()

    def test_unknown_keys_are_rejected(self, tmp_path):
        path = tmp_path / "router.yaml"
        path.write_text("router:\n  turbo_mode: true\n")
        with pytest.raises(ConfigurationError, match="turbo_mode"):
            RouterConfig.from_yaml(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="cannot read"):
            RouterConfig.from_yaml(tmp_path / "missing.yaml")

    def test_non_mapping(self, tmp_path):
        path = tmp_path / "router.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError, match="mapping"):
            RouterConfig.from_yaml(path)
