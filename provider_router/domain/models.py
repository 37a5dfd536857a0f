# Copyright 2025 ATP Project Contributors
# Licensed under the Apache License, Version 2.0

"""Routing domain models."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes (e.g. read back from SQLite) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Scope(str, Enum):
    GLOBAL = "global"
    TENANT = "tenant"


class RoutingMode(str, Enum):
    PERFORMANCE = "performance"
    BALANCED = "balanced"
    COST_SAVER = "cost_saver"

    @classmethod
    def parse(cls, value: str | RoutingMode | None) -> RoutingMode:
        """Unknown or missing modes route as balanced."""
        if isinstance(value, RoutingMode):
            return value
        try:
            return cls(value)
        except ValueError:
            return cls.BALANCED


class BudgetState(str, Enum):
    UNDER_LIMIT = "under_limit"
    SOFT_LIMIT = "soft_limit"
    HARD_LIMIT = "hard_limit"
    NO_CONFIG = "no_config"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RISK_ORDER[self]

    @classmethod
    def highest(cls, *levels: RiskLevel) -> RiskLevel:
        result = cls.LOW
        for level in levels:
            if level.rank > result.rank:
                result = level
        return result


_RISK_ORDER = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2}


class SelectionMode(str, Enum):
    EXPLORE = "explore"
    EXPLOIT = "exploit"


class RoutingStrategy(str, Enum):
    HYBRID = "hybrid"
    COST_AWARE = "cost_aware"
    THOMPSON = "thompson"

    @classmethod
    def parse(cls, value: str | RoutingStrategy | None, default: RoutingStrategy | None = None) -> RoutingStrategy:
        if isinstance(value, RoutingStrategy):
            return value
        try:
            return cls(value)
        except ValueError:
            return default or cls.COST_AWARE


class OutcomeType(str, Enum):
    SUCCESS = "success"
    SCHEMA_INVALID = "schema_invalid"
    TIMEOUT = "timeout"
    PROVIDER_ERROR = "provider_error"


@dataclass(frozen=True)
class ProviderCandidate:
    """A provider/model pair supplied by the caller for one request."""

    provider: str
    model: str

    @property
    def key(self) -> str:
        return f"{self.provider}::{self.model}"


@dataclass(frozen=True)
class MetricsKey:
    scope: Scope
    tenant_id: str | None
    feature: str
    purpose: str
    provider: str
    model: str

    @classmethod
    def for_scope(
        cls, scope: Scope, tenant_id: str | None, feature: str, purpose: str, provider: str, model: str
    ) -> MetricsKey:
        # Global rows are never tenant-specific
        return cls(scope, tenant_id if scope is Scope.TENANT else None, feature, purpose, provider, model)


@dataclass
class MetricsRow:
    """Per-(scope, tenant, feature, purpose, provider, model) statistics.

    Carries both the EWMA fields used by the hybrid and cost-aware rankers and
    the posterior fields used by the Thompson ranker. A row with
    ``sample_count == 0`` has no observations and must be treated as absent.
    """

    scope: Scope
    tenant_id: str | None
    feature: str
    purpose: str
    provider: str
    model: str
    ewma_latency_ms: float = 0.0
    ewma_quality: float = 0.0
    ewma_cost_per_1k: float = 0.0
    ewma_success_rate: float = 0.0
    sample_count: int = 0
    cost_ewma: float | None = None
    last_call_at: datetime | None = None
    ts_alpha: float = 1.0
    ts_beta: float = 1.0
    ts_latency_mean: float = 500.0
    ts_latency_variance: float = 1.0
    ts_cost_mean: float = 0.005
    ts_cost_variance: float = 0.0001

    @property
    def key(self) -> MetricsKey:
        return MetricsKey(self.scope, self.tenant_id, self.feature, self.purpose, self.provider, self.model)

    @property
    def candidate_key(self) -> str:
        return f"{self.provider}::{self.model}"

    @property
    def has_observations(self) -> bool:
        return self.sample_count > 0

    @property
    def effective_cost(self) -> float:
        """Cost EWMA when set, otherwise the per-1k cost EWMA."""
        return self.cost_ewma if self.cost_ewma else self.ewma_cost_per_1k

    @classmethod
    def empty(cls, key: MetricsKey) -> MetricsRow:
        return cls(
            scope=key.scope,
            tenant_id=key.tenant_id,
            feature=key.feature,
            purpose=key.purpose,
            provider=key.provider,
            model=key.model,
        )

    def copy(self, **changes: Any) -> MetricsRow:
        return replace(self, **changes)


@dataclass
class BudgetConfig:
    tenant_id: str
    monthly_budget: float
    soft_limit_percentage: float = 0.8
    routing_mode: RoutingMode = RoutingMode.BALANCED
    current_month_usage: float = 0.0
    routing_strategy: str | None = None

    @property
    def usage_ratio(self) -> float:
        if self.monthly_budget <= 0:
            return 0.0
        return self.current_month_usage / self.monthly_budget


@dataclass
class PenaltyRow:
    provider: str
    feature: str
    penalty_multiplier: float
    expires_at: datetime

    def is_active(self, now: datetime) -> bool:
        return as_utc(self.expires_at) > now


@dataclass
class UsageRow:
    provider: str
    usage_percentage: float
    calls: int = 0


@dataclass
class Outcome:
    """Observed result of one provider call."""

    latency_ms: float
    cost_per_1k: float
    quality_avg: float
    success: bool
    outcome_type: OutcomeType | None = None

    @property
    def resolved_type(self) -> OutcomeType:
        if self.outcome_type is not None:
            return self.outcome_type
        return OutcomeType.SUCCESS if self.success else OutcomeType.PROVIDER_ERROR


@dataclass
class ProviderEvent:
    """Raw record of one completed call, aggregated daily by the forecast job."""

    feature: str
    purpose: str
    provider: str
    model: str
    latency_ms: float
    estimated_cost: float
    quality_avg: float
    success: bool
    tenant_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data


@dataclass
class DailyCostRow:
    date: date
    tenant_id: str
    feature: str
    provider: str
    total_cost: float
    total_calls: int
    avg_cost_per_call: float


@dataclass
class DailyPerformanceRow:
    date: date
    provider: str
    feature: str
    avg_latency: float
    error_rate: float
    success_rate: float
    total_calls: int


@dataclass
class ForecastState:
    tenant_id: str
    feature: str
    projected_monthly_cost: float
    burn_rate: float
    sla_risk_level: RiskLevel
    performance_drift_score: float
    last_updated: datetime = field(default_factory=utcnow)
    smoothed_daily_cost: float = 0.0
    cost_trend_slope: float = 0.0


@dataclass(frozen=True)
class CostAwareWeights:
    """Five-objective weight vector; every derived vector sums to 1.0."""

    w_quality: float
    w_latency: float
    w_stability: float
    w_cost: float
    w_confidence: float

    def total(self) -> float:
        return self.w_quality + self.w_latency + self.w_stability + self.w_cost + self.w_confidence

    def normalized(self) -> CostAwareWeights:
        total = self.total()
        if total <= 0:
            return BALANCED_WEIGHTS
        return CostAwareWeights(
            w_quality=self.w_quality / total,
            w_latency=self.w_latency / total,
            w_stability=self.w_stability / total,
            w_cost=self.w_cost / total,
            w_confidence=self.w_confidence / total,
        )

    def scale_cost(self, multiplier: float) -> CostAwareWeights:
        return replace(self, w_cost=self.w_cost * multiplier).normalized()

    def score(self, quality: float, latency: float, stability: float, cost: float, confidence: float) -> float:
        return (
            self.w_quality * quality
            + self.w_latency * latency
            + self.w_stability * stability
            + self.w_cost * cost
            + self.w_confidence * confidence
        )

    def to_dict(self) -> dict[str, float]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, float]) -> CostAwareWeights:
        return cls(
            w_quality=float(data["w_quality"]),
            w_latency=float(data["w_latency"]),
            w_stability=float(data["w_stability"]),
            w_cost=float(data["w_cost"]),
            w_confidence=float(data["w_confidence"]),
        )


BALANCED_WEIGHTS = CostAwareWeights(0.20, 0.20, 0.20, 0.20, 0.20)
