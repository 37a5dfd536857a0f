"""Shared fixtures for the provider router test suite."""

from datetime import datetime, timedelta, timezone

import pytest

from provider_router.config import RouterConfig
from provider_router.domain.models import (
    BudgetConfig,
    MetricsRow,
    ProviderCandidate,
    RoutingMode,
    Scope,
)
from provider_router.random_source import SeededRandom, SequenceRandom
from provider_router.stores import build_memory_stores

FEATURE = "summarize"
PURPOSE = "chat"
TENANT = "tenant-a"


@pytest.fixture
def now():
    return datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def config():
    return RouterConfig()


@pytest.fixture
def stores():
    return build_memory_stores()


@pytest.fixture
def rng():
    return SeededRandom(42)


@pytest.fixture
def exploit_rng():
    """Every draw is 0.99: never explores, always picks index 0 on a top-k pick."""
    return SequenceRandom([0.99])


@pytest.fixture
def candidates():
    return [
        ProviderCandidate("openai", "gpt-4o"),
        ProviderCandidate("anthropic", "claude-3-5-sonnet"),
        ProviderCandidate("google", "gemini-1.5-pro"),
    ]


def make_row(
    provider,
    model,
    scope=Scope.GLOBAL,
    tenant_id=None,
    *,
    latency=500.0,
    quality=80.0,
    cost=0.005,
    success=0.95,
    samples=50,
    last_call_at=None,
    feature=FEATURE,
    purpose=PURPOSE,
    **extra,
):
    """Build a metrics row with observations; quality is on the 0..100 scale."""
    return MetricsRow(
        scope=scope,
        tenant_id=tenant_id if scope is Scope.TENANT else None,
        feature=feature,
        purpose=purpose,
        provider=provider,
        model=model,
        ewma_latency_ms=latency,
        ewma_quality=quality,
        ewma_cost_per_1k=cost,
        ewma_success_rate=success,
        sample_count=samples,
        cost_ewma=cost,
        last_call_at=last_call_at,
        **extra,
    )


def make_budget(tenant_id=TENANT, monthly=100.0, usage=10.0, mode=RoutingMode.BALANCED, soft=0.8, strategy=None):
    return BudgetConfig(
        tenant_id=tenant_id,
        monthly_budget=monthly,
        soft_limit_percentage=soft,
        routing_mode=mode,
        current_month_usage=usage,
        routing_strategy=strategy,
    )


@pytest.fixture
def row_factory(now):
    def factory(provider, model, scope=Scope.GLOBAL, tenant_id=None, **kwargs):
        kwargs.setdefault("last_call_at", now - timedelta(minutes=5))
        return make_row(provider, model, scope, tenant_id, **kwargs)

    return factory
