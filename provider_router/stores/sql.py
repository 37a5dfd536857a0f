# Copyright 2025 ATP Project Contributors
# Licensed under the Apache License, Version 2.0

"""SQL-backed router stores.

Tables use natural composite primary keys so upserts are a ``merge`` away.
Metrics rows store global scope under an empty ``tenant_key`` because the
key columns cannot be NULL.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator
from contextlib import AbstractAsyncContextManager, contextmanager, nullcontext
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import Boolean, Date, DateTime, Float, Integer, String, delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Mapped, mapped_column

from ..domain.models import (
    BudgetConfig,
    DailyCostRow,
    DailyPerformanceRow,
    ForecastState,
    MetricsKey,
    MetricsRow,
    PenaltyRow,
    ProviderEvent,
    RiskLevel,
    RoutingMode,
    Scope,
    UsageRow,
    as_utc,
)
from ..errors import StoreError
from .base import USAGE_WINDOW, RouterStores, RowMutation
from .database import Base, DatabaseConfig, DatabaseManager

logger = logging.getLogger(__name__)

GLOBAL_TENANT_KEY = ""
UPDATE_RETRIES = 3


class ProviderMetricsAgg(Base):
    __tablename__ = "ai_provider_metrics_agg"

    scope: Mapped[str] = mapped_column(String(16), primary_key=True)
    tenant_key: Mapped[str] = mapped_column(String(100), primary_key=True)
    feature: Mapped[str] = mapped_column(String(100), primary_key=True)
    purpose: Mapped[str] = mapped_column(String(100), primary_key=True)
    provider: Mapped[str] = mapped_column(String(100), primary_key=True)
    model: Mapped[str] = mapped_column(String(200), primary_key=True)

    ewma_latency_ms: Mapped[float] = mapped_column(Float, default=0.0)
    ewma_quality: Mapped[float] = mapped_column(Float, default=0.0)
    ewma_cost_per_1k: Mapped[float] = mapped_column(Float, default=0.0)
    ewma_success_rate: Mapped[float] = mapped_column(Float, default=0.0)
    sample_count: Mapped[int] = mapped_column(Integer, default=0)
    cost_ewma: Mapped[float | None] = mapped_column(Float, nullable=True)
    last_call_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    ts_alpha: Mapped[float] = mapped_column(Float, default=1.0)
    ts_beta: Mapped[float] = mapped_column(Float, default=1.0)
    ts_latency_mean: Mapped[float] = mapped_column(Float, default=500.0)
    ts_latency_variance: Mapped[float] = mapped_column(Float, default=1.0)
    ts_cost_mean: Mapped[float] = mapped_column(Float, default=0.005)
    ts_cost_variance: Mapped[float] = mapped_column(Float, default=0.0001)


class TenantBudgetConfig(Base):
    __tablename__ = "tenant_ai_budget_config"

    tenant_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    monthly_budget: Mapped[float] = mapped_column(Float)
    soft_limit_percentage: Mapped[float] = mapped_column(Float, default=0.8)
    routing_mode: Mapped[str] = mapped_column(String(32), default=RoutingMode.BALANCED.value)
    current_month_usage: Mapped[float] = mapped_column(Float, default=0.0)
    routing_strategy: Mapped[str | None] = mapped_column(String(32), nullable=True)


class ProviderPenalty(Base):
    __tablename__ = "ai_provider_penalties"

    provider: Mapped[str] = mapped_column(String(100), primary_key=True)
    feature: Mapped[str] = mapped_column(String(100), primary_key=True)
    penalty_multiplier: Mapped[float] = mapped_column(Float)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


class ProviderUsageCall(Base):
    __tablename__ = "ai_provider_usage_calls"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(100), index=True)
    called_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


class ProviderEventRecord(Base):
    __tablename__ = "ai_provider_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    feature: Mapped[str] = mapped_column(String(100))
    purpose: Mapped[str] = mapped_column(String(100))
    provider: Mapped[str] = mapped_column(String(100))
    model: Mapped[str] = mapped_column(String(200))
    latency_ms: Mapped[float] = mapped_column(Float)
    estimated_cost: Mapped[float] = mapped_column(Float)
    quality_avg: Mapped[float] = mapped_column(Float)
    success: Mapped[bool] = mapped_column(Boolean)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


class CostDailyAgg(Base):
    __tablename__ = "ai_cost_daily_agg"

    day: Mapped[date] = mapped_column("date", Date, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    feature: Mapped[str] = mapped_column(String(100), primary_key=True)
    provider: Mapped[str] = mapped_column(String(100), primary_key=True)
    total_cost: Mapped[float] = mapped_column(Float)
    total_calls: Mapped[int] = mapped_column(Integer)
    avg_cost_per_call: Mapped[float] = mapped_column(Float)


class PerformanceDailyAgg(Base):
    __tablename__ = "ai_performance_daily_agg"

    day: Mapped[date] = mapped_column("date", Date, primary_key=True)
    provider: Mapped[str] = mapped_column(String(100), primary_key=True)
    feature: Mapped[str] = mapped_column(String(100), primary_key=True)
    avg_latency: Mapped[float] = mapped_column(Float)
    error_rate: Mapped[float] = mapped_column(Float)
    success_rate: Mapped[float] = mapped_column(Float)
    total_calls: Mapped[int] = mapped_column(Integer)


class ForecastStateRecord(Base):
    __tablename__ = "ai_forecast_state"

    tenant_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    feature: Mapped[str] = mapped_column(String(100), primary_key=True)
    projected_monthly_cost: Mapped[float] = mapped_column(Float)
    burn_rate: Mapped[float] = mapped_column(Float)
    sla_risk_level: Mapped[str] = mapped_column(String(16))
    performance_drift_score: Mapped[float] = mapped_column(Float)
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    smoothed_daily_cost: Mapped[float] = mapped_column(Float, default=0.0)
    cost_trend_slope: Mapped[float] = mapped_column(Float, default=0.0)


def _utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return as_utc(value).astimezone(timezone.utc)


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as e:
        logger.error(f"SQL store operation {operation} failed: {e}")
        raise StoreError(f"{operation} failed: {e}") from e


def _metrics_pk(key: MetricsKey) -> tuple[str, str, str, str, str, str]:
    tenant_key = key.tenant_id if key.scope is Scope.TENANT and key.tenant_id else GLOBAL_TENANT_KEY
    return (key.scope.value, tenant_key, key.feature, key.purpose, key.provider, key.model)


def _metrics_to_row(record: ProviderMetricsAgg) -> MetricsRow:
    scope = Scope(record.scope)
    return MetricsRow(
        scope=scope,
        tenant_id=record.tenant_key if scope is Scope.TENANT else None,
        feature=record.feature,
        purpose=record.purpose,
        provider=record.provider,
        model=record.model,
        ewma_latency_ms=record.ewma_latency_ms,
        ewma_quality=record.ewma_quality,
        ewma_cost_per_1k=record.ewma_cost_per_1k,
        ewma_success_rate=record.ewma_success_rate,
        sample_count=record.sample_count,
        cost_ewma=record.cost_ewma,
        last_call_at=_utc(record.last_call_at),
        ts_alpha=record.ts_alpha,
        ts_beta=record.ts_beta,
        ts_latency_mean=record.ts_latency_mean,
        ts_latency_variance=record.ts_latency_variance,
        ts_cost_mean=record.ts_cost_mean,
        ts_cost_variance=record.ts_cost_variance,
    )


def _copy_row_into(record: ProviderMetricsAgg, row: MetricsRow) -> None:
    record.ewma_latency_ms = row.ewma_latency_ms
    record.ewma_quality = row.ewma_quality
    record.ewma_cost_per_1k = row.ewma_cost_per_1k
    record.ewma_success_rate = row.ewma_success_rate
    record.sample_count = row.sample_count
    record.cost_ewma = row.cost_ewma
    record.last_call_at = _utc(row.last_call_at)
    record.ts_alpha = row.ts_alpha
    record.ts_beta = row.ts_beta
    record.ts_latency_mean = row.ts_latency_mean
    record.ts_latency_variance = row.ts_latency_variance
    record.ts_cost_mean = row.ts_cost_mean
    record.ts_cost_variance = row.ts_cost_variance


def _new_metrics_record(key: MetricsKey) -> ProviderMetricsAgg:
    scope, tenant_key, feature, purpose, provider, model = _metrics_pk(key)
    return ProviderMetricsAgg(
        scope=scope, tenant_key=tenant_key, feature=feature, purpose=purpose, provider=provider, model=model
    )


class SqlMetricsStore:
    def __init__(self, db: DatabaseManager):
        self.db = db
        # SQLite has no row locks and its SELECT runs outside the write
        # transaction, so read-modify-writes are serialized in process
        self._sqlite_writes = asyncio.Lock() if db.config.is_sqlite else None

    def _write_guard(self) -> AbstractAsyncContextManager[Any]:
        return self._sqlite_writes if self._sqlite_writes is not None else nullcontext()

    async def get(self, key: MetricsKey) -> MetricsRow | None:
        with _store_errors("metrics.get"):
            async with self.db.get_session() as session:
                record = await session.get(ProviderMetricsAgg, _metrics_pk(key))
                return _metrics_to_row(record) if record else None

    async def list_rows(self, scope: Scope, tenant_id: str | None, feature: str, purpose: str) -> list[MetricsRow]:
        tenant_key = tenant_id if scope is Scope.TENANT and tenant_id else GLOBAL_TENANT_KEY
        stmt = select(ProviderMetricsAgg).where(
            ProviderMetricsAgg.scope == scope.value,
            ProviderMetricsAgg.tenant_key == tenant_key,
            ProviderMetricsAgg.feature == feature,
            ProviderMetricsAgg.purpose == purpose,
        )
        with _store_errors("metrics.list_rows"):
            async with self.db.get_session() as session:
                result = await session.execute(stmt)
                return [_metrics_to_row(r) for r in result.scalars()]

    async def upsert(self, row: MetricsRow) -> None:
        with _store_errors("metrics.upsert"):
            async with self._write_guard(), self.db.get_session() as session, session.begin():
                record = await session.get(ProviderMetricsAgg, _metrics_pk(row.key))
                if record is None:
                    record = _new_metrics_record(row.key)
                    session.add(record)
                _copy_row_into(record, row)

    async def update(self, key: MetricsKey, mutate: RowMutation) -> MetricsRow:
        """Read-modify-write inside one transaction holding a row lock.

        A concurrent first insert of the same key surfaces as an
        IntegrityError; the loser retries against the now-existing row.
        On SQLite, updates from this process run one at a time instead.
        """
        async with self._write_guard():
            return await self._update(key, mutate)

    async def _update(self, key: MetricsKey, mutate: RowMutation) -> MetricsRow:
        pk = _metrics_pk(key)
        for attempt in range(UPDATE_RETRIES):
            try:
                async with self.db.get_session() as session, session.begin():
                    stmt = (
                        select(ProviderMetricsAgg)
                        .where(
                            ProviderMetricsAgg.scope == pk[0],
                            ProviderMetricsAgg.tenant_key == pk[1],
                            ProviderMetricsAgg.feature == pk[2],
                            ProviderMetricsAgg.purpose == pk[3],
                            ProviderMetricsAgg.provider == pk[4],
                            ProviderMetricsAgg.model == pk[5],
                        )
                        .with_for_update()
                    )
                    record = (await session.execute(stmt)).scalar_one_or_none()
                    current = _metrics_to_row(record) if record else MetricsRow.empty(key)
                    updated = mutate(current)
                    if record is None:
                        record = _new_metrics_record(key)
                        session.add(record)
                    _copy_row_into(record, updated)
                return updated
            except IntegrityError:
                logger.debug(f"Concurrent insert for {pk}, retrying (attempt {attempt + 1})")
            except SQLAlchemyError as e:
                raise StoreError(f"metrics.update failed: {e}") from e
        raise StoreError(f"metrics.update gave up after {UPDATE_RETRIES} attempts for {pk}")


class SqlBudgetStore:
    def __init__(self, db: DatabaseManager):
        self.db = db

    async def get(self, tenant_id: str) -> BudgetConfig | None:
        with _store_errors("budgets.get"):
            async with self.db.get_session() as session:
                record = await session.get(TenantBudgetConfig, tenant_id)
        if record is None:
            return None
        return BudgetConfig(
            tenant_id=record.tenant_id,
            monthly_budget=record.monthly_budget,
            soft_limit_percentage=record.soft_limit_percentage,
            routing_mode=RoutingMode.parse(record.routing_mode),
            current_month_usage=record.current_month_usage,
            routing_strategy=record.routing_strategy,
        )

    async def upsert(self, config: BudgetConfig) -> None:
        record = TenantBudgetConfig(
            tenant_id=config.tenant_id,
            monthly_budget=config.monthly_budget,
            soft_limit_percentage=config.soft_limit_percentage,
            routing_mode=RoutingMode.parse(config.routing_mode).value,
            current_month_usage=config.current_month_usage,
            routing_strategy=config.routing_strategy,
        )
        with _store_errors("budgets.upsert"):
            async with self.db.get_session() as session, session.begin():
                await session.merge(record)


class SqlPenaltyStore:
    def __init__(self, db: DatabaseManager):
        self.db = db

    async def list_active(self, feature: str, now: datetime) -> list[PenaltyRow]:
        stmt = select(ProviderPenalty).where(ProviderPenalty.feature == feature, ProviderPenalty.expires_at > _utc(now))
        with _store_errors("penalties.list_active"):
            async with self.db.get_session() as session:
                result = await session.execute(stmt)
                return [
                    PenaltyRow(r.provider, r.feature, r.penalty_multiplier, _utc(r.expires_at)) for r in result.scalars()
                ]

    async def upsert(self, penalty: PenaltyRow) -> None:
        record = ProviderPenalty(
            provider=penalty.provider,
            feature=penalty.feature,
            penalty_multiplier=penalty.penalty_multiplier,
            expires_at=_utc(penalty.expires_at),
        )
        with _store_errors("penalties.upsert"):
            async with self.db.get_session() as session, session.begin():
                await session.merge(record)


class SqlUsageStore:
    def __init__(self, db: DatabaseManager):
        self.db = db

    async def record_call(self, provider: str, at: datetime) -> None:
        with _store_errors("usage.record_call"):
            async with self.db.get_session() as session, session.begin():
                session.add(ProviderUsageCall(provider=provider, called_at=_utc(at)))

    async def list_24h(self, now: datetime) -> list[UsageRow]:
        end = _utc(now)
        stmt = (
            select(ProviderUsageCall.provider, func.count(ProviderUsageCall.id))
            .where(ProviderUsageCall.called_at >= end - USAGE_WINDOW, ProviderUsageCall.called_at <= end)
            .group_by(ProviderUsageCall.provider)
        )
        with _store_errors("usage.list_24h"):
            async with self.db.get_session() as session:
                counts = {provider: count for provider, count in (await session.execute(stmt)).all()}

        total = sum(counts.values())
        if total == 0:
            return []
        return [UsageRow(provider, count / total * 100.0, count) for provider, count in counts.items()]

    async def prune(self, before: datetime) -> int:
        stmt = delete(ProviderUsageCall).where(ProviderUsageCall.called_at < _utc(before))
        with _store_errors("usage.prune"):
            async with self.db.get_session() as session, session.begin():
                result = await session.execute(stmt)
        return result.rowcount or 0


class SqlEventLog:
    def __init__(self, db: DatabaseManager):
        self.db = db

    async def append(self, event: ProviderEvent) -> None:
        record = ProviderEventRecord(
            tenant_id=event.tenant_id,
            feature=event.feature,
            purpose=event.purpose,
            provider=event.provider,
            model=event.model,
            latency_ms=event.latency_ms,
            estimated_cost=event.estimated_cost,
            quality_avg=event.quality_avg,
            success=event.success,
            created_at=_utc(event.created_at),
        )
        with _store_errors("events.append"):
            async with self.db.get_session() as session, session.begin():
                session.add(record)

    async def list_between(self, start: datetime, end: datetime) -> list[ProviderEvent]:
        stmt = (
            select(ProviderEventRecord)
            .where(ProviderEventRecord.created_at >= _utc(start), ProviderEventRecord.created_at < _utc(end))
            .order_by(ProviderEventRecord.created_at)
        )
        with _store_errors("events.list_between"):
            async with self.db.get_session() as session:
                result = await session.execute(stmt)
                return [
                    ProviderEvent(
                        feature=r.feature,
                        purpose=r.purpose,
                        provider=r.provider,
                        model=r.model,
                        latency_ms=r.latency_ms,
                        estimated_cost=r.estimated_cost,
                        quality_avg=r.quality_avg,
                        success=r.success,
                        tenant_id=r.tenant_id,
                        created_at=_utc(r.created_at),
                    )
                    for r in result.scalars()
                ]


class SqlForecastStore:
    def __init__(self, db: DatabaseManager):
        self.db = db

    async def get(self, tenant_id: str, feature: str) -> ForecastState | None:
        with _store_errors("forecasts.get"):
            async with self.db.get_session() as session:
                record = await session.get(ForecastStateRecord, (tenant_id, feature))
        if record is None:
            return None
        return ForecastState(
            tenant_id=record.tenant_id,
            feature=record.feature,
            projected_monthly_cost=record.projected_monthly_cost,
            burn_rate=record.burn_rate,
            sla_risk_level=RiskLevel(record.sla_risk_level),
            performance_drift_score=record.performance_drift_score,
            last_updated=_utc(record.last_updated),
            smoothed_daily_cost=record.smoothed_daily_cost,
            cost_trend_slope=record.cost_trend_slope,
        )

    async def upsert(self, state: ForecastState) -> None:
        record = ForecastStateRecord(
            tenant_id=state.tenant_id,
            feature=state.feature,
            projected_monthly_cost=state.projected_monthly_cost,
            burn_rate=state.burn_rate,
            sla_risk_level=RiskLevel(state.sla_risk_level).value,
            performance_drift_score=state.performance_drift_score,
            last_updated=_utc(state.last_updated),
            smoothed_daily_cost=state.smoothed_daily_cost,
            cost_trend_slope=state.cost_trend_slope,
        )
        with _store_errors("forecasts.upsert"):
            async with self.db.get_session() as session, session.begin():
                await session.merge(record)


class SqlAggregateStore:
    def __init__(self, db: DatabaseManager):
        self.db = db

    async def upsert_daily_cost(self, row: DailyCostRow) -> None:
        record = CostDailyAgg(
            day=row.date,
            tenant_id=row.tenant_id,
            feature=row.feature,
            provider=row.provider,
            total_cost=row.total_cost,
            total_calls=row.total_calls,
            avg_cost_per_call=row.avg_cost_per_call,
        )
        with _store_errors("aggregates.upsert_daily_cost"):
            async with self.db.get_session() as session, session.begin():
                await session.merge(record)

    async def upsert_daily_performance(self, row: DailyPerformanceRow) -> None:
        record = PerformanceDailyAgg(
            day=row.date,
            provider=row.provider,
            feature=row.feature,
            avg_latency=row.avg_latency,
            error_rate=row.error_rate,
            success_rate=row.success_rate,
            total_calls=row.total_calls,
        )
        with _store_errors("aggregates.upsert_daily_performance"):
            async with self.db.get_session() as session, session.begin():
                await session.merge(record)

    async def list_daily_costs(self, start: date, end: date) -> list[DailyCostRow]:
        stmt = select(CostDailyAgg).where(CostDailyAgg.day >= start, CostDailyAgg.day <= end).order_by(CostDailyAgg.day)
        with _store_errors("aggregates.list_daily_costs"):
            async with self.db.get_session() as session:
                result = await session.execute(stmt)
                return [
                    DailyCostRow(r.day, r.tenant_id, r.feature, r.provider, r.total_cost, r.total_calls, r.avg_cost_per_call)
                    for r in result.scalars()
                ]

    async def list_daily_performance(self, start: date, end: date) -> list[DailyPerformanceRow]:
        stmt = (
            select(PerformanceDailyAgg)
            .where(PerformanceDailyAgg.day >= start, PerformanceDailyAgg.day <= end)
            .order_by(PerformanceDailyAgg.day)
        )
        with _store_errors("aggregates.list_daily_performance"):
            async with self.db.get_session() as session:
                result = await session.execute(stmt)
                return [
                    DailyPerformanceRow(
                        r.day, r.provider, r.feature, r.avg_latency, r.error_rate, r.success_rate, r.total_calls
                    )
                    for r in result.scalars()
                ]


def build_sql_stores(database_url: str = "", db: DatabaseManager | None = None) -> RouterStores:
    db = db or DatabaseManager(DatabaseConfig(database_url))
    return RouterStores(
        metrics=SqlMetricsStore(db),
        budgets=SqlBudgetStore(db),
        penalties=SqlPenaltyStore(db),
        usage=SqlUsageStore(db),
        events=SqlEventLog(db),
        forecasts=SqlForecastStore(db),
        aggregates=SqlAggregateStore(db),
        close=db.close,
    )
