# Copyright 2025 ATP Project Contributors
# Licensed under the Apache License, Version 2.0

"""Async SQLAlchemy engine and session management for the SQL router stores."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import AsyncAdaptedQueuePool, NullPool

from ..errors import ConfigurationError

logger = logging.getLogger(__name__)

_ASYNC_DRIVERS = {
    "postgresql://": "postgresql+asyncpg://",
    "postgres://": "postgresql+asyncpg://",
    "sqlite://": "sqlite+aiosqlite://",
}


class Base(DeclarativeBase):
    """Declarative base for the router tables."""


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def normalize_url(url: str) -> str:
    """Rewrite plain postgres/sqlite URLs to their async driver."""
    for prefix, replacement in _ASYNC_DRIVERS.items():
        if url.startswith(prefix):
            return replacement + url[len(prefix) :]
    return url


@dataclass
class DatabaseConfig:
    """Connection settings; pool sizing comes from ``ROUTER_DB_*`` variables."""

    database_url: str
    pool_size: int = field(default_factory=lambda: _env_int("ROUTER_DB_POOL_SIZE", 10))
    max_overflow: int = field(default_factory=lambda: _env_int("ROUTER_DB_MAX_OVERFLOW", 20))
    pool_timeout: int = field(default_factory=lambda: _env_int("ROUTER_DB_POOL_TIMEOUT", 30))
    pool_recycle: int = field(default_factory=lambda: _env_int("ROUTER_DB_POOL_RECYCLE", 3600))
    command_timeout: int = field(default_factory=lambda: _env_int("ROUTER_DB_COMMAND_TIMEOUT", 60))
    echo: bool = field(default_factory=lambda: os.getenv("ROUTER_DB_ECHO", "false").lower() == "true")

    def __post_init__(self) -> None:
        if not self.database_url:
            raise ConfigurationError("a database_url is required for the SQL stores")
        self.database_url = normalize_url(self.database_url)

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    def engine_options(self) -> dict[str, Any]:
        if self.is_sqlite:
            # Each session opens its own file connection
            return {"poolclass": NullPool}

        options: dict[str, Any] = {
            "poolclass": AsyncAdaptedQueuePool,
            "pool_size": self.pool_size,
            "max_overflow": self.max_overflow,
            "pool_timeout": self.pool_timeout,
            "pool_recycle": self.pool_recycle,
            "pool_pre_ping": True,
        }
        if self.database_url.startswith("postgresql+asyncpg"):
            options["connect_args"] = {
                "command_timeout": self.command_timeout,
                "server_settings": {"application_name": "provider_router"},
            }
        return options


class DatabaseManager:
    """Owns the engine; creates it and the router tables on first use."""

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self.engine: AsyncEngine | None = None
        self.session_factory: async_sessionmaker[AsyncSession] | None = None
        self._init_lock = asyncio.Lock()

    @property
    def initialized(self) -> bool:
        return self.session_factory is not None

    async def initialize(self, create_tables: bool = True) -> None:
        async with self._init_lock:
            if self.initialized:
                return

            engine = create_async_engine(
                self.config.database_url, echo=self.config.echo, **self.config.engine_options()
            )
            self._watch_connections(engine)

            if create_tables:
                # Importing the table module registers it on Base.metadata
                from . import sql  # noqa: F401

                async with engine.begin() as conn:
                    await conn.run_sync(Base.metadata.create_all)

            self.engine = engine
            self.session_factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
            logger.info(f"Router database ready ({'sqlite' if self.config.is_sqlite else 'pooled'})")

    @staticmethod
    def _watch_connections(engine: AsyncEngine) -> None:
        @event.listens_for(engine.sync_engine, "invalidate")
        def on_invalidate(dbapi_connection, connection_record, exception):
            logger.warning(f"Router database connection invalidated: {exception}")

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        if not self.initialized:
            await self.initialize()
        if self.session_factory is None:
            raise RuntimeError("Router database not initialized")

        async with self.session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    async def health_check(self) -> bool:
        """True when a trivial query round-trips."""
        try:
            if not self.initialized:
                await self.initialize()
            if self.engine is None:
                return False
            async with self.engine.connect() as conn:
                return (await conn.execute(text("SELECT 1"))).scalar() == 1
        except Exception as e:
            logger.error(f"Router database health check failed: {e}")
            return False

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()
            logger.info("Router database connections closed")
        self.engine = None
        self.session_factory = None
