"""
Database - one async engine and session factory per DatabaseConfig.

URLs are written in their sync form and mapped to an async driver:
  postgresql://  → postgresql+asyncpg://     (requires asyncpg)
  mysql://       → mysql+aiomysql://         (requires aiomysql)
  sqlite://      → sqlite+aiosqlite://       (requires aiosqlite)

The engine is created on first use, so building a store never opens a
connection. Each SqlNotificationStore owns its Database; nothing here reads
global settings.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import DatabaseConfig
from database.models import Base

logger = structlog.get_logger()

_ASYNC_DRIVERS = [
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
    ("mysql://", "mysql+aiomysql://"),
    ("mysql+pymysql://", "mysql+aiomysql://"),
    ("sqlite://", "sqlite+aiosqlite://"),
]


def to_async_url(db_url: str) -> str:
    for sync_prefix, async_prefix in _ASYNC_DRIVERS:
        if db_url.startswith(sync_prefix):
            return db_url.replace(sync_prefix, async_prefix, 1)
    return db_url


def engine_options(config: DatabaseConfig, async_url: str) -> dict:
    """Engine keyword arguments; SQLite gets no connection pool sizing."""
    options = {"echo": config.echo}
    if async_url.startswith("sqlite"):
        options["connect_args"] = {"check_same_thread": False}
        return options
    options.update(
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        pool_timeout=config.pool_timeout,
        pool_recycle=config.pool_recycle,
        pool_pre_ping=True,
    )
    return options


class Database:

    def __init__(self, config: Optional[DatabaseConfig] = None):
        self.config = config or DatabaseConfig()
        self.url = to_async_url(self.config.url)
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_engine(self.url, **engine_options(self.config, self.url))
            self._session_factory = async_sessionmaker(
                self._engine, class_=AsyncSession, expire_on_commit=False,
            )
            logger.info("database_engine_created",
                        dialect=self._engine.dialect.name,
                        url=str(self._engine.url).split("@")[-1])
        return self._engine

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Transactional scope: commit on success, roll back on error."""
        if self._session_factory is None:
            self.engine  # creates the session factory alongside the engine
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def create_tables(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database_initialized",
                    dialect=self._engine.dialect.name,
                    tables=list(Base.metadata.tables.keys()))

    async def dispose(self) -> None:
        if self._engine is not None:
            engine, self._engine, self._session_factory = self._engine, None, None
            await engine.dispose()
            logger.info("database_closed")
