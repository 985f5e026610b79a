"""Async engine and session factory for the marketplace database."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from callcore.config import MarketSettings, get_settings
from callcore.logging import logger


class Database:
    """Lazily built engine plus the session factory services and jobs share.

    Sessions never autoflush: services flush explicitly before reading back
    rows they changed under a lock.
    """

    def __init__(self, settings: MarketSettings | None = None) -> None:
        self.settings = settings or get_settings()
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    def _ensure_engine(self) -> AsyncEngine:
        if self._engine is None:
            db_cfg = self.settings.database
            options = {
                "echo": db_cfg.echo,
                "pool_pre_ping": db_cfg.pool_pre_ping,
                "pool_recycle": db_cfg.pool_recycle,
            }
            if db_cfg.isolation_level:
                options["isolation_level"] = db_cfg.isolation_level
            if not db_cfg.dsn.startswith("sqlite"):
                options["pool_size"] = db_cfg.pool_size
                options["max_overflow"] = db_cfg.max_overflow
            self._engine = create_async_engine(db_cfg.dsn, **options)
            self._session_factory = async_sessionmaker(
                bind=self._engine,
                expire_on_commit=False,
                autoflush=False,
            )
            logger.info(
                "db_engine_initialized",
                dsn=make_url(db_cfg.dsn).render_as_string(hide_password=True),
                isolation_level=db_cfg.isolation_level,
            )
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        self._ensure_engine()
        assert self._session_factory is not None
        return self._session_factory

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    async def create_schema(self) -> None:
        from callcore.db.base import Base
        from callcore.db.models import core  # noqa: F401  registers tables

        engine = self._ensure_engine()
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("db_schema_ensured", tables=len(Base.metadata.tables))

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            logger.info("db_engine_disposed")
        self._engine = None
        self._session_factory = None


__all__ = ["Database"]
