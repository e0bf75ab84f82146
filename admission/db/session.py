"""Async SQLAlchemy session management."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from admission.config import AdmissionSettings, get_settings
from admission.db.base import Base
from admission.logging import logger


class Database:
    """Lazy SQLAlchemy engine/session factory wrapper."""

    def __init__(self, settings: AdmissionSettings | None = None) -> None:
        self.settings = settings or get_settings()
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    def _ensure_engine(self) -> None:
        if self._engine is None:
            db_cfg = self.settings.database
            options = {"echo": db_cfg.echo, "pool_pre_ping": db_cfg.pool_pre_ping}
            if not db_cfg.dsn.startswith("sqlite"):
                options.update(
                    pool_size=db_cfg.pool_size,
                    max_overflow=db_cfg.max_overflow,
                    pool_recycle=db_cfg.pool_recycle,
                )
            self._engine = create_async_engine(db_cfg.dsn, **options)
            self._session_factory = async_sessionmaker(
                bind=self._engine,
                expire_on_commit=False,
                autoflush=False,
            )
            logger.info("db_engine_initialized", dsn=db_cfg.dsn)

    @property
    def engine(self) -> AsyncEngine:
        self._ensure_engine()
        assert self._engine is not None
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        self._ensure_engine()
        assert self._session_factory is not None
        return self._session_factory

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        factory = self.session_factory
        async with factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    async def create_all(self) -> None:
        """Create missing tables; migrations are managed outside this service."""

        import admission.db.models.core  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None


def get_database(settings: AdmissionSettings | None = None) -> Database:
    return Database(settings=settings)


__all__ = ["Database", "get_database"]
