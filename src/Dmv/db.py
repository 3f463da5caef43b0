# src/Dmv/db.py
from __future__ import annotations

import contextlib
from collections.abc import AsyncIterator

import structlog
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

log = structlog.get_logger()


def normalize_url(url: str) -> str:
    # Upgrade to async drivers if user supplies sync URLs
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite://") and not url.startswith("sqlite+aiosqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


class Base(DeclarativeBase):
    pass


class Database:
    """One async engine plus its session factory.

    Owned by whoever builds it (the host process or a test); there is no
    module-level engine.
    """

    def __init__(self, url: str):
        self.url = normalize_url(url)
        self._engine: AsyncEngine | None = None
        self._sessionmaker: async_sessionmaker[AsyncSession] | None = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            kwargs: dict[str, object] = {}
            if self.url.startswith("sqlite+aiosqlite://"):
                kwargs.update(connect_args={"timeout": 30})
                # Critical for in-memory DBs: share a single connection so schema persists
                if ":memory:" in self.url:
                    kwargs.update(poolclass=StaticPool)
            elif self.url.startswith("postgresql+asyncpg://"):
                kwargs.update(pool_pre_ping=True, pool_size=5, max_overflow=10, pool_timeout=30)

            self._engine = create_async_engine(self.url, **kwargs)
            self._sessionmaker = async_sessionmaker(self._engine, expire_on_commit=False)
            url = make_url(self.url)
            log.info(
                "db.connection.config",
                backend=url.get_backend_name(),
                host=url.host or "",
                database=url.database or "",
                driver=url.drivername,
            )
        return self._engine

    @property
    def sessionmaker(self) -> async_sessionmaker[AsyncSession]:
        if self._sessionmaker is None:
            self.engine  # noqa: B018
        assert self._sessionmaker is not None
        return self._sessionmaker

    async def create_all(self) -> None:
        # Ensure models module is imported so all tables are registered
        from Dmv import models as _models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()

    @contextlib.asynccontextmanager
    async def session_scope(self) -> AsyncIterator[AsyncSession]:
        """Unit of work: commit on success, roll back and re-raise on error."""
        async with self.sessionmaker() as s:
            try:
                yield s
                await s.commit()
            except BaseException:
                log.error("db.session.error", exc_info=True)
                await s.rollback()
                raise
