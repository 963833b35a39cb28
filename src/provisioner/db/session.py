from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from provisioner.config import Settings, get_settings
from provisioner.db.models import Base

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: Settings | None = None) -> None:
    """Initialise SQLAlchemy engine lazily with connection pooling."""

    global _engine, _session_factory

    cfg = settings or get_settings()
    if _engine is not None:
        return

    if cfg.database_url.startswith("sqlite"):
        # sqlite drivers do not accept queue pool sizing
        _engine = create_async_engine(cfg.database_url, echo=cfg.debug)
    else:
        _engine = create_async_engine(
            cfg.database_url,
            echo=cfg.debug,
            pool_size=cfg.db_pool_size,
            max_overflow=cfg.db_max_overflow,
            pool_timeout=cfg.db_pool_timeout,
            pool_recycle=cfg.db_pool_recycle,
            pool_pre_ping=True,
        )
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)


def use_session_factory(factory: async_sessionmaker[AsyncSession] | None) -> None:
    """Install an externally built session factory (workers under test, tooling)."""

    global _session_factory
    _session_factory = factory


async def create_schema() -> None:
    """Create all tables. Production schemas are owned by the migration tooling."""

    if _engine is None:
        init_engine()
    assert _engine is not None
    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """Open a session for one unit of work and close it on exit."""

    if _session_factory is None:
        init_engine()
    assert _session_factory is not None

    async with _session_factory() as session:
        yield session

