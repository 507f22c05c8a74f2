"""
Database Infrastructure
=======================

Engine and session lifecycle for the FinOps store.

PostgreSQL (asyncpg) in deployments; SQLite (aiosqlite) URLs are accepted
for local runs and tests. Request handlers get a session per request through
``get_session``; the background monitoring job opens its own with
``get_session_context``. Both commit on success and roll back on error, so a
transition conflict never leaves a half-written status change behind.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from config import settings


class Base(DeclarativeBase):
    """Declarative base for the finops_* tables."""


_engine: Optional[AsyncEngine] = None
_session_maker: Optional[async_sessionmaker[AsyncSession]] = None


def get_engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError("Database engine not initialized. Call init_database() first.")
    return _engine


def init_database(database_url: Optional[str] = None) -> AsyncEngine:
    """
    Create the engine and session factory. Called once from the app lifespan.

    Args:
        database_url: Override for ``settings.database_url``
    """
    global _engine, _session_maker

    # asyncpg takes ssl=, not libpq's sslmode=
    database_url = (database_url or settings.database_url).replace("sslmode=", "ssl=")

    engine_kwargs = {"echo": settings.debug}
    if not database_url.startswith("sqlite"):
        engine_kwargs.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_pre_ping=True,
        )

    _engine = create_async_engine(database_url, **engine_kwargs)
    # Task snapshots are read after commit, so keep loaded attributes
    _session_maker = async_sessionmaker(bind=_engine, expire_on_commit=False, autoflush=False)
    return _engine


async def close_database() -> None:
    global _engine, _session_maker

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_maker = None


def _session_maker_or_raise() -> async_sessionmaker[AsyncSession]:
    if _session_maker is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _session_maker


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Request-scoped session for FastAPI ``Depends``.

    The repositories of one request (tasks, reasons, timers, activity)
    share it, so a status change and its activity entry commit together.
    """
    async with _session_maker_or_raise()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def get_session_context() -> AsyncGenerator[AsyncSession, None]:
    """
    Session for work outside a request, such as one monitoring cycle:

        async with get_session_context() as session:
            await build_monitor(session, config, coordinator, alerts).run_cycle()
    """
    async with _session_maker_or_raise()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def create_tables() -> None:
    """Create missing tables at startup; schema changes need a migration."""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
