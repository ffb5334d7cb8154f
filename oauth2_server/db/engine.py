"""Async SQLAlchemy engine and request-scoped sessions.

When DATABASE_URL is configured, provides:
- async engine (PostgreSQL via asyncpg in production)
- async session factory
- session_scope(): one session per request, committed on success and
  rolled back on error
- FastAPI lifespan hook for startup/shutdown

When DATABASE_URL is unset, engine and factory are None and the API falls
back to Redis or in-memory storage (see api/dependencies.py).
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from oauth2_server.core.config import SETTINGS

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all table models."""


def build_engine(url: str, *, echo: bool = False) -> AsyncEngine:
    if not url.startswith("sqlite"):
        return create_async_engine(url, echo=echo, pool_size=5, max_overflow=10)

    # No pooling: a pooled aiosqlite connection is bound to the event loop
    # that opened it.
    sqlite_engine = create_async_engine(url, echo=echo, poolclass=NullPool)

    # The sqlite3 driver manages BEGIN itself and breaks SAVEPOINT, which
    # SqlOAuthStorage relies on for duplicate detection.  Take BEGIN over.
    @event.listens_for(sqlite_engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, _connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine.sync_engine, "begin")
    def _emit_begin(conn) -> None:
        conn.exec_driver_sql("BEGIN")

    return sqlite_engine


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


if SETTINGS.database_url:
    engine: AsyncEngine | None = build_engine(
        SETTINGS.database_url, echo=SETTINGS.is_dev
    )
    async_session_factory: async_sessionmaker[AsyncSession] | None = (
        build_session_factory(engine)
    )
else:
    engine = None
    async_session_factory = None


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncIterator[AsyncSession]:
    """Yield a session for one unit of work.

    Commits when the block exits cleanly, rolls back when it raises.
    """
    factory = factory or async_session_factory
    if factory is None:
        raise RuntimeError(
            "DATABASE_URL is not configured, cannot create database session"
        )
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def lifespan_db() -> AsyncIterator[None]:
    """Startup/shutdown hook for the database engine."""
    if engine is None:
        logger.info("No DATABASE_URL configured, SQL storage disabled")
        yield
        return

    logger.info("Database engine created: %s", engine.url.render_as_string())
    yield
    await engine.dispose()
    logger.info("Database engine disposed")
