"""Database engine and session management.

The engine and session factory are created once per process by
``init_database`` and torn down by ``close_database``. Every caller that
mutates more than one row opens its own session from the factory and owns the
transaction explicitly; nothing here hands out an ambient session.
"""

from __future__ import annotations

import logging
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from storybot.shared.config import get_settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


_engine: Optional[AsyncEngine] = None
_session_maker: Optional[async_sessionmaker[AsyncSession]] = None


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build a session factory bound to ``engine``.

    Objects stay usable after commit so services can hand committed rows to
    the outbound message queue without another round trip.
    """
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


async def init_database(database_url: Optional[str] = None) -> async_sessionmaker[AsyncSession]:
    """Create the engine and session factory if they do not exist yet.

    Args:
        database_url: Override for ``Settings.database_url``

    Returns:
        The process-wide session factory
    """
    global _engine, _session_maker

    if _session_maker is not None:
        return _session_maker

    settings = get_settings()
    url = database_url or settings.database_url
    if url.startswith("postgresql+psycopg"):
        # Sync driver given by mistake, upgrade it to the async one
        url = url.replace("postgresql+psycopg", "postgresql+asyncpg", 1)

    _engine = create_async_engine(url, echo=settings.database_echo, pool_pre_ping=True)
    _session_maker = create_session_maker(_engine)
    logger.info("Database engine initialized")

    if settings.database_create_all:
        await create_tables(_engine)

    return _session_maker


async def create_tables(engine: Optional[AsyncEngine] = None) -> None:
    """Create all tables known to the ORM metadata."""
    # Import for side effect: registers the models on Base.metadata
    from storybot.web import models  # noqa: F401

    target = engine or _engine
    if target is None:
        raise RuntimeError("Database not initialized")
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ensured")


async def close_database() -> None:
    """Dispose of the engine and forget the session factory."""
    global _engine, _session_maker

    if _engine is not None:
        await _engine.dispose()
        logger.info("Database engine disposed")
    _engine = None
    _session_maker = None


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Return the session factory created by ``init_database``."""
    if _session_maker is None:
        raise RuntimeError("Database not initialized, call init_database() first")
    return _session_maker


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a session that is always closed."""
    async with get_session_maker()() as session:
        yield session
