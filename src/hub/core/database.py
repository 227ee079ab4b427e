"""Async SQLAlchemy engine and sessions for the integration hub.

The hub owns four tables (connections, platform credentials, attribute
definitions, external links, see integrations/models.py) and reads or
updates a few columns of the platform's users, principals and posts tables.
Repositories receive ``get_session`` as their session_factory.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.hub.config import get_settings

_engine: AsyncEngine | None = None
_sessionmaker: async_sessionmaker[AsyncSession] | None = None


class Base(DeclarativeBase):
    """Declarative base for hub-owned tables only."""


def get_engine() -> AsyncEngine:
    """Engine singleton, created on first use from DATABASE_URL."""
    global _engine, _sessionmaker
    if _engine is None:
        _engine = create_async_engine(
            get_settings().DATABASE_URL,
            pool_size=5,
            max_overflow=5,
            pool_pre_ping=True,
        )
        _sessionmaker = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield one session; callers commit explicitly."""
    get_engine()
    async with _sessionmaker() as session:
        yield session


async def init_db() -> None:
    """Create hub-owned tables that do not exist yet.

    Platform tables (users, principals, posts) are not on Base.metadata and
    are never created here.
    """
    from src.hub.integrations import models  # noqa: F401 -- registers the tables

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    global _engine, _sessionmaker
    engine, _engine, _sessionmaker = _engine, None, None
    if engine is not None:
        await engine.dispose()
