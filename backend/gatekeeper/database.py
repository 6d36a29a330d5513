"""
Gatekeeper — Database Session Management
==========================================

What:  Async SQLAlchemy engine, session factory and declarative base for the
       users table read by SqlUserStore.
How:   The engine is created on first use with connection pooling; sessions are
       opened per lookup through `session_scope()`.
Who:   SqlUserStore and the lifespan shutdown hook.

The gatekeeper only ever reads users, so sessions here never commit.
Connection pooling:
    pool_size / max_overflow come from settings (defaults 10 / 5).
    pool_pre_ping validates connections before use.
    pool_recycle=3600 recycles connections every hour.
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

from gatekeeper.config import settings


class Base(DeclarativeBase):
    """Declarative base for ORM models."""


_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


def get_engine() -> AsyncEngine:
    """Create the async engine on first call and reuse it afterwards."""
    global _engine, _session_factory
    if _engine is None:
        _engine = create_async_engine(
            settings.database_url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_pre_ping=settings.db_pool_pre_ping,
            pool_recycle=3600,
            echo=settings.log_level == "DEBUG",
        )
        _session_factory = async_sessionmaker(
            _engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _engine


def get_session_factory() -> async_sessionmaker:
    get_engine()
    return _session_factory


@asynccontextmanager
async def session_scope() -> AsyncGenerator[AsyncSession, None]:
    """
    Provide a read-only session that is always closed.

    Any exception propagates to the caller; SqlUserStore turns it into an
    anonymous resolution.
    """
    factory = get_session_factory()
    async with factory() as session:
        try:
            yield session
        finally:
            await session.close()


async def dispose_engine() -> None:
    """
    What:  Gracefully closes all connections in the pool.
    When:  Called during application shutdown (lifespan handler).
    """
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
