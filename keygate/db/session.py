"""Engine and session lifecycle for the key store.

The engine is built from ``database`` settings on first use and disposed by
``close_db`` at shutdown. The verifier takes the session factory directly so
each usage write runs in its own short transaction.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlmodel import SQLModel

# Registers the ApiKey table on SQLModel.metadata
import keygate.models  # noqa: F401
from keygate.config import get_settings

logger = structlog.get_logger()

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        database = get_settings().database
        _engine = create_async_engine(database.url, echo=database.echo)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory shared by the verifier and request sessions."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(_get_engine(), expire_on_commit=False)
    return _session_factory


async def init_db() -> None:
    """Create the api_keys table if it does not exist."""
    engine = _get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    logger.info("db.init", url=engine.url.render_as_string(hide_password=True))


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is None:
        return
    await _engine.dispose()
    logger.info("db.closed")
    _engine = None
    _session_factory = None


@asynccontextmanager
async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """Session that commits on clean exit and rolls back on error."""
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_session_dependency() -> AsyncGenerator[AsyncSession, None]:
    async with get_async_session() as session:
        yield session
