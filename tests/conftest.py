"""Shared fixtures: fast-hashing settings and a throwaway SQLite store."""

from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel, select

import keygate.models  # noqa: F401
from keygate.config import Settings
from keygate.models.api_key import ApiKey
from keygate.services.api_key import ApiKeyService, ApiKeyVerifier


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with bcrypt at minimum cost and no failure delay."""
    return Settings(
        database={"url": f"sqlite+aiosqlite:///{tmp_path}/test.db"},
        hashing={"rounds": 4},
        verification={"failure_delay_min_ms": 0, "failure_delay_max_ms": 0},
        bootstrap={"owner_id": None, "data_dir": str(tmp_path)},
    )


@pytest.fixture
async def session_factory(settings: Settings):
    """File-backed SQLite so concurrent sessions see each other's commits."""
    engine = create_async_engine(settings.database.url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    factory = sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    yield factory

    await engine.dispose()


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def service(db_session: AsyncSession, settings: Settings) -> ApiKeyService:
    return ApiKeyService(db_session=db_session, settings=settings)


@pytest.fixture
def verifier(session_factory, settings: Settings) -> ApiKeyVerifier:
    return ApiKeyVerifier(session_factory=session_factory, settings=settings)


@pytest.fixture
def fetch_key(session_factory):
    """Read a key record through a fresh session (bypasses identity maps)."""

    async def _fetch(key_id: str) -> ApiKey | None:
        async with session_factory() as session:
            result = await session.execute(select(ApiKey).where(ApiKey.id == key_id))
            return result.scalars().first()

    return _fetch
