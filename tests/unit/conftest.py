"""Shared fixtures for unit tests.

Patches async_session everywhere so no unit test touches uploader.db.
"""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from uploader.models import CacheEntry  # noqa: F401

_unit_engine = create_async_engine(
    "sqlite+aiosqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

_unit_session_factory = sessionmaker(_unit_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(autouse=True)
async def isolate_database(monkeypatch):
    """Patch async_session everywhere so no unit test touches uploader.db."""
    async with _unit_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    # Patch via direct module references to avoid name-shadowing in __init__.py
    import uploader.database as _db_mod
    import uploader.services.cache_service as _cache_mod

    monkeypatch.setattr(_db_mod, "async_session", _unit_session_factory)
    monkeypatch.setattr(_cache_mod, "async_session", _unit_session_factory)

    yield

    async with _unit_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)


@pytest.fixture
def session_factory():
    """The in-memory session factory patched over async_session."""
    return _unit_session_factory
