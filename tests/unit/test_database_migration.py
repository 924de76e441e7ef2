"""Tests for cache database initialization and schema drift handling."""

import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from uploader.database import _get_expected_columns, _migrate_schema, init_db, purge_expired
from uploader.models.cache_entry import CacheEntry


@pytest.fixture
async def migration_engine():
    """Create a fresh engine for migration testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    yield engine
    await engine.dispose()


@pytest.fixture
async def migration_factory(migration_engine):
    return sessionmaker(migration_engine, class_=AsyncSession, expire_on_commit=False)


async def table_names(engine) -> set[str]:
    async with engine.connect() as conn:
        result = await conn.execute(text("SELECT name FROM sqlite_master WHERE type='table'"))
        return {row[0] for row in result.fetchall()}


async def column_names(engine, table: str) -> set[str]:
    async with engine.connect() as conn:
        result = await conn.execute(text(f"PRAGMA table_info('{table}')"))
        return {row[1] for row in result.fetchall()}


class TestInitDb:
    async def test_creates_cache_table(self, migration_engine):
        await init_db(migration_engine)

        assert "cache_entries" in await table_names(migration_engine)

    async def test_init_is_repeatable(self, migration_engine, migration_factory):
        await init_db(migration_engine)
        async with migration_factory() as session:
            session.add(CacheEntry(key="v1:guess:a", value="{}", stored_at_ms=0, ttl_ms=10**15))
            await session.commit()

        await init_db(migration_engine)

        async with migration_factory() as session:
            assert await session.get(CacheEntry, "v1:guess:a") is not None

    async def test_purge_expired(self, migration_engine, migration_factory):
        await init_db(migration_engine)
        async with migration_factory() as session:
            session.add(CacheEntry(key="v1:old", value="1", stored_at_ms=1_000, ttl_ms=500))
            session.add(CacheEntry(key="v1:edge", value="2", stored_at_ms=1_500, ttl_ms=500))
            session.add(CacheEntry(key="v1:fresh", value="3", stored_at_ms=1_900, ttl_ms=500))
            await session.commit()

        removed = await purge_expired(migration_engine, now_ms=2_000)

        assert removed == 2
        async with migration_factory() as session:
            assert await session.get(CacheEntry, "v1:fresh") is not None
            assert await session.get(CacheEntry, "v1:edge") is None


class TestSchemaMigration:
    """Schema migration should detect and resolve column drift."""

    async def test_migration_is_idempotent_on_correct_schema(self, migration_engine, migration_factory):
        async with migration_engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        async with migration_factory() as session:
            session.add(CacheEntry(key="v1:lang:x", value='"en"', stored_at_ms=1, ttl_ms=1000))
            await session.commit()

        await _migrate_schema(migration_engine)

        async with migration_factory() as session:
            count = (await session.execute(text("SELECT COUNT(*) FROM cache_entries"))).scalar()
        assert count == 1

    async def test_extra_column_recreates_table(self, migration_engine, migration_factory):
        """Cache rows are disposable, so a drifted table is rebuilt empty."""
        async with migration_engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
            await conn.execute(text("ALTER TABLE cache_entries ADD COLUMN obsolete_col VARCHAR DEFAULT ''"))
        async with migration_factory() as session:
            await session.execute(
                text(
                    "INSERT INTO cache_entries (key, value, stored_at_ms, ttl_ms) "
                    "VALUES ('v1:guess:old', '{}', 0, 1000)"
                )
            )
            await session.commit()

        await _migrate_schema(migration_engine)

        assert await column_names(migration_engine, "cache_entries") == _get_expected_columns("cache_entries")
        async with migration_factory() as session:
            count = (await session.execute(text("SELECT COUNT(*) FROM cache_entries"))).scalar()
        assert count == 0

    async def test_missing_table_is_left_alone(self, migration_engine):
        await _migrate_schema(migration_engine)

        assert "cache_entries" not in await table_names(migration_engine)

    def test_expected_columns_for_unknown_table(self):
        assert _get_expected_columns("nope") == set()
