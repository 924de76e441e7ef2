"""Database setup with SQLModel and async SQLite.

The database only backs the persistent TTL cache. Its rows are
disposable, so schema drift is resolved by dropping and recreating.
"""

import logging
import time

import sqlalchemy
from sqlalchemy import text as sa_text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

from uploader.config import settings

# Import all models so their tables are registered with SQLModel.metadata
from uploader.models import CacheEntry  # noqa: F401

logger = logging.getLogger(__name__)

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    future=True,
    connect_args={"check_same_thread": False},  # Needed for SQLite
)


@sqlalchemy.event.listens_for(engine.sync_engine, "connect")
def set_sqlite_pragma(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()


async_session = sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

TRANSIENT_TABLES = ["cache_entries"]


async def init_db(target_engine: AsyncEngine | None = None) -> None:
    """Create the cache tables, resolve schema drift and drop expired rows."""
    eng = target_engine or engine
    async with eng.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    await _migrate_schema(eng)
    purged = await purge_expired(eng)

    logger.info(f"Cache database ready ({purged} expired entries purged)")


async def purge_expired(target_engine: AsyncEngine | None = None, now_ms: int | None = None) -> int:
    """Delete every cache row whose TTL has elapsed. Returns the count."""
    eng = target_engine or engine
    now = int(time.time() * 1000) if now_ms is None else now_ms
    async with eng.begin() as conn:
        result = await conn.execute(
            sa_text("DELETE FROM cache_entries WHERE :now - stored_at_ms >= ttl_ms"),
            {"now": now},
        )
    return result.rowcount or 0


def _get_expected_columns(table_name: str) -> set[str]:
    """Get expected column names from the SQLModel metadata for a table."""
    table = SQLModel.metadata.tables.get(table_name)
    if table is None:
        return set()
    return {col.name for col in table.columns}


async def _get_actual_columns(conn, table_name: str) -> set[str]:
    """Get actual column names from the database for a table."""
    result = await conn.execute(sa_text(f"PRAGMA table_info('{table_name}')"))
    rows = result.fetchall()
    return {row[1] for row in rows}  # column name is at index 1


async def _migrate_schema(target_engine: AsyncEngine | None = None) -> None:
    """Drop and recreate transient tables whose columns drifted from the models.

    Idempotent: no-op when the schema already matches.
    """
    eng = target_engine or engine

    async with eng.begin() as conn:
        result = await conn.execute(sa_text("SELECT name FROM sqlite_master WHERE type='table'"))
        existing_tables = {row[0] for row in result.fetchall()}

        for table_name in TRANSIENT_TABLES:
            if table_name not in existing_tables:
                continue
            actual_cols = await _get_actual_columns(conn, table_name)
            expected_cols = _get_expected_columns(table_name)

            if actual_cols != expected_cols:
                logger.info(f"Schema mismatch in {table_name}, dropping and recreating")
                await conn.execute(sa_text(f"DROP TABLE {table_name}"))
                table_obj = SQLModel.metadata.tables[table_name]
                await conn.run_sync(
                    lambda sync_conn, t=table_obj: t.create(sync_conn, checkfirst=True)
                )
