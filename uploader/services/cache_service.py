"""Persistent TTL cache for remote-call results.

Rows live in the `cache_entries` table and survive restarts. Every key is
namespaced with the cache schema version (``v1:``), so bumping the version
makes old entries invisible instead of failing to decode them. Expired
entries read as absent and are deleted when next touched; nothing sweeps
proactively.

Writes are upserts (last writer wins). Concurrent writers of one key
compute the same value, so no locking is needed around them.
"""

import asyncio
import hashlib
import json
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError

from uploader.config import settings
from uploader.core.errors import CacheError, handle_errors
from uploader.database import async_session
from uploader.models.cache_entry import CacheEntry

logger = logging.getLogger(__name__)


def make_cache_key(endpoint: str, fingerprint: str | list[str]) -> str:
    """Deterministic cache key for an endpoint and its input.

    The input is normalized (trimmed, lower-cased; lists sorted) so that
    equivalent names share a key.
    """
    if isinstance(fingerprint, (list, tuple)):
        fingerprint = ",".join(sorted(str(f).strip().lower() for f in fingerprint))
    normalized = str(fingerprint).strip().lower()
    digest = hashlib.sha1(normalized.encode("utf-8")).hexdigest()[:16]
    return f"{endpoint}:{digest}"


class TTLCache:
    """Key/value cache with per-entry expiry, backed by SQLite."""

    def __init__(
        self,
        session_factory=None,
        version: int | None = None,
        default_ttl: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._session_factory = session_factory
        self.version = settings.cache_schema_version if version is None else version
        self.default_ttl = settings.cache_ttl_seconds if default_ttl is None else default_ttl
        self._clock = clock
        self._inflight: dict[str, asyncio.Future] = {}

    @property
    def prefix(self) -> str:
        return f"v{self.version}:"

    def _session(self):
        # Resolved per call so tests can patch the module-level factory
        return (self._session_factory or async_session)()

    def _namespaced(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @handle_errors(
        error_types=(SQLAlchemyError, ValueError),
        default_message="Cache read failed",
        log_level="warning",
        wrap_as=CacheError,
    )
    async def get(self, key: str) -> Any | None:
        """Return the cached value, or None if missing or expired."""
        namespaced = self._namespaced(key)
        async with self._session() as session:
            entry = await session.get(CacheEntry, namespaced)
            if entry is None:
                return None
            if entry.is_expired(self._now_ms()):
                await session.delete(entry)
                await session.commit()
                logger.debug(f"Cache entry expired: {key}")
                return None
            return json.loads(entry.value)

    @handle_errors(
        error_types=(SQLAlchemyError, TypeError, ValueError),
        default_message="Cache write failed",
        log_level="warning",
        wrap_as=CacheError,
    )
    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        """Store a JSON-serializable value for `ttl` seconds (default 72h)."""
        if value is None:
            return
        ttl_seconds = self.default_ttl if ttl is None else ttl
        row = {
            "key": self._namespaced(key),
            "value": json.dumps(value),
            "stored_at_ms": self._now_ms(),
            "ttl_ms": int(ttl_seconds * 1000),
        }
        stmt = sqlite_insert(CacheEntry).values(**row)
        stmt = stmt.on_conflict_do_update(
            index_elements=["key"],
            set_={
                "value": stmt.excluded.value,
                "stored_at_ms": stmt.excluded.stored_at_ms,
                "ttl_ms": stmt.excluded.ttl_ms,
            },
        )
        async with self._session() as session:
            await session.execute(stmt)
            await session.commit()

    async def delete(self, key: str) -> None:
        async with self._session() as session:
            await session.execute(delete(CacheEntry).where(CacheEntry.key == self._namespaced(key)))
            await session.commit()

    async def clear(self) -> int:
        """Remove every namespaced entry, from any schema version."""
        async with self._session() as session:
            result = await session.execute(delete(CacheEntry).where(CacheEntry.key.like("v%:%")))
            await session.commit()
        self._inflight.clear()
        removed = result.rowcount or 0
        logger.info(f"Cleared {removed} cache entries")
        return removed

    async def stats(self) -> dict[str, int]:
        """Counts of valid and expired entries in the current namespace."""
        now = self._now_ms()
        async with self._session() as session:
            total = await session.scalar(
                select(func.count()).select_from(CacheEntry).where(CacheEntry.key.like(f"{self.prefix}%"))
            )
            expired = await session.scalar(
                select(func.count())
                .select_from(CacheEntry)
                .where(CacheEntry.key.like(f"{self.prefix}%"))
                .where(now - CacheEntry.stored_at_ms >= CacheEntry.ttl_ms)
            )
        total = total or 0
        expired = expired or 0
        return {"total": total, "valid": total - expired, "expired": expired}

    async def get_or_compute(
        self,
        key: str,
        factory: Callable[[], Awaitable[Any]],
        ttl: int | None = None,
        cache_if: Callable[[Any], bool] | None = None,
    ) -> Any:
        """Cache-aside lookup with in-flight deduplication.

        Concurrent callers for the same key share one `factory()` call.
        If the caller running that call is cancelled, the others compute
        again instead of inheriting the cancellation.
        Results failing `cache_if` (e.g. empty answers) are returned but
        not stored.
        A broken cache store degrades to calling `factory()` directly.
        """
        try:
            cached = await self.get(key)
        except CacheError as e:
            logger.debug(f"Cache unavailable for {key}: {e}")
            cached = None
        if cached is not None:
            logger.debug(f"Cache hit: {key}")
            return cached

        while (existing := self._inflight.get(key)) is not None:
            try:
                return await asyncio.shield(existing)
            except asyncio.CancelledError:
                task = asyncio.current_task()
                if not existing.cancelled() or (task is not None and task.cancelling()):
                    raise
                # the owning caller was cancelled, not this one
                logger.debug(f"Shared computation for {key} was cancelled, recomputing")

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            value = await factory()
            if cache_if is None or cache_if(value):
                try:
                    await self.set(key, value, ttl)
                except CacheError as e:
                    logger.debug(f"Result for {key} not cached: {e}")
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so an unobserved failure does not warn at GC
            future.exception()
            raise
        finally:
            if self._inflight.get(key) is future:
                del self._inflight[key]

        future.set_result(value)
        return value
