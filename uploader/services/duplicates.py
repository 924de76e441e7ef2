"""Server-side duplicate lookup for subtitle content hashes."""

import logging

from uploader.clients.opensubtitles import OpenSubtitlesClient
from uploader.config import settings
from uploader.core.errors import CacheError, ValidationError
from uploader.core.hashing import is_valid_fingerprint
from uploader.models.identity import DuplicateStatus
from uploader.services.cache_service import TTLCache, make_cache_key

logger = logging.getLogger(__name__)


def subtitle_url(subtitle_id: int | None) -> str | None:
    if not subtitle_id:
        return None
    return settings.subtitle_url_template.format(id=subtitle_id)


class DuplicateService:
    """CheckSubHash lookups with a cached, timestamped status per hash."""

    def __init__(self, client: OpenSubtitlesClient, cache: TTLCache, ttl: int | None = None):
        self._client = client
        self._cache = cache
        self.ttl = settings.sub_hash_cache_ttl_seconds if ttl is None else ttl

    @staticmethod
    def _key(subtitle_hash: str) -> str:
        return make_cache_key("subhash", subtitle_hash)

    async def _cached(self, subtitle_hash: str) -> DuplicateStatus | None:
        try:
            raw = await self._cache.get(self._key(subtitle_hash))
        except CacheError:
            return None
        return DuplicateStatus.model_validate(raw) if raw else None

    async def _store(self, status: DuplicateStatus) -> None:
        try:
            await self._cache.set(self._key(status.subtitle_hash), status.model_dump(mode="json"), self.ttl)
        except CacheError as e:
            logger.debug(f"Duplicate status for {status.subtitle_hash} not cached: {e}")

    async def check(self, subtitle_hash: str, max_age: float | None = None) -> DuplicateStatus:
        """Duplicate status for one MD5.

        A cached status is reused unless `max_age` is given and the status
        was checked more than `max_age` seconds ago.
        """
        if not is_valid_fingerprint(subtitle_hash):
            raise ValidationError(f"Invalid subtitle hash: {subtitle_hash!r}")
        cached = await self._cached(subtitle_hash)
        if cached is not None and (max_age is None or cached.age_seconds() <= max_age):
            return cached

        found = await self._client.check_sub_hashes([subtitle_hash])
        subtitle_id = found.get(subtitle_hash) or None
        status = DuplicateStatus(
            subtitle_hash=subtitle_hash,
            exists=subtitle_id is not None,
            subtitle_id=subtitle_id,
            url=subtitle_url(subtitle_id),
        )
        logger.info(
            f"Subtitle {subtitle_hash[:8]}: {'already uploaded' if status.exists else 'not in database'}"
        )
        await self._store(status)
        return status

    async def mark_exists(self, subtitle_hash: str, subtitle_id: int | None = None, url: str | None = None) -> DuplicateStatus:
        """Record that a hash is now stored server-side."""
        status = DuplicateStatus(
            subtitle_hash=subtitle_hash,
            exists=True,
            subtitle_id=subtitle_id,
            url=url or subtitle_url(subtitle_id),
        )
        await self._store(status)
        return status
