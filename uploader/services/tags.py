"""Release-tag extraction: inline tags, then guessit, then the remote parser."""

import logging

from uploader.clients.opensubtitles import OpenSubtitlesClient
from uploader.core.tags import TagParseError, normalize_tags, parse_tags_offline
from uploader.services.cache_service import TTLCache, make_cache_key

logger = logging.getLogger(__name__)


class TagService:
    """Extracts structured release tags for a file name."""

    def __init__(self, client: OpenSubtitlesClient, cache: TTLCache):
        self._client = client
        self._cache = cache

    async def _remote(self, name: str) -> dict:
        async def _fetch() -> dict:
            payload = await self._client.guessit(name)
            return normalize_tags(payload.get("data") if isinstance(payload.get("data"), dict) else payload)

        return await self._cache.get_or_compute(make_cache_key("guessit", name), _fetch, cache_if=bool)

    async def extract(self, name: str, inline: dict | None = None) -> dict:
        """Tags for `name`.

        Tags returned inline by the identification call win. Otherwise the
        offline parser runs, and the remote parser is used only when the
        offline one fails.
        """
        if inline:
            return inline
        try:
            return parse_tags_offline(name)
        except TagParseError as e:
            logger.info(f"Offline tag parse failed for {name!r} ({e}); using remote parser")
        return await self._remote(name)
