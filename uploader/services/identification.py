"""Movie and episode identification from file and folder names.

Names are sent to GuessMovieFromString; the best guess becomes a
MovieIdentity. When the name yields nothing, the parent folder name is
tried. TV series guesses are narrowed to the episode using the season and
episode numbers from the release tags and the show's feature listing, so
the result carries both the episode id (for upload) and the show id (for
lookups).
"""

import logging
import re
from dataclasses import dataclass

from uploader.clients.opensubtitles import OpenSubtitlesClient
from uploader.core.errors import NotFoundError
from uploader.core.tags import episode_numbers, normalize_tags
from uploader.models.identity import MovieIdentity, normalize_imdb_id
from uploader.services.cache_service import TTLCache, make_cache_key

logger = logging.getLogger(__name__)

SERIES_KINDS = frozenset({"tv series", "tvseries", "tv", "series", "tvshow", "mini series"})
EPISODE_KINDS = frozenset({"episode", "tv episode"})

_TITLE_YEAR_RE = re.compile(r"^(?P<title>.*?)\s*\((?P<year>\d{4})\)\s*$")


@dataclass
class IdentificationResult:
    """An identity plus any release tags the guess service returned inline."""

    identity: MovieIdentity
    inline_tags: dict | None = None


def _valid_title(value) -> bool:
    return bool(value) and str(value).strip() not in ("", "undefined", "null")


def _to_int(value) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_best_guess(entry: dict) -> tuple[MovieIdentity | None, str]:
    """Turn a GuessMovieFromString entry into an identity.

    Returns the identity (or None when the guess is unusable) and the raw
    lower-cased MovieKind.
    """
    best = entry.get("BestGuess") if isinstance(entry, dict) else None
    if not isinstance(best, dict):
        return None, ""

    raw_kind = str(best.get("MovieKind") or "movie").strip().lower()
    imdb_id = normalize_imdb_id(best.get("IDMovieIMDB"))
    title = best.get("MovieName")
    if not imdb_id or not _valid_title(title):
        return None, raw_kind

    identity = MovieIdentity(
        imdb_id=imdb_id,
        title=str(title).strip(),
        year=_to_int(best.get("MovieYear")),
        kind="episode" if raw_kind in EPISODE_KINDS else "movie",
        reason=best.get("Reason") or None,
    )
    return identity, raw_kind


def inline_tags(entry: dict) -> dict | None:
    """Release tags embedded in a guess response, if any."""
    raw = entry.get("GuessIt") if isinstance(entry, dict) else None
    if not isinstance(raw, dict) or not raw:
        return None
    return normalize_tags(raw) or None


def find_episode(features: dict, season: int, episode: int) -> dict | None:
    """Locate an episode in a feature listing's seasons."""
    data = features.get("data") if isinstance(features, dict) else None
    if not isinstance(data, list) or not data:
        return None
    attributes = data[0].get("attributes") or {}
    for season_entry in attributes.get("seasons") or []:
        if _to_int(season_entry.get("season_number")) != season:
            continue
        for episode_entry in season_entry.get("episodes") or []:
            if _to_int(episode_entry.get("episode_number")) == episode:
                return episode_entry
    return None


class IdentificationService:
    """Resolves MovieIdentity values, consulting the cache before the network."""

    def __init__(self, client: OpenSubtitlesClient, cache: TTLCache):
        self._client = client
        self._cache = cache

    async def _guess(self, name: str) -> tuple[dict, bool]:
        """Guess entry for a name, and whether it came without a remote call."""
        fetched = False

        async def fetch():
            nonlocal fetched
            fetched = True
            return await self._client.guess_movie(name)

        entry = await self._cache.get_or_compute(make_cache_key("guess", name), fetch, cache_if=bool)
        return entry, not fetched

    async def _features(self, imdb_id: str) -> dict:
        return await self._cache.get_or_compute(
            make_cache_key("features", imdb_id),
            lambda: self._client.features(imdb_id),
            cache_if=bool,
        )

    async def identify(
        self,
        name: str,
        fallback_name: str | None = None,
        tags: dict | None = None,
    ) -> IdentificationResult:
        """Identify the movie or episode behind a file name.

        Args:
            name: File name (or detection name for orphans)
            fallback_name: Folder name tried when `name` yields no match
            tags: Release tags already known for the file

        Raises:
            NotFoundError: neither name produced a usable guess.
        """
        entry, cached = await self._guess(name)
        identity, raw_kind = parse_best_guess(entry)
        source = "cache" if cached else "guess"

        if identity is None and fallback_name and fallback_name != name:
            logger.info(f"No match for {name!r}, trying folder name {fallback_name!r}")
            entry, _ = await self._guess(fallback_name)
            identity, raw_kind = parse_best_guess(entry)
            source = "directory"
            if identity is not None:
                identity = identity.model_copy(update={"reason": f"Directory match: {fallback_name}"})

        if identity is None:
            raise NotFoundError(f"No movie match for {name!r}")

        found_tags = inline_tags(entry)
        identity = identity.with_source(source)
        if raw_kind in SERIES_KINDS:
            identity = await self.resolve_episode(identity, found_tags or tags)

        logger.info(f"Identified {name!r} as {identity.display_name} (imdb {identity.imdb_id})")
        return IdentificationResult(identity=identity, inline_tags=found_tags)

    async def resolve_episode(self, show: MovieIdentity, tags: dict | None) -> MovieIdentity:
        """Narrow a show identity to one episode.

        Without season/episode numbers the show identity is returned
        unchanged. When the listing lacks the episode, the identity keeps
        the show id for both roles.
        """
        season, episode = episode_numbers(tags)
        if season is None or episode is None:
            return show

        base = {
            "kind": "episode",
            "season": season,
            "episode": episode,
            "parent_imdb_id": show.imdb_id,
            "parent_title": show.title,
        }
        features = await self._features(show.imdb_id)
        match = find_episode(features, season, episode)
        episode_imdb = normalize_imdb_id(match.get("feature_imdb_id")) if match else None
        if not episode_imdb:
            logger.warning(
                f"Episode S{season:02d}E{episode:02d} of {show.title} not listed; using show id"
            )
            return show.model_copy(update={**base, "reason": "Episode id unavailable"})

        return show.model_copy(
            update={
                **base,
                "imdb_id": episode_imdb,
                "title": match.get("title") or show.title,
                "reason": "Episode matched from release tags",
            }
        )

    async def search(self, query: str) -> list[MovieIdentity]:
        """Candidate identities for manual selection."""
        results = await self._client.search_movies(query)
        identities = []
        for item in results:
            imdb_id = normalize_imdb_id(item.get("id") or item.get("IDMovieImdb"))
            raw_title = str(item.get("title") or item.get("MovieName") or "").strip()
            if not imdb_id or not raw_title:
                continue
            year = None
            if m := _TITLE_YEAR_RE.match(raw_title):
                raw_title, year = m.group("title"), int(m.group("year"))
            identities.append(
                MovieIdentity(imdb_id=imdb_id, title=raw_title, year=year, source="manual")
            )
        return identities
