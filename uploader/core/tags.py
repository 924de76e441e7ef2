"""Offline release-tag parsing with guessit."""

import logging
from typing import Any

from guessit import guessit

logger = logging.getLogger(__name__)

TAG_FIELDS = (
    "title",
    "alternative_title",
    "year",
    "season",
    "episode",
    "episode_title",
    "type",
    "release_group",
    "source",
    "screen_size",
    "video_codec",
    "audio_codec",
    "audio_channels",
    "streaming_service",
    "edition",
    "other",
    "language",
    "subtitle_language",
    "container",
    "part",
    "cd",
)


class TagParseError(ValueError):
    """The offline parser produced nothing usable."""


def _plain(value: Any) -> Any:
    """Convert guessit values (Language, Country, lists...) to JSON-safe types."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (list, tuple, set)):
        return [_plain(v) for v in value]
    return str(value)


def normalize_tags(raw: dict) -> dict:
    """Keep the fields the pipeline consumes, lower-casing the keys."""
    tags: dict = {}
    for key, value in raw.items():
        key = str(key).lower().replace(" ", "_")
        if key in TAG_FIELDS and value not in (None, "", []):
            tags[key] = _plain(value)
    return tags


def parse_tags_offline(name: str) -> dict:
    """Parse a release name into tags without any network call.

    Raises:
        TagParseError: guessit failed or found no title.
    """
    if not name or not name.strip():
        raise TagParseError("Empty name")
    try:
        raw = guessit(name)
    except Exception as e:
        raise TagParseError(f"guessit failed on {name!r}: {e}") from e

    tags = normalize_tags(dict(raw))
    if not tags.get("title"):
        raise TagParseError(f"No title found in {name!r}")
    return tags


def episode_numbers(tags: dict | None) -> tuple[int | None, int | None]:
    """Season and episode from tags; multi-episode lists yield the first."""
    if not tags:
        return None, None

    def _first_int(value: Any) -> int | None:
        if isinstance(value, list):
            value = value[0] if value else None
        try:
            return int(value) if value is not None else None
        except (TypeError, ValueError):
            return None

    return _first_int(tags.get("season")), _first_int(tags.get("episode"))
