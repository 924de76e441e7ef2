"""Results produced by the identification, metadata and language stages."""

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field, field_validator

IdentitySource = Literal["guess", "cache", "directory", "sibling", "manual"]


def normalize_imdb_id(value: str | int | None) -> str | None:
    """Return the numeric IMDb id as a string ('tt0133093' -> '133093')."""
    if value is None:
        return None
    text = str(value).strip().lower()
    if text.startswith("tt"):
        text = text[2:]
    text = text.lstrip("0")
    return text if text.isdigit() else None


class MovieIdentity(BaseModel):
    """Resolved movie or episode.

    For an episode, `imdb_id` is the episode's own id (used for upload)
    and `parent_imdb_id` is the show's id (used for metadata lookups).
    """

    imdb_id: str
    title: str
    year: int | None = None
    kind: Literal["movie", "episode"] = "movie"
    season: int | None = None
    episode: int | None = None
    parent_imdb_id: str | None = None
    parent_title: str | None = None
    source: IdentitySource = "guess"
    reason: str | None = None

    @field_validator("imdb_id")
    @classmethod
    def _imdb_digits(cls, v: str) -> str:
        normalized = normalize_imdb_id(v)
        if not normalized:
            raise ValueError(f"Invalid IMDb id: {v!r}")
        return normalized

    @field_validator("parent_imdb_id")
    @classmethod
    def _parent_digits(cls, v: str | None) -> str | None:
        return normalize_imdb_id(v)

    @property
    def upload_imdb_id(self) -> str:
        return self.imdb_id

    @property
    def lookup_imdb_id(self) -> str:
        return self.parent_imdb_id or self.imdb_id

    @property
    def display_name(self) -> str:
        if self.kind == "episode" and self.season is not None and self.episode is not None:
            show = self.parent_title or self.title
            return f"{show} S{self.season:02d}E{self.episode:02d}"
        return f"{self.title} ({self.year})" if self.year else self.title

    def with_source(self, source: IdentitySource) -> "MovieIdentity":
        return self.model_copy(update={"source": source})


class VideoMetadata(BaseModel):
    """Technical metadata of a video file."""

    duration_ms: int | None = None
    fps: float | None = None
    frames: int | None = None
    width: int | None = None
    height: int | None = None
    video_codec: str | None = None
    audio_codecs: list[str] = Field(default_factory=list)
    bitrate: int | None = None
    container: str | None = None

    @property
    def is_high_definition(self) -> bool:
        return (self.height or 0) >= 1080 or (self.width or 0) >= 1920


class LanguageResult(BaseModel):
    """Outcome of content-based language detection."""

    code: str | None = None
    confidence: float = 0.0
    file_kind: str | None = None
    should_remove: bool = False
    candidates: list[dict] = Field(default_factory=list)


class DuplicateStatus(BaseModel):
    """Whether a subtitle's content hash already exists server-side."""

    subtitle_hash: str
    exists: bool
    subtitle_id: int | None = None
    url: str | None = None
    checked_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def age_seconds(self, now: datetime | None = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (now - self.checked_at).total_seconds()
