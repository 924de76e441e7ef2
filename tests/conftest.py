"""Core pytest fixtures for the subtitle uploader tests."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from uploader.clients.opensubtitles import OpenSubtitlesClient
from uploader.config import Settings
from uploader.models.files import FileKind, FileRecord
from uploader.models.identity import VideoMetadata
from uploader.services.cache_service import TTLCache
from uploader.services.pipeline import PipelineContext, PipelineOrchestrator

SRT_SAMPLE = (
    "1\n00:00:01,000 --> 00:00:03,000\nHello there.\n\n"
    "2\n00:00:04,000 --> 00:00:06,000\nGeneral Kenobi.\n\n"
    "3\n00:00:07,000 --> 00:00:09,000\nYou are a bold one.\n"
)


def make_record(full_path: str, kind: FileKind | None = None, size: int = 1000, root=None) -> FileRecord:
    """Build a FileRecord, inferring the kind from the extension."""
    if kind is None:
        suffix = full_path.rsplit(".", 1)[-1].lower()
        kind = FileKind.VIDEO if suffix in ("mkv", "mp4", "avi") else FileKind.SUBTITLE
    absolute = str(root / full_path) if root is not None else None
    return FileRecord(full_path=full_path, size=size, kind=kind, absolute_path=absolute)


@pytest.fixture
def fast_settings():
    """Settings with no staggering, no backoff and no request delay."""
    return Settings(
        api_key="test-key",
        session_token="test-token",
        identification_stagger=0,
        subtitle_stagger=0,
        language_stagger=0,
        duplicate_check_stagger=0,
        network_request_delay=0,
        retry_base_delay=0,
        retry_max_delay=0,
    )


@pytest.fixture
def media_tree(tmp_path):
    """A drop folder with one paired movie and one orphaned subtitle."""
    root = tmp_path / "drop"
    movie_dir = root / "Inception (2010)"
    movie_dir.mkdir(parents=True)
    (movie_dir / "Inception.2010.1080p.BluRay.x264.mkv").write_bytes(bytes(range(256)) * 1024)
    (movie_dir / "Inception.2010.1080p.BluRay.x264.en.srt").write_text(SRT_SAMPLE)

    orphan_dir = root / "The Matrix (1999)"
    orphan_dir.mkdir()
    (orphan_dir / "The.Matrix.1999.srt").write_text(SRT_SAMPLE.replace("Hello", "Wake up"))
    return root


@pytest.fixture
def mock_client():
    """OpenSubtitlesClient with every remote call mocked."""
    client = MagicMock(spec=OpenSubtitlesClient)
    client.guess_movie = AsyncMock(return_value={})
    client.search_movies = AsyncMock(return_value=[])
    client.check_sub_hashes = AsyncMock(side_effect=lambda hashes: {h: 0 for h in hashes})
    client.try_upload = AsyncMock(return_value={"status": "200 OK", "alreadyindb": 0})
    client.upload_subtitles = AsyncMock(
        return_value={"status": "200 OK", "data": "https://www.opensubtitles.org/subtitles/1"}
    )
    client.detect_language = AsyncMock(
        return_value={
            "data": {
                "file_kind": "SubRip subtitle",
                "languages": [{"language_code": "en", "confidence": 0.98}],
            }
        }
    )
    client.guessit = AsyncMock(return_value={})
    client.features = AsyncMock(return_value={})
    client.aclose = AsyncMock()
    return client


def guess_entry(imdb_id: str, title: str, year: int | None = None, kind: str = "movie", guessit: dict | None = None) -> dict:
    """A GuessMovieFromString per-name entry."""
    entry = {
        "BestGuess": {
            "IDMovieIMDB": imdb_id,
            "MovieName": title,
            "MovieYear": str(year) if year else "",
            "MovieKind": kind,
        }
    }
    if guessit:
        entry["GuessIt"] = guessit
    return entry


KNOWN_TITLES = {
    "inception": ("1375666", "Inception", 2010),
    "matrix": ("133093", "The Matrix", 1999),
    "film": ("99999", "Film", 1999),
}


async def guess_known(name: str) -> dict:
    """guess_movie stand-in that recognises a few titles by substring."""
    for needle, (imdb_id, title, year) in KNOWN_TITLES.items():
        if needle in name.lower():
            return guess_entry(imdb_id, title, year)
    return {}


@pytest.fixture
def stub_ffprobe(monkeypatch):
    """Replace ffprobe with a fixed 1080p result."""

    async def _extract(path, ffprobe_path="ffprobe", timeout=10.0):
        return VideoMetadata(duration_ms=8_880_000, fps=23.976, frames=212_900, width=1920, height=1080)

    monkeypatch.setattr("uploader.services.pipeline.extract_metadata", _extract)


@pytest.fixture
def orchestrator(mock_client, fast_settings, stub_ffprobe):
    """Pipeline over the mocked client, a fresh cache and fast settings."""
    mock_client.guess_movie.side_effect = guess_known
    context = PipelineContext(client=mock_client, cache=TTLCache(version=1), config=fast_settings)
    return PipelineOrchestrator(context)
