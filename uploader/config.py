"""Service configuration from environment variables.

Holds everything the pipeline needs before any file is dropped: the
cache database URL, server host/port, OpenSubtitles credentials and
endpoints, timeouts, retry policy and stagger delays. All fields have
defaults, so no .env file is required. Variables are read with the
UPLOADER_ prefix (e.g. UPLOADER_API_KEY).
"""

import sys
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

APP_DIR_NAME = ".subtitle-uploader"


def _default_database_url() -> str:
    """Return the default cache database URL, using the home directory for frozen builds."""
    if getattr(sys, "frozen", False):
        db_dir = Path.home() / APP_DIR_NAME
        db_dir.mkdir(parents=True, exist_ok=True)
        db_path = db_dir / "uploader.db"
        return f"sqlite+aiosqlite:///{db_path}"
    return "sqlite+aiosqlite:///./uploader.db"


class Settings(BaseSettings):
    """Service settings. Loaded from environment variables; optionally from .env."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="UPLOADER_",
        case_sensitive=False,
    )

    # Database (persistent cache store)
    database_url: str = _default_database_url()

    # Server
    host: str = "127.0.0.1"
    port: int = 8000
    debug: bool = False

    # OpenSubtitles
    api_key: str = ""
    session_token: str = ""
    user_agent: str = "OpenSubtitles Uploader PRO v1.0"
    rest_base_url: str = "https://api.opensubtitles.com/api/v1"
    xmlrpc_url: str = "https://api.opensubtitles.org/xml-rpc"
    subtitle_url_template: str = "https://www.opensubtitles.org/search/idsubtitlefile-{id}"

    # Network behaviour
    request_timeout: float = 5.0
    network_request_delay: float = 0.1
    retry_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0

    # Cache
    cache_schema_version: int = 1
    cache_ttl_seconds: int = 72 * 60 * 60
    sub_hash_cache_ttl_seconds: int = 24 * 60 * 60

    # Pipeline scheduling
    max_concurrent_stages: int = 4
    identification_stagger: float = 3.0
    subtitle_stagger: float = 1.5
    language_stagger: float = 2.0
    duplicate_check_stagger: float = 1.0
    hash_timeout: float = 30.0

    # Upload
    duplicate_staleness_seconds: int = 300

    # Language detection
    language_sample_bytes: int = 5120
    language_min_confidence: float = 0.05

    # Metadata extraction
    ffprobe_path: str = "ffprobe"
    metadata_timeout: float = 10.0

    # Archive intake
    max_archive_bytes: int = 100 * 1024 * 1024
    archive_extract_dir: str = ""


settings = Settings()
