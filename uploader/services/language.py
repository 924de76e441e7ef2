"""Content-based subtitle language detection."""

import logging
from pathlib import Path

from uploader.clients.opensubtitles import OpenSubtitlesClient
from uploader.config import settings
from uploader.core.hashing import hash_subtitle_text, read_file_bytes
from uploader.models.identity import LanguageResult
from uploader.services.cache_service import TTLCache, make_cache_key

logger = logging.getLogger(__name__)

# ISO 639-1 -> OpenSubtitles sublanguageid (ISO 639-2/B)
SUBLANGUAGE_IDS = {
    "ar": "ara", "bg": "bul", "bs": "bos", "ca": "cat", "cs": "cze", "da": "dan",
    "de": "ger", "el": "ell", "en": "eng", "es": "spa", "et": "est", "eu": "baq",
    "fa": "per", "fi": "fin", "fr": "fre", "he": "heb", "hi": "hin", "hr": "hrv",
    "hu": "hun", "id": "ind", "is": "ice", "it": "ita", "ja": "jpn", "ko": "kor",
    "lt": "lit", "lv": "lav", "mk": "mac", "ms": "may", "nl": "dut", "no": "nor",
    "pl": "pol", "pt": "por", "ro": "rum", "ru": "rus", "sk": "slo", "sl": "slv",
    "sq": "alb", "sr": "scc", "sv": "swe", "th": "tha", "tr": "tur", "uk": "ukr",
    "vi": "vie", "zh": "chi",
}


def sublanguage_id(code: str | None, iso639_3: str | None = None) -> str | None:
    """Upload language id for a detected language code."""
    if not code:
        return iso639_3 or None
    code = code.strip().lower()
    if len(code) == 3:
        return code
    return SUBLANGUAGE_IDS.get(code.split("-")[0]) or iso639_3 or code


def parse_detection(payload: dict, min_confidence: float | None = None) -> LanguageResult:
    """Rank detected languages and keep the most confident one.

    Candidates at or below `min_confidence` are dropped. A response whose
    file kind is a plain text file marks the file for removal.
    """
    threshold = settings.language_min_confidence if min_confidence is None else min_confidence
    data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
    file_kind = data.get("file_kind")

    candidates = sorted(
        (lang for lang in data.get("languages") or [] if isinstance(lang, dict)),
        key=lambda lang: float(lang.get("confidence") or 0.0),
        reverse=True,
    )
    candidates = [lang for lang in candidates if float(lang.get("confidence") or 0.0) > threshold]

    should_remove = bool(file_kind) and "text file" in str(file_kind).lower()
    if not candidates:
        return LanguageResult(file_kind=file_kind, should_remove=should_remove)

    top = candidates[0]
    return LanguageResult(
        code=sublanguage_id(top.get("language_code"), top.get("iso639_3")),
        confidence=float(top.get("confidence") or 0.0),
        file_kind=file_kind,
        should_remove=should_remove,
        candidates=candidates,
    )


class LanguageService:
    """Detects the language of a subtitle from a sample of its content."""

    def __init__(self, client: OpenSubtitlesClient, cache: TTLCache, sample_bytes: int | None = None):
        self._client = client
        self._cache = cache
        self.sample_bytes = settings.language_sample_bytes if sample_bytes is None else sample_bytes

    async def detect(self, path: str | Path, filename: str | None = None) -> LanguageResult:
        """Detect the language of the subtitle at `path`.

        Results are cached by the MD5 of the sample, so identical content
        under different names is detected once.
        """
        filename = filename or Path(path).name
        sample = await read_file_bytes(path, limit=self.sample_bytes)
        key = make_cache_key("language", hash_subtitle_text(sample))

        payload = await self._cache.get_or_compute(
            key,
            lambda: self._client.detect_language(sample, filename),
            cache_if=bool,
        )
        result = parse_detection(payload)
        if result.should_remove:
            logger.info(f"{filename} detected as {result.file_kind!r}, not a subtitle")
        elif result.code:
            logger.info(f"{filename}: language {result.code} ({result.confidence:.0%})")
        else:
            logger.info(f"{filename}: no language above threshold")
        return result
