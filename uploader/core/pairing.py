"""File pairing engine.

Groups each video with the subtitles that belong to it, using directory
co-location and filename similarity, and isolates subtitles that match no
video (orphans). Also derives the names used to identify orphans and the
keys used to share identification results between sibling files.

Pairing is a pure function of the file list: the same input always yields
the same groups and orphans, in the same order.
"""

import re
from dataclasses import dataclass
from pathlib import PurePosixPath

from uploader.models.files import FileKind, FileRecord, PairedGroup, PairingResult

VIDEO_EXTENSIONS = frozenset(
    {
        ".mp4", ".mkv", ".avi", ".mov", ".webm", ".flv", ".wmv", ".mpeg", ".mpg",
        ".ts", ".m2ts", ".mts", ".f4v", ".ogv", ".ogg", ".amv", ".nsv", ".yuv",
        ".nut", ".nuv", ".wtv", ".tivo", ".ty",
    }
)

SUBTITLE_EXTENSIONS = frozenset(
    {".srt", ".vtt", ".ass", ".ssa", ".sub", ".txt", ".smi", ".mpl", ".tmp"}
)

# Extensions that need a content check before they count as subtitles
CONTENT_CHECKED_EXTENSIONS = frozenset({".txt"})

SUBTITLE_DIR_NAMES = frozenset({"subs", "subtitles", "sub", "subtitle"})

SUBTITLE_DIR_PREFIXES = (
    "subtitles", "captions", "subs", "subtitle", "caption", "sub", "titulky",
    "popisky", "tit", "subtítulos", "sous-titres", "légendes", "untertitel",
    "sottotitoli", "legendas", "napisy", "napisi", "субтитры", "титры",
    "felirat", "כתוביות", "字幕", "자막",
)

LANGUAGE_CODES_2 = frozenset(
    "en fr de es it pt nl sv no da fi hu hr sr bg ro el tr ar he hi th vi id ms tl uk "
    "ca eu gl cy ga mt is lv lt et sl mk sq bs me cs sk ru pl zh ja ko cz".split()
)

LANGUAGE_CODES_3 = frozenset(
    "eng fre fra ger deu spa ita por dut nld swe nor dan fin hun hrv srp bul rum ron gre "
    "ell tur ara heb hin tha vie ind may msa tgl ukr cat eus baq glg cym gle mlt isl lav "
    "lit est slv mkd sqi bos mne ces cze slk slo rus pol chi zho jpn kor nob fil pob".split()
)

LANGUAGE_NAMES = frozenset(
    "english french german spanish italian portuguese dutch swedish norwegian danish "
    "finnish hungarian croatian serbian bulgarian romanian greek turkish arabic hebrew "
    "hindi thai vietnamese indonesian malay tagalog ukrainian catalan basque galician "
    "welsh irish maltese icelandic latvian lithuanian estonian slovenian macedonian "
    "albanian bosnian montenegrin czech slovak russian polish chinese japanese korean "
    "brazilian traditional simplified".split()
)

SUBTITLE_MODIFIERS = frozenset(
    {"forced", "sdh", "hi", "cc", "commentary", "default", "full", "hearing", "impaired"}
)

TXT_SUFFIX_WORDS = frozenset({"sub", "subs", "subtitle", "subtitles", "caption", "captions", "cc"})

QUALITY_TOKENS = frozenset(
    "2160p 1080p 1080i 720p 576p 480p 4k uhd fhd hd hdr hdr10 dv sdr bluray blu-ray brrip "
    "bdrip bdremux remux webrip web-dl webdl web hdtv dvdrip dvd hdrip x264 x265 h264 h265 "
    "hevc avc xvid divx aac ac3 eac3 dts dts-hd truehd atmos ddp5 dd5 mp3 flac 10bit "
    "8bit proper repack extended unrated limited internal multi".split()
)

_LANGUAGE_SUFFIX_RE = re.compile(r"^[a-z]{2}(-[a-z]{2})?$")
_REGIONAL_CODE_RE = re.compile(r"^[a-z]{2}-[a-z]{2}$")
_SEQUENCE_RE = re.compile(r"^\d+$")
_TIMELINE_RE = re.compile(r"^\d{2}:\d{2}:\d{2}[,.]\d{3}\s*-->\s*\d{2}:\d{2}:\d{2}[,.]\d{3}")
_SHORT_TIMELINE_RE = re.compile(r"^\d{2}:\d{2}\.\d{3}\s*-->\s*\d{2}:\d{2}\.\d{3}")
_BRACKETS_RE = re.compile(r"\[.*?\]")
_PARENS_NON_YEAR_RE = re.compile(r"\((?!\d{4}\))[^)]*\)")
_SEPARATORS_RE = re.compile(r"[\s._]+")
_DISC_PART_RE = re.compile(r"[\s._-]*(cd|disc|part|pt)\s*\d{1,2}$", re.IGNORECASE)
_RELEASE_GROUP_RE = re.compile(r"-[A-Za-z0-9]+$")


# --- Classification ---


def is_subtitle_content(content: str | None) -> bool:
    """Decide from the text whether a file is really a subtitle.

    Looks for a WEBVTT or ASS header, or enough SRT-style sequence numbers
    and timelines within the first 50 non-empty lines.
    """
    if not content or not content.strip():
        return False

    lines = [line.strip() for line in content.splitlines() if line.strip()]
    if len(lines) < 3:
        return False

    if lines[0].lstrip("\ufeff").startswith("WEBVTT"):
        return True
    if lines[0].lstrip("\ufeff").startswith("[Script Info]") or "[V4+ Styles]" in lines:
        return True

    sequences = 0
    timelines = 0
    for line in lines[:50]:
        if _SEQUENCE_RE.match(line):
            sequences += 1
        if _TIMELINE_RE.match(line) or _SHORT_TIMELINE_RE.match(line):
            timelines += 1

    return (sequences >= 2 and timelines >= 2) or timelines >= 3


def classify(name: str, head_text: str | None = None) -> FileKind:
    """Classify a file by extension, sniffing content for ambiguous ones."""
    ext = PurePosixPath(name).suffix.lower()
    if ext in VIDEO_EXTENSIONS:
        return FileKind.VIDEO
    if ext in CONTENT_CHECKED_EXTENSIONS:
        return FileKind.SUBTITLE if is_subtitle_content(head_text) else FileKind.OTHER
    if ext in SUBTITLE_EXTENSIONS:
        return FileKind.SUBTITLE
    return FileKind.OTHER


# --- Name normalization ---


def is_language_token(token: str) -> bool:
    token = token.lower()
    return (
        token in LANGUAGE_CODES_2
        or token in LANGUAGE_CODES_3
        or token in LANGUAGE_NAMES
        or bool(_REGIONAL_CODE_RE.match(token))
    )


def strip_subtitle_suffixes(stem: str) -> str:
    """Remove trailing language and modifier segments ('Movie.en.forced' -> 'Movie')."""
    parts = stem.split(".")
    while len(parts) > 1:
        last = parts[-1].lower()
        if is_language_token(last) or last in SUBTITLE_MODIFIERS:
            parts.pop()
        else:
            break
    return ".".join(parts)


def normalize_base_name(name: str, is_subtitle: bool = False) -> str:
    """Comparable form of a file name.

    Drops the extension, subtitle language/modifier suffixes, bracketed
    tags, and release-group/quality tokens, then lower-cases and joins the
    remaining words with single spaces.
    """
    stem = PurePosixPath(name).stem if PurePosixPath(name).suffix else name
    if is_subtitle:
        stem = strip_subtitle_suffixes(stem)
    stem = _BRACKETS_RE.sub(" ", stem)

    words = [w for w in _SEPARATORS_RE.split(stem.lower()) if w]
    has_quality = any(w in QUALITY_TOKENS for w in words)
    if has_quality and words:
        # 'x264-sparks' -> 'x264'
        words[-1] = _RELEASE_GROUP_RE.sub("", words[-1]) or words[-1]

    kept = [w for w in words if w not in QUALITY_TOKENS]
    return " ".join(kept).strip()


def clean_directory_name(directory_name: str) -> str:
    """Strip bracketed tags and non-year parentheses from a folder name."""
    cleaned = _BRACKETS_RE.sub("", directory_name)
    cleaned = _PARENS_NON_YEAR_RE.sub("", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    return cleaned if len(cleaned) >= 3 else directory_name


def parent_directory_name(full_path: str) -> str | None:
    """Cleaned name of the immediate parent directory, if any."""
    parts = [p for p in full_path.split("/") if p]
    if len(parts) < 2:
        return None
    return clean_directory_name(parts[-2])


def _is_generic_name(base: str) -> bool:
    lowered = base.lower().strip()
    if len(lowered) < 4:
        return True
    if lowered in LANGUAGE_NAMES or lowered in SUBTITLE_DIR_NAMES or lowered in SUBTITLE_MODIFIERS:
        return True
    words = [w for w in re.split(r"[\s._\-()\[\]]+", lowered) if w]
    if words and all(
        is_language_token(w) or w in SUBTITLE_MODIFIERS or w.isdigit() or w in TXT_SUFFIX_WORDS
        for w in words
    ):
        return True
    return bool(re.match(r"^(cd|disc|part|pt)\s*\d+$", lowered))


def _is_subtitle_directory(name: str) -> bool:
    lowered = name.lower()
    return any(lowered.startswith(prefix) for prefix in SUBTITLE_DIR_PREFIXES)


def detection_name(file: FileRecord) -> str:
    """Best name to identify a subtitle's movie from.

    Uses the subtitle's own base name unless it is generic ('en.srt',
    'English.srt', 'forced.srt', 'cd1.srt'); then walks up the directory
    tree for the nearest folder that is neither very short nor a subtitle
    folder. Falls back to the longest folder name.
    """
    stem = PurePosixPath(file.name).stem
    base = strip_subtitle_suffixes(stem)
    if not _is_generic_name(base):
        return base

    dirs = [p for p in file.full_path.split("/")[:-1] if p]
    for dir_name in reversed(dirs):
        if len(dir_name) <= 3 or _is_subtitle_directory(dir_name):
            continue
        return clean_directory_name(dir_name)

    if dirs:
        return clean_directory_name(max(dirs, key=len))
    return base


def movie_key(file: FileRecord) -> str:
    """Key shared by files that almost certainly show the same movie.

    Directory plus the normalized base name with disc/part markers
    removed, so 'Movie.cd1.avi' and 'Movie.cd2.avi' share a key.
    """
    base = normalize_base_name(file.name, is_subtitle=file.is_subtitle)
    base = _DISC_PART_RE.sub("", base).strip()
    directory = file.directory
    if file.is_subtitle and directory:
        last = directory.rsplit("/", 1)[-1]
        if last.lower() in SUBTITLE_DIR_NAMES:
            directory = directory.rsplit("/", 1)[0] if "/" in directory else ""
    return f"{directory}/{base}"


# --- Pairing ---


@dataclass(frozen=True)
class _Match:
    rank: int  # 0 exact, 1 suffix, 2 normalized, 3 subtitle-folder
    common_prefix: int
    video_path: str

    def sort_key(self) -> tuple:
        return (self.rank, -self.common_prefix, self.video_path)


def _common_prefix_len(a: str, b: str) -> int:
    n = 0
    for x, y in zip(a, b):
        if x != y:
            break
        n += 1
    return n


def _suffix_allowed(remainder: str, ext: str) -> bool:
    if not remainder:
        return False
    if ext not in CONTENT_CHECKED_EXTENSIONS:
        return True
    segments = remainder.lower().split(".")
    return any(
        _LANGUAGE_SUFFIX_RE.match(s) or is_language_token(s) or s in TXT_SUFFIX_WORDS
        for s in segments
    )


def _match(video: FileRecord, subtitle: FileRecord, via_subtitle_dir: bool) -> _Match | None:
    video_stem = video.stem.lower()
    sub_stem = subtitle.stem.lower()
    video_norm = normalize_base_name(video.name)
    sub_norm = normalize_base_name(subtitle.name, is_subtitle=True)
    prefix = _common_prefix_len(video_norm, sub_norm)

    if sub_stem == video_stem:
        if subtitle.extension in CONTENT_CHECKED_EXTENSIONS and not via_subtitle_dir:
            return None
        return _Match(0, prefix, video.full_path)
    if sub_stem.startswith(video_stem + "."):
        if _suffix_allowed(sub_stem[len(video_stem) + 1 :], subtitle.extension):
            return _Match(1, prefix, video.full_path)
        return None
    if video_norm and sub_norm == video_norm:
        return _Match(2, prefix, video.full_path)
    if via_subtitle_dir:
        return _Match(3, prefix, video.full_path)
    return None


def _candidate_directories(subtitle: FileRecord) -> list[tuple[str, bool]]:
    directory = subtitle.directory
    candidates = [(directory, False)]
    if directory:
        parts = directory.split("/")
        if parts[-1].lower() in SUBTITLE_DIR_NAMES:
            candidates.append(("/".join(parts[:-1]), True))
    return candidates


def pair(files: list[FileRecord]) -> PairingResult:
    """Group videos with their subtitles.

    A subtitle matches a video in the same directory (or, for subtitles
    inside a subs/subtitles folder, in the parent directory) when the base
    names are equal, when the subtitle name is the video name plus a
    trailing segment ('movie.en.srt' for 'movie.mkv'), or when the
    normalized names agree. Ties go to the strongest kind of match, then
    the longest common prefix, then path order.

    Every video yields a group, possibly empty. Unmatched subtitles are
    returned as orphans. Never raises for an empty result.
    """
    videos = sorted((f for f in files if f.kind == FileKind.VIDEO), key=lambda f: f.full_path)
    subtitles = sorted(
        (f for f in files if f.kind == FileKind.SUBTITLE and not f.removal_flag),
        key=lambda f: f.full_path,
    )

    videos_by_dir: dict[str, list[FileRecord]] = {}
    for video in videos:
        videos_by_dir.setdefault(video.directory, []).append(video)

    assigned: dict[str, list[FileRecord]] = {v.full_path: [] for v in videos}
    orphans: list[FileRecord] = []

    for subtitle in subtitles:
        best: _Match | None = None
        for directory, via_subtitle_dir in _candidate_directories(subtitle):
            for video in videos_by_dir.get(directory, []):
                match = _match(video, subtitle, via_subtitle_dir)
                if match and (best is None or match.sort_key() < best.sort_key()):
                    best = match
        if best is None:
            orphans.append(subtitle)
        else:
            assigned[best.video_path].append(subtitle)

    groups = [PairedGroup(video=v, subtitles=assigned[v.full_path]) for v in videos]
    return PairingResult(groups=groups, orphans=orphans)
