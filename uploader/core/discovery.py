"""Folder discovery: turn a dropped directory tree into FileRecords.

ZIP archives found in the tree are opened and their video and subtitle
members extracted to a scratch directory. Extracted members are listed
as if they sat next to the archive, so a `subs.zip` beside a movie pairs
with it like loose subtitle files would.
"""

import asyncio
import hashlib
import logging
import shutil
import tempfile
import zipfile
from pathlib import Path, PurePosixPath

from uploader.config import settings
from uploader.core.errors import FileReadError, error_context
from uploader.core.pairing import CONTENT_CHECKED_EXTENSIONS, classify
from uploader.models.files import FileKind, FileRecord

logger = logging.getLogger(__name__)

SNIFF_BYTES = 4096
ARCHIVE_EXTENSIONS = frozenset({".zip"})
_ARCHIVE_JUNK = frozenset({"__MACOSX", ".DS_Store", "Thumbs.db"})


def _sniff_text(path: Path) -> str | None:
    try:
        with path.open("rb") as fh:
            return fh.read(SNIFF_BYTES).decode("utf-8", errors="ignore")
    except OSError as e:
        logger.warning(f"Could not sniff {path.name}: {e}")
        return None


def _is_hidden(relative: Path) -> bool:
    return any(part.startswith(".") for part in relative.parts)


def is_archive(path: Path) -> bool:
    return path.suffix.lower() in ARCHIVE_EXTENSIONS


def build_record(path: Path, root: Path) -> FileRecord:
    """Build a record for one file, sniffing content where needed."""
    relative = path.relative_to(root)
    head = _sniff_text(path) if path.suffix.lower() in CONTENT_CHECKED_EXTENSIONS else None
    return FileRecord(
        full_path=relative.as_posix(),
        size=path.stat().st_size,
        kind=classify(path.name, head),
        absolute_path=str(path),
    )


def _member_path(name: str) -> PurePosixPath | None:
    """Archive member name as a safe relative path, or None to skip it."""
    member = PurePosixPath(name.replace("\\", "/"))
    if member.is_absolute() or ".." in member.parts or not member.parts:
        return None
    if any(part.startswith(".") or part in _ARCHIVE_JUNK for part in member.parts):
        return None
    return member


def _extract_dir() -> Path:
    if settings.archive_extract_dir:
        return Path(settings.archive_extract_dir)
    return Path(tempfile.gettempdir()) / "subtitle-uploader-archives"


def extract_archive(
    archive: Path,
    root: Path,
    dest: Path | None = None,
    max_bytes: int | None = None,
) -> list[FileRecord]:
    """Extract the video and subtitle members of a ZIP archive (blocking).

    Members land under `dest` in a folder unique to the archive. Their
    records are keyed as if they lived in the archive's own folder and
    remember the archive in `extracted_from`. Both the archive and the
    media it unpacks are capped at `max_bytes` (100 MB by default).

    Raises:
        FileReadError: the archive is too large, corrupt or unreadable.
    """
    max_bytes = settings.max_archive_bytes if max_bytes is None else max_bytes
    limit_mb = max_bytes // (1024 * 1024)
    size = archive.stat().st_size
    if size > max_bytes:
        raise FileReadError(
            f"Archive {archive.name} is too large ({size / 1024 / 1024:.1f} MB). "
            f"Maximum allowed size is {limit_mb} MB"
        )

    relative = archive.relative_to(root).as_posix()
    parent = PurePosixPath(relative).parent
    digest = hashlib.sha1(str(archive.resolve()).encode("utf-8")).hexdigest()[:16]
    target = (dest or _extract_dir()) / digest

    records: list[FileRecord] = []
    with error_context(
        error_types=(OSError, zipfile.BadZipFile, RuntimeError),
        default_message=f"Failed to extract {archive.name}",
        wrap_as=FileReadError,
    ):
        with zipfile.ZipFile(archive) as zf:
            members = []
            for info in zf.infolist():
                member = None if info.is_dir() else _member_path(info.filename)
                if member is None:
                    continue
                ext = member.suffix.lower()
                if ext not in CONTENT_CHECKED_EXTENSIONS and classify(member.name) == FileKind.OTHER:
                    continue
                members.append((info, member))

            unpacked = sum(info.file_size for info, _ in members)
            if unpacked > max_bytes:
                raise FileReadError(
                    f"Archive {archive.name} unpacks to {unpacked / 1024 / 1024:.1f} MB. "
                    f"Maximum allowed size is {limit_mb} MB"
                )

            for info, member in members:
                out = target.joinpath(*member.parts)
                out.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info) as src, out.open("wb") as dst:
                    shutil.copyfileobj(src, dst)
                head = _sniff_text(out) if member.suffix.lower() in CONTENT_CHECKED_EXTENSIONS else None
                kind = classify(member.name, head)
                if kind == FileKind.OTHER:
                    out.unlink()
                    continue
                records.append(
                    FileRecord(
                        full_path=(parent / member).as_posix(),
                        size=info.file_size,
                        kind=kind,
                        absolute_path=str(out),
                        extracted_from=relative,
                    )
                )

    logger.info(f"Extracted {len(records)} media file(s) from {relative}")
    return records


def scan_directory(
    root: str | Path,
    include_other: bool = False,
    extract_archives: bool = True,
    archive_dir: str | Path | None = None,
) -> list[FileRecord]:
    """Walk `root` and return records for videos and subtitles (blocking).

    Hidden files and folders are skipped. Records are sorted by path so a
    rescan of an unchanged tree gives identical output. An archive that
    cannot be extracted is logged and skipped. An extracted member whose
    path is already taken by a file on disk is dropped.

    Raises:
        FileReadError: `root` does not exist or is not a directory.
    """
    root = Path(root)
    if not root.is_dir():
        raise FileReadError(f"Not a directory: {root}")
    dest = Path(archive_dir) if archive_dir is not None else None

    records: list[FileRecord] = []
    extracted: list[FileRecord] = []
    with error_context(
        error_types=(OSError,),
        default_message=f"Failed to scan {root}",
        wrap_as=FileReadError,
    ):
        for path in sorted(root.rglob("*")):
            if not path.is_file() or _is_hidden(path.relative_to(root)):
                continue
            if extract_archives and is_archive(path):
                try:
                    extracted.extend(extract_archive(path, root, dest))
                except FileReadError as e:
                    logger.error(f"Skipping archive {path.name}: {e}")
                continue
            record = build_record(path, root)
            if record.kind == FileKind.OTHER and not include_other:
                continue
            records.append(record)

    taken = {r.full_path for r in records}
    for record in extracted:
        if record.full_path in taken:
            logger.warning(f"Skipping {record.full_path} from {record.extracted_from}: path already present")
            continue
        taken.add(record.full_path)
        records.append(record)
    records.sort(key=lambda r: r.full_path)

    videos = sum(1 for r in records if r.is_video)
    subtitles = sum(1 for r in records if r.is_subtitle)
    logger.info(f"Discovered {videos} video(s) and {subtitles} subtitle(s) under {root}")
    return records


async def discover(
    root: str | Path,
    include_other: bool = False,
    extract_archives: bool = True,
    archive_dir: str | Path | None = None,
) -> list[FileRecord]:
    """Scan a folder tree without blocking the event loop."""
    return await asyncio.to_thread(scan_directory, root, include_other, extract_archives, archive_dir)
