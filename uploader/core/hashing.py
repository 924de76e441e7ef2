"""Content fingerprints for videos and subtitles.

The video fingerprint is the OpenSubtitles movie hash: file size plus the
64-bit little-endian word sums of the first and last 64 KiB, with 64-bit
wraparound. Subtitle fingerprints are MD5 digests of the raw bytes, which
is what the duplicate-check and upload calls expect.

Hashing reads in small chunks on a worker thread and checks a
cancellation event between chunks, so the event loop stays responsive and
a superseded drop can stop a long read.
"""

import asyncio
import base64
import hashlib
import logging
import struct
import threading
import zlib
from pathlib import Path

from uploader.core.errors import FileReadError, HashCancelled, error_context

logger = logging.getLogger(__name__)

HASH_WINDOW = 64 * 1024
READ_CHUNK = 8 * 1024
WORD_SIZE = 8
MASK_64 = 0xFFFFFFFFFFFFFFFF


def _sum_words(data: bytes) -> int:
    """Sum little-endian uint64 words, zero-padding a trailing partial word."""
    remainder = len(data) % WORD_SIZE
    if remainder:
        data = data + b"\x00" * (WORD_SIZE - remainder)
    count = len(data) // WORD_SIZE
    return sum(struct.unpack(f"<{count}Q", data)) & MASK_64


def _sum_window(
    fh, offset: int, length: int, cancel_event: threading.Event | None
) -> int:
    """Checksum `length` bytes starting at `offset`, reading chunk by chunk."""
    fh.seek(offset)
    total = 0
    remaining = length
    while remaining > 0:
        if cancel_event is not None and cancel_event.is_set():
            raise HashCancelled("Hash computation cancelled")
        chunk = fh.read(min(READ_CHUNK, remaining))
        if not chunk:
            raise FileReadError(f"Unexpected end of file at offset {offset + length - remaining}")
        total = (total + _sum_words(chunk)) & MASK_64
        remaining -= len(chunk)
    return total


def compute_movie_hash(path: str | Path, cancel_event: threading.Event | None = None) -> str:
    """Compute the OpenSubtitles movie hash for a file (blocking).

    Files shorter than one window are summed in full for both the head
    and the tail, so their content counts twice.

    Raises:
        FileReadError: the file is empty, unreadable, or vanished mid-read.
        HashCancelled: `cancel_event` was set before the read finished.
    """
    path = Path(path)
    with error_context(
        error_types=(OSError,),
        default_message=f"Failed to read {path.name} for hashing",
        log_level="warning",
        wrap_as=FileReadError,
    ):
        size = path.stat().st_size
        if size == 0:
            raise FileReadError(f"Cannot hash empty file {path.name}")

        window = min(HASH_WINDOW, size)
        with path.open("rb") as fh:
            head = _sum_window(fh, 0, window, cancel_event)
            tail = _sum_window(fh, size - window, window, cancel_event)

    movie_hash = (size + head + tail) & MASK_64
    return f"{movie_hash:016x}"


async def hash_video(
    path: str | Path,
    cancel_event: threading.Event | None = None,
    timeout: float = 30.0,
) -> str:
    """Compute the movie hash off the event loop.

    Cancelling the awaiting task (or hitting the timeout) sets the cancel
    event so the worker thread stops at its next chunk boundary.
    """
    cancel_event = cancel_event or threading.Event()
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(compute_movie_hash, path, cancel_event), timeout=timeout
        )
    except asyncio.TimeoutError as e:
        cancel_event.set()
        raise FileReadError(f"Hashing {Path(path).name} timed out after {timeout:.0f}s") from e
    except asyncio.CancelledError:
        cancel_event.set()
        raise


def hash_subtitle_text(data: bytes | str) -> str:
    """MD5 fingerprint of subtitle content, as lowercase hex."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.md5(data).hexdigest()


def _read_bytes(path: Path, limit: int | None = None) -> bytes:
    with error_context(
        error_types=(OSError,),
        default_message=f"Failed to read {path.name}",
        log_level="warning",
        wrap_as=FileReadError,
    ):
        with path.open("rb") as fh:
            return fh.read() if limit is None else fh.read(limit)


async def read_file_bytes(path: str | Path, limit: int | None = None) -> bytes:
    """Read a file (or its first `limit` bytes) on a worker thread."""
    return await asyncio.to_thread(_read_bytes, Path(path), limit)


async def hash_subtitle_file(path: str | Path) -> str:
    """Read a subtitle file and return its MD5 fingerprint."""
    data = await read_file_bytes(path)
    return hash_subtitle_text(data)


def compress_subtitle(data: bytes | str) -> str:
    """Deflate and base64-encode subtitle content for upload."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return base64.b64encode(zlib.compress(data)).decode("ascii")


def is_valid_fingerprint(value: str | None) -> bool:
    """A fingerprint is usable only if present and not a zero placeholder."""
    if not value:
        return False
    return value.strip("0") != ""
