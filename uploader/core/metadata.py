"""Technical metadata extraction via ffprobe."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from uploader.core.errors import FileReadError
from uploader.models.identity import VideoMetadata

logger = logging.getLogger(__name__)


def parse_frame_rate(value: str | None) -> float | None:
    """Parse ffprobe rates such as '24000/1001' or '25'."""
    if not value:
        return None
    if "/" in value:
        numerator, denominator = value.split("/", 1)
        try:
            num = float(numerator)
            den = float(denominator)
        except ValueError:
            return None
        if not den:
            return None
        return num / den
    try:
        return float(value)
    except ValueError:
        return None


def _to_int(value: Any) -> int | None:
    try:
        return int(float(value)) if value not in (None, "", "N/A") else None
    except (TypeError, ValueError):
        return None


def parse_ffprobe_output(payload: dict) -> VideoMetadata:
    """Build VideoMetadata from `ffprobe -show_format -show_streams` JSON."""
    streams = payload.get("streams") or []
    fmt = payload.get("format") or {}

    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    audio_codecs = [
        s.get("codec_name") for s in streams if s.get("codec_type") == "audio" and s.get("codec_name")
    ]

    duration = fmt.get("duration") or (video or {}).get("duration")
    duration_ms = None
    if duration not in (None, "", "N/A"):
        try:
            duration_ms = int(round(float(duration) * 1000))
        except (TypeError, ValueError):
            duration_ms = None

    fps = None
    frames = None
    width = height = None
    codec = None
    if video:
        fps = parse_frame_rate(video.get("avg_frame_rate")) or parse_frame_rate(
            video.get("r_frame_rate")
        )
        if fps is not None and fps <= 0:
            fps = None
        frames = _to_int(video.get("nb_frames"))
        width = _to_int(video.get("width"))
        height = _to_int(video.get("height"))
        codec = video.get("codec_name")

    if frames is None and fps and duration_ms:
        frames = int(round(duration_ms / 1000 * fps))

    return VideoMetadata(
        duration_ms=duration_ms,
        fps=round(fps, 3) if fps else None,
        frames=frames,
        width=width,
        height=height,
        video_codec=codec,
        audio_codecs=audio_codecs,
        bitrate=_to_int(fmt.get("bit_rate")),
        container=fmt.get("format_name"),
    )


async def extract_metadata(
    path: str | Path, ffprobe_path: str = "ffprobe", timeout: float = 10.0
) -> VideoMetadata:
    """Run ffprobe on a video and parse its output.

    Raises:
        FileReadError: ffprobe is missing, timed out, failed, or printed
            something that is not JSON.
    """
    path = Path(path)
    try:
        proc = await asyncio.create_subprocess_exec(
            ffprobe_path,
            "-v",
            "error",
            "-print_format",
            "json",
            "-show_format",
            "-show_streams",
            str(path),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise FileReadError(f"Could not start ffprobe ({ffprobe_path}): {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError as e:
        proc.kill()
        await proc.wait()
        raise FileReadError(f"ffprobe timed out after {timeout:.0f}s on {path.name}") from e

    if proc.returncode != 0:
        message = stderr.decode(errors="ignore").strip() or f"exit code {proc.returncode}"
        raise FileReadError(f"ffprobe failed on {path.name}: {message}")

    try:
        payload = json.loads(stdout.decode(errors="ignore") or "{}")
    except json.JSONDecodeError as e:
        raise FileReadError(f"ffprobe returned invalid JSON for {path.name}: {e}") from e

    metadata = parse_ffprobe_output(payload)
    logger.debug(
        f"Metadata for {path.name}: {metadata.width}x{metadata.height} "
        f"{metadata.fps} fps, {metadata.duration_ms} ms"
    )
    return metadata
