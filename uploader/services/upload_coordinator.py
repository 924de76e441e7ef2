"""Upload coordinator: submits upload-ready subtitles to OpenSubtitles.

Candidates are grouped by parent video and identity so each group shares
one set of movie fields, and each subtitle adds its own language and
options. Every candidate is handled independently; a rejection or network
failure is recorded for that candidate and the batch moves on.
"""

import asyncio
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from uploader.clients.opensubtitles import OpenSubtitlesClient
from uploader.config import settings
from uploader.core.errors import UploaderError, describe_error
from uploader.core.hashing import compress_subtitle, hash_subtitle_text, is_valid_fingerprint, read_file_bytes
from uploader.models.upload import UploadCandidate, UploadOutcome, UploadReport, UploadStatus
from uploader.services.duplicates import DuplicateService
from uploader.services.event_broadcaster import EventBroadcaster

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str, dict[str, int]], Any]

_HD_NAME_TOKENS = ("1080p", "1080i", "2160p", "4k")


def _flag(value: bool) -> str:
    return "1" if value else "0"


def _subtitle_ref(data: Any) -> tuple[int | None, str | None]:
    """Subtitle id and/or URL from an upload response's `data` field."""
    if isinstance(data, str) and data.startswith("http"):
        return None, data
    entries = data if isinstance(data, list) else [data] if isinstance(data, dict) else []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        raw = entry.get("IDSubtitleFile") or entry.get("IDSubtitle")
        try:
            return int(raw), None
        except (TypeError, ValueError):
            continue
    return None, None


def group_candidates(candidates: list[UploadCandidate]) -> dict[tuple, list[UploadCandidate]]:
    """Group candidates by (video path, upload id), keeping input order."""
    groups: dict[tuple, list[UploadCandidate]] = {}
    for candidate in candidates:
        groups.setdefault(candidate.group_key, []).append(candidate)
    return groups


def is_high_definition(candidate: UploadCandidate) -> bool:
    if candidate.options.high_definition is not None:
        return candidate.options.high_definition
    metadata = candidate.video_metadata
    if metadata is not None and (metadata.height or metadata.width):
        return metadata.is_high_definition
    name = (candidate.video.name if candidate.video else candidate.subtitle.name).lower()
    return any(token in name for token in _HD_NAME_TOKENS)


def build_group_info(candidate: UploadCandidate) -> dict[str, Any]:
    """Movie fields shared by every subtitle of a group, taken from its first candidate."""
    options = candidate.options
    source = candidate.video or candidate.subtitle
    return {
        "idmovieimdb": candidate.identity.upload_imdb_id,
        "moviereleasename": options.release_name or source.stem,
        "movieaka": options.movie_aka,
    }


def build_baseinfo(candidate: UploadCandidate, group_info: dict[str, Any] | None = None) -> dict[str, Any]:
    """The group's movie fields plus this candidate's own options.

    A release name or alternative title set on the candidate overrides
    the group's.
    """
    options = candidate.options
    baseinfo = dict(group_info or build_group_info(candidate))
    if options.release_name:
        baseinfo["moviereleasename"] = options.release_name
    if options.movie_aka:
        baseinfo["movieaka"] = options.movie_aka
    baseinfo.update(
        {
            "sublanguageid": candidate.language,
            "subauthorcomment": options.comment,
            "hearingimpaired": _flag(options.hearing_impaired),
            "highdefinition": _flag(is_high_definition(candidate)),
            "automatictranslation": _flag(options.automatic_translation),
            "subtranslator": options.translator,
            "foreignpartsonly": _flag(options.foreign_parts_only),
        }
    )
    return baseinfo


def build_cd1(candidate: UploadCandidate, subtitle_hash: str) -> dict[str, Any]:
    """Per-file struct. Orphans carry no video fields.

    A missing or placeholder video hash is left out rather than sent.
    """
    cd1: dict[str, Any] = {
        "subhash": subtitle_hash,
        "subfilename": candidate.subtitle.name,
        "idmovieimdb": candidate.identity.upload_imdb_id,
    }
    video = candidate.video
    if video is None:
        return cd1
    if is_valid_fingerprint(video.content_hash):
        cd1["moviehash"] = video.content_hash
    cd1.update({"moviebytesize": video.size, "moviefilename": video.name})
    metadata = video.metadata
    if metadata is not None:
        cd1.update(
            {
                "movietimems": metadata.duration_ms,
                "moviefps": metadata.fps,
                "movieframes": metadata.frames,
            }
        )
    return cd1


class UploadCoordinator:
    """Best-effort batch submission of upload candidates."""

    def __init__(
        self,
        client: OpenSubtitlesClient,
        duplicates: DuplicateService,
        broadcaster: EventBroadcaster | None = None,
        staleness_seconds: float | None = None,
        root: str | Path | None = None,
    ):
        self._client = client
        self._duplicates = duplicates
        self._broadcaster = broadcaster
        self.staleness_seconds = (
            settings.duplicate_staleness_seconds if staleness_seconds is None else staleness_seconds
        )
        self.root = Path(root) if root else None

    def _local_path(self, candidate: UploadCandidate) -> Path:
        subtitle = candidate.subtitle
        if subtitle.absolute_path:
            return Path(subtitle.absolute_path)
        if self.root is not None:
            return self.root / subtitle.full_path
        return Path(subtitle.full_path)

    async def upload(
        self,
        candidates: list[UploadCandidate],
        on_progress: ProgressCallback | None = None,
        report: UploadReport | None = None,
    ) -> UploadReport:
        """Submit every candidate; one outcome per candidate.

        Args:
            candidates: Validated candidates
            on_progress: Called as on_progress(processed, total, current, counts)
                after each candidate (may be a coroutine function)
            report: Report to extend, e.g. with outcomes for candidates that
                failed validation before submission

        Returns:
            The report with success and failure outcomes.
        """
        report = report or UploadReport()
        total = report.processed + len(candidates)
        logger.info(f"Uploading {len(candidates)} subtitle(s)")
        if self._broadcaster is not None:
            await self._broadcaster.broadcast_upload_started(total)

        for key, group in group_candidates(candidates).items():
            group_info = build_group_info(group[0])
            logger.debug(f"Upload group {key}: {len(group)} subtitle(s)")
            for candidate in group:
                outcome = await self._submit_one(candidate, build_baseinfo(candidate, group_info))
                report.record(outcome)
                await self._progress(report, total, outcome, on_progress)

        counts = report.counts
        logger.info(
            f"Upload finished: {counts['successful']} uploaded, "
            f"{counts['exists']} already present, {counts['failed']} failed"
        )
        if self._broadcaster is not None:
            await self._broadcaster.broadcast_upload_completed(total, counts)
        return report

    async def _progress(
        self,
        report: UploadReport,
        total: int,
        outcome: UploadOutcome,
        on_progress: ProgressCallback | None,
    ) -> None:
        if on_progress is not None:
            result = on_progress(report.processed, total, outcome.subtitle_path, report.counts)
            if asyncio.iscoroutine(result):
                await result
        if self._broadcaster is not None:
            try:
                await self._broadcaster.broadcast_upload_progress(report.processed, total, outcome, report.counts)
            except Exception as e:
                logger.warning(f"Upload progress broadcast failed: {e}")

    async def _submit_one(self, candidate: UploadCandidate, baseinfo: dict[str, Any]) -> UploadOutcome:
        path = candidate.subtitle.full_path
        try:
            return await self._submit(candidate, baseinfo)
        except UploaderError as e:
            logger.warning(f"Upload of {path} failed: {e}")
            error = describe_error(e)
            return UploadOutcome(path, UploadStatus.FAILED, message=error["message"], error_kind=error["kind"])

    async def _submit(self, candidate: UploadCandidate, baseinfo: dict[str, Any]) -> UploadOutcome:
        path = candidate.subtitle.full_path
        content = await read_file_bytes(self._local_path(candidate))
        subtitle_hash = hash_subtitle_text(content)

        status = await self._duplicates.check(subtitle_hash, max_age=self.staleness_seconds)
        if status.exists:
            candidate.subtitle.duplicate = status
            return UploadOutcome(path, UploadStatus.EXISTS, message="Already in database", url=status.url)

        cd1 = build_cd1(candidate, subtitle_hash)
        tried = await self._client.try_upload(cd1)
        if str(tried.get("alreadyindb", "0")) == "1":
            subtitle_id, url = _subtitle_ref(tried.get("data"))
            status = await self._duplicates.mark_exists(subtitle_hash, subtitle_id, url)
            candidate.subtitle.duplicate = status
            return UploadOutcome(path, UploadStatus.EXISTS, message="Already in database", url=status.url)

        cd1["subcontent"] = compress_subtitle(content)
        response = await self._client.upload_subtitles(baseinfo, cd1)
        subtitle_id, url = _subtitle_ref(response.get("data"))
        status = await self._duplicates.mark_exists(subtitle_hash, subtitle_id, url)
        candidate.subtitle.duplicate = status
        if str(response.get("alreadyindb", "0")) == "1":
            return UploadOutcome(path, UploadStatus.EXISTS, message="Already in database", url=status.url)
        logger.info(f"Uploaded {path} -> {status.url or 'ok'}")
        return UploadOutcome(path, UploadStatus.SUCCESS, message="Uploaded", url=status.url)
