"""Processing pipeline: runs the per-file identification stages.

Each drop of files opens a scheduler generation. Videos are hashed and
probed immediately; identification, tag, language and duplicate stages
are staggered per file. Results that arrive after a newer drop (or a
clear) are discarded.

Identification work is shared at schedule time: a video publishes a
future for its identity, and the subtitles paired with it (or orphans
next to it that share its movie key) await that future instead of
querying the service themselves.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from uploader.clients.opensubtitles import OpenSubtitlesClient
from uploader.config import Settings, settings
from uploader.core.errors import FileReadError, NotFoundError, ValidationError, describe_error
from uploader.core.hashing import hash_subtitle_file, hash_video
from uploader.core.metadata import extract_metadata
from uploader.core.pairing import detection_name, movie_key, pair, parent_directory_name
from uploader.core.retry import retry_async
from uploader.core.scheduler import TaskScheduler
from uploader.core.tags import TagParseError, parse_tags_offline
from uploader.models.files import FileKind, FileRecord, PairingResult
from uploader.models.identity import MovieIdentity
from uploader.models.stages import SUBTITLE_STAGES, VIDEO_STAGES, StageName, StageResult, StageState
from uploader.models.upload import (
    UploadCandidate,
    UploadOptions,
    UploadOutcome,
    UploadReport,
    UploadStatus,
)
from uploader.services.cache_service import TTLCache
from uploader.services.duplicates import DuplicateService
from uploader.services.event_broadcaster import EventBroadcaster
from uploader.services.identification import IdentificationService
from uploader.services.language import LanguageService
from uploader.services.stage_state_machine import StageTable
from uploader.services.tags import TagService
from uploader.services.upload_coordinator import ProgressCallback, UploadCoordinator

logger = logging.getLogger(__name__)


class PipelineContext:
    """Everything one pipeline instance works with.

    Built once at application start and passed to the orchestrator;
    `reset()` drops the current file set and invalidates its work.
    """

    def __init__(
        self,
        client: OpenSubtitlesClient | None = None,
        cache: TTLCache | None = None,
        broadcaster: EventBroadcaster | None = None,
        scheduler: TaskScheduler | None = None,
        config: Settings | None = None,
    ):
        self.settings = config or settings
        self.client = client or OpenSubtitlesClient()
        self.cache = cache or TTLCache()
        self.broadcaster = broadcaster
        self.scheduler = scheduler or TaskScheduler()
        self.stages = StageTable(broadcaster)

        self.identification = IdentificationService(self.client, self.cache)
        self.tags = TagService(self.client, self.cache)
        self.language = LanguageService(self.client, self.cache, self.settings.language_sample_bytes)
        self.duplicates = DuplicateService(self.client, self.cache, self.settings.sub_hash_cache_ttl_seconds)
        self.uploads = UploadCoordinator(
            self.client,
            self.duplicates,
            broadcaster,
            staleness_seconds=self.settings.duplicate_staleness_seconds,
        )

        self.root: Path | None = None
        self.files: dict[str, FileRecord] = {}
        self.pairing = PairingResult()

    @property
    def generation(self) -> int:
        return self.scheduler.current_generation

    def reset(self) -> int:
        """Cancel the current generation, forget its files and open a new one."""
        cancelled = self.scheduler.cancel_generation(self.scheduler.current_generation)
        self.stages.clear()
        self.files = {}
        self.pairing = PairingResult()
        self.root = None
        generation = self.scheduler.new_generation()
        logger.info(f"Pipeline reset ({cancelled} task(s) cancelled), generation {generation}")
        return generation

    async def aclose(self) -> None:
        await self.scheduler.shutdown()
        await self.client.aclose()


class PipelineOrchestrator:
    """Schedules and tracks the stages of every loaded file."""

    def __init__(self, context: PipelineContext):
        self.ctx = context
        self._semaphore = asyncio.Semaphore(max(1, context.settings.max_concurrent_stages))
        self._reset_tracking()

    def _reset_tracking(self) -> None:
        # Identity futures published by the files that query for a movie
        self._identity_futures: dict[str, asyncio.Future] = {}
        # Future each subtitle awaits instead of querying itself
        self._sibling_futures: dict[str, asyncio.Future] = {}
        self._identified: dict[str, asyncio.Event] = {}
        self._inline_tags: dict[str, dict] = {}

    # --- Loading ---

    async def load(self, files: list[FileRecord], root: str | Path | None = None) -> int:
        """Replace the current file set and schedule its stages.

        Returns:
            The generation id of the new file set.
        """
        generation = self.ctx.reset()
        self._reset_tracking()

        self.ctx.root = Path(root) if root else None
        self.ctx.uploads.root = self.ctx.root
        records = [f for f in files if f.kind != FileKind.OTHER]
        self.ctx.files = {f.full_path: f for f in records}
        pairing = pair(records)
        self.ctx.pairing = pairing

        for record in sorted(records, key=lambda f: f.full_path):
            stages = VIDEO_STAGES if record.is_video else SUBTITLE_STAGES
            await self.ctx.stages.initialize(record.full_path, stages)
            self._identified[record.full_path] = asyncio.Event()

        if self.ctx.broadcaster is not None:
            await self.ctx.broadcaster.broadcast_drop_loaded(generation, records, pairing)

        self._schedule_all(generation, pairing)
        logger.info(
            f"Loaded {len(records)} file(s): {len(pairing.groups)} group(s), "
            f"{len(pairing.orphans)} orphan(s), generation {generation}"
        )
        return generation

    async def clear(self) -> int:
        """Drop the current file set; late results from it are ignored."""
        generation = self.ctx.reset()
        self._reset_tracking()
        if self.ctx.broadcaster is not None:
            await self.ctx.broadcaster.broadcast_drop_cleared(generation)
        return generation

    def _schedule_all(self, generation: int, pairing: PairingResult) -> None:
        cfg = self.ctx.settings
        scheduler = self.ctx.scheduler

        self._plan_identity_sharing(pairing)

        for index, group in enumerate(pairing.groups):
            video = group.video
            path = video.full_path
            scheduler.schedule(
                lambda v=video: self._run_hash(generation, v), generation=generation, name=f"hash:{path}"
            )
            scheduler.schedule(
                lambda v=video: self._run_metadata(generation, v),
                generation=generation,
                name=f"metadata:{path}",
            )
            scheduler.schedule(
                lambda v=video: self._identify_video(generation, v),
                delay=index * cfg.identification_stagger,
                generation=generation,
                name=f"identify:{path}",
            )

        subtitles = [s for group in pairing.groups for s in group.subtitles] + list(pairing.orphans)
        for index, subtitle in enumerate(subtitles):
            path = subtitle.full_path
            scheduler.schedule(
                lambda s=subtitle: self._identify_subtitle(generation, s),
                delay=index * cfg.subtitle_stagger,
                generation=generation,
                name=f"identify:{path}",
            )
            scheduler.schedule(
                lambda s=subtitle: self._run_language(generation, s),
                delay=index * cfg.language_stagger,
                generation=generation,
                name=f"language:{path}",
            )
            scheduler.schedule(
                lambda s=subtitle: self._run_duplicate_check(generation, s),
                delay=index * cfg.duplicate_check_stagger,
                generation=generation,
                name=f"duplicate:{path}",
            )

    # --- Stage runner ---

    async def _run_stage(
        self,
        generation: int,
        record: FileRecord,
        stage: StageName,
        work: Callable[[], Awaitable[Any]],
        apply: Callable[[Any], None] | None = None,
    ) -> StageResult | None:
        """Run one stage with retry and record its terminal result.

        Returns None when the stage was skipped (already in flight or done)
        or its result was discarded as stale.
        """
        table = self.ctx.stages
        path = record.full_path
        if not self.ctx.scheduler.is_current(generation):
            return None
        current = table.get(path, stage)
        if current.state in (StageState.PROCESSING, StageState.COMPLETE):
            logger.debug(f"{path} [{stage.value}] already {current.state.value}, not rescheduled")
            return None

        await table.begin(path, stage)
        attempts = 0

        async def _attempt():
            nonlocal attempts
            attempts += 1
            async with self._semaphore:
                return await work()

        cfg = self.ctx.settings
        try:
            value = await retry_async(
                _attempt,
                attempts=cfg.retry_attempts,
                base_delay=cfg.retry_base_delay,
                max_delay=cfg.retry_max_delay,
                name=f"{stage.value} {record.name}",
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not self._still_processing(generation, path, stage):
                return None
            logger.warning(f"{path} [{stage.value}] failed after {attempts} attempt(s): {e}")
            return await table.fail(path, stage, describe_error(e), attempts)

        if not self._still_processing(generation, path, stage):
            logger.debug(f"{path} [{stage.value}] result discarded")
            return None
        if apply is not None:
            apply(value)
        return await table.complete(path, stage, value, attempts)

    def _still_processing(self, generation: int, path: str, stage: StageName) -> bool:
        if not self.ctx.scheduler.is_current(generation):
            return False
        return self.ctx.stages.get(path, stage).state == StageState.PROCESSING

    def _local_path(self, record: FileRecord) -> Path:
        if record.absolute_path:
            return Path(record.absolute_path)
        if self.ctx.root is not None:
            return self.ctx.root / record.full_path
        raise FileReadError(f"{record.full_path}: no local path")

    async def _enriched(self, record: FileRecord, *fields: str) -> None:
        if self.ctx.broadcaster is None:
            return
        try:
            await self.ctx.broadcaster.broadcast_file_enriched(record, *fields)
        except Exception as e:
            logger.warning(f"{record.full_path}: file update broadcast failed: {e}")

    # --- Video stages ---

    async def _run_hash(self, generation: int, video: FileRecord) -> None:
        def _apply(value: str) -> None:
            video.content_hash = value

        result = await self._run_stage(
            generation,
            video,
            StageName.HASH,
            lambda: hash_video(self._local_path(video), timeout=self.ctx.settings.hash_timeout),
            _apply,
        )
        if result is not None and result.state == StageState.COMPLETE:
            await self._enriched(video, "content_hash")

    async def _run_metadata(self, generation: int, video: FileRecord) -> None:
        cfg = self.ctx.settings

        def _apply(value) -> None:
            video.metadata = value

        result = await self._run_stage(
            generation,
            video,
            StageName.METADATA_EXTRACTION,
            lambda: extract_metadata(self._local_path(video), cfg.ffprobe_path, cfg.metadata_timeout),
            _apply,
        )
        if result is not None and result.state == StageState.COMPLETE:
            await self._enriched(video, "metadata")

    @staticmethod
    def _offline_tags(name: str) -> dict | None:
        try:
            return parse_tags_offline(name)
        except TagParseError:
            return None

    async def _identify(self, generation: int, record: FileRecord, name: str, fallback: str | None) -> MovieIdentity | None:
        """Identification stage proper: query by name, apply the identity."""

        async def _work():
            return await self.ctx.identification.identify(name, fallback, tags=self._offline_tags(name))

        def _apply(found) -> None:
            record.identity = found.identity
            if found.inline_tags:
                self._inline_tags[record.full_path] = found.inline_tags

        result = await self._run_stage(generation, record, StageName.MOVIE_IDENTIFICATION, _work, _apply)
        if result is None or result.state != StageState.COMPLETE:
            return None
        await self._enriched(record, "identity")
        return record.identity

    async def _identify_video(self, generation: int, video: FileRecord) -> None:
        future = self._identity_futures.get(video.full_path)
        try:
            identity = await self._identify(
                generation, video, video.name, parent_directory_name(video.full_path)
            )
        except BaseException:
            if future is not None and not future.done():
                future.cancel()
            raise
        finally:
            self._mark_identified(video)

        if future is not None and not future.done():
            future.set_result(identity)
        await self._run_tags(generation, video)

    # --- Subtitle stages ---

    def _plan_identity_sharing(self, pairing: PairingResult) -> None:
        """Decide, before anything runs, which files query and which wait.

        Every video queries and publishes a future. A paired subtitle waits
        for its video. An orphan waits for a video with the same movie key,
        else for the only video in its folder, else for the first orphan
        with its movie key; the remaining orphans query themselves.
        """
        loop = asyncio.get_running_loop()
        by_movie: dict[str, asyncio.Future] = {}
        by_directory: dict[str, list[asyncio.Future]] = {}

        for group in pairing.groups:
            future = loop.create_future()
            self._identity_futures[group.video.full_path] = future
            key = movie_key(group.video)
            by_movie.setdefault(key, future)
            by_directory.setdefault(key.rsplit("/", 1)[0], []).append(future)
            for subtitle in group.subtitles:
                self._sibling_futures[subtitle.full_path] = future

        for orphan in pairing.orphans:
            key = movie_key(orphan)
            directory_futures = by_directory.get(key.rsplit("/", 1)[0], [])
            if key in by_movie:
                self._sibling_futures[orphan.full_path] = by_movie[key]
            elif len(directory_futures) == 1:
                self._sibling_futures[orphan.full_path] = directory_futures[0]
            else:
                future = loop.create_future()
                self._identity_futures[orphan.full_path] = future
                by_movie[key] = future

    async def _adopt_identity(self, generation: int, subtitle: FileRecord, identity: MovieIdentity) -> bool:
        """Complete a subtitle's identification with a sibling's identity."""
        table = self.ctx.stages
        path = subtitle.full_path
        if not self.ctx.scheduler.is_current(generation):
            return False
        if table.get(path, StageName.MOVIE_IDENTIFICATION).state in (StageState.PROCESSING, StageState.COMPLETE):
            return False
        await table.begin(path, StageName.MOVIE_IDENTIFICATION)
        if not self._still_processing(generation, path, StageName.MOVIE_IDENTIFICATION):
            return False
        subtitle.identity = identity.with_source("sibling")
        await table.complete(path, StageName.MOVIE_IDENTIFICATION, subtitle.identity, attempts=0)
        await self._enriched(subtitle, "identity")
        return True

    async def _identify_subtitle(self, generation: int, subtitle: FileRecord) -> None:
        """Reuse the sibling video's identity when there is one, else query."""
        owned = self._identity_futures.get(subtitle.full_path)
        try:
            sibling = self._sibling_futures.get(subtitle.full_path)
            identity = None
            if sibling is not None:
                identity = await asyncio.shield(sibling)
            if identity is not None:
                await self._adopt_identity(generation, subtitle, identity)
            else:
                name = subtitle.name if self.ctx.pairing.group_for(subtitle) else detection_name(subtitle)
                identity = await self._identify(
                    generation, subtitle, name, parent_directory_name(subtitle.full_path)
                )
            if owned is not None and not owned.done():
                owned.set_result(identity)
        except BaseException:
            if owned is not None and not owned.done():
                owned.cancel()
            raise
        finally:
            self._mark_identified(subtitle)

        await self._run_tags(generation, subtitle)

    def _mark_identified(self, record: FileRecord) -> None:
        event = self._identified.get(record.full_path)
        if event is not None:
            event.set()

    async def _run_tags(self, generation: int, record: FileRecord) -> None:
        inline = self._inline_tags.get(record.full_path)

        def _apply(value: dict) -> None:
            record.tags = value

        result = await self._run_stage(
            generation,
            record,
            StageName.TAG_EXTRACTION,
            lambda: self.ctx.tags.extract(record.name, inline=inline),
            _apply,
        )
        if result is not None and result.state == StageState.COMPLETE:
            await self._enriched(record, "tags")

    async def _run_language(self, generation: int, subtitle: FileRecord) -> None:
        async def _work():
            if subtitle.removal_flag:
                return None
            return await self.ctx.language.detect(self._local_path(subtitle), subtitle.name)

        def _apply(value) -> None:
            if value is None:
                return
            subtitle.language = value
            if value.should_remove:
                subtitle.removal_flag = True

        result = await self._run_stage(generation, subtitle, StageName.LANGUAGE_DETECTION, _work, _apply)
        if result is not None and result.state == StageState.COMPLETE:
            await self._enriched(subtitle, "language", "removal_flag")

    async def _run_duplicate_check(self, generation: int, subtitle: FileRecord) -> None:
        event = self._identified.get(subtitle.full_path)
        if event is not None:
            await event.wait()

        async def _work():
            subtitle_hash = await hash_subtitle_file(self._local_path(subtitle))
            return await self.ctx.duplicates.check(subtitle_hash)

        def _apply(status) -> None:
            subtitle.content_hash = status.subtitle_hash
            subtitle.duplicate = status

        result = await self._run_stage(generation, subtitle, StageName.DUPLICATE_CHECK, _work, _apply)
        if result is not None and result.state == StageState.COMPLETE:
            await self._enriched(subtitle, "content_hash", "duplicate")

    # --- Manual actions ---

    def _record(self, path: str) -> FileRecord:
        record = self.ctx.files.get(path)
        if record is None:
            raise NotFoundError(f"Unknown file: {path}")
        return record

    async def set_identity(self, path: str, identity: MovieIdentity) -> list[str]:
        """Manually assign an identity to a file.

        For a video the identity also replaces the heuristic identity of
        every subtitle paired with it. Returns the paths updated.
        """
        record = self._record(path)
        identity = identity.with_source("manual")
        targets = [record]
        if record.is_video:
            for group in self.ctx.pairing.groups:
                if group.video is record:
                    targets.extend(
                        s for s in group.subtitles if s.identity is None or s.identity.source != "manual"
                    )
        future = self._identity_futures.get(path)
        if future is not None and not future.done():
            future.set_result(identity)

        table = self.ctx.stages
        for target in targets:
            await table.reset(target.full_path, StageName.MOVIE_IDENTIFICATION)
            await table.begin(target.full_path, StageName.MOVIE_IDENTIFICATION)
            target.identity = identity
            await table.complete(target.full_path, StageName.MOVIE_IDENTIFICATION, identity, attempts=0)
            await self._enriched(target, "identity")
            self._mark_identified(target)

        logger.info(f"Manual identity {identity.display_name} set for {len(targets)} file(s)")
        return [t.full_path for t in targets]

    async def search_movies(self, query: str) -> list[MovieIdentity]:
        return await self.ctx.identification.search(query)

    async def retry_stage(self, path: str, stage: StageName) -> asyncio.Task:
        """Reset a stage and schedule it again.

        Raises:
            ValidationError: the stage does not apply to the file or is in flight.
        """
        record = self._record(path)
        applicable = VIDEO_STAGES if record.is_video else SUBTITLE_STAGES
        if stage not in applicable:
            raise ValidationError(f"{stage.value} does not apply to {path}")
        if self.ctx.stages.get(path, stage).state == StageState.PROCESSING:
            raise ValidationError(f"{path} [{stage.value}] is already running")

        generation = self.ctx.generation
        await self.ctx.stages.reset(path, stage)
        runners = {
            StageName.HASH: lambda: self._run_hash(generation, record),
            StageName.METADATA_EXTRACTION: lambda: self._run_metadata(generation, record),
            StageName.MOVIE_IDENTIFICATION: lambda: self._retry_identification(generation, record),
            StageName.TAG_EXTRACTION: lambda: self._run_tags(generation, record),
            StageName.LANGUAGE_DETECTION: lambda: self._run_language(generation, record),
            StageName.DUPLICATE_CHECK: lambda: self._run_duplicate_check(generation, record),
        }
        logger.info(f"Retrying {path} [{stage.value}]")
        return self.ctx.scheduler.schedule(runners[stage], generation=generation, name=f"retry:{stage.value}:{path}")

    async def _retry_identification(self, generation: int, record: FileRecord) -> None:
        if record.is_video:
            name = record.name
        else:
            name = record.name if self.ctx.pairing.group_for(record) else detection_name(record)
        identity = await self._identify(generation, record, name, parent_directory_name(record.full_path))
        if identity is not None and record.is_video:
            await self._share_with_paired(generation, record, identity)
        if self.ctx.stages.get(record.full_path, StageName.TAG_EXTRACTION).state != StageState.COMPLETE:
            await self._run_tags(generation, record)

    async def _share_with_paired(self, generation: int, video: FileRecord, identity: MovieIdentity) -> None:
        """Give a re-identified video's identity to its paired subtitles, manual ones excepted."""
        table = self.ctx.stages
        for group in self.ctx.pairing.groups:
            if group.video is not video:
                continue
            for subtitle in group.subtitles:
                if subtitle.identity is not None and subtitle.identity.source == "manual":
                    continue
                if table.get(subtitle.full_path, StageName.MOVIE_IDENTIFICATION).state == StageState.PROCESSING:
                    continue
                await table.reset(subtitle.full_path, StageName.MOVIE_IDENTIFICATION)
                if await self._adopt_identity(generation, subtitle, identity):
                    self._mark_identified(subtitle)

    # --- Queries ---

    def upload_ready(self, path: str) -> bool:
        """A subtitle is ready once identified and its language is known."""
        record = self.ctx.files.get(path)
        if record is None or not record.is_subtitle or record.removal_flag:
            return False
        identified = self.ctx.stages.get(path, StageName.MOVIE_IDENTIFICATION).state == StageState.COMPLETE
        return identified and record.identity is not None and bool(record.language and record.language.code)

    def build_candidates(
        self,
        paths: list[str] | None = None,
        options: UploadOptions | None = None,
        per_file_options: dict[str, UploadOptions] | None = None,
    ) -> tuple[list[UploadCandidate], list[UploadOutcome]]:
        """Upload candidates for the given subtitles (default: all).

        Returns:
            (candidates, failures) where failures are validation outcomes
            for subtitles that cannot be uploaded yet.
        """
        per_file_options = per_file_options or {}
        selected = paths if paths is not None else sorted(
            p for p, f in self.ctx.files.items() if f.is_subtitle and not f.removal_flag
        )
        candidates, failures = [], []
        for path in selected:
            record = self.ctx.files.get(path)
            if record is None or not record.is_subtitle:
                failures.append(
                    UploadOutcome(path, UploadStatus.FAILED, message="Not a loaded subtitle", error_kind="validation")
                )
                continue
            group = self.ctx.pairing.group_for(record)
            try:
                candidates.append(
                    UploadCandidate.build(
                        record,
                        record.identity,
                        record.language.code if record.language else None,
                        per_file_options.get(path) or options,
                        video=group.video if group else None,
                    )
                )
            except ValidationError as e:
                failures.append(
                    UploadOutcome(path, UploadStatus.FAILED, message=str(e), error_kind=e.kind)
                )
        return candidates, failures

    async def upload(
        self,
        paths: list[str] | None = None,
        options: UploadOptions | None = None,
        per_file_options: dict[str, UploadOptions] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> UploadReport:
        """Validate and submit subtitles; invalid ones are reported, not raised."""
        candidates, failures = self.build_candidates(paths, options, per_file_options)
        report = UploadReport()
        for outcome in failures:
            report.record(outcome)
        return await self.ctx.uploads.upload(candidates, on_progress=on_progress, report=report)

    async def wait_until_idle(self) -> None:
        """Wait for every stage of the current generation to settle."""
        generation = self.ctx.generation
        await self.ctx.scheduler.wait_idle(generation)
        if self.ctx.broadcaster is not None and self.ctx.scheduler.is_current(generation):
            await self.ctx.broadcaster.broadcast_drop_idle(generation)

    def file_state(self, path: str) -> dict:
        record = self._record(path)
        data = record.to_dict()
        data["stages"] = {
            stage.value: result.to_dict() for stage, result in self.ctx.stages.snapshot(path).items()
        }
        data["upload_ready"] = self.upload_ready(path)
        return data

    def snapshot(self) -> dict:
        """Current generation, per-file state and pairing."""
        return {
            "generation": self.ctx.generation,
            "root": str(self.ctx.root) if self.ctx.root else None,
            "files": [self.file_state(p) for p in sorted(self.ctx.files)],
            "pairing": self.ctx.pairing.to_dict(),
        }
