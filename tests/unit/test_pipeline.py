"""Unit tests for the processing pipeline orchestrator.

Runs real pairing, hashing, retry and scheduling against files on disk;
only the remote client and ffprobe are replaced.
"""

import asyncio

import pytest

from tests.conftest import guess_entry, guess_known, make_record
from uploader.core.discovery import discover
from uploader.core.errors import NetworkError, NotFoundError, ValidationError
from uploader.models.identity import MovieIdentity
from uploader.models.stages import StageName, StageState

VIDEO = "Inception (2010)/Inception.2010.1080p.BluRay.x264.mkv"
PAIRED = "Inception (2010)/Inception.2010.1080p.BluRay.x264.en.srt"
ORPHAN = "The Matrix (1999)/The.Matrix.1999.srt"


def guessed_names(mock_client) -> list[str]:
    return [call.args[0] for call in mock_client.guess_movie.await_args_list]


async def load_tree(orchestrator, root):
    records = await discover(root)
    await orchestrator.load(records, root=root)
    await orchestrator.wait_until_idle()


def stage(orchestrator, path, name):
    return orchestrator.ctx.stages.get(path, name)


class TestFullRun:
    """Test a complete drop with one paired movie and one orphan."""

    @pytest.mark.asyncio
    async def test_every_stage_completes(self, orchestrator, media_tree):
        await load_tree(orchestrator, media_tree)

        for path in (VIDEO, PAIRED, ORPHAN):
            states = {s: r.state for s, r in orchestrator.ctx.stages.snapshot(path).items()}
            assert set(states.values()) == {StageState.COMPLETE}, (path, states)

    @pytest.mark.asyncio
    async def test_video_is_enriched(self, orchestrator, media_tree):
        await load_tree(orchestrator, media_tree)

        video = orchestrator.ctx.files[VIDEO]
        assert len(video.content_hash) == 16
        assert video.metadata.height == 1080
        assert video.identity.imdb_id == "1375666"
        assert video.tags["title"] == "Inception"

    @pytest.mark.asyncio
    async def test_paired_subtitle_reuses_video_identity(self, orchestrator, media_tree, mock_client):
        await load_tree(orchestrator, media_tree)

        subtitle = orchestrator.ctx.files[PAIRED]
        assert subtitle.identity.imdb_id == "1375666"
        assert subtitle.identity.source == "sibling"
        assert "Inception.2010.1080p.BluRay.x264.en.srt" not in guessed_names(mock_client)

    @pytest.mark.asyncio
    async def test_orphan_uses_detection_name(self, orchestrator, media_tree, mock_client):
        await load_tree(orchestrator, media_tree)

        orphan = orchestrator.ctx.files[ORPHAN]
        assert orphan.identity.imdb_id == "133093"
        assert orphan.identity.source == "guess"
        assert "The.Matrix.1999" in guessed_names(mock_client)

    @pytest.mark.asyncio
    async def test_subtitles_are_upload_ready(self, orchestrator, media_tree):
        await load_tree(orchestrator, media_tree)

        for path in (PAIRED, ORPHAN):
            record = orchestrator.ctx.files[path]
            assert record.language.code == "eng"
            assert len(record.content_hash) == 32
            assert not record.duplicate.exists
            assert orchestrator.upload_ready(path)
        assert not orchestrator.upload_ready(VIDEO)

    @pytest.mark.asyncio
    async def test_snapshot(self, orchestrator, media_tree):
        await load_tree(orchestrator, media_tree)

        snapshot = orchestrator.snapshot()

        assert snapshot["generation"] == orchestrator.ctx.generation
        assert [f["full_path"] for f in snapshot["files"]] == [PAIRED, VIDEO, ORPHAN]
        assert snapshot["pairing"] == {"groups": [{"video": VIDEO, "subtitles": [PAIRED]}], "orphans": [ORPHAN]}
        video_state = next(f for f in snapshot["files"] if f["full_path"] == VIDEO)
        assert video_state["stages"]["hash"]["state"] == "complete"

    @pytest.mark.asyncio
    async def test_upload_after_identification(self, orchestrator, media_tree, mock_client):
        await load_tree(orchestrator, media_tree)

        report = await orchestrator.upload()

        assert report.counts == {"successful": 2, "exists": 0, "failed": 0}
        cd1_by_name = {
            call.args[1]["subfilename"]: call.args[1] for call in mock_client.upload_subtitles.await_args_list
        }
        video = orchestrator.ctx.files[VIDEO]
        assert cd1_by_name["Inception.2010.1080p.BluRay.x264.en.srt"]["moviehash"] == video.content_hash
        assert "moviehash" not in cd1_by_name["The.Matrix.1999.srt"]


class TestIdentitySharing:
    """Test schedule-time reuse of identification results."""

    def _write(self, root, *paths):
        records = []
        for path in paths:
            target = root / path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(b"1\n00:00:01,000 --> 00:00:02,000\n" + path.encode() + b"\n")
            records.append(make_record(path, size=target.stat().st_size, root=root))
        return records

    @pytest.mark.asyncio
    async def test_orphan_next_to_single_video_reuses_it(self, orchestrator, tmp_path, mock_client):
        records = self._write(tmp_path, "Dir/Inception.2010.mkv", "Dir/random-notes.srt")

        await orchestrator.load(records, root=tmp_path)
        await orchestrator.wait_until_idle()

        orphan = orchestrator.ctx.files["Dir/random-notes.srt"]
        assert orchestrator.ctx.pairing.orphans == [orphan]
        assert orphan.identity.imdb_id == "1375666"
        assert orphan.identity.source == "sibling"
        assert guessed_names(mock_client) == ["Inception.2010.mkv"]

    @pytest.mark.asyncio
    async def test_orphans_with_same_movie_query_once(self, orchestrator, tmp_path, mock_client):
        records = self._write(tmp_path, "X/Film.1999.en.srt", "X/Film.1999.fr.srt")

        await orchestrator.load(records, root=tmp_path)
        await orchestrator.wait_until_idle()

        identities = [orchestrator.ctx.files[p].identity for p in ("X/Film.1999.en.srt", "X/Film.1999.fr.srt")]
        assert {i.imdb_id for i in identities} == {"99999"}
        assert sorted(i.source for i in identities) == ["guess", "sibling"]
        assert guessed_names(mock_client) == ["Film.1999"]

    @pytest.mark.asyncio
    async def test_unidentified_video_lets_subtitle_query_itself(self, orchestrator, tmp_path, mock_client):
        async def guess(name):
            return guess_entry("133093", "The Matrix", 1999) if name.endswith(".srt") else {}

        mock_client.guess_movie.side_effect = guess
        records = self._write(tmp_path, "Dir/Unknown.mkv", "Dir/Unknown.en.srt")

        await orchestrator.load(records, root=tmp_path)
        await orchestrator.wait_until_idle()

        assert stage(orchestrator, "Dir/Unknown.mkv", StageName.MOVIE_IDENTIFICATION).state == StageState.FAILED
        subtitle = orchestrator.ctx.files["Dir/Unknown.en.srt"]
        assert subtitle.identity.imdb_id == "133093"
        assert subtitle.identity.source == "guess"


class TestFailures:
    """Test terminal failures and manual recovery."""

    @pytest.mark.asyncio
    async def test_transient_failures_settle_to_failed(self, orchestrator, media_tree, mock_client):
        """Test three failed attempts end in a terminal failed state."""
        mock_client.guess_movie.side_effect = NetworkError("GuessMovieFromString timed out")

        await load_tree(orchestrator, media_tree)

        result = stage(orchestrator, VIDEO, StageName.MOVIE_IDENTIFICATION)
        assert result.state == StageState.FAILED
        assert result.attempts == 3
        assert result.error["kind"] == "network"
        assert guessed_names(mock_client).count("Inception.2010.1080p.BluRay.x264.mkv") == 3
        assert orchestrator.ctx.scheduler.pending() == 0

    @pytest.mark.asyncio
    async def test_no_match_fails_without_retry(self, orchestrator, media_tree, mock_client):
        mock_client.guess_movie.side_effect = None
        mock_client.guess_movie.return_value = {}

        await load_tree(orchestrator, media_tree)

        result = stage(orchestrator, ORPHAN, StageName.MOVIE_IDENTIFICATION)
        assert result.state == StageState.FAILED
        assert result.attempts == 1
        assert result.error == {"kind": "not_found", "message": result.error["message"], "blocking": True}
        assert not orchestrator.upload_ready(ORPHAN)

    @pytest.mark.asyncio
    async def test_manual_identity_for_video_covers_its_subtitles(self, orchestrator, media_tree, mock_client):
        mock_client.guess_movie.side_effect = NetworkError("down")
        await load_tree(orchestrator, media_tree)

        updated = await orchestrator.set_identity(
            VIDEO, MovieIdentity(imdb_id="tt1375666", title="Inception", year=2010)
        )

        assert updated == [VIDEO, PAIRED]
        for path in updated:
            assert stage(orchestrator, path, StageName.MOVIE_IDENTIFICATION).state == StageState.COMPLETE
            assert orchestrator.ctx.files[path].identity.source == "manual"
        assert orchestrator.upload_ready(PAIRED)
        assert not orchestrator.upload_ready(ORPHAN)

    @pytest.mark.asyncio
    async def test_set_identity_unknown_path(self, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.set_identity("nope.srt", MovieIdentity(imdb_id="1", title="X"))

    @pytest.mark.asyncio
    async def test_retry_stage_after_failure(self, orchestrator, media_tree, mock_client):
        mock_client.guess_movie.side_effect = None
        mock_client.guess_movie.return_value = {}
        await load_tree(orchestrator, media_tree)
        assert stage(orchestrator, ORPHAN, StageName.MOVIE_IDENTIFICATION).state == StageState.FAILED

        mock_client.guess_movie.side_effect = guess_known
        task = await orchestrator.retry_stage(ORPHAN, StageName.MOVIE_IDENTIFICATION)
        await task

        assert stage(orchestrator, ORPHAN, StageName.MOVIE_IDENTIFICATION).state == StageState.COMPLETE
        assert orchestrator.ctx.files[ORPHAN].identity.imdb_id == "133093"

    @pytest.mark.asyncio
    async def test_retried_video_identity_reaches_paired_subtitle(self, orchestrator, media_tree, mock_client):
        mock_client.guess_movie.side_effect = None
        mock_client.guess_movie.return_value = {}
        await load_tree(orchestrator, media_tree)
        assert stage(orchestrator, PAIRED, StageName.MOVIE_IDENTIFICATION).state == StageState.FAILED

        mock_client.guess_movie.side_effect = guess_known
        task = await orchestrator.retry_stage(VIDEO, StageName.MOVIE_IDENTIFICATION)
        await task

        subtitle = orchestrator.ctx.files[PAIRED]
        assert stage(orchestrator, PAIRED, StageName.MOVIE_IDENTIFICATION).state == StageState.COMPLETE
        assert subtitle.identity.imdb_id == "1375666"
        assert subtitle.identity.source == "sibling"

    @pytest.mark.asyncio
    async def test_retried_video_identity_keeps_manual_subtitle(self, orchestrator, media_tree, mock_client):
        mock_client.guess_movie.side_effect = None
        mock_client.guess_movie.return_value = {}
        await load_tree(orchestrator, media_tree)
        await orchestrator.set_identity(PAIRED, MovieIdentity(imdb_id="133093", title="The Matrix", year=1999))

        mock_client.guess_movie.side_effect = guess_known
        task = await orchestrator.retry_stage(VIDEO, StageName.MOVIE_IDENTIFICATION)
        await task

        subtitle = orchestrator.ctx.files[PAIRED]
        assert subtitle.identity.imdb_id == "133093"
        assert subtitle.identity.source == "manual"

    @pytest.mark.asyncio
    async def test_retry_stage_validation(self, orchestrator, media_tree):
        await load_tree(orchestrator, media_tree)

        with pytest.raises(ValidationError):
            await orchestrator.retry_stage(PAIRED, StageName.HASH)
        with pytest.raises(NotFoundError):
            await orchestrator.retry_stage("missing.srt", StageName.LANGUAGE_DETECTION)

    @pytest.mark.asyncio
    async def test_plain_text_file_is_flagged_for_removal(self, orchestrator, media_tree, mock_client):
        mock_client.detect_language.return_value = {
            "data": {"file_kind": "ASCII text file", "languages": [{"language_code": "en", "confidence": 0.9}]}
        }

        await load_tree(orchestrator, media_tree)

        assert orchestrator.ctx.files[ORPHAN].removal_flag
        assert not orchestrator.upload_ready(ORPHAN)
        candidates, failures = orchestrator.build_candidates()
        assert candidates == []
        assert failures == []

    @pytest.mark.asyncio
    async def test_upload_reports_unready_subtitles(self, orchestrator, media_tree, mock_client):
        mock_client.guess_movie.side_effect = None
        mock_client.guess_movie.return_value = {}
        await load_tree(orchestrator, media_tree)

        report = await orchestrator.upload()

        assert report.counts == {"successful": 0, "exists": 0, "failed": 2}
        assert {o.error_kind for o in report.failures} == {"validation"}
        mock_client.upload_subtitles.assert_not_awaited()


class TestGenerations:
    """Test that a new drop discards the previous one's work."""

    @pytest.mark.asyncio
    async def test_new_drop_discards_in_flight_results(self, orchestrator, media_tree, tmp_path, mock_client):
        release = asyncio.Event()
        started = asyncio.Event()

        async def slow_guess(name):
            started.set()
            await release.wait()
            return await guess_known(name)

        mock_client.guess_movie.side_effect = slow_guess
        first = await discover(media_tree)
        await orchestrator.load(first, root=media_tree)
        await started.wait()
        old_video = orchestrator.ctx.files[VIDEO]

        second_root = tmp_path / "second"
        second_root.mkdir()
        (second_root / "Film.1999.mkv").write_bytes(b"\x01" * 4096)
        await orchestrator.load(await discover(second_root), root=second_root)
        release.set()
        await orchestrator.wait_until_idle()

        assert old_video.identity is None
        assert orchestrator.ctx.stages.paths() == ["Film.1999.mkv"]
        assert list(orchestrator.ctx.files) == ["Film.1999.mkv"]
        assert orchestrator.ctx.files["Film.1999.mkv"].identity.imdb_id == "99999"

    @pytest.mark.asyncio
    async def test_late_completion_is_not_applied(self, orchestrator):
        """Test a result finishing after a reset is dropped."""
        record = make_record("Late.2001.srt")
        generation = orchestrator.ctx.scheduler.new_generation()
        applied = []

        async def work():
            orchestrator.ctx.reset()
            return "stale"

        result = await orchestrator._run_stage(
            generation, record, StageName.LANGUAGE_DETECTION, work, applied.append
        )

        assert result is None
        assert applied == []
        assert orchestrator.ctx.stages.paths() == []

    @pytest.mark.asyncio
    async def test_clear(self, orchestrator, media_tree):
        await load_tree(orchestrator, media_tree)
        before = orchestrator.ctx.generation

        generation = await orchestrator.clear()

        assert generation == before + 1
        assert orchestrator.snapshot()["files"] == []
