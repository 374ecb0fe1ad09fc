"""
Unit tests for BatchRunner.

Tests cover:
- Style resolution and fallback
- Scheduled runs per user (job bookkeeping, per-playlist style overrides)
- Manual triggers (queueing, ownership checks)
- Stale sweeps
"""

import json
from unittest.mock import AsyncMock, Mock

import pytest

from src.cover_art.exceptions import PipelineError, TokenRefreshError
from src.cover_art.models import GenerationResult, PipelineOptions, Style, TriggerType
from src.cover_art.runner import BatchRunner


@pytest.fixture
def pipeline():
    mock = Mock()
    mock.generate_for_playlist = AsyncMock(
        side_effect=lambda ref, style, token, options: GenerationResult(True, f"gen-{ref.name}")
    )
    return mock


@pytest.fixture
def tokens():
    mock = Mock()
    mock.get_access_token = AsyncMock(return_value="access-token")
    return mock


@pytest.fixture
def runner(db, pipeline, tokens, style):
    db.add_style(style)
    return BatchRunner(db, pipeline, tokens, default_style_id=style.id)


class TestResolveStyle:
    """Tests for BatchRunner.resolve_style()."""

    def test_requested_style(self, runner, db):
        db.add_style(Style(id="woodcut", name="Woodcut", replicate_model="m", prompt_template="{subject}"))

        assert runner.resolve_style("woodcut").id == "woodcut"

    def test_falls_back_to_default(self, runner, style):
        assert runner.resolve_style("missing").id == style.id
        assert runner.resolve_style(None).id == style.id

    def test_no_usable_style(self, db, pipeline, tokens):
        runner = BatchRunner(db, pipeline, tokens, default_style_id="nope")

        with pytest.raises(PipelineError, match="No usable style"):
            runner.resolve_style("missing")


class TestScheduledRun:
    """Tests for process_user() and run_scheduled()."""

    @pytest.mark.asyncio
    async def test_processes_cron_playlists_in_order(self, runner, db, user_id, pipeline):
        # Arrange
        db.add_style(Style(id="woodcut", name="Woodcut", replicate_model="m", prompt_template="{subject}"))
        db.add_playlist(user_id, "a", "A")
        db.add_playlist(user_id, "b", "B", style_override="woodcut")
        db.add_playlist(user_id, "c", "C", cron_enabled=False)

        # Act
        summaries = await runner.run_scheduled()

        # Assert
        assert len(summaries) == 1
        summary = summaries[0]
        assert (summary.total, summary.completed, summary.failed, summary.error) == (2, 2, 0, None)
        calls = pipeline.generate_for_playlist.await_args_list
        assert [c.args[0].name for c in calls] == ["A", "B"]
        assert [c.args[1].id for c in calls] == ["bleached-crosshatch", "woodcut"]
        options = calls[0].args[3]
        assert options.trigger_type == TriggerType.CRON
        assert options.job_id == summary.job_id
        job = db.get_job(summary.job_id)
        assert job["status"] == "completed"
        assert job["completed_playlists"] == 2

    @pytest.mark.asyncio
    async def test_failed_playlists_are_counted(self, runner, db, user_id, pipeline):
        db.add_playlist(user_id, "a", "A")
        db.add_playlist(user_id, "b", "B")
        pipeline.generate_for_playlist.side_effect = [
            GenerationResult(True, "g1"),
            GenerationResult(False, "g2", "Playlist has no tracks"),
        ]

        summary = (await runner.run_scheduled())[0]

        assert (summary.completed, summary.failed) == (1, 1)
        assert db.get_job(summary.job_id)["status"] == "completed"

    @pytest.mark.asyncio
    async def test_token_failure_fails_job(self, runner, db, user_id, tokens, pipeline):
        db.add_playlist(user_id, "a", "A")
        tokens.get_access_token.side_effect = TokenRefreshError("Failed to decrypt refresh token")

        summary = (await runner.run_scheduled())[0]

        assert summary.error == "Failed to decrypt refresh token"
        job = db.get_job(summary.job_id)
        assert job["status"] == "failed"
        assert job["error_message"] == "Failed to decrypt refresh token"
        pipeline.generate_for_playlist.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_hour_filter(self, runner, db, encryption_key):
        db.add_user("early", encrypted_refresh_token="e", cron_time="06:00")

        assert await runner.run_scheduled(hour=23) == []


class TestTrigger:
    """Tests for trigger()."""

    @pytest.mark.asyncio
    async def test_queues_then_generates(self, runner, db, user_id, pipeline):
        first = db.add_playlist(user_id, "a", "A")
        second = db.add_playlist(user_id, "b", "B")
        statuses = []

        async def generate(ref, style, token, options):
            statuses.append({pid: db.get_playlist(pid)["status"] for pid in (first, second)})
            return GenerationResult(True, "g")

        pipeline.generate_for_playlist.side_effect = generate

        results = await runner.trigger(user_id, [first, second])

        assert len(results) == 2
        assert statuses[0] == {first: "queued", second: "queued"}
        assert "queuedAt" in json.loads(db.get_playlist(second)["progress_data"])
        options = pipeline.generate_for_playlist.await_args.args[3]
        assert options.trigger_type == TriggerType.MANUAL

    @pytest.mark.asyncio
    async def test_skips_foreign_and_unknown_playlists(self, runner, db, user_id, pipeline):
        mine = db.add_playlist(user_id, "a", "A")
        stranger = db.add_user("stranger", encrypted_refresh_token="e")
        theirs = db.add_playlist(stranger, "b", "B")

        results = await runner.trigger(user_id, [mine, theirs, "missing"])

        assert len(results) == 1
        assert db.get_playlist(theirs)["status"] == "idle"

    @pytest.mark.asyncio
    async def test_passes_options_and_style(self, runner, db, user_id, pipeline):
        db.add_style(Style(id="woodcut", name="Woodcut", replicate_model="m", prompt_template="{subject}"))
        playlist_id = db.add_playlist(user_id, "a", "A")
        options = PipelineOptions(trigger_type=TriggerType.MANUAL, custom_object="kite")

        await runner.trigger(user_id, [playlist_id], options, style_id="woodcut")

        ref, style, token, passed = pipeline.generate_for_playlist.await_args.args
        assert style.id == "woodcut"
        assert token == "access-token"
        assert passed is options

    @pytest.mark.asyncio
    async def test_unknown_user(self, runner):
        with pytest.raises(PipelineError, match="Unknown user"):
            await runner.trigger("nobody", ["p"])


class TestSweep:
    """Tests for sweep()."""

    def test_sweep_counts(self, runner, db):
        db.reclaim_stale_playlists = Mock(return_value=2)
        db.expire_stale_jobs = Mock(return_value=1)

        assert runner.sweep(15, 30) == (2, 1)
        db.reclaim_stale_playlists.assert_called_once_with(15)
        db.expire_stale_jobs.assert_called_once_with(30)
