"""
Unit tests for theme extraction and convergence.

Tests cover:
- Aggregate object scoring
- Per-track extraction with the cache and failure isolation
- Progress callbacks
- Light extraction
- Convergence parsing and validation
"""

import asyncio
import json
from unittest.mock import AsyncMock, Mock

import pytest

from src.cover_art.convergence import converge_and_select, parse_convergence, validate_convergence
from src.cover_art.exceptions import ConvergenceError, ExtractionError, LLMError, ValidationError
from src.cover_art.extraction import ThemeExtractor, light_extract, score_objects
from src.cover_art.llm import LLMResponse
from src.cover_art.models import ClaimedObject, Tier, TieredObject, Track, TrackExtraction


def make_tracks(count):
    return [
        Track(spotify_track_id=f"t{i}", name=f"Song {i}", artist="Artist", lyrics=f"words {i}",
              lyrics_found=True)
        for i in range(count)
    ]


def extraction_response(prompt: str) -> LLMResponse:
    name = prompt.split('"')[1]
    return LLMResponse(
        parsed={
            "trackName": name,
            "artist": "Artist",
            "lyricsFound": True,
            "objects": [{"object": f"object of {name}", "tier": "high", "reasoning": "lyric"}],
        },
        input_tokens=100,
        output_tokens=20,
    )


@pytest.fixture
def llm():
    client = Mock()
    client.model = "gpt-4o-mini"
    client.chat_json = AsyncMock(side_effect=lambda system, user, **kwargs: extraction_response(user))
    return client


class TestScoreObjects:
    """Tests for score_objects()."""

    def test_case_insensitive_aggregate(self):
        extractions = [
            TrackExtraction("A", "X", True, [TieredObject("Moon", Tier.HIGH), TieredObject("rope", Tier.LOW)]),
            TrackExtraction("B", "X", True, [TieredObject("moon", Tier.MEDIUM)]),
        ]

        scores = score_objects(extractions)

        assert scores[0].object == "moon"
        assert scores[0].score == 5
        assert scores[0].track_count == 2
        assert scores[1].object == "rope"


class TestThemeExtractor:
    """Tests for ThemeExtractor.extract_themes()."""

    @pytest.mark.asyncio
    async def test_extracts_every_track_in_order(self, llm, db):
        extractor = ThemeExtractor(llm, db)

        batch = await extractor.extract_themes(make_tracks(5))

        assert [e.track_name for e in batch.extractions] == [f"Song {i}" for i in range(5)]
        assert (batch.input_tokens, batch.output_tokens, batch.cache_hits) == (500, 100, 0)
        assert llm.chat_json.await_count == 5
        kwargs = llm.chat_json.await_args.kwargs
        assert kwargs == {"temperature": 0.6, "max_tokens": 500}

    @pytest.mark.asyncio
    async def test_second_run_hits_cache_with_original_tokens(self, llm, db):
        tracks = make_tracks(3)
        await ThemeExtractor(llm, db).extract_themes(tracks)
        llm.chat_json.reset_mock()

        batch = await ThemeExtractor(llm, db).extract_themes(tracks)

        llm.chat_json.assert_not_awaited()
        assert batch.cache_hits == 3
        assert batch.input_tokens == 300
        assert batch.extractions[1].objects[0].object == "object of Song 1"

    @pytest.mark.asyncio
    async def test_cache_is_per_model(self, llm, db):
        """Extractions cached under one model are not reused after a model switch."""
        # Arrange
        tracks = make_tracks(2)
        await ThemeExtractor(llm, db).extract_themes(tracks)
        llm.chat_json.reset_mock()
        llm.model = "gpt-4o"

        # Act
        batch = await ThemeExtractor(llm, db).extract_themes(tracks)

        # Assert
        assert batch.cache_hits == 0
        assert llm.chat_json.await_count == 2
        assert set(db.get_cached_extractions(["t0", "t1"], "gpt-4o")) == {"t0", "t1"}
        assert set(db.get_cached_extractions(["t0", "t1"], "gpt-4o-mini")) == {"t0", "t1"}

    @pytest.mark.asyncio
    async def test_calls_are_bounded_by_concurrency(self, llm):
        """No more than ``concurrency`` extraction calls are in flight at once."""
        in_flight = 0
        peak = 0

        async def respond(system, user, **kwargs):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return extraction_response(user)

        llm.chat_json.side_effect = respond

        batch = await ThemeExtractor(llm, concurrency=5).extract_themes(make_tracks(12))

        assert len(batch.extractions) == 12
        assert peak == 5

    @pytest.mark.asyncio
    async def test_rejected_reply_still_counts_tokens(self, llm):
        def respond(system, user, **kwargs):
            if "Song 1" in user:
                raise LLMError("OpenAI returned invalid JSON: oops", 70, 15)
            return extraction_response(user)

        llm.chat_json.side_effect = respond

        batch = await ThemeExtractor(llm).extract_themes(make_tracks(2))

        assert (batch.input_tokens, batch.output_tokens) == (170, 35)

    @pytest.mark.asyncio
    async def test_failed_track_gets_empty_extraction(self, llm, db):
        def respond(system, user, **kwargs):
            if "Song 1" in user:
                raise LLMError("OpenAI returned invalid JSON: oops")
            return extraction_response(user)

        llm.chat_json.side_effect = respond

        batch = await ThemeExtractor(llm, db).extract_themes(make_tracks(3))

        assert [len(e.objects) for e in batch.extractions] == [1, 0, 1]
        assert set(db.get_cached_extractions(["t0", "t1", "t2"], "gpt-4o-mini")) == {"t0", "t2"}

    @pytest.mark.asyncio
    async def test_progress_callback(self, llm):
        reports = []

        async def on_progress(completed, total, extractions, tokens):
            reports.append((completed, total, len(extractions), tokens))

        await ThemeExtractor(llm).extract_themes(make_tracks(2), on_progress=on_progress)

        assert sorted(r[0] for r in reports) == [1, 2]
        assert reports[-1] == (2, 2, 2, 240)

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_break_extraction(self, llm):
        def on_progress(*args):
            raise RuntimeError("progress store down")

        batch = await ThemeExtractor(llm).extract_themes(make_tracks(2), on_progress=on_progress)

        assert len(batch.extractions) == 2


class TestLightExtract:
    """Tests for light_extract()."""

    @pytest.mark.asyncio
    async def test_returns_object_and_tokens(self):
        llm = Mock()
        llm.chat_json = AsyncMock(return_value=LLMResponse(
            parsed={"object": "umbrella", "aestheticContext": "neon rain", "reasoning": "rainy"},
            input_tokens=80, output_tokens=25,
        ))
        claim = ClaimedObject(id="c", user_id="u", playlist_id="p", object_name="lighthouse")

        result = await light_extract(llm, "rainy city nights", "Rain", [claim])

        assert result.object == "umbrella"
        assert result.aesthetic_context == "neon rain"
        assert (result.input_tokens, result.output_tokens) == (80, 25)
        assert "lighthouse" in llm.chat_json.await_args.args[1]

    @pytest.mark.asyncio
    async def test_empty_object_raises(self):
        llm = Mock()
        llm.chat_json = AsyncMock(return_value=LLMResponse(parsed={"object": " "}, input_tokens=1,
                                                           output_tokens=1))

        with pytest.raises(ExtractionError) as exc_info:
            await light_extract(llm, "text", "Name", [])

        assert (exc_info.value.input_tokens, exc_info.value.output_tokens) == (1, 1)


class TestConvergence:
    """Tests for convergence parsing, validation and the LLM call."""

    RESPONSE = {
        "candidates": [
            {"object": "lighthouse", "aestheticContext": "fog, dawn", "reasoning": "r1", "rank": 1},
            {"object": "rope", "aestheticContext": "frayed", "reasoning": "r2", "rank": 2},
            {"object": "gull", "aestheticContext": "wheeling", "reasoning": "r3", "rank": 3},
        ],
        "selectedIndex": 0,
        "collisionNotes": "avoided anchor",
    }

    def test_valid_selection(self):
        result = parse_convergence(self.RESPONSE)

        assert validate_convergence(result).object == "lighthouse"
        assert result.collision_notes == "avoided anchor"

    def test_out_of_range_index_is_rejected(self):
        result = parse_convergence({**self.RESPONSE, "selectedIndex": 5})

        with pytest.raises(ConvergenceError, match="3 candidates, selectedIndex=5") as exc_info:
            validate_convergence(result)

        assert isinstance(exc_info.value, ValidationError)

    @pytest.mark.parametrize("data", [
        {"candidates": [], "selectedIndex": 0},
        {"selectedIndex": 0},
        {"candidates": [{"object": "x"}], "selectedIndex": "first"},
        {"candidates": [{"object": "x"}], "selectedIndex": -1},
    ])
    def test_malformed_responses_are_rejected(self, data):
        with pytest.raises(ConvergenceError):
            validate_convergence(parse_convergence(data))

    @pytest.mark.asyncio
    async def test_converge_and_select_attaches_tokens(self):
        llm = Mock()
        llm.chat_json = AsyncMock(return_value=LLMResponse(parsed=self.RESPONSE, input_tokens=900,
                                                           output_tokens=150))
        extractions = [TrackExtraction("Song", "Artist", True, [TieredObject("lighthouse", Tier.HIGH)])]
        claim = ClaimedObject(id="c", user_id="u", playlist_id="p", object_name="anchor")

        result = await converge_and_select(llm, "Coast", extractions, [claim])

        assert (result.input_tokens, result.output_tokens) == (900, 150)
        assert result.selected.object == "lighthouse"
        system, prompt = llm.chat_json.await_args.args
        assert '"anchor"' in prompt
        assert llm.chat_json.await_args.kwargs == {"temperature": 0.7, "max_tokens": 1500}
        json.dumps(result.to_dict())
