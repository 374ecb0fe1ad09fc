"""
Theme extraction: per-track symbolic objects, aggregate scoring, and the
single-call light extraction from user-supplied text.
"""

import asyncio
import inspect
import json
import logging
import sqlite3
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from .exceptions import ExtractionError
from .llm import LLMClient
from .lyrics import create_fallback_context
from .models import ClaimedObject, ExtractionBatch, LightExtraction, ObjectScore, Track, TrackExtraction
from .prompts import (
    LIGHT_EXTRACTION_SYSTEM_PROMPT,
    SINGLE_TRACK_SYSTEM_PROMPT,
    build_light_extraction_prompt,
    build_single_track_prompt,
)
from .store import Database

logger = logging.getLogger(__name__)

EXTRACTION_CONCURRENCY = 5
EXTRACTION_TEMPERATURE = 0.6
EXTRACTION_MAX_TOKENS = 500
LIGHT_EXTRACTION_TEMPERATURE = 0.7
LIGHT_EXTRACTION_MAX_TOKENS = 500

# (completed, total, extractions so far, tokens used so far)
ProgressCallback = Callable[[int, int, List[TrackExtraction], int], Union[None, Awaitable[None]]]


def score_objects(extractions: Sequence[TrackExtraction]) -> List[ObjectScore]:
    """Aggregate tier scores per object (case-insensitive) across all tracks.

    Returns:
        Scores sorted from most to least prominent
    """
    totals: Dict[str, Dict[str, Any]] = {}
    for extraction in extractions:
        track_key = f"{extraction.track_name}|||{extraction.artist}"
        for obj in extraction.objects:
            entry = totals.setdefault(obj.object.lower(), {"score": 0, "tracks": set()})
            entry["score"] += obj.tier.score
            entry["tracks"].add(track_key)

    scores = [
        ObjectScore(object=name, score=entry["score"], track_count=len(entry["tracks"]))
        for name, entry in totals.items()
    ]
    scores.sort(key=lambda s: s.score, reverse=True)
    return scores


class ThemeExtractor:
    """
    Extracts tiered symbolic objects from each track, one LLM call per track.

    Results are cached per Spotify track ID and model; cached extractions contribute
    their original token counts so cost reports stay comparable between
    cold and warm runs.

    Example:
        >>> extractor = ThemeExtractor(llm, db)
        >>> batch = await extractor.extract_themes(tracks)
        >>> print(batch.cache_hits, batch.input_tokens)
    """

    def __init__(self, llm: LLMClient, db: Optional[Database] = None,
                 concurrency: int = EXTRACTION_CONCURRENCY):
        self.llm = llm
        self.db = db
        self.concurrency = concurrency

    async def extract_track(self, track: Track) -> tuple:
        """Run the extraction call for one track.

        Returns:
            (TrackExtraction, input_tokens, output_tokens)
        """
        response = await self.llm.chat_json(
            SINGLE_TRACK_SYSTEM_PROMPT,
            build_single_track_prompt(track, create_fallback_context(track)),
            temperature=EXTRACTION_TEMPERATURE,
            max_tokens=EXTRACTION_MAX_TOKENS,
        )
        extraction = TrackExtraction.from_dict(response.parsed, track)
        return extraction, response.input_tokens, response.output_tokens

    def _load_cache(self, tracks: List[Track]) -> Dict[int, tuple]:
        """Cached (extraction, tokens_in, tokens_out) by track index."""
        if self.db is None or not tracks:
            return {}
        try:
            rows = self.db.get_cached_extractions([t.spotify_track_id for t in tracks], self.llm.model)
            hits = {}
            for i, track in enumerate(tracks):
                row = rows.get(track.spotify_track_id)
                if row is None:
                    continue
                extraction = TrackExtraction.from_dict(json.loads(row["extraction_json"]), track)
                hits[i] = (extraction, row["input_tokens"] or 0, row["output_tokens"] or 0)
            return hits
        except (sqlite3.Error, json.JSONDecodeError) as e:
            logger.warning(f"Extraction cache lookup failed, extracting all: {e}")
            return {}

    def _save_cache(self, tracks: List[Track], fresh: Dict[int, tuple]) -> None:
        if self.db is None or not fresh:
            return
        try:
            self.db.cache_extractions(
                (
                    tracks[i].spotify_track_id,
                    tracks[i].name,
                    tracks[i].artist,
                    json.dumps(extraction.to_dict()),
                    self.llm.model,
                    tokens_in,
                    tokens_out,
                )
                for i, (extraction, tokens_in, tokens_out) in fresh.items()
            )
            logger.info(f"Cached {len(fresh)} new extractions")
        except sqlite3.Error as e:
            logger.warning(f"Extraction cache write failed: {e}")

    @staticmethod
    async def _report(on_progress: Optional[ProgressCallback], completed: int, total: int,
                      extractions: List[TrackExtraction], tokens: int) -> None:
        if on_progress is None:
            return
        try:
            result = on_progress(completed, total, extractions, tokens)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.debug(f"Extraction progress callback failed: {e}")

    async def extract_themes(self, tracks: List[Track],
                             on_progress: Optional[ProgressCallback] = None) -> ExtractionBatch:
        """
        Extract objects for every track.

        A track whose call fails gets an extraction with no objects; the batch
        itself only fails if the caller's task is cancelled.

        Args:
            tracks: Tracks with lyrics attached
            on_progress: Called after each extracted track, and once more at the
                end when there were cache hits

        Returns:
            ExtractionBatch in track order
        """
        results: List[Optional[TrackExtraction]] = [None] * len(tracks)
        counters = {"in": 0, "out": 0}

        hits = self._load_cache(tracks)
        for i, (extraction, tokens_in, tokens_out) in hits.items():
            results[i] = extraction
            counters["in"] += tokens_in
            counters["out"] += tokens_out
        if hits:
            logger.info(f"Extraction cache: {len(hits)} hits, {len(tracks) - len(hits)} misses")

        fresh: Dict[int, tuple] = {}
        semaphore = asyncio.Semaphore(self.concurrency)

        def completed() -> List[TrackExtraction]:
            return [r for r in results if r is not None]

        async def run(i: int) -> None:
            track = tracks[i]
            async with semaphore:
                try:
                    extraction, tokens_in, tokens_out = await self.extract_track(track)
                    counters["in"] += tokens_in
                    counters["out"] += tokens_out
                    fresh[i] = (extraction, tokens_in, tokens_out)
                except Exception as e:
                    logger.warning(f"Extraction failed for '{track.name}': {e}")
                    counters["in"] += getattr(e, "input_tokens", 0)
                    counters["out"] += getattr(e, "output_tokens", 0)
                    extraction = TrackExtraction.empty(track)
                results[i] = extraction
            done = completed()
            await self._report(on_progress, len(done), len(tracks), done,
                               counters["in"] + counters["out"])

        await asyncio.gather(*(run(i) for i in range(len(tracks)) if i not in hits))

        self._save_cache(tracks, fresh)

        if hits:
            done = completed()
            await self._report(on_progress, len(done), len(tracks), done,
                               counters["in"] + counters["out"])

        return ExtractionBatch(
            extractions=completed(),
            input_tokens=counters["in"],
            output_tokens=counters["out"],
            cache_hits=len(hits),
        )


async def light_extract(llm: LLMClient, text: str, playlist_name: str,
                        exclusions: Sequence[ClaimedObject]) -> LightExtraction:
    """Derive the object and aesthetic straight from a user's description.

    Raises:
        ExtractionError: If the response names no object
    """
    response = await llm.chat_json(
        LIGHT_EXTRACTION_SYSTEM_PROMPT,
        build_light_extraction_prompt(text, playlist_name, exclusions),
        temperature=LIGHT_EXTRACTION_TEMPERATURE,
        max_tokens=LIGHT_EXTRACTION_MAX_TOKENS,
    )
    obj = str(response.parsed.get("object") or "").strip()
    if not obj:
        raise ExtractionError("Light extraction returned no object",
                              response.input_tokens, response.output_tokens)
    return LightExtraction(
        object=obj,
        aesthetic_context=str(response.parsed.get("aestheticContext") or ""),
        reasoning=str(response.parsed.get("reasoning") or ""),
        input_tokens=response.input_tokens,
        output_tokens=response.output_tokens,
    )
