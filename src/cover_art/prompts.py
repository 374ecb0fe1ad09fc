"""Prompt text for the extraction, convergence and light extraction calls."""

from typing import List, Sequence

from .models import ClaimedObject, ObjectScore, Tier, Track, TrackExtraction

SINGLE_TRACK_SYSTEM_PROMPT = """You are a music analyst. Given a single song (with lyrics or metadata), extract symbolic objects that represent the song's themes.

Identify 1-3 concrete, visual objects (nouns) that capture the song's essence. These should be things that could appear in cover art, not abstract concepts.

Tier each object:
- "high": directly referenced in lyrics or strongly evoked
- "medium": thematically implied
- "low": loosely connected, creative interpretation

Respond with JSON:
{
  "trackName": "...",
  "artist": "...",
  "lyricsFound": true/false,
  "objects": [
    { "object": "...", "tier": "high"|"medium"|"low", "reasoning": "..." }
  ]
}"""

CONVERGENCE_SYSTEM_PROMPT = """You are a creative director selecting a single symbolic object to represent a music playlist's cover art.

Given per-track extracted objects and a list of objects already claimed by other playlists (exclusion list), select the best object that:
1. Represents the playlist's overall mood/theme
2. Does NOT duplicate any object in the exclusion list
3. Has strong visual potential for cover art
4. Is specific enough to be distinctive, not generic

Return 3 ranked candidates with aesthetic context (how the object should look/feel in the art).

Respond with JSON:
{
  "candidates": [
    {
      "object": "...",
      "aestheticContext": "How this object should appear: mood, lighting, composition, texture",
      "reasoning": "Why this object represents the playlist",
      "rank": 1
    }
  ],
  "selectedIndex": 0,
  "collisionNotes": "Any notes about collisions avoided or creative pivots made"
}"""

LIGHT_EXTRACTION_SYSTEM_PROMPT = """You are a creative director. A user has described in their own words what a playlist's cover art should be about.

Turn the description into ONE concrete, visual object (a noun that could be drawn) plus an aesthetic context describing mood, lighting, composition and texture. Stay faithful to the user's intent. Do NOT pick an object from the exclusion list.

Respond with JSON:
{
  "object": "...",
  "aestheticContext": "...",
  "reasoning": "Why this object fits the description"
}"""

NO_EXCLUSIONS = "None, this is the first playlist being analyzed."


def build_single_track_prompt(track: Track, fallback_context: str) -> str:
    context = f"Lyrics (truncated):\n{track.lyrics}" if track.lyrics else fallback_context
    return f'Analyze this track and extract symbolic objects:\n\n"{track.name}" by {track.artist}\n{context}'


def format_exclusions(exclusions: Sequence[ClaimedObject]) -> str:
    if not exclusions:
        return NO_EXCLUSIONS
    return "\n".join(f'- "{e.object_name}" (used by another playlist)' for e in exclusions)


def build_convergence_prompt(
    playlist_name: str,
    extractions: List[TrackExtraction],
    scores: List[ObjectScore],
    exclusions: Sequence[ClaimedObject],
) -> str:
    # Low-tier objects add noise, so only high and medium are shown per track
    sections = []
    for extraction in extractions:
        relevant = [o for o in extraction.objects if o.tier in (Tier.HIGH, Tier.MEDIUM)]
        if not relevant:
            continue
        lines = "\n".join(f"  - {o.object} ({o.tier.value})" for o in relevant)
        sections.append(f'"{extraction.track_name}" by {extraction.artist}:\n{lines}')
    object_summary = "\n\n".join(sections)

    score_summary = "\n".join(
        f'- "{s.object}": {s.score}pts across {s.track_count} track{"" if s.track_count == 1 else "s"}'
        for s in scores[:10]
    )

    return (
        f'Playlist: "{playlist_name}"\n\n'
        f"Per-track extracted objects:\n{object_summary}\n\n"
        f"Aggregate object scores (higher = more prominent across playlist):\n{score_summary}\n\n"
        f"Objects already claimed by other playlists (DO NOT reuse these):\n"
        f"{format_exclusions(exclusions)}\n\n"
        f"Select the best symbolic object for this playlist's cover art. "
        f"Prefer objects with higher aggregate scores."
    )


def build_light_extraction_prompt(text: str, playlist_name: str,
                                  exclusions: Sequence[ClaimedObject]) -> str:
    return (
        f'Playlist: "{playlist_name}"\n\n'
        f"User description:\n{text}\n\n"
        f"Objects already claimed by other playlists (DO NOT reuse these):\n"
        f"{format_exclusions(exclusions)}"
    )
