"""
Lyric fetching from lyrics.ovh with a per-track SQLite cache.

Missing lyrics are never an error: a track without lyrics is described to
the LLM by its title, artist and album instead.
"""

import asyncio
import logging
import sqlite3
from typing import List, Optional, Tuple
from urllib.parse import quote

import httpx

from .models import Track
from .store import Database

logger = logging.getLogger(__name__)

LYRICS_API = "https://api.lyrics.ovh/v1"
LYRICS_TIMEOUT = 5.0
LYRICS_CONCURRENCY = 5
LYRICS_TRUNCATE_CHARS = 800


def create_fallback_context(track: Track) -> str:
    return f'Track: "{track.name}" by {track.artist} from album "{track.album}"'


class LyricsFetcher:
    """
    Fetches lyrics for a playlist's tracks, at most ``concurrency`` at a time.

    Example:
        >>> fetcher = LyricsFetcher(db)
        >>> tracks = await fetcher.fetch_batch(tracks)
        >>> found = sum(t.lyrics_found for t in tracks)
    """

    def __init__(
        self,
        db: Optional[Database] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = LYRICS_TIMEOUT,
        concurrency: int = LYRICS_CONCURRENCY,
        truncate_chars: int = LYRICS_TRUNCATE_CHARS,
    ):
        self.db = db
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(timeout=timeout)
        self.timeout = timeout
        self.concurrency = concurrency
        self.truncate_chars = truncate_chars

    async def fetch_lyrics(self, artist: str, title: str) -> Tuple[Optional[str], bool]:
        """Fetch lyrics for one track.

        Only the first credited artist is queried. Any failure (HTTP error,
        timeout, empty lyrics) is reported as not found.

        Returns:
            (lyrics truncated to ``truncate_chars``, found)
        """
        primary_artist = artist.split(",")[0].strip()
        url = f"{LYRICS_API}/{quote(primary_artist, safe='')}/{quote(title, safe='')}"
        try:
            response = await self.client.get(url, timeout=self.timeout)
            if not response.is_success:
                return None, False
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"Lyrics lookup failed for {primary_artist} - {title}: {e}")
            return None, False

        lyrics = data.get("lyrics") if isinstance(data, dict) else None
        if not isinstance(lyrics, str) or not lyrics.strip():
            return None, False
        return lyrics[:self.truncate_chars], True

    def _cached(self, tracks: List[Track]) -> dict:
        if self.db is None:
            return {}
        try:
            return self.db.get_cached_lyrics([t.spotify_track_id for t in tracks])
        except sqlite3.Error as e:
            logger.warning(f"Lyrics cache lookup failed, fetching all: {e}")
            return {}

    def _store(self, tracks: List[Track]) -> None:
        if self.db is None or not tracks:
            return
        try:
            self.db.cache_lyrics(
                (t.spotify_track_id, t.name, t.artist, t.lyrics) for t in tracks
            )
        except sqlite3.Error as e:
            logger.warning(f"Lyrics cache write failed: {e}")

    async def fetch_batch(self, tracks: List[Track]) -> List[Track]:
        """Attach lyrics to every track, preserving order.

        Args:
            tracks: Playlist tracks

        Returns:
            New Track objects with ``lyrics``/``lyrics_found`` set
        """
        cached = self._cached(tracks)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def resolve(track: Track) -> Track:
            if track.spotify_track_id in cached:
                return track.with_lyrics(cached[track.spotify_track_id], True)
            async with semaphore:
                lyrics, found = await self.fetch_lyrics(track.artist, track.name)
            return track.with_lyrics(lyrics, found)

        results = await asyncio.gather(*(resolve(t) for t in tracks))

        fresh = [t for t in results if t.lyrics_found and t.spotify_track_id not in cached]
        self._store(fresh)

        found = sum(1 for t in results if t.lyrics_found)
        logger.info(
            f"Lyrics found for {found}/{len(results)} tracks ({len(cached)} from cache)"
        )
        return list(results)

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()
