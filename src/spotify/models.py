"""Data models for Spotify Web API responses."""

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class SpotifyTrack:
    """A track as listed in a playlist.

    Attributes:
        spotify_track_id: Spotify track ID
        name: Track title
        artist: Artist names joined with ", "
        album: Album name
        album_image_url: First album image, if any
        duration_ms: Duration in milliseconds
        added_at: ISO timestamp the track was added to the playlist
        added_by: Spotify user ID that added it
        explicit: Explicit content flag
        release_date: Album release date as reported by Spotify
        is_local: True for local files (these have no usable ID)
    """

    spotify_track_id: str
    name: str
    artist: str
    album: str = ""
    album_image_url: Optional[str] = None
    duration_ms: int = 0
    added_at: Optional[str] = None
    added_by: Optional[str] = None
    explicit: bool = False
    release_date: Optional[str] = None
    is_local: bool = False

    @classmethod
    def from_api(cls, item: Dict[str, Any]) -> Optional["SpotifyTrack"]:
        """Build from a playlist item, or None when the item carries no track."""
        track = item.get("track")
        if not track or not track.get("id"):
            return None
        album = track.get("album") or {}
        images = album.get("images") or []
        return cls(
            spotify_track_id=track["id"],
            name=track.get("name", ""),
            artist=", ".join(a.get("name", "") for a in track.get("artists") or []),
            album=album.get("name", ""),
            album_image_url=images[0].get("url") if images else None,
            duration_ms=track.get("duration_ms") or 0,
            added_at=item.get("added_at"),
            added_by=(item.get("added_by") or {}).get("id"),
            explicit=bool(track.get("explicit", False)),
            release_date=album.get("release_date"),
            is_local=bool(track.get("is_local", False)),
        )


@dataclass(frozen=True)
class SpotifyPlaylist:
    """A playlist from the current user's library."""

    id: str
    name: str
    owner_id: str
    collaborative: bool = False
    snapshot_id: Optional[str] = None
    track_count: int = 0
    image_url: Optional[str] = None

    @classmethod
    def from_api(cls, item: Dict[str, Any]) -> "SpotifyPlaylist":
        # Newer payloads report the count under "items", older ones under "tracks"
        counts = item.get("items") or item.get("tracks") or {}
        images = item.get("images") or []
        return cls(
            id=item["id"],
            name=item.get("name", ""),
            owner_id=(item.get("owner") or {}).get("id", ""),
            collaborative=bool(item.get("collaborative", False)),
            snapshot_id=item.get("snapshot_id"),
            track_count=counts.get("total", 0) or 0,
            image_url=images[0].get("url") if images else None,
        )


@dataclass(frozen=True)
class TokenGrant:
    """Result of a refresh-token exchange."""

    access_token: str
    expires_in: int = 3600
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
