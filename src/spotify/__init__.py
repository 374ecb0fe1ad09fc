"""Spotify Web API client module for playlist access and cover upload."""

__version__ = "1.0.0"

from .client import COVER_MAX_BYTES, MAX_TRACKS_PER_PLAYLIST, SpotifyClient
from .exceptions import (
    SpotifyAuthError,
    SpotifyError,
    SpotifyForbiddenError,
    SpotifyNotFoundError,
    SpotifyRateLimitError,
)
from .models import SpotifyPlaylist, SpotifyTrack, TokenGrant

__all__ = [
    # Client
    "SpotifyClient",
    "COVER_MAX_BYTES",
    "MAX_TRACKS_PER_PLAYLIST",
    # Models
    "SpotifyTrack",
    "SpotifyPlaylist",
    "TokenGrant",
    # Exceptions
    "SpotifyError",
    "SpotifyAuthError",
    "SpotifyForbiddenError",
    "SpotifyNotFoundError",
    "SpotifyRateLimitError",
]
