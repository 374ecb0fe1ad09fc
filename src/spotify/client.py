"""Async HTTP client for the Spotify Web API."""

import base64
import logging
from typing import Any, Dict, List, Optional

import httpx

from src.util.retry import SPOTIFY_RETRY_ATTEMPTS, with_retry

from .exceptions import STATUS_ERRORS, SpotifyError, SpotifyRateLimitError
from .models import SpotifyPlaylist, SpotifyTrack, TokenGrant

logger = logging.getLogger(__name__)

API_BASE = "https://api.spotify.com/v1"
TOKEN_URL = "https://accounts.spotify.com/api/token"

MAX_TRACKS_PER_PLAYLIST = 15
PLAYLIST_PAGE_SIZE = 50
COVER_MAX_BYTES = 256 * 1024
DEFAULT_TIMEOUT = 30.0

TRACK_FIELDS = (
    "items(added_at,added_by.id,track(id,name,artists(name),"
    "album(name,images,release_date),duration_ms,explicit,is_local)),next,total"
)


class SpotifyClient:
    """Async client for the Spotify endpoints the cover pipeline needs.

    Every call is retried on rate limiting, server errors and network
    failures. Access tokens are passed per call because one client serves
    many users in a batch run.

    Example:
        >>> async with SpotifyClient() as spotify:
        ...     tracks = await spotify.fetch_playlist_tracks(token, "37i9dQZF1DX")
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT,
        retry_attempts: int = SPOTIFY_RETRY_ATTEMPTS,
        retry_base_delay: float = 1.0,
    ):
        """Initialize Spotify client.

        Args:
            http_client: Pre-configured client (tests pass one with a mock transport)
            timeout: Per-request timeout in seconds
            retry_attempts: Attempts per call
            retry_base_delay: First backoff in seconds
        """
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(timeout=timeout)
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay

    async def __aenter__(self) -> "SpotifyClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            await self.client.aclose()

    async def _retry(self, fn, label: str):
        return await with_retry(
            fn,
            max_attempts=self.retry_attempts,
            base_delay=self.retry_base_delay,
            label=label,
        )

    @staticmethod
    def _raise_for_status(response: httpx.Response, operation: str) -> None:
        """Raise a typed SpotifyError for non-2xx responses."""
        if response.is_success:
            return

        try:
            body = response.json()
            error = body.get("error")
            if isinstance(error, dict):
                message = error.get("message", "")
            else:
                message = body.get("error_description") or str(error or "")
        except ValueError:
            message = response.text[:200]

        status = response.status_code
        if status == 429:
            retry_after = response.headers.get("Retry-After")
            raise SpotifyRateLimitError(
                status, message, operation,
                retry_after=float(retry_after) if retry_after else None,
            )
        error_class = STATUS_ERRORS.get(status, SpotifyError)
        raise error_class(status, message, operation)

    @staticmethod
    def _auth(access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    async def _get_json(self, access_token: str, url: str, operation: str,
                        params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        async def call():
            response = await self.client.get(url, params=params, headers=self._auth(access_token))
            self._raise_for_status(response, operation)
            return response.json()

        return await self._retry(call, f"Spotify {operation}")

    async def fetch_playlist_tracks(
        self,
        access_token: str,
        playlist_id: str,
        limit: int = MAX_TRACKS_PER_PLAYLIST,
    ) -> List[SpotifyTrack]:
        """Fetch up to ``limit`` tracks of a playlist, in playlist order.

        Items without a track (removed or unavailable) and local files are skipped.

        Args:
            access_token: User access token
            playlist_id: Spotify playlist ID
            limit: Maximum number of tracks to return

        Returns:
            List of SpotifyTrack
        """
        url: Optional[str] = f"{API_BASE}/playlists/{playlist_id}/tracks"
        params: Optional[Dict[str, Any]] = {"fields": TRACK_FIELDS, "limit": min(limit, 50)}
        tracks: List[SpotifyTrack] = []

        while url and len(tracks) < limit:
            page = await self._get_json(access_token, url, "playlist tracks", params)
            for item in page.get("items") or []:
                track = SpotifyTrack.from_api(item)
                if track is None or track.is_local:
                    continue
                tracks.append(track)
                if len(tracks) >= limit:
                    break
            # "next" already carries the query string
            url = page.get("next")
            params = None

        logger.debug(f"Fetched {len(tracks)} tracks for playlist {playlist_id}")
        return tracks

    async def fetch_user_playlists(self, access_token: str) -> List[SpotifyPlaylist]:
        """Fetch every playlist in the current user's library.

        Args:
            access_token: User access token

        Returns:
            List of SpotifyPlaylist, following pagination to the end
        """
        url: Optional[str] = f"{API_BASE}/me/playlists"
        params: Optional[Dict[str, Any]] = {"limit": PLAYLIST_PAGE_SIZE}
        playlists: List[SpotifyPlaylist] = []

        while url:
            page = await self._get_json(access_token, url, "playlist listing", params)
            playlists.extend(
                SpotifyPlaylist.from_api(item) for item in page.get("items") or [] if item
            )
            url = page.get("next")
            params = None

        logger.info(f"Fetched {len(playlists)} playlists")
        return playlists

    async def upload_playlist_cover(self, access_token: str, playlist_id: str, jpeg_base64: str) -> None:
        """Replace a playlist's cover image.

        Args:
            access_token: User access token with ugc-image-upload scope
            playlist_id: Spotify playlist ID
            jpeg_base64: Base64-encoded JPEG

        Raises:
            ValueError: If the encoded payload exceeds 256 KiB
            SpotifyError: If the upload is rejected
        """
        size = len(jpeg_base64)
        if size > COVER_MAX_BYTES:
            raise ValueError(
                f"Cover payload is {size} bytes, Spotify accepts at most {COVER_MAX_BYTES}"
            )

        async def call():
            response = await self.client.put(
                f"{API_BASE}/playlists/{playlist_id}/images",
                content=jpeg_base64,
                headers={**self._auth(access_token), "Content-Type": "image/jpeg"},
            )
            self._raise_for_status(response, "cover upload")

        await self._retry(call, "Spotify cover upload")
        logger.info(f"Uploaded cover for playlist {playlist_id} ({size} bytes)")

    async def refresh_access_token(self, client_id: str, client_secret: str, refresh_token: str) -> TokenGrant:
        """Exchange a refresh token for a fresh access token.

        Args:
            client_id: Spotify application client ID
            client_secret: Spotify application client secret
            refresh_token: Decrypted refresh token

        Returns:
            TokenGrant; ``refresh_token`` is set only when Spotify rotated it
        """
        basic = base64.b64encode(f"{client_id}:{client_secret}".encode()).decode()

        async def call():
            response = await self.client.post(
                TOKEN_URL,
                data={"grant_type": "refresh_token", "refresh_token": refresh_token},
                headers={"Authorization": f"Basic {basic}"},
            )
            self._raise_for_status(response, "token refresh")
            return response.json()

        data = await self._retry(call, "Spotify token refresh")
        return TokenGrant(
            access_token=data["access_token"],
            expires_in=int(data.get("expires_in", 3600)),
            refresh_token=data.get("refresh_token"),
            scope=data.get("scope"),
        )
