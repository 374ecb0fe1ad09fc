"""
Unit tests for SpotifyClient.

Tests cover:
- Playlist track fetching (pagination, limit, skipped items)
- Playlist listing
- Cover upload (size guard, headers)
- Token refresh (Basic auth, rotation)
- Error mapping and retry behaviour
"""

import base64
import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from src.spotify import (
    COVER_MAX_BYTES,
    SpotifyAuthError,
    SpotifyClient,
    SpotifyError,
    SpotifyNotFoundError,
    SpotifyRateLimitError,
)
from src.spotify.client import API_BASE, TOKEN_URL


def track_item(track_id, name="Song", artists=("Artist",), is_local=False):
    return {
        "added_at": "2024-01-01T00:00:00Z",
        "added_by": {"id": "adder"},
        "track": {
            "id": track_id,
            "name": name,
            "artists": [{"name": a} for a in artists],
            "album": {"name": "Album", "images": [{"url": "https://i.scdn.co/a.jpg"}],
                      "release_date": "2020"},
            "duration_ms": 200000,
            "explicit": False,
            "is_local": is_local,
        },
    }


def make_client(handler) -> SpotifyClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SpotifyClient(http_client=http, retry_base_delay=0.0)


class TestFetchPlaylistTracks:
    """Tests for fetch_playlist_tracks()."""

    @pytest.mark.asyncio
    async def test_follows_next_and_skips_unusable_items(self):
        """Null tracks and local files are dropped; pages are followed."""
        # Arrange
        page_two = f"{API_BASE}/playlists/p1/tracks?offset=2"
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if "offset=2" in str(request.url):
                return httpx.Response(200, json={"items": [track_item("t3")], "next": None})
            return httpx.Response(200, json={
                "items": [
                    track_item("t1", artists=("A", "B")),
                    {"track": None},
                    track_item("local", is_local=True),
                ],
                "next": page_two,
            })

        client = make_client(handler)

        # Act
        tracks = await client.fetch_playlist_tracks("token", "p1")

        # Assert
        assert [t.spotify_track_id for t in tracks] == ["t1", "t3"]
        assert tracks[0].artist == "A, B"
        assert tracks[0].album_image_url == "https://i.scdn.co/a.jpg"
        assert requests[0].headers["Authorization"] == "Bearer token"
        await client.close()

    @pytest.mark.asyncio
    async def test_stops_at_limit(self):
        def handler(request):
            return httpx.Response(200, json={
                "items": [track_item(f"t{i}") for i in range(20)],
                "next": f"{API_BASE}/more",
            })

        client = make_client(handler)

        tracks = await client.fetch_playlist_tracks("token", "p1", limit=15)

        assert len(tracks) == 15

    @pytest.mark.asyncio
    async def test_not_found_is_typed_and_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(404, json={"error": {"status": 404, "message": "Not found."}})

        client = make_client(handler)

        with pytest.raises(SpotifyNotFoundError) as exc_info:
            await client.fetch_playlist_tracks("token", "missing")

        assert exc_info.value.status == 404
        assert "(404)" in str(exc_info.value)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_rate_limit_is_retried(self):
        responses = [
            httpx.Response(429, headers={"Retry-After": "2"}, json={"error": {"message": "slow down"}}),
            httpx.Response(200, json={"items": [track_item("t1")], "next": None}),
        ]

        client = make_client(lambda request: responses.pop(0))

        with patch("src.util.retry.asyncio.sleep", new=AsyncMock()):
            tracks = await client.fetch_playlist_tracks("token", "p1")

        assert [t.spotify_track_id for t in tracks] == ["t1"]


class TestFetchUserPlaylists:
    """Tests for fetch_user_playlists()."""

    @pytest.mark.asyncio
    async def test_collects_every_page(self):
        def handler(request):
            if "page2" in str(request.url):
                return httpx.Response(200, json={
                    "items": [{"id": "p2", "name": "Two", "owner": {"id": "other"},
                               "tracks": {"total": 3}}],
                    "next": None,
                })
            return httpx.Response(200, json={
                "items": [{"id": "p1", "name": "One", "owner": {"id": "me"},
                           "items": {"total": 12}, "images": [{"url": "https://img"}]}],
                "next": f"{API_BASE}/me/playlists?page2",
            })

        client = make_client(handler)

        playlists = await client.fetch_user_playlists("token")

        assert [p.id for p in playlists] == ["p1", "p2"]
        assert playlists[0].track_count == 12
        assert playlists[0].image_url == "https://img"
        assert playlists[1].owner_id == "other"
        assert playlists[1].track_count == 3


class TestUploadPlaylistCover:
    """Tests for upload_playlist_cover()."""

    @pytest.mark.asyncio
    async def test_puts_jpeg_body(self):
        captured = {}

        def handler(request):
            captured["method"] = request.method
            captured["url"] = str(request.url)
            captured["content_type"] = request.headers["Content-Type"]
            captured["body"] = request.content
            return httpx.Response(202)

        client = make_client(handler)
        payload = base64.b64encode(b"\xff\xd8jpeg").decode()

        await client.upload_playlist_cover("token", "p1", payload)

        assert captured["method"] == "PUT"
        assert captured["url"] == f"{API_BASE}/playlists/p1/images"
        assert captured["content_type"] == "image/jpeg"
        assert captured["body"] == payload.encode()

    @pytest.mark.asyncio
    async def test_oversized_payload_is_rejected_before_sending(self):
        handler = AsyncMock()
        client = make_client(handler)

        with pytest.raises(ValueError, match="at most"):
            await client.upload_playlist_cover("token", "p1", "A" * (COVER_MAX_BYTES + 1))

        handler.assert_not_called()


class TestRefreshAccessToken:
    """Tests for refresh_access_token()."""

    @pytest.mark.asyncio
    async def test_uses_basic_auth_and_returns_rotated_token(self):
        captured = {}

        def handler(request):
            captured["url"] = str(request.url)
            captured["auth"] = request.headers["Authorization"]
            captured["form"] = request.content.decode()
            return httpx.Response(200, json={
                "access_token": "access-2",
                "expires_in": 3600,
                "refresh_token": "refresh-2",
                "scope": "ugc-image-upload",
            })

        client = make_client(handler)

        grant = await client.refresh_access_token("cid", "secret", "refresh-1")

        assert captured["url"] == TOKEN_URL
        assert captured["auth"] == "Basic " + base64.b64encode(b"cid:secret").decode()
        assert "grant_type=refresh_token" in captured["form"]
        assert "refresh_token=refresh-1" in captured["form"]
        assert grant.access_token == "access-2"
        assert grant.refresh_token == "refresh-2"

    @pytest.mark.asyncio
    async def test_invalid_grant_raises_auth_error(self):
        def handler(request):
            return httpx.Response(401, content=json.dumps({
                "error": "invalid_grant", "error_description": "Refresh token revoked",
            }))

        client = make_client(handler)

        with pytest.raises(SpotifyAuthError, match="Refresh token revoked"):
            await client.refresh_access_token("cid", "secret", "bad")


class TestSpotifyErrors:
    """Tests for the exception hierarchy."""

    def test_message_carries_operation_and_status(self):
        error = SpotifyError(500, "boom", "cover upload")
        assert str(error) == "Spotify cover upload failed (500): boom"

    def test_message_without_operation(self):
        assert str(SpotifyError(502, "bad gateway")) == "Spotify API error (502): bad gateway"

    def test_rate_limit_keeps_retry_after(self):
        error = SpotifyRateLimitError(429, "slow", retry_after=3.0)
        assert error.retry_after == 3.0
        assert isinstance(error, SpotifyError)
