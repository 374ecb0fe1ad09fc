"""
Unit tests for retry classification and backoff.

Tests cover:
- Marker-based classification (client errors never retried)
- Network exception classification
- Backoff growth, jitter and cap
- with_retry attempt counting and callbacks
"""

import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from src.util.retry import backoff_delay, is_retryable, with_retry


class TestIsRetryable:
    """Tests for is_retryable()."""

    @pytest.mark.parametrize("message", [
        "Spotify cover upload failed (429): Too many requests",
        "Replicate create prediction failed (500): boom",
        "Lyrics (502) bad gateway",
        "OpenAI API error (503): overloaded",
        "gateway (504)",
        "Replicate prediction request timed out after 60s",
        "Connection Timeout",
    ])
    def test_transient_messages_are_retryable(self, message):
        assert is_retryable(RuntimeError(message)) is True

    @pytest.mark.parametrize("message", [
        "Spotify playlist tracks failed (400): bad request",
        "Spotify token refresh failed (401): invalid_grant",
        "Spotify cover upload failed (403): forbidden",
        "Replicate model lookup failed (404)",
    ])
    def test_client_errors_are_not_retryable(self, message):
        assert is_retryable(RuntimeError(message)) is False

    def test_client_error_marker_wins_over_timeout_text(self):
        """A 404 that also mentions a timeout is still permanent."""
        assert is_retryable(RuntimeError("(404) request timed out")) is False

    def test_network_errors_are_retryable(self):
        assert is_retryable(httpx.ConnectError("connection refused")) is True
        assert is_retryable(ConnectionError("reset by peer")) is True
        assert is_retryable(asyncio.TimeoutError()) is True

    def test_other_errors_are_not_retryable(self):
        assert is_retryable(ValueError("Cover payload too large")) is False
        assert is_retryable(KeyError("id")) is False


class TestBackoffDelay:
    """Tests for backoff_delay()."""

    def test_grows_exponentially_within_jitter(self):
        for attempt, expected in [(1, 1.0), (2, 2.0), (3, 4.0)]:
            delay = backoff_delay(attempt, base_delay=1.0, max_delay=30.0)
            assert expected <= delay <= expected + 0.5

    def test_is_capped(self):
        assert backoff_delay(10, base_delay=5.0, max_delay=30.0) == 30.0


class TestWithRetry:
    """Tests for with_retry()."""

    @pytest.mark.asyncio
    async def test_returns_first_success(self):
        fn = AsyncMock(return_value="ok")

        result = await with_retry(fn, max_attempts=3)

        assert result == "ok"
        assert fn.await_count == 1

    @pytest.mark.asyncio
    async def test_client_error_makes_one_attempt(self):
        """A (404) failure is raised immediately without backoff."""
        # Arrange
        fn = AsyncMock(side_effect=RuntimeError("Spotify playlist tracks failed (404): Not found"))

        # Act & Assert
        with patch("src.util.retry.asyncio.sleep", new=AsyncMock()) as sleep:
            with pytest.raises(RuntimeError, match="404"):
                await with_retry(fn, max_attempts=3)

        assert fn.await_count == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_server_error_uses_every_attempt(self):
        """A persistent (503) is attempted max_attempts times, then raised."""
        fn = AsyncMock(side_effect=RuntimeError("OpenAI API error (503): overloaded"))

        with patch("src.util.retry.asyncio.sleep", new=AsyncMock()) as sleep:
            with pytest.raises(RuntimeError, match="503"):
                await with_retry(fn, max_attempts=3)

        assert fn.await_count == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(self):
        fn = AsyncMock(side_effect=[httpx.ReadTimeout("slow"), "ok"])
        retries = []

        with patch("src.util.retry.asyncio.sleep", new=AsyncMock()):
            result = await with_retry(
                fn, max_attempts=3, on_retry=lambda attempt, error, delay: retries.append(attempt)
            )

        assert result == "ok"
        assert retries == [1]

    @pytest.mark.asyncio
    async def test_zero_attempts_still_calls_once(self):
        fn = AsyncMock(side_effect=RuntimeError("(500)"))

        with patch("src.util.retry.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(RuntimeError):
                await with_retry(fn, max_attempts=0)

        assert fn.await_count == 1
