"""Retry with exponential backoff for calls to external services.

Failures are classified from the exception message: every client in this
project puts the HTTP status into its error text as ``({status})`` so that
one classifier serves the lyric, LLM, image and Spotify calls alike.
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

BASE_DELAY = 1.0
MAX_DELAY = 30.0
JITTER = 0.5

LLM_RETRY_ATTEMPTS = 3
SPOTIFY_RETRY_ATTEMPTS = 3
REPLICATE_RETRY_ATTEMPTS = 2

# Client errors are checked first and always win.
NON_RETRYABLE_MARKERS = ("(400)", "(401)", "(403)", "(404)")
RETRYABLE_MARKERS = (
    "timed out",
    "timeout",
    "(429)",
    "(500)",
    "(502)",
    "(503)",
    "(504)",
)
NETWORK_ERRORS = (httpx.TransportError, ConnectionError, TimeoutError, asyncio.TimeoutError)


def is_retryable(error: BaseException) -> bool:
    """Decide whether a failed call is worth another attempt.

    Args:
        error: Exception raised by the call

    Returns:
        True for rate limiting, server errors, timeouts and network failures
    """
    message = str(error)
    if any(marker in message for marker in NON_RETRYABLE_MARKERS):
        return False
    if isinstance(error, NETWORK_ERRORS):
        return True
    lowered = message.lower()
    return any(marker in lowered for marker in RETRYABLE_MARKERS)


def backoff_delay(attempt: int, base_delay: float = BASE_DELAY, max_delay: float = MAX_DELAY) -> float:
    """Seconds to wait after the given (1-based) failed attempt."""
    return min(base_delay * (2 ** (attempt - 1)) + random.uniform(0, JITTER), max_delay)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    base_delay: float = BASE_DELAY,
    max_delay: float = MAX_DELAY,
    retryable: Callable[[BaseException], bool] = is_retryable,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    label: str = "call",
) -> T:
    """Run ``fn`` until it succeeds, fails permanently, or attempts run out.

    Args:
        fn: Zero-argument coroutine factory; called once per attempt
        max_attempts: Total attempts; values below 1 mean a single attempt
        base_delay: First backoff in seconds
        max_delay: Upper bound of any single backoff
        retryable: Classifier for failures
        on_retry: Called with (attempt, error, delay) before each backoff
        label: Name used in log messages

    Returns:
        The value of the first successful call

    Raises:
        The last error when it is not retryable or attempts are exhausted.
    """
    attempts = max(1, max_attempts)
    attempt = 1
    while True:
        try:
            return await fn()
        except Exception as e:
            if attempt >= attempts or not retryable(e):
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                f"{label} failed (attempt {attempt}/{attempts}), retrying in {delay:.1f}s: {e}"
            )
            if on_retry is not None:
                on_retry(attempt, e, delay)
            await asyncio.sleep(delay)
            attempt += 1
