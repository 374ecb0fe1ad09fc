"""Exception classes for the Spotify Web API client."""

from typing import Optional


class SpotifyError(Exception):
    """Base exception for all Spotify Web API errors.

    The status code appears in the message as ``({status})`` so that
    retry classification can read it from the text.

    Attributes:
        status: HTTP status code (0 when the request never got a response)
        message: Error detail returned by the API
    """

    def __init__(self, status: int, message: str, operation: Optional[str] = None):
        """Initialize Spotify error.

        Args:
            status: HTTP status code
            message: Human-readable error message
            operation: Short name of the failing call (e.g. "cover upload")
        """
        self.status = status
        self.message = message
        self.operation = operation
        prefix = f"Spotify {operation} failed" if operation else "Spotify API error"
        super().__init__(f"{prefix} ({status}): {message}")


class SpotifyAuthError(SpotifyError):
    """Access token missing, expired or revoked (401)."""

    pass


class SpotifyForbiddenError(SpotifyError):
    """Token lacks the scope for this action, or the user does not own the playlist (403)."""

    pass


class SpotifyNotFoundError(SpotifyError):
    """Playlist or user does not exist (404)."""

    pass


class SpotifyRateLimitError(SpotifyError):
    """Too many requests (429).

    Attributes:
        retry_after: Seconds suggested by the Retry-After header, if any
    """

    def __init__(self, status: int, message: str, operation: Optional[str] = None,
                 retry_after: Optional[float] = None):
        super().__init__(status, message, operation)
        self.retry_after = retry_after


STATUS_ERRORS = {
    401: SpotifyAuthError,
    403: SpotifyForbiddenError,
    404: SpotifyNotFoundError,
}
