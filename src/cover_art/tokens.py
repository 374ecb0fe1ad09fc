"""Access-token acquisition from encrypted, stored refresh tokens."""

import logging
from typing import Optional

from src.spotify import SpotifyClient, SpotifyError

from . import crypto
from .exceptions import TokenRefreshError
from .store import Database

logger = logging.getLogger(__name__)


class TokenManager:
    """
    Turns a user's stored refresh token into a fresh access token.

    Spotify may rotate the refresh token on exchange; the new one is
    re-encrypted and persisted before the access token is handed out, so a
    crash afterwards never leaves the old (now invalid) token in the database.

    Example:
        >>> tokens = TokenManager(db, spotify, key_hex, client_id, client_secret)
        >>> access_token = await tokens.get_access_token(user_id)
    """

    def __init__(self, db: Database, spotify: SpotifyClient, encryption_key: str,
                 client_id: str, client_secret: str):
        self.db = db
        self.spotify = spotify
        self.encryption_key = encryption_key
        self.client_id = client_id
        self.client_secret = client_secret

    async def get_access_token(self, user_id: str, encrypted_refresh_token: Optional[str] = None) -> str:
        """
        Exchange the user's stored refresh token for an access token.

        Args:
            user_id: User whose token to use
            encrypted_refresh_token: Stored ciphertext; loaded from the users table when omitted

        Returns:
            Access token

        Raises:
            TokenRefreshError: If the token is missing, cannot be decrypted, or the exchange fails
        """
        if encrypted_refresh_token is None:
            user = self.db.get_user(user_id)
            if user is None:
                raise TokenRefreshError(f"Unknown user {user_id}")
            encrypted_refresh_token = user["encrypted_refresh_token"]

        refresh_token = crypto.decrypt(encrypted_refresh_token or "", self.encryption_key)
        if not refresh_token:
            raise TokenRefreshError("Failed to decrypt refresh token")

        try:
            grant = await self.spotify.refresh_access_token(
                self.client_id, self.client_secret, refresh_token
            )
        except SpotifyError as e:
            raise TokenRefreshError(str(e)) from e

        if grant.refresh_token and grant.refresh_token != refresh_token:
            logger.info(f"Refresh token rotated for user {user_id}, persisting")
            self.db.update_refresh_token(user_id, crypto.encrypt(grant.refresh_token, self.encryption_key))

        return grant.access_token
