"""AES-256-GCM encryption for credentials stored in the database.

Ciphertexts are ``base64(iv[16] || tag[16] || ciphertext)``, the layout the
web application writes, so tokens encrypted there decrypt here and back.
"""

import base64
import binascii
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)

IV_LENGTH = 16
TAG_LENGTH = 16


def _key_bytes(key_hex: str) -> bytes:
    key = bytes.fromhex(key_hex)
    if len(key) != 32:
        raise ValueError("Encryption key must be 64 hex characters (32 bytes)")
    return key


def encrypt(plaintext: str, key_hex: str) -> str:
    """Encrypt ``plaintext``; the empty string encrypts to the empty string."""
    if not plaintext:
        return ""
    iv = os.urandom(IV_LENGTH)
    # AESGCM appends the tag to the ciphertext
    sealed = AESGCM(_key_bytes(key_hex)).encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return base64.b64encode(iv + tag + ciphertext).decode("ascii")


def decrypt(encrypted: str, key_hex: str) -> str:
    """Decrypt a stored value.

    Returns:
        The plaintext, or "" when the input is empty, malformed, or fails
        authentication (wrong key or tampered data).
    """
    if not encrypted:
        return ""
    try:
        raw = base64.b64decode(encrypted, validate=True)
        if len(raw) <= IV_LENGTH + TAG_LENGTH:
            return ""
        iv = raw[:IV_LENGTH]
        tag = raw[IV_LENGTH:IV_LENGTH + TAG_LENGTH]
        ciphertext = raw[IV_LENGTH + TAG_LENGTH:]
        plaintext = AESGCM(_key_bytes(key_hex)).decrypt(iv, ciphertext + tag, None)
        return plaintext.decode("utf-8")
    except (InvalidTag, binascii.Error, ValueError, UnicodeDecodeError) as e:
        logger.warning(f"Failed to decrypt stored value: {type(e).__name__}")
        return ""
