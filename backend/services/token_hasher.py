"""Opaque refresh token generation and keyed hashing for storage."""

import hashlib
import hmac
import secrets

from services.errors import RandomSourceError


def generate_opaque_token(byte_length: int = 32) -> str:
    """
    Return ``byte_length`` random bytes from the OS CSPRNG as hex.

    Raises:
        RandomSourceError: The operating system has no secure random source.
    """
    if byte_length <= 0:
        raise ValueError("byte_length must be positive")
    try:
        return secrets.token_bytes(byte_length).hex()
    except NotImplementedError as exc:
        raise RandomSourceError("no cryptographically secure random source available") from exc


def _digest(token: str, key: str) -> bytes:
    return hmac.new(key.encode("utf-8"), token.encode("utf-8"), hashlib.sha256).digest()


def hash_token(token: str, key: str) -> str:
    """HMAC-SHA256 of ``token`` keyed by a server secret, hex encoded."""
    return _digest(token, key).hex()


class TokenHasher:
    """Binds the server hashing key so callers never handle it."""

    def __init__(self, key: str):
        if not key:
            raise ValueError("hash key must not be empty")
        self._key = key

    def hash(self, token: str) -> str:
        return hash_token(token, self._key)

    def digest(self, token: str) -> bytes:
        return _digest(token, self._key)
