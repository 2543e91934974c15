"""Error taxonomy for token issuance, validation and cookie policy resolution.

Only ``public_message`` is ever shown to an untrusted caller. The exception
message itself may carry detail for logs.
"""

from typing import Optional


class AuthError(Exception):
    """Base class for every error raised by the auth services."""

    public_message = "Authentication required"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.public_message)


class TokenError(AuthError):
    """Access token could not be accepted. Externally a generic "invalid token"."""

    public_message = "Invalid or expired token"


class MalformedError(TokenError):
    """Token is structurally invalid (segments, encoding, JSON)."""

    public_message = "Malformed token"


class FormatError(TokenError):
    """Token declares an algorithm other than the single supported one."""


class SignatureError(TokenError):
    """Signature does not match the signing input."""


class ExpiredError(TokenError):
    """Token ``exp`` is not in the future."""


class ClaimsError(TokenError):
    """Signed token carries unusable claims (issuer, subject)."""


class InvalidRefreshToken(AuthError):
    """
    The single outward failure for a refresh attempt.

    Not found, expired and revoked refresh tokens are indistinguishable to the
    caller; the cause is only logged.
    """

    public_message = "Invalid or expired refresh token"
    code = "invalid_refresh_token"


class NotFoundError(AuthError):
    """No live record matches the presented refresh token. Internal only."""


class RevokedError(AuthError):
    """Record exists but was revoked or already rotated away. Internal only."""


class ConfigurationError(AuthError):
    """Invalid cookie policy combination. Developer facing, never corrected silently."""

    public_message = "Server misconfiguration"


class StorageError(AuthError):
    """Persistence backend unavailable, timed out, or a constraint was violated."""

    public_message = "Service temporarily unavailable"


class RandomSourceError(AuthError):
    """No cryptographically secure random source is available."""

    public_message = "Service temporarily unavailable"
