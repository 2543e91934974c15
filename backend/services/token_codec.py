"""Access token encoding and verification.

Access tokens are compact HS256 JWTs: ``base64url(header).base64url(claims).signature``.
They are stateless; nothing here touches storage.
"""

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional
from uuid import uuid4

from jose import jws, jwt
from jose.exceptions import JWSError, JWTError

from services.clock import Clock, epoch_seconds, utc_now
from services.errors import (
    ClaimsError,
    ExpiredError,
    FormatError,
    MalformedError,
    SignatureError,
)

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
TOKEN_TYPE = "JWT"

# Claims owned by the issuer; extra claims cannot replace them
RESERVED_CLAIMS = frozenset({"iss", "sub", "iat", "exp", "jti"})


def _is_canonical_segment(segment: str) -> bool:
    """True when ``segment`` is the one unpadded base64url spelling of its bytes."""
    try:
        raw = base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))
    except (binascii.Error, ValueError):
        return False
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii") == segment


def encode(claims: Mapping[str, Any], key: str) -> str:
    """Sign ``claims`` with HMAC-SHA256 and return the compact token."""
    return jwt.encode(
        dict(claims),
        key,
        algorithm=ALGORITHM,
        headers={"typ": TOKEN_TYPE},
    )


def decode(token: str, key: str, now: Optional[int] = None) -> dict:
    """
    Verify ``token`` and return its claims.

    Args:
        token: Compact token string
        key: Signing key
        now: Current time in epoch seconds (defaults to the wall clock)

    Raises:
        MalformedError: Not three segments, or undecodable header/payload
        FormatError: Declared algorithm is not HS256
        SignatureError: HMAC does not match (compared in constant time)
        ExpiredError: ``exp`` is at or before ``now``
    """
    if not isinstance(token, str) or token.count(".") != 2:
        raise MalformedError("token must have exactly three segments")
    if not all(token.split(".")):
        raise MalformedError("token has an empty segment")

    try:
        header = jwt.get_unverified_header(token)
    except JWTError as exc:
        raise MalformedError("token header could not be decoded") from exc

    if header.get("alg") != ALGORITHM:
        raise FormatError(f"unsupported algorithm: {header.get('alg')!r}")

    # Unused trailing bits would otherwise give one MAC several spellings
    if not _is_canonical_segment(token.rsplit(".", 1)[1]):
        raise SignatureError("signature is not canonical base64url")

    try:
        payload = jws.verify(token, key, algorithms=[ALGORITHM])
    except JWSError as exc:
        raise SignatureError("signature verification failed") from exc

    try:
        claims = json.loads(payload)
    except ValueError as exc:
        raise MalformedError("token payload is not JSON") from exc
    if not isinstance(claims, dict):
        raise MalformedError("token payload is not a JSON object")

    exp = claims.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        raise ClaimsError("token has no numeric exp claim")

    if now is None:
        now = epoch_seconds(utc_now())
    if exp <= now:
        raise ExpiredError("token has expired")

    return claims


@dataclass(frozen=True)
class AccessToken:
    token: str
    claims: dict
    expires_in: int


class TokenCodec:
    """Issues and verifies access tokens for one issuer and signing key."""

    def __init__(
        self,
        secret_key: str,
        *,
        issuer: str,
        access_ttl: int,
        clock: Clock = utc_now,
    ):
        if not secret_key:
            raise ValueError("secret_key must not be empty")
        self._key = secret_key
        self.issuer = issuer
        self.access_ttl = access_ttl
        self._clock = clock

    def now(self) -> int:
        return epoch_seconds(self._clock())

    def encode(self, claims: Mapping[str, Any]) -> str:
        return encode(claims, self._key)

    def decode(self, token: str) -> dict:
        return decode(token, self._key, now=self.now())

    def issue_access_token(
        self,
        owner_id: int,
        extra_claims: Optional[Mapping[str, Any]] = None,
    ) -> AccessToken:
        now = self.now()
        claims: dict[str, Any] = {}
        if extra_claims:
            ignored = RESERVED_CLAIMS.intersection(extra_claims)
            if ignored:
                logger.warning(f"Ignoring reserved extra claims: {sorted(ignored)}")
            claims.update(
                {k: v for k, v in extra_claims.items() if k not in RESERVED_CLAIMS}
            )
        claims.update(
            {
                "iss": self.issuer,
                "sub": str(owner_id),
                "iat": now,
                "exp": now + self.access_ttl,
                "jti": str(uuid4()),
            }
        )
        return AccessToken(
            token=self.encode(claims),
            claims=claims,
            expires_in=self.access_ttl,
        )

    def verify_subject(self, token: str) -> int:
        """Decode an access token and return its owner id."""
        claims = self.decode(token)

        if claims.get("iss") != self.issuer:
            raise ClaimsError("unexpected issuer")

        subject = claims.get("sub")
        if not isinstance(subject, str):
            raise ClaimsError("missing subject")
        try:
            return int(subject)
        except ValueError:
            raise ClaimsError("subject is not an owner id") from None
