"""Refresh token exchange.

One refresh attempt moves through ``PRESENTED -> VALIDATED -> ROTATED`` or
ends in ``REJECTED``. A rejection is terminal: the caller has to log in again
with credentials. The cause of a rejection is logged but never returned.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional

from services.clock import Clock, utc_now
from services.errors import ExpiredError, InvalidRefreshToken, NotFoundError, RevokedError
from services.records import ClientMetadata, RefreshTokenRecord
from services.refresh_store import RefreshTokenStore
from services.token_codec import AccessToken, TokenCodec
from services.token_hasher import generate_opaque_token

logger = logging.getLogger(__name__)

ClaimsLoader = Callable[[int], Awaitable[Optional[Mapping[str, Any]]]]


class RefreshState(str, Enum):
    PRESENTED = "presented"
    VALIDATED = "validated"
    ROTATED = "rotated"
    REJECTED = "rejected"


class RejectReason(str, Enum):
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    REVOKED = "revoked"


_REJECT_ERRORS = {
    RejectReason.NOT_FOUND: NotFoundError,
    RejectReason.EXPIRED: ExpiredError,
    RejectReason.REVOKED: RevokedError,
}


@dataclass(frozen=True)
class RefreshOutcome:
    state: RefreshState
    record: RefreshTokenRecord
    access_token: AccessToken
    # None when rotation is disabled; the presented token stays in use
    raw_refresh_token: Optional[str]
    refresh_expires_at: datetime

    @property
    def rotated(self) -> bool:
        return self.state == RefreshState.ROTATED


class RotationManager:
    def __init__(
        self,
        store: RefreshTokenStore,
        codec: TokenCodec,
        *,
        refresh_ttl: int,
        rotate: bool = True,
        token_bytes: int = 32,
        replay_grace_seconds: int = 10,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.codec = codec
        self.refresh_ttl = timedelta(seconds=refresh_ttl)
        self.rotate = rotate
        self.token_bytes = token_bytes
        self.replay_grace = timedelta(seconds=replay_grace_seconds)
        self._clock = clock

    async def refresh(
        self,
        raw_token: Optional[str],
        *,
        metadata: Optional[ClientMetadata] = None,
        claims_loader: Optional[ClaimsLoader] = None,
    ) -> RefreshOutcome:
        """
        Exchange a refresh token for a new access token.

        With rotation enabled the presented value is replaced in a single
        conditional update; of several concurrent callers presenting the same
        value exactly one succeeds.

        Raises:
            InvalidRefreshToken: Unknown, expired, revoked or already rotated token
            StorageError: Persistence backend failed (never treated as valid)
        """
        try:
            return await self._exchange(raw_token, metadata, claims_loader)
        except (NotFoundError, ExpiredError, RevokedError) as exc:
            # Callers only ever see the one generic failure
            logger.warning(f"Refresh rejected ({RefreshState.REJECTED.value}): {exc}")
            raise InvalidRefreshToken(f"refresh token rejected: {type(exc).__name__}") from None

    async def _exchange(
        self,
        raw_token: Optional[str],
        metadata: Optional[ClientMetadata],
        claims_loader: Optional[ClaimsLoader],
    ) -> RefreshOutcome:
        if not raw_token:
            self._reject(RejectReason.NOT_FOUND, "empty token")

        record = await self.store.validate(raw_token)
        if record is None:
            reason = await self._diagnose(raw_token)
            self._reject(reason, "validation failed")

        extra_claims: Optional[Mapping[str, Any]] = None
        if claims_loader is not None:
            extra_claims = await claims_loader(record.owner_id)
            if extra_claims is None:
                self._reject(RejectReason.NOT_FOUND, f"owner {record.owner_id} no longer exists")

        if self.rotate:
            new_raw = generate_opaque_token(self.token_bytes)
            new_expires_at = self._clock() + self.refresh_ttl
            rotated = await self.store.rotate(raw_token, new_raw, new_expires_at, metadata)
            if rotated is None:
                # Lost a race with a concurrent refresh, or revoked in between
                reason = await self._diagnose(raw_token)
                self._reject(reason, f"rotation of record {record.id} did not apply")
            state = RefreshState.ROTATED
            record = rotated
            raw_out: Optional[str] = new_raw
        else:
            touched = await self.store.touch(raw_token)
            if touched is None:
                reason = await self._diagnose(raw_token)
                self._reject(reason, f"record {record.id} changed during refresh")
            state = RefreshState.VALIDATED
            record = touched
            raw_out = None

        access_token = self.codec.issue_access_token(record.owner_id, extra_claims)
        logger.info(f"Refresh succeeded for owner {record.owner_id} (record {record.id}, {state.value})")

        return RefreshOutcome(
            state=state,
            record=record,
            access_token=access_token,
            raw_refresh_token=raw_out,
            refresh_expires_at=record.expires_at,
        )

    async def _diagnose(self, raw_token: str) -> RejectReason:
        """Work out why a token was rejected, and revoke the session on replay."""
        now = self._clock()
        record = await self.store.find_any(raw_token)
        if record is not None:
            if record.is_revoked:
                return RejectReason.REVOKED
            if record.expires_at <= now:
                return RejectReason.EXPIRED
            return RejectReason.NOT_FOUND

        successor = await self.store.find_by_previous_hash(raw_token)
        if successor is None:
            return RejectReason.NOT_FOUND

        # A value that was already rotated away is being presented again.
        # Within the grace window this is a second tab racing the first.
        if (
            not successor.is_revoked
            and successor.rotated_at is not None
            and now - successor.rotated_at > self.replay_grace
        ):
            await self.store.revoke_by_id(successor.owner_id, successor.id, reason="replay_detected")
            logger.warning(
                f"Refresh token replay detected for owner {successor.owner_id}; "
                f"revoked session {successor.id}"
            )
        return RejectReason.REVOKED

    def _reject(self, reason: RejectReason, detail: str) -> None:
        raise _REJECT_ERRORS[reason](f"{reason.value}: {detail}")
