"""Authentication service: access token issuance and refresh token rotation."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, List, Mapping, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Settings
from services.clock import Clock, utc_now
from services.cookie_policy import (
    CookiePolicy,
    CookiePolicyResolver,
    RequestContext,
    resolver_config_from_settings,
)
from services.records import ClientMetadata, RefreshTokenRecord
from services.refresh_store import RefreshTokenStore
from services.rotation import ClaimsLoader, RotationManager
from services.token_codec import TokenCodec
from services.token_hasher import TokenHasher, generate_opaque_token
from services.validation_cache import ValidationCacheBackend, create_validation_cache

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuedTokens:
    access_token: str
    expires_in: int
    owner_id: int
    cookie_policy: CookiePolicy
    # None after a refresh in non-rotating mode (keep the current cookie)
    # and when the refresh cookie is disabled
    raw_refresh_token: Optional[str]
    refresh_expires_at: Optional[datetime]
    token_type: str = "Bearer"


class AuthService:
    """
    Facade over the codec, the refresh token store, rotation and cookie policy.

    Holds no per-request state; one instance serves the whole application.
    """

    def __init__(
        self,
        codec: TokenCodec,
        store: RefreshTokenStore,
        rotation: RotationManager,
        cookie_resolver: CookiePolicyResolver,
        *,
        refresh_ttl: int,
        token_bytes: int = 32,
        cleanup_grace_seconds: int = 0,
        clock: Clock = utc_now,
    ):
        self.codec = codec
        self.store = store
        self.rotation = rotation
        self.cookie_resolver = cookie_resolver
        self.refresh_ttl = timedelta(seconds=refresh_ttl)
        self.token_bytes = token_bytes
        self.cleanup_grace = timedelta(seconds=cleanup_grace_seconds)
        self._clock = clock

    def cookie_policy(self, context: RequestContext) -> CookiePolicy:
        return self.cookie_resolver.resolve(context)

    async def issue(
        self,
        owner_id: int,
        extra_claims: Optional[Mapping[str, Any]] = None,
        *,
        context: RequestContext,
        metadata: Optional[ClientMetadata] = None,
    ) -> IssuedTokens:
        """
        Create an access token and a new refresh token session for ``owner_id``.

        Call only after the credential verifier accepted the owner.
        """
        # Resolve first so a misconfigured cookie never leaves an orphan session
        policy = self.cookie_policy(context)

        access_token = self.codec.issue_access_token(owner_id, extra_claims)
        if not policy.enabled:
            # No cookie means no way to deliver a refresh token, so no session
            logger.info(f"Issued access token only for owner {owner_id} (refresh cookie disabled)")
            return IssuedTokens(
                access_token=access_token.token,
                expires_in=access_token.expires_in,
                owner_id=owner_id,
                cookie_policy=policy,
                raw_refresh_token=None,
                refresh_expires_at=None,
            )

        raw_refresh_token = generate_opaque_token(self.token_bytes)
        refresh_expires_at = self._clock() + self.refresh_ttl
        record_id = await self.store.store(owner_id, raw_refresh_token, refresh_expires_at, metadata)

        logger.info(f"Issued tokens for owner {owner_id} (session {record_id})")
        return IssuedTokens(
            access_token=access_token.token,
            expires_in=access_token.expires_in,
            owner_id=owner_id,
            cookie_policy=policy,
            raw_refresh_token=raw_refresh_token,
            refresh_expires_at=refresh_expires_at,
        )

    async def refresh(
        self,
        raw_refresh_token: Optional[str],
        *,
        context: RequestContext,
        metadata: Optional[ClientMetadata] = None,
        claims_loader: Optional[ClaimsLoader] = None,
    ) -> IssuedTokens:
        """
        Exchange a refresh token for a new access token.

        Raises:
            InvalidRefreshToken: The token cannot be used; the user must log in again
        """
        policy = self.cookie_policy(context)
        outcome = await self.rotation.refresh(
            raw_refresh_token,
            metadata=metadata,
            claims_loader=claims_loader,
        )
        return IssuedTokens(
            access_token=outcome.access_token.token,
            expires_in=outcome.access_token.expires_in,
            owner_id=outcome.record.owner_id,
            cookie_policy=policy,
            raw_refresh_token=outcome.raw_refresh_token,
            refresh_expires_at=outcome.refresh_expires_at,
        )

    def verify(self, access_token: str) -> int:
        """Return the owner id of a valid access token. Never touches storage."""
        return self.codec.verify_subject(access_token)

    async def revoke(self, raw_refresh_token: str) -> bool:
        if not raw_refresh_token:
            return False
        return await self.store.revoke_by_hash(raw_refresh_token, reason="logout")

    async def revoke_owner_token(self, owner_id: int, record_id: int) -> bool:
        return await self.store.revoke_by_id(owner_id, record_id, reason="session_revoke")

    async def revoke_all_for_owner(self, owner_id: int) -> int:
        count = await self.store.revoke_all_for_owner(owner_id, reason="logout_all")
        logger.info(f"Revoked {count} sessions for owner {owner_id}")
        return count

    async def list_sessions(self, owner_id: int) -> List[RefreshTokenRecord]:
        return await self.store.list_for_owner(owner_id)

    async def current_session_id(self, owner_id: int, raw_refresh_token: Optional[str]) -> Optional[int]:
        """Id of the session the presented cookie belongs to, if it is the owner's."""
        if not raw_refresh_token:
            return None
        record = await self.store.validate(raw_refresh_token)
        if record is None or record.owner_id != owner_id:
            return None
        return record.id

    async def cleanup_expired(self) -> int:
        return await self.store.cleanup_expired(grace=self.cleanup_grace)


def build_auth_service(
    settings: Settings,
    session_factory: async_sessionmaker,
    *,
    cache: Optional[ValidationCacheBackend] = None,
    clock: Clock = utc_now,
) -> AuthService:
    """Wire an ``AuthService`` from settings."""
    if cache is None:
        cache = create_validation_cache(
            settings.REDIS_URL,
            settings.VALIDATION_CACHE_TTL_SECONDS,
            backend=settings.VALIDATION_CACHE_BACKEND,
        )

    codec = TokenCodec(
        settings.SECRET_KEY,
        issuer=settings.JWT_ISSUER,
        access_ttl=settings.ACCESS_TOKEN_EXPIRE_SECONDS,
        clock=clock,
    )
    store = RefreshTokenStore(
        session_factory,
        TokenHasher(settings.refresh_token_hash_key),
        cache,
        clock=clock,
        timeout_seconds=settings.STORAGE_TIMEOUT_SECONDS,
    )
    rotation = RotationManager(
        store,
        codec,
        refresh_ttl=settings.REFRESH_TOKEN_EXPIRE_SECONDS,
        rotate=settings.ROTATE_REFRESH_TOKENS,
        token_bytes=settings.REFRESH_TOKEN_BYTES,
        replay_grace_seconds=settings.REPLAY_GRACE_SECONDS,
        clock=clock,
    )
    return AuthService(
        codec,
        store,
        rotation,
        CookiePolicyResolver(resolver_config_from_settings(settings)),
        refresh_ttl=settings.REFRESH_TOKEN_EXPIRE_SECONDS,
        token_bytes=settings.REFRESH_TOKEN_BYTES,
        cleanup_grace_seconds=settings.CLEANUP_GRACE_SECONDS,
        clock=clock,
    )
