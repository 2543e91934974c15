"""Persistent storage of hashed refresh tokens.

All writers go through the conditional UPDATE/DELETE statements in this
module; callers never read a row, modify it and write it back. Every
mutation invalidates the validation cache for the affected hashes before
returning.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional, TypeVar

from sqlalchemy import and_, delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from models.refresh_token import RefreshToken
from services.clock import Clock, utc_now
from services.errors import StorageError
from services.records import ClientMetadata, RefreshTokenRecord
from services.token_hasher import TokenHasher
from services.validation_cache import NullValidationCache, ValidationCacheBackend

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RETURNED_COLUMNS = tuple(RefreshToken.__table__.c)


class RefreshTokenStore:
    """CRUD and lookup over the ``refresh_tokens`` table."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        hasher: TokenHasher,
        cache: Optional[ValidationCacheBackend] = None,
        *,
        clock: Clock = utc_now,
        timeout_seconds: float = 5.0,
        read_retries: int = 1,
    ):
        self._session_factory = session_factory
        self._hasher = hasher
        self._cache = cache or NullValidationCache()
        self._clock = clock
        self._timeout = timeout_seconds
        self._read_retries = read_retries

    # ------------------------------------------------------------------
    # Execution helpers
    # ------------------------------------------------------------------

    async def _run(self, operation: Callable[[], Awaitable[T]], *, read: bool) -> T:
        """
        Run one storage operation under the configured deadline.

        Reads are retried ``read_retries`` times. Writes are never retried: a
        retry after a partial write could rotate the same token twice.
        """
        attempts = 1 + (self._read_retries if read else 0)
        last_error: Optional[StorageError] = None

        for attempt in range(attempts):
            try:
                return await asyncio.wait_for(operation(), timeout=self._timeout)
            except asyncio.TimeoutError as exc:
                last_error = StorageError("refresh token storage timed out")
                last_error.__cause__ = exc
            except IntegrityError as exc:
                raise StorageError("refresh token constraint violated") from exc
            except SQLAlchemyError as exc:
                last_error = StorageError("refresh token storage unavailable")
                last_error.__cause__ = exc

            if attempt + 1 < attempts:
                logger.warning(f"Retrying refresh token read after error: {last_error.__cause__!r}")

        raise last_error

    async def _invalidate(self, *keys: bytes) -> None:
        # A failed invalidation must not look like a successful mutation.
        try:
            await self._cache.invalidate_many(keys)
        except Exception as exc:
            logger.error(f"Validation cache invalidation failed: {exc}")
            raise StorageError("validation cache invalidation failed") from exc

    async def _cache_get(self, key: bytes) -> Optional[RefreshTokenRecord]:
        try:
            return await self._cache.get(key)
        except Exception as exc:
            logger.warning(f"Validation cache read failed, using database: {exc}")
            return None

    async def _cache_ticket(self, key: bytes) -> Optional[int]:
        try:
            return await self._cache.ticket(key)
        except Exception as exc:
            logger.warning(f"Validation cache unavailable: {exc}")
            return None

    async def _cache_set(self, key: bytes, record: RefreshTokenRecord, ticket: int) -> None:
        try:
            await self._cache.set(key, record, ticket)
        except Exception as exc:
            logger.warning(f"Validation cache write failed: {exc}")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def store(
        self,
        owner_id: int,
        raw_token: str,
        expires_at: datetime,
        metadata: Optional[ClientMetadata] = None,
    ) -> int:
        """
        Hash ``raw_token`` and insert a new, non-revoked record.

        Returns:
            The new record id

        Raises:
            StorageError: Constraint violation (duplicate hash) or backend failure
        """
        token_hash = self._hasher.hash(raw_token)
        metadata = (metadata or ClientMetadata()).truncated()
        now = self._clock()

        async def op() -> int:
            async with self._session_factory.begin() as session:
                row = RefreshToken(
                    owner_id=owner_id,
                    token_hash=token_hash,
                    ip_address=metadata.ip_address,
                    user_agent=metadata.user_agent,
                    created_at=now,
                    issued_at=now,
                    expires_at=expires_at,
                    rotation_count=0,
                    is_revoked=False,
                )
                session.add(row)
                await session.flush()
                return row.id

        record_id = await self._run(op, read=False)
        logger.debug(f"Stored refresh token record {record_id} for owner {owner_id}")
        return record_id

    async def validate(self, raw_token: str) -> Optional[RefreshTokenRecord]:
        """Return the record if ``raw_token`` is stored, unexpired and not revoked."""
        if not raw_token:
            return None

        key = self._hasher.digest(raw_token)
        now = self._clock()

        cached = await self._cache_get(key)
        if cached is not None:
            return cached if cached.is_valid_at(now) else None

        ticket = await self._cache_ticket(key)
        token_hash = key.hex()

        async def op() -> Optional[RefreshTokenRecord]:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(*_RETURNED_COLUMNS).where(
                        and_(
                            RefreshToken.token_hash == token_hash,
                            RefreshToken.is_revoked == False,  # noqa: E712
                            RefreshToken.expires_at > now,
                        )
                    )
                )
                row = result.first()
                return RefreshTokenRecord.from_row(row) if row is not None else None

        record = await self._run(op, read=True)
        if record is not None and ticket is not None:
            await self._cache_set(key, record, ticket)
        return record

    async def rotate(
        self,
        raw_token: str,
        new_raw_token: str,
        new_expires_at: datetime,
        metadata: Optional[ClientMetadata] = None,
    ) -> Optional[RefreshTokenRecord]:
        """
        Replace a valid token's hash and expiry in one conditional UPDATE.

        The old value stops being valid in the same statement that makes the
        new value valid. Exactly one of several concurrent callers presenting
        the same token matches the row; the others get ``None``.
        """
        old_key = self._hasher.digest(raw_token)
        old_hash = old_key.hex()
        new_hash = self._hasher.hash(new_raw_token)
        now = self._clock()

        values = {
            "token_hash": new_hash,
            "previous_token_hash": old_hash,
            "issued_at": now,
            "expires_at": new_expires_at,
            "last_used_at": now,
            "rotated_at": now,
            "rotation_count": RefreshToken.rotation_count + 1,
        }
        if metadata is not None:
            metadata = metadata.truncated()
            values["ip_address"] = metadata.ip_address
            values["user_agent"] = metadata.user_agent

        async def op() -> Optional[RefreshTokenRecord]:
            async with self._session_factory.begin() as session:
                result = await session.execute(
                    update(RefreshToken)
                    .where(
                        and_(
                            RefreshToken.token_hash == old_hash,
                            RefreshToken.is_revoked == False,  # noqa: E712
                            RefreshToken.expires_at > now,
                        )
                    )
                    .values(**values)
                    .returning(*_RETURNED_COLUMNS)
                    .execution_options(synchronize_session=False)
                )
                row = result.first()
                return RefreshTokenRecord.from_row(row) if row is not None else None

        try:
            record = await self._run(op, read=False)
        finally:
            await self._invalidate(old_key)
        return record

    async def touch(self, raw_token: str) -> Optional[RefreshTokenRecord]:
        """Record a use of a valid token without replacing it (non-rotating mode)."""
        token_hash = self._hasher.hash(raw_token)
        now = self._clock()

        async def op() -> Optional[RefreshTokenRecord]:
            async with self._session_factory.begin() as session:
                result = await session.execute(
                    update(RefreshToken)
                    .where(
                        and_(
                            RefreshToken.token_hash == token_hash,
                            RefreshToken.is_revoked == False,  # noqa: E712
                            RefreshToken.expires_at > now,
                        )
                    )
                    .values(last_used_at=now)
                    .returning(*_RETURNED_COLUMNS)
                    .execution_options(synchronize_session=False)
                )
                row = result.first()
                return RefreshTokenRecord.from_row(row) if row is not None else None

        return await self._run(op, read=False)

    async def revoke_by_hash(self, raw_token: str, reason: str = "logout") -> bool:
        """
        Revoke the record for ``raw_token``.

        Returns:
            True if a non-revoked record was found and revoked
        """
        key = self._hasher.digest(raw_token)
        token_hash = key.hex()
        now = self._clock()

        async def op() -> bool:
            async with self._session_factory.begin() as session:
                result = await session.execute(
                    update(RefreshToken)
                    .where(
                        and_(
                            RefreshToken.token_hash == token_hash,
                            RefreshToken.is_revoked == False,  # noqa: E712
                        )
                    )
                    .values(is_revoked=True, revoked_at=now, revoke_reason=reason)
                    .returning(RefreshToken.id)
                    .execution_options(synchronize_session=False)
                )
                return result.first() is not None

        try:
            return await self._run(op, read=False)
        finally:
            await self._invalidate(key)

    async def revoke_by_id(
        self,
        owner_id: int,
        record_id: int,
        reason: str = "session_revoke",
    ) -> bool:
        """Revoke one session, only if it belongs to ``owner_id``."""
        now = self._clock()

        async def op() -> List[str]:
            async with self._session_factory.begin() as session:
                result = await session.execute(
                    update(RefreshToken)
                    .where(
                        and_(
                            RefreshToken.id == record_id,
                            RefreshToken.owner_id == owner_id,
                            RefreshToken.is_revoked == False,  # noqa: E712
                        )
                    )
                    .values(is_revoked=True, revoked_at=now, revoke_reason=reason)
                    .returning(RefreshToken.token_hash)
                    .execution_options(synchronize_session=False)
                )
                return list(result.scalars().all())

        hashes = await self._run(op, read=False)
        await self._invalidate(*(bytes.fromhex(h) for h in hashes))
        return bool(hashes)

    async def revoke_all_for_owner(self, owner_id: int, reason: str = "logout_all") -> int:
        """
        Revoke every active refresh token of ``owner_id``.

        Returns:
            Number of tokens revoked
        """
        now = self._clock()

        async def op() -> List[str]:
            async with self._session_factory.begin() as session:
                result = await session.execute(
                    update(RefreshToken)
                    .where(
                        and_(
                            RefreshToken.owner_id == owner_id,
                            RefreshToken.is_revoked == False,  # noqa: E712
                        )
                    )
                    .values(is_revoked=True, revoked_at=now, revoke_reason=reason)
                    .returning(RefreshToken.token_hash)
                    .execution_options(synchronize_session=False)
                )
                return list(result.scalars().all())

        hashes = await self._run(op, read=False)
        await self._invalidate(*(bytes.fromhex(h) for h in hashes))
        return len(hashes)

    async def list_for_owner(
        self,
        owner_id: int,
        include_revoked: bool = False,
    ) -> List[RefreshTokenRecord]:
        """List an owner's sessions. Hashes are blanked; raw values are never stored."""
        now = self._clock()

        async def op() -> List[RefreshTokenRecord]:
            query = select(*_RETURNED_COLUMNS).where(RefreshToken.owner_id == owner_id)
            if not include_revoked:
                query = query.where(
                    and_(
                        RefreshToken.is_revoked == False,  # noqa: E712
                        RefreshToken.expires_at > now,
                    )
                )
            query = query.order_by(RefreshToken.created_at.desc(), RefreshToken.id.desc())
            async with self._session_factory() as session:
                result = await session.execute(query)
                return [RefreshTokenRecord.from_row(row).without_hash() for row in result.all()]

        return await self._run(op, read=True)

    async def cleanup_expired(
        self,
        now: Optional[datetime] = None,
        grace: timedelta = timedelta(0),
    ) -> int:
        """
        Permanently delete records whose expiry is older than ``now - grace``.

        A single DELETE, so concurrent or repeated calls are harmless.
        """
        cutoff = (now or self._clock()) - grace

        async def op() -> List[str]:
            async with self._session_factory.begin() as session:
                result = await session.execute(
                    delete(RefreshToken)
                    .where(RefreshToken.expires_at < cutoff)
                    .returning(RefreshToken.token_hash)
                    .execution_options(synchronize_session=False)
                )
                return list(result.scalars().all())

        hashes = await self._run(op, read=False)
        await self._invalidate(*(bytes.fromhex(h) for h in hashes))
        if hashes:
            logger.info(f"Deleted {len(hashes)} expired refresh tokens")
        return len(hashes)

    # ------------------------------------------------------------------
    # Diagnostics (never used to authorise)
    # ------------------------------------------------------------------

    async def find_any(self, raw_token: str) -> Optional[RefreshTokenRecord]:
        """Look a token up regardless of expiry or revocation."""
        token_hash = self._hasher.hash(raw_token)
        return await self._find_one(RefreshToken.token_hash == token_hash)

    async def find_by_previous_hash(self, raw_token: str) -> Optional[RefreshTokenRecord]:
        """Find the session whose last rotation replaced ``raw_token``."""
        token_hash = self._hasher.hash(raw_token)
        return await self._find_one(RefreshToken.previous_token_hash == token_hash)

    async def _find_one(self, criterion) -> Optional[RefreshTokenRecord]:
        async def op() -> Optional[RefreshTokenRecord]:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(*_RETURNED_COLUMNS).where(criterion).limit(1)
                )
                row = result.first()
                return RefreshTokenRecord.from_row(row) if row is not None else None

        return await self._run(op, read=True)
