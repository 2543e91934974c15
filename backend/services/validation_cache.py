"""Short-TTL cache of refresh token validation results.

The cache is a performance optimisation only. Correctness rules:

- Entries are keyed by the HMAC digest bytes of the token.
- Every mutation of a record invalidates its key before the mutation returns.
- A fill carries the ticket taken before the database read; if the key was
  invalidated after that ticket, the fill is dropped. A validation that raced
  a revocation can therefore never write a stale "valid" entry.

In-memory storage is per process and is never chosen automatically. Without
REDIS_URL the service runs with no cache.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Dict, Optional, Tuple

from services.records import RefreshTokenRecord

logger = logging.getLogger(__name__)

CACHE_BACKENDS = ("auto", "redis", "memory", "none")


class ValidationCacheBackend(ABC):
    """Abstract base class for validation cache storage backends."""

    @abstractmethod
    async def get(self, key: bytes) -> Optional[RefreshTokenRecord]:
        """Return the cached record for ``key`` if present and fresh."""
        pass

    @abstractmethod
    async def ticket(self, key: bytes) -> int:
        """Return a ticket to pass to ``set`` after reading the database."""
        pass

    @abstractmethod
    async def set(self, key: bytes, record: RefreshTokenRecord, ticket: int) -> bool:
        """Store ``record`` unless ``key`` was invalidated after ``ticket``."""
        pass

    @abstractmethod
    async def invalidate(self, key: bytes) -> None:
        pass

    async def invalidate_many(self, keys) -> None:
        for key in keys:
            await self.invalidate(key)


class NullValidationCache(ValidationCacheBackend):
    """Disables caching; every validation reads the database."""

    async def get(self, key: bytes) -> Optional[RefreshTokenRecord]:
        return None

    async def ticket(self, key: bytes) -> int:
        return 0

    async def set(self, key: bytes, record: RefreshTokenRecord, ticket: int) -> bool:
        return False

    async def invalidate(self, key: bytes) -> None:
        return None


class InMemoryValidationCache(ValidationCacheBackend):
    """
    Per-process TTL cache with LRU eviction.

    WARNING - NOT PROCESS-SAFE: invalidations in one worker are not seen by
    another worker's cache.
    """

    MAX_KEYS = 10000

    def __init__(self, ttl_seconds: int = 300):
        self._ttl = ttl_seconds
        self._entries: "OrderedDict[bytes, Tuple[RefreshTokenRecord, float]]" = OrderedDict()
        # key -> (invalidation counter, monotonic time)
        self._invalidated: Dict[bytes, Tuple[int, float]] = {}
        self._counter = 0
        # Tickets older than this were issued before pruned invalidations
        self._floor = 0
        self._lock = asyncio.Lock()

    async def get(self, key: bytes) -> Optional[RefreshTokenRecord]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            record, expires = entry
            if expires <= time.monotonic():
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return record

    async def ticket(self, key: bytes) -> int:
        async with self._lock:
            return self._counter

    async def set(self, key: bytes, record: RefreshTokenRecord, ticket: int) -> bool:
        if self._ttl <= 0:
            return False
        async with self._lock:
            invalidated = self._invalidated.get(key)
            if ticket < self._floor or (invalidated and invalidated[0] > ticket):
                logger.debug("Dropped validation cache fill that raced an invalidation")
                return False

            if len(self._entries) >= self.MAX_KEYS and key not in self._entries:
                self._entries.popitem(last=False)

            self._entries[key] = (record, time.monotonic() + self._ttl)
            self._entries.move_to_end(key)
            return True

    async def invalidate(self, key: bytes) -> None:
        async with self._lock:
            self._counter += 1
            now = time.monotonic()
            self._invalidated[key] = (self._counter, now)
            self._entries.pop(key, None)
            self._prune_invalidations(now)

    def _prune_invalidations(self, now: float) -> None:
        if len(self._invalidated) < self.MAX_KEYS:
            return
        cutoff = now - max(self._ttl, 1)
        stale = [k for k, (_, at) in self._invalidated.items() if at < cutoff]
        if not stale:
            # Everything is recent; drop the oldest half to bound memory
            ordered = sorted(self._invalidated.items(), key=lambda item: item[1][0])
            stale = [k for k, _ in ordered[: len(ordered) // 2]]
        for k in stale:
            counter, _ = self._invalidated.pop(k)
            self._floor = max(self._floor, counter)


class RedisValidationCache(ValidationCacheBackend):
    """
    Redis-based validation cache shared by all workers.

    Fills are guarded with WATCH/MULTI on a per-key generation counter that
    ``invalidate`` increments.
    """

    KEY_PREFIX = b"refresh_cache:"
    GEN_PREFIX = b"refresh_cache_gen:"
    # Generation counters must outlive any in-flight validation
    GENERATION_TTL_SECONDS = 24 * 60 * 60

    def __init__(self, redis_url: str, ttl_seconds: int = 300):
        self._redis_url = redis_url
        self._ttl = ttl_seconds
        self._redis = None
        self._initialized = False

    async def _get_redis(self):
        """Lazy initialization of Redis connection."""
        if not self._initialized:
            try:
                import redis.asyncio as redis

                self._redis = redis.from_url(self._redis_url, decode_responses=False)
                await self._redis.ping()
                self._initialized = True
                logger.info("Redis validation cache initialized successfully")
            except ImportError:
                logger.error("redis package not installed. Install with: pip install redis")
                raise
            except Exception as e:
                logger.error(f"Failed to connect to Redis: {e}")
                raise
        return self._redis

    async def get(self, key: bytes) -> Optional[RefreshTokenRecord]:
        redis = await self._get_redis()
        raw = await redis.get(self.KEY_PREFIX + key)
        if raw is None:
            return None
        return RefreshTokenRecord.from_json(raw)

    async def ticket(self, key: bytes) -> int:
        redis = await self._get_redis()
        raw = await redis.get(self.GEN_PREFIX + key)
        return int(raw) if raw is not None else 0

    async def set(self, key: bytes, record: RefreshTokenRecord, ticket: int) -> bool:
        if self._ttl <= 0:
            return False
        from redis.exceptions import WatchError

        redis = await self._get_redis()
        gen_key = self.GEN_PREFIX + key
        async with redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(gen_key)
                current = await pipe.get(gen_key)
                if (int(current) if current is not None else 0) != ticket:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(self.KEY_PREFIX + key, record.to_json(), ex=self._ttl)
                await pipe.execute()
                return True
            except WatchError:
                logger.debug("Dropped validation cache fill that raced an invalidation")
                return False

    async def invalidate(self, key: bytes) -> None:
        redis = await self._get_redis()
        gen_key = self.GEN_PREFIX + key
        async with redis.pipeline(transaction=True) as pipe:
            pipe.incr(gen_key)
            pipe.expire(gen_key, self.GENERATION_TTL_SECONDS)
            pipe.delete(self.KEY_PREFIX + key)
            await pipe.execute()


def create_validation_cache(
    redis_url: Optional[str],
    ttl_seconds: int,
    *,
    backend: str = "auto",
) -> ValidationCacheBackend:
    """
    Pick the cache backend for the current deployment.

    ``auto`` uses Redis when ``redis_url`` is set and no cache otherwise.
    ``memory`` must be asked for explicitly and is only correct with a
    single worker process.
    """
    backend = (backend or "auto").lower()
    if backend not in CACHE_BACKENDS:
        raise ValueError(f"Unknown validation cache backend: {backend!r}")

    if ttl_seconds <= 0 or backend == "none":
        return NullValidationCache()
    if backend == "memory":
        logger.warning("Using in-memory validation cache; revocations are only seen by this process")
        return InMemoryValidationCache(ttl_seconds)
    if redis_url:
        logger.info("Using Redis validation cache backend")
        return RedisValidationCache(redis_url, ttl_seconds)
    if backend == "redis":
        raise ValueError("VALIDATION_CACHE_BACKEND=redis requires REDIS_URL")
    logger.info("Validation cache disabled: set REDIS_URL to enable it")
    return NullValidationCache()
