"""
Test fixtures and configuration for pytest.
"""

import os
import sys
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from db.database import create_engine_for_url, create_session_factory, init_db
from services.auth import AuthService
from services.clock import utc_now
from services.cookie_policy import CookiePolicyResolver, RequestContext, ResolverConfig
from services.credentials import AuthenticatedOwner, CredentialVerifier
from services.refresh_store import RefreshTokenStore
from services.rotation import RotationManager
from services.token_codec import TokenCodec
from services.token_hasher import TokenHasher
from services.validation_cache import InMemoryValidationCache, NullValidationCache

TEST_SECRET_KEY = "test-secret-key-that-is-long-enough-for-hs256"
TEST_HASH_KEY = "test-refresh-hash-key"
TEST_ISSUER = "test-issuer"
ACCESS_TTL = 900
REFRESH_TTL = 7 * 24 * 60 * 60

LOCALHOST = RequestContext(host="localhost", is_https=False)


class FakeClock:
    """Manually advanced clock for expiry tests."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeCredentialVerifier(CredentialVerifier):
    """In-memory user store: alice/correct-password is owner 42."""

    def __init__(self):
        self.users = {"alice": ("correct-password", 42)}
        self.deleted_owners: set[int] = set()

    async def authenticate(self, username: str, password: str) -> Optional[AuthenticatedOwner]:
        entry = self.users.get(username)
        if entry is None or entry[0] != password:
            return None
        return AuthenticatedOwner(owner_id=entry[1], claims={"roles": ["user"]})

    async def load_claims(self, owner_id: int) -> Optional[dict]:
        if owner_id in self.deleted_owners:
            return None
        return {"roles": ["user"]}


def build_service(
    session_factory,
    clock,
    *,
    rotate: bool = True,
    cache=None,
    replay_grace_seconds: int = 10,
) -> AuthService:
    codec = TokenCodec(TEST_SECRET_KEY, issuer=TEST_ISSUER, access_ttl=ACCESS_TTL, clock=clock)
    store = RefreshTokenStore(
        session_factory,
        TokenHasher(TEST_HASH_KEY),
        cache if cache is not None else NullValidationCache(),
        clock=clock,
    )
    rotation = RotationManager(
        store,
        codec,
        refresh_ttl=REFRESH_TTL,
        rotate=rotate,
        replay_grace_seconds=replay_grace_seconds,
        clock=clock,
    )
    return AuthService(
        codec,
        store,
        rotation,
        CookiePolicyResolver(ResolverConfig()),
        refresh_ttl=REFRESH_TTL,
        cleanup_grace_seconds=0,
        clock=clock,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def hasher() -> TokenHasher:
    return TokenHasher(TEST_HASH_KEY)


@pytest.fixture
def codec(clock) -> TokenCodec:
    return TokenCodec(TEST_SECRET_KEY, issuer=TEST_ISSUER, access_ttl=ACCESS_TTL, clock=clock)


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh file-backed SQLite database per test (concurrent writers need a file)."""
    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'tokens.db'}")
    await init_db(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def cache() -> InMemoryValidationCache:
    return InMemoryValidationCache(ttl_seconds=300)


@pytest.fixture
def store(session_factory, hasher, cache, clock) -> RefreshTokenStore:
    return RefreshTokenStore(session_factory, hasher, cache, clock=clock)


@pytest.fixture
def auth_service(session_factory, clock, cache) -> AuthService:
    return build_service(session_factory, clock, cache=cache)


@pytest.fixture
def verifier() -> FakeCredentialVerifier:
    return FakeCredentialVerifier()


@pytest.fixture
def api_service(session_factory) -> AuthService:
    """Service used by the API client; runs on the wall clock."""
    return build_service(session_factory, utc_now)


@pytest_asyncio.fixture
async def client(api_service, verifier) -> AsyncGenerator[AsyncClient, None]:
    """API client against the app with the test database and verifier."""
    from api.dependencies import get_auth_service, get_credential_verifier
    from main import app

    app.dependency_overrides[get_auth_service] = lambda: api_service
    app.dependency_overrides[get_credential_verifier] = lambda: verifier

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://localhost") as ac:
        yield ac

    app.dependency_overrides.clear()
