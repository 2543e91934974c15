"""
Database configuration and session management.

SQLite is the development default (aiosqlite); PostgreSQL is used in
production (asyncpg). The refresh token store relies only on features both
support: unique indexes, conditional UPDATE with RETURNING, and DELETE by
predicate.

Every refresh token store operation opens its own short transaction from
``AsyncSessionLocal``; there is no request-scoped session.
"""

import logging

from config import get_settings
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

settings = get_settings()
logger = logging.getLogger(__name__)


def normalize_database_url(url: str) -> str:
    """Convert URL for async drivers."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def create_engine_for_url(url: str):
    url = normalize_database_url(url)
    is_sqlite = url.startswith("sqlite")

    engine_kwargs: dict = {
        "echo": False,
    }

    if not is_sqlite:
        # pool_pre_ping: Verify connections are alive before using them.
        # pool_size/max_overflow: 5 persistent + 10 burst connections.
        engine_kwargs["pool_pre_ping"] = True
        engine_kwargs["pool_size"] = 5
        engine_kwargs["max_overflow"] = 10

    engine = create_async_engine(url, **engine_kwargs)

    if is_sqlite:
        @event.listens_for(engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            # Writers wait for each other instead of failing immediately
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.close()

    return engine


def create_session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = create_engine_for_url(settings.DATABASE_URL)
AsyncSessionLocal = create_session_factory(engine)


class Base(DeclarativeBase):
    pass


async def init_db(bind=None):
    """Create tables that do not exist yet."""
    # Import models so they register on Base.metadata
    from models import refresh_token  # noqa: F401

    bind = bind or engine
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all, checkfirst=True)

    logger.info("Database initialized successfully")
