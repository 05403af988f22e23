"""
Database session management for secretsync.

Provides the async SQLAlchemy engine and session factory behind SqlSyncStore.
The factory is handed to the store explicitly; nothing below the CLI reaches
for the module-level one.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from secretsync.config import Settings
from secretsync.logging_config import get_logger

logger = get_logger(__name__)

# Created lazily in init_db()
_engine = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


async def init_db(settings: Settings) -> async_sessionmaker[AsyncSession]:
    """Initialize database connection pool and return the session factory."""
    global _engine, _async_session_factory  # noqa: PLW0603
    logger.info("Initializing database connection")

    _engine = create_async_engine(
        str(settings.database_url),
        echo=settings.debug,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
    )

    _async_session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )

    async with _engine.begin() as conn:
        await conn.execute(text("SELECT 1"))
    logger.info("Database connection established")
    return _async_session_factory


async def close_db() -> None:
    """Close database connection pool."""
    global _engine, _async_session_factory  # noqa: PLW0603
    if _engine is not None:
        logger.info("Closing database connection pool")
        await _engine.dispose()
        _engine = None
        _async_session_factory = None


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Transactional scope: commit on success, roll back on any error."""
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise

