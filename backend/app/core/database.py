"""Async SQLAlchemy engine and session factory.

The engine is created lazily so that the in-memory storage backend never
touches the database driver.
"""

from collections.abc import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger("database")

# Base class for models
Base = declarative_base()

_engine: AsyncEngine | None = None
_session_maker: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """Create the shared engine on first use."""
    global _engine
    if _engine is None:
        _engine = create_async_engine(
            settings.database_url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
            pool_recycle=settings.db_pool_recycle,
            pool_pre_ping=True,
            echo=settings.debug and settings.log_level == "DEBUG",
        )
    return _engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the shared engine."""
    global _session_maker
    if _session_maker is None:
        _session_maker = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_maker


async def dispose_engine() -> None:
    """Close pooled connections on shutdown."""
    global _engine, _session_maker
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_maker = None


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get database session."""
    async with get_session_maker()() as session:
        try:
            yield session
            await session.commit()
        except BaseException:
            # Includes asyncio.CancelledError so a cancelled request still rolls back
            await session.rollback()
            raise


async def check_db_connection() -> bool:
    """Check if database is reachable."""
    try:
        async with get_session_maker()() as session:
            await session.execute(text("SELECT 1"))
            return True
    except (OSError, ConnectionError) as e:
        logger.debug(f"Database connection check failed: {e}")
        return False
    except Exception as e:
        logger.warning(f"Unexpected error checking database connection: {e}")
        return False
