"""
Database configuration and session management
"""

from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from app.config import settings


def utcnow() -> datetime:
    """
    Current time as a naive UTC datetime.

    All timestamp columns store naive UTC so comparisons behave the same on
    MariaDB and SQLite.
    """
    return datetime.now(UTC).replace(tzinfo=None)


def _engine_kwargs(url: str) -> dict[str, Any]:
    kwargs: dict[str, Any] = {"echo": settings.DB_ECHO, "pool_pre_ping": True}
    if not url.startswith("sqlite"):
        kwargs.update(
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_recycle=3600,  # MariaDB wait_timeout is 8 hours
        )
    return kwargs


# Create async engine
engine = create_async_engine(settings.DATABASE_URL, **_engine_kwargs(settings.DATABASE_URL))

# Create async session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Request-scoped session dependency. Commits when the endpoint returns,
    rolls back if it raises.

    Usage:
        db: Annotated[AsyncSession, Depends(get_db)]
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_async_session() -> AsyncSession:
    """
    Standalone session for arq jobs, which run outside any request.
    Use as `async with get_async_session() as db:`; the caller
    commits.
    """
    return AsyncSessionLocal()


async def create_tables() -> None:
    """Create all SQLModel tables (development and tests only)."""
    import app.models  # noqa: F401  registers every table on SQLModel.metadata

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
