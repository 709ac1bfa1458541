"""Database connection and session management."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from unibox.config import settings
from unibox.database.models import Base

logger = structlog.get_logger()


def _set_sqlite_pragma(dbapi_connection: Any, _connection_record: Any) -> None:
    """Configure SQLite pragmas for correctness and concurrency.

    - foreign_keys=ON: referential integrity (off by default in SQLite)
    - journal_mode=WAL: concurrent readers alongside a single writer
    - synchronous=NORMAL: durable after WAL fsync
    - busy_timeout: writers wait for the write lock instead of failing at once
    """
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.execute(f"PRAGMA busy_timeout={int(settings.SQLITE_BUSY_TIMEOUT_MS)}")
    cursor.close()


def create_engine_for_url(database_url: str) -> AsyncEngine:
    """Create an async engine with backend-appropriate options."""
    if database_url.startswith("sqlite"):
        sqlite_engine = create_async_engine(database_url, echo=settings.DEBUG)
        event.listen(sqlite_engine.sync_engine, "connect", _set_sqlite_pragma)
        return sqlite_engine

    return create_async_engine(
        database_url,
        echo=settings.DEBUG,
        pool_pre_ping=True,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_POOL_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
    )


engine: AsyncEngine = create_engine_for_url(settings.DATABASE_URL)

# Create async session factory
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def init_database() -> None:
    """Initialize database connection and create tables if needed.

    In development/test: Creates tables from models using create_all().
    In production: Schema is managed by migrations.
    """
    try:
        db_host = settings.DATABASE_URL.split("@")[-1].split(":")[0].split("/")[0]
    except (IndexError, AttributeError):
        db_host = "unknown"
    logger.info("Initializing database connection", host=db_host or "sqlite")

    if settings.ENVIRONMENT in ("development", "test"):
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            logger.info("Database tables created/verified (development mode)")
    else:
        logger.info("Skipping create_all outside development - migrations manage schema")


async def close_database() -> None:
    """Close database connection pool."""
    logger.info("Closing database connection pool")
    await engine.dispose()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting database session.

    Usage:
        @router.get("/items")
        async def get_items(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with async_session_factory() as session:
        try:
            yield session
            if session.in_transaction():
                await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def get_db_context() -> AsyncGenerator[AsyncSession, None]:
    """Context manager for database session.

    Usage:
        async with get_db_context() as db:
            ...
    """
    async with async_session_factory() as session:
        try:
            yield session
            if session.in_transaction():
                await session.commit()
        except Exception:
            await session.rollback()
            raise
