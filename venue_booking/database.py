"""
Database connection management and session handling.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy import event, text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .config import get_settings
from .models.base import Base

logger = logging.getLogger(__name__)

# Key for the transaction-scoped PostgreSQL advisory lock on the venue calendar
CALENDAR_LOCK_KEY = 0x56454E5545


def _install_sqlite_locking(engine: AsyncEngine) -> None:
    """
    Make every SQLite transaction start with ``BEGIN IMMEDIATE``.

    The write lock is taken when the transaction opens, so a guard check and
    the write that follows it can never interleave with another writer.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Stop the driver from emitting its own deferred BEGIN
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_database_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """Create and configure the database engine."""
    settings = get_settings()
    url = make_url(database_url or settings.database_url)

    if url.get_backend_name() == "sqlite":
        engine = create_async_engine(
            url,
            echo=settings.debug,
            connect_args={"timeout": settings.database_busy_timeout_seconds},
        )
        _install_sqlite_locking(engine)
        return engine

    connect_args = {}
    if url.get_driver_name() == "asyncpg":
        connect_args["server_settings"] = {"application_name": "venue_booking"}

    return create_async_engine(
        url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        echo=settings.debug,
        connect_args=connect_args,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create session factory for database sessions."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=True,
    )


async def acquire_calendar_lock(session: AsyncSession) -> None:
    """
    Serialize calendar guard evaluation across concurrent transactions.

    On PostgreSQL this takes a transaction-scoped advisory lock released at
    commit or rollback. SQLite transactions already hold the database write
    lock from ``BEGIN IMMEDIATE``.
    """
    bind = session.get_bind()
    if bind.dialect.name == "postgresql":
        await session.execute(
            text("SELECT pg_advisory_xact_lock(:key)"), {"key": CALENDAR_LOCK_KEY}
        )


class DatabaseManager:
    """Owns one engine and its session factory."""

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url
        self.engine: AsyncEngine | None = None
        self.session_factory: async_sessionmaker[AsyncSession] | None = None

    async def initialize(self, create_tables: bool = False) -> None:
        """Create the engine; optionally create tables (development and tests only)."""
        self.engine = create_database_engine(self.database_url)
        self.session_factory = create_session_factory(self.engine)

        if create_tables:
            await self.create_tables()

        logger.info(f"Database manager initialized ({self.engine.url.get_backend_name()})")

    async def create_tables(self) -> None:
        if self.engine is None:
            raise RuntimeError("Database manager not initialized")
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            logger.info("Database manager closed")

    async def ping(self) -> bool:
        """Return True when the store answers a trivial query."""
        if self.engine is None:
            return False
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get a database session that commits on success and rolls back on error."""
        if self.session_factory is None:
            raise RuntimeError("Database manager not initialized")

        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
