"""
Database Initialization

Creates the CoursePay schema (payments, enrollments, course_capacity) and
provides the async engine and session factory used by the service.

SQLite runs in WAL mode with a generous busy timeout so concurrent
settlements serialize on the write lock instead of failing.
"""
from pathlib import Path
from typing import AsyncGenerator
import logging

from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker

from ..config import settings
from .models import Base

logger = logging.getLogger(__name__)


def build_engine(database_path: str) -> AsyncEngine:
    """
    Create an aiosqlite engine for the given database file.

    Pragmas are applied on every new DBAPI connection:
    - journal_mode=WAL so readers never block the writer
    - busy_timeout so a second writer waits for the lock
    - synchronous=NORMAL, the usual pairing with WAL
    """
    Path(database_path).parent.mkdir(parents=True, exist_ok=True)

    async_engine = create_async_engine(
        f"sqlite+aiosqlite:///{database_path}",
        echo=False,
        connect_args={
            "timeout": 30,  # 30 second timeout for lock acquisition
            "check_same_thread": False
        },
        pool_pre_ping=True,
        pool_recycle=3600
    )

    @event.listens_for(async_engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=30000")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

    return async_engine


def build_session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


async def create_schema(async_engine: AsyncEngine) -> None:
    """Create all tables and indexes declared on Base."""
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# ============================================================================
# Process-wide engine for the FastAPI app
# ============================================================================

engine = build_engine(settings.database_path)

AsyncSessionLocal = build_session_factory(engine)


async def initialize_database() -> None:
    """
    Initialize the database with all required tables.

    Called during FastAPI startup.
    """
    logger.info(f"Initializing database at: {settings.database_path}")
    await create_schema(engine)
    logger.info("Database schema ready")


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency for getting async database sessions in FastAPI.

    Usage:
        @app.get("/endpoint")
        async def endpoint(db: AsyncSession = Depends(get_async_session)):
            ...
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


# Alias for FastAPI Depends
get_db = get_async_session
