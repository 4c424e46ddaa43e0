"""
Database Initialization

Creates the SQLite tables for payments, tournament registrations and
payouts, and provides the async session factory used by the stores.
"""
import logging
import sqlite3
from pathlib import Path

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ..config import settings
from .models import Base

logger = logging.getLogger(__name__)


def enable_wal_mode(db_path: Path) -> None:
    """
    Enable WAL mode for better concurrency.

    Callbacks and initiation requests write concurrently; WAL lets readers
    proceed while a writer holds the lock.
    """
    conn = sqlite3.connect(db_path)
    try:
        cursor = conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=30000")  # 30 second timeout
        cursor.execute("PRAGMA synchronous=NORMAL")
        conn.commit()
    finally:
        conn.close()


def create_engine(database_path: str) -> AsyncEngine:
    """Create the async engine for a SQLite database file."""
    return create_async_engine(
        f"sqlite+aiosqlite:///{database_path}",
        echo=False,
        connect_args={
            "timeout": 30,  # 30 second timeout for lock acquisition
            "check_same_thread": False
        },
        pool_pre_ping=True,
        pool_recycle=3600
    )


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    """Session factory shared by all stores; objects stay usable after commit."""
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


async def create_tables(bind: AsyncEngine) -> None:
    """Create all tables and indexes from the ORM metadata."""
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def initialize_database(bind: AsyncEngine, database_path: str) -> None:
    """
    Initialize the database with all required tables.

    Called during FastAPI startup.
    """
    db_path = Path(database_path)
    logger.info(f"Initializing database at: {db_path}")

    db_path.parent.mkdir(parents=True, exist_ok=True)
    enable_wal_mode(db_path)
    await create_tables(bind)

    logger.info(f"Database initialized successfully at {db_path}")


# ============================================================================
# Default engine and session factory
# ============================================================================

engine = create_engine(settings.database_path)
AsyncSessionLocal = create_session_factory(engine)
