import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy import event

from iptv_ingest.config import settings
from iptv_ingest.models import Base

logger = logging.getLogger(__name__)

# Engine and session factory - initialized in init_db() during startup
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None

# Applied to every new SQLite connection
SQLITE_PRAGMAS = (
    "PRAGMA journal_mode = WAL",
    "PRAGMA synchronous = NORMAL",
    # 64MB page cache; playlist snapshots are read in full on every sync
    "PRAGMA cache_size = -64000",
    "PRAGMA foreign_keys = ON",
)


def database_url(database_path: str) -> str:
    return f"sqlite+aiosqlite:///{database_path}"


def _configure_sqlite(dbapi_conn, _) -> None:
    cursor = dbapi_conn.cursor()
    for pragma in SQLITE_PRAGMAS:
        cursor.execute(pragma)
    cursor.close()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get the session factory (initialized in init_db)"""
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() during startup.")
    return _session_factory


async def init_db(database_path: str | None = None) -> None:
    """
    Create the engine and any missing tables

    Args:
        database_path: Overrides the configured path (tests use a temp file)
    """
    global _engine, _session_factory

    database_path = database_path or settings.database_path
    if _engine is not None:
        logger.warning("Database already initialized, re-initializing at %s", database_path)
        await close_db()
    logger.info(f"Initializing database at {database_path}")

    _engine = create_async_engine(
        database_url(database_path),
        echo=False,
        pool_pre_ping=True,
        connect_args={"timeout": 30, "check_same_thread": False},
    )
    event.listen(_engine.sync_engine, "connect", _configure_sqlite)

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    _session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    logger.info("Database initialized successfully")


async def close_db() -> None:
    """Close database connections on shutdown"""
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database connections closed")


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """
    Session wrapped in a transaction: committed when the block exits normally,
    rolled back when it raises.
    """
    session_factory = get_session_factory()

    async with session_factory() as session:
        async with session.begin():
            yield session
