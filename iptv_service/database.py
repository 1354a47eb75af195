"""
SQLite storage for profile configuration and resolver cache tiers.

One async engine per process, created by init_db() at startup (or per test)
and disposed by close_db().
"""
import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from iptv_service.models import Base

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode = WAL",
    "PRAGMA synchronous = NORMAL",
    "PRAGMA busy_timeout = 5000",
)


def _apply_sqlite_pragmas(dbapi_conn, _) -> None:
    cursor = dbapi_conn.cursor()
    for pragma in SQLITE_PRAGMAS:
        cursor.execute(pragma)
    cursor.close()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() during startup.")
    return _session_factory


async def init_db(database_path: str | Path) -> None:
    """
    Open the SQLite database and create missing tables.

    Args:
        database_path: File path; parent directories are created as needed
    """
    global _engine, _session_factory

    if _engine is not None:
        await close_db()

    path = Path(database_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    logger.info(f"Opening IPTV database at {path}")

    engine = create_async_engine(
        f"sqlite+aiosqlite:///{path}",
        echo=False,
        pool_pre_ping=True,
        connect_args={"timeout": 30, "check_same_thread": False},
    )
    event.listen(engine.sync_engine, "connect", _apply_sqlite_pragmas)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    _engine = engine
    _session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    logger.info(f"IPTV database ready ({len(Base.metadata.tables)} tables)")


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        logger.info("Database connections closed")
    _engine = None
    _session_factory = None


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """Session inside one transaction: committed on success, rolled back on error."""
    async with get_session_factory()() as session:
        async with session.begin():
            yield session
