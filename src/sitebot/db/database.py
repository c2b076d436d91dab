"""Engine, session factory and schema setup for the tenant database.

SQLite is the default store. Each new SQLite connection gets the pragmas
below: chat reads keep flowing while an admin request commits a
transition, and knowledge rows cannot outlive their connection.
"""

from collections.abc import AsyncIterator

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from sitebot.config import settings

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA foreign_keys=ON",
)


def _apply_sqlite_pragmas(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    for pragma in SQLITE_PRAGMAS:
        cursor.execute(pragma)
    cursor.execute(f"PRAGMA busy_timeout={int(settings.DB_BUSY_TIMEOUT_MS)}")
    cursor.close()


def create_db_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Build an async engine for ``url``; SQLite URLs get the connection pragmas."""
    db_engine = create_async_engine(url, echo=echo)
    if url.startswith("sqlite"):
        event.listen(db_engine.sync_engine, "connect", _apply_sqlite_pragmas)
    return db_engine


engine = create_db_engine(settings.DATABASE_URL, echo=settings.DEBUG)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def init_db(db_engine: AsyncEngine | None = None) -> None:
    """Create missing tables on ``db_engine`` (the app engine by default)."""
    from sitebot.db.models import Base

    async with (db_engine or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def ping(session: AsyncSession) -> None:
    """Round-trip a trivial query. Raises if the database is unreachable."""
    await session.execute(text("SELECT 1"))


async def get_session() -> AsyncIterator[AsyncSession]:
    """One session per request, closed when the response is sent."""
    async with async_session_maker() as session:
        yield session
