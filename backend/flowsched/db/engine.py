"""SQLAlchemy async engine and session factory."""

from __future__ import annotations

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from flowsched.config import settings


def _build_engine_kwargs() -> dict:
    """Return engine kwargs appropriate for the configured dialect."""
    if settings.is_postgres:
        return {
            "echo": settings.DEBUG,
            "pool_size": settings.FLOW_DB_POOL_SIZE,
            "max_overflow": settings.FLOW_DB_MAX_OVERFLOW,
            "pool_timeout": settings.FLOW_DB_POOL_TIMEOUT,
            "pool_pre_ping": True,
            "pool_recycle": 1800,
        }
    return {
        "echo": settings.DEBUG,
        "connect_args": {"check_same_thread": False},
    }


engine = create_async_engine(settings.FLOW_DB_URL, **_build_engine_kwargs())


if settings.is_sqlite:
    # WAL lets the embedded worker and request handlers read while one writes;
    # busy_timeout makes SQLite wait up to 5 s instead of raising "locked".
    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_conn, _conn_rec):  # type: ignore[misc]
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()


async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncSession:  # type: ignore[misc]
    """FastAPI dependency - yields a session and commits/rollbacks."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
