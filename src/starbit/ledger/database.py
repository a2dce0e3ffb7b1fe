"""Database engine, session scope and dialect helpers."""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

from sqlalchemy import Select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from starbit.config import get_settings
from starbit.ledger.models import Base

# Global engine and session factory
_engine = None
_session_factory = None


def _normalize_url(db_url: str) -> str:
    """Force the async SQLite driver and make sure the file's directory exists."""
    if db_url.startswith("sqlite:///") and "aiosqlite" not in db_url:
        db_url = db_url.replace("sqlite:///", "sqlite+aiosqlite:///")
    if db_url.startswith("sqlite+aiosqlite:///") and ":memory:" not in db_url:
        path = Path(db_url.split(":///", 1)[1])
        path.parent.mkdir(parents=True, exist_ok=True)
    return db_url


def get_engine():
    """Get or create the database engine."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            _normalize_url(settings.database_url),
            echo=settings.debug and not settings.is_production,
            future=True,
        )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_factory


@asynccontextmanager
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Open one session as one transaction.

    Commits when the block exits cleanly, rolls back on any exception, so an
    operation that fails halfway leaves nothing applied.
    """
    session_factory = get_session_factory()
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def locking(session: AsyncSession, stmt: Select) -> Select:
    """Add ``FOR UPDATE`` on dialects that support row locks.

    SQLite serialises writers at the database level and ignores the clause.
    """
    dialect = session.bind.dialect.name if session.bind else "sqlite"
    if dialect == "sqlite":
        return stmt
    return stmt.with_for_update()


async def init_db() -> None:
    """Initialize the database by creating all tables."""
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Close database connections."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
