"""SQLAlchemy async database setup and engine configuration."""

from typing import Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from app.config import Settings, get_settings

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


def _enable_sqlite_pragmas(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


def create_db_engine(url: Optional[str] = None, settings: Optional[Settings] = None) -> AsyncEngine:
    """Create and configure an async SQLAlchemy engine.

    SQLite connections get WAL journaling (so the CLI and the daemon can
    share the file), foreign keys and a busy timeout.

    Returns:
        Async SQLAlchemy engine instance.
    """
    settings = settings or get_settings()
    url = url or settings.database_url
    engine = create_async_engine(url, echo=settings.SQLALCHEMY_ECHO)
    if url.startswith("sqlite"):
        event.listen(engine.sync_engine, "connect", _enable_sqlite_pragmas)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Create async session factory.

    Args:
        engine: SQLAlchemy async engine instance.

    Returns:
        Async sessionmaker instance.
    """
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_engine() -> AsyncEngine:
    """Process-wide engine, created on first use."""
    global _engine
    if _engine is None:
        settings = get_settings()
        if settings.database_url.startswith("sqlite") and not settings.DATABASE_URL:
            settings.data_path.mkdir(parents=True, exist_ok=True)
        _engine = create_db_engine(settings=settings)
    return _engine


def get_session_factory() -> async_sessionmaker:
    """Process-wide session factory bound to ``get_engine()``."""
    global _session_factory
    if _session_factory is None:
        _session_factory = create_session_factory(get_engine())
    return _session_factory


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Create tables that do not exist yet."""
    from db.base import Base
    import db.models  # noqa: F401

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the process-wide engine."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
