"""Database connection and session management.

Clip records, status history and workflow runs live in one SQLAlchemy
database. Several workflow runs may append status entries at the same
time, so SQLite connections wait on locks instead of failing fast.
"""
from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

from podclip.config import settings

SQLITE_BUSY_TIMEOUT_MS = 5000

# Base class for models
Base = declarative_base()


def _set_sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
    cursor.close()


def create_engine_for(url: str, **kwargs) -> AsyncEngine:
    """
    Create an async engine, enabling SQLite pragmas when needed.

    Args:
        url: SQLAlchemy database URL
        **kwargs: Passed through to ``create_async_engine``

    Returns:
        The configured engine
    """
    db_engine = create_async_engine(url, future=True, **kwargs)
    if make_url(url).get_backend_name() == "sqlite":
        event.listen(db_engine.sync_engine, "connect", _set_sqlite_pragmas)
    return db_engine


def create_session_maker(db_engine: AsyncEngine) -> async_sessionmaker:
    # Records are read after commit by the workflow and the API layer
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


engine = create_engine_for(settings.database_url, echo=settings.debug)
async_session_maker = create_session_maker(engine)


async def get_db() -> AsyncSession:
    """Dependency to get database session."""
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(db_engine: AsyncEngine = None):
    """Create tables for every model."""
    import podclip.models  # noqa: F401

    async with (db_engine or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db():
    """Close database connections."""
    await engine.dispose()
