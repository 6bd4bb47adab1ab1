"""SQL database connection with configurable connection pooling.

Pool configuration via environment variables:
- POSTGRES_POOL_MIN_SIZE: Minimum connections (default: 2)
- POSTGRES_POOL_MAX_SIZE: Maximum connections (default: 10)
- POSTGRES_POOL_RECYCLE: Connection recycle time in seconds (default: 3600)

Connection failures at startup propagate; retrying work is the job queue's
responsibility, not the database layer's.
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from config import get_settings
from utils.logging import get_logger

logger = get_logger(__name__)

engine: AsyncEngine | None = None
async_session_maker: async_sessionmaker[AsyncSession] | None = None


class Base(DeclarativeBase):
    """Base class for SQLAlchemy declarative models."""

    pass


def build_session_maker(
    database_url: str, **engine_kwargs
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Create an engine and session factory for the given URL."""
    db_engine = create_async_engine(database_url, **engine_kwargs)
    session_maker = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return db_engine, session_maker


async def create_tables(db_engine: AsyncEngine) -> None:
    """Create every table registered on Base.metadata."""
    # Imported for its side effect of registering the ORM tables
    import models.postgres  # noqa: F401

    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_postgres():
    """Initialize the database connection with configurable pool settings."""
    global engine, async_session_maker
    settings = get_settings()

    logger.info(
        f"Initializing database connection pool: "
        f"min={settings.postgres_pool_min_size}, "
        f"max={settings.postgres_pool_max_size}, "
        f"recycle={settings.postgres_pool_recycle}s"
    )

    engine, async_session_maker = build_session_maker(
        settings.database_url,
        echo=settings.debug,
        pool_pre_ping=True,
        pool_size=settings.postgres_pool_min_size,
        max_overflow=settings.postgres_pool_max_size - settings.postgres_pool_min_size,
        pool_recycle=settings.postgres_pool_recycle,
    )

    await create_tables(engine)
    logger.info("Database connection pool initialized successfully")


async def close_postgres():
    """Close the database connection pool."""
    global engine
    if engine:
        await engine.dispose()
        logger.info("Database connection pool closed")


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Get the session factory, failing loudly if init_postgres() was skipped."""
    if async_session_maker is None:
        raise RuntimeError("Database not initialized; call init_postgres() first")
    return async_session_maker


def get_pool_stats() -> dict:
    """Get current connection pool statistics."""
    if engine is None:
        return {
            "pool_size": 0,
            "checked_out": 0,
            "overflow": 0,
            "checked_in": 0,
        }

    pool = engine.pool
    return {
        "pool_size": pool.size(),
        "checked_out": pool.checkedout(),
        "overflow": pool.overflow(),
        "checked_in": pool.checkedin(),
    }
