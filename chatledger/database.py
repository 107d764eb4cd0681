"""Database connection and session management."""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from chatledger.config import Settings
from chatledger.logging_config import get_logger
from chatledger.models.base import Base

logger = get_logger(__name__)


def async_database_url(url: str) -> str:
    """Convert postgresql:// to postgresql+asyncpg:// for async support."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    """Create the async engine described by the settings."""
    url = async_database_url(settings.database_url)
    kwargs = {"echo": settings.debug, "future": True}
    if not url.startswith("sqlite"):
        kwargs["pool_size"] = settings.database_pool_size
        kwargs["max_overflow"] = settings.database_max_overflow
    return create_async_engine(url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create the session factory handed to the SQL-backed stores."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Initialize database tables."""
    # Import models so every table is registered on the metadata
    import chatledger.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created successfully")


async def close_db(engine: AsyncEngine) -> None:
    """Close database connections."""
    await engine.dispose()
    logger.info("Database connections closed")
