"""
Database engine and session management.
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ..core.config import DatabaseConfig
from ..core.logging_config import get_logger
from .base import Base

logger = get_logger(__name__)


def create_engine_from_config(config: DatabaseConfig) -> AsyncEngine:
    """
    Build an async engine for the configured URL.

    SQLite (aiosqlite) does not accept pool sizing arguments.
    """
    if config.is_sqlite:
        return create_async_engine(
            config.url,
            echo=config.echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
    return create_async_engine(
        config.url,
        echo=config.echo,
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_models(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet."""
    # Import models so they register with the metadata
    from . import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ensured")
