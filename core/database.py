"""
Database session management with SQLAlchemy async
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool, StaticPool

from core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


def create_db_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine for ``database_url``.

    An in-memory SQLite database lives in a single connection, so it is
    shared by every session through ``StaticPool``.
    """
    if database_url.startswith("sqlite"):
        in_memory = database_url.rstrip("/").endswith(":") or ":memory:" in database_url
        if in_memory:
            return create_async_engine(
                database_url,
                echo=echo,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        return create_async_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
        )
    return create_async_engine(
        database_url,
        echo=echo,
        poolclass=NullPool,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory handed to stores; each operation opens its own session."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def engine_from_settings(config: Optional[Settings] = None) -> AsyncEngine:
    config = config or default_settings
    logger.info(f"Creating database engine for {config.ENVIRONMENT} environment")
    return create_db_engine(config.DATABASE_URL, echo=False)
