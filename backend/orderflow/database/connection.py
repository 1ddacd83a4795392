"""
Database connection management with SQLAlchemy async engine.

This module provides the Database class owning one async engine and its
session factory. The application constructs a single instance at startup
and hands it to request handlers through FastAPI dependencies; nothing in
the package reaches for a module-level engine.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from orderflow.core.config import Settings
from orderflow.core.logging import get_logger

logger = get_logger(__name__)


def _convert_database_url_to_async(url: str) -> str:
    """
    Convert PostgreSQL URL to async format.

    Args:
        url: Database connection URL

    Returns:
        Async-compatible database URL with asyncpg driver
    """
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


class Database:
    """
    Async database handle with connection pooling.

    Attributes:
        engine: Async SQLAlchemy engine
        session_factory: Factory producing AsyncSession instances
    """

    def __init__(
        self,
        url: str,
        pool_size: int = 5,
        max_overflow: int = 10,
        echo: bool = False,
        use_null_pool: bool = False,
        application_name: Optional[str] = None,
    ):
        """
        Initialize database engine and session factory.

        Args:
            url: Database URL (sync or asyncpg form)
            pool_size: Connection pool size
            max_overflow: Maximum overflow connections
            echo: Echo SQL statements
            use_null_pool: Disable pooling (tests and one-shot scripts)
            application_name: Name reported to PostgreSQL
        """
        engine_kwargs: dict = {
            "echo": echo,
            "pool_pre_ping": True,
        }
        if use_null_pool:
            engine_kwargs["poolclass"] = NullPool
        else:
            engine_kwargs.update(
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_recycle=3600,
            )
        if application_name:
            engine_kwargs["connect_args"] = {
                "server_settings": {"application_name": application_name},
                "command_timeout": 60,
                "timeout": 10,
            }

        self.engine: AsyncEngine = create_async_engine(
            _convert_database_url_to_async(url),
            **engine_kwargs,
        )
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

        logger.info(
            "Database engine created",
            pool_size=pool_size,
            max_overflow=max_overflow,
            null_pool=use_null_pool,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        """Create a database handle from application settings."""
        return cls(
            settings.database_url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            echo=settings.debug,
            use_null_pool=settings.environment == "test",
            application_name=settings.app_name,
        )

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Open a session; services commit their own units of work.

        Any exception escaping the block rolls back whatever is still
        uncommitted before the session is closed.

        Yields:
            Async database session
        """
        session = self.session_factory()
        try:
            yield session
        except Exception as e:
            await session.rollback()
            logger.warning(
                "Database session rolled back",
                error=str(e),
                error_type=type(e).__name__,
            )
            raise
        finally:
            await session.close()

    async def check_health(self, max_retries: int = 3, retry_delay: float = 1.0) -> bool:
        """
        Check database connectivity with retry logic.

        Args:
            max_retries: Maximum number of connection attempts
            retry_delay: Base delay between retries in seconds

        Returns:
            True if database is healthy, False otherwise
        """
        for attempt in range(max_retries):
            try:
                async with self.engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
                return True
            except (OperationalError, DBAPIError, OSError) as e:
                logger.warning(
                    "Database health check failed",
                    attempt=attempt + 1,
                    max_retries=max_retries,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                if attempt < max_retries - 1:
                    await asyncio.sleep(retry_delay * (2**attempt))

        logger.error("Database health check failed after all retries", max_retries=max_retries)
        return False

    async def dispose(self) -> None:
        """Close all pooled connections."""
        await self.engine.dispose()
        logger.info("Database connections closed and engine disposed")
