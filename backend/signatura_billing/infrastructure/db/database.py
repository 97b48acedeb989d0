"""
Subscription Store Connection Management

One async engine per process for the subscription tables. It is built on
first use, so importing the app (or running the test suite) needs no
DATABASE_URL. Schema is owned by the Alembic migrations, never created here.
"""

import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncGenerator, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from signatura_billing.config.settings import Settings, get_settings
from signatura_billing.infrastructure.exceptions import ConfigurationError


logger = logging.getLogger(__name__)

_ASYNC_DRIVER = "postgresql+asyncpg://"


def normalize_database_url(database_url: str) -> str:
    """Rewrite postgres:// and postgresql:// URLs to use asyncpg."""
    for prefix in ("postgresql://", "postgres://"):
        if database_url.startswith(prefix):
            return _ASYNC_DRIVER + database_url[len(prefix):]
    return database_url


class DatabaseManager:
    """
    Owns the engine and session factory for the subscription store.

    Args:
        settings: DATABASE_URL and pool sizing (defaults to process settings)
    """

    def __init__(self, settings: Optional[Settings] = None):
        self._settings = settings or get_settings()
        self._engine: Optional[AsyncEngine] = None
        self._sessions: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def is_connected(self) -> bool:
        return self._engine is not None

    def _connect(self) -> async_sessionmaker[AsyncSession]:
        if self._sessions is not None:
            return self._sessions

        if not self._settings.database_url:
            raise ConfigurationError(
                "DATABASE_URL is required for subscription storage",
                missing_keys=["DATABASE_URL"],
            )

        self._engine = create_async_engine(
            normalize_database_url(self._settings.database_url),
            echo=self._settings.database_echo,
            pool_size=self._settings.database_pool_size,
            max_overflow=self._settings.database_max_overflow,
            pool_timeout=self._settings.database_pool_timeout,
            pool_pre_ping=True,
        )
        # Rows are mapped to domain models right after commit
        self._sessions = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        logger.info("Subscription store engine created")
        return self._sessions

    def session(self) -> AsyncSession:
        return self._connect()()

    async def ping(self) -> None:
        async with self.session() as session:
            await session.execute(text("SELECT 1"))

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            logger.info("Subscription store engine disposed")
        self._engine = None
        self._sessions = None


@lru_cache
def get_db_manager() -> DatabaseManager:
    """Process-wide DatabaseManager."""
    return DatabaseManager()


@asynccontextmanager
async def get_session_context() -> AsyncGenerator[AsyncSession, None]:
    """
    Unit of work for one repository call.

    Commits when the block exits cleanly and rolls back when it raises.
    """
    async with get_db_manager().session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Open the pool and check connectivity (app startup)."""
    await get_db_manager().ping()


async def close_db() -> None:
    """Dispose of the pool (app shutdown)."""
    await get_db_manager().dispose()
