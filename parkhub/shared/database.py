"""Database configuration and utilities."""
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, AsyncIterator

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import TransientStoreError

logger = logging.getLogger(__name__)

Base = declarative_base()


def store_retry(attempts: int = 3):
    """Retry a boundary operation while the backing store is unavailable.

    The decorated coroutine must open its own session so every attempt
    starts from a clean transaction.
    """
    return retry(
        retry=retry_if_exception_type(TransientStoreError),
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
        reraise=True,
    )


def _is_transient(exc: DBAPIError) -> bool:
    return isinstance(exc, (OperationalError, InterfaceError)) or exc.connection_invalidated


class Database:
    """Database connection manager."""

    def __init__(self, database_url: str, echo: bool = False):
        """
        Initialize database connection.

        Args:
            database_url: Async connection URL (postgresql+asyncpg or sqlite+aiosqlite)
            echo: Whether to echo SQL queries
        """
        engine_options = {"echo": echo, "pool_pre_ping": True}
        if not database_url.startswith("sqlite"):
            engine_options.update(pool_size=10, max_overflow=20)

        self.engine = create_async_engine(database_url, **engine_options)

        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    async def create_tables(self):
        """Create all database tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created")

    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get a database session."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """
        Open a session wrapped in a single transaction.

        Commits on normal exit, rolls back on any exception. Connection-level
        failures are re-raised as TransientStoreError so callers can retry.
        """
        async with self.session_factory() as session:
            try:
                async with session.begin():
                    yield session
            except DBAPIError as e:
                if _is_transient(e):
                    logger.warning(f"Transient store failure: {e.orig!r}")
                    raise TransientStoreError("Backing store unavailable") from e
                raise

    async def close(self):
        """Close database connections."""
        await self.engine.dispose()
        logger.info("Database connections closed")
