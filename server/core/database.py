"""Modern async database service with SQLModel and SQLAlchemy 2.0."""

import time
from typing import List, Optional
from sqlmodel import SQLModel, select
from sqlalchemy import delete, text, update
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.exc import IntegrityError
from contextlib import asynccontextmanager

from core.config import Settings
from models.cache import CacheEntry
from core.logging import get_logger

logger = get_logger(__name__)


class Database:
    """Async database service with SQLModel.

    Cache entry methods raise on I/O failure; the store layer wraps the cause.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = None
        self.async_session = None

    async def startup(self):
        """Initialize database connection and create tables."""
        try:
            # Disable verbose database and asyncio logging
            import logging
            logging.getLogger("aiosqlite").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)

            engine_kwargs = {"echo": self.settings.database_echo}
            if not self.settings.database_url.startswith("sqlite"):
                engine_kwargs["pool_size"] = self.settings.database_pool_size
                engine_kwargs["max_overflow"] = self.settings.database_max_overflow

            self.engine = create_async_engine(self.settings.database_url, **engine_kwargs)

            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            logger.info("Database initialized successfully")

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """Get async database session."""
        if not self.async_session:
            raise RuntimeError("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    async def ping(self) -> bool:
        async with self.get_session() as session:
            await session.execute(text("SELECT 1"))
        return True

    # ============================================================================
    # Cache Entries
    # ============================================================================

    async def get_cache_entry(self, key: str) -> Optional[str]:
        """Get cache value by key. Returns None if not found."""
        async with self.get_session() as session:
            stmt = select(CacheEntry.value).where(CacheEntry.key == key)
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def set_cache_entry(self, key: str, value: str) -> None:
        """Upsert a cache value."""
        if await self._update_cache_entry(key, value):
            return
        if not await self.insert_cache_entry(key, value):
            # Another writer inserted between our update and insert
            await self._update_cache_entry(key, value)

    async def insert_cache_entry(self, key: str, value: str) -> bool:
        """Insert a cache value only if the key is absent.

        Returns True when this call inserted the row, False when the primary
        key already existed. The existing row is left untouched.
        """
        async with self.get_session() as session:
            session.add(CacheEntry(key=key, value=value, updated_at=time.time()))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
            return True

    async def delete_cache_entries(self, keys: List[str]) -> int:
        """Delete cache entries by key. Missing keys are ignored."""
        async with self.get_session() as session:
            result = await session.execute(delete(CacheEntry).where(CacheEntry.key.in_(keys)))
            await session.commit()
            return result.rowcount or 0

    async def _update_cache_entry(self, key: str, value: str) -> bool:
        async with self.get_session() as session:
            stmt = (
                update(CacheEntry)
                .where(CacheEntry.key == key)
                .values(value=value, updated_at=time.time())
            )
            result = await session.execute(stmt)
            await session.commit()
            return bool(result.rowcount)
