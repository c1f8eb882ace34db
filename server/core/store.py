"""Key/value store with Redis, SQL or in-memory backend.

The store maps string keys to opaque string values and offers an atomic
insert-if-absent (``setnx``), the only primitive the distributed lock relies
on for exclusion. Backends never interpret values and have no TTL semantics.

Usage:
    store = create_store(settings, database)
    await store.startup()
    inserted = await store.setnx("img-server:lock:d:abc", "1700000000000")
"""

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Dict, Iterable, List, Optional, Union, TYPE_CHECKING

import redis.asyncio as redis

from core.config import Settings
from core.logging import get_logger, log_cache_operation
from services.errors import StoreError

if TYPE_CHECKING:
    from core.database import Database

logger = get_logger(__name__)


class StoreBackend(ABC):
    """Abstract base class for key/value backends."""

    name = "abstract"

    async def startup(self) -> None:
        """Open connections."""

    async def shutdown(self) -> None:
        """Close connections."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    async def setnx(self, key: str, value: str) -> bool:
        """Insert only if absent. True when this call inserted the row."""
        pass

    @abstractmethod
    async def delete(self, keys: List[str]) -> int:
        pass

    @abstractmethod
    async def ping(self) -> bool:
        pass


class RedisStoreBackend(StoreBackend):
    """Redis backend. ``SET NX`` gives atomic insert-if-absent."""

    name = "redis"

    def __init__(self, url: Optional[str] = None, client: Optional[redis.Redis] = None):
        self.url = url
        self.redis: Optional[redis.Redis] = client

    async def startup(self) -> None:
        if self.redis is None:
            self.redis = redis.from_url(
                self.url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=5,
                socket_connect_timeout=5,
                retry_on_timeout=True
            )
        logger.info("Redis store initialized", url=self.url)

    async def shutdown(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()
            logger.info("Redis store connections closed")

    async def get(self, key: str) -> Optional[str]:
        value = await self.redis.get(key)
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def set(self, key: str, value: str) -> None:
        await self.redis.set(key, value)

    async def setnx(self, key: str, value: str) -> bool:
        return bool(await self.redis.set(key, value, nx=True))

    async def delete(self, keys: List[str]) -> int:
        return await self.redis.delete(*keys)

    async def ping(self) -> bool:
        return bool(await self.redis.ping())


class SQLStoreBackend(StoreBackend):
    """SQLModel backend. The primary key on ``cache_entries.key`` makes setnx atomic."""

    name = "sql"

    def __init__(self, database: "Database"):
        self.database = database

    async def get(self, key: str) -> Optional[str]:
        return await self.database.get_cache_entry(key)

    async def set(self, key: str, value: str) -> None:
        await self.database.set_cache_entry(key, value)

    async def setnx(self, key: str, value: str) -> bool:
        return await self.database.insert_cache_entry(key, value)

    async def delete(self, keys: List[str]) -> int:
        return await self.database.delete_cache_entries(keys)

    async def ping(self) -> bool:
        return await self.database.ping()


class MemoryStoreBackend(StoreBackend):
    """Process-local backend for development and tests.

    No await happens between the membership check and the insert in setnx,
    so it is atomic within one event loop.
    """

    name = "memory"

    def __init__(self):
        self.data: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        self.data[key] = value

    async def setnx(self, key: str, value: str) -> bool:
        if key in self.data:
            return False
        self.data[key] = value
        return True

    async def delete(self, keys: List[str]) -> int:
        return sum(1 for key in keys if self.data.pop(key, None) is not None)

    async def ping(self) -> bool:
        return True


class KeyValueStore:
    """Async key/value store over a pluggable backend.

    Every backend failure is re-raised as StoreError with the cause chained.
    Nothing is retried here; retry policy belongs to the lock and coordinator.
    """

    def __init__(self, backend: StoreBackend, ping_timeout: float = 5.0):
        self.backend = backend
        self.ping_timeout = ping_timeout

    @property
    def backend_name(self) -> str:
        return self.backend.name

    async def startup(self):
        """Initialize store connection."""
        async with self._io("startup", "*"):
            await self.backend.startup()

    async def shutdown(self):
        """Close store connections."""
        async with self._io("shutdown", "*"):
            await self.backend.shutdown()

    async def get(self, key: str) -> Optional[str]:
        """Get value by key, or None when absent."""
        async with self._io("get", key):
            value = await self.backend.get(key)
        log_cache_operation(logger, "get", key, hit=value is not None)
        return value

    async def set(self, key: str, value: str) -> None:
        """Upsert a value."""
        async with self._io("set", key):
            await self.backend.set(key, value)
        log_cache_operation(logger, "set", key)

    async def setnx(self, key: str, value: str) -> bool:
        """Insert only if absent. False means an existing row was left untouched."""
        async with self._io("setnx", key):
            inserted = await self.backend.setnx(key, value)
        log_cache_operation(logger, "setnx", key, inserted=inserted)
        return inserted

    async def delete(self, keys: Union[str, Iterable[str]]) -> int:
        """Delete one or many keys. Missing keys are not an error."""
        if isinstance(keys, str):
            keys = [keys]
        keys = list(keys)
        if not keys:
            return 0
        async with self._io("delete", ",".join(keys)):
            deleted = await self.backend.delete(keys)
        log_cache_operation(logger, "delete", ",".join(keys), deleted=deleted)
        return deleted

    async def ping(self) -> bool:
        """Liveness check bounded by ping_timeout."""
        async with self._io("ping", "*"):
            try:
                return await asyncio.wait_for(self.backend.ping(), timeout=self.ping_timeout)
            except asyncio.TimeoutError as e:
                raise StoreError(
                    f"{self.backend.name} store did not answer ping within {self.ping_timeout}s"
                ) from e

    @asynccontextmanager
    async def _io(self, operation: str, key: str):
        try:
            yield
        except StoreError:
            raise
        except Exception as e:
            logger.error("Store operation failed", backend=self.backend.name,
                         operation=operation, key=key, error=str(e))
            raise StoreError(f"{operation} failed for {key}: {e}") from e


def create_store(settings: Settings, database: Optional["Database"] = None) -> KeyValueStore:
    """Factory function to create the configured store.

    Args:
        settings: Application settings with store_backend and connection targets
        database: Database instance (required for the sql backend)

    Returns:
        KeyValueStore over the selected backend
    """
    backend_type = settings.store_backend

    if backend_type == "redis":
        backend = RedisStoreBackend(url=settings.redis_url)
    elif backend_type == "sql":
        if database is None:
            raise ValueError("database required for sql store backend")
        backend = SQLStoreBackend(database)
    else:
        backend = MemoryStoreBackend()

    logger.info("Using key/value store backend", backend=backend.name)
    return KeyValueStore(backend, ping_timeout=settings.store_ping_timeout)
