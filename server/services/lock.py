"""Polling lease lock built on the key/value store.

A lock is a store row whose value is an absolute expiry in milliseconds since
the epoch. The store does not expire rows; readers compare the expiry with
their own clock. Exclusion comes only from the store's atomic setnx, so this
is best-effort mutual exclusion: a duplicate build wastes work but the version
write is idempotent by key.

State per lock key:
    ABSENT -> HELD(expiry) -> RELEASED (row deleted)
                           -> EXPIRED  (row present, expiry passed)
"""

import asyncio
import time
from contextlib import asynccontextmanager
from enum import Enum
from typing import Callable, Optional

from core.logging import get_logger
from core.store import KeyValueStore
from services.errors import LockExpiredError, LockTimeoutError, NoLockError, StoreError

logger = get_logger(__name__)

DEFAULT_POLL_INTERVAL_MS = 200


def now_ms() -> int:
    return int(time.time() * 1000)


class LockState(str, Enum):
    """Resolved outcome of waiting on a lock."""
    ABSENT = "absent"  # Holder finished and deleted the lock


class DistributedLock:
    """Lease lock with acquire-or-wait polling.

    Args:
        store: KeyValueStore shared by every worker
        poll_interval_ms: Delay between reads while waiting
        wait_timeout_ms: Lease length and wait bound (default 10x poll interval)
        clock: Millisecond wall clock, injectable for tests
    """

    def __init__(self, store: KeyValueStore,
                 poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
                 wait_timeout_ms: Optional[int] = None,
                 clock: Callable[[], int] = now_ms):
        self.store = store
        self.poll_interval_ms = poll_interval_ms
        self.wait_timeout_ms = wait_timeout_ms or 10 * poll_interval_ms
        self.clock = clock

    async def set_lock(self, key: str) -> bool:
        """Claim the lock with a fresh lease.

        Returns:
            True if this call inserted the lock, False if another worker holds it
        """
        expiry = self.clock() + self.wait_timeout_ms
        claimed = await self.store.setnx(key, str(expiry))
        logger.debug("Lock claim", key=key, claimed=claimed, expiry=expiry)
        return claimed

    async def lock(self, key: str) -> LockState:
        """Wait for a held lock to disappear.

        Returns:
            LockState.ABSENT once the holder deleted the lock

        Raises:
            NoLockError: No lock exists (immediately, without polling)
            LockExpiredError: The lease had already passed (immediately)
            LockTimeoutError: Still held when the wait deadline passed
            StoreError: A read failed
        """
        current = await self.store.get(key)
        if current is None:
            raise NoLockError(key)

        expiry = self._parse_expiry(current)
        if expiry < self.clock():
            raise LockExpiredError(key, expiry)

        return await self._poll(key)

    async def release(self, key: str) -> None:
        await self.store.delete(key)
        logger.debug("Lock released", key=key)

    async def clear_stale(self, key: str, observed: Optional[int] = None) -> bool:
        """Remove a lock whose holder is presumed dead so it can be reclaimed.

        With observed set, the lock is removed only while it still carries
        that expiry, so a lease another waiter already reclaimed survives.

        Returns:
            True if the lock was removed
        """
        if observed is not None:
            current = await self.store.get(key)
            if current is not None and self._parse_expiry(current) != observed:
                logger.info("Stale lock already reclaimed", key=key, observed=observed)
                return False
        # Read and delete are separate calls; a reclaim landing between them is
        # lost and costs one duplicate build
        await self.store.delete(key)
        logger.info("Stale lock cleared", key=key)
        return True

    @asynccontextmanager
    async def claim(self, key: str):
        """Claim the lock for the duration of the block.

        Yields True when claimed; the lock is then released on every exit.
        Yields False when another worker won the insert; nothing is released.
        """
        claimed = await self.set_lock(key)
        try:
            yield claimed
        finally:
            if claimed:
                try:
                    await self.release(key)
                except StoreError as e:
                    # The lease still expires on its own
                    logger.error("Lock release failed", key=key, error=str(e))

    async def _poll(self, key: str) -> LockState:
        # Deadline is captured once; each tick sleeps then re-reads
        deadline = self.clock() + self.wait_timeout_ms
        interval = self.poll_interval_ms / 1000
        polls = 0
        while True:
            await asyncio.sleep(interval)
            polls += 1
            current = await self.store.get(key)
            if current is None:
                logger.debug("Lock absent", key=key, polls=polls)
                return LockState.ABSENT
            if self.clock() > deadline:
                logger.info("Lock wait timed out", key=key, polls=polls)
                raise LockTimeoutError(key, self._parse_expiry(current))

    @staticmethod
    def _parse_expiry(value: str) -> int:
        try:
            return int(value)
        except (TypeError, ValueError):
            return 0
