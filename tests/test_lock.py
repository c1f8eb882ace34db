import asyncio
import time

import pytest

from core.store import KeyValueStore, MemoryStoreBackend
from services.errors import (
    ErrorKind,
    LockExpiredError,
    LockTimeoutError,
    NoLockError,
    StoreError,
)
from services.lock import DistributedLock, LockState


class CountingBackend(MemoryStoreBackend):
    def __init__(self, fail_after=None):
        super().__init__()
        self.reads = 0
        self.fail_after = fail_after

    async def get(self, key):
        self.reads += 1
        if self.fail_after is not None and self.reads > self.fail_after:
            raise ConnectionError("store went away")
        return await super().get(key)


@pytest.fixture
def backend():
    return CountingBackend()


@pytest.fixture
def slow_lock(backend):
    # Long interval so any polling would be visible in elapsed time
    return DistributedLock(KeyValueStore(backend), poll_interval_ms=1000)


async def test_absent_lock_rejects_immediately(slow_lock, backend):
    started = time.monotonic()
    with pytest.raises(NoLockError) as info:
        await slow_lock.lock("img-server:lock:d:abc")

    assert time.monotonic() - started < 0.5
    assert backend.reads == 1
    assert info.value.kind is ErrorKind.NO_LOCK


async def test_expired_lock_rejects_without_polling(slow_lock, backend):
    await slow_lock.store.set("k", str(int(time.time() * 1000) - 1))

    started = time.monotonic()
    with pytest.raises(LockExpiredError) as info:
        await slow_lock.lock("k")

    assert time.monotonic() - started < 0.5
    assert backend.reads == 1
    assert info.value.kind is ErrorKind.LOCK_EXPIRED


async def test_unparseable_lock_value_counts_as_expired(slow_lock):
    await slow_lock.store.set("k", "garbage")

    with pytest.raises(LockExpiredError):
        await slow_lock.lock("k")


async def test_wait_resolves_absent_when_holder_releases(backend):
    lock = DistributedLock(KeyValueStore(backend), poll_interval_ms=10, wait_timeout_ms=1000)
    assert await lock.set_lock("k")

    async def release_later():
        await asyncio.sleep(0.05)
        await lock.release("k")

    releaser = asyncio.create_task(release_later())
    assert await lock.lock("k") is LockState.ABSENT
    await releaser
    assert backend.reads > 1


async def test_wait_times_out_while_still_held(backend):
    lock = DistributedLock(KeyValueStore(backend), poll_interval_ms=10, wait_timeout_ms=50)
    far_future = int(time.time() * 1000) + 60_000
    await lock.store.set("k", str(far_future))

    with pytest.raises(LockTimeoutError) as info:
        await lock.lock("k")

    assert info.value.kind is ErrorKind.LOCK_TIMEOUT
    assert await lock.store.get("k") == str(far_future)


async def test_read_error_while_polling_propagates():
    backend = CountingBackend(fail_after=2)
    lock = DistributedLock(KeyValueStore(backend), poll_interval_ms=10, wait_timeout_ms=1000)
    await lock.set_lock("k")

    with pytest.raises(StoreError):
        await lock.lock("k")


async def test_cancelling_the_waiter_stops_polling(backend):
    lock = DistributedLock(KeyValueStore(backend), poll_interval_ms=10, wait_timeout_ms=10_000)
    await lock.set_lock("k")

    waiter = asyncio.create_task(lock.lock("k"))
    await asyncio.sleep(0.05)
    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    reads = backend.reads
    await asyncio.sleep(0.05)
    assert backend.reads == reads


async def test_set_lock_writes_expiry_from_clock_and_is_exclusive():
    store = KeyValueStore(MemoryStoreBackend())
    lock = DistributedLock(store, poll_interval_ms=200, clock=lambda: 1_000)

    assert lock.wait_timeout_ms == 2_000
    assert await lock.set_lock("k") is True
    assert await lock.set_lock("k") is False
    assert await store.get("k") == "3000"


async def test_claim_releases_on_error_only_when_claimed():
    store = KeyValueStore(MemoryStoreBackend())
    lock = DistributedLock(store, poll_interval_ms=10)

    with pytest.raises(RuntimeError):
        async with lock.claim("k") as claimed:
            assert claimed
            raise RuntimeError("build failed")
    assert await store.get("k") is None

    await store.set("held", "other-worker")
    async with lock.claim("held") as claimed:
        assert not claimed
    assert await store.get("held") == "other-worker"


async def test_clear_stale_keeps_a_lease_another_waiter_reclaimed():
    store = KeyValueStore(MemoryStoreBackend())
    lock = DistributedLock(store, poll_interval_ms=10, clock=lambda: 5_000)
    await store.set("k", "1000")

    with pytest.raises(LockExpiredError) as info:
        await lock.lock("k")

    # A second waiter saw the same expired lease, cleared it and claimed first
    assert await lock.clear_stale("k", info.value.expiry) is True
    assert await lock.set_lock("k")

    assert await lock.clear_stale("k", info.value.expiry) is False
    assert await store.get("k") == "5100"


async def test_timeout_reports_the_expiry_it_waited_on(backend):
    lock = DistributedLock(KeyValueStore(backend), poll_interval_ms=10, wait_timeout_ms=50)
    far_future = int(time.time() * 1000) + 60_000
    await lock.store.set("k", str(far_future))

    with pytest.raises(LockTimeoutError) as info:
        await lock.lock("k")

    assert info.value.expiry == far_future
    assert await lock.clear_stale("k", info.value.expiry) is True
    assert await lock.store.get("k") is None


async def test_clear_stale_without_observed_expiry_deletes():
    store = KeyValueStore(MemoryStoreBackend())
    lock = DistributedLock(store, poll_interval_ms=10)
    await store.set("k", "anything")

    assert await lock.clear_stale("k") is True
    assert await store.get("k") is None
