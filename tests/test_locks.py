"""Ordered per-account lock coordination."""

import threading
import time

import pytest
from redis.exceptions import LockError

from vouchpay.services.ledger.errors import LockTimeout
from vouchpay.services.ledger.locks import InProcessLockCoordinator, LockCoordinator, RedisLockCoordinator


class RecordingCoordinator(InProcessLockCoordinator):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.acquired = []
        self.released = []

    def _acquire_one(self, account_id, timeout):
        handle = super()._acquire_one(account_id, timeout)
        if handle is not None:
            self.acquired.append(account_id)
        return handle

    def _release_one(self, handle):
        self.released.append(handle)
        super()._release_one(handle)


def test_locks_taken_in_sorted_order_and_deduplicated():
    """Overlapping account sets always lock in the same relative order."""

    locks = RecordingCoordinator(timeout_seconds=1)
    with locks.acquire_all(["zulu", "alpha", "mike", "alpha"]) as ordered:
        assert ordered == ["alpha", "mike", "zulu"]
    assert locks.acquired == ["alpha", "mike", "zulu"]
    assert len(locks.released) == 3


def test_locks_released_when_body_raises():
    locks = InProcessLockCoordinator(timeout_seconds=0.2)
    with pytest.raises(RuntimeError):
        with locks.acquire_all(["a", "b"]):
            raise RuntimeError("boom")
    with locks.acquire_all(["a", "b"]) as ordered:
        assert ordered == ["a", "b"]


def test_timeout_raises_retryable_and_releases_partial_set():
    """A blocked acquisition gives up after the timeout and frees what it held."""

    locks = InProcessLockCoordinator(timeout_seconds=0.1)
    holder_ready = threading.Event()
    release = threading.Event()

    def hold_b():
        with locks.acquire_all(["b"]):
            holder_ready.set()
            release.wait(5)

    t = threading.Thread(target=hold_b)
    t.start()
    holder_ready.wait(5)
    try:
        started = time.monotonic()
        with pytest.raises(LockTimeout) as exc_info:
            with locks.acquire_all(["a", "b"]):
                pass
        assert time.monotonic() - started < 2
        assert exc_info.value.retryable is True
        # "a" was taken before "b" timed out; it must be free again.
        with locks.acquire_all(["a"]):
            pass
    finally:
        release.set()
        t.join()


def test_disjoint_sets_do_not_block_each_other():
    locks = InProcessLockCoordinator(timeout_seconds=0.2)
    done = threading.Event()

    def other():
        with locks.acquire_all(["c", "d"]):
            done.set()

    with locks.acquire_all(["a", "b"]):
        t = threading.Thread(target=other)
        t.start()
        t.join(2)
        assert done.is_set()


class FakeRedisLock:
    def __init__(self, store, name, timeout, blocking_timeout):
        self.store = store
        self.name = name
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout

    def acquire(self):
        if self.name in self.store.held:
            return False
        self.store.held.add(self.name)
        return True

    def release(self):
        if self.name not in self.store.held:
            raise LockError("Cannot release an unlocked lock")
        self.store.held.discard(self.name)


class FakeRedis:
    def __init__(self):
        self.held = set()
        self.requests = []

    def lock(self, name, timeout=None, blocking_timeout=None):
        self.requests.append((name, timeout, blocking_timeout))
        return FakeRedisLock(self, name, timeout, blocking_timeout)


def test_redis_coordinator_uses_prefixed_keys_and_lease():
    rdb = FakeRedis()
    locks = RedisLockCoordinator(rdb, timeout_seconds=1, lease_seconds=12)
    with locks.acquire_all(["b", "a"]):
        assert rdb.held == {"ledger:lock:a", "ledger:lock:b"}
    assert rdb.held == set()
    assert [name for name, _, _ in rdb.requests] == ["ledger:lock:a", "ledger:lock:b"]
    assert all(lease == 12 for _, lease, _ in rdb.requests)


def test_redis_coordinator_timeout_when_key_held():
    rdb = FakeRedis()
    rdb.held.add("ledger:lock:b")
    locks = RedisLockCoordinator(rdb, timeout_seconds=0.1)
    with pytest.raises(LockTimeout):
        with locks.acquire_all(["a", "b"]):
            pass
    assert rdb.held == {"ledger:lock:b"}


def test_redis_release_after_lease_expiry_is_logged_not_raised():
    rdb = FakeRedis()
    locks = RedisLockCoordinator(rdb, timeout_seconds=1)
    with locks.acquire_all(["a"]):
        rdb.held.clear()
    assert rdb.held == set()


def test_coordinator_backend_must_implement_lock_primitives():
    with pytest.raises(TypeError):
        LockCoordinator(timeout_seconds=1)

    class HalfBackend(LockCoordinator):
        def _acquire_one(self, account_id, timeout):
            return account_id

    with pytest.raises(TypeError):
        HalfBackend(timeout_seconds=1)
