"""Per-account lock coordination.

`acquire_all` sorts the requested account ids before taking any lock, so two
operations with overlapping account sets always lock in the same relative
order and cannot deadlock. Waiting is bounded by `timeout_seconds`; on timeout
every lock already taken is released and `LockTimeout` is raised.
"""

import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager

from redis.exceptions import LockError

from vouchpay.common.logging import logger
from vouchpay.common.metrics import lock_timeouts_total, lock_wait_seconds
from vouchpay.services.ledger.errors import LockTimeout


class LockCoordinator(ABC):
    """Ordered acquisition on top of backend-specific single-account locks."""

    def __init__(self, timeout_seconds: float = 5.0, service_name: str = "ledger") -> None:
        self.timeout_seconds = timeout_seconds
        self.service_name = service_name

    @abstractmethod
    def _acquire_one(self, account_id: str, timeout: float):
        """Return a handle for the held lock, or None when `timeout` elapsed."""

    @abstractmethod
    def _release_one(self, handle) -> None: ...

    @contextmanager
    def acquire_all(self, account_ids):
        ordered = sorted(set(account_ids))
        started = time.monotonic()
        deadline = started + self.timeout_seconds
        held = []
        try:
            for account_id in ordered:
                handle = self._acquire_one(account_id, max(0.0, deadline - time.monotonic()))
                if handle is None:
                    lock_timeouts_total.labels(service=self.service_name).inc()
                    logger.warning("lock_timeout account_id=%s requested=%s", account_id, ordered)
                    raise LockTimeout(
                        f"account {account_id} is busy; retry the operation "
                        f"(waited {self.timeout_seconds:.1f}s)"
                    )
                held.append(handle)
            lock_wait_seconds.labels(service=self.service_name).observe(time.monotonic() - started)
            yield ordered
        finally:
            for handle in reversed(held):
                self._release_one(handle)


class InProcessLockCoordinator(LockCoordinator):
    """Thread locks keyed by account id; valid within one worker process."""

    def __init__(self, timeout_seconds: float = 5.0, service_name: str = "ledger") -> None:
        super().__init__(timeout_seconds, service_name)
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, account_id: str) -> threading.Lock:
        with self._registry_lock:
            return self._locks.setdefault(account_id, threading.Lock())

    def _acquire_one(self, account_id: str, timeout: float):
        lock = self._lock_for(account_id)
        return lock if lock.acquire(timeout=timeout) else None

    def _release_one(self, handle) -> None:
        handle.release()


class RedisLockCoordinator(LockCoordinator):
    """Redis locks shared by every worker process that uses the same database.

    `lease_seconds` bounds how long a crashed holder can keep an account
    locked; it must exceed the slowest expected operation.
    """

    def __init__(
        self,
        rdb,
        timeout_seconds: float = 5.0,
        lease_seconds: float = 30.0,
        service_name: str = "ledger",
        prefix: str = "ledger:lock",
    ) -> None:
        super().__init__(timeout_seconds, service_name)
        self.rdb = rdb
        self.lease_seconds = lease_seconds
        self.prefix = prefix

    def _acquire_one(self, account_id: str, timeout: float):
        lock = self.rdb.lock(
            f"{self.prefix}:{account_id}",
            timeout=self.lease_seconds,
            blocking_timeout=timeout,
        )
        return lock if lock.acquire() else None

    def _release_one(self, handle) -> None:
        try:
            handle.release()
        except LockError as exc:
            # Lease expired while held; another worker may already own the key.
            logger.warning("lock_release_failed name=%s error=%s", handle.name, exc)
