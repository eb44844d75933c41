"""
Per-resource critical sections for the scheduling write paths.

A commit touching staff 7, room 3 and patient 12 holds exactly those three
keys; commits on disjoint resources never wait on each other. Keys are always
acquired in sorted order so two writers cannot deadlock.
"""
import logging
import threading
from contextlib import contextmanager
from typing import Iterable, Iterator, List, Optional

from redis.exceptions import LockError

from .config import settings
from .exceptions import Conflict

logger = logging.getLogger(__name__)


def resource_keys(
    clinic_id: int,
    patient_id: Optional[int] = None,
    staff_id: Optional[int] = None,
    room_id: Optional[int] = None,
) -> List[str]:
    """Lock keys for the resources a session occupies.

    Staff keys carry the clinic id: staff ids are treated as tenant-scoped.
    """
    keys = []
    if patient_id is not None:
        keys.append(f"patient:{patient_id}")
    if staff_id is not None:
        keys.append(f"staff:{clinic_id}:{staff_id}")
    if room_id is not None:
        keys.append(f"room:{room_id}")
    return keys


class LocalLockManager:
    """In-process locks, one ``threading.Lock`` per resource key.

    A key's entry is dropped once no caller holds or waits on it.
    """

    def __init__(self, timeout: float = settings.LOCK_TIMEOUT_SECONDS):
        self.timeout = timeout
        self._guard = threading.Lock()
        # key -> [lock, number of callers holding or waiting]
        self._locks = {}

    def _checkout(self, key: str) -> threading.Lock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: str) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, keys: Iterable[str]) -> Iterator[None]:
        acquired = []
        try:
            for key in sorted(set(keys)):
                lock = self._checkout(key)
                if not lock.acquire(timeout=self.timeout):
                    self._checkin(key)
                    logger.warning(f"Timed out waiting for lock {key}")
                    raise Conflict(f"Resource {key} is busy, please retry")
                acquired.append((key, lock))
            yield
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._checkin(key)


class RedisLockManager:
    """Cross-process locks backed by redis-py's ``Lock``."""

    def __init__(self, client, timeout: float = settings.LOCK_TIMEOUT_SECONDS):
        self.client = client
        self.timeout = timeout

    @contextmanager
    def hold(self, keys: Iterable[str]) -> Iterator[None]:
        acquired = []
        try:
            for key in sorted(set(keys)):
                lock = self.client.lock(
                    f"scheduling-lock:{key}",
                    timeout=self.timeout * 3,
                    blocking_timeout=self.timeout,
                )
                if not lock.acquire():
                    logger.warning(f"Timed out waiting for lock {key}")
                    raise Conflict(f"Resource {key} is busy, please retry")
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                try:
                    lock.release()
                except LockError:
                    # Expired while held; the write has already committed or failed
                    logger.warning(f"Lock {lock.name} expired before release")


_lock_manager = None


def get_lock_manager():
    """Process-wide lock manager selected by ``LOCK_BACKEND``."""
    global _lock_manager
    if _lock_manager is None:
        if settings.LOCK_BACKEND == "redis" and not settings.TESTING:
            from .database import get_redis
            _lock_manager = RedisLockManager(get_redis())
        else:
            _lock_manager = LocalLockManager()
    return _lock_manager
