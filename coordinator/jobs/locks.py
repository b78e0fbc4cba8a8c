"""Keyed per-job lock table.

One lock per job id, created on first use and dropped once no thread holds or
waits for it, so the table only grows with the number of jobs in flight.
"""

import contextlib
import threading
from typing import Dict, Iterator, List, Optional


class LockTimeout(Exception):
    """The lock for a key could not be acquired within the timeout."""

    def __init__(self, key: str, timeout: Optional[float]):
        super().__init__(f"Timed out after {timeout}s waiting for lock on {key}")
        self.key = key
        self.timeout = timeout


class KeyedLockTable:
    """Mutual exclusion scoped to a string key."""

    def __init__(self):
        self._guard = threading.Lock()
        # key -> [lock, number of holders and waiters]
        self._locks: Dict[str, List] = {}

    def _checkout(self, key: str) -> threading.Lock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: str) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @contextlib.contextmanager
    def hold(self, key: str, timeout: Optional[float] = None) -> Iterator[None]:
        """Hold the lock for ``key``.

        Raises:
            LockTimeout: If ``timeout`` seconds pass before the lock is free
        """
        lock = self._checkout(key)
        acquired = lock.acquire(timeout=-1 if timeout is None else timeout)
        if not acquired:
            self._checkin(key)
            raise LockTimeout(key, timeout)
        try:
            yield
        finally:
            lock.release()
            self._checkin(key)

    def is_locked(self, key: str) -> bool:
        with self._guard:
            entry = self._locks.get(key)
            return entry is not None and entry[0].locked()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
