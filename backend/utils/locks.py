"""Per-key mutual exclusion for in-process workers."""

import threading
from collections import defaultdict
from contextlib import contextmanager


class KeyedLocks:
    """A lazily created ``threading.Lock`` per key.

    Two callers using different keys never contend; two callers using the
    same key are serialized.  Locks are never evicted, so the key space
    should be bounded (connection ids are).
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = defaultdict(threading.Lock)

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            return self._locks[key]

    def try_acquire(self, key: str) -> bool:
        """Acquire the lock for ``key`` without blocking.

        Returns:
            True if acquired; the caller must call :meth:`release`.
        """
        return self._lock_for(key).acquire(blocking=False)

    def release(self, key: str) -> None:
        self._lock_for(key).release()

    def is_locked(self, key: str) -> bool:
        return self._lock_for(key).locked()

    @contextmanager
    def hold(self, key: str):
        """Block until the lock for ``key`` is held, release on exit."""
        lock = self._lock_for(key)
        with lock:
            yield
