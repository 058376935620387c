"""In-process mutual exclusion keyed by record ID."""

import threading
from contextlib import contextmanager


class KeyedLock:
    """A registry of reentrant locks, one per key.

    Used to serialize read-decide-write passes (a scheduling pass per
    workspace, an advancement per workflow run) within one process.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def _get(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str):
        lock = self._get(key)
        with lock:
            yield


workspace_locks = KeyedLock()
run_locks = KeyedLock()
