"""In-process advisory locks keyed by entity id."""

from __future__ import annotations

import threading
from collections import defaultdict
from contextlib import contextmanager


class KeyedLock:
    """One re-entrant lock per key, created on first use.

    Entries are reference counted and dropped once nobody holds or waits
    on them, so the table does not grow with every id ever seen.
    """

    def __init__(self):
        self._locks: dict = {}
        self._refs = defaultdict(int)
        self._lock = threading.Lock()

    @contextmanager
    def hold(self, key):
        with self._lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            self._refs[key] += 1
        try:
            with lock:
                yield
        finally:
            with self._lock:
                self._refs[key] -= 1
                if self._refs[key] <= 0:
                    self._refs.pop(key, None)
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._locks)
