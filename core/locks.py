"""
core/locks.py -- Per-key mutual exclusion.

One logical owner per device (attempt state), per session (location log) and
per event (processing). Different keys never contend.

Usage:
    locks = KeyedLock()
    with locks.hold(device_id):
        ...

Entries are reference counted and dropped when the last holder leaves, so a
long-running process does not accumulate one Lock per device ever seen.
"""

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class KeyedLock:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._refs: dict[str, int] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            self._refs[key] = self._refs.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._refs[key] -= 1
                if self._refs[key] == 0:
                    del self._refs[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
