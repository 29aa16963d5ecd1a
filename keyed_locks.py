"""In-process per-key mutual exclusion.

A lock is created the first time a key is asked for and dropped again as soon
as no thread holds it or waits on it, so the registry only ever contains keys
with live contention.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Optional


class LockTimeout(RuntimeError):
    def __init__(self, key):
        super().__init__(f"timed out waiting for lock {key!r}")
        self.key = key


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class KeyedLocks:
    def __init__(self):
        self._guard = threading.Lock()
        self._entries: Dict[Hashable, _Entry] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    def is_locked(self, key: Hashable) -> bool:
        with self._guard:
            entry = self._entries.get(key)
            return bool(entry and entry.lock.locked())

    @contextmanager
    def hold(self, key: Hashable, timeout: Optional[float] = None):
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.users += 1

        acquired = False
        try:
            acquired = entry.lock.acquire(timeout=-1 if timeout is None else timeout)
            if not acquired:
                raise LockTimeout(key)
            yield
        finally:
            if acquired:
                entry.lock.release()
            with self._guard:
                entry.users -= 1
                if entry.users == 0 and self._entries.get(key) is entry:
                    del self._entries[key]
