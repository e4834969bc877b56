"""Per-key mutual exclusion."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator, List


class KeyedLock:
    """
    One lock per key, created on demand and dropped when unused.

    Example
    -------
    >>> locks = KeyedLock()
    >>> with locks.hold("vol-123"):
    ...     adapter.mutate(volume, ActionType.DELETE)
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        """Hold the lock of ``key`` for the duration of the block."""
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] = self._users.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._users[key] -= 1
                if not self._users[key]:
                    del self._users[key]
                    del self._locks[key]

    def held_keys(self) -> List[Hashable]:
        """Keys currently held or waited on."""
        with self._guard:
            return list(self._locks)
