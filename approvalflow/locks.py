"""
Keyed mutex for per-key critical sections.

Locks are created on first use and discarded once no thread holds or waits
on them, so the table only grows with the number of keys in flight.
"""

import threading
from contextlib import contextmanager
from typing import Hashable, Iterator, Optional

from .exceptions import UnavailableError


class KeyedLock:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, list] = {}

    @contextmanager
    def hold(self, key: Hashable, timeout: Optional[float] = None) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1

        acquired = entry[0].acquire(timeout=-1 if timeout is None else timeout)
        try:
            if not acquired:
                raise UnavailableError(f"Timed out waiting for lock on {key!r}")
            yield
        finally:
            if acquired:
                entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
