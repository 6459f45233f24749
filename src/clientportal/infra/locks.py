"""Striped per-key locks for shared in-memory maps.

Keys hash onto a fixed pool of locks, so two keys may share a stripe but a
single key always maps to the same lock. Holding the stripe for a key gives
per-key linearizability without one coarse lock over the whole map.
"""

import threading
from contextlib import contextmanager
from typing import Hashable, Iterator

DEFAULT_STRIPES = 32


class KeyedLocks:
    """Fixed pool of re-entrant locks addressed by key."""

    def __init__(self, stripes: int = DEFAULT_STRIPES) -> None:
        if stripes < 1:
            raise ValueError("stripes must be >= 1")
        self._locks = [threading.RLock() for _ in range(stripes)]

    def _index(self, key: Hashable) -> int:
        return hash(key) % len(self._locks)

    def lock_for(self, key: Hashable) -> threading.RLock:
        """Return the lock guarding key."""
        return self._locks[self._index(key)]

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        """Context manager holding the stripe for key."""
        with self.lock_for(key):
            yield

    def __len__(self) -> int:
        return len(self._locks)
