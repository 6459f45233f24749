"""Bounded memory of recently seen update ids.

Telegram redelivers an update when the webhook does not answer in time;
seen ids are acknowledged without being processed again.
"""

import threading
from collections import OrderedDict

DEFAULT_CAPACITY = 2048


class UpdateDeduplicator:
    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = capacity
        self._seen: OrderedDict[int, None] = OrderedDict()
        self._lock = threading.Lock()

    def first_seen(self, update_id: int) -> bool:
        """Record update_id. True the first time, False for a duplicate."""
        with self._lock:
            if update_id in self._seen:
                self._seen.move_to_end(update_id)
                return False
            self._seen[update_id] = None
            if len(self._seen) > self._capacity:
                self._seen.popitem(last=False)
            return True

    def __len__(self) -> int:
        return len(self._seen)
