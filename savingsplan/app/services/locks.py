import threading
from contextlib import contextmanager
from typing import Dict, Hashable


class KeyedLocks:
    """One mutual-exclusion scope per key (month label, (asset, goal) pair, ...)"""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.RLock] = {}

    def _lock_for(self, key: Hashable) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: Hashable):
        lock = self._lock_for(key)
        with lock:
            yield


# Lifecycle transitions are serialized per month label
month_locks = KeyedLocks()

# Ledger appends are serialized per (asset_id, goal_id)
allocation_locks = KeyedLocks()
