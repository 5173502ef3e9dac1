"""Per-key mutual exclusion for shared aggregates.

Writes to a corridor (baseline recompute, alert check-then-create) and to a
vehicle's trips are serialized per key rather than behind one global lock,
so independent corridors and vehicles proceed in parallel.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Hashable, Iterator


class KeyedLock:
    """Hands out one re-entrant lock per key.

    Locks are never evicted; the key space (corridors, vehicles) grows with
    the data the process has seen.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, threading.RLock] = {}

    def _lock_for(self, key: Hashable) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        lock = self._lock_for(key)
        with lock:
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


# Process-wide registries shared by all ingestion workers
corridor_locks = KeyedLock()
vehicle_locks = KeyedLock()
