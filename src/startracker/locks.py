"""Per-child critical sections for ledger-mutating operations."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class ChildLocks:
    """Serialise mutating operations for the same child within one process.

    Database unique constraints cover duplicate evaluations and free-daily
    claims across processes; this lock additionally keeps the
    balance-check-then-debit of paid redemptions from interleaving.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, child_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(child_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[child_id] = lock
            return lock

    @contextmanager
    def hold(self, child_id: str) -> Iterator[None]:
        lock = self._lock_for(child_id)
        with lock:
            yield

    def forget(self, child_id: str) -> None:
        with self._guard:
            self._locks.pop(child_id, None)


__all__ = ["ChildLocks"]
