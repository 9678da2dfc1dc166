"""Per-stint mutual exclusion inside one process"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class StintLockRegistry:
    """
    Hands out one re-entrant lock per stint.

    Every state-changing call for a stint runs under its lock, so a payout
    attempt, a refund and a gateway confirmation for the same stint never
    interleave in this process. Cross-process races are caught by the
    version column on the rows themselves.

    A lock lives only while someone holds or waits on it; the last holder
    out removes it from the registry.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}
        self._holders: Dict[str, int] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _acquire_ref(self, stint_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(stint_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[stint_id] = lock
            self._holders[stint_id] = self._holders.get(stint_id, 0) + 1
            return lock

    def _release_ref(self, stint_id: str) -> None:
        with self._guard:
            self._holders[stint_id] -= 1
            if self._holders[stint_id] == 0:
                del self._holders[stint_id]
                del self._locks[stint_id]

    @contextmanager
    def hold(self, stint_id: str) -> Iterator[None]:
        lock = self._acquire_ref(stint_id)
        try:
            with lock:
                yield
        finally:
            self._release_ref(stint_id)
