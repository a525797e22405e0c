"""
Per-principal lock registry.

Serialises work on one principal (webhook reconciliation, identity merges,
entitlement snapshots) inside this process while unrelated principals run
in parallel. Database row locks cover the multi-process case.
"""
import threading
from collections import defaultdict
from contextlib import contextmanager
from typing import Dict, Iterator


class PrincipalLocks:
    """Reference-counted registry of re-entrant locks keyed by principal key."""

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._refs: Dict[str, int] = defaultdict(int)
        self._guard = threading.Lock()

    def _acquire_ref(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            self._refs[key] += 1
            return lock

    def _release_ref(self, key: str) -> None:
        with self._guard:
            self._refs[key] -= 1
            if self._refs[key] <= 0:
                self._refs.pop(key, None)
                self._locks.pop(key, None)

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        """
        Hold the locks for all given keys.

        Keys are acquired in sorted order so two callers holding overlapping
        sets cannot deadlock.
        """
        ordered = sorted({key for key in keys if key})
        acquired = []
        try:
            for key in ordered:
                lock = self._acquire_ref(key)
                lock.acquire()
                acquired.append((key, lock))
            yield
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._release_ref(key)

    def active_keys(self) -> int:
        with self._guard:
            return len(self._locks)


principal_locks = PrincipalLocks()
