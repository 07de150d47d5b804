"""
In-process per-key mutexes for rule and pattern updates.

Unrelated keys never contend; identical keys are serialized. The database
version column still guards against writers in other processes.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class KeyedLockRegistry:
    """Get-or-create a lock per aggregate key (thread-safe)."""

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> threading.Lock:
        with self._lock:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
            return self._locks[key]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self.get(key)
        with lock:
            yield

    def __len__(self) -> int:
        with self._lock:
            return len(self._locks)
