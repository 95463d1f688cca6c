"""
auth/locks.py -- Per-key mutual exclusion for credential read-modify-write sequences.

Login (check lockout, verify, bump counter, save) and refresh rotation (load,
check, swap, save) must not interleave for the same user inside one process.
KeyedLock hands out one threading.Lock per key and forgets it when the last
holder releases, so the table does not grow with the user base.

Cross-process safety comes from the store's compare-and-swap updates, not
from this lock.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class KeyedLock:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        # key -> [lock, number of threads holding or waiting]
        self._entries: dict[str, list] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        lock: threading.Lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._entries[key]


def user_key(user_id: str) -> str:
    return f"user:{user_id}"
