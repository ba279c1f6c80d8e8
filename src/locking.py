"""
Per-key locks for read-modify-write sections

Score documents are updated read-modify-write; two ratings for the same route
handled at once would otherwise both read the same total_reports and one
increment would be lost. Every write to a Score (and to a RateLimitRecord)
runs while holding the lock for its key.

Locks are in-process only. Running several API worker processes against one
database requires a single writer process or store-level atomic updates.
"""

import threading
from contextlib import contextmanager


class _Entry:
    __slots__ = ("lock", "holders")

    def __init__(self):
        self.lock = threading.Lock()
        self.holders = 0


class KeyedLock:
    """
    Map of lazily created locks, one per key

    An entry lives only while some thread holds or waits on its lock, so the
    map stays as small as the number of keys in use.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._entries: dict = {}

    @contextmanager
    def hold(self, key):
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.holders += 1

        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._entries[key]

    def __len__(self):
        with self._guard:
            return len(self._entries)


# Shared across the process so every aggregator / limiter instance serializes
# on the same keys
score_locks = KeyedLock()
rate_limit_locks = KeyedLock()
