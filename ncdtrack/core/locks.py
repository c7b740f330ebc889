"""NCDTrack — Per-Key Write Serialization.

Writes to the same record key are mutually exclusive; writes to different
keys never wait on each other. Entries are reference counted and dropped
once no thread holds or waits on them.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class KeyedLock:
    """A registry of mutexes, one per key, created on demand."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: Dict[Hashable, _Entry] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._entries.setdefault(key, _Entry())
            entry.users += 1
        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._entries[key]

    def active_keys(self) -> int:
        """Keys currently held or waited on."""
        with self._guard:
            return len(self._entries)


# Process-wide registry shared by the update coordinator and the aggregator.
record_locks = KeyedLock()
