from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class _LockEntry:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.holders = 0


class KeyedLocks:
    """Table of per-key re-entrant locks.

    Work on one key is serialized while distinct keys proceed in parallel.
    The table guard is held only to look up or retire an entry, never while a
    caller's critical section runs. Entries are reference counted and dropped
    once no thread holds or waits on them, so the table does not grow with
    every username ever seen.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: Dict[str, _LockEntry] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = _LockEntry()
                self._entries[key] = entry
            entry.holders += 1
        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0 and self._entries.get(key) is entry:
                    del self._entries[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
