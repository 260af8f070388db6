"""
Per id claims.

Operations on the same resource id must be linearizable, operations on
different ids must not block each other. A claim is a set of re entrant per
id locks acquired in one fixed order:

evc ids, then uni ids, then fc ids, then ltp ids, each level sorted by id.

Nested claims made by the same thread only ever move down this order
(an EVC install claims its UNIs, then each FC install claims its LTPs),
so two claims can never wait on each other in a cycle.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Tuple

LEVELS = ("evc", "uni", "fc", "ltp")
_RANK = {name: i for i, name in enumerate(LEVELS)}

ClaimKey = Tuple[str, str]


class ClaimTable:
    """Lazily created re entrant locks keyed by (level, id)."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[ClaimKey, threading.RLock] = {}

    def _lock_for(self, key: ClaimKey) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def claim(self, keys: Iterable[ClaimKey]) -> Iterator[None]:
        ordered = sorted({k for k in keys if k[1]}, key=lambda k: (_RANK[k[0]], k[1]))
        acquired: List[threading.RLock] = []
        try:
            for key in ordered:
                lock = self._lock_for(key)
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
