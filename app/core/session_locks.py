"""Per-session serialization for mutations inside one process."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Tuple


class SessionLockRegistry:
    """
    Hands out one lock per session id. Locks are reference counted and
    dropped once no caller holds or waits on them, so the table only
    contains sessions with in-flight work.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, Tuple[threading.Lock, int]] = {}

    def _checkout(self, session_id: str) -> threading.Lock:
        with self._guard:
            lock, refs = self._locks.get(session_id, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[session_id] = (lock, refs + 1)
            return lock

    def _checkin(self, session_id: str) -> None:
        with self._guard:
            lock, refs = self._locks[session_id]
            if refs <= 1:
                del self._locks[session_id]
            else:
                self._locks[session_id] = (lock, refs - 1)

    @contextmanager
    def hold(self, session_id: str) -> Iterator[None]:
        """Block until the session's lock is acquired; release on exit."""
        lock = self._checkout(session_id)
        try:
            with lock:
                yield
        finally:
            self._checkin(session_id)

    def active_count(self) -> int:
        with self._guard:
            return len(self._locks)


session_locks = SessionLockRegistry()
