"""
Per-user serialization of local read-modify-write sections.

A lock is only ever held around local database work, never across a call to
the billing provider.
"""
import threading
from contextlib import contextmanager
from typing import Dict


class UserLocks:
    """Registry handing out one lock per user id."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[int, threading.Lock] = {}

    def get(self, user_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[user_id] = lock
            return lock

    @contextmanager
    def hold(self, user_id: int):
        lock = self.get(user_id)
        with lock:
            yield


user_locks = UserLocks()
