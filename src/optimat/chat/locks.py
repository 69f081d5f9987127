import threading
from contextlib import contextmanager
from typing import Iterator


class ConversationLocks:
    """One lock per conversation id; entries are dropped once nobody holds them."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._users: dict[str, int] = {}

    @contextmanager
    def hold(self, conversation_id: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(conversation_id, threading.Lock())
            self._users[conversation_id] = self._users.get(conversation_id, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[conversation_id] -= 1
                if self._users[conversation_id] == 0:
                    del self._users[conversation_id]
                    del self._locks[conversation_id]

    def active(self) -> int:
        with self._guard:
            return len(self._locks)
