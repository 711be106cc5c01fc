from contextlib import contextmanager
from threading import Lock, RLock
from typing import Hashable, Iterator


class KeyedLock:
    """One re-entrant lock per key, dropped again once nobody holds or waits on it.

    Serializes work on a single budget or template inside this process; the
    version counter on the rows covers writers in other processes.
    """

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: dict[Hashable, RLock] = {}
        self._users: dict[Hashable, int] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = RLock()
            self._users[key] = self._users.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[key] -= 1
                if self._users[key] == 0:
                    del self._users[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


entity_locks = KeyedLock()
