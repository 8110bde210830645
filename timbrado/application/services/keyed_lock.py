# timbrado/application/services/keyed_lock.py
import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class KeyedLock:
    """Exclusión mutua por llave (una por documento). Las llaves sin uso se liberan."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._users: Dict[str, int] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] = self._users.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._users[key] -= 1
                if self._users[key] == 0:
                    del self._users[key]
                    del self._locks[key]


class ReadWriteLock:
    """Lecturas concurrentes ilimitadas; una escritura excluye a todas."""

    def __init__(self):
        self._condition = threading.Condition(threading.Lock())
        self._readers = 0
        self._writing = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._condition:
            while self._writing:
                self._condition.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._condition:
                self._readers -= 1
                if self._readers == 0:
                    self._condition.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._condition:
            while self._writing or self._readers:
                self._condition.wait()
            self._writing = True
        try:
            yield
        finally:
            with self._condition:
                self._writing = False
                self._condition.notify_all()


class KeyedReadWriteLock:
    """`ReadWriteLock` por llave (una por RFC). Las llaves sin uso se liberan."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, ReadWriteLock] = {}
        self._users: Dict[str, int] = {}

    @contextmanager
    def _borrow(self, key: str) -> Iterator[ReadWriteLock]:
        with self._guard:
            lock = self._locks.setdefault(key, ReadWriteLock())
            self._users[key] = self._users.get(key, 0) + 1
        try:
            yield lock
        finally:
            with self._guard:
                self._users[key] -= 1
                if self._users[key] == 0:
                    del self._users[key]
                    del self._locks[key]

    @contextmanager
    def read(self, key: str) -> Iterator[None]:
        with self._borrow(key) as lock, lock.read():
            yield

    @contextmanager
    def write(self, key: str) -> Iterator[None]:
        with self._borrow(key) as lock, lock.write():
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
