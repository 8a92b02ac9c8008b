import logging
import threading
from collections.abc import Iterator, MutableMapping
from contextlib import contextmanager
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K")
V = TypeVar("V")


class RowLockTimeout(Exception):
    """A row lock could not be acquired before the timeout elapsed."""

    def __init__(self, key: object, timeout: float) -> None:
        super().__init__(f"timed out after {timeout}s waiting for lock on {key}")
        self.key = key
        self.timeout = timeout


class IntegrityError(Exception):
    """A write would leave the store in an inconsistent state."""


class _RowLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class InMemoryKeyValueDatabase(Generic[K, V]):
    """
    Simple in-memory key/value database with exclusive per-row locks.

    Plain get/put are unguarded. Anything that reads a row and writes it
    back depending on what it read must hold ``row_lock(key)`` for the
    whole read-modify-write.
    """

    def __init__(self) -> None:
        self._store: MutableMapping[K, V] = {}
        self._locks: dict[K, _RowLock] = {}
        self._locks_guard = threading.Lock()

    def put(self, key: K, value: V) -> None:
        self._store[key] = value

    def get(self, key: K) -> V | None:
        return self._store.get(key)

    def delete(self, key: K) -> None:
        self._store.pop(key, None)

    def all(self) -> list[V]:
        return list(self._store.values())

    def _checkout_lock(self, key: K) -> _RowLock:
        with self._locks_guard:
            row = self._locks.get(key)
            if row is None:
                row = self._locks[key] = _RowLock()
            row.users += 1
            return row

    def _return_lock(self, key: K, row: _RowLock) -> None:
        # drop the lock once nobody holds or waits on it
        with self._locks_guard:
            row.users -= 1
            if row.users == 0:
                self._locks.pop(key, None)

    @contextmanager
    def row_lock(self, key: K, timeout: float = 5.0) -> Iterator[V | None]:
        """
        Hold the exclusive lock on ``key`` and yield its current value.

        Concurrent holders of the same key are serialized in acquisition
        order; other keys are unaffected. Raises RowLockTimeout if the
        lock is not acquired within ``timeout`` seconds.
        """
        row = self._checkout_lock(key)
        try:
            if not row.lock.acquire(timeout=timeout):
                logger.warning("row lock timeout key=%s timeout=%s", key, timeout)
                raise RowLockTimeout(key, timeout)
            try:
                yield self._store.get(key)
            finally:
                row.lock.release()
        finally:
            self._return_lock(key, row)
