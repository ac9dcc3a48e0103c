from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import contextmanager
from threading import Lock
from typing import Dict, Iterator


class LockProvider(ABC):
    """Per-resource locking used to serialize settlement attempts.

    Contract:
    - acquire() MUST serialize access to the same resource_id
    - acquire() MUST release the lock when the context exits (normal or exception)
    - Different resource_ids MAY be acquired concurrently
    """

    @abstractmethod
    @contextmanager
    def acquire(self, resource_id: str) -> Iterator[None]:
        """Hold the lock for ``resource_id`` for the duration of the context."""


class InMemoryLockProvider(LockProvider):
    """In-process lock provider using one lock per payment.

    A global lock guards the lock dictionary; the per-resource lock is taken
    after the global lock is released so different payments never contend.
    A resource's lock is dropped once no thread holds or waits for it, so
    the dictionary only holds resources currently in use.

    Limitations:
    - Single-process only (locks don't work across processes)
    """

    def __init__(self) -> None:
        self._locks: Dict[str, Lock] = {}
        self._users: Dict[str, int] = {}
        self._global_lock = Lock()

    @contextmanager
    def acquire(self, resource_id: str) -> Iterator[None]:
        with self._global_lock:
            lock = self._locks.setdefault(resource_id, Lock())
            self._users[resource_id] = self._users.get(resource_id, 0) + 1

        try:
            with lock:
                yield
        finally:
            with self._global_lock:
                self._users[resource_id] -= 1
                if not self._users[resource_id]:
                    del self._users[resource_id]
                    del self._locks[resource_id]

    def active_resources(self) -> int:
        """Number of resources currently held or waited on."""
        with self._global_lock:
            return len(self._locks)


class NoOpLockProvider(LockProvider):
    """Lock provider that performs no locking; for single-threaded tests."""

    @contextmanager
    def acquire(self, resource_id: str) -> Iterator[None]:  # noqa: ARG002
        yield
