"""Per-owner and per-(owner, symbol) mutual exclusion for reconciliation runs."""

import threading
from contextlib import contextmanager
from typing import Iterator

from ledger_core.errors import ReconciliationBusyError


class LockRegistry:
    """
    Owner locks are re-entrant so a run can escalate into a rebuild while
    holding its owner lock. Symbol locks serialize every write to one
    position row within the process; the store's BEGIN IMMEDIATE covers
    other processes.
    """

    def __init__(self, *, timeout: float | None = None) -> None:
        self._guard = threading.Lock()
        self._owners: dict[str, threading.RLock] = {}
        self._symbols: dict[tuple[str, str], threading.Lock] = {}
        self._timeout = timeout

    def _owner_lock(self, owner: str) -> threading.RLock:
        with self._guard:
            lock = self._owners.get(owner)
            if lock is None:
                lock = self._owners[owner] = threading.RLock()
            return lock

    def _symbol_lock(self, owner: str, symbol: str) -> threading.Lock:
        key = (owner, symbol)
        with self._guard:
            lock = self._symbols.get(key)
            if lock is None:
                lock = self._symbols[key] = threading.Lock()
            return lock

    def _acquire(self, lock, what: str) -> None:
        acquired = lock.acquire() if self._timeout is None else lock.acquire(timeout=self._timeout)
        if not acquired:
            raise ReconciliationBusyError(f"timed out waiting for {what} lock")

    @contextmanager
    def owner(self, owner: str) -> Iterator[None]:
        lock = self._owner_lock(owner)
        self._acquire(lock, f"owner {owner}")
        try:
            yield
        finally:
            lock.release()

    @contextmanager
    def symbol(self, owner: str, symbol: str) -> Iterator[None]:
        lock = self._symbol_lock(owner, symbol)
        self._acquire(lock, f"{owner}/{symbol}")
        try:
            yield
        finally:
            lock.release()
