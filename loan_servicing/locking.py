"""
Per-Loan Locking Module

Serializes units of work on the same loan inside one process. Different
loans never wait on each other here; they only meet at the storage
backend's own transaction lock. Cross-process exclusion comes from the
backend (row locks on PostgreSQL, the write lock on SQLite).
"""

import threading
from contextlib import contextmanager
from typing import Dict, Optional

from .errors import ConcurrencyConflict


class _LoanLock:
    __slots__ = ("lock", "holders")

    def __init__(self):
        self.lock = threading.RLock()
        self.holders = 0  # Threads holding or waiting


class LoanLockRegistry:
    """Registry of re-entrant locks keyed by loan id"""

    def __init__(self, default_timeout: float = 10.0):
        self.default_timeout = default_timeout
        self._locks: Dict[str, _LoanLock] = {}
        self._registry_lock = threading.Lock()

    def _checkout(self, loan_id: str) -> _LoanLock:
        with self._registry_lock:
            entry = self._locks.get(loan_id)
            if entry is None:
                entry = self._locks[loan_id] = _LoanLock()
            entry.holders += 1
            return entry

    def _release(self, loan_id: str, entry: _LoanLock) -> None:
        with self._registry_lock:
            entry.holders -= 1
            if entry.holders == 0:
                self._locks.pop(loan_id, None)

    @contextmanager
    def hold(self, loan_id: str, timeout: Optional[float] = None):
        """
        Hold the lock for one loan

        Args:
            loan_id: Loan to lock
            timeout: Seconds to wait, the registry default when None

        Raises:
            ConcurrencyConflict: If the lock is not acquired in time
        """
        wait = self.default_timeout if timeout is None else timeout
        entry = self._checkout(loan_id)
        try:
            if not entry.lock.acquire(timeout=wait):
                raise ConcurrencyConflict(
                    f"Timed out waiting for loan {loan_id}",
                    {"loan_id": loan_id, "timeout_seconds": wait}
                )
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._release(loan_id, entry)

    def active_locks(self) -> int:
        """Number of loans currently locked or awaited"""
        with self._registry_lock:
            return len(self._locks)
