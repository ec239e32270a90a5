"""
Per-loan locking

All mutations of one loan are serialized through a keyed mutex; different
loans proceed in parallel. Reads never take the lock.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Set

from .exceptions import LockReentryError


class LoanLockManager:
    """Keyed single-writer locks, one per loan id"""

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()
        self._local = threading.local()

    def _held(self) -> Set[str]:
        if not hasattr(self._local, 'held'):
            self._local.held = set()
        return self._local.held

    def _lock_for(self, loan_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(loan_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[loan_id] = lock
            return lock

    def is_held(self, loan_id: str) -> bool:
        """True when the calling thread holds the loan's lock"""
        return loan_id in self._held()

    @contextmanager
    def hold(self, loan_id: str):
        """
        Hold the loan's lock for the duration of the block

        Raises:
            LockReentryError: the calling thread already holds this loan's lock
        """
        held = self._held()
        if loan_id in held:
            raise LockReentryError(f"Lock for loan {loan_id} is already held by this thread")

        lock = self._lock_for(loan_id)
        lock.acquire()
        held.add(loan_id)
        try:
            yield
        finally:
            held.discard(loan_id)
            lock.release()
