"""Per-account serialization of bill, payment and carry-forward mutations.

Mutations for one account never interleave; different accounts proceed in
parallel. The in-process lock bounds the wait, and services additionally take
a row lock on the account (SELECT ... FOR UPDATE) inside their transaction so
separate worker processes serialize through the database.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Iterator

from meterbill.services.errors import AccountLockedError

logger = logging.getLogger(__name__)


class AccountLockManager:
    """Registry of one lock per account id."""

    def __init__(self, default_timeout: float = 30.0):
        self.default_timeout = default_timeout
        self._locks: dict[int, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, account_id: int) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[account_id] = lock
            return lock

    def is_locked(self, account_id: int) -> bool:
        return self._lock_for(account_id).locked()

    @contextmanager
    def hold(self, account_id: int, timeout: float | None = None) -> Iterator[None]:
        """Hold the account lock for the duration of the block.

        Args:
            account_id: Account to serialize on
            timeout: Seconds to wait; defaults to the manager's timeout

        Raises:
            AccountLockedError: If the lock is not acquired within timeout
        """
        wait = self.default_timeout if timeout is None else max(timeout, 0)
        lock = self._lock_for(account_id)
        if not lock.acquire(timeout=wait):
            logger.warning("Timed out after %.1fs waiting for account %d lock", wait, account_id)
            raise AccountLockedError(
                f"Account {account_id} is locked by another operation; retry later",
                field="account_id",
            )
        try:
            yield
        finally:
            lock.release()


# Shared by all services in this process so separate service instances still serialize
account_locks = AccountLockManager()


__all__ = ["AccountLockManager", "account_locks"]
