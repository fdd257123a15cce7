from __future__ import annotations

from datetime import datetime, timedelta

from taskgate.storage.models import Account


class LockoutPolicy:
    """Failed-login counter with a timed lock.

    ``Unlocked -> Locked(until) -> Unlocked``.  The lock is set once, when the
    counter reaches ``max_attempts``; failures while locked still count but
    never push ``lock_until`` further out.  The first failure after a lock
    has lapsed starts a fresh count.

    The mutators change the account in place and are meant to run inside the
    store's per-account critical section.
    """

    def __init__(self, max_attempts: int = 5, lock_minutes: int = 15) -> None:
        self.max_attempts = max_attempts
        self.lock_window = timedelta(minutes=lock_minutes)

    @staticmethod
    def is_locked(account: Account, now: datetime) -> bool:
        return account.lock_until is not None and account.lock_until > now

    def register_failure(self, account: Account, now: datetime) -> None:
        if account.lock_until is not None and account.lock_until <= now:
            account.failed_login_count = 0
            account.lock_until = None
        account.failed_login_count += 1
        if account.failed_login_count >= self.max_attempts and not self.is_locked(
            account, now
        ):
            account.lock_until = now + self.lock_window

    @staticmethod
    def register_success(account: Account, now: datetime) -> None:
        account.failed_login_count = 0
        account.lock_until = None
        account.last_login_at = now


__all__ = ["LockoutPolicy"]
