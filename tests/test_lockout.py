"""Lockout policy state machine tests."""

from datetime import timedelta

from taskgate.service.lockout import LockoutPolicy
from taskgate.storage.models import Account


def _account() -> Account:
    return Account.new("alice", "hash")


class TestLockoutPolicy:
    def test_locks_on_fifth_failure(self, clock):
        policy = LockoutPolicy(5, 15)
        account = _account()
        for _ in range(4):
            policy.register_failure(account, clock.now)
        assert account.failed_login_count == 4
        assert not policy.is_locked(account, clock.now)

        policy.register_failure(account, clock.now)
        assert account.lock_until == clock.now + timedelta(minutes=15)
        assert policy.is_locked(account, clock.now)

    def test_failures_while_locked_do_not_extend_lock(self, clock):
        policy = LockoutPolicy(5, 15)
        account = _account()
        for _ in range(5):
            policy.register_failure(account, clock.now)
        lock_until = account.lock_until

        clock.advance(minutes=5)
        policy.register_failure(account, clock.now)
        assert account.failed_login_count == 6
        assert account.lock_until == lock_until

    def test_lock_lapses(self, clock):
        policy = LockoutPolicy(5, 15)
        account = _account()
        for _ in range(5):
            policy.register_failure(account, clock.now)
        clock.advance(minutes=15)
        assert not policy.is_locked(account, clock.now)

    def test_failure_after_lapse_restarts_count(self, clock):
        policy = LockoutPolicy(5, 15)
        account = _account()
        for _ in range(5):
            policy.register_failure(account, clock.now)
        clock.advance(minutes=16)

        policy.register_failure(account, clock.now)
        assert account.failed_login_count == 1
        assert account.lock_until is None

    def test_success_resets_state(self, clock):
        policy = LockoutPolicy(5, 15)
        account = _account()
        for _ in range(3):
            policy.register_failure(account, clock.now)
        policy.register_success(account, clock.now)
        assert account.failed_login_count == 0
        assert account.lock_until is None
        assert account.last_login_at == clock.now

    def test_custom_threshold(self, clock):
        policy = LockoutPolicy(max_attempts=2, lock_minutes=1)
        account = _account()
        policy.register_failure(account, clock.now)
        policy.register_failure(account, clock.now)
        assert account.lock_until == clock.now + timedelta(minutes=1)
