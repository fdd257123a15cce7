"""Credential store tests: account creation, password checks and lockout."""

import threading

import pytest

from taskgate.service.errors import DuplicateHandle, InvalidHandle, WeakPassword
from taskgate.service.credentials import normalize_handle


class TestCreateAccount:
    """Validation and hashing when accounts are registered."""

    def test_password_is_hashed_with_argon2id(self, credentials):
        account = credentials.create_account("alice", "correct-horse")
        assert account.password_hash.startswith("$argon2id$")
        assert "correct-horse" not in account.password_hash
        assert account.password_algo == "argon2id"

    def test_same_password_gets_distinct_salts(self, credentials):
        first = credentials.create_account("alice", "correct-horse")
        second = credentials.create_account("bob", "correct-horse")
        assert first.password_hash != second.password_hash

    def test_weak_password(self, credentials):
        with pytest.raises(WeakPassword) as exc_info:
            credentials.create_account("alice", "12345")
        assert exc_info.value.error_code == "WEAK_PASSWORD"
        assert exc_info.value.status_code == 400

    def test_minimum_length_password_accepted(self, credentials):
        account = credentials.create_account("alice", "123456")
        assert account.handle == "alice"

    def test_duplicate_handle(self, credentials):
        credentials.create_account("alice", "password1")
        with pytest.raises(DuplicateHandle) as exc_info:
            credentials.create_account("alice", "password2")
        assert exc_info.value.status_code == 409

    def test_duplicate_handle_is_case_insensitive(self, credentials):
        credentials.create_account("Alice", "password1")
        with pytest.raises(DuplicateHandle):
            credentials.create_account("alice", "password2")

    def test_concurrent_duplicate_registration(self, credentials):
        outcomes = []
        barrier = threading.Barrier(4)

        def _register():
            barrier.wait()
            try:
                credentials.create_account("racer", "password1")
                outcomes.append("created")
            except DuplicateHandle:
                outcomes.append("duplicate")

        threads = [threading.Thread(target=_register) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert outcomes.count("created") == 1
        assert outcomes.count("duplicate") == 3

    @pytest.mark.parametrize("handle", ["ab", "a" * 31, "has space", "semi;colon", ""])
    def test_invalid_handles(self, credentials, handle):
        with pytest.raises(InvalidHandle):
            credentials.create_account(handle, "password1")

    def test_invisible_characters_are_stripped(self, credentials):
        account = credentials.create_account("al\u200bice", "password1")
        assert account.handle == "alice"
        assert normalize_handle("\ufeffalice ") == "alice"


class TestPasswordVerification:
    def test_correct_password(self, credentials):
        account = credentials.create_account("alice", "correct-horse")
        assert credentials.verify_password(account, "correct-horse") is True

    def test_wrong_password(self, credentials):
        account = credentials.create_account("alice", "correct-horse")
        assert credentials.verify_password(account, "wrong-horse") is False

    def test_unreadable_hash(self, credentials):
        account = credentials.create_account("alice", "correct-horse")
        account.password_hash = "not-a-hash"
        assert credentials.verify_password(account, "correct-horse") is False

    def test_unknown_algorithm(self, credentials):
        account = credentials.create_account("alice", "correct-horse")
        account.password_algo = "md5"
        assert credentials.verify_password(account, "correct-horse") is False

    def test_burn_password_check_never_raises(self, credentials):
        credentials.burn_password_check("anything")
        credentials.burn_password_check("anything")


class TestLoginBookkeeping:
    """Failure counters and locks as seen through the credential store."""

    def test_fifth_failure_locks(self, credentials):
        account = credentials.create_account("alice", "correct-horse")
        for _ in range(5):
            account = credentials.record_failed_login(account)
        assert account.failed_login_count == 5
        assert credentials.is_locked(account)

    def test_lock_expires(self, credentials, clock):
        account = credentials.create_account("alice", "correct-horse")
        for _ in range(5):
            account = credentials.record_failed_login(account)
        clock.advance(minutes=15, seconds=1)
        assert not credentials.is_locked(credentials.find_by_id(account.id))

    def test_success_clears_counter(self, credentials, clock):
        account = credentials.create_account("alice", "correct-horse")
        for _ in range(3):
            account = credentials.record_failed_login(account)
        account = credentials.record_successful_login(account)
        stored = credentials.find_by_id(account.id)
        assert stored.failed_login_count == 0
        assert stored.lock_until is None
        assert stored.last_login_at == clock.now

    def test_concurrent_failures_are_all_counted(self, credentials):
        account = credentials.create_account("alice", "correct-horse")
        threads = [
            threading.Thread(target=credentials.record_failed_login, args=(account,))
            for _ in range(12)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        stored = credentials.find_by_id(account.id)
        assert stored.failed_login_count == 12
        assert credentials.is_locked(stored)

    def test_bump_token_version(self, credentials):
        account = credentials.create_account("alice", "correct-horse")
        assert credentials.bump_token_version(account.id).token_version == 1
        assert credentials.find_by_id(account.id).token_version == 1

    def test_find_by_handle_normalizes(self, credentials):
        account = credentials.create_account("alice", "correct-horse")
        assert credentials.find_by_handle(" ALICE ").id == account.id
        assert credentials.find_by_handle("nobody") is None
