"""End-to-end service tests for the session lifecycle, without HTTP."""

from datetime import timedelta

import pytest

from taskgate.service.auth import AuthService
from taskgate.service.errors import (
    AccountLocked,
    InvalidCredentials,
    RefreshNotFound,
    StorageFailure,
    TokenRevoked,
)


@pytest.fixture
def auth(credentials, codec, refresh_manager, registry):
    return AuthService(credentials, codec, refresh_manager, registry)


class TestLogin:
    async def test_register_then_login(self, auth, codec):
        account = await auth.register("alice", "correct-horse")
        pair = await auth.login("alice", "correct-horse", device="laptop")
        assert pair.account_id == account.id
        assert codec.verify_access_token(pair.access_token) == account.id
        assert pair.expires_in == 15 * 60
        assert pair.token_type == "bearer"

    async def test_unknown_handle(self, auth):
        with pytest.raises(InvalidCredentials) as exc_info:
            await auth.login("nobody", "whatever")
        assert exc_info.value.error_code == "INVALID_CREDENTIALS"

    async def test_wrong_password_counts_failure(self, auth, credentials):
        account = await auth.register("alice", "correct-horse")
        with pytest.raises(InvalidCredentials):
            await auth.login("alice", "wrong-horse")
        assert credentials.find_by_id(account.id).failed_login_count == 1

    async def test_lockout_sequence(self, auth, credentials, clock):
        """Five bad passwords lock; even the right password is refused until expiry."""
        account = await auth.register("alice", "correct-horse")
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                await auth.login("alice", "wrong-horse")
        stored = credentials.find_by_id(account.id)
        assert stored.lock_until == clock.now + credentials.lockout.lock_window

        with pytest.raises(AccountLocked):
            await auth.login("alice", "correct-horse")
        with pytest.raises(AccountLocked):
            await auth.login("alice", "wrong-horse")
        assert credentials.find_by_id(account.id).lock_until == stored.lock_until

        clock.advance(minutes=15, seconds=1)
        pair = await auth.login("alice", "correct-horse")
        assert pair.account_id == account.id
        stored = credentials.find_by_id(account.id)
        assert stored.failed_login_count == 0
        assert stored.lock_until is None

    async def _lock_until_nearly_expired(self, auth, credentials, clock, monkeypatch):
        account = await auth.register("alice", "correct-horse")
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                await auth.login("alice", "wrong-horse")
        lock_until = credentials.find_by_id(account.id).lock_until
        clock.now = lock_until - timedelta(milliseconds=50)

        check_password = credentials.verify_password

        def _slow_verify(acc, raw_password):
            result = check_password(acc, raw_password)
            clock.advance(milliseconds=100)
            return result

        monkeypatch.setattr(credentials, "verify_password", _slow_verify)
        return account

    async def test_lock_lapsing_during_wrong_password_check(
        self, auth, credentials, clock, monkeypatch
    ):
        """A lock that expires mid-check turns a bad password into a fresh failure."""
        account = await self._lock_until_nearly_expired(auth, credentials, clock, monkeypatch)
        with pytest.raises(InvalidCredentials):
            await auth.login("alice", "wrong-horse")
        stored = credentials.find_by_id(account.id)
        assert stored.failed_login_count == 1
        assert stored.lock_until is None

    async def test_lock_lapsing_during_correct_password_check(
        self, auth, credentials, clock, monkeypatch
    ):
        account = await self._lock_until_nearly_expired(auth, credentials, clock, monkeypatch)
        pair = await auth.login("alice", "correct-horse")
        assert pair.account_id == account.id
        assert credentials.find_by_id(account.id).failed_login_count == 0

    async def test_handle_lookup_is_case_insensitive(self, auth):
        account = await auth.register("Alice", "correct-horse")
        pair = await auth.login("alice", "correct-horse")
        assert pair.account_id == account.id


class TestRefresh:
    async def test_rotation(self, auth, codec):
        await auth.register("alice", "correct-horse")
        first = await auth.login("alice", "correct-horse")
        second = await auth.refresh(first.refresh_token)
        assert second.refresh_token != first.refresh_token
        assert codec.verify_access_token(second.access_token) == first.account_id
        with pytest.raises(RefreshNotFound):
            await auth.refresh(first.refresh_token)

    async def test_locked_account_cannot_refresh(self, auth, credentials):
        account = await auth.register("alice", "correct-horse")
        pair = await auth.login("alice", "correct-horse")
        for _ in range(5):
            credentials.record_failed_login(credentials.find_by_id(account.id))
        with pytest.raises(AccountLocked):
            await auth.refresh(pair.refresh_token)


class TestLogout:
    async def test_logout_revokes_access_token(self, auth):
        await auth.register("alice", "correct-horse")
        pair = await auth.login("alice", "correct-horse")
        await auth.logout(pair.access_token)
        with pytest.raises(TokenRevoked):
            await auth.gate.authenticate_token(pair.access_token)

    async def test_logout_with_refresh_token(self, auth):
        await auth.register("alice", "correct-horse")
        pair = await auth.login("alice", "correct-horse")
        await auth.logout(pair.access_token, pair.refresh_token)
        with pytest.raises(RefreshNotFound):
            await auth.refresh(pair.refresh_token)

    async def test_logout_all(self, auth, clock):
        await auth.register("alice", "correct-horse")
        pairs = []
        for _ in range(3):
            pairs.append(await auth.login("alice", "correct-horse"))
            clock.advance(seconds=1)

        revoked = await auth.logout_all(pairs[0].access_token)
        assert revoked == 3
        for pair in pairs:
            with pytest.raises(RefreshNotFound):
                await auth.refresh(pair.refresh_token)
            with pytest.raises(TokenRevoked):
                await auth.gate.authenticate_token(pair.access_token)

        fresh = await auth.login("alice", "correct-horse")
        context = await auth.gate.authenticate_token(fresh.access_token)
        assert context.account_id == fresh.account_id

    async def test_list_sessions(self, auth, clock):
        await auth.register("alice", "correct-horse")
        await auth.login("alice", "correct-horse", device="phone")
        clock.advance(seconds=1)
        pair = await auth.login("alice", "correct-horse", device="laptop")
        sessions = await auth.list_sessions(pair.access_token)
        assert [s.device for s in sessions] == ["laptop", "phone"]


class TestDeleteAccount:
    async def test_purgers_run_before_delete(self, auth, credentials):
        account = await auth.register("alice", "correct-horse")
        pair = await auth.login("alice", "correct-horse")
        calls = []

        def _purge_sync(account_id):
            calls.append(("sync", account_id, credentials.find_by_id(account_id) is not None))

        async def _purge_async(account_id):
            calls.append(("async", account_id, credentials.find_by_id(account_id) is not None))

        auth.register_dependent_purger("documents", _purge_sync)
        auth.register_dependent_purger("uploads", _purge_async)
        await auth.delete_account(pair.access_token)

        assert calls == [("sync", account.id, True), ("async", account.id, True)]
        assert credentials.find_by_id(account.id) is None
        with pytest.raises(RefreshNotFound):
            await auth.refresh(pair.refresh_token)
        with pytest.raises(TokenRevoked):
            await auth.gate.authenticate_token(pair.access_token)
        with pytest.raises(InvalidCredentials):
            await auth.login("alice", "correct-horse")

    async def test_purge_failure_keeps_account(self, auth, credentials):
        account = await auth.register("alice", "correct-horse")
        pair = await auth.login("alice", "correct-horse")
        attempts = []

        def _flaky(account_id):
            attempts.append(account_id)
            if len(attempts) == 1:
                raise OSError("disk unavailable")

        auth.register_dependent_purger("files", _flaky)
        with pytest.raises(StorageFailure) as exc_info:
            await auth.delete_account(pair.access_token)
        assert exc_info.value.detail == {"phase": "purge_dependents", "purger": "files"}
        assert exc_info.value.status_code == 500
        assert credentials.find_by_id(account.id) is not None
        with pytest.raises(RefreshNotFound):
            await auth.refresh(pair.refresh_token)

        await auth.delete_account(pair.access_token)
        assert credentials.find_by_id(account.id) is None
        assert len(attempts) == 2
