from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Callable, List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from taskgate.logging import get_logger
from taskgate.service.errors import DuplicateHandle, InvalidHandle, WeakPassword
from taskgate.service.lockout import LockoutPolicy
from taskgate.service.tokens import Clock, utc_clock
from taskgate.storage.errors import ConstraintViolation
from taskgate.storage.models import Account, RefreshTokenRecord

logger = get_logger(__name__)

HANDLE_MIN_LENGTH = 3
HANDLE_MAX_LENGTH = 30
PASSWORD_ALGO = "argon2id"
_HANDLE_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
_INVISIBLE = {"\u200b", "\u200c", "\u200d", "\ufeff"}


class AuthStore(Protocol):
    def create_account(self, account: Account) -> Account:
        ...

    def get_account(self, account_id: str) -> Optional[Account]:
        ...

    def get_account_by_handle(self, handle: str) -> Optional[Account]:
        ...

    def update_account_atomic(
        self, account_id: str, mutate: Callable[[Account], None]
    ) -> Optional[Account]:
        ...

    def delete_account(self, account_id: str) -> bool:
        ...

    def add_refresh_token(self, record: RefreshTokenRecord, *, keep: int) -> int:
        ...

    def find_refresh_token(
        self, token_hash: str, *, active_only: bool = False
    ) -> Optional[RefreshTokenRecord]:
        ...

    def deactivate_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        ...

    def touch_refresh_token(self, token_hash: str, when: datetime) -> None:
        ...

    def deactivate_account_refresh_tokens(self, account_id: str) -> int:
        ...

    def list_refresh_tokens(self, account_id: str) -> List[RefreshTokenRecord]:
        ...


def normalize_handle(value: str) -> str:
    """Strip invisible characters and apply NFKC so look-alike handles collide."""
    cleaned = "".join(c for c in value if c not in _INVISIBLE)
    return unicodedata.normalize("NFKC", cleaned).strip()


class CredentialStore:
    """Owns account records: creation, password checks and lockout state."""

    def __init__(
        self,
        store: AuthStore,
        *,
        lockout: Optional[LockoutPolicy] = None,
        min_password_length: int = 6,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.lockout = lockout or LockoutPolicy()
        self.min_password_length = min_password_length
        self._clock = clock or utc_clock
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None

    def _now(self) -> datetime:
        return self._clock()

    def _validate_handle(self, handle: str) -> str:
        normalized = normalize_handle(handle or "")
        if not HANDLE_MIN_LENGTH <= len(normalized) <= HANDLE_MAX_LENGTH:
            raise InvalidHandle(
                f"handle must be {HANDLE_MIN_LENGTH}-{HANDLE_MAX_LENGTH} characters",
                detail={"field": "handle"},
            )
        if not _HANDLE_PATTERN.match(normalized):
            raise InvalidHandle(
                "handle may only contain letters, numbers, underscores, and hyphens",
                detail={"field": "handle"},
            )
        return normalized

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def create_account(self, handle: str, raw_password: str) -> Account:
        normalized = self._validate_handle(handle)
        if raw_password is None or len(raw_password) < self.min_password_length:
            raise WeakPassword(
                f"password must be at least {self.min_password_length} characters",
                detail={"field": "password"},
            )
        account = Account.new(normalized, self._hash_password(raw_password), PASSWORD_ALGO)
        try:
            created = self.store.create_account(account)
        except ConstraintViolation as exc:
            raise DuplicateHandle("handle already registered", detail=exc.detail)
        logger.info("account_created", account_id=created.id)
        return created

    def find_by_handle(self, handle: str) -> Optional[Account]:
        return self.store.get_account_by_handle(normalize_handle(handle or ""))

    def find_by_id(self, account_id: str) -> Optional[Account]:
        return self.store.get_account(account_id)

    def verify_password(self, account: Account, raw_password: str) -> bool:
        """Check ``raw_password`` against the stored argon2id hash."""
        if account.password_algo != PASSWORD_ALGO:
            logger.warning(
                "password_algo_mismatch", account_id=account.id, algo=account.password_algo
            )
            return False
        try:
            return self._pwd_hasher.verify(account.password_hash, raw_password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable", account_id=account.id)
            return False

    def burn_password_check(self, raw_password: str) -> None:
        """Spend one hash verification for a handle that does not exist."""
        if self._dummy_hash is None:
            self._dummy_hash = self._hash_password("taskgate-unknown-account")
        try:
            self._pwd_hasher.verify(self._dummy_hash, raw_password)
        except VerificationError:
            pass

    def record_failed_login(self, account: Account) -> Account:
        now = self._now()
        updated = self.store.update_account_atomic(
            account.id, lambda acc: self.lockout.register_failure(acc, now)
        )
        if updated is None:
            return account
        if updated.lock_until is not None and updated.lock_until != account.lock_until:
            logger.warning(
                "account_locked",
                account_id=account.id,
                failed_logins=updated.failed_login_count,
                lock_until=updated.lock_until.isoformat(),
            )
        return updated

    def record_successful_login(self, account: Account) -> Account:
        now = self._now()
        updated = self.store.update_account_atomic(
            account.id, lambda acc: self.lockout.register_success(acc, now)
        )
        return updated or account

    def is_locked(self, account: Account) -> bool:
        return self.lockout.is_locked(account, self._now())

    def bump_token_version(self, account_id: str) -> Optional[Account]:
        """Invalidate every access token issued to the account so far."""

        def _bump(acc: Account) -> None:
            acc.token_version += 1

        return self.store.update_account_atomic(account_id, _bump)

    def delete_account(self, account_id: str) -> bool:
        """Remove the account row; dependents must already be purged."""
        deleted = self.store.delete_account(account_id)
        if deleted:
            logger.info("account_deleted", account_id=account_id)
        return deleted


__all__ = [
    "AuthStore",
    "CredentialStore",
    "HANDLE_MAX_LENGTH",
    "HANDLE_MIN_LENGTH",
    "normalize_handle",
]
