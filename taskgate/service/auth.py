from __future__ import annotations

import inspect
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Tuple, Union

from taskgate.logging import get_logger
from taskgate.service.credentials import CredentialStore
from taskgate.service.errors import (
    AccountLocked,
    AccountNotFound,
    InvalidCredentials,
    StorageFailure,
)
from taskgate.service.gate import AuthContext, AuthenticationGate
from taskgate.service.refresh import RefreshTokenManager
from taskgate.service.revocation import RevocationRegistry
from taskgate.service.tokens import TokenCodec
from taskgate.storage.models import Account, SessionSummary

logger = get_logger(__name__)

DependentPurger = Callable[[str], Union[None, Awaitable[None]]]
Principal = Union[AuthContext, str]


def _lock_detail(account: Account) -> dict:
    if account.lock_until is None:
        return {}
    return {"lock_until": account.lock_until.isoformat()}


@dataclass
class TokenPair:
    account_id: str
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"


class AuthService:
    """Entry points the application calls for the whole session lifecycle.

    Methods that act for a signed-in caller accept either the raw access
    token or an ``AuthContext`` the gate has already produced.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        codec: TokenCodec,
        refresh_tokens: RefreshTokenManager,
        registry: RevocationRegistry,
        gate: Optional[AuthenticationGate] = None,
    ) -> None:
        self.credentials = credentials
        self.codec = codec
        self.refresh_tokens = refresh_tokens
        self.registry = registry
        self.gate = gate or AuthenticationGate(codec, registry, credentials)
        self._dependent_purgers: List[Tuple[str, DependentPurger]] = []
        self.logger = logger

    def register_dependent_purger(self, name: str, purger: DependentPurger) -> None:
        """Register a callable that deletes data owned by an account.

        Purgers run, in registration order, before the account itself is
        removed by ``delete_account``.
        """
        self._dependent_purgers.append((name, purger))

    async def _principal(self, principal: Principal) -> AuthContext:
        if isinstance(principal, AuthContext):
            return principal
        return await self.gate.authenticate_token(principal)

    def _issue_pair(
        self, account: Account, device: Optional[str], origin_address: Optional[str]
    ) -> TokenPair:
        access_token = self.codec.issue_access_token(
            account.id, token_version=account.token_version
        )
        refresh_token = self.refresh_tokens.issue(account.id, device, origin_address)
        return TokenPair(
            account_id=account.id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=int(self.codec.ttl.total_seconds()),
        )

    async def register(self, handle: str, password: str) -> Account:
        return self.credentials.create_account(handle, password)

    async def login(
        self,
        handle: str,
        password: str,
        device: Optional[str] = None,
        origin_address: Optional[str] = None,
    ) -> TokenPair:
        account = self.credentials.find_by_handle(handle)
        if account is None:
            self.credentials.burn_password_check(password)
            self.logger.info("login_failed", reason="unknown_handle", ip=origin_address)
            raise InvalidCredentials("invalid handle or password")

        was_locked = self.credentials.is_locked(account)
        password_ok = self.credentials.verify_password(account, password)
        if not password_ok:
            account = self.credentials.record_failed_login(account)

        # The lock may lapse while the hash is being checked.
        if was_locked and self.credentials.is_locked(account):
            self.logger.warning(
                "login_rejected_locked",
                account_id=account.id,
                failed_logins=account.failed_login_count,
            )
            raise AccountLocked(
                "account is temporarily locked", detail=_lock_detail(account)
            )

        if not password_ok:
            self.logger.info(
                "login_failed",
                reason="bad_password",
                account_id=account.id,
                failed_logins=account.failed_login_count,
                ip=origin_address,
            )
            raise InvalidCredentials("invalid handle or password")

        account = self.credentials.record_successful_login(account)
        pair = self._issue_pair(account, device, origin_address)
        self.logger.info("login_succeeded", account_id=account.id, ip=origin_address)
        return pair

    async def refresh(
        self,
        refresh_token: str,
        device: Optional[str] = None,
        origin_address: Optional[str] = None,
    ) -> TokenPair:
        account_id = self.refresh_tokens.validate_and_consume(refresh_token)
        account = self.credentials.find_by_id(account_id)
        if account is None:
            raise AccountNotFound("account no longer exists")
        if self.credentials.is_locked(account):
            raise AccountLocked(
                "account is temporarily locked", detail=_lock_detail(account)
            )
        _, new_refresh = self.refresh_tokens.rotate(refresh_token, device, origin_address)
        access_token = self.codec.issue_access_token(
            account.id, token_version=account.token_version
        )
        return TokenPair(
            account_id=account.id,
            access_token=access_token,
            refresh_token=new_refresh,
            expires_in=int(self.codec.ttl.total_seconds()),
        )

    async def logout(
        self, access_token: Principal, refresh_token: Optional[str] = None
    ) -> None:
        principal = await self._principal(access_token)
        await self.registry.revoke(principal.token)
        if refresh_token:
            self.refresh_tokens.revoke(refresh_token, account_id=principal.account_id)
        self.logger.info("logout", account_id=principal.account_id)

    async def logout_all(self, access_token: Principal) -> int:
        principal = await self._principal(access_token)
        revoked = self.refresh_tokens.revoke_all(principal.account_id)
        self.credentials.bump_token_version(principal.account_id)
        await self.registry.revoke(principal.token)
        self.logger.info(
            "logout_all", account_id=principal.account_id, refresh_tokens_revoked=revoked
        )
        return revoked

    async def list_sessions(self, access_token: Principal) -> List[SessionSummary]:
        principal = await self._principal(access_token)
        return self.refresh_tokens.list_active_sessions(principal.account_id)

    async def delete_account(self, access_token: Principal) -> None:
        """Two-phase removal: purge dependents, then delete the account.

        A failure in the first phase leaves the account in place (its refresh
        tokens already retired) and raises ``StorageFailure`` with
        ``phase="purge_dependents"`` so the caller can retry.
        """
        principal = await self._principal(access_token)
        account_id = principal.account_id

        self.refresh_tokens.revoke_all(account_id)
        for name, purger in self._dependent_purgers:
            try:
                result = purger(account_id)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                self.logger.exception(
                    "account_purge_failed", account_id=account_id, purger=name
                )
                raise StorageFailure(
                    "account data could not be removed",
                    detail={"phase": "purge_dependents", "purger": name},
                ) from exc

        if not self.credentials.delete_account(account_id):
            raise AccountNotFound("account no longer exists")
        await self.registry.revoke(principal.token)


__all__ = ["AuthService", "DependentPurger", "TokenPair"]
