from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from taskgate.logging import get_logger
from taskgate.service.credentials import CredentialStore
from taskgate.service.errors import (
    AccountLocked,
    AccountNotFound,
    NoToken,
    OwnershipDenied,
    TokenError,
    TokenRevoked,
)
from taskgate.service.revocation import RevocationRegistry
from taskgate.service.tokens import AccessClaims, TokenCodec

logger = get_logger(__name__)


@dataclass
class AuthContext:
    account_id: str
    handle: str
    token: str
    claims: AccessClaims


def extract_bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise NoToken("authorization header missing")
    scheme, _, token = authorization.strip().partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise NoToken("bearer token missing")
    return token


class AuthenticationGate:
    """Request-time check run before every protected handler.

    Order: bearer present, not revoked, signature/expiry valid, account
    exists, token version current, account not locked.
    """

    def __init__(
        self,
        codec: TokenCodec,
        registry: RevocationRegistry,
        credentials: CredentialStore,
    ) -> None:
        self.codec = codec
        self.registry = registry
        self.credentials = credentials

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        return await self.authenticate_token(extract_bearer_token(authorization))

    async def authenticate_token(self, token: str) -> AuthContext:
        if not token:
            raise NoToken("bearer token missing")
        if await self.registry.is_revoked(token):
            raise TokenRevoked("token has been revoked")
        try:
            claims = self.codec.decode_access_token(token)
        except TokenError as exc:
            logger.info("access_token_rejected", reason=type(exc).__name__)
            raise
        account = self.credentials.find_by_id(claims.account_id)
        if account is None:
            raise AccountNotFound("account no longer exists")
        if claims.token_version != account.token_version:
            raise TokenRevoked("token has been revoked")
        if self.credentials.is_locked(account):
            raise AccountLocked(
                "account is temporarily locked",
                detail={"lock_until": account.lock_until.isoformat()},
            )
        return AuthContext(
            account_id=account.id, handle=account.handle, token=token, claims=claims
        )


def require_owner(principal: AuthContext, owner_id: str) -> None:
    """Raise ``OwnershipDenied`` unless ``principal`` owns the resource."""
    if principal.account_id != owner_id:
        logger.warning(
            "resource_access_denied", account_id=principal.account_id, owner_id=owner_id
        )
        raise OwnershipDenied("resource belongs to another account")


__all__ = ["AuthContext", "AuthenticationGate", "extract_bearer_token", "require_owner"]
