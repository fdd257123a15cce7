from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: str
    handle: str
    password_hash: str
    password_algo: str = "argon2id"
    failed_login_count: int = 0
    lock_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    token_version: int = 0
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, handle: str, password_hash: str, password_algo: str = "argon2id") -> "Account":
        return cls(
            id=str(uuid.uuid4()),
            handle=handle,
            password_hash=password_hash,
            password_algo=password_algo,
        )


@dataclass
class RefreshTokenRecord:
    """Persisted state of one issued refresh token.

    ``token_hash`` is the lookup key and ``encrypted_token`` is the Fernet
    ciphertext of the raw token, used to confirm a hash match.
    """

    id: str
    account_id: str
    token_hash: str
    encrypted_token: str
    expires_at: datetime
    created_at: datetime
    device: Optional[str] = None
    origin_address: Optional[str] = None
    last_used_at: Optional[datetime] = None
    active: bool = True

    @classmethod
    def new(
        cls,
        account_id: str,
        token_hash: str,
        encrypted_token: str,
        *,
        ttl_minutes: int,
        now: datetime,
        device: str | None = None,
        origin_address: str | None = None,
    ) -> "RefreshTokenRecord":
        return cls(
            id=str(uuid.uuid4()),
            account_id=account_id,
            token_hash=token_hash,
            encrypted_token=encrypted_token,
            expires_at=now + timedelta(minutes=ttl_minutes),
            created_at=now,
            device=device,
            origin_address=origin_address,
        )

    def is_usable(self, now: datetime) -> bool:
        return self.active and now <= self.expires_at


@dataclass
class SessionSummary:
    id: str
    device: Optional[str]
    origin_address: Optional[str]
    created_at: datetime
    last_used_at: Optional[datetime]
    expires_at: datetime

    @classmethod
    def from_record(cls, record: RefreshTokenRecord) -> "SessionSummary":
        return cls(
            id=record.id,
            device=record.device,
            origin_address=record.origin_address,
            created_at=record.created_at,
            last_used_at=record.last_used_at,
            expires_at=record.expires_at,
        )
