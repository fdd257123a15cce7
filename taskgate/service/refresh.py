from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from datetime import datetime
from typing import List, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken

from taskgate.logging import get_logger
from taskgate.service.credentials import AuthStore
from taskgate.service.errors import RefreshExpired, RefreshMismatch, RefreshNotFound
from taskgate.service.tokens import Clock, utc_clock
from taskgate.storage.models import RefreshTokenRecord, SessionSummary

logger = get_logger(__name__)

# 48 random bytes -> 384 bits, 64 url-safe characters
REFRESH_TOKEN_BYTES = 48
MAX_REFRESH_TOKEN_LENGTH = 2048


class RefreshTokenManager:
    """Opaque, rotating refresh tokens.

    Raw tokens are never stored.  Each record keeps the SHA-256 of the token
    for lookup and a Fernet ciphertext of it; a hash hit is only trusted once
    the decrypted copy matches the presented token byte for byte.  Fernet
    authenticates every ciphertext and draws a fresh IV per encryption.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        encryption_key: str,
        ttl_minutes: int = 7 * 24 * 60,
        max_records: int = 5,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.ttl_minutes = ttl_minutes
        self.max_records = max_records
        self._clock = clock or utc_clock
        self._cipher = self._build_cipher(encryption_key)

    def _now(self) -> datetime:
        return self._clock()

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        digest = hashlib.sha256(f"refresh-token:{key_material}".encode()).digest()
        return base64.urlsafe_b64encode(digest)

    def _build_cipher(self, key_material: str) -> Fernet:
        if not key_material:
            raise ValueError("refresh token encryption key is not configured")
        return Fernet(self._derive_cipher_key(key_material))

    @staticmethod
    def hash_token(raw_token: str) -> str:
        return hashlib.sha256(raw_token.encode()).hexdigest()

    def _encrypt(self, raw_token: str) -> str:
        return self._cipher.encrypt(raw_token.encode()).decode()

    def _decrypt(self, encrypted: str) -> Optional[str]:
        try:
            return self._cipher.decrypt(encrypted.encode()).decode()
        except (InvalidToken, UnicodeDecodeError):
            return None

    def issue(
        self,
        account_id: str,
        device: Optional[str] = None,
        origin_address: Optional[str] = None,
    ) -> str:
        raw_token = secrets.token_urlsafe(REFRESH_TOKEN_BYTES)
        record = RefreshTokenRecord.new(
            account_id,
            self.hash_token(raw_token),
            self._encrypt(raw_token),
            ttl_minutes=self.ttl_minutes,
            now=self._now(),
            device=device,
            origin_address=origin_address,
        )
        evicted = self.store.add_refresh_token(record, keep=self.max_records)
        if evicted:
            logger.info(
                "refresh_tokens_evicted", account_id=account_id, evicted=evicted
            )
        return raw_token

    def validate_and_consume(self, raw_token: str) -> str:
        """Return the owning account id; the record stays active."""
        if not raw_token or len(raw_token) > MAX_REFRESH_TOKEN_LENGTH:
            raise RefreshNotFound("refresh token not recognised")
        token_hash = self.hash_token(raw_token)
        record = self.store.find_refresh_token(token_hash, active_only=True)
        if record is None:
            retired = self.store.find_refresh_token(token_hash)
            if retired is not None:
                logger.warning(
                    "refresh_token_reuse_detected",
                    account_id=retired.account_id,
                    record_id=retired.id,
                )
            raise RefreshNotFound("refresh token not recognised")

        now = self._now()
        if now > record.expires_at:
            self.store.deactivate_refresh_token(token_hash)
            logger.info(
                "refresh_token_expired", account_id=record.account_id, record_id=record.id
            )
            raise RefreshExpired("refresh token expired")

        stored = self._decrypt(record.encrypted_token)
        if stored is None or not hmac.compare_digest(stored.encode(), raw_token.encode()):
            logger.error(
                "refresh_token_mismatch", account_id=record.account_id, record_id=record.id
            )
            raise RefreshMismatch("refresh token could not be confirmed")

        self.store.touch_refresh_token(token_hash, now)
        return record.account_id

    def rotate(
        self,
        old_raw_token: str,
        device: Optional[str] = None,
        origin_address: Optional[str] = None,
    ) -> Tuple[str, str]:
        account_id = self.validate_and_consume(old_raw_token)
        if self.store.deactivate_refresh_token(self.hash_token(old_raw_token)) is None:
            # Another request retired this token between validation and now.
            logger.warning("refresh_token_rotation_conflict", account_id=account_id)
            raise RefreshNotFound("refresh token not recognised")
        new_raw_token = self.issue(account_id, device, origin_address)
        logger.info("refresh_token_rotated", account_id=account_id)
        return account_id, new_raw_token

    def revoke(self, raw_token: str, *, account_id: Optional[str] = None) -> None:
        """Deactivate the matching record; unknown tokens are ignored.

        With ``account_id`` only a record owned by that account is touched.
        """
        if not raw_token or len(raw_token) > MAX_REFRESH_TOKEN_LENGTH:
            return
        token_hash = self.hash_token(raw_token)
        if account_id is not None:
            owned = self.store.find_refresh_token(token_hash, active_only=True)
            if owned is None or owned.account_id != account_id:
                return
        record = self.store.deactivate_refresh_token(token_hash)
        if record is not None:
            logger.info(
                "refresh_token_revoked", account_id=record.account_id, record_id=record.id
            )

    def revoke_all(self, account_id: str) -> int:
        count = self.store.deactivate_account_refresh_tokens(account_id)
        logger.info("refresh_tokens_revoked_all", account_id=account_id, count=count)
        return count

    def list_active_sessions(self, account_id: str) -> List[SessionSummary]:
        now = self._now()
        return [
            SessionSummary.from_record(record)
            for record in self.store.list_refresh_tokens(account_id)
            if record.is_usable(now)
        ]


__all__ = ["RefreshTokenManager", "REFRESH_TOKEN_BYTES"]
