from __future__ import annotations

import hashlib
import threading
from datetime import datetime, timedelta
from typing import Dict, Optional, Protocol

from redis.exceptions import RedisError

from taskgate.logging import get_logger
from taskgate.service.tokens import Clock, utc_clock
from taskgate.storage.errors import StorageUnavailable

logger = get_logger(__name__)


class RevocationCache(Protocol):
    async def revoke_access_token(self, token_key: str, ttl_seconds: int) -> None:
        ...

    async def is_access_token_revoked(self, token_key: str) -> bool:
        ...


class RevocationRegistry:
    """Set of access tokens rejected before their signed expiry.

    Entries are keyed by the SHA-256 of the token and live for the access
    token lifetime.  With a Redis cache the set is shared by every process and
    Redis expires the keys; without one it falls back to a process-local map
    swept lazily on lookup.
    """

    def __init__(
        self,
        cache: Optional[RevocationCache] = None,
        *,
        ttl_seconds: int = 15 * 60,
        clock: Optional[Clock] = None,
        sweep_interval_seconds: int = 60,
    ) -> None:
        self.cache = cache
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock or utc_clock
        self._entries: Dict[str, datetime] = {}
        self._lock = threading.Lock()
        self._sweep_interval = timedelta(seconds=sweep_interval_seconds)
        self._last_sweep = self._clock()

    def _now(self) -> datetime:
        return self._clock()

    @staticmethod
    def token_key(token: str) -> str:
        return hashlib.sha256(token.encode()).hexdigest()

    async def revoke(self, token: str) -> None:
        key = self.token_key(token)
        if self.cache is not None:
            try:
                await self.cache.revoke_access_token(key, int(self.ttl.total_seconds()))
            except (RedisError, OSError) as exc:
                logger.error("revocation_store_unavailable", op="revoke", error=str(exc))
                raise StorageUnavailable("redis", str(exc)) from exc
        else:
            with self._lock:
                self._entries[key] = self._now() + self.ttl
        logger.info("access_token_revoked", revocation_id=key[:12])

    async def is_revoked(self, token: str) -> bool:
        key = self.token_key(token)
        if self.cache is not None:
            try:
                return await self.cache.is_access_token_revoked(key)
            except (RedisError, OSError) as exc:
                logger.error("revocation_store_unavailable", op="lookup", error=str(exc))
                raise StorageUnavailable("redis", str(exc)) from exc
        now = self._now()
        with self._lock:
            if now - self._last_sweep >= self._sweep_interval:
                self._sweep_locked(now)
            expires_at = self._entries.get(key)
            if expires_at is None:
                return False
            if expires_at <= now:
                del self._entries[key]
                return False
            return True

    def _sweep_locked(self, now: datetime) -> int:
        expired = [key for key, expires_at in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        self._last_sweep = now
        return len(expired)

    def cleanup_expired(self) -> int:
        """Drop lapsed local entries; returns how many were removed."""
        with self._lock:
            return self._sweep_locked(self._now())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


__all__ = ["RevocationCache", "RevocationRegistry"]
