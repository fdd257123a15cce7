from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from taskgate.config import get_settings, reset_settings_cache
from taskgate.logging import get_logger
from taskgate.service.auth import AuthService
from taskgate.service.credentials import CredentialStore
from taskgate.service.gate import AuthenticationGate
from taskgate.service.lockout import LockoutPolicy
from taskgate.service.refresh import RefreshTokenManager
from taskgate.service.revocation import RevocationRegistry
from taskgate.service.tokens import TokenCodec
from taskgate.storage.memory import MemoryStore
from taskgate.storage.postgres import PostgresStore
from taskgate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        settings = self.settings
        logger.info(
            "runtime_init_started",
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
                if settings.use_memory_store
                else PostgresStore(settings.database_url)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if settings.use_memory_store else "postgres",
                database_url=_mask_url_password(settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a per-test event loop
                if settings.test_mode:
                    cache = SyncRedisCache(settings.redis_url)
                else:
                    cache = RedisCache(settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not settings.test_mode and not settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for shared token revocation and rate limits; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; revoked tokens and "
                    "rate limits are tracked per process only."
                ),
                mode=fallback_mode,
            )

        self.codec = TokenCodec(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            ttl_minutes=settings.access_token_ttl_minutes,
        )
        self.credentials = CredentialStore(
            self.store,
            lockout=LockoutPolicy(settings.max_failed_logins, settings.lockout_minutes),
            min_password_length=settings.min_password_length,
        )
        self.refresh_tokens = RefreshTokenManager(
            self.store,
            encryption_key=settings.refresh_token_encryption_key or settings.jwt_secret,
            ttl_minutes=settings.refresh_token_ttl_minutes,
            max_records=settings.max_active_sessions,
        )
        self.revocations = RevocationRegistry(
            self.cache, ttl_seconds=settings.access_token_ttl_minutes * 60
        )
        self.gate = AuthenticationGate(self.codec, self.revocations, self.credentials)
        self.auth = AuthService(
            self.credentials,
            self.codec,
            self.refresh_tokens,
            self.revocations,
            self.gate,
        )
        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            access_token_ttl_minutes=settings.access_token_ttl_minutes,
            max_active_sessions=settings.max_active_sessions,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> None:
    """Drop the runtime singleton and cached settings for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache._sync_client.close()
        runtime = None
        reset_settings_cache()


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
) -> Union[bool, Tuple[bool, int, int]]:
    """Enforce rate limits even when Redis is unavailable.

    Redis-backed token bucket when a cache is configured, otherwise an
    in-process bucket with the same refill arithmetic.  ``limit <= 0``
    disables the check.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window", key=key, window_seconds=window_seconds
        )
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining
        )
    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= 1
        if allowed:
            tokens -= 1
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int((1 - tokens) / refill_rate) if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
