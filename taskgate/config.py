from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

MIN_JWT_SECRET_LENGTH = 16


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session and credential core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/taskgate", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Use the synchronous Redis client and tolerate a missing Redis.",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("taskgate", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(
        15,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Access token lifetime; also the lifetime of revocation entries",
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh token lifetime in minutes",
    )
    refresh_token_encryption_key: str | None = env_field(
        None,
        "REFRESH_TOKEN_ENCRYPTION_KEY",
        description="Key material for the encrypted refresh token copy; defaults to JWT_SECRET",
    )
    max_active_sessions: int = env_field(5, "MAX_ACTIVE_SESSIONS")
    max_failed_logins: int = env_field(5, "MAX_FAILED_LOGINS")
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES")
    min_password_length: int = env_field(6, "MIN_PASSWORD_LENGTH")
    auth_rate_limit: int = env_field(
        5,
        "AUTH_RATE_LIMIT",
        description="Register/login/refresh requests per client per window; 0 disables",
    )
    auth_rate_window_seconds: int = env_field(15 * 60, "AUTH_RATE_WINDOW_SECONDS")
    api_rate_limit: int = env_field(
        100,
        "API_RATE_LIMIT",
        description="Authenticated requests per client per window; 0 disables",
    )
    api_rate_window_seconds: int = env_field(15 * 60, "API_RATE_WINDOW_SECONDS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("jwt_secret")
    @classmethod
    def _require_jwt_secret(cls, value: str | None) -> str:
        if not value:
            raise ValueError("JWT_SECRET must be set")
        if len(value) < MIN_JWT_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        return value

    @field_validator("redis_url", "refresh_token_encryption_key")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None or not str(value).strip():
            return None
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "max_active_sessions",
        "max_failed_logins",
        "lockout_minutes",
        "min_password_length",
        "auth_rate_window_seconds",
        "api_rate_window_seconds",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("auth_rate_limit", "api_rate_limit")
    @classmethod
    def _require_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be zero or a positive integer")
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
