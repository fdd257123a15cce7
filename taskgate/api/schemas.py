from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from taskgate.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "ACCOUNT_LOCKED",
    "DUPLICATE_HANDLE",
    "INVALID_CREDENTIALS",
    "INVALID_TOKEN",
    "NOT_FOUND",
    "NO_TOKEN",
    "RATE_LIMITED",
    "REFRESH_EXPIRED",
    "REFRESH_MISMATCH",
    "REFRESH_NOT_FOUND",
    "RESOURCE_ACCESS_DENIED",
    "SERVER_ERROR",
    "TOKEN_EXPIRED",
    "TOKEN_REVOKED",
    "UNAUTHORIZED",
    "USER_NOT_FOUND",
    "VALIDATION_ERROR",
    "WEAK_PASSWORD",
})


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with a stable, machine-readable code."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class _StrictRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")


class RegisterRequest(_StrictRequest):
    handle: str = Field(..., max_length=64)
    password: str = Field(..., max_length=128)


class LoginRequest(_StrictRequest):
    handle: str = Field(..., max_length=64)
    password: str = Field(..., max_length=128)
    device: Optional[str] = Field(default=None, max_length=256)


class RefreshRequest(_StrictRequest):
    refresh_token: str = Field(..., min_length=1, max_length=2048)
    device: Optional[str] = Field(default=None, max_length=256)


class LogoutRequest(_StrictRequest):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class AccountResponse(BaseModel):
    account_id: str
    handle: str
    created_at: datetime


class TokenPairResponse(BaseModel):
    account_id: str
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class SessionResponse(BaseModel):
    id: str
    device: Optional[str] = None
    origin_address: Optional[str] = None
    created_at: datetime
    last_used_at: Optional[datetime] = None
    expires_at: datetime


class SessionListResponse(BaseModel):
    items: List[SessionResponse]


class LogoutAllResponse(BaseModel):
    refresh_tokens_revoked: int


class PrincipalResponse(BaseModel):
    account_id: str
    handle: str
    token_expires_at: datetime
