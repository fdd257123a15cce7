from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from taskgate.api.schemas import (
    AccountResponse,
    Envelope,
    LoginRequest,
    LogoutAllResponse,
    LogoutRequest,
    PrincipalResponse,
    RefreshRequest,
    RegisterRequest,
    SessionListResponse,
    SessionResponse,
    TokenPairResponse,
)
from taskgate.service.auth import TokenPair
from taskgate.service.errors import RateLimited
from taskgate.service.gate import AuthContext
from taskgate.service.runtime import check_rate_limit, get_runtime

router = APIRouter(prefix="/v1")


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


def _client_address(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _device(request: Request, declared: Optional[str] = None) -> Optional[str]:
    device = declared or request.headers.get("user-agent")
    return device[:256] if device else None


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window: int, response: Response
) -> None:
    if limit <= 0:
        return
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime,
        key,
        limit,
        window,
        return_remaining=True,
    )
    RateLimitInfo(limit, remaining, reset_seconds).apply_headers(response)
    if not allowed:
        raise RateLimited(
            "too many requests, try again later",
            detail={"retry_after_seconds": reset_seconds},
        )


async def _enforce_auth_rate_limit(
    runtime, action: str, request: Request, response: Response
) -> None:
    """Limit unauthenticated auth calls per client address."""
    await _enforce_rate_limit(
        runtime,
        f"auth:{action}:{_client_address(request) or 'unknown'}",
        runtime.settings.auth_rate_limit,
        runtime.settings.auth_rate_window_seconds,
        response,
    )


def _token_pair(pair: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        account_id=pair.account_id,
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
    )


async def get_principal(
    request: Request, response: Response, authorization: Optional[str] = Header(None)
) -> AuthContext:
    """Authentication gate dependency for protected routes.

    The per-address API limit is charged before the token is checked, so
    requests with bad tokens count too.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"api:{_client_address(request) or 'unknown'}",
        runtime.settings.api_rate_limit,
        runtime.settings.api_rate_window_seconds,
        response,
    )
    principal = await runtime.gate.authenticate(authorization)
    request.state.principal = principal
    return principal


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account.

    Raises:
        400: WEAK_PASSWORD or VALIDATION_ERROR for a bad handle
        409: DUPLICATE_HANDLE
    """
    runtime = get_runtime()
    await _enforce_auth_rate_limit(runtime, "register", request, response)
    account = await runtime.auth.register(body.handle, body.password)
    return Envelope(
        status="ok",
        data=AccountResponse(
            account_id=account.id, handle=account.handle, created_at=account.created_at
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Exchange handle and password for an access/refresh token pair.

    Raises:
        401: INVALID_CREDENTIALS for an unknown handle or wrong password
        423: ACCOUNT_LOCKED after repeated failures
    """
    runtime = get_runtime()
    await _enforce_auth_rate_limit(runtime, "login", request, response)
    pair = await runtime.auth.login(
        body.handle,
        body.password,
        device=_device(request, body.device),
        origin_address=_client_address(request),
    )
    return Envelope(status="ok", data=_token_pair(pair))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest, request: Request, response: Response):
    """Rotate a refresh token; the presented token is retired."""
    runtime = get_runtime()
    await _enforce_auth_rate_limit(runtime, "refresh", request, response)
    pair = await runtime.auth.refresh(
        body.refresh_token,
        device=_device(request, body.device),
        origin_address=_client_address(request),
    )
    return Envelope(status="ok", data=_token_pair(pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    await runtime.auth.logout(principal, body.refresh_token if body else None)
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    revoked = await runtime.auth.logout_all(principal)
    return Envelope(status="ok", data=LogoutAllResponse(refresh_tokens_revoked=revoked))


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    sessions = await runtime.auth.list_sessions(principal)
    return Envelope(
        status="ok",
        data=SessionListResponse(
            items=[
                SessionResponse(
                    id=s.id,
                    device=s.device,
                    origin_address=s.origin_address,
                    created_at=s.created_at,
                    last_used_at=s.last_used_at,
                    expires_at=s.expires_at,
                )
                for s in sessions
            ]
        ),
    )


@router.delete("/auth/account", response_model=Envelope, tags=["auth"])
async def delete_account(principal: AuthContext = Depends(get_principal)):
    """Delete the caller's account after purging everything it owns."""
    runtime = get_runtime()
    await runtime.auth.delete_account(principal)
    return Envelope(status="ok", data={"message": "account deleted"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_principal)):
    return Envelope(
        status="ok",
        data=PrincipalResponse(
            account_id=principal.account_id,
            handle=principal.handle,
            token_expires_at=principal.claims.expires_at,
        ),
    )
