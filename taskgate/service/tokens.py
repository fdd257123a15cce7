from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from taskgate.logging import get_logger
from taskgate.service.errors import BadSignature, MalformedToken, TokenExpired

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utc_clock() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AccessClaims:
    account_id: str
    token_version: int
    issued_at: datetime
    expires_at: datetime
    jti: str


class TokenCodec:
    """Issues and verifies HS256-signed access tokens.

    Verification never touches storage.  Checks run in a fixed order so a
    tampered token is reported as ``BadSignature`` even when it is also stale:
    structure and header, then signature, then expiry, then the claims.
    """

    algorithm = "HS256"
    token_type = "access"

    def __init__(
        self,
        secret: str,
        *,
        issuer: str = "taskgate",
        ttl_minutes: int = 15,
        clock: Optional[Clock] = None,
    ) -> None:
        if not secret:
            raise ValueError("access token signing secret is not configured")
        self._secret = secret.encode()
        self.issuer = issuer
        self.ttl = timedelta(minutes=ttl_minutes)
        self._clock = clock or utc_clock

    def _now(self) -> datetime:
        return self._clock()

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def issue_access_token(self, account_id: str, *, token_version: int = 0) -> str:
        now = self._now()
        header = {"alg": self.algorithm, "typ": "JWT"}
        payload = {
            "iss": self.issuer,
            "sub": account_id,
            "token_type": self.token_type,
            "ver": token_version,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + self.ttl).timestamp()),
        }
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify_access_token(self, token: str) -> str:
        """Return the account id carried by ``token``."""
        return self.decode_access_token(token).account_id

    def decode_access_token(self, token: str) -> AccessClaims:
        if not isinstance(token, str) or not token.isascii():
            raise MalformedToken("token is not an ASCII string")
        parts = token.split(".")
        if len(parts) != 3 or not all(parts):
            raise MalformedToken("token is not a three-part JWS")
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            raise MalformedToken("token header is not valid JSON")
        if not isinstance(header, dict):
            raise MalformedToken("token header is not an object")
        if header.get("alg") != self.algorithm:
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise MalformedToken("unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise BadSignature("token signature mismatch")

        try:
            payload: Any = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError):
            raise MalformedToken("token payload is not valid JSON")
        if not isinstance(payload, dict):
            raise MalformedToken("token payload is not an object")

        try:
            exp_ts = int(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise MalformedToken("token has no expiry")
        if self._now().timestamp() >= exp_ts:
            raise TokenExpired("access token expired")

        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise MalformedToken("token has no subject")
        if payload.get("iss") != self.issuer or payload.get("token_type") != self.token_type:
            raise MalformedToken("token was not issued as an access token")
        try:
            version = int(payload.get("ver", 0))
            issued_at = datetime.fromtimestamp(int(payload.get("iat", 0)), timezone.utc)
        except (TypeError, ValueError, OverflowError):
            raise MalformedToken("token claims are malformed")
        return AccessClaims(
            account_id=subject,
            token_version=version,
            issued_at=issued_at,
            expires_at=datetime.fromtimestamp(exp_ts, timezone.utc),
            jti=str(payload.get("jti", "")),
        )


__all__ = ["AccessClaims", "Clock", "TokenCodec", "utc_clock"]
