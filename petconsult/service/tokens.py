from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from petconsult.config import Settings
from petconsult.logging import get_logger

logger = get_logger(__name__)

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_REFRESH = "refresh"
PRINCIPAL_USER = "user"
PRINCIPAL_ADMIN = "admin"
_PRINCIPAL_TYPES = frozenset({PRINCIPAL_USER, PRINCIPAL_ADMIN})


class TokenError(Exception):
    """A token failed verification.

    The reason is kept for logs only; callers must not echo it to clients.
    """

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


@dataclass(frozen=True)
class TokenClaims:
    subject_id: str
    mobile: Optional[str]
    role: str
    token_type: str
    principal_type: str
    issued_at: datetime
    expires_at: datetime
    jti: str


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    access_ttl_seconds: int


@dataclass(frozen=True)
class AccessToken:
    token: str
    expires_at: datetime
    ttl_seconds: int


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenIssuer:
    """Signs and verifies HS256 access and refresh tokens.

    Access and refresh tokens are signed with different secrets and carry a
    ``type`` claim, so a refresh token never passes as an access token and
    vice versa. The issuer holds no state beyond its configuration.
    """

    def __init__(
        self, settings: Settings, *, clock: Optional[Callable[[], datetime]] = None
    ) -> None:
        self.settings = settings
        self._clock = clock or _utcnow
        self._secrets = {
            TOKEN_TYPE_ACCESS: settings.jwt_secret.encode(),
            TOKEN_TYPE_REFRESH: settings.jwt_refresh_secret.encode(),
        }
        self._leeway = timedelta(seconds=settings.jwt_clock_skew_seconds)

    def now(self) -> datetime:
        return self._clock()

    def issue_token_pair(
        self,
        subject_id: str,
        mobile: Optional[str],
        role: str,
        *,
        principal_type: str = PRINCIPAL_USER,
    ) -> TokenPair:
        now = self.now()
        access_ttl = self.settings.access_token_ttl
        access_exp = now + access_ttl
        refresh_exp = now + self.settings.refresh_token_ttl
        access = self._sign(
            TOKEN_TYPE_ACCESS, subject_id, mobile, role, principal_type, now, access_exp
        )
        refresh = self._sign(
            TOKEN_TYPE_REFRESH, subject_id, mobile, role, principal_type, now, refresh_exp
        )
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
            access_ttl_seconds=int(access_ttl.total_seconds()),
        )

    def issue_access_token(
        self,
        subject_id: str,
        mobile: Optional[str],
        role: str,
        *,
        principal_type: str = PRINCIPAL_USER,
    ) -> AccessToken:
        """Issue an access token with no refresh companion (admin sessions)."""
        now = self.now()
        ttl = self.settings.access_token_ttl
        token = self._sign(
            TOKEN_TYPE_ACCESS, subject_id, mobile, role, principal_type, now, now + ttl
        )
        return AccessToken(
            token=token, expires_at=now + ttl, ttl_seconds=int(ttl.total_seconds())
        )

    def verify(self, token: str, expected_type: str) -> TokenClaims:
        if expected_type not in self._secrets:
            raise ValueError(f"unknown token type: {expected_type}")
        payload = self._decode(token, self._secrets[expected_type])
        if payload.get("type") != expected_type:
            raise TokenError("token type mismatch")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenError("issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise TokenError("audience mismatch")
        subject = payload.get("sub")
        if not subject or not isinstance(subject, str):
            raise TokenError("missing subject")
        principal_type = payload.get("principal_type", PRINCIPAL_USER)
        if principal_type not in _PRINCIPAL_TYPES:
            raise TokenError("unknown principal type")
        try:
            exp = datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc)
            iat = datetime.fromtimestamp(float(payload.get("iat", 0)), tz=timezone.utc)
        except (KeyError, TypeError, ValueError, OverflowError):
            raise TokenError("invalid timestamps")
        if exp <= self.now() - self._leeway:
            raise TokenError("token expired")
        return TokenClaims(
            subject_id=subject,
            mobile=payload.get("mobile"),
            role=str(payload.get("role", "")),
            token_type=expected_type,
            principal_type=principal_type,
            issued_at=iat,
            expires_at=exp,
            jti=str(payload.get("jti", "")),
        )

    def _sign(
        self,
        token_type: str,
        subject_id: str,
        mobile: Optional[str],
        role: str,
        principal_type: str,
        issued_at: datetime,
        expires_at: datetime,
    ) -> str:
        if principal_type not in _PRINCIPAL_TYPES:
            raise ValueError(f"unknown principal type: {principal_type}")
        payload: dict[str, Any] = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": subject_id,
            "mobile": mobile,
            "role": role,
            "type": token_type,
            "principal_type": principal_type,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            # makes two tokens minted in the same second distinct
            "jti": str(uuid.uuid4()),
        }
        return self._encode_jwt(payload, self._secrets[token_type])

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _encode_jwt(self, payload: dict[str, Any], secret: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        return f"{signing_input}.{self._encode_segment(signature)}"

    def _decode(self, token: str, secret: bytes) -> dict[str, Any]:
        if not token or not isinstance(token, str):
            raise TokenError("empty token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenError("malformed token")

        # Reject anything but HS256 so "none" or RS/HS confusion cannot apply.
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            raise TokenError("malformed header")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenError("unsupported algorithm")

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._encode_segment(
            hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        )
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenError("bad signature")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenError("malformed payload")
        if not isinstance(payload, dict):
            raise TokenError("malformed payload")
        return payload
