from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional

from opsauth.logging import get_logger
from opsauth.storage.models import User, utcnow

logger = get_logger(__name__)

CLOCK_SKEW_LEEWAY = timedelta(minutes=5)


class TokenStatus(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    EXPIRED = "expired"


@dataclass(frozen=True)
class TokenCheck:
    status: TokenStatus
    payload: dict = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == TokenStatus.VALID


@dataclass(frozen=True)
class IssuedTokens:
    access_token: str
    refresh_token: str
    refresh_token_hash: str
    token_id: str
    expires_at: datetime


def hash_refresh_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class TokenIssuer:
    """HS256 access tokens plus opaque single-use refresh tokens."""

    def __init__(
        self,
        signing_key: str,
        issuer: str,
        audience: str,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._key = signing_key.encode()
        self.issuer = issuer
        self.audience = audience
        self._clock = clock

    def issue(
        self,
        user: User,
        *,
        session_id: str,
        expires_at: datetime,
    ) -> IssuedTokens:
        now = self._clock()
        token_id = str(uuid.uuid4())
        payload = {
            "sub": user.id,
            "name": user.username,
            "full_name": user.full_name,
            "jti": token_id,
            "sid": session_id,
            "roles": list(user.roles),
            "must_change_password": user.must_change_password,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        refresh_token = secrets.token_urlsafe(48)
        return IssuedTokens(
            access_token=self._encode_jwt(payload),
            refresh_token=refresh_token,
            refresh_token_hash=hash_refresh_token(refresh_token),
            token_id=token_id,
            expires_at=expires_at,
        )

    def validate_signature(self, token: Optional[str], *, verify_exp: bool = True) -> TokenCheck:
        payload = self._decode_jwt(token) if token else None
        if payload is None:
            return TokenCheck(TokenStatus.INVALID)
        if not verify_exp:
            return TokenCheck(TokenStatus.VALID, payload)
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return TokenCheck(TokenStatus.INVALID)
        if exp_ts <= self._clock().timestamp() - CLOCK_SKEW_LEEWAY.total_seconds():
            return TokenCheck(TokenStatus.EXPIRED, payload)
        return TokenCheck(TokenStatus.VALID, payload)

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).rstrip(b"=").decode()

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * (-len(segment) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to avoid algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        if not payload.get("sub") or not payload.get("jti") or not payload.get("sid"):
            return None
        return payload
