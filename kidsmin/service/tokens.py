from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
import time
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Optional
from urllib.parse import quote

from kidsmin.config import Settings
from kidsmin.logging import get_logger

logger = get_logger(__name__)

SESSION_TOKEN_TYPE = "session"
SET_PASSWORD_TOKEN_TYPE = "set-password"

# >= 12 chars with at least one lowercase, uppercase, digit and symbol
PASSWORD_POLICY = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[^A-Za-z0-9]).{12,}$")
PASSWORD_POLICY_MESSAGE = (
    "Password must be at least 12 characters and include upper, lower, digit, and symbol."
)


def validate_password_policy(password: Optional[str]) -> bool:
    """Return True when ``password`` satisfies the portal password policy."""
    if not password:
        return False
    return PASSWORD_POLICY.match(password) is not None


class TokenError(str, Enum):
    MALFORMED = "malformed"
    BAD_SIGNATURE = "bad_signature"
    EXPIRED = "expired"
    WRONG_TYPE = "wrong_type"


@dataclass
class TokenCheck:
    """Outcome of verifying a token.

    ``ok`` is True only when signature, claims, expiry and (if requested)
    the type discriminator all check out. Otherwise ``error`` says why.
    """

    ok: bool
    payload: dict[str, Any] = field(default_factory=dict)
    error: Optional[TokenError] = None

    @property
    def subject(self) -> Optional[str]:
        return self.payload.get("sub")

    @property
    def credentials_id(self) -> Optional[str]:
        return self.payload.get("cid")

    @classmethod
    def failed(cls, error: TokenError) -> "TokenCheck":
        return cls(ok=False, error=error)


class TokenService:
    """Stateless HS256 token issuance and verification.

    Two token kinds share one signing key and one verification routine; the
    ``typ`` claim tells them apart. There is no revocation list, so a leaked
    token stays valid until it expires or the secret is rotated.
    """

    def __init__(self, settings: Settings, *, clock: Callable[[], float] = time.time) -> None:
        self.settings = settings
        self._clock = clock
        self._clock_skew_leeway = timedelta(seconds=120)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _claims(self, token_type: str, ttl_minutes: int, **extra: Any) -> dict[str, Any]:
        now = int(self._clock())
        return {
            "typ": token_type,
            "iat": now,
            "exp": now + ttl_minutes * 60,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            **extra,
        }

    def issue_session_token(self, subject_id: str) -> str:
        return self._encode_jwt(
            self._claims(
                SESSION_TOKEN_TYPE,
                self.settings.session_token_ttl_minutes,
                sub=subject_id,
            )
        )

    def issue_set_password_token(self, credentials_id: str) -> str:
        return self._encode_jwt(
            self._claims(
                SET_PASSWORD_TOKEN_TYPE,
                self.settings.set_password_token_ttl_minutes,
                cid=credentials_id,
            )
        )

    def verify(self, token: Optional[str], *, expected_type: Optional[str] = None) -> TokenCheck:
        """Check signature, issuer/audience and expiry, then the type discriminator.

        The type check is a separate, final step so callers always know
        whether a well-signed token was simply presented on the wrong path.
        """
        if not token or not isinstance(token, str):
            return TokenCheck.failed(TokenError.MALFORMED)
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return TokenCheck.failed(TokenError.MALFORMED)

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return TokenCheck.failed(TokenError.MALFORMED)
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return TokenCheck.failed(TokenError.MALFORMED)

        if not sig_b64.isascii():
            return TokenCheck.failed(TokenError.MALFORMED)
        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return TokenCheck.failed(TokenError.BAD_SIGNATURE)

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return TokenCheck.failed(TokenError.MALFORMED)
        if not isinstance(payload, dict):
            return TokenCheck.failed(TokenError.MALFORMED)
        if payload.get("iss") != self.settings.jwt_issuer:
            return TokenCheck.failed(TokenError.MALFORMED)
        if payload.get("aud") != self.settings.jwt_audience:
            return TokenCheck.failed(TokenError.MALFORMED)

        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return TokenCheck.failed(TokenError.MALFORMED)
        if exp_ts <= self._clock() - self._clock_skew_leeway.total_seconds():
            return TokenCheck.failed(TokenError.EXPIRED)

        if expected_type is not None and payload.get("typ") != expected_type:
            logger.warning(
                "jwt_type_mismatch", expected=expected_type, actual=payload.get("typ")
            )
            return TokenCheck(ok=False, payload=payload, error=TokenError.WRONG_TYPE)
        return TokenCheck(ok=True, payload=payload)

    def verify_session_token(self, token: Optional[str]) -> TokenCheck:
        check = self.verify(token, expected_type=SESSION_TOKEN_TYPE)
        if check.ok and not check.subject:
            return TokenCheck(ok=False, payload=check.payload, error=TokenError.MALFORMED)
        return check

    def verify_set_password_token(self, token: Optional[str]) -> TokenCheck:
        check = self.verify(token, expected_type=SET_PASSWORD_TOKEN_TYPE)
        if check.ok and not check.credentials_id:
            return TokenCheck(ok=False, payload=check.payload, error=TokenError.MALFORMED)
        return check

    def build_set_password_url(self, token: str) -> str:
        return f"{self.settings.frontend_url}/set-password?token={quote(token, safe='')}"
