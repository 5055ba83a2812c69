from __future__ import annotations

import re
import unicodedata
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from kidsmin.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "invalid_token",
    "invalid_code",
    "policy_violation",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable ``code`` value."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Response envelope shared by every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width characters that could spoof an address."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    normalized = _normalize_unicode(value.strip().lower())
    if not normalized:
        # Presence is checked by the service so the message names the field
        return normalized
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class _CamelRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class LoginRequest(BaseModel):
    # Not stripped: the password must match what set-password stored
    email: Optional[str] = Field(default=None, max_length=320)
    password: Optional[str] = Field(default=None, max_length=1024)


class TwoFactorVerifyRequest(_CamelRequest):
    email: Optional[str] = Field(default=None, max_length=320)
    code: Optional[str] = Field(default=None, max_length=32)


class PasswordResetRequest(_CamelRequest):
    email: Optional[str] = Field(default=None, max_length=320)


class SetPasswordRequest(BaseModel):
    # Passwords are taken verbatim; surrounding whitespace is part of the secret
    token: Optional[str] = Field(default=None, max_length=4096)
    password: Optional[str] = Field(default=None, max_length=1024)


class InviteRequest(_CamelRequest):
    individual_id: Optional[str] = Field(default=None, alias="individualId", max_length=64)
    email: Optional[str] = Field(default=None, max_length=320)

    @field_validator("email")
    @classmethod
    def _validate_invite_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value)


class CreateAdminRequest(_CamelRequest):
    first_name: Optional[str] = Field(default=None, alias="firstName", max_length=100)
    last_name: Optional[str] = Field(default=None, alias="lastName", max_length=100)
    email: Optional[str] = Field(default=None, max_length=320)

    @field_validator("email")
    @classmethod
    def _validate_admin_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value)


class CreateIndividualRequest(_CamelRequest):
    first_name: Optional[str] = Field(default=None, alias="firstName", max_length=100)
    last_name: Optional[str] = Field(default=None, alias="lastName", max_length=100)
    grade: Optional[str] = Field(default=None, max_length=16)
    special: bool = False

    @field_validator("grade", mode="before")
    @classmethod
    def _coerce_grade(cls, value: Any) -> Any:
        # Grades arrive as numbers from some clients ("12" and 12 are the same grade)
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class RoleResponse(BaseModel):
    targetType: str
    targetId: str
    targetName: Optional[str] = None
    targetLevel: Optional[str] = None
    role: str
    active: str
    createdAt: str
    updatedAt: str


class SessionResponse(BaseModel):
    token: str
    roles: List[RoleResponse]


class TwoFactorRequiredResponse(BaseModel):
    status: Literal["2FA_REQUIRED"] = "2FA_REQUIRED"
    method: str
    ttlMinutes: int
    emailMasked: str


class OkResponse(BaseModel):
    ok: bool = True


class AdminExistsResponse(BaseModel):
    exists: bool


class IdentityResponse(BaseModel):
    individualId: str
    roles: List[RoleResponse]


class CreatedIndividualResponse(BaseModel):
    id: str
