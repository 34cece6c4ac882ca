from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_PASSWORD_LENGTH = 128

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "policy_violation",
    "password_reuse",
    "invalid_credentials",
    "locked",
    "password_expired",
    "token_expired",
    "token_invalid",
    "otp_no_challenge",
    "otp_expired",
    "otp_mismatch",
})


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)} | {
        chr(c) for c in range(0x2066, 0x206A)
    }
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

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
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_PHONE_PATTERN = re.compile(r"^\+?[0-9][0-9 ()-]{5,19}$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
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


def _validate_phone(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    stripped = value.strip()
    if stripped and not _PHONE_PATTERN.match(stripped):
        raise ValueError("invalid phone number")
    return stripped


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_max_length=1024)


class SignupRequest(_CamelModel):
    email: str
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    full_name: str = Field(..., alias="fullName", min_length=1, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=32)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("phone")
    @classmethod
    def _validate_signup_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)


class LoginRequest(_CamelModel):
    email: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class MFAVerifyRequest(_CamelModel):
    email: str
    code: str = Field(..., min_length=1, max_length=10)

    @field_validator("email")
    @classmethod
    def _validate_mfa_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordChangeRequest(_CamelModel):
    """Request to change password (requires current password)."""

    current_password: str = Field(
        ..., alias="currentPassword", min_length=1, max_length=MAX_PASSWORD_LENGTH
    )
    new_password: str = Field(..., alias="newPassword", max_length=MAX_PASSWORD_LENGTH)


class ProfileUpdateRequest(_CamelModel):
    full_name: Optional[str] = Field(default=None, alias="fullName", max_length=100)
    phone: Optional[str] = Field(default=None, max_length=32)

    @field_validator("phone")
    @classmethod
    def _validate_profile_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)


class OtpChallengeResponse(_CamelModel):
    email: str
    requires_mfa: bool = Field(True, alias="requiresMfa")
    password_strength: Optional[str] = Field(default=None, alias="passwordStrength")


class UserResponse(_CamelModel):
    id: str
    email: str
    full_name: str = Field(..., alias="fullName")
    role: str
    phone: Optional[str] = None
    mfa_enabled: bool = Field(False, alias="mfaEnabled")
    password_expired: bool = Field(False, alias="passwordExpired")
    last_password_change: Optional[datetime] = Field(default=None, alias="lastPasswordChange")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")


class AuditEntryResponse(_CamelModel):
    id: str
    action: str
    outcome: str
    account_id: Optional[str] = Field(default=None, alias="accountId")
    ip: str
    user_agent: str = Field(..., alias="userAgent")
    metadata: dict
    created_at: datetime = Field(..., alias="createdAt")


class AuditListResponse(_CamelModel):
    entries: List[AuditEntryResponse]


class TokenRefreshRequest(_CamelModel):
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken", max_length=4096)
