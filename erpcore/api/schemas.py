from __future__ import annotations

import re
import unicodedata
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Longest string any auth body field may carry
MAX_FIELD_LENGTH = 256

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "rate_limited",
    "request_timeout",
    "server_error",
})


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""
    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = ''.join(c for c in value if c not in zero_width)

    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize('NFKC', cleaned)


class ErrorBody(BaseModel):
    code: str
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
    """Every response body: ``{success, data?, message?, error?}``."""

    success: bool
    data: Optional[Any] = None
    message: Optional[str] = None
    error: Optional[ErrorBody] = None


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


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


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RegisterRequest(_Body):
    email: str = Field(..., max_length=254)
    # Strength rules are enforced by the service so every violation is reported
    password: str = Field(..., max_length=MAX_FIELD_LENGTH)
    first_name: str = Field(..., alias="firstName", min_length=1, max_length=100)
    last_name: str = Field(..., alias="lastName", min_length=1, max_length=100)
    role: Optional[str] = Field(default=None, max_length=32)
    department: Optional[str] = Field(default=None, max_length=32)
    company_id: Optional[str] = Field(default=None, alias="companyId", max_length=64)
    position: Optional[str] = Field(default=None, max_length=100)
    employee_id: Optional[str] = Field(default=None, alias="employeeId", max_length=64)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _strip_names(cls, value: str) -> str:
        value = _normalize_unicode(value).strip()
        if not value:
            raise ValueError("must not be blank")
        return value


class LoginRequest(_Body):
    # Not format-checked: a malformed address must fail like any wrong credential
    email: str = Field(..., max_length=MAX_FIELD_LENGTH)
    password: str = Field(..., max_length=MAX_FIELD_LENGTH)
    remember_me: bool = Field(default=False, alias="rememberMe")

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return _normalize_unicode(value.strip().lower())


class LogoutRequest(_Body):
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken", max_length=MAX_FIELD_LENGTH)
    session_id: Optional[str] = Field(default=None, alias="sessionId", max_length=MAX_FIELD_LENGTH)


class TokenRefreshRequest(_Body):
    refresh_token: str = Field(..., alias="refreshToken", min_length=1, max_length=MAX_FIELD_LENGTH)


class EmailRequest(_Body):
    """Body of forgot-password and resend-verification."""

    email: str = Field(..., max_length=254)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(_Body):
    token: str = Field(..., min_length=1, max_length=MAX_FIELD_LENGTH)
    password: str = Field(..., max_length=MAX_FIELD_LENGTH)


class PasswordChangeRequest(_Body):
    current_password: str = Field(..., alias="currentPassword", min_length=1, max_length=MAX_FIELD_LENGTH)
    new_password: str = Field(..., alias="newPassword", max_length=MAX_FIELD_LENGTH)


class EmailVerificationRequest(_Body):
    token: str = Field(..., min_length=1, max_length=MAX_FIELD_LENGTH)


class UserStatusRequest(_Body):
    is_active: bool = Field(..., alias="isActive")


class ProfileUpdateRequest(_Body):
    first_name: Optional[str] = Field(default=None, alias="firstName", max_length=100)
    last_name: Optional[str] = Field(default=None, alias="lastName", max_length=100)

    @field_validator("first_name", "last_name")
    @classmethod
    def _normalize_names(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _normalize_unicode(value).strip()
