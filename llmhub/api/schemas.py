from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "invalid_token",
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "rate_limited",
    "server_error",
    "delivery_failed",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code")
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
    """Response wrapper shared by every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = '\u200b\u200c\u200d\ufeff'
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize('NFKC', cleaned)


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


PASSWORD_PATTERN = re.compile(
    r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&#+])[A-Za-z\d@$!%*?&#+]+$"
)


def _validate_password_strength(value: str) -> str:
    """At least 8 characters mixing lower, upper, digit and one of @$!%*?&#+."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not PASSWORD_PATTERN.match(value):
        raise ValueError(
            "Password must contain at least one uppercase letter, one lowercase letter, "
            "one number, and one special character (@$!%*?&#+)"
        )
    return value


class _Request(BaseModel):
    # Accept both snake_case and the camelCase aliases
    model_config = ConfigDict(populate_by_name=True)


class RegisterRequest(_Request):
    name: str = Field(..., min_length=1, max_length=128)
    email: str
    password: str
    confirm_password: str = Field(..., alias="confirmPassword", max_length=128)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        normalized = _normalize_unicode(value).strip()
        if not normalized:
            raise ValueError("name must not be empty")
        return normalized

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(_Request):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class SendMailRequest(_Request):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_mail_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(_Request):
    password: str
    confirm_password: str = Field(..., alias="confirmPassword", max_length=128)

    @field_validator("password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class RefreshTokenRequest(_Request):
    refresh_token: str = Field(..., alias="refreshToken", max_length=4096)


class ChangePasswordRequest(_Request):
    current_password: str = Field(..., alias="currentPassword", min_length=1, max_length=128)
    new_password: str = Field(..., alias="newPassword")
    confirm_password: str = Field(..., alias="confirmPassword", max_length=128)

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class UpdateUserRequest(_Request):
    name: Optional[str] = Field(default=None, max_length=128)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        normalized = _normalize_unicode(value).strip()
        if not normalized:
            raise ValueError("name must not be empty")
        return normalized


class UserResponse(BaseModel):
    id: str
    name: str
    email: str
    email_verified: bool
    created_at: datetime
    updated_at: datetime


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class LoginResponse(TokenPairResponse):
    user_id: str


class MessageResponse(BaseModel):
    message: str
