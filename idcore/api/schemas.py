from __future__ import annotations

import re
import unicodedata
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from idcore.logging import get_correlation_id
from idcore.service.errors import ErrorKind
from idcore.storage.models import OtpChannel, OtpContext

_GENERIC_ERROR_CODES = {
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
}

_VALID_ERROR_CODES = frozenset(_GENERIC_ERROR_CODES | {kind.value for kind in ErrorKind})


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize ``value`` after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

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
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
# E.164: leading +, up to 15 digits, no leading zero in the country code
_E164_PHONE = re.compile(r"^\+[1-9][0-9]{7,14}$")


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


def _validate_phone(value: str) -> str:
    normalized = re.sub(r"[\s-]", "", value or "")
    if not _E164_PHONE.match(normalized):
        raise ValueError("phone must be in E.164 format, e.g. +201234567890")
    return normalized


def _validate_new_password(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)
    device_id: Optional[str] = Field(default=None, max_length=128)
    device_info: Optional[str] = Field(default=None, max_length=512)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TwoFactorLoginRequest(BaseModel):
    temp_token: str = Field(..., max_length=2048)
    code: Optional[str] = Field(default=None, max_length=10)
    recovery_code: Optional[str] = Field(default=None, max_length=32)
    device_id: Optional[str] = Field(default=None, max_length=128)
    device_info: Optional[str] = Field(default=None, max_length=512)

    @model_validator(mode="after")
    def _require_one_factor(self):
        if not self.code and not self.recovery_code:
            raise ValueError("either code or recovery_code is required")
        return self


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class OtpSendRequest(BaseModel):
    phone: str
    channel: OtpChannel = OtpChannel.SMS
    context: OtpContext
    reference_id: str = Field(..., min_length=1, max_length=128)

    @field_validator("phone")
    @classmethod
    def _validate_otp_phone(cls, value: str) -> str:
        return _validate_phone(value)


class OtpVerifyRequest(BaseModel):
    phone: str
    code: str = Field(..., min_length=4, max_length=10)
    context: OtpContext
    reference_id: str = Field(..., min_length=1, max_length=128)
    tracking_code: Optional[str] = Field(default=None, max_length=64)

    @field_validator("phone")
    @classmethod
    def _validate_otp_phone(cls, value: str) -> str:
        return _validate_phone(value)

    @field_validator("code")
    @classmethod
    def _digits_only(cls, value: str) -> str:
        value = value.strip()
        if not value.isdigit():
            raise ValueError("code must contain digits only")
        return value


class TwoFactorCodeRequest(BaseModel):
    code: str = Field(..., max_length=10, description="Current TOTP code to prove possession")


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""

    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_new_password(value)
