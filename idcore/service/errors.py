from __future__ import annotations

from enum import Enum
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception carries an HTTP ``status_code`` and a stable ``error_code``
    that the API layer renders into the error envelope.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ErrorKind(str, Enum):
    """Every way an authentication operation can be refused."""

    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_DISABLED = "account_disabled"
    RATE_LIMITED = "rate_limited"
    INVALID_TOKEN = "invalid_token"
    EXPIRED_TOKEN = "expired_token"
    INVALID_CODE = "invalid_code"
    OTP_EXPIRED = "otp_expired"
    INVALID_OTP = "invalid_otp"
    TOO_MANY_ATTEMPTS = "too_many_attempts"
    OTP_ERROR = "otp_error"
    TWO_FACTOR_ALREADY_ENABLED = "two_factor_already_enabled"
    TWO_FACTOR_NOT_INITIATED = "two_factor_not_initiated"
    TWO_FACTOR_NOT_ENABLED = "two_factor_not_enabled"
    PRINCIPAL_NOT_FOUND = "principal_not_found"


_KIND_STATUS = {
    ErrorKind.INVALID_CREDENTIALS: 401,
    ErrorKind.ACCOUNT_DISABLED: 403,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.INVALID_TOKEN: 401,
    ErrorKind.EXPIRED_TOKEN: 401,
    ErrorKind.INVALID_CODE: 400,
    ErrorKind.OTP_EXPIRED: 400,
    ErrorKind.INVALID_OTP: 400,
    ErrorKind.TOO_MANY_ATTEMPTS: 429,
    ErrorKind.OTP_ERROR: 502,
    ErrorKind.TWO_FACTOR_ALREADY_ENABLED: 409,
    ErrorKind.TWO_FACTOR_NOT_INITIATED: 400,
    ErrorKind.TWO_FACTOR_NOT_ENABLED: 400,
    ErrorKind.PRINCIPAL_NOT_FOUND: 404,
}

_KIND_MESSAGE = {
    ErrorKind.INVALID_CREDENTIALS: "invalid email or password",
    ErrorKind.ACCOUNT_DISABLED: "account is disabled",
    ErrorKind.RATE_LIMITED: "too many requests, try again later",
    ErrorKind.INVALID_TOKEN: "invalid token",
    ErrorKind.EXPIRED_TOKEN: "token has expired",
    ErrorKind.INVALID_CODE: "invalid verification code",
    ErrorKind.OTP_EXPIRED: "code has expired, request a new one",
    ErrorKind.INVALID_OTP: "invalid code",
    ErrorKind.TOO_MANY_ATTEMPTS: "too many attempts, request a new code",
    ErrorKind.OTP_ERROR: "failed to deliver code",
    ErrorKind.TWO_FACTOR_ALREADY_ENABLED: "two-factor authentication is already enabled",
    ErrorKind.TWO_FACTOR_NOT_INITIATED: "two-factor setup has not been started",
    ErrorKind.TWO_FACTOR_NOT_ENABLED: "two-factor authentication is not enabled",
    ErrorKind.PRINCIPAL_NOT_FOUND: "user not found",
}


class AuthError(ServiceError):
    """A refused authentication operation, tagged by :class:`ErrorKind`.

    ``retry_after`` (seconds) accompanies rate limits and
    ``remaining_attempts`` accompanies bounded-attempt failures; both are
    copied into ``detail`` so the API envelope exposes them.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: Optional[str] = None,
        *,
        retry_after: Optional[int] = None,
        remaining_attempts: Optional[int] = None,
    ) -> None:
        detail: dict = {}
        if retry_after is not None:
            detail["retry_after"] = retry_after
        if remaining_attempts is not None:
            detail["remaining_attempts"] = remaining_attempts
        super().__init__(
            message or _KIND_MESSAGE[kind],
            status_code=_KIND_STATUS[kind],
            error_code=kind.value,
            detail=detail,
        )
        self.kind = kind
        self.retry_after = retry_after
        self.remaining_attempts = remaining_attempts

    def __repr__(self) -> str:
        return f"AuthError({self.kind.value!r}, {self.message!r})"


__all__ = [
    "ServiceError",
    "ValidationError",
    "ServerError",
    "ErrorKind",
    "AuthError",
]
