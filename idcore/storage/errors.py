from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A write the identity store refused to apply.

    ``detail`` names the offending field or record so the API can render it
    as a 409 ``conflict`` body without leaking other store state.
    """

    status_code: int = 409
    error_code: str = "conflict"

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class MissingIdentifier(ConstraintViolation):
    """A principal was created with neither an email nor a phone."""

    def __init__(self) -> None:
        super().__init__("user needs an email or a phone", {"field": "email"})


class DuplicateIdentifier(ConstraintViolation):
    """A value that must be unique (email, phone, token id) is already taken."""

    def __init__(self, field: str, *, label: Optional[str] = None):
        super().__init__(f"{label or field} already exists", {"field": field})
        self.field = field


class UnknownPrincipal(ConstraintViolation):
    """A credential, two-factor record or session points at a missing user."""

    def __init__(self, user_id: str, *, record: str):
        super().__init__(f"user not found for {record}", {"user_id": user_id})
        self.user_id = user_id
        self.record = record


class TwoFactorAlreadyEnabled(ConstraintViolation):
    """Enrollment was restarted for a user whose second factor is active."""

    def __init__(self, user_id: str):
        super().__init__("two-factor already enabled", {"user_id": user_id})
        self.user_id = user_id


__all__ = [
    "ConstraintViolation",
    "DuplicateIdentifier",
    "MissingIdentifier",
    "TwoFactorAlreadyEnabled",
    "UnknownPrincipal",
]
