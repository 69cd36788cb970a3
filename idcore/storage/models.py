from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    DONOR = "DONOR"
    REQUESTER = "REQUESTER"
    PARTNER_PHARMACY = "PARTNER_PHARMACY"
    PARTNER_NGO = "PARTNER_NGO"
    PARTNER_VOLUNTEER = "PARTNER_VOLUNTEER"
    ADMIN = "ADMIN"

    @property
    def requires_account(self) -> bool:
        """Donors and requesters authenticate by phone OTP only."""
        return self not in (UserRole.DONOR, UserRole.REQUESTER)

    @property
    def requires_two_factor(self) -> bool:
        return self is UserRole.ADMIN

    @property
    def is_partner(self) -> bool:
        return self.value.startswith("PARTNER_")


class OtpContext(str, Enum):
    """What a phone-verified caller is about to do."""

    DONATION = "DONATION"
    REQUEST = "REQUEST"


class OtpChannel(str, Enum):
    SMS = "SMS"
    WHATSAPP = "WHATSAPP"


class RevokeReason(str, Enum):
    ROTATION = "ROTATION"
    LOGOUT = "LOGOUT"
    LOGOUT_ALL = "LOGOUT_ALL"
    SUSPICIOUS = "SUSPICIOUS"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"


class AuthEventType(str, Enum):
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGOUT = "LOGOUT"
    LOGOUT_ALL = "LOGOUT_ALL"
    OTP_SENT = "OTP_SENT"
    OTP_VERIFIED = "OTP_VERIFIED"
    OTP_FAILED = "OTP_FAILED"
    OTP_EXPIRED = "OTP_EXPIRED"
    OTP_RATE_LIMITED = "OTP_RATE_LIMITED"
    TWO_FA_ENABLED = "TWO_FA_ENABLED"
    TWO_FA_DISABLED = "TWO_FA_DISABLED"
    BACKUP_CODE_USED = "BACKUP_CODE_USED"
    TWO_FACTOR_CHALLENGE = "TWO_FACTOR_CHALLENGE"
    TWO_FACTOR_SUCCESS = "TWO_FACTOR_SUCCESS"
    TWO_FACTOR_FAILED = "TWO_FACTOR_FAILED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    TOKEN_REVOKED = "TOKEN_REVOKED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    ACCOUNT_CREATED = "ACCOUNT_CREATED"


class TwoFactorState(str, Enum):
    NOT_SET_UP = "NOT_SET_UP"
    PENDING_CONFIRMATION = "PENDING_CONFIRMATION"
    ENABLED = "ENABLED"


@dataclass
class User:
    id: str
    email: Optional[str] = None
    phone: Optional[str] = None
    name: Optional[str] = None
    role: UserRole = UserRole.DONOR
    partner_id: Optional[str] = None
    is_active: bool = True
    is_verified: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    last_login_at: Optional[datetime] = None


@dataclass
class Credential:
    user_id: str
    password_hash: str
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    must_change: bool = False
    updated_at: datetime = field(default_factory=_utcnow)

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class TwoFactorRecord:
    user_id: str
    secret: Optional[str] = None
    enabled: bool = False
    enabled_at: Optional[datetime] = None
    # argon2 hashes, in issue order
    recovery_codes: List[str] = field(default_factory=list)
    used_count: int = 0
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def state(self) -> TwoFactorState:
        if not self.secret:
            return TwoFactorState.NOT_SET_UP
        if self.enabled:
            return TwoFactorState.ENABLED
        return TwoFactorState.PENDING_CONFIRMATION


@dataclass
class RefreshTokenRecord:
    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    device_id: Optional[str] = None
    device_info: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    revoked_at: Optional[datetime] = None
    revoke_reason: Optional[RevokeReason] = None

    def is_valid(self, now: datetime) -> bool:
        return self.revoked_at is None and self.expires_at > now


@dataclass
class AuditEvent:
    kind: AuthEventType
    success: bool
    user_id: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    failure_reason: Optional[str] = None
    details: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
