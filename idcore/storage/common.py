"""Store contracts shared by the memory and Redis implementations.

The durable store holds principals, credentials, two-factor records, refresh
tokens and the audit trail. The ephemeral store holds short-lived values
(OTP codes, attempt and rate counters) that expire on their own.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Optional, Protocol, Sequence

from idcore.storage.models import (
    AuditEvent,
    AuthEventType,
    Credential,
    RefreshTokenRecord,
    RevokeReason,
    TwoFactorRecord,
    User,
    UserRole,
)


def normalize_email(email: Optional[str]) -> Optional[str]:
    if email is None:
        return None
    return email.strip().lower()


class IdentityStore(Protocol):
    def create_user(
        self,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        *,
        role: UserRole = UserRole.DONOR,
        name: Optional[str] = None,
        partner_id: Optional[str] = None,
        is_active: bool = True,
        is_verified: bool = False,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_phone(self, phone: str) -> Optional[User]: ...

    def set_user_active(self, user_id: str, active: bool) -> Optional[User]: ...

    def touch_last_login(self, user_id: str, when: datetime) -> None: ...

    def save_credential(
        self, user_id: str, password_hash: str, *, must_change: bool = False
    ) -> Credential: ...

    def get_credential(self, user_id: str) -> Optional[Credential]: ...

    def record_login_failure(
        self, user_id: str, *, threshold: int, lockout: timedelta, now: datetime
    ) -> Optional[Credential]: ...

    def clear_login_failures(self, user_id: str) -> None: ...

    def get_two_factor(self, user_id: str) -> Optional[TwoFactorRecord]: ...

    def begin_two_factor_setup(
        self, user_id: str, secret: str, recovery_code_hashes: Sequence[str]
    ) -> TwoFactorRecord: ...

    def enable_two_factor(self, user_id: str, when: datetime) -> bool: ...

    def clear_two_factor(self, user_id: str) -> bool: ...

    def replace_recovery_codes(
        self, user_id: str, recovery_code_hashes: Sequence[str]
    ) -> bool: ...

    def remove_recovery_code(self, user_id: str, code_hash: str) -> bool: ...

    def create_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord: ...

    def get_refresh_token(self, token_id: str) -> Optional[RefreshTokenRecord]: ...

    def revoke_refresh_token(
        self, token_id: str, reason: RevokeReason, when: datetime
    ) -> bool: ...

    def revoke_user_refresh_tokens(
        self, user_id: str, reason: RevokeReason, when: datetime
    ) -> int: ...

    def list_refresh_tokens(
        self, user_id: str, *, active_only: bool = False, now: Optional[datetime] = None
    ) -> List[RefreshTokenRecord]: ...

    def record_audit_event(self, event: AuditEvent) -> None: ...

    def count_audit_events(
        self,
        kind: AuthEventType,
        *,
        since: datetime,
        email: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> int: ...

    def first_audit_event_at(
        self,
        kind: AuthEventType,
        *,
        since: datetime,
        email: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Optional[datetime]: ...


class EphemeralStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def incr(self, key: str, ttl_seconds: Optional[int] = None) -> int:
        """Atomically increment ``key``; ``ttl_seconds`` applies only when it is created."""
        ...

    async def expire(self, key: str, ttl_seconds: int) -> bool: ...

    async def ttl(self, key: str) -> int:
        """Remaining lifetime in whole seconds, 0 when the key is absent."""
        ...


__all__ = ["IdentityStore", "EphemeralStore", "normalize_email"]
