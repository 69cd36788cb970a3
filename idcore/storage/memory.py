from __future__ import annotations

import base64
import hashlib
import math
import secrets
import threading
import time
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from cryptography.fernet import Fernet, InvalidToken

from idcore.logging import get_logger
from idcore.storage.common import normalize_email
from idcore.storage.errors import (
    DuplicateIdentifier,
    MissingIdentifier,
    TwoFactorAlreadyEnabled,
    UnknownPrincipal,
)
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


class MemoryStore:
    """In-process durable store for development and tests.

    Every read returns a copy, so the only way to change a record is through
    one of the store methods, each of which runs under ``_data_lock``.
    """

    def __init__(self, *, mfa_encryption_key: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, Credential] = {}
        self.two_factor: Dict[str, TwoFactorRecord] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self.audit_events: List[AuditEvent] = []
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str | None) -> Fernet:
        material = key_material
        if not material:
            material = secrets.token_urlsafe(64)
            self.logger.warning(
                "mfa_cipher_ephemeral_key",
                message="No MFA key configured; stored TOTP secrets will not survive a restart",
            )
        try:
            return Fernet(self._derive_cipher_key(material))
        except Exception as exc:
            raise RuntimeError("Unable to initialize MFA cipher") from exc

    def _encrypt_mfa_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_mfa_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.error("mfa_secret_decrypt_failed")
            raise RuntimeError("stored TOTP secret cannot be decrypted") from None

    # ------------------------------------------------------------------
    # Principals
    # ------------------------------------------------------------------

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
    ) -> User:
        email = normalize_email(email)
        if not email and not phone:
            raise MissingIdentifier()
        with self._data_lock:
            for existing in self.users.values():
                if email and existing.email == email:
                    raise DuplicateIdentifier("email")
                if phone and existing.phone == phone:
                    raise DuplicateIdentifier("phone")
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                phone=phone,
                name=name,
                role=UserRole(role),
                partner_id=partner_id,
                is_active=is_active,
                is_verified=is_verified,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = normalize_email(email)
        with self._data_lock:
            for user in self.users.values():
                if user.email == email:
                    return replace(user)
        return None

    def get_user_by_phone(self, phone: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.phone == phone:
                    return replace(user)
        return None

    def set_user_active(self, user_id: str, active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = active
            return replace(user)

    def touch_last_login(self, user_id: str, when: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_login_at = when

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def save_credential(
        self, user_id: str, password_hash: str, *, must_change: bool = False
    ) -> Credential:
        with self._data_lock:
            if user_id not in self.users:
                raise UnknownPrincipal(user_id, record="credential")
            credential = Credential(
                user_id=user_id, password_hash=password_hash, must_change=must_change
            )
            self.credentials[user_id] = credential
            return replace(credential)

    def get_credential(self, user_id: str) -> Optional[Credential]:
        with self._data_lock:
            credential = self.credentials.get(user_id)
            return replace(credential) if credential else None

    def record_login_failure(
        self, user_id: str, *, threshold: int, lockout: timedelta, now: datetime
    ) -> Optional[Credential]:
        with self._data_lock:
            credential = self.credentials.get(user_id)
            if not credential:
                return None
            credential.failed_attempts += 1
            credential.updated_at = now
            if credential.failed_attempts >= threshold:
                credential.locked_until = now + lockout
            return replace(credential)

    def clear_login_failures(self, user_id: str) -> None:
        with self._data_lock:
            credential = self.credentials.get(user_id)
            if credential:
                credential.failed_attempts = 0
                credential.locked_until = None

    # ------------------------------------------------------------------
    # Two-factor records
    # ------------------------------------------------------------------

    def _copy_two_factor(self, record: TwoFactorRecord) -> TwoFactorRecord:
        return replace(
            record,
            secret=self._decrypt_mfa_secret(record.secret),
            recovery_codes=list(record.recovery_codes),
        )

    def get_two_factor(self, user_id: str) -> Optional[TwoFactorRecord]:
        with self._data_lock:
            record = self.two_factor.get(user_id)
            return self._copy_two_factor(record) if record else None

    def begin_two_factor_setup(
        self, user_id: str, secret: str, recovery_code_hashes: Sequence[str]
    ) -> TwoFactorRecord:
        with self._data_lock:
            if user_id not in self.users:
                raise UnknownPrincipal(user_id, record="two-factor")
            existing = self.two_factor.get(user_id)
            if existing and existing.enabled:
                raise TwoFactorAlreadyEnabled(user_id)
            record = TwoFactorRecord(
                user_id=user_id,
                secret=self._encrypt_mfa_secret(secret),
                recovery_codes=list(recovery_code_hashes),
            )
            self.two_factor[user_id] = record
            return self._copy_two_factor(record)

    def enable_two_factor(self, user_id: str, when: datetime) -> bool:
        with self._data_lock:
            record = self.two_factor.get(user_id)
            if not record or not record.secret or record.enabled:
                return False
            record.enabled = True
            record.enabled_at = when
            return True

    def clear_two_factor(self, user_id: str) -> bool:
        with self._data_lock:
            record = self.two_factor.get(user_id)
            if not record:
                return False
            record.secret = None
            record.enabled = False
            record.enabled_at = None
            record.recovery_codes = []
            return True

    def replace_recovery_codes(
        self, user_id: str, recovery_code_hashes: Sequence[str]
    ) -> bool:
        with self._data_lock:
            record = self.two_factor.get(user_id)
            if not record or not record.enabled:
                return False
            record.recovery_codes = list(recovery_code_hashes)
            record.used_count = 0
            return True

    def remove_recovery_code(self, user_id: str, code_hash: str) -> bool:
        with self._data_lock:
            record = self.two_factor.get(user_id)
            if not record or code_hash not in record.recovery_codes:
                return False
            record.recovery_codes.remove(code_hash)
            record.used_count += 1
            return True

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def create_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        with self._data_lock:
            if record.id in self.refresh_tokens:
                raise DuplicateIdentifier("id", label="refresh token id")
            if record.user_id not in self.users:
                raise UnknownPrincipal(record.user_id, record="refresh token")
            self.refresh_tokens[record.id] = replace(record)
            return replace(record)

    def get_refresh_token(self, token_id: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            return replace(record) if record else None

    def revoke_refresh_token(
        self, token_id: str, reason: RevokeReason, when: datetime
    ) -> bool:
        """Revoke once; returns False when the record is missing or already revoked."""
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            if not record or record.revoked_at is not None:
                return False
            record.revoked_at = when
            record.revoke_reason = reason
            return True

    def revoke_user_refresh_tokens(
        self, user_id: str, reason: RevokeReason, when: datetime
    ) -> int:
        with self._data_lock:
            revoked = 0
            for record in self.refresh_tokens.values():
                if record.user_id == user_id and record.revoked_at is None:
                    record.revoked_at = when
                    record.revoke_reason = reason
                    revoked += 1
            return revoked

    def list_refresh_tokens(
        self, user_id: str, *, active_only: bool = False, now: Optional[datetime] = None
    ) -> List[RefreshTokenRecord]:
        now = now or datetime.now(timezone.utc)
        with self._data_lock:
            records = [
                replace(record)
                for record in self.refresh_tokens.values()
                if record.user_id == user_id
                and (not active_only or record.is_valid(now))
            ]
        return sorted(records, key=lambda r: r.created_at)

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    def record_audit_event(self, event: AuditEvent) -> None:
        with self._data_lock:
            self.audit_events.append(replace(event, email=normalize_email(event.email)))

    def count_audit_events(
        self,
        kind: AuthEventType,
        *,
        since: datetime,
        email: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> int:
        email = normalize_email(email)
        with self._data_lock:
            return sum(
                1
                for event in self.audit_events
                if event.kind == kind
                and event.created_at >= since
                and (email is None or event.email == email)
                and (ip_address is None or event.ip_address == ip_address)
            )

    def first_audit_event_at(
        self,
        kind: AuthEventType,
        *,
        since: datetime,
        email: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Optional[datetime]:
        email = normalize_email(email)
        with self._data_lock:
            matches = [
                event.created_at
                for event in self.audit_events
                if event.kind == kind
                and event.created_at >= since
                and (email is None or event.email == email)
                and (ip_address is None or event.ip_address == ip_address)
            ]
        return min(matches) if matches else None

    def list_audit_events(self, kind: Optional[AuthEventType] = None) -> List[AuditEvent]:
        with self._data_lock:
            return [
                replace(event)
                for event in self.audit_events
                if kind is None or event.kind == kind
            ]


class MemoryCache:
    """In-process TTL store with the same contract as :class:`RedisCache`.

    ``clock`` returns monotonic seconds and can be swapped out in tests to
    move time forward.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return entry

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + max(1, ttl_seconds))

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._live(key) is not None:
                    removed += 1
                self._entries.pop(key, None)
        return removed

    async def incr(self, key: str, ttl_seconds: Optional[int] = None) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                expires_at = self._clock() + ttl_seconds if ttl_seconds else None
                self._entries[key] = ("1", expires_at)
                return 1
            value, expires_at = entry
            new_value = int(value) + 1
            self._entries[key] = (str(new_value), expires_at)
            return new_value

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return False
            self._entries[key] = (entry[0], self._clock() + max(1, ttl_seconds))
            return True

    async def ttl(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None or entry[1] is None:
                return 0
            return max(0, math.ceil(entry[1] - self._clock()))

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
