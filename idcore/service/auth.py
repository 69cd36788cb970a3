from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

from idcore.config import Settings
from idcore.logging import get_logger, mask_email
from idcore.service.audit import AuditRecorder
from idcore.service.errors import AuthError, ErrorKind, ValidationError
from idcore.service.hashing import SecretHasher
from idcore.service.sessions import SessionService, TokenPair
from idcore.service.tokens import TokenService, TokenType
from idcore.service.two_factor import TwoFactorService
from idcore.storage.common import EphemeralStore, IdentityStore, normalize_email
from idcore.storage.models import AuthEventType, RevokeReason, User, UserRole

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MIN_EMAIL_LOCKOUT_RETRY_SECONDS = 60
TWO_FACTOR_METHODS = ["TOTP", "RECOVERY_CODE"]


@dataclass
class AuthContext:
    user_id: str
    role: UserRole
    email: Optional[str] = None
    partner_id: Optional[str] = None
    permissions: List[str] = field(default_factory=list)

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions


@dataclass
class UserInfo:
    id: str
    email: Optional[str]
    name: Optional[str]
    role: UserRole
    partner_id: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserInfo":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            partner_id=user.partner_id,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role.value,
            "partner_id": self.partner_id,
        }


@dataclass
class LoginResult:
    """Outcome of a password login or a completed second factor.

    Either ``tokens`` is set, or ``requires_2fa`` is True and ``temp_token``
    holds the short-lived 2fa_pending token.
    """

    user: Optional[UserInfo] = None
    tokens: Optional[TokenPair] = None
    requires_2fa: bool = False
    temp_token: Optional[str] = None
    temp_token_expires_in: Optional[int] = None
    methods: List[str] = field(default_factory=list)
    must_change_password: bool = False

    def to_dict(self) -> dict[str, Any]:
        if self.requires_2fa:
            return {
                "requires_2fa": True,
                "temp_token": self.temp_token,
                "expires_in": self.temp_token_expires_in,
                "methods": list(self.methods),
            }
        payload: dict[str, Any] = self.tokens.to_dict() if self.tokens else {}
        if self.user:
            payload["user"] = self.user.to_dict()
        if self.must_change_password:
            payload["must_change_password"] = True
        return payload


class AuthService:
    """Password login with lockout, and completion of the second factor.

    Lockout is evaluated from the audit trail: failed logins for the email
    and for the client IP inside a trailing window. The IP threshold is twice
    the email threshold so shared NAT addresses are not locked out as fast.
    """

    def __init__(
        self,
        store: IdentityStore,
        cache: EphemeralStore,
        settings: Settings,
        *,
        tokens: TokenService,
        sessions: SessionService,
        two_factor: TwoFactorService,
        hasher: SecretHasher,
        audit: AuditRecorder,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.tokens = tokens
        self.sessions = sessions
        self.two_factor = two_factor
        self.hasher = hasher
        self.audit = audit
        self.logger = logger
        # Verified against when the email is unknown so both failures cost the same
        self._dummy_hash = hasher.hash("unknown-user-placeholder")

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    @property
    def _lockout_window(self) -> timedelta:
        return timedelta(minutes=self.settings.login_lockout_minutes)

    def _email_retry_after(self, email: str, now: datetime) -> int:
        """Seconds until the oldest failure in the window ages out."""
        oldest = self.store.first_audit_event_at(
            AuthEventType.LOGIN_FAILED, since=now - self._lockout_window, email=email
        )
        if oldest is None:
            return int(self._lockout_window.total_seconds())
        remaining = math.ceil((oldest + self._lockout_window - now).total_seconds())
        return max(remaining, MIN_EMAIL_LOCKOUT_RETRY_SECONDS)

    def _check_lockout(
        self, email: str, ip: Optional[str], user_agent: Optional[str], now: datetime
    ) -> None:
        since = now - self._lockout_window
        email_failures = self.store.count_audit_events(
            AuthEventType.LOGIN_FAILED, since=since, email=email
        )
        if email_failures >= self.settings.login_max_failures:
            retry_after = self._email_retry_after(email, now)
            self.audit.record(
                AuthEventType.ACCOUNT_LOCKED,
                success=False,
                email=email,
                ip=ip,
                user_agent=user_agent,
                failure_reason="TOO_MANY_FAILED_LOGINS",
            )
            self.logger.warning(
                "login_locked_out",
                scope="email",
                email=mask_email(email),
                failures=email_failures,
                retry_after=retry_after,
            )
            raise AuthError(ErrorKind.RATE_LIMITED, retry_after=retry_after)
        if not ip:
            return
        ip_failures = self.store.count_audit_events(
            AuthEventType.LOGIN_FAILED, since=since, ip_address=ip
        )
        if ip_failures >= self.settings.login_ip_max_failures:
            retry_after = int(self._lockout_window.total_seconds())
            self.audit.record(
                AuthEventType.ACCOUNT_LOCKED,
                success=False,
                email=email,
                ip=ip,
                user_agent=user_agent,
                failure_reason="TOO_MANY_FAILED_LOGINS_FROM_IP",
            )
            self.logger.warning(
                "login_locked_out", scope="ip", ip=ip, failures=ip_failures
            )
            raise AuthError(ErrorKind.RATE_LIMITED, retry_after=retry_after)

    def _fail_login(
        self,
        reason: str,
        *,
        email: str,
        ip: Optional[str],
        user_agent: Optional[str],
        user_id: Optional[str] = None,
    ) -> None:
        self.audit.record(
            AuthEventType.LOGIN_FAILED,
            success=False,
            user_id=user_id,
            email=email,
            ip=ip,
            user_agent=user_agent,
            failure_reason=reason,
        )
        self.logger.info("login_failed", reason=reason, email=mask_email(email), ip=ip)

    async def login(
        self,
        email: str,
        password: str,
        *,
        device_id: Optional[str] = None,
        device_info: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        email = normalize_email(email) or ""
        now = self._now()
        self._check_lockout(email, ip, user_agent, now)

        user = self.store.get_user_by_email(email)
        if not user:
            self.hasher.verify(self._dummy_hash, password)
            self._fail_login("USER_NOT_FOUND", email=email, ip=ip, user_agent=user_agent)
            raise AuthError(ErrorKind.INVALID_CREDENTIALS)

        credential = self.store.get_credential(user.id)
        if credential and credential.is_locked(now):
            retry_after = max(1, math.ceil((credential.locked_until - now).total_seconds()))
            self.audit.record(
                AuthEventType.ACCOUNT_LOCKED,
                success=False,
                user_id=user.id,
                email=email,
                ip=ip,
                user_agent=user_agent,
                failure_reason="CREDENTIAL_LOCKED",
            )
            raise AuthError(ErrorKind.RATE_LIMITED, retry_after=retry_after)

        if not credential or not self.hasher.verify(credential.password_hash, password):
            self.store.record_login_failure(
                user.id,
                threshold=self.settings.login_max_failures,
                lockout=self._lockout_window,
                now=now,
            )
            self._fail_login(
                "INVALID_PASSWORD", email=email, ip=ip, user_agent=user_agent, user_id=user.id
            )
            raise AuthError(ErrorKind.INVALID_CREDENTIALS)

        if not user.is_active:
            self._fail_login(
                "ACCOUNT_DISABLED", email=email, ip=ip, user_agent=user_agent, user_id=user.id
            )
            raise AuthError(ErrorKind.ACCOUNT_DISABLED)

        self.store.clear_login_failures(user.id)

        if self.two_factor.is_enabled(user.id):
            temp_token = self.tokens.mint_two_factor_pending(user.id)
            self.audit.record(
                AuthEventType.TWO_FACTOR_CHALLENGE,
                success=True,
                user_id=user.id,
                email=email,
                ip=ip,
                user_agent=user_agent,
            )
            return LoginResult(
                requires_2fa=True,
                temp_token=temp_token,
                temp_token_expires_in=self.tokens.pending_ttl_seconds,
                methods=list(TWO_FACTOR_METHODS),
            )

        pair = self.sessions.issue_session(
            user,
            device_id=device_id,
            device_info=device_info,
            ip=ip,
            user_agent=user_agent,
        )
        self.audit.record(
            AuthEventType.LOGIN_SUCCESS,
            success=True,
            user_id=user.id,
            email=email,
            ip=ip,
            user_agent=user_agent,
        )
        self.logger.info("login_succeeded", user_id=user.id)
        return LoginResult(
            user=UserInfo.from_user(user),
            tokens=pair,
            must_change_password=credential.must_change,
        )

    # ------------------------------------------------------------------
    # Second factor
    # ------------------------------------------------------------------

    @staticmethod
    def _two_factor_keys(user_id: str) -> tuple[str, str]:
        return f"2fa:lockout:{user_id}", f"2fa:attempts:{user_id}"

    async def _check_two_factor_lockout(
        self, user_id: str, ip: Optional[str], user_agent: Optional[str]
    ) -> None:
        lockout_key, _ = self._two_factor_keys(user_id)
        remaining = await self.cache.ttl(lockout_key)
        if remaining > 0:
            self.audit.record(
                AuthEventType.TWO_FACTOR_FAILED,
                success=False,
                user_id=user_id,
                ip=ip,
                user_agent=user_agent,
                failure_reason="LOCKED_OUT",
            )
            self.logger.warning("two_factor_locked_out", user_id=user_id, retry_after=remaining)
            raise AuthError(ErrorKind.RATE_LIMITED, retry_after=remaining)

    async def _record_two_factor_failure(self, user_id: str) -> None:
        lockout_key, attempts_key = self._two_factor_keys(user_id)
        lockout_seconds = self.settings.two_factor_lockout_seconds
        attempts = await self.cache.incr(attempts_key, ttl_seconds=lockout_seconds)
        if attempts >= self.settings.two_factor_max_failures:
            await self.cache.set(lockout_key, "1", lockout_seconds)
            await self.cache.delete(attempts_key)
            self.logger.warning(
                "two_factor_lockout_triggered", user_id=user_id, attempts=attempts
            )

    async def verify_2fa(
        self,
        temp_token: str,
        *,
        code: Optional[str] = None,
        recovery_code: Optional[str] = None,
        device_id: Optional[str] = None,
        device_info: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        """Finish a login that was answered with a 2FA challenge.

        ``code`` (TOTP) takes precedence over ``recovery_code``; only one of
        them is consumed per call.
        """
        claims = self.tokens.verify(temp_token, TokenType.TWO_FACTOR_PENDING)
        user = self.store.get_user(claims["sub"])
        if not user:
            raise AuthError(ErrorKind.INVALID_TOKEN)
        if not user.is_active:
            self.audit.record(
                AuthEventType.TWO_FACTOR_FAILED,
                success=False,
                user_id=user.id,
                ip=ip,
                user_agent=user_agent,
                failure_reason="ACCOUNT_DISABLED",
            )
            raise AuthError(ErrorKind.ACCOUNT_DISABLED)

        await self._check_two_factor_lockout(user.id, ip, user_agent)

        method: Optional[str] = None
        verified = False
        try:
            if code:
                method = "totp"
                verified = self.two_factor.verify_code(user.id, code)
            elif recovery_code:
                method = "recovery"
                verified = self.two_factor.verify_recovery_code(
                    user.id, recovery_code, ip=ip, user_agent=user_agent
                )
        except AuthError as exc:
            # 2FA was disabled between the challenge and its completion
            if exc.kind is not ErrorKind.TWO_FACTOR_NOT_ENABLED:
                raise
            verified = False

        if not verified:
            await self._record_two_factor_failure(user.id)
            self.audit.record(
                AuthEventType.TWO_FACTOR_FAILED,
                success=False,
                user_id=user.id,
                ip=ip,
                user_agent=user_agent,
                failure_reason="INVALID_CODE",
                details=method,
            )
            raise AuthError(ErrorKind.INVALID_CODE)

        await self.cache.delete(self._two_factor_keys(user.id)[1])
        pair = self.sessions.issue_session(
            user,
            device_id=device_id,
            device_info=device_info,
            ip=ip,
            user_agent=user_agent,
        )
        self.audit.record(
            AuthEventType.TWO_FACTOR_SUCCESS,
            success=True,
            user_id=user.id,
            email=user.email,
            ip=ip,
            user_agent=user_agent,
            details=method,
        )
        self.logger.info("two_factor_login_succeeded", user_id=user.id, method=method)
        credential = self.store.get_credential(user.id)
        return LoginResult(
            user=UserInfo.from_user(user),
            tokens=pair,
            must_change_password=bool(credential and credential.must_change),
        )

    # ------------------------------------------------------------------
    # Access tokens and account administration
    # ------------------------------------------------------------------

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Resolve a ``Bearer`` access token into the calling principal."""
        token = authorization or ""
        if token.lower().startswith("bearer "):
            token = token[7:].strip()
        claims = self.tokens.verify(token, TokenType.ACCESS)
        user = self.store.get_user(claims["sub"])
        if not user:
            raise AuthError(ErrorKind.INVALID_TOKEN)
        if not user.is_active:
            raise AuthError(ErrorKind.ACCOUNT_DISABLED)
        return AuthContext(
            user_id=user.id,
            role=user.role,
            email=user.email,
            partner_id=user.partner_id,
            permissions=list(claims.get("permissions") or []),
        )

    @staticmethod
    def _validate_password(password: str) -> None:
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )

    def provision_user(
        self,
        email: str,
        password: str,
        *,
        role: UserRole,
        name: Optional[str] = None,
        partner_id: Optional[str] = None,
        phone: Optional[str] = None,
        must_change_password: bool = False,
    ) -> User:
        """Create an account-holding principal (partner or admin)."""
        role = UserRole(role)
        if not role.requires_account:
            raise ValidationError(
                f"role {role.value} signs in with phone OTP and has no password",
                detail={"field": "role"},
            )
        self._validate_password(password)
        user = self.store.create_user(
            email,
            phone,
            role=role,
            name=name,
            partner_id=partner_id,
            is_verified=True,
        )
        self.store.save_credential(
            user.id, self.hasher.hash(password), must_change=must_change_password
        )
        self.audit.record(
            AuthEventType.ACCOUNT_CREATED, success=True, user_id=user.id, email=user.email
        )
        self.logger.info("user_provisioned", user_id=user.id, role=role.value)
        return user

    def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        """Replace the password and end every session; returns sessions revoked."""
        credential = self.store.get_credential(user_id)
        if not credential or not self.hasher.verify(credential.password_hash, current_password):
            self.audit.record(
                AuthEventType.PASSWORD_CHANGED,
                success=False,
                user_id=user_id,
                ip=ip,
                user_agent=user_agent,
                failure_reason="INVALID_PASSWORD",
            )
            raise AuthError(ErrorKind.INVALID_CREDENTIALS)
        self._validate_password(new_password)
        self.store.save_credential(user_id, self.hasher.hash(new_password), must_change=False)
        revoked = self.sessions.revoke_all(user_id, RevokeReason.PASSWORD_CHANGED)
        self.audit.record(
            AuthEventType.PASSWORD_CHANGED,
            success=True,
            user_id=user_id,
            ip=ip,
            user_agent=user_agent,
        )
        return revoked
