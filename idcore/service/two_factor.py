from __future__ import annotations

import base64
import hashlib
import io
import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

import pyotp
import qrcode
import qrcode.image.svg

from idcore.logging import get_logger
from idcore.service.audit import AuditRecorder
from idcore.service.errors import AuthError, ErrorKind
from idcore.service.hashing import SecretHasher
from idcore.storage.common import IdentityStore
from idcore.storage.models import AuthEventType, TwoFactorRecord, TwoFactorState, User

logger = get_logger(__name__)

TOTP_DIGITS = 6
TOTP_INTERVAL_SECONDS = 30
# Accept the previous and next 30s step to absorb clock drift
TOTP_VALID_WINDOW = 1

_RECOVERY_ALPHABET = string.ascii_lowercase + string.digits
_RECOVERY_GROUPS = 4
_RECOVERY_GROUP_LENGTH = 4


def qr_code_data_uri(payload: str) -> str:
    """Render ``payload`` as an SVG QR code embedded in a data URI."""
    image = qrcode.make(payload, image_factory=qrcode.image.svg.SvgPathImage)
    buffer = io.BytesIO()
    image.save(buffer)
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/svg+xml;base64,{encoded}"


@dataclass
class TwoFactorSetup:
    secret: str
    otpauth_uri: str
    qr_code: str
    recovery_codes: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "secret": self.secret,
            "otpauth_uri": self.otpauth_uri,
            "qr_code": self.qr_code,
            "recovery_codes": list(self.recovery_codes),
        }


@dataclass
class TwoFactorStatus:
    state: TwoFactorState
    recovery_codes_remaining: int = 0
    enabled_at: Optional[datetime] = None

    @property
    def enabled(self) -> bool:
        return self.state is TwoFactorState.ENABLED

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "pending_confirmation": self.state is TwoFactorState.PENDING_CONFIRMATION,
            "recovery_codes_remaining": self.recovery_codes_remaining,
            "enabled_at": self.enabled_at.isoformat() if self.enabled_at else None,
        }


class TwoFactorService:
    """TOTP enrollment and verification with single-use recovery codes.

    States per principal: NOT_SET_UP -> PENDING_CONFIRMATION (after
    ``initiate_setup``) -> ENABLED (after ``confirm_setup``) -> NOT_SET_UP
    (after ``disable``). Recovery codes are stored as argon2 hashes and a
    code is spent by removing its hash from the stored set.
    """

    def __init__(
        self,
        store: IdentityStore,
        hasher: SecretHasher,
        audit: AuditRecorder,
        *,
        issuer: str = "Zaed",
        recovery_code_count: int = 10,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.audit = audit
        self.issuer = issuer
        self.recovery_code_count = recovery_code_count
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def _totp(secret: str) -> pyotp.TOTP:
        return pyotp.TOTP(
            secret,
            digits=TOTP_DIGITS,
            interval=TOTP_INTERVAL_SECONDS,
            digest=hashlib.sha1,
        )

    def _verify_totp(self, secret: str, code: Optional[str]) -> bool:
        normalized = (code or "").replace(" ", "").strip()
        if len(normalized) != TOTP_DIGITS or not normalized.isdigit():
            return False
        return self._totp(secret).verify(normalized, valid_window=TOTP_VALID_WINDOW)

    @staticmethod
    def _normalize_recovery_code(code: Optional[str]) -> str:
        return (code or "").strip().lower()

    def generate_recovery_codes(self) -> List[str]:
        codes = []
        for _ in range(self.recovery_code_count):
            groups = [
                "".join(secrets.choice(_RECOVERY_ALPHABET) for _ in range(_RECOVERY_GROUP_LENGTH))
                for _ in range(_RECOVERY_GROUPS)
            ]
            codes.append("-".join(groups))
        return codes

    def _require_enabled(self, user_id: str) -> TwoFactorRecord:
        record = self.store.get_two_factor(user_id)
        if not record or record.state is not TwoFactorState.ENABLED:
            raise AuthError(ErrorKind.TWO_FACTOR_NOT_ENABLED)
        return record

    def status(self, user_id: str) -> TwoFactorStatus:
        record = self.store.get_two_factor(user_id)
        if not record:
            return TwoFactorStatus(state=TwoFactorState.NOT_SET_UP)
        remaining = len(record.recovery_codes) if record.enabled else 0
        return TwoFactorStatus(
            state=record.state,
            recovery_codes_remaining=remaining,
            enabled_at=record.enabled_at,
        )

    def is_enabled(self, user_id: str) -> bool:
        record = self.store.get_two_factor(user_id)
        return bool(record and record.state is TwoFactorState.ENABLED)

    def initiate_setup(self, user: User) -> TwoFactorSetup:
        """Start (or restart) enrollment.

        The plaintext recovery codes are only ever returned here.
        """
        if self.is_enabled(user.id):
            raise AuthError(ErrorKind.TWO_FACTOR_ALREADY_ENABLED)
        # 32 base32 characters = 160 bits
        secret = pyotp.random_base32(length=32)
        recovery_codes = self.generate_recovery_codes()
        self.store.begin_two_factor_setup(
            user.id, secret, [self.hasher.hash(code) for code in recovery_codes]
        )
        otpauth_uri = self._totp(secret).provisioning_uri(
            name=user.email or user.phone or user.id, issuer_name=self.issuer
        )
        self.logger.info("two_factor_setup_initiated", user_id=user.id)
        return TwoFactorSetup(
            secret=secret,
            otpauth_uri=otpauth_uri,
            qr_code=qr_code_data_uri(otpauth_uri),
            recovery_codes=recovery_codes,
        )

    def confirm_setup(
        self,
        user_id: str,
        code: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        record = self.store.get_two_factor(user_id)
        if not record or record.state is TwoFactorState.NOT_SET_UP:
            raise AuthError(ErrorKind.TWO_FACTOR_NOT_INITIATED)
        if record.state is TwoFactorState.ENABLED:
            raise AuthError(ErrorKind.TWO_FACTOR_ALREADY_ENABLED)
        if not self._verify_totp(record.secret, code):
            self.logger.info("two_factor_confirm_rejected", user_id=user_id)
            raise AuthError(ErrorKind.INVALID_CODE)
        if not self.store.enable_two_factor(user_id, self._now()):
            raise AuthError(ErrorKind.TWO_FACTOR_ALREADY_ENABLED)
        self.audit.record(
            AuthEventType.TWO_FA_ENABLED,
            success=True,
            user_id=user_id,
            ip=ip,
            user_agent=user_agent,
        )
        self.logger.info("two_factor_enabled", user_id=user_id)

    def verify_code(self, user_id: str, code: str) -> bool:
        record = self._require_enabled(user_id)
        return self._verify_totp(record.secret, code)

    def verify_recovery_code(
        self,
        user_id: str,
        code: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        record = self._require_enabled(user_id)
        normalized = self._normalize_recovery_code(code)
        if not normalized:
            return False
        matched = self.hasher.find_match(record.recovery_codes, normalized)
        if matched is None:
            return False
        if not self.store.remove_recovery_code(user_id, matched):
            # Spent by a concurrent request between the scan and the removal
            return False
        remaining = len(record.recovery_codes) - 1
        self.audit.record(
            AuthEventType.BACKUP_CODE_USED,
            success=True,
            user_id=user_id,
            ip=ip,
            user_agent=user_agent,
            details=f"{remaining} recovery code(s) remaining",
        )
        self.logger.info("recovery_code_used", user_id=user_id, remaining=remaining)
        return True

    def disable(
        self,
        user_id: str,
        code: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        record = self._require_enabled(user_id)
        if not self._verify_totp(record.secret, code):
            raise AuthError(ErrorKind.INVALID_CODE)
        self.store.clear_two_factor(user_id)
        self.audit.record(
            AuthEventType.TWO_FA_DISABLED,
            success=True,
            user_id=user_id,
            ip=ip,
            user_agent=user_agent,
        )
        self.logger.info("two_factor_disabled", user_id=user_id)

    def regenerate_recovery_codes(self, user_id: str, code: str) -> List[str]:
        record = self._require_enabled(user_id)
        if not self._verify_totp(record.secret, code):
            raise AuthError(ErrorKind.INVALID_CODE)
        recovery_codes = self.generate_recovery_codes()
        if not self.store.replace_recovery_codes(
            user_id, [self.hasher.hash(c) for c in recovery_codes]
        ):
            raise AuthError(ErrorKind.TWO_FACTOR_NOT_ENABLED)
        self.logger.info("recovery_codes_regenerated", user_id=user_id)
        return recovery_codes
