from __future__ import annotations

import secrets
from typing import Optional

from idcore.logging import get_logger, mask_phone
from idcore.service.audit import AuditRecorder
from idcore.service.delivery import SmsGateway
from idcore.service.errors import AuthError, ErrorKind
from idcore.service.hashing import SecretHasher
from idcore.storage.common import EphemeralStore
from idcore.storage.models import AuthEventType, OtpChannel, OtpContext

logger = get_logger(__name__)

RATE_WINDOW_SECONDS = 3600


class OtpService:
    """Phone one-time codes: issue, rate limit, verify once.

    Only an argon2 hash of each code is kept, in the ephemeral store, under
    ``otp:{phone}:{context}:{reference}``. A per-key attempt counter bounds
    guesses and a per-phone fixed-window counter bounds sends.
    """

    CODE_KEY_PREFIX = "otp:"
    ATTEMPTS_KEY_PREFIX = "otp_attempts:"
    RATE_KEY_PREFIX = "otp_rate:"

    def __init__(
        self,
        cache: EphemeralStore,
        gateway: SmsGateway,
        hasher: SecretHasher,
        audit: AuditRecorder,
        *,
        code_length: int = 6,
        expiry_seconds: int = 300,
        max_attempts: int = 3,
        rate_limit_per_hour: int = 3,
    ) -> None:
        self.cache = cache
        self.gateway = gateway
        self.hasher = hasher
        self.audit = audit
        self.code_length = code_length
        self.expiry_seconds = expiry_seconds
        self.max_attempts = max_attempts
        self.rate_limit_per_hour = rate_limit_per_hour

    @classmethod
    def _suffix(cls, phone: str, context: OtpContext, reference_id: str) -> str:
        return f"{phone}:{OtpContext(context).value}:{reference_id}"

    def _code_key(self, phone: str, context: OtpContext, reference_id: str) -> str:
        return self.CODE_KEY_PREFIX + self._suffix(phone, context, reference_id)

    def _attempts_key(self, phone: str, context: OtpContext, reference_id: str) -> str:
        return self.ATTEMPTS_KEY_PREFIX + self._suffix(phone, context, reference_id)

    def _rate_key(self, phone: str) -> str:
        return self.RATE_KEY_PREFIX + phone

    def generate_code(self) -> str:
        return str(secrets.randbelow(10 ** self.code_length)).zfill(self.code_length)

    async def send(
        self,
        phone: str,
        channel: OtpChannel,
        context: OtpContext,
        reference_id: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        """Issue a fresh code and hand it to the gateway; returns its lifetime in seconds."""
        rate_key = self._rate_key(phone)
        # Reserve the send first so concurrent requests cannot overshoot the limit
        sends = await self.cache.incr(rate_key, ttl_seconds=RATE_WINDOW_SECONDS)
        if sends > self.rate_limit_per_hour:
            retry_after = await self.cache.ttl(rate_key) or RATE_WINDOW_SECONDS
            self.audit.record(
                AuthEventType.OTP_RATE_LIMITED,
                success=False,
                phone=phone,
                ip=ip,
                user_agent=user_agent,
                failure_reason="RATE_LIMITED",
            )
            logger.warning(
                "otp_rate_limited", phone=mask_phone(phone), retry_after=retry_after
            )
            raise AuthError(ErrorKind.RATE_LIMITED, retry_after=retry_after)

        code = self.generate_code()
        await self.cache.set(
            self._code_key(phone, context, reference_id),
            self.hasher.hash(code),
            self.expiry_seconds,
        )
        await self.cache.delete(self._attempts_key(phone, context, reference_id))

        delivered = await self.gateway.send_otp(phone, code, channel)
        if not delivered:
            # The stored code stays valid in case the message still arrives
            self.audit.record(
                AuthEventType.OTP_SENT,
                success=False,
                phone=phone,
                ip=ip,
                user_agent=user_agent,
                failure_reason="DELIVERY_FAILED",
            )
            logger.error(
                "otp_delivery_failed",
                phone=mask_phone(phone),
                channel=OtpChannel(channel).value,
            )
            raise AuthError(ErrorKind.OTP_ERROR)

        self.audit.record(
            AuthEventType.OTP_SENT,
            success=True,
            phone=phone,
            ip=ip,
            user_agent=user_agent,
            details=f"{OtpContext(context).value}:{reference_id}",
        )
        logger.info(
            "otp_sent",
            phone=mask_phone(phone),
            context=OtpContext(context).value,
            channel=OtpChannel(channel).value,
        )
        return self.expiry_seconds

    async def verify(
        self,
        phone: str,
        code: str,
        context: OtpContext,
        reference_id: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        code_key = self._code_key(phone, context, reference_id)
        attempts_key = self._attempts_key(phone, context, reference_id)

        attempts = int(await self.cache.get(attempts_key) or 0)
        if attempts >= self.max_attempts:
            self._audit_failure(phone, "TOO_MANY_ATTEMPTS", ip, user_agent)
            raise AuthError(ErrorKind.TOO_MANY_ATTEMPTS)

        stored_hash = await self.cache.get(code_key)
        if stored_hash is None:
            self.audit.record(
                AuthEventType.OTP_EXPIRED,
                success=False,
                phone=phone,
                ip=ip,
                user_agent=user_agent,
                failure_reason="OTP_EXPIRED",
            )
            raise AuthError(ErrorKind.OTP_EXPIRED)

        # Take an attempt before comparing so parallel guesses share one budget
        code_ttl = await self.cache.ttl(code_key) or self.expiry_seconds
        attempts = await self.cache.incr(attempts_key, ttl_seconds=code_ttl)
        if attempts > self.max_attempts:
            self._audit_failure(phone, "TOO_MANY_ATTEMPTS", ip, user_agent)
            raise AuthError(ErrorKind.TOO_MANY_ATTEMPTS)

        if not self.hasher.verify(stored_hash, (code or "").strip()):
            await self.cache.expire(attempts_key, code_ttl)
            remaining = max(0, self.max_attempts - attempts)
            self._audit_failure(phone, "INVALID_OTP", ip, user_agent)
            logger.info(
                "otp_mismatch", phone=mask_phone(phone), remaining_attempts=remaining
            )
            raise AuthError(ErrorKind.INVALID_OTP, remaining_attempts=remaining)

        # Deleting the code is what makes it single use
        if not await self.cache.delete(code_key):
            self.audit.record(
                AuthEventType.OTP_EXPIRED,
                success=False,
                phone=phone,
                ip=ip,
                user_agent=user_agent,
                failure_reason="OTP_ALREADY_USED",
            )
            raise AuthError(ErrorKind.OTP_EXPIRED)
        await self.cache.delete(attempts_key)
        self.audit.record(
            AuthEventType.OTP_VERIFIED,
            success=True,
            phone=phone,
            ip=ip,
            user_agent=user_agent,
            details=f"{OtpContext(context).value}:{reference_id}",
        )
        logger.info("otp_verified", phone=mask_phone(phone), context=OtpContext(context).value)
        return True

    def _audit_failure(
        self,
        phone: str,
        reason: str,
        ip: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        self.audit.record(
            AuthEventType.OTP_FAILED,
            success=False,
            phone=phone,
            ip=ip,
            user_agent=user_agent,
            failure_reason=reason,
        )

    async def retry_after(self, phone: str) -> int:
        return await self.cache.ttl(self._rate_key(phone))
