from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, Protocol, Tuple, Type, TypeVar

import httpx

from idcore.config import Settings
from idcore.logging import get_logger, mask_phone
from idcore.storage.models import OtpChannel

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_MS = 1000  # doubles each retry: 1s, 2s, 4s


class TransientDeliveryError(Exception):
    """Provider failure worth retrying (throttling, 5xx, network)."""


class SmsGateway(Protocol):
    async def send_otp(self, phone: str, code: str, channel: OtpChannel) -> bool: ...


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
    multiplier: float = 2.0,
    retry_on: Tuple[Type[BaseException], ...] = (TransientDeliveryError,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    operation_name: str = "operation",
) -> T:
    """Run ``operation``, retrying only on ``retry_on`` with exponential backoff.

    Any other exception propagates immediately. After ``max_attempts`` the
    last transient error is re-raised.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except retry_on as exc:
            if attempt >= max_attempts:
                logger.warning(
                    "retry_exhausted",
                    operation=operation_name,
                    attempts=attempt,
                    error=str(exc),
                )
                raise
            backoff_ms = base_delay_ms * (multiplier ** (attempt - 1))
            logger.warning(
                "retry_backoff",
                operation=operation_name,
                attempt=attempt,
                max_attempts=max_attempts,
                backoff_ms=backoff_ms,
                error=str(exc),
            )
            await sleep(backoff_ms / 1000.0)


class LoggingSmsGateway:
    """Development fallback: logs the code instead of sending it."""

    supports_whatsapp = True

    async def send_otp(self, phone: str, code: str, channel: OtpChannel) -> bool:
        logger.info(
            "sms_dev_mode",
            to=mask_phone(phone),
            channel=OtpChannel(channel).value,
            dev_preview=code,
        )
        return True


class HttpSmsGateway:
    """Form-encoded HTTP SMS provider client (SMS Misr style API).

    Success is a 2xx response whose JSON body reports ``status: success``.
    Throttling (429), 5xx and transport errors are transient and retried;
    other 4xx responses are a definitive ``False``.
    """

    supports_whatsapp = False

    def __init__(
        self,
        *,
        api_url: str,
        username: str,
        password: str,
        sender_id: Optional[str] = None,
        message_template: str = "Your verification code is {code}",
        language: str = "1",
        timeout_seconds: float = 10.0,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
        max_concurrency: int = 10,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.api_url = api_url
        self.username = username
        self.password = password
        self.sender_id = sender_id
        self.message_template = message_template
        self.language = language
        self.max_attempts = max_attempts
        self.base_delay_ms = base_delay_ms
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._owns_client = client is None
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "HttpSmsGateway":
        return cls(
            api_url=settings.sms_api_url,
            username=settings.sms_username,
            password=settings.sms_password,
            sender_id=settings.sms_sender_id,
            message_template=settings.sms_otp_template,
            language=settings.sms_language,
            timeout_seconds=settings.sms_timeout_seconds,
            max_attempts=settings.sms_max_attempts,
            base_delay_ms=settings.sms_base_delay_ms,
            max_concurrency=settings.sms_max_concurrency,
            **kwargs,
        )

    @staticmethod
    def to_local_format(phone: str) -> str:
        """Egyptian E.164 numbers (+20...) are sent in national 0-prefixed form."""
        if phone.startswith("+20"):
            return "0" + phone[3:]
        if phone.startswith("20") and len(phone) == 12:
            return "0" + phone[2:]
        return phone

    async def _post_once(self, phone: str, message: str) -> bool:
        form = {
            "username": self.username,
            "password": self.password,
            "sender": self.sender_id or "",
            "mobile": self.to_local_format(phone),
            "message": message,
            "language": self.language,
        }
        try:
            response = await self._client.post(self.api_url, data=form)
        except httpx.TransportError as exc:
            raise TransientDeliveryError(f"transport error: {type(exc).__name__}") from exc
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientDeliveryError(f"provider returned {response.status_code}")
        if response.status_code >= 400:
            logger.warning(
                "sms_rejected", to=mask_phone(phone), status_code=response.status_code
            )
            return False
        try:
            body = response.json()
        except ValueError:
            body = {}
        delivered = str(body.get("status", "")).lower() == "success"
        if not delivered:
            logger.warning(
                "sms_provider_failure", to=mask_phone(phone), provider_status=body.get("status")
            )
        return delivered

    async def send_otp(self, phone: str, code: str, channel: OtpChannel) -> bool:
        if OtpChannel(channel) is OtpChannel.WHATSAPP:
            logger.info("sms_whatsapp_unsupported", to=mask_phone(phone), fallback="SMS")
        message = self.message_template.format(code=code)
        async with self._semaphore:
            try:
                delivered = await retry_with_backoff(
                    lambda: self._post_once(phone, message),
                    max_attempts=self.max_attempts,
                    base_delay_ms=self.base_delay_ms,
                    sleep=self._sleep,
                    operation_name="sms_send",
                )
            except TransientDeliveryError as exc:
                logger.error("sms_delivery_failed", to=mask_phone(phone), error=str(exc))
                return False
        if delivered:
            logger.info("sms_sent", to=mask_phone(phone))
        return delivered

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def build_sms_gateway(settings: Settings) -> SmsGateway:
    if settings.sms_configured:
        return HttpSmsGateway.from_settings(settings)
    logger.warning("sms_gateway_not_configured", message="OTP codes will be logged, not sent")
    return LoggingSmsGateway()
