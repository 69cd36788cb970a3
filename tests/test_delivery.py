"""Tests for SMS delivery: retry with backoff and the HTTP gateway."""

from urllib.parse import parse_qs

import httpx
import pytest

from idcore.service.delivery import (
    HttpSmsGateway,
    LoggingSmsGateway,
    TransientDeliveryError,
    build_sms_gateway,
    retry_with_backoff,
)
from idcore.storage.models import OtpChannel


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.fixture
def sleeper():
    return SleepRecorder()


class TestRetryWithBackoff:
    async def test_retries_transient_then_succeeds(self, sleeper):
        calls = []

        async def operation():
            calls.append(1)
            if len(calls) < 3:
                raise TransientDeliveryError("busy")
            return "ok"

        result = await retry_with_backoff(operation, base_delay_ms=1000, sleep=sleeper)

        assert result == "ok"
        assert len(calls) == 3
        assert sleeper.delays == [1.0, 2.0]

    async def test_exhaustion_reraises(self, sleeper):
        calls = []

        async def operation():
            calls.append(1)
            raise TransientDeliveryError("down")

        with pytest.raises(TransientDeliveryError):
            await retry_with_backoff(operation, max_attempts=4, base_delay_ms=100, sleep=sleeper)
        assert len(calls) == 4
        assert sleeper.delays == [0.1, 0.2, 0.4]

    async def test_other_errors_are_not_retried(self, sleeper):
        calls = []

        async def operation():
            calls.append(1)
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            await retry_with_backoff(operation, sleep=sleeper)
        assert len(calls) == 1
        assert sleeper.delays == []


def _gateway(handler, sleeper, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpSmsGateway(
        api_url="https://sms.example.test/send",
        username="zaed",
        password="s3cret",
        sender_id="Zaed",
        message_template="Code: {code}",
        client=client,
        sleep=sleeper,
        **kwargs,
    )


class TestHttpSmsGateway:
    async def test_success_posts_local_number(self, sleeper):
        seen = []

        def handler(request):
            seen.append(parse_qs(request.content.decode()))
            return httpx.Response(200, json={"status": "success"})

        gateway = _gateway(handler, sleeper)
        assert await gateway.send_otp("+201234567890", "123456", OtpChannel.SMS) is True

        form = seen[0]
        assert form["mobile"] == ["01234567890"]
        assert form["message"] == ["Code: 123456"]
        assert form["username"] == ["zaed"]
        assert form["sender"] == ["Zaed"]
        assert form["language"] == ["1"]

    async def test_server_errors_are_retried(self, sleeper):
        responses = iter([503, 429, 200])

        def handler(request):
            status = next(responses)
            if status == 200:
                return httpx.Response(200, json={"status": "success"})
            return httpx.Response(status)

        gateway = _gateway(handler, sleeper)
        assert await gateway.send_otp("+201234567890", "123456", OtpChannel.SMS) is True
        assert sleeper.delays == [1.0, 2.0]

    async def test_network_errors_are_retried_then_give_up(self, sleeper):
        calls = []

        def handler(request):
            calls.append(1)
            raise httpx.ConnectError("refused", request=request)

        gateway = _gateway(handler, sleeper, max_attempts=2, base_delay_ms=10)
        assert await gateway.send_otp("+201234567890", "123456", OtpChannel.SMS) is False
        assert len(calls) == 2

    async def test_client_errors_are_final(self, sleeper):
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(400, json={"status": "error"})

        gateway = _gateway(handler, sleeper)
        assert await gateway.send_otp("+201234567890", "123456", OtpChannel.SMS) is False
        assert len(calls) == 1
        assert sleeper.delays == []

    async def test_provider_failure_status(self, sleeper):
        gateway = _gateway(
            lambda request: httpx.Response(200, json={"status": "failed"}), sleeper
        )
        assert await gateway.send_otp("+201234567890", "123456", OtpChannel.SMS) is False

    async def test_whatsapp_falls_back_to_sms(self, sleeper):
        gateway = _gateway(
            lambda request: httpx.Response(200, json={"status": "success"}), sleeper
        )
        assert await gateway.send_otp("+201234567890", "123456", OtpChannel.WHATSAPP) is True

    @pytest.mark.parametrize(
        "phone,expected",
        [
            ("+201234567890", "01234567890"),
            ("201234567890", "01234567890"),
            ("01234567890", "01234567890"),
            ("+14155550100", "+14155550100"),
        ],
    )
    def test_to_local_format(self, phone, expected):
        assert HttpSmsGateway.to_local_format(phone) == expected


class TestGatewaySelection:
    async def test_logging_gateway_always_delivers(self):
        assert await LoggingSmsGateway().send_otp("+201234567890", "123456", OtpChannel.SMS)

    def test_unconfigured_settings_use_logging_gateway(self, settings):
        assert isinstance(build_sms_gateway(settings), LoggingSmsGateway)

    def test_configured_settings_use_http_gateway(self, settings):
        configured = settings.model_copy(
            update={
                "sms_api_url": "https://sms.example.test/send",
                "sms_username": "zaed",
                "sms_password": "s3cret",
            }
        )
        assert isinstance(build_sms_gateway(configured), HttpSmsGateway)
