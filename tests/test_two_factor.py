"""Tests for TOTP enrollment, verification and recovery codes."""

import base64
import re

import pyotp
import pytest

from idcore.service.errors import AuthError, ErrorKind
from idcore.service.two_factor import qr_code_data_uri
from idcore.storage.models import AuthEventType, TwoFactorState

RECOVERY_CODE_PATTERN = re.compile(r"^[a-z0-9]{4}-[a-z0-9]{4}-[a-z0-9]{4}-[a-z0-9]{4}$")


@pytest.fixture
def admin_user(store):
    return store.create_user("admin@example.com", role="ADMIN")


def _now_code(secret):
    return pyotp.TOTP(secret).now()


@pytest.fixture
def enrolled(two_factor, admin_user):
    setup = two_factor.initiate_setup(admin_user)
    two_factor.confirm_setup(admin_user.id, _now_code(setup.secret))
    return setup


class TestSetup:
    """NOT_SET_UP -> PENDING_CONFIRMATION -> ENABLED."""

    def test_initial_status(self, two_factor, admin_user):
        status = two_factor.status(admin_user.id)
        assert status.state is TwoFactorState.NOT_SET_UP
        assert status.to_dict() == {
            "enabled": False,
            "pending_confirmation": False,
            "recovery_codes_remaining": 0,
            "enabled_at": None,
        }

    def test_initiate_returns_secret_uri_qr_and_codes(self, two_factor, admin_user):
        setup = two_factor.initiate_setup(admin_user)

        assert len(setup.secret) == 32
        assert base64.b32decode(setup.secret)  # valid base32, 160 bits
        assert setup.otpauth_uri.startswith("otpauth://totp/")
        assert "issuer=Zaed" in setup.otpauth_uri
        assert setup.qr_code.startswith("data:image/svg+xml;base64,")
        assert len(setup.recovery_codes) == 10
        assert len(set(setup.recovery_codes)) == 10
        assert all(RECOVERY_CODE_PATTERN.match(code) for code in setup.recovery_codes)
        assert two_factor.status(admin_user.id).state is TwoFactorState.PENDING_CONFIRMATION

    def test_secret_and_codes_are_not_stored_in_clear(self, two_factor, store, admin_user):
        setup = two_factor.initiate_setup(admin_user)

        raw = store.two_factor[admin_user.id]
        assert raw.secret != setup.secret
        assert not set(setup.recovery_codes) & set(raw.recovery_codes)

    def test_confirm_enables(self, two_factor, admin_user, store):
        setup = two_factor.initiate_setup(admin_user)
        two_factor.confirm_setup(admin_user.id, _now_code(setup.secret))

        status = two_factor.status(admin_user.id)
        assert status.enabled
        assert status.enabled_at is not None
        assert status.recovery_codes_remaining == 10
        assert store.list_audit_events(AuthEventType.TWO_FA_ENABLED)

    def test_confirm_with_bad_code_leaves_state(self, two_factor, admin_user):
        two_factor.initiate_setup(admin_user)

        with pytest.raises(AuthError) as excinfo:
            two_factor.confirm_setup(admin_user.id, "abcdef")
        assert excinfo.value.kind is ErrorKind.INVALID_CODE
        assert two_factor.status(admin_user.id).state is TwoFactorState.PENDING_CONFIRMATION

    def test_confirm_without_initiate(self, two_factor, admin_user):
        with pytest.raises(AuthError) as excinfo:
            two_factor.confirm_setup(admin_user.id, "123456")
        assert excinfo.value.kind is ErrorKind.TWO_FACTOR_NOT_INITIATED

    def test_initiate_when_enabled(self, two_factor, admin_user, enrolled):
        with pytest.raises(AuthError) as excinfo:
            two_factor.initiate_setup(admin_user)
        assert excinfo.value.kind is ErrorKind.TWO_FACTOR_ALREADY_ENABLED
        assert excinfo.value.status_code == 409

    def test_restarting_setup_replaces_secret(self, two_factor, admin_user):
        first = two_factor.initiate_setup(admin_user)
        second = two_factor.initiate_setup(admin_user)

        assert first.secret != second.secret
        two_factor.confirm_setup(admin_user.id, _now_code(second.secret))
        assert two_factor.is_enabled(admin_user.id)


class TestVerification:
    def test_verify_code(self, two_factor, admin_user, enrolled):
        assert two_factor.verify_code(admin_user.id, _now_code(enrolled.secret))
        assert not two_factor.verify_code(admin_user.id, "12345")
        assert not two_factor.verify_code(admin_user.id, "abcdef")

    def test_adjacent_window_accepted(self, two_factor, admin_user, enrolled):
        import time

        previous = pyotp.TOTP(enrolled.secret).at(time.time() - 30)
        assert two_factor.verify_code(admin_user.id, previous)

    def test_requires_enabled(self, two_factor, admin_user):
        with pytest.raises(AuthError) as excinfo:
            two_factor.verify_code(admin_user.id, "123456")
        assert excinfo.value.kind is ErrorKind.TWO_FACTOR_NOT_ENABLED

    def test_recovery_code_is_single_use(self, two_factor, admin_user, enrolled, store):
        code = enrolled.recovery_codes[3]

        assert two_factor.verify_recovery_code(admin_user.id, code.upper())
        assert not two_factor.verify_recovery_code(admin_user.id, code)
        assert two_factor.status(admin_user.id).recovery_codes_remaining == 9
        assert len(store.list_audit_events(AuthEventType.BACKUP_CODE_USED)) == 1

    def test_unknown_recovery_code(self, two_factor, admin_user, enrolled):
        assert not two_factor.verify_recovery_code(admin_user.id, "aaaa-bbbb-cccc-dddd")
        assert not two_factor.verify_recovery_code(admin_user.id, "")


class TestDisableAndRegenerate:
    def test_disable_needs_totp(self, two_factor, admin_user, enrolled):
        with pytest.raises(AuthError) as excinfo:
            two_factor.disable(admin_user.id, enrolled.recovery_codes[0])
        assert excinfo.value.kind is ErrorKind.INVALID_CODE
        assert two_factor.is_enabled(admin_user.id)

    def test_disable_clears_everything(self, two_factor, admin_user, enrolled, store):
        two_factor.disable(admin_user.id, _now_code(enrolled.secret))

        assert two_factor.status(admin_user.id).state is TwoFactorState.NOT_SET_UP
        record = store.get_two_factor(admin_user.id)
        assert record.secret is None
        assert record.recovery_codes == []
        assert store.list_audit_events(AuthEventType.TWO_FA_DISABLED)

    def test_disable_when_not_enabled(self, two_factor, admin_user):
        with pytest.raises(AuthError) as excinfo:
            two_factor.disable(admin_user.id, "123456")
        assert excinfo.value.kind is ErrorKind.TWO_FACTOR_NOT_ENABLED

    def test_regenerate_replaces_codes(self, two_factor, admin_user, enrolled):
        new_codes = two_factor.regenerate_recovery_codes(
            admin_user.id, _now_code(enrolled.secret)
        )

        assert len(new_codes) == 10
        assert not set(new_codes) & set(enrolled.recovery_codes)
        assert not two_factor.verify_recovery_code(admin_user.id, enrolled.recovery_codes[0])
        assert two_factor.verify_recovery_code(admin_user.id, new_codes[0])

    def test_regenerate_needs_totp(self, two_factor, admin_user, enrolled):
        with pytest.raises(AuthError) as excinfo:
            two_factor.regenerate_recovery_codes(admin_user.id, "abcdef")
        assert excinfo.value.kind is ErrorKind.INVALID_CODE


def test_qr_code_data_uri_is_svg():
    uri = qr_code_data_uri("otpauth://totp/Zaed:admin%40example.com?secret=ABC&issuer=Zaed")
    svg = base64.b64decode(uri.split(",", 1)[1])
    assert b"svg" in svg[:200]
