"""Unit tests for the auth service.

Tests for:
- Password login and the pass-through vs 2FA challenge decision
- Email, IP and credential lockout
- 2FA login completion with TOTP and recovery codes, and its lockout
- Access-token authentication, provisioning and password change
"""

import pyotp
import pytest

from idcore.service.errors import AuthError, ErrorKind, ValidationError
from idcore.service.tokens import TokenType
from idcore.storage.models import AuthEventType, RevokeReason, UserRole

PASSWORD = "TestPassword123!"


def _enable_two_factor(two_factor, user):
    setup = two_factor.initiate_setup(user)
    two_factor.confirm_setup(user.id, pyotp.TOTP(setup.secret).now())
    return setup


class TestLogin:
    """Tests for password login."""

    async def test_login_without_two_factor_issues_tokens(self, auth, partner, store, tokens):
        result = await auth.login("partner@example.com", PASSWORD, ip="10.0.0.1")

        assert result.requires_2fa is False
        assert result.tokens.access_token
        assert result.tokens.refresh_token
        assert result.tokens.expires_in == 3600
        assert result.user.id == partner.id
        assert result.user.partner_id == "partner-1"

        payload = result.to_dict()
        assert "requires_2fa" not in payload
        assert "temp_token" not in payload
        assert payload["token_type"] == "Bearer"
        assert payload["user"]["role"] == "PARTNER_PHARMACY"

        claims = tokens.verify(result.tokens.access_token, TokenType.ACCESS)
        assert claims["sub"] == partner.id
        assert store.get_user(partner.id).last_login_at is not None
        assert store.count_audit_events(
            AuthEventType.LOGIN_SUCCESS, since=partner.created_at
        ) == 1

    async def test_email_is_normalized(self, auth, partner):
        result = await auth.login("  Partner@Example.COM ", PASSWORD)
        assert result.user.id == partner.id

    async def test_device_info_defaults_to_user_agent(self, auth, partner, store):
        await auth.login("partner@example.com", PASSWORD, user_agent="Mozilla/5.0")
        await auth.login(
            "partner@example.com",
            PASSWORD,
            device_info="Pixel 8",
            user_agent="Mozilla/5.0",
        )

        records = store.list_refresh_tokens(partner.id)
        assert sorted(r.device_info for r in records) == ["Mozilla/5.0", "Pixel 8"]

    async def test_wrong_password_and_unknown_email_look_identical(self, auth, partner, store):
        with pytest.raises(AuthError) as wrong_password:
            await auth.login("partner@example.com", "not-the-password")
        with pytest.raises(AuthError) as unknown_user:
            await auth.login("nobody@example.com", PASSWORD)

        assert wrong_password.value.kind is ErrorKind.INVALID_CREDENTIALS
        assert unknown_user.value.kind is ErrorKind.INVALID_CREDENTIALS
        assert wrong_password.value.message == unknown_user.value.message

        reasons = {e.failure_reason for e in store.list_audit_events(AuthEventType.LOGIN_FAILED)}
        assert reasons == {"INVALID_PASSWORD", "USER_NOT_FOUND"}

    async def test_inactive_account_rejected(self, auth, partner, store):
        store.set_user_active(partner.id, False)

        with pytest.raises(AuthError) as excinfo:
            await auth.login("partner@example.com", PASSWORD)
        assert excinfo.value.kind is ErrorKind.ACCOUNT_DISABLED
        assert excinfo.value.status_code == 403

    async def test_must_change_password_is_reported(self, auth):
        auth.provision_user(
            "fresh@example.com",
            PASSWORD,
            role=UserRole.PARTNER_VOLUNTEER,
            must_change_password=True,
        )
        result = await auth.login("fresh@example.com", PASSWORD)

        assert result.must_change_password is True
        assert result.to_dict()["must_change_password"] is True

    async def test_success_clears_credential_failures(self, auth, partner, store):
        with pytest.raises(AuthError):
            await auth.login("partner@example.com", "wrong-password")
        assert store.get_credential(partner.id).failed_attempts == 1

        await auth.login("partner@example.com", PASSWORD)
        assert store.get_credential(partner.id).failed_attempts == 0

    async def test_two_factor_account_gets_challenge(self, auth, admin, two_factor, tokens):
        _enable_two_factor(two_factor, admin)

        result = await auth.login("admin@example.com", PASSWORD)

        assert result.requires_2fa is True
        assert result.tokens is None
        assert result.methods == ["TOTP", "RECOVERY_CODE"]
        assert result.temp_token_expires_in == 300
        claims = tokens.verify(result.temp_token, TokenType.TWO_FACTOR_PENDING)
        assert claims["sub"] == admin.id
        assert result.to_dict() == {
            "requires_2fa": True,
            "temp_token": result.temp_token,
            "expires_in": 300,
            "methods": ["TOTP", "RECOVERY_CODE"],
        }


class TestLockout:
    """Tests for failure-window lockout."""

    async def test_five_failures_lock_the_email(self, auth, partner, store):
        for _ in range(5):
            with pytest.raises(AuthError) as excinfo:
                await auth.login("partner@example.com", "wrong-password", ip="10.0.0.1")
            assert excinfo.value.kind is ErrorKind.INVALID_CREDENTIALS

        with pytest.raises(AuthError) as excinfo:
            await auth.login("partner@example.com", PASSWORD, ip="10.0.0.2")

        assert excinfo.value.kind is ErrorKind.RATE_LIMITED
        assert excinfo.value.status_code == 429
        assert 60 <= excinfo.value.retry_after <= 900
        assert excinfo.value.detail["retry_after"] == excinfo.value.retry_after
        assert store.list_audit_events(AuthEventType.ACCOUNT_LOCKED)

    async def test_four_failures_still_allow_login(self, auth, partner):
        for _ in range(4):
            with pytest.raises(AuthError):
                await auth.login("partner@example.com", "wrong-password")

        result = await auth.login("partner@example.com", PASSWORD)
        assert result.tokens is not None

    async def test_ten_failures_lock_the_ip(self, auth, partner):
        for i in range(10):
            with pytest.raises(AuthError) as excinfo:
                await auth.login(f"unknown{i}@example.com", PASSWORD, ip="203.0.113.9")
            assert excinfo.value.kind is ErrorKind.INVALID_CREDENTIALS

        with pytest.raises(AuthError) as excinfo:
            await auth.login("partner@example.com", PASSWORD, ip="203.0.113.9")
        assert excinfo.value.kind is ErrorKind.RATE_LIMITED
        assert excinfo.value.retry_after == 900

        # Other addresses are unaffected
        result = await auth.login("partner@example.com", PASSWORD, ip="198.51.100.1")
        assert result.tokens is not None

    async def test_locked_credential_is_rate_limited(self, auth, partner, store):
        from datetime import datetime, timedelta, timezone

        store.record_login_failure(
            partner.id,
            threshold=1,
            lockout=timedelta(minutes=15),
            now=datetime.now(timezone.utc),
        )

        with pytest.raises(AuthError) as excinfo:
            await auth.login("partner@example.com", PASSWORD)
        assert excinfo.value.kind is ErrorKind.RATE_LIMITED
        assert 0 < excinfo.value.retry_after <= 900


class TestVerifyTwoFactor:
    """Tests for completing a challenged login."""

    async def test_totp_completes_login(self, auth, admin, two_factor, store):
        setup = _enable_two_factor(two_factor, admin)
        challenge = await auth.login("admin@example.com", PASSWORD)

        result = await auth.verify_2fa(
            challenge.temp_token, code=pyotp.TOTP(setup.secret).now(), ip="10.0.0.1"
        )

        assert result.tokens.access_token
        assert result.user.role is UserRole.ADMIN
        success = store.list_audit_events(AuthEventType.TWO_FACTOR_SUCCESS)
        assert [e.details for e in success] == ["totp"]

    async def test_recovery_code_completes_login_once(self, auth, admin, two_factor):
        setup = _enable_two_factor(two_factor, admin)
        code = setup.recovery_codes[0]

        first = await auth.login("admin@example.com", PASSWORD)
        result = await auth.verify_2fa(first.temp_token, recovery_code=code)
        assert result.tokens is not None

        second = await auth.login("admin@example.com", PASSWORD)
        with pytest.raises(AuthError) as excinfo:
            await auth.verify_2fa(second.temp_token, recovery_code=code)
        assert excinfo.value.kind is ErrorKind.INVALID_CODE

    async def test_wrong_code_is_invalid_code(self, auth, admin, two_factor, store):
        _enable_two_factor(two_factor, admin)
        challenge = await auth.login("admin@example.com", PASSWORD)

        with pytest.raises(AuthError) as excinfo:
            await auth.verify_2fa(challenge.temp_token, code="abcdef")
        assert excinfo.value.kind is ErrorKind.INVALID_CODE
        assert store.list_audit_events(AuthEventType.TWO_FACTOR_FAILED)

    async def test_access_token_is_not_a_pending_token(self, auth, partner):
        result = await auth.login("partner@example.com", PASSWORD)

        with pytest.raises(AuthError) as excinfo:
            await auth.verify_2fa(result.tokens.access_token, code="123456")
        assert excinfo.value.kind is ErrorKind.INVALID_TOKEN

    async def test_repeated_failures_lock_two_factor(self, auth, admin, two_factor, clock):
        setup = _enable_two_factor(two_factor, admin)
        challenge = await auth.login("admin@example.com", PASSWORD)

        for _ in range(5):
            with pytest.raises(AuthError) as excinfo:
                await auth.verify_2fa(challenge.temp_token, code="abcdef")
            assert excinfo.value.kind is ErrorKind.INVALID_CODE

        with pytest.raises(AuthError) as excinfo:
            await auth.verify_2fa(challenge.temp_token, code=pyotp.TOTP(setup.secret).now())
        assert excinfo.value.kind is ErrorKind.RATE_LIMITED
        assert excinfo.value.retry_after == 300

        clock.advance(301)
        result = await auth.verify_2fa(
            challenge.temp_token, code=pyotp.TOTP(setup.secret).now()
        )
        assert result.tokens is not None

    async def test_disabled_account_cannot_finish(self, auth, admin, two_factor, store):
        setup = _enable_two_factor(two_factor, admin)
        challenge = await auth.login("admin@example.com", PASSWORD)
        store.set_user_active(admin.id, False)

        with pytest.raises(AuthError) as excinfo:
            await auth.verify_2fa(challenge.temp_token, code=pyotp.TOTP(setup.secret).now())
        assert excinfo.value.kind is ErrorKind.ACCOUNT_DISABLED

    async def test_two_factor_disabled_mid_challenge_is_invalid_code(
        self, auth, admin, two_factor, store
    ):
        setup = _enable_two_factor(two_factor, admin)
        challenge = await auth.login("admin@example.com", PASSWORD)
        two_factor.disable(admin.id, pyotp.TOTP(setup.secret).now())

        with pytest.raises(AuthError) as excinfo:
            await auth.verify_2fa(challenge.temp_token, code="123456")
        assert excinfo.value.kind is ErrorKind.INVALID_CODE

        failures = store.list_audit_events(AuthEventType.TWO_FACTOR_FAILED)
        assert len(failures) == 1
        assert failures[0].failure_reason == "INVALID_CODE"
        assert failures[0].user_id == admin.id

    async def test_recovery_code_after_two_factor_disabled_counts_as_failure(
        self, auth, admin, two_factor, store
    ):
        setup = _enable_two_factor(two_factor, admin)
        challenge = await auth.login("admin@example.com", PASSWORD)
        two_factor.disable(admin.id, pyotp.TOTP(setup.secret).now())

        with pytest.raises(AuthError) as excinfo:
            await auth.verify_2fa(
                challenge.temp_token, recovery_code=setup.recovery_codes[0]
            )
        assert excinfo.value.kind is ErrorKind.INVALID_CODE
        failures = store.list_audit_events(AuthEventType.TWO_FACTOR_FAILED)
        assert [e.details for e in failures] == ["recovery"]

    async def test_recovery_code_use_is_audited_with_client(
        self, auth, admin, two_factor, store
    ):
        setup = _enable_two_factor(two_factor, admin)
        challenge = await auth.login("admin@example.com", PASSWORD)

        await auth.verify_2fa(
            challenge.temp_token,
            recovery_code=setup.recovery_codes[0],
            ip="10.0.0.9",
            user_agent="RecoveryAgent/1.0",
        )

        used = store.list_audit_events(AuthEventType.BACKUP_CODE_USED)
        assert len(used) == 1
        assert used[0].ip_address == "10.0.0.9"
        assert used[0].user_agent == "RecoveryAgent/1.0"

    async def test_session_device_info_falls_back_to_user_agent(
        self, auth, admin, two_factor, store
    ):
        setup = _enable_two_factor(two_factor, admin)
        challenge = await auth.login("admin@example.com", PASSWORD)

        await auth.verify_2fa(
            challenge.temp_token,
            code=pyotp.TOTP(setup.secret).now(),
            user_agent="Mozilla/5.0",
        )

        records = store.list_refresh_tokens(admin.id)
        assert [r.device_info for r in records] == ["Mozilla/5.0"]


class TestAuthenticate:
    async def test_bearer_access_token_resolves_principal(self, auth, partner):
        result = await auth.login("partner@example.com", PASSWORD)

        ctx = auth.authenticate(f"Bearer {result.tokens.access_token}")

        assert ctx.user_id == partner.id
        assert ctx.role is UserRole.PARTNER_PHARMACY
        assert ctx.partner_id == "partner-1"
        assert ctx.has_permission("PARTNER_DASHBOARD_VIEW")

    async def test_refresh_token_is_not_accepted(self, auth, partner):
        result = await auth.login("partner@example.com", PASSWORD)

        with pytest.raises(AuthError) as excinfo:
            auth.authenticate(f"Bearer {result.tokens.refresh_token}")
        assert excinfo.value.kind is ErrorKind.INVALID_TOKEN

    def test_missing_header(self, auth):
        with pytest.raises(AuthError):
            auth.authenticate(None)


class TestProvisioning:
    def test_short_password_rejected(self, auth):
        with pytest.raises(ValidationError):
            auth.provision_user("short@example.com", "short", role=UserRole.PARTNER_NGO)

    def test_otp_roles_cannot_hold_passwords(self, auth):
        with pytest.raises(ValidationError):
            auth.provision_user("donor@example.com", PASSWORD, role=UserRole.DONOR)

    def test_account_created_is_audited(self, auth, partner, store):
        events = store.list_audit_events(AuthEventType.ACCOUNT_CREATED)
        assert [e.user_id for e in events] == [partner.id]


class TestChangePassword:
    async def test_change_password_revokes_sessions(self, auth, partner, store):
        await auth.login("partner@example.com", PASSWORD)
        await auth.login("partner@example.com", PASSWORD)

        revoked = auth.change_password(partner.id, PASSWORD, "BrandNewPassword1!")

        assert revoked == 2
        records = store.list_refresh_tokens(partner.id)
        assert {r.revoke_reason for r in records} == {RevokeReason.PASSWORD_CHANGED}
        result = await auth.login("partner@example.com", "BrandNewPassword1!")
        assert result.tokens is not None

    def test_wrong_current_password(self, auth, partner):
        with pytest.raises(AuthError) as excinfo:
            auth.change_password(partner.id, "wrong-password", "BrandNewPassword1!")
        assert excinfo.value.kind is ErrorKind.INVALID_CREDENTIALS

    def test_new_password_too_short(self, auth, partner):
        with pytest.raises(ValidationError):
            auth.change_password(partner.id, PASSWORD, "short")

    async def test_change_clears_must_change_flag(self, auth):
        user = auth.provision_user(
            "temp@example.com", PASSWORD, role=UserRole.PARTNER_NGO, must_change_password=True
        )
        auth.change_password(user.id, PASSWORD, "BrandNewPassword1!")

        result = await auth.login("temp@example.com", "BrandNewPassword1!")
        assert result.must_change_password is False
