"""Tests for session, password, token, permission and email verification flows."""

import pytest

from authguard.service.errors import (
    ConflictError,
    EmailNotVerifiedError,
    InsufficientPermissionsError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    RateLimitExceededError,
    ValidationError,
    WeakPasswordError,
)
from authguard.service.otp import generate_totp
from authguard.service.outcomes import LoginSuccess
from authguard.service.tokens import TenantContext
from authguard.storage.models import PrincipalStatus, RiskLevel, SecurityEventType
from conftest import PASSWORD

NEW_PASSWORD = "Battery-Staple-2"


async def _login(service, principal, ip="10.0.0.1", password=PASSWORD):
    return await service.login(principal.email, password, ip, "pytest")


class TestLogout:
    async def test_statuses(self, service, store, principal):
        result = await _login(service, principal)

        assert await service.logout(result.session_id, principal.id) == "success"
        assert await service.logout(result.session_id, principal.id) == "already_inactive"
        assert await service.logout("missing", principal.id) == "session_not_found"

        events = store.list_security_events(principal.id, event_type=SecurityEventType.LOGOUT)
        assert [e.details["status"] for e in reversed(events)] == [
            "success",
            "already_inactive",
            "session_not_found",
        ]
        assert all(e.risk_level == RiskLevel.LOW for e in events)

    async def test_cannot_end_another_principals_session(
        self, service, store, principal, make_principal
    ):
        other = make_principal("bob@example.com")
        result = await _login(service, principal)

        assert await service.logout(result.session_id, other.id) == "session_not_found"
        assert store.get_session(result.session_id).is_active

    async def test_logout_all(self, service, store, principal):
        for i in range(3):
            await _login(service, principal, ip=f"10.0.0.{i}")

        assert await service.logout_all(principal.id) == 3
        assert store.count_active_sessions(principal.id) == 0
        event = store.list_security_events(principal.id, event_type=SecurityEventType.LOGOUT)[0]
        assert event.details == {"action": "logout_all", "sessions_invalidated": 3}
        assert event.risk_level == RiskLevel.MEDIUM


class TestChangePassword:
    async def test_change_invalidates_sessions_and_notifies(
        self, service, store, notifier, principal
    ):
        await _login(service, principal)

        await service.change_password(principal.id, PASSWORD, NEW_PASSWORD)

        assert store.count_active_sessions(principal.id) == 0
        assert notifier.sent[-1][0] == "password_changed"
        with pytest.raises(InvalidCredentialsError):
            await _login(service, principal, ip="10.0.0.2")
        assert isinstance(
            await _login(service, principal, ip="10.0.0.3", password=NEW_PASSWORD), LoginSuccess
        )
        event = store.list_security_events(
            principal.id, event_type=SecurityEventType.PASSWORD_CHANGE
        )[0]
        assert event.details == {"sessions_invalidated": 1}

    async def test_wrong_current_password(self, service, principal):
        with pytest.raises(InvalidCredentialsError):
            await service.change_password(principal.id, "Wrong-Password-1", NEW_PASSWORD)

    async def test_weak_new_password(self, service, principal):
        with pytest.raises(WeakPasswordError) as excinfo:
            await service.change_password(principal.id, PASSWORD, "alllowercase")
        assert "must contain an uppercase letter" in excinfo.value.detail["problems"]

    async def test_new_password_must_differ(self, service, principal):
        with pytest.raises(WeakPasswordError):
            await service.change_password(principal.id, PASSWORD, PASSWORD)

    async def test_unknown_principal(self, service):
        with pytest.raises(NotFoundError):
            await service.change_password("missing", PASSWORD, NEW_PASSWORD)


class TestPasswordReset:
    async def test_reset_flow(self, service, store, notifier, principal):
        await _login(service, principal)

        await service.forgot_password(principal.email)
        payload = notifier.last("password_reset")
        assert payload["expires_minutes"] == 15
        assert payload["reset_url"].endswith(payload["token"])

        await service.reset_password(payload["token"], NEW_PASSWORD)

        assert store.count_active_sessions(principal.id) == 0
        assert isinstance(
            await _login(service, principal, ip="10.0.0.2", password=NEW_PASSWORD), LoginSuccess
        )
        actions = [
            e.details["action"]
            for e in store.list_security_events(
                principal.id, event_type=SecurityEventType.PASSWORD_RESET
            )
        ]
        assert actions == ["completed", "requested"]

    async def test_token_is_single_use(self, service, notifier, principal):
        await service.forgot_password(principal.email)
        token = notifier.last("password_reset")["token"]
        await service.reset_password(token, NEW_PASSWORD)

        with pytest.raises(InvalidTokenError):
            await service.reset_password(token, "Another-Password-3")

    async def test_token_expires(self, service, notifier, principal, clock):
        await service.forgot_password(principal.email)
        token = notifier.last("password_reset")["token"]
        clock.advance(minutes=16)

        with pytest.raises(InvalidTokenError):
            await service.reset_password(token, NEW_PASSWORD)

    async def test_weak_password_leaves_token_usable(self, service, notifier, principal):
        await service.forgot_password(principal.email)
        token = notifier.last("password_reset")["token"]

        with pytest.raises(WeakPasswordError):
            await service.reset_password(token, "weak")
        await service.reset_password(token, NEW_PASSWORD)

    async def test_unknown_email_is_silent(self, service, notifier):
        await service.forgot_password("nobody@example.com")
        assert notifier.sent == []

    async def test_invalid_email_rejected(self, service):
        with pytest.raises(ValidationError):
            await service.forgot_password("nope")

    async def test_three_requests_per_day(self, service, store, notifier, principal, clock):
        for _ in range(3):
            await service.forgot_password(principal.email)

        with pytest.raises(RateLimitExceededError):
            await service.forgot_password(principal.email)
        assert len(notifier.sent) == 3
        failed = store.list_security_events(
            principal.id, event_type=SecurityEventType.FAILED_LOGIN
        )
        assert failed[0].details == {"reason": "password_reset_rate_limited"}

        clock.advance(hours=24, seconds=1)
        await service.forgot_password(principal.email)
        assert len(notifier.sent) == 4


class TestTwoFactorManagement:
    async def test_setup_twice_conflicts(self, service, principal, clock):
        setup = await service.setup_2fa(principal.id)
        await service.confirm_2fa_setup(
            principal.id, generate_totp(setup.secret, clock.now().timestamp())
        )
        with pytest.raises(ConflictError):
            await service.setup_2fa(principal.id)

    async def test_disable_requires_password(self, service, store, principal, clock):
        setup = await service.setup_2fa(principal.id)
        await service.confirm_2fa_setup(
            principal.id, generate_totp(setup.secret, clock.now().timestamp())
        )

        with pytest.raises(InvalidCredentialsError):
            await service.disable_2fa(principal.id, "Wrong-Password-1")
        await service.disable_2fa(principal.id, PASSWORD)

        assert isinstance(await _login(service, principal), LoginSuccess)
        actions = [
            e.details["action"]
            for e in store.list_security_events(
                principal.id, event_type=SecurityEventType.SECURITY_SETTING_CHANGE
            )
        ]
        assert actions == ["2fa_disabled", "2fa_enabled"]

    async def test_verify_code(self, service, principal, clock):
        setup = await service.setup_2fa(principal.id)
        code = generate_totp(setup.secret, clock.now().timestamp())
        await service.confirm_2fa_setup(principal.id, code)

        assert await service.verify_2fa_code(principal.id, code) is True
        assert await service.verify_2fa_code(principal.id, "12345") is False


class TestTokensAndSessions:
    async def test_refresh_keeps_session(self, service, principal, clock):
        result = await _login(service, principal)
        clock.advance(minutes=5)

        pair = await service.refresh_token(result.refresh_token)

        assert pair.session_id == result.session_id
        assert service.tokens.verify(pair.access_token)["sid"] == result.session_id

    async def test_refresh_after_logout_fails(self, service, principal):
        result = await _login(service, principal)
        await service.logout(result.session_id, principal.id)

        with pytest.raises(InvalidTokenError):
            await service.refresh_token(result.refresh_token)

    async def test_refresh_rejects_inactive_principal(self, service, store, principal):
        result = await _login(service, principal)
        store.update_principal(principal.id, status=PrincipalStatus.SUSPENDED)

        with pytest.raises(InvalidTokenError):
            await service.refresh_token(result.refresh_token)

    async def test_refresh_rejects_access_token(self, service, principal):
        result = await _login(service, principal)
        with pytest.raises(InvalidTokenError):
            await service.refresh_token(result.access_token)

    async def test_refresh_carries_tenant(self, service, principal):
        result = await service.login(
            principal.email,
            PASSWORD,
            "10.0.0.1",
            tenant_context=TenantContext(tenant_id="acme"),
        )
        pair = await service.refresh_token(result.refresh_token)
        assert service.tokens.verify(pair.access_token)["tenant_id"] == "acme"

    async def test_validate_session(self, service, store, principal, make_principal, clock):
        result = await _login(service, principal)
        clock.advance(minutes=3)

        session = await service.validate_session(result.session_id, principal.id)

        assert session is not None
        assert store.get_session(result.session_id).last_activity_at == clock.now()
        other = make_principal("bob@example.com")
        assert await service.validate_session(result.session_id, other.id) is None
        assert await service.validate_session("missing", principal.id) is None

    async def test_authenticate(self, service, principal):
        result = await _login(service, principal)

        context = await service.authenticate(result.access_token)

        assert context.principal_id == principal.id
        assert context.session_id == result.session_id
        assert context.role == "user"

    async def test_authenticate_rejects_ended_session(self, service, principal):
        result = await _login(service, principal)
        await service.logout(result.session_id, principal.id)
        assert await service.authenticate(result.access_token) is None

    async def test_authenticate_rejects_garbage(self, service):
        assert await service.authenticate("not-a-token") is None

    async def test_authenticate_rejects_blocked_principal(self, service, store, principal):
        result = await _login(service, principal)
        store.update_principal(principal.id, status=PrincipalStatus.BLOCKED)
        assert await service.authenticate(result.access_token) is None


class TestPermissions:
    async def test_admin_wildcard(self, service, make_principal):
        admin = make_principal("root@example.com", role="ADMIN")
        assert await service.has_permission(admin.id, "anything_at_all")

    async def test_role_table(self, service, principal):
        assert await service.has_permission(principal.id, "create_events")
        assert not await service.has_permission(principal.id, "manage_users")

    async def test_disabled_principal_has_nothing(self, service, make_principal):
        admin = make_principal(
            "root@example.com", role="admin", status=PrincipalStatus.SUSPENDED
        )
        assert not await service.has_permission(admin.id, "create_events")

    async def test_unknown_principal_or_role(self, service, make_principal):
        odd = make_principal("odd@example.com", role="astronaut")
        assert not await service.has_permission("missing", "create_events")
        assert not await service.has_permission(odd.id, "create_events")

    async def test_require_permission(self, service, principal):
        await service.require_permission(principal.id, "upload_files")
        with pytest.raises(InsufficientPermissionsError) as excinfo:
            await service.require_permission(principal.id, "manage_users")
        assert excinfo.value.status_code == 403


class TestSecurityMetrics:
    async def test_counts(self, service, principal, clock):
        await _login(service, principal, ip="10.0.0.1")
        await _login(service, principal, ip="10.0.0.2")
        with pytest.raises(InvalidCredentialsError):
            await _login(service, principal, ip="10.0.0.3", password="Wrong-Password-1")

        metrics = await service.get_security_metrics(principal.id)

        assert metrics.active_sessions == 2
        assert metrics.recent_logins == 2
        assert metrics.failed_attempts == 1
        assert metrics.security_events == 3

    async def test_windows(self, service, principal, clock):
        await _login(service, principal, ip="10.0.0.1")
        with pytest.raises(InvalidCredentialsError):
            await _login(service, principal, ip="10.0.0.3", password="Wrong-Password-1")
        clock.advance(days=2)

        metrics = await service.get_security_metrics(principal.id)

        assert metrics.recent_logins == 1
        assert metrics.failed_attempts == 0
        assert metrics.security_events == 2


class TestRegistrationAndVerification:
    async def test_register_then_verify(self, service, store, notifier):
        principal = await service.register("New.User@Example.com", PASSWORD)

        assert principal.email == "new.user@example.com"
        assert principal.status == PrincipalStatus.PENDING_VERIFICATION
        assert principal.email_verification_sent_at is not None
        payload = notifier.last("email_verification")
        assert payload["expires_hours"] == 24

        verified = await service.verify_email(payload["token"])

        assert verified.email_verified is True
        assert verified.status == PrincipalStatus.ACTIVE
        assert isinstance(await _login(service, verified), LoginSuccess)
        assert store.count_security_events(
            principal.id, event_type=SecurityEventType.EMAIL_VERIFICATION
        ) == 1

    async def test_duplicate_email(self, service, principal):
        with pytest.raises(ConflictError):
            await service.register("ALICE@example.com", PASSWORD)

    async def test_weak_password(self, service):
        with pytest.raises(WeakPasswordError):
            await service.register("new@example.com", "password")

    async def test_verification_token_single_use(self, service, notifier):
        await service.register("new@example.com", PASSWORD)
        token = notifier.last("email_verification")["token"]
        await service.verify_email(token)
        with pytest.raises(InvalidTokenError):
            await service.verify_email(token)

    async def test_verification_token_expires(self, service, notifier, clock):
        await service.register("new@example.com", PASSWORD)
        token = notifier.last("email_verification")["token"]
        clock.advance(hours=25)
        with pytest.raises(InvalidTokenError):
            await service.verify_email(token)

    async def test_resend_is_rate_limited(self, service, store, notifier, clock):
        principal = await service.register("new@example.com", PASSWORD)
        await service.request_email_verification("new@example.com")
        await service.request_email_verification("new@example.com")

        assert not await service.can_request_verification(principal.id)
        with pytest.raises(RateLimitExceededError):
            await service.request_email_verification("new@example.com")
        assert len([t for t, _, _ in notifier.sent if t == "email_verification"]) == 3

        clock.advance(hours=1, seconds=1)
        assert await service.can_request_verification(principal.id)

    async def test_login_reports_resend_availability(self, service):
        principal = await service.register("new@example.com", PASSWORD)

        with pytest.raises(EmailNotVerifiedError) as excinfo:
            await _login(service, principal)
        assert excinfo.value.detail["can_resend"] is True
        assert excinfo.value.detail["last_verification_sent_at"] is not None

    async def test_resend_ignores_unknown_and_verified(self, service, notifier, principal):
        await service.request_email_verification("nobody@example.com")
        await service.request_email_verification(principal.email)
        assert notifier.sent == []
