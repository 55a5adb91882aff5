from __future__ import annotations

import asyncio
import hashlib
import re
import secrets
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Optional

from authguard.config import Settings
from authguard.logging import get_logger
from authguard.service.clock import Clock, SystemClock
from authguard.service.errors import (
    AccountLockedError,
    AccountSuspendedError,
    ConflictError,
    EmailNotVerifiedError,
    Invalid2FACodeError,
    InvalidCredentialsError,
    InvalidTokenError,
    InsufficientPermissionsError,
    NotFoundError,
    PasswordExpiredError,
    RateLimitExceededError,
    ServerError,
    ServiceError,
    ValidationError,
    WeakPasswordError,
)
from authguard.service.events import SecurityEventLog
from authguard.service.notifications import NotificationSender
from authguard.service.otp import OneTimeCodeVerifier
from authguard.service.outcomes import (
    AuthContext,
    LoginResult,
    LoginState,
    LoginSuccess,
    SecurityMetrics,
    TwoFactorChallenge,
    TwoFactorSetup,
)
from authguard.service.passwords import PasswordPolicy, hash_password, verify_password
from authguard.service.permissions import role_grants
from authguard.service.rate_limit import RateLimiter
from authguard.service.risk import RiskAnalyzer
from authguard.service.sessions import SessionStore
from authguard.service.tokens import TenantContext, TokenIssuer, TokenPair
from authguard.storage.errors import ConstraintViolation
from authguard.storage.models import (
    OneTimeToken,
    Principal,
    PrincipalStatus,
    RiskLevel,
    SecurityEventType,
    Session,
)

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

LOGIN_WINDOW_SECONDS = 60
PASSWORD_RESET_WINDOW_SECONDS = 24 * 60 * 60
VERIFICATION_WINDOW_SECONDS = 60 * 60

PASSWORD_RESET_TOKENS = "password_reset"
EMAIL_VERIFICATION_TOKENS = "email_verification"

_DISABLED_STATUSES = (PrincipalStatus.SUSPENDED, PrincipalStatus.BLOCKED)


def _digest(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


@dataclass
class _LoginAttempt:
    """Mutable bookkeeping for one login call, read by the rejection audit."""

    ip_address: Optional[str]
    user_agent: Optional[str]
    state: LoginState = LoginState.UNAUTHENTICATED
    principal_id: Optional[str] = None
    risk: RiskLevel = RiskLevel.MEDIUM
    details: Dict[str, Any] = field(default_factory=dict)

    def advance(self, state: LoginState) -> None:
        logger.debug(
            "login_state_transition",
            from_state=self.state.value,
            to_state=state.value,
            principal_id=self.principal_id,
        )
        self.state = state


class AuthService:
    """Credential checks, second factor, sessions and tokens for principals.

    Public operations are coroutines; the store is called synchronously and
    notifications are sent on a worker thread.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        notifier: NotificationSender,
        *,
        clock: Optional[Clock] = None,
        rate_limiter: Optional[RateLimiter] = None,
        sleep=None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.notifier = notifier
        self.clock = clock or SystemClock()
        self.events = SecurityEventLog(store, self.clock)
        self.rate_limiter = rate_limiter or RateLimiter(store, self.clock)
        self.tokens = TokenIssuer(settings, self.clock)
        self.sessions = SessionStore(store, settings, self.clock, sleep=sleep)
        self.otp = OneTimeCodeVerifier(store, self.events, settings, self.clock)
        self.risk = RiskAnalyzer(store, self.clock)
        self.password_policy = PasswordPolicy(min_length=settings.password_min_length)
        self.logger = logger

    # -- login ----------------------------------------------------------------

    async def login(
        self,
        email: str,
        password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        two_factor_code: Optional[str] = None,
        device_info: Optional[Dict] = None,
        tenant_context: Optional[TenantContext] = None,
    ) -> LoginResult:
        attempt = _LoginAttempt(ip_address=ip_address, user_agent=user_agent)
        try:
            return await self._login(
                attempt, email, password, two_factor_code, device_info, tenant_context
            )
        except ServiceError as exc:
            attempt.advance(LoginState.REJECTED)
            self._audit_rejection(attempt, exc)
            raise
        except Exception as exc:
            attempt.advance(LoginState.REJECTED)
            self.logger.exception(
                "login_unexpected_error",
                principal_id=attempt.principal_id,
                ip_address=ip_address,
                state=attempt.state.value,
                error_type=type(exc).__name__,
            )
            error = ServerError("login failed")
            self._audit_rejection(attempt, error)
            raise error from exc

    async def _login(
        self,
        attempt: _LoginAttempt,
        email: str,
        password: str,
        two_factor_code: Optional[str],
        device_info: Optional[Dict],
        tenant_context: Optional[TenantContext],
    ) -> LoginResult:
        self._validate_credentials_shape(email, password)

        decision = await self.rate_limiter.check(
            f"login:{attempt.ip_address or 'unknown'}",
            self.settings.login_rate_limit_per_minute,
            LOGIN_WINDOW_SECONDS,
        )
        if not decision.allowed:
            raise RateLimitExceededError(
                "too many login attempts",
                detail={"retry_after_seconds": decision.retry_after_seconds},
            )

        principal = self.store.get_principal_by_email(email.strip().lower())
        if principal is None:
            raise InvalidCredentialsError("invalid email or password")
        attempt.principal_id = principal.id

        await self._security_checks(principal, attempt)
        attempt.advance(LoginState.CREDENTIALS_VALIDATED)

        risk_level = self.risk.score(principal.id)
        attempt.advance(LoginState.SECURITY_CHECKED)

        if principal.two_factor_enabled:
            if not two_factor_code:
                attempt.advance(LoginState.TWO_FACTOR_PENDING)
                self.events.record(
                    SecurityEventType.LOGIN,
                    principal.id,
                    ip_address=attempt.ip_address,
                    user_agent=attempt.user_agent,
                    risk_level=risk_level,
                    details={"requires_2fa": True},
                )
                return TwoFactorChallenge(principal_id=principal.id, risk_level=risk_level)
            if not self.otp.verify(
                principal.id, two_factor_code, attempt.ip_address, attempt.user_agent
            ):
                self._register_failed_attempt(principal, attempt)
                raise Invalid2FACodeError("invalid two-factor code")

        if not verify_password(principal.password_hash, password):
            self._register_failed_attempt(principal, attempt)
            raise InvalidCredentialsError("invalid email or password")

        if principal.failed_login_attempts or principal.locked_until:
            self.store.reset_failed_logins(principal.id)
        attempt.advance(LoginState.AUTHENTICATED)

        pair = self.tokens.mint(principal, tenant_context=tenant_context)
        session_id = self.sessions.create(
            principal.id,
            device_info=device_info,
            ip_address=attempt.ip_address,
            user_agent=attempt.user_agent,
            session_id=pair.session_id,
        )
        self.events.record(
            SecurityEventType.LOGIN,
            principal.id,
            ip_address=attempt.ip_address,
            user_agent=attempt.user_agent,
            risk_level=risk_level,
            details={
                "session_id": session_id,
                "requires_2fa": False,
                "two_factor_used": principal.two_factor_enabled,
            },
        )
        self.logger.info(
            "login_succeeded",
            principal_id=principal.id,
            session_id=session_id,
            risk_level=risk_level.value,
        )
        return LoginSuccess(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
            expires_at=pair.expires_at,
            session_id=session_id,
            principal_id=principal.id,
            risk_level=risk_level,
        )

    def _validate_credentials_shape(self, email: str, password: str) -> None:
        if not email or not EMAIL_PATTERN.match(email.strip()):
            raise ValidationError("invalid email address", detail={"field": "email"})
        if not password or len(password) < self.settings.password_min_length:
            raise ValidationError(
                "password too short",
                detail={
                    "field": "password",
                    "min_length": self.settings.password_min_length,
                },
            )

    async def _security_checks(self, principal: Principal, attempt: _LoginAttempt) -> None:
        now = self.clock.now()
        if principal.status == PrincipalStatus.SUSPENDED:
            raise AccountSuspendedError("account suspended")
        if principal.status == PrincipalStatus.BLOCKED:
            attempt.risk = RiskLevel.HIGH
            raise AccountLockedError("account blocked", detail={"blocked": True})
        if principal.status == PrincipalStatus.PENDING_VERIFICATION:
            await self._reject_unverified(principal, attempt)
        if principal.is_locked(now):
            attempt.risk = RiskLevel.HIGH
            raise AccountLockedError(
                "account temporarily locked",
                detail={"locked_until": principal.locked_until.isoformat()},
            )
        if principal.is_password_expired(now, self.settings.password_max_age_days):
            raise PasswordExpiredError(
                "password expired",
                detail={"max_age_days": self.settings.password_max_age_days},
            )
        if not principal.email_verified:
            await self._reject_unverified(principal, attempt)

    async def _reject_unverified(self, principal: Principal, attempt: _LoginAttempt) -> None:
        attempt.risk = RiskLevel.LOW
        sent_at = principal.email_verification_sent_at
        raise EmailNotVerifiedError(
            "email address not verified",
            detail={
                "email": principal.email,
                "can_resend": await self.can_request_verification(principal.id),
                "last_verification_sent_at": sent_at.isoformat() if sent_at else None,
            },
        )

    def _register_failed_attempt(self, principal: Principal, attempt: _LoginAttempt) -> None:
        now = self.clock.now()
        updated = self.store.record_failed_login(
            principal.id,
            now=now,
            threshold=self.settings.lockout_threshold,
            lockout_until=now + timedelta(minutes=self.settings.lockout_minutes),
        )
        attempt.details["failed_attempts"] = updated.failed_login_attempts
        if updated.is_locked(now):
            attempt.risk = RiskLevel.HIGH
            attempt.details["locked_until"] = updated.locked_until.isoformat()
            self.logger.warning(
                "account_locked",
                principal_id=principal.id,
                attempts=updated.failed_login_attempts,
                locked_until=updated.locked_until.isoformat(),
            )

    def _audit_rejection(self, attempt: _LoginAttempt, error: ServiceError) -> None:
        details = {"reason": error.error_code, **attempt.details}
        self.events.record(
            SecurityEventType.FAILED_LOGIN,
            attempt.principal_id,
            ip_address=attempt.ip_address,
            user_agent=attempt.user_agent,
            risk_level=attempt.risk,
            details=details,
        )
        self.logger.info(
            "login_rejected",
            principal_id=attempt.principal_id,
            reason=error.error_code,
            risk_level=attempt.risk.value,
        )

    # -- logout ---------------------------------------------------------------

    async def logout(
        self,
        session_id: str,
        principal_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        """End one session; repeated calls are no-ops. Returns the outcome status."""
        session = self.sessions.get(session_id)
        if session is None or (principal_id and session.principal_id != principal_id):
            self.logger.info("logout_session_not_found", session_id=session_id)
            if principal_id:
                self._record_logout(principal_id, ip_address, user_agent, "session_not_found", session_id)
            return "session_not_found"
        if not session.is_active:
            self.logger.info("logout_session_already_inactive", session_id=session_id)
            self._record_logout(session.principal_id, ip_address, user_agent, "already_inactive", session_id)
            return "already_inactive"
        changed = await self.sessions.invalidate(session_id)
        status = "success" if changed else "already_inactive"
        self._record_logout(session.principal_id, ip_address, user_agent, status, session_id)
        return status

    def _record_logout(
        self,
        principal_id: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
        status: str,
        session_id: str,
    ) -> None:
        self.events.record(
            SecurityEventType.LOGOUT,
            principal_id,
            ip_address=ip_address,
            user_agent=user_agent,
            risk_level=RiskLevel.LOW,
            details={"session_id": session_id, "status": status},
        )

    async def logout_all(
        self,
        principal_id: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        count = await self.sessions.invalidate_all(principal_id)
        self.events.record(
            SecurityEventType.LOGOUT,
            principal_id,
            ip_address=ip_address,
            user_agent=user_agent,
            risk_level=RiskLevel.MEDIUM,
            details={"action": "logout_all", "sessions_invalidated": count},
        )
        self.logger.info("logout_all", principal_id=principal_id, sessions=count)
        return count

    # -- passwords ------------------------------------------------------------

    def _require_principal(self, principal_id: str) -> Principal:
        principal = self.store.get_principal(principal_id)
        if principal is None:
            raise NotFoundError("principal not found", detail={"principal_id": principal_id})
        return principal

    async def _replace_password(self, principal: Principal, new_password: str) -> int:
        self.store.update_principal(
            principal.id,
            password_hash=hash_password(new_password),
            password_changed_at=self.clock.now(),
            failed_login_attempts=0,
            locked_until=None,
        )
        return await self.sessions.invalidate_all(principal.id)

    async def change_password(
        self,
        principal_id: str,
        current_password: str,
        new_password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        principal = self._require_principal(principal_id)
        if not verify_password(principal.password_hash, current_password or ""):
            raise InvalidCredentialsError("current password is incorrect")
        self.password_policy.validate(new_password)
        if verify_password(principal.password_hash, new_password):
            raise WeakPasswordError("new password must differ from the current one")
        invalidated = await self._replace_password(principal, new_password)
        self.events.record(
            SecurityEventType.PASSWORD_CHANGE,
            principal.id,
            ip_address=ip_address,
            user_agent=user_agent,
            risk_level=RiskLevel.MEDIUM,
            details={"sessions_invalidated": invalidated},
        )
        await asyncio.to_thread(self.notifier.send, "password_changed", principal.email, {})

    async def forgot_password(
        self,
        email: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """Email a reset link; unknown addresses get the same silent success."""
        if not email or not EMAIL_PATTERN.match(email.strip()):
            raise ValidationError("invalid email address", detail={"field": "email"})
        normalized = email.strip().lower()
        principal = self.store.get_principal_by_email(normalized)
        decision = await self.rate_limiter.check(
            f"forgot_password:{normalized}",
            self.settings.password_reset_rate_limit_per_day,
            PASSWORD_RESET_WINDOW_SECONDS,
        )
        if not decision.allowed:
            self.events.record(
                SecurityEventType.FAILED_LOGIN,
                principal.id if principal else None,
                ip_address=ip_address,
                user_agent=user_agent,
                risk_level=RiskLevel.MEDIUM,
                details={"reason": "password_reset_rate_limited"},
            )
            raise RateLimitExceededError(
                "too many password reset requests",
                detail={"retry_after_seconds": decision.retry_after_seconds},
            )
        if principal is None:
            self.logger.info("password_reset_unknown_email", email=normalized)
            return

        token = secrets.token_hex(32)
        now = self.clock.now()
        ttl_minutes = self.settings.password_reset_ttl_minutes
        self.store.save_one_time_token(
            PASSWORD_RESET_TOKENS,
            OneTimeToken(
                token_hash=_digest(token),
                principal_id=principal.id,
                expires_at=now + timedelta(minutes=ttl_minutes),
                created_at=now,
            ),
        )
        sent = await asyncio.to_thread(
            self.notifier.send,
            "password_reset",
            principal.email,
            {
                "reset_url": f"{self.settings.app_base_url}/reset-password?token={token}",
                "token": token,
                "expires_minutes": ttl_minutes,
            },
        )
        self.events.record(
            SecurityEventType.PASSWORD_RESET,
            principal.id,
            ip_address=ip_address,
            user_agent=user_agent,
            risk_level=RiskLevel.MEDIUM,
            details={"action": "requested", "notification_sent": sent},
        )

    async def reset_password(
        self,
        token: str,
        new_password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        self.password_policy.validate(new_password)
        consumed = self.store.consume_one_time_token(
            PASSWORD_RESET_TOKENS, _digest(token or ""), self.clock.now()
        )
        if consumed is None:
            self.logger.info("password_reset_token_rejected")
            raise InvalidTokenError("invalid or expired reset token")
        principal = self._require_principal(consumed.principal_id)
        invalidated = await self._replace_password(principal, new_password)
        self.events.record(
            SecurityEventType.PASSWORD_RESET,
            principal.id,
            ip_address=ip_address,
            user_agent=user_agent,
            risk_level=RiskLevel.MEDIUM,
            details={"action": "completed", "sessions_invalidated": invalidated},
        )

    # -- two-factor -------------------------------------------------------------

    async def setup_2fa(self, principal_id: str) -> TwoFactorSetup:
        principal = self._require_principal(principal_id)
        if principal.two_factor_enabled:
            raise ConflictError("two-factor authentication already enabled")
        return self.otp.setup(principal_id)

    async def confirm_2fa_setup(
        self,
        principal_id: str,
        code: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        self.otp.confirm_setup(principal_id, code)
        self.events.record(
            SecurityEventType.SECURITY_SETTING_CHANGE,
            principal_id,
            ip_address=ip_address,
            user_agent=user_agent,
            risk_level=RiskLevel.LOW,
            details={"action": "2fa_enabled"},
        )

    async def verify_2fa_code(
        self,
        principal_id: str,
        code: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        return self.otp.verify(principal_id, code, ip_address, user_agent)

    async def disable_2fa(
        self,
        principal_id: str,
        password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        principal = self._require_principal(principal_id)
        if not verify_password(principal.password_hash, password or ""):
            raise InvalidCredentialsError("password is incorrect")
        self.otp.disable(principal_id)
        self.events.record(
            SecurityEventType.SECURITY_SETTING_CHANGE,
            principal_id,
            ip_address=ip_address,
            user_agent=user_agent,
            risk_level=RiskLevel.MEDIUM,
            details={"action": "2fa_disabled"},
        )

    # -- tokens and sessions ------------------------------------------------------

    async def refresh_token(self, refresh_token: str) -> TokenPair:
        claims = self.tokens.verify_refresh(refresh_token)
        session = self.sessions.get(claims.get("sid", ""))
        if session is None or not session.is_active or session.principal_id != claims.get("sub"):
            raise InvalidTokenError("session is no longer active")
        principal = self.store.get_principal(session.principal_id)
        if principal is None or principal.status != PrincipalStatus.ACTIVE:
            raise InvalidTokenError("principal cannot refresh tokens")
        tenant_context = (
            TenantContext(tenant_id=claims["tenant_id"]) if claims.get("tenant_id") else None
        )
        pair = self.tokens.mint(principal, session_id=session.id, tenant_context=tenant_context)
        self.sessions.touch(session.id)
        self.logger.info("tokens_refreshed", principal_id=principal.id, session_id=session.id)
        return pair

    async def validate_session(self, session_id: str, principal_id: str) -> Optional[Session]:
        session = self.sessions.get(session_id)
        if session is None or not session.is_active or session.principal_id != principal_id:
            return None
        self.sessions.touch(session_id)
        return session

    async def authenticate(self, access_token: str) -> Optional[AuthContext]:
        """Resolve a bearer token to its principal while its session is active."""
        claims = self.tokens.verify(access_token)
        if claims is None:
            return None
        session = await self.validate_session(claims.get("sid", ""), claims.get("sub", ""))
        if session is None:
            return None
        principal = self.store.get_principal(session.principal_id)
        if principal is None or principal.status in _DISABLED_STATUSES:
            return None
        return AuthContext(
            principal_id=principal.id,
            role=principal.role,
            session_id=session.id,
            email=principal.email,
            tenant_id=claims.get("tenant_id"),
        )

    # -- permissions and metrics ----------------------------------------------------

    async def has_permission(self, principal_id: str, permission: str) -> bool:
        principal = self.store.get_principal(principal_id)
        if principal is None or principal.status in _DISABLED_STATUSES:
            return False
        return role_grants(principal.role, permission)

    async def require_permission(self, principal_id: str, permission: str) -> None:
        if not await self.has_permission(principal_id, permission):
            raise InsufficientPermissionsError(
                "insufficient permissions", detail={"permission": permission}
            )

    async def get_security_metrics(self, principal_id: str) -> SecurityMetrics:
        now = self.clock.now()
        return SecurityMetrics(
            active_sessions=self.sessions.count_active(principal_id),
            recent_logins=self.store.count_security_events(
                principal_id,
                event_type=SecurityEventType.LOGIN,
                since=now - timedelta(days=7),
            ),
            failed_attempts=self.store.count_security_events(
                principal_id,
                event_type=SecurityEventType.FAILED_LOGIN,
                since=now - timedelta(hours=24),
            ),
            security_events=self.store.count_security_events(
                principal_id, since=now - timedelta(days=30)
            ),
        )

    # -- registration and email verification -------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        role: str = "user",
        tenant_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Principal:
        if not email or not EMAIL_PATTERN.match(email.strip()):
            raise ValidationError("invalid email address", detail={"field": "email"})
        self.password_policy.validate(password)
        try:
            principal = self.store.create_principal(
                email,
                hash_password(password),
                created_at=self.clock.now(),
                role=role,
                tenant_id=tenant_id,
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail={"field": "email"}) from exc
        self.events.record(
            SecurityEventType.REGISTRATION,
            principal.id,
            ip_address=ip_address,
            user_agent=user_agent,
            risk_level=RiskLevel.LOW,
        )
        await self.rate_limiter.check(
            self._verification_key(principal.id),
            self.settings.verification_requests_per_hour,
            VERIFICATION_WINDOW_SECONDS,
        )
        await self._issue_verification(principal)
        return self.store.get_principal(principal.id)

    def _verification_key(self, principal_id: str) -> str:
        return f"verification:{principal_id}"

    async def _issue_verification(self, principal: Principal) -> bool:
        token = secrets.token_hex(32)
        now = self.clock.now()
        ttl_hours = self.settings.email_verification_ttl_hours
        self.store.save_one_time_token(
            EMAIL_VERIFICATION_TOKENS,
            OneTimeToken(
                token_hash=_digest(token),
                principal_id=principal.id,
                expires_at=now + timedelta(hours=ttl_hours),
                created_at=now,
            ),
        )
        self.store.update_principal(principal.id, email_verification_sent_at=now)
        sent = await asyncio.to_thread(
            self.notifier.send,
            "email_verification",
            principal.email,
            {
                "verification_url": f"{self.settings.app_base_url}/verify-email?token={token}",
                "token": token,
                "expires_hours": ttl_hours,
            },
        )
        if not sent:
            self.logger.warning("email_verification_send_failed", principal_id=principal.id)
        return sent

    async def can_request_verification(self, principal_id: str) -> bool:
        decision = await self.rate_limiter.peek(
            self._verification_key(principal_id),
            self.settings.verification_requests_per_hour,
            VERIFICATION_WINDOW_SECONDS,
        )
        return decision.allowed

    async def request_email_verification(
        self,
        email: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        principal = self.store.get_principal_by_email((email or "").strip().lower())
        if principal is None or principal.email_verified:
            self.logger.info("email_verification_request_ignored")
            return
        decision = await self.rate_limiter.check(
            self._verification_key(principal.id),
            self.settings.verification_requests_per_hour,
            VERIFICATION_WINDOW_SECONDS,
        )
        if not decision.allowed:
            self.events.record(
                SecurityEventType.FAILED_LOGIN,
                principal.id,
                ip_address=ip_address,
                user_agent=user_agent,
                risk_level=RiskLevel.MEDIUM,
                details={"reason": "email_verification_rate_limited"},
            )
            raise RateLimitExceededError(
                "too many verification requests",
                detail={"retry_after_seconds": decision.retry_after_seconds},
            )
        await self._issue_verification(principal)

    async def verify_email(
        self,
        token: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Principal:
        consumed = self.store.consume_one_time_token(
            EMAIL_VERIFICATION_TOKENS, _digest(token or ""), self.clock.now()
        )
        if consumed is None:
            raise InvalidTokenError("invalid or expired verification token")
        principal = self._require_principal(consumed.principal_id)
        fields: Dict[str, Any] = {"email_verified": True}
        if principal.status == PrincipalStatus.PENDING_VERIFICATION:
            fields["status"] = PrincipalStatus.ACTIVE
        updated = self.store.update_principal(principal.id, **fields)
        self.events.record(
            SecurityEventType.EMAIL_VERIFICATION,
            principal.id,
            ip_address=ip_address,
            user_agent=user_agent,
            risk_level=RiskLevel.LOW,
        )
        self.logger.info("email_verified", principal_id=principal.id)
        return updated
