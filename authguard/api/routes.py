from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request

from authguard.api.schemas import (
    EmailRequest,
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutAllResponse,
    LogoutResponse,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PermissionResponse,
    PrincipalResponse,
    RegisterRequest,
    SecurityMetricsResponse,
    SessionResponse,
    TokenPairResponse,
    TokenRefreshRequest,
    TokenRequest,
    TwoFactorChallengeResponse,
    TwoFactorCodeRequest,
    TwoFactorDisableRequest,
    TwoFactorSetupResponse,
    VerifyCodeResponse,
)
from authguard.logging import get_correlation_id, get_logger
from authguard.service.auth import AuthService
from authguard.service.outcomes import AuthContext, TwoFactorChallenge
from authguard.service.tokens import TenantContext
from authguard.storage.models import Principal

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/auth", tags=["auth"])


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _ok(data) -> Envelope:
    request_id = get_correlation_id()
    if request_id:
        return Envelope(status="ok", data=data, request_id=request_id)
    return Envelope(status="ok", data=data)


def _client(request: Request) -> tuple[Optional[str], Optional[str]]:
    ip_address = request.client.host if request.client else None
    return ip_address, request.headers.get("user-agent")


def get_service(request: Request) -> AuthService:
    return request.app.state.auth


async def get_principal(
    authorization: Optional[str] = Header(None),
    service: AuthService = Depends(get_service),
) -> AuthContext:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    ctx = await service.authenticate(token.strip())
    if not ctx:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    return ctx


def _principal_response(principal: Principal) -> PrincipalResponse:
    return PrincipalResponse(
        id=principal.id,
        email=principal.email,
        role=principal.role,
        status=principal.status.value,
        email_verified=principal.email_verified,
        two_factor_enabled=principal.two_factor_enabled,
    )


@router.post("/login", response_model=Envelope)
async def login(
    body: LoginRequest, request: Request, service: AuthService = Depends(get_service)
):
    """Authenticate with email and password (and a second factor when enrolled).

    A principal with two-factor enabled who omits the code gets a 200 with
    ``data.status == "two_factor_required"`` and no tokens.
    """
    ip_address, user_agent = _client(request)
    result = await service.login(
        body.email,
        body.password,
        ip_address=ip_address,
        user_agent=user_agent,
        two_factor_code=body.two_factor_code,
        device_info=body.device_info,
        tenant_context=TenantContext(tenant_id=body.tenant_id) if body.tenant_id else None,
    )
    if isinstance(result, TwoFactorChallenge):
        return _ok(TwoFactorChallengeResponse(principal_id=result.principal_id))
    return _ok(
        LoginResponse(
            principal_id=result.principal_id,
            session_id=result.session_id,
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            expires_in=result.expires_in,
            expires_at=result.expires_at,
            risk_level=result.risk_level.value,
        )
    )


@router.post("/logout", response_model=Envelope)
async def logout(
    request: Request,
    principal: AuthContext = Depends(get_principal),
    service: AuthService = Depends(get_service),
):
    ip_address, user_agent = _client(request)
    status = await service.logout(
        principal.session_id, principal.principal_id, ip_address, user_agent
    )
    return _ok(LogoutResponse(status=status))


@router.post("/logout-all", response_model=Envelope)
async def logout_all(
    request: Request,
    principal: AuthContext = Depends(get_principal),
    service: AuthService = Depends(get_service),
):
    ip_address, user_agent = _client(request)
    count = await service.logout_all(principal.principal_id, ip_address, user_agent)
    return _ok(LogoutAllResponse(sessions_invalidated=count))


@router.post("/register", response_model=Envelope, status_code=201)
async def register(
    body: RegisterRequest, request: Request, service: AuthService = Depends(get_service)
):
    ip_address, user_agent = _client(request)
    principal = await service.register(
        body.email, body.password, ip_address=ip_address, user_agent=user_agent
    )
    return _ok(_principal_response(principal))


@router.post("/verify-email", response_model=Envelope)
async def verify_email(
    body: TokenRequest, request: Request, service: AuthService = Depends(get_service)
):
    ip_address, user_agent = _client(request)
    principal = await service.verify_email(body.token, ip_address, user_agent)
    return _ok(_principal_response(principal))


@router.post("/resend-verification", response_model=Envelope)
async def resend_verification(
    body: EmailRequest, request: Request, service: AuthService = Depends(get_service)
):
    """Always answers the same way so addresses cannot be enumerated."""
    ip_address, user_agent = _client(request)
    await service.request_email_verification(body.email, ip_address, user_agent)
    return _ok({"message": "if the address needs verification, a message was sent"})


@router.post("/password/change", response_model=Envelope)
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    principal: AuthContext = Depends(get_principal),
    service: AuthService = Depends(get_service),
):
    ip_address, user_agent = _client(request)
    await service.change_password(
        principal.principal_id,
        body.current_password,
        body.new_password,
        ip_address,
        user_agent,
    )
    return _ok({"message": "password changed"})


@router.post("/password/forgot", response_model=Envelope)
async def forgot_password(
    body: EmailRequest, request: Request, service: AuthService = Depends(get_service)
):
    ip_address, user_agent = _client(request)
    await service.forgot_password(body.email, ip_address, user_agent)
    return _ok({"message": "if the address exists, a reset link was sent"})


@router.post("/password/reset", response_model=Envelope)
async def reset_password(
    body: PasswordResetConfirm,
    request: Request,
    service: AuthService = Depends(get_service),
):
    ip_address, user_agent = _client(request)
    await service.reset_password(body.token, body.new_password, ip_address, user_agent)
    return _ok({"message": "password reset"})


@router.post("/token/refresh", response_model=Envelope)
async def refresh_token(
    body: TokenRefreshRequest, service: AuthService = Depends(get_service)
):
    pair = await service.refresh_token(body.refresh_token)
    return _ok(
        TokenPairResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
            expires_at=pair.expires_at,
            session_id=pair.session_id,
        )
    )


@router.post("/2fa/setup", response_model=Envelope)
async def setup_2fa(
    principal: AuthContext = Depends(get_principal),
    service: AuthService = Depends(get_service),
):
    setup = await service.setup_2fa(principal.principal_id)
    return _ok(
        TwoFactorSetupResponse(
            secret=setup.secret,
            provisioning_uri=setup.provisioning_uri,
            backup_codes=setup.backup_codes,
        )
    )


@router.post("/2fa/confirm", response_model=Envelope)
async def confirm_2fa(
    body: TwoFactorCodeRequest,
    request: Request,
    principal: AuthContext = Depends(get_principal),
    service: AuthService = Depends(get_service),
):
    ip_address, user_agent = _client(request)
    await service.confirm_2fa_setup(principal.principal_id, body.code, ip_address, user_agent)
    return _ok({"two_factor_enabled": True})


@router.post("/2fa/verify", response_model=Envelope)
async def verify_2fa(
    body: TwoFactorCodeRequest,
    request: Request,
    principal: AuthContext = Depends(get_principal),
    service: AuthService = Depends(get_service),
):
    ip_address, user_agent = _client(request)
    valid = await service.verify_2fa_code(
        principal.principal_id, body.code, ip_address, user_agent
    )
    return _ok(VerifyCodeResponse(valid=valid))


@router.post("/2fa/disable", response_model=Envelope)
async def disable_2fa(
    body: TwoFactorDisableRequest,
    request: Request,
    principal: AuthContext = Depends(get_principal),
    service: AuthService = Depends(get_service),
):
    ip_address, user_agent = _client(request)
    await service.disable_2fa(principal.principal_id, body.password, ip_address, user_agent)
    return _ok({"two_factor_enabled": False})


@router.get("/session", response_model=Envelope)
async def current_session(
    principal: AuthContext = Depends(get_principal),
    service: AuthService = Depends(get_service),
):
    session = await service.validate_session(principal.session_id, principal.principal_id)
    if session is None:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    return _ok(
        SessionResponse(
            session_id=session.id,
            principal_id=session.principal_id,
            created_at=session.created_at,
            last_activity_at=session.last_activity_at,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
        )
    )


@router.get("/metrics", response_model=Envelope)
async def security_metrics(
    principal: AuthContext = Depends(get_principal),
    service: AuthService = Depends(get_service),
):
    metrics = await service.get_security_metrics(principal.principal_id)
    return _ok(
        SecurityMetricsResponse(
            active_sessions=metrics.active_sessions,
            recent_logins=metrics.recent_logins,
            failed_attempts=metrics.failed_attempts,
            security_events=metrics.security_events,
        )
    )


@router.get("/permissions/{permission}", response_model=Envelope)
async def check_permission(
    permission: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_principal),
    service: AuthService = Depends(get_service),
):
    granted = await service.has_permission(principal.principal_id, permission)
    return _ok(PermissionResponse(permission=permission, granted=granted))
