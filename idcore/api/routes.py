from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from idcore.api.schemas import (
    Envelope,
    LoginRequest,
    LogoutRequest,
    OtpSendRequest,
    OtpVerifyRequest,
    PasswordChangeRequest,
    TokenRefreshRequest,
    TwoFactorCodeRequest,
    TwoFactorLoginRequest,
)
from idcore.logging import get_logger, mask_phone
from idcore.service.auth import AuthContext
from idcore.service.errors import AuthError, ErrorKind
from idcore.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

# Retry hint for a phone whose send counter carries no TTL yet
DEFAULT_OTP_RETRY_AFTER_SECONDS = 60


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


def _client_ip(request: Request) -> Optional[str]:
    """First hop of X-Forwarded-For, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


def _user_agent(request: Request) -> Optional[str]:
    return request.headers.get("User-Agent")


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    if not authorization:
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    runtime = get_runtime()
    return runtime.auth.authenticate(authorization)


# ----------------------------------------------------------------------
# Password login and sessions
# ----------------------------------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate a partner or admin with email and password.

    Returns tokens directly, or a 2FA challenge when the account has TOTP
    enabled.

    Raises:
        401: If credentials are invalid
        403: If the account is disabled
        429: If the email or client IP is locked out
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email,
        body.password,
        device_id=body.device_id,
        device_info=body.device_info,
        ip=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return Envelope(status="ok", data=result.to_dict())


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["auth"])
async def verify_two_factor_login(body: TwoFactorLoginRequest, request: Request):
    """Complete a challenged login with a TOTP code or a recovery code."""
    runtime = get_runtime()
    result = await runtime.auth.verify_2fa(
        body.temp_token,
        code=body.code,
        recovery_code=body.recovery_code,
        device_id=body.device_id,
        device_info=body.device_info,
        ip=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return Envelope(status="ok", data=result.to_dict())


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request):
    runtime = get_runtime()
    pair = runtime.sessions.rotate(
        body.refresh_token, ip=_client_ip(request), user_agent=_user_agent(request)
    )
    return Envelope(status="ok", data=pair.to_dict())


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest, request: Request):
    runtime = get_runtime()
    runtime.sessions.logout(
        body.refresh_token, ip=_client_ip(request), user_agent=_user_agent(request)
    )
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(request: Request, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    revoked = runtime.sessions.logout_all(
        principal.user_id, ip=_client_ip(request), user_agent=_user_agent(request)
    )
    return Envelope(status="ok", data={"message": "logged out everywhere", "revoked": revoked})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    principal: AuthContext = Depends(get_user),
):
    """Change the caller's password; every refresh token is revoked."""
    runtime = get_runtime()
    revoked = runtime.auth.change_password(
        principal.user_id,
        body.current_password,
        body.new_password,
        ip=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return Envelope(status="ok", data={"message": "password changed", "revoked": revoked})


# ----------------------------------------------------------------------
# Phone OTP
# ----------------------------------------------------------------------


@router.post("/auth/otp/send", response_model=Envelope, tags=["otp"])
async def send_otp(body: OtpSendRequest, request: Request):
    """Send a one-time code to a phone for a donation or request flow.

    Raises:
        429: If the phone exhausted its hourly sends
        502: If the SMS provider did not accept the message
    """
    runtime = get_runtime()
    expires_in = await runtime.otp.send(
        body.phone,
        body.channel,
        body.context,
        body.reference_id,
        ip=_client_ip(request),
        user_agent=_user_agent(request),
    )
    retry_after = await runtime.otp.retry_after(body.phone)
    return Envelope(
        status="ok",
        data={
            "expires_in": expires_in,
            "retry_after": retry_after or DEFAULT_OTP_RETRY_AFTER_SECONDS,
            "phone": mask_phone(body.phone),
        },
    )


@router.post("/auth/otp/verify", response_model=Envelope, tags=["otp"])
async def verify_otp(body: OtpVerifyRequest, request: Request):
    """Verify a phone code and hand back a scoped temp token."""
    runtime = get_runtime()
    await runtime.otp.verify(
        body.phone,
        body.code,
        body.context,
        body.reference_id,
        ip=_client_ip(request),
        user_agent=_user_agent(request),
    )
    temp_token = runtime.tokens.mint_temp(
        body.phone, body.context, body.reference_id, body.tracking_code
    )
    return Envelope(
        status="ok",
        data={
            "verified": True,
            "temp_token": temp_token,
            "expires_in": runtime.tokens.temp_ttl_seconds,
            "token_type": "Bearer",
        },
    )


# ----------------------------------------------------------------------
# Two-factor management
# ----------------------------------------------------------------------


@router.get("/auth/2fa/status", response_model=Envelope, tags=["2fa"])
async def two_factor_status(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.two_factor.status(principal.user_id).to_dict())


@router.post("/auth/2fa/setup", response_model=Envelope, tags=["2fa"])
async def two_factor_setup(principal: AuthContext = Depends(get_user)):
    """Start TOTP enrollment.

    The recovery codes in the response are shown once and cannot be
    retrieved again.
    """
    runtime = get_runtime()
    user = runtime.store.get_user(principal.user_id)
    if not user:
        raise AuthError(ErrorKind.PRINCIPAL_NOT_FOUND)
    setup = runtime.two_factor.initiate_setup(user)
    return Envelope(status="ok", data=setup.to_dict())


@router.post("/auth/2fa/confirm", response_model=Envelope, tags=["2fa"])
async def two_factor_confirm(
    body: TwoFactorCodeRequest,
    request: Request,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    runtime.two_factor.confirm_setup(
        principal.user_id,
        body.code,
        ip=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return Envelope(status="ok", data={"enabled": True})


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["2fa"])
async def two_factor_disable(
    body: TwoFactorCodeRequest,
    request: Request,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    runtime.two_factor.disable(
        principal.user_id,
        body.code,
        ip=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return Envelope(status="ok", data={"enabled": False})


@router.post("/auth/2fa/recovery-codes/regenerate", response_model=Envelope, tags=["2fa"])
async def regenerate_recovery_codes(
    body: TwoFactorCodeRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    codes = runtime.two_factor.regenerate_recovery_codes(principal.user_id, body.code)
    return Envelope(status="ok", data={"recovery_codes": codes})
