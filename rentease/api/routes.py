from __future__ import annotations

from typing import Callable, Optional

from fastapi import APIRouter, Cookie, Depends, Request, Response

from rentease.api.schemas import (
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    ProfileRequest,
    RegisterRequest,
    RegisterResponse,
    ResendVerificationRequest,
    ResetPasswordRequest,
    StatusResponse,
    UserInfoResponse,
    VerifyEmailRequest,
    VerifyEmailResponse,
)
from rentease.config import get_settings
from rentease.service.auth import ANY_ROLE, AuthContext
from rentease.service.runtime import get_runtime
from rentease.service.tokens import TokenPair

router = APIRouter(prefix="/api/auth")

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"


def client_ip(request: Request) -> str:
    """Address the session is bound to.

    Behind a trusted proxy the first ``X-Forwarded-For`` hop is the client.
    """
    if get_settings().trust_proxy:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _apply_auth_cookies(response: Response, tokens: TokenPair) -> None:
    settings = get_settings()
    secure = settings.is_production
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access,
        httponly=True,
        secure=secure,
        samesite="lax",
        max_age=settings.access_token_ttl_seconds,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh,
        httponly=True,
        secure=secure,
        samesite="lax",
        max_age=settings.refresh_token_ttl_seconds,
        path="/",
    )


def _clear_auth_cookies(response: Response) -> None:
    secure = get_settings().is_production
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(name, path="/", secure=secure, httponly=True, samesite="lax")


def require_authentication(*roles: str) -> Callable:
    """Dependency factory for routes that need a live, IP-bound session.

    With no roles (or ``ANY_ROLE``) every authenticated user is admitted.
    """
    allowed = roles or (ANY_ROLE,)

    async def _dependency(
        request: Request,
        access_token: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
    ) -> AuthContext:
        runtime = get_runtime()
        return await runtime.auth.authenticate(access_token, client_ip(request), allowed)

    return _dependency


@router.post("/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an unverified account and email a six-digit code.

    Returns the verification token; the code itself is only sent by email.
    """
    runtime = get_runtime()
    token = await runtime.auth.register(
        body.email, body.password, body.confirm_password, body.role
    )
    data = RegisterResponse(
        message="Success! Check your email for the OTP code.", token=token
    )
    return Envelope(status="ok", data=data.model_dump())


@router.post("/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: VerifyEmailRequest):
    runtime = get_runtime()
    context = await runtime.auth.verify_email(body.token, body.otp)
    data = VerifyEmailResponse(message="Email verified successfully", context=context)
    return Envelope(status="ok", data=data.model_dump())


@router.post("/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: ResendVerificationRequest):
    runtime = get_runtime()
    await runtime.auth.resend_verification(body.token)
    data = MessageResponse(message="Verification email resent successfully")
    return Envelope(status="ok", data=data.model_dump())


@router.post("/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    runtime = get_runtime()
    await runtime.auth.forgot_password(body.email)
    data = MessageResponse(message="Password reset instructions sent to your email")
    return Envelope(status="ok", data=data.model_dump())


@router.post("/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    await runtime.auth.reset_password(
        body.token, body.new_password, body.confirm_password
    )
    data = MessageResponse(message="Password has been reset successfully")
    return Envelope(status="ok", data=data.model_dump())


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Start an IP-bound session and set both auth cookies.

    Unverified accounts still get cookies; the response carries
    ``verified: false`` and a fresh verification token.
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password, client_ip(request))
    _apply_auth_cookies(response, result.tokens)
    if result.verified:
        data = LoginResponse(message="Login successful", verified=True)
        return Envelope(status="ok", data=data.model_dump(exclude_none=True))
    data = LoginResponse(
        message="Login pending verification",
        verified=False,
        token=result.verification_token,
    )
    return Envelope(status="ok", data=data.model_dump())


@router.post("/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    request: Request,
    response: Response,
    refresh_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    tokens = await runtime.auth.refresh(refresh_token, client_ip(request))
    _apply_auth_cookies(response, tokens)
    return Envelope(status="ok", data=MessageResponse(message="Token refreshed").model_dump())


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    access_token: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
):
    runtime = get_runtime()
    await runtime.auth.logout(access_token, client_ip(request))
    _clear_auth_cookies(response)
    return Envelope(status="ok", data=MessageResponse(message="Logout successful").model_dump())


@router.get("/status", response_model=Envelope, tags=["auth"])
async def status(access_token: Optional[str] = Cookie(None, alias=ACCESS_COOKIE)):
    runtime = get_runtime()
    role = await runtime.auth.status(access_token)
    return Envelope(status="ok", data=StatusResponse(role=role).model_dump())


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(require_authentication())):
    runtime = get_runtime()
    user = runtime.auth.get_user_info(principal.user_id)
    return Envelope(status="ok", data=UserInfoResponse(user=user).model_dump())


@router.put("/onboarding", response_model=Envelope, tags=["profile"])
async def onboarding(
    body: ProfileRequest,
    principal: AuthContext = Depends(require_authentication()),
):
    runtime = get_runtime()
    runtime.auth.complete_onboarding(principal.user_id, body.provided_fields())
    data = MessageResponse(message="Profile successfully updated")
    return Envelope(status="ok", data=data.model_dump())


@router.put("/update-profile", response_model=Envelope, tags=["profile"])
async def update_profile(
    body: ProfileRequest,
    principal: AuthContext = Depends(require_authentication()),
):
    runtime = get_runtime()
    runtime.auth.update_profile(principal.user_id, body.provided_fields())
    data = MessageResponse(message="Profile updated successfully")
    return Envelope(status="ok", data=data.model_dump())
