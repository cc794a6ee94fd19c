from __future__ import annotations

from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request, Response

from authcore.api.schemas import (
    AuthResponse,
    Envelope,
    LogoutResponse,
    MeResponse,
    OAuthCallbackRequest,
    OAuthUrlResponse,
    OtpSentResponse,
    PhoneRequest,
    RefreshRequest,
    RoleAssignmentRequest,
    TokenPairResponse,
    UserPublic,
    VerifyOtpRequest,
)
from authcore.service.auth import AuthContext, AuthResult
from authcore.service.errors import ForbiddenError, InvalidTokenError, TokenExpiredError
from authcore.service.rate_limit import RateLimitDecision, RateLimitSubject
from authcore.service.roles import has_role_at_least, is_admin
from authcore.service.runtime import get_runtime


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


def _client_ip(request: Request) -> str:
    if get_runtime().settings.trust_proxy_headers:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _subject(request: Request) -> RateLimitSubject:
    """Key rate limits by client IP plus the user of a verified bearer token.

    A bearer that fails verification is counted as anonymous, so a forged
    ``sub`` claim cannot open a fresh counter.
    """
    user_id = role = None
    authorization = request.headers.get("authorization") or ""
    if authorization.lower().startswith("bearer "):
        try:
            claims = get_runtime().codec.verify(authorization[7:].strip())
        except (InvalidTokenError, TokenExpiredError):
            claims = None
        if claims:
            user_id = str(claims["sub"])
            role = claims.get("role")
    return RateLimitSubject(
        ip=_client_ip(request), user_id=user_id, role=role, path=request.url.path
    )


def rate_limit(preset: str):
    """Dependency admitting the request against one named limiter.

    Sets ``X-RateLimit-*`` headers and, once the endpoint finishes, returns
    the hit when the limiter skips successful or failed requests.
    """

    async def _dependency(request: Request, response: Response) -> AsyncIterator[RateLimitDecision]:
        limiter = get_runtime().rate_limiters[preset]
        decision = await limiter.hit(_subject(request))
        if decision.counted:
            decision.apply_headers(response.headers)
        try:
            yield decision
        except Exception:
            await limiter.settle(decision, succeeded=False)
            raise
        await limiter.settle(decision, succeeded=True)

    return _dependency


router = APIRouter(prefix="/v1", dependencies=[Depends(rate_limit("general"))])


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    return await get_runtime().auth.authenticate(authorization)


def require_role(role: str):
    """Dependency allowing ``role`` and every role ranked above it."""

    async def _dependency(ctx: AuthContext = Depends(get_user)) -> AuthContext:
        if not has_role_at_least(ctx.role, role):
            raise ForbiddenError(
                "Insufficient permissions", detail={"required": role, "current": ctx.role}
            )
        return ctx

    return _dependency


def _auth_payload(result: AuthResult) -> dict:
    return AuthResponse(
        user=UserPublic.from_user(result.user),
        token=result.token,
        refresh_token=result.refresh_token,
        expires_in=result.expires_in,
    ).to_wire()


@router.post(
    "/phone/send-otp",
    response_model=Envelope,
    tags=["phone"],
    dependencies=[Depends(rate_limit("otp"))],
)
async def send_otp(body: PhoneRequest):
    """Send a one-time code to ``phone``.

    Raises:
        429: RATE_LIMIT_EXCEEDED when the phone exceeded its send window
    """
    dispatch = await get_runtime().auth.send_otp(body.phone)
    return Envelope(
        status="ok",
        data=OtpSentResponse(phone=dispatch.phone, expires_in=dispatch.expires_in).to_wire(),
    )


@router.post(
    "/phone/verify",
    response_model=Envelope,
    tags=["phone"],
    dependencies=[Depends(rate_limit("auth"))],
)
async def verify_otp(body: VerifyOtpRequest):
    result = await get_runtime().auth.verify_otp_and_login(body.phone, body.otp)
    return Envelope(status="ok", data=_auth_payload(result))


@router.post(
    "/phone/resend-otp",
    response_model=Envelope,
    tags=["phone"],
    dependencies=[Depends(rate_limit("otp"))],
)
async def resend_otp(body: PhoneRequest):
    dispatch = await get_runtime().auth.resend_otp(body.phone)
    return Envelope(
        status="ok",
        data=OtpSentResponse(
            phone=dispatch.phone, expires_in=dispatch.expires_in, message="OTP resent successfully"
        ).to_wire(),
    )


@router.get("/oauth/{provider}", response_model=Envelope, tags=["oauth"])
async def oauth_url(provider: str = Path(..., pattern="^google$")):
    url = get_runtime().auth.oauth_url(provider)
    return Envelope(status="ok", data=OAuthUrlResponse(url=url).to_wire())


@router.post(
    "/oauth/callback",
    response_model=Envelope,
    tags=["oauth"],
    dependencies=[Depends(rate_limit("auth"))],
)
async def oauth_callback(body: OAuthCallbackRequest):
    """Exchange an identity-provider access token for local credentials.

    Raises:
        400: INVALID_TOKEN when the provider rejects the token
        404: USER_NOT_FOUND when no local account is linked
    """
    result = await get_runtime().auth.oauth_exchange(body.access_token)
    return Envelope(status="ok", data=_auth_payload(result))


@router.post(
    "/refresh",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(rate_limit("auth"))],
)
async def refresh(body: RefreshRequest):
    result = await get_runtime().auth.refresh(body.refresh_token)
    return Envelope(
        status="ok",
        data=TokenPairResponse(
            token=result.token,
            refresh_token=result.refresh_token,
            expires_in=result.expires_in,
        ).to_wire(),
    )


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(ctx: AuthContext = Depends(get_user)):
    user = await get_runtime().auth.current_user(ctx)
    return Envelope(status="ok", data=MeResponse(user=UserPublic.from_user(user)).to_wire())


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(ctx: AuthContext = Depends(get_user)):
    result = await get_runtime().auth.logout(ctx.user_id, ctx.token)
    return Envelope(
        status="ok",
        data=LogoutResponse(
            sessions_revoked=result.sessions_revoked,
            refresh_tokens_revoked=result.refresh_tokens_revoked,
        ).to_wire(),
    )


@router.put(
    "/admin/users/{user_id}/role",
    response_model=Envelope,
    tags=["admin"],
    dependencies=[Depends(rate_limit("admin"))],
)
async def admin_set_role(
    body: RoleAssignmentRequest,
    user_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(require_role("ADMIN")),
):
    target_role = body.role.upper()
    # Only a super admin may hand out admin-level roles
    if is_admin(target_role) and not has_role_at_least(ctx.role, "SUPER_ADMIN"):
        raise _http_error(
            "FORBIDDEN", "only SUPER_ADMIN can grant admin roles", status_code=403
        )
    user = await get_runtime().auth.assign_role(user_id, target_role)
    return Envelope(status="ok", data=MeResponse(user=UserPublic.from_user(user)).to_wire())
