"""
api/routes/v1/auth.py -- Authentication and session lifecycle REST endpoints.

Routes:
  POST /api/v1/auth/register             -- create account; returns token pair (201)
  POST /api/v1/auth/login                -- password login; returns token pair + isSuperAdmin
  POST /api/v1/auth/refresh-token        -- new access token for a live refresh token
  POST /api/v1/auth/logout               -- end one session, or all (requires auth)
  POST /api/v1/auth/change-password      -- revokes every session (requires auth)
  POST /api/v1/auth/forgot-password      -- e-mail a reset token; constant response
  POST /api/v1/auth/reset-password       -- consume a reset token; revokes every session
  GET  /api/v1/auth/verify-email/{token} -- consume a verification token
  POST /api/v1/auth/resend-verification  -- constant response
  GET  /api/v1/auth/me                   -- current principal (requires auth)

Security:
  [H2] Credential endpoints are rate-limited per IP (login_rate_limit /
       auth_rate_limit in Settings).
  [C1] AuthService.login() equalizes timing for unknown e-mails.
  [M5] Cache-Control: no-store on every response that carries tokens.
  forgot-password and resend-verification answer identically whether or not
  the e-mail is registered.

Every handler decorated with @limiter.limit() takes `request: Request` and
returns a JSONResponse so slowapi can inject the X-RateLimit-* headers.
"""

from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from api.limiter import AUTH_LIMIT, LOGIN_LIMIT, limiter
from api.models import (
    AuthData,
    ChangePasswordRequest,
    EmailRequest,
    LoginRequest,
    LogoutRequest,
    MeData,
    RefreshTokenRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SuccessResponse,
    TokenData,
    UserOut,
)
from auth.dependencies import get_current_principal
from auth.models import AuthResult, Principal
from auth.service import AuthService

# Auth policy:
# - POST /auth/register, /login, /refresh-token:           public, rate-limited
# - POST /auth/forgot-password, /reset-password:           public, rate-limited
# - GET  /auth/verify-email/{token}, POST /resend-verification: public
# - POST /auth/logout, /change-password, GET /auth/me:     requires auth (get_current_principal)
router = APIRouter()

_RESET_SENT = "If an account exists with this email, you will receive password reset instructions."
_VERIFICATION_SENT = "If an unverified account exists with this email, a verification email has been sent."


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _client_metadata(request: Request) -> dict[str, Any]:
    return {
        "user_agent": request.headers.get("user-agent"),
        "ip": request.client.host if request.client else None,
    }


def _ok(message: str | None = None, data: BaseModel | None = None, status_code: int = 200) -> JSONResponse:
    payload = data.model_dump(by_alias=True, mode="json") if data is not None else None
    return JSONResponse(
        status_code=status_code,
        content=SuccessResponse(message=message, data=payload).model_dump(by_alias=True, mode="json"),
    )


def _no_store(resp: JSONResponse) -> JSONResponse:
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _auth_data(result: AuthResult) -> AuthData:
    return AuthData(
        user=UserOut.model_validate(result.user),
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        is_super_admin=result.is_super_admin,
    )


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", status_code=201)
@limiter.limit(AUTH_LIMIT)  # [H2]
async def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an account and its empty profile, then start a session."""
    result = await _service(request).register(
        body.email, body.password, name=body.name, phone=body.phone, client=_client_metadata(request)
    )
    return _no_store(_ok("User registered successfully", _auth_data(result), status_code=201))


@router.post("/auth/login")
@limiter.limit(LOGIN_LIMIT)  # [H2] brute-force mitigation
async def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with e-mail and password.

    Wrong e-mail and wrong password produce the same 401 body.
    """
    result = await _service(request).login(body.email, body.password, client=_client_metadata(request))
    return _no_store(_ok("Login successful", _auth_data(result)))


@router.post("/auth/refresh-token")
@limiter.limit(AUTH_LIMIT)
async def refresh_token(request: Request, body: RefreshTokenRequest) -> JSONResponse:
    """Exchange a live refresh token for a new access token (no rotation)."""
    pair = await _service(request).refresh(body.refresh_token)
    data = TokenData(access_token=pair.access_token, refresh_token=pair.refresh_token)
    return _no_store(_ok("Token refreshed", data))


@router.post("/auth/forgot-password")
@limiter.limit(AUTH_LIMIT)
async def forgot_password(request: Request, body: EmailRequest) -> JSONResponse:
    await _service(request).forgot_password(body.email)
    return _ok(_RESET_SENT)


@router.post("/auth/reset-password")
@limiter.limit(AUTH_LIMIT)
async def reset_password(request: Request, body: ResetPasswordRequest) -> JSONResponse:
    await _service(request).reset_password(body.token, body.new_password)
    return _ok("Password reset successful. Please login with your new password.")


@router.get("/auth/verify-email/{token}")
async def verify_email(request: Request, token: str) -> JSONResponse:
    await _service(request).verify_email(token)
    return _ok("Email verified successfully")


@router.post("/auth/resend-verification")
@limiter.limit(AUTH_LIMIT)
async def resend_verification(request: Request, body: EmailRequest) -> JSONResponse:
    await _service(request).resend_verification(body.email)
    return _ok(_VERIFICATION_SENT)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout")
async def logout(
    request: Request,
    body: Optional[LogoutRequest] = None,
    principal: Principal = Depends(get_current_principal),
) -> JSONResponse:
    """End the session behind refreshToken, or every session when it is omitted.

    The bearer access token used for this call is blacklisted in both cases.
    """
    refresh = body.refresh_token if body is not None else None
    await _service(request).logout(principal, refresh_token=refresh, access_token=principal.token)
    return _ok("Logout successful")


@router.post("/auth/change-password")
@limiter.limit(AUTH_LIMIT)
async def change_password(
    request: Request,
    body: ChangePasswordRequest,
    principal: Principal = Depends(get_current_principal),
) -> JSONResponse:
    await _service(request).change_password(principal, body.current_password, body.new_password)
    return _ok("Password changed successfully. Please login again.")


@router.get("/auth/me")
async def me(principal: Principal = Depends(get_current_principal)) -> JSONResponse:
    """Return identity information for the currently authenticated principal."""
    user = UserOut(
        id=principal.id,
        email=principal.email,
        name=principal.name,
        phone=principal.phone,
        profile=principal.profile,
    )
    return _ok(data=MeData(user=user, is_super_admin=principal.is_super_admin))
