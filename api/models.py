"""
API request and response models for Tripwise REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

JSON on the wire is camelCase (accessToken, refreshToken, isSuperAdmin...).
Every model shares _CamelModel's alias generator; populate_by_name lets
Python code construct models with snake_case names.

Success envelope: {"success": true, "message": ..., "data": ...}
Error envelope:   {"success": false, "message": ..., "code": ..., "timestamp": ...}
"""

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

# bcrypt ignores everything past 72 bytes; reject instead of silently truncating.
_PASSWORD_MAX = 72
_PASSWORD_MIN = 8


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _CamelRequest(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)


class _EmailRequest(_CamelRequest):
    """Base for bodies carrying an e-mail.

    EmailStr checks syntax (and the 254-char limit) with email-validator;
    deliverability is proven by the verification flow instead.
    """

    email: EmailStr

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return value.lower()


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(_EmailRequest):
    """Request body for POST /api/v1/auth/register."""

    password: str = Field(min_length=_PASSWORD_MIN, max_length=_PASSWORD_MAX)
    name: Optional[str] = Field(default=None, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=30)


class LoginRequest(_EmailRequest):
    """Request body for POST /api/v1/auth/login.

    No minimum password length here: a policy change must not lock out
    existing users, and a short password fails verification anyway.
    """

    password: str = Field(min_length=1, max_length=_PASSWORD_MAX)


class RefreshTokenRequest(_CamelRequest):
    refresh_token: str = Field(min_length=1, max_length=4096)


class LogoutRequest(_CamelRequest):
    """Optional body for POST /api/v1/auth/logout. Omit refreshToken to log out everywhere."""

    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class ChangePasswordRequest(_CamelRequest):
    current_password: str = Field(min_length=1, max_length=_PASSWORD_MAX)
    new_password: str = Field(min_length=_PASSWORD_MIN, max_length=_PASSWORD_MAX)


class EmailRequest(_EmailRequest):
    """Request body for forgot-password and resend-verification."""


class ResetPasswordRequest(_CamelRequest):
    token: str = Field(min_length=1, max_length=256)
    new_password: str = Field(min_length=_PASSWORD_MIN, max_length=_PASSWORD_MAX)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class ProfileOut(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: Optional[str] = None
    user_id: str
    last_login: Optional[str] = None
    email_verified: bool = False


class UserOut(_CamelModel):
    """Sanitized user. Built from User.public_dict(); never carries a password hash."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    email: str
    name: Optional[str] = None
    phone: Optional[str] = None
    profile: Optional[ProfileOut] = None


class AuthData(_CamelModel):
    """data payload of register / login responses."""

    user: UserOut
    access_token: str
    refresh_token: str
    is_super_admin: bool = False


class TokenData(_CamelModel):
    """data payload of POST /refresh-token. refreshToken is echoed unchanged."""

    access_token: str
    refresh_token: str


class MeData(_CamelModel):
    user: UserOut
    is_super_admin: bool


class SessionOut(_CamelModel):
    """One live refresh-token session, as tracked by the fingerprint cache."""

    fingerprint: str
    created_at: float
    user_agent: Optional[str] = None
    ip: Optional[str] = None
    login_time: Optional[str] = None
    restored: bool = False


class SessionList(_CamelModel):
    user_id: str
    sessions: list[SessionOut]


class UserList(_CamelModel):
    """One page of GET /users. total counts every user, not just this page."""

    users: list[UserOut]
    total: int
    limit: int
    offset: int


class SuccessResponse(_CamelModel):
    """Top-level success envelope."""

    success: bool = True
    message: Optional[str] = None
    data: Optional[Any] = None


class ErrorResponse(_CamelModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    success: bool = False
    message: str
    code: str
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    detail: Optional[Any] = None


class HealthResponse(_CamelModel):
    """Response for GET /api/v1/health.

    status is "healthy" when every component is up, "degraded" otherwise.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
