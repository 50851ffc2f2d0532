"""
auth/errors.py -- Tagged error taxonomy for the auth core.

Services never choose HTTP status codes. They raise AuthError with an
ErrorCode; api/main.py translates the code into a status and the uniform
error envelope at the boundary.

Credential failures share one code (INVALID_CREDENTIALS) and one message so
a caller cannot tell a wrong e-mail from a wrong password.

Layer rule: stdlib only.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    INVALID_TOKEN = "invalid_token"
    TOKEN_EXPIRED = "token_expired"
    USER_NOT_FOUND = "user_not_found"
    INVALID_CREDENTIALS = "invalid_credentials"
    INVALID_REFRESH_TOKEN = "invalid_refresh_token"
    REFRESH_TOKEN_EXPIRED_OR_REVOKED = "refresh_token_expired_or_revoked"
    FORBIDDEN = "forbidden"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    BAD_REQUEST = "bad_request"
    TOO_MANY_REQUESTS = "too_many_requests"
    SERVICE_UNAVAILABLE = "service_unavailable"


_STATUS_CODES: dict[ErrorCode, int] = {
    ErrorCode.UNAUTHENTICATED: 401,
    ErrorCode.INVALID_TOKEN: 401,
    ErrorCode.TOKEN_EXPIRED: 401,
    ErrorCode.USER_NOT_FOUND: 401,
    ErrorCode.INVALID_CREDENTIALS: 401,
    ErrorCode.INVALID_REFRESH_TOKEN: 401,
    ErrorCode.REFRESH_TOKEN_EXPIRED_OR_REVOKED: 401,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.CONFLICT: 409,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.BAD_REQUEST: 400,
    ErrorCode.TOO_MANY_REQUESTS: 429,
    ErrorCode.SERVICE_UNAVAILABLE: 503,
}

_DEFAULT_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.UNAUTHENTICATED: "Authentication token required",
    ErrorCode.INVALID_TOKEN: "Invalid token",
    ErrorCode.TOKEN_EXPIRED: "Token expired",
    ErrorCode.USER_NOT_FOUND: "User not found",
    ErrorCode.INVALID_CREDENTIALS: "Invalid email or password",
    ErrorCode.INVALID_REFRESH_TOKEN: "Invalid refresh token",
    ErrorCode.REFRESH_TOKEN_EXPIRED_OR_REVOKED: "Refresh token expired or revoked",
    ErrorCode.FORBIDDEN: "Insufficient permissions",
    ErrorCode.CONFLICT: "Resource already exists",
    ErrorCode.NOT_FOUND: "Resource not found",
    ErrorCode.BAD_REQUEST: "Bad request",
    ErrorCode.TOO_MANY_REQUESTS: "Too many requests, please try again later.",
    ErrorCode.SERVICE_UNAVAILABLE: "Service temporarily unavailable",
}


class AuthError(Exception):
    """A recoverable, user-facing failure from the auth core."""

    def __init__(self, code: ErrorCode, message: str | None = None) -> None:
        self.code = code
        self.message = message or _DEFAULT_MESSAGES[code]
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return _STATUS_CODES[self.code]

    def __repr__(self) -> str:
        return f"AuthError({self.code.value!r}, {self.message!r})"
