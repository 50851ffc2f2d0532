"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, almost zero logic). Stores, caches
and routes do the work; these classes only own the shape.

Timestamps are timezone-aware UTC datetimes on the Python side.

Layer rule: no imports from api/, core/, or cache/.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any


@dataclass
class User:
    """An identity record in the Credential Store.

    password_hash is a bcrypt hash and must never leave the store layer:
    public_dict() strips it, and only public_dict() output is cached.

    The reset / verification token columns hold HMAC digests, not the raw
    values e-mailed to the user.
    """

    email: str
    password_hash: str
    id: str | None = None
    name: str | None = None
    phone: str | None = None
    email_verified: bool = False
    reset_password_token_hash: str | None = None
    reset_password_expiry: datetime | None = None
    email_verification_token_hash: str | None = None
    email_verification_expiry: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def public_dict(self, profile: Profile | None = None) -> dict[str, Any]:
        """Sanitized, JSON-safe view used for responses and the user cache."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "phone": self.phone,
            "profile": profile.to_dict() if profile is not None else None,
        }


@dataclass
class Profile:
    user_id: str
    id: str | None = None
    last_login: datetime | None = None
    email_verified: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "lastLogin": self.last_login.isoformat() if self.last_login else None,
            "emailVerified": self.email_verified,
        }


@dataclass
class RefreshTokenRecord:
    """Durable backup of an issued refresh token.

    token_hash is HMAC-SHA256 of the raw token (see auth.tokens.hash_token),
    the same treatment the fingerprint cache gives it, so a database dump
    does not leak replayable refresh tokens either.
    """

    token_hash: str
    user_id: str
    expires_at: datetime
    id: int | None = None
    is_revoked: bool = False
    created_at: datetime | None = None


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass
class FingerprintMetadata:
    """Cache-side record of a live refresh token. Never holds the raw token."""

    user_id: str
    fingerprint: str
    created_at: float
    user_agent: str | None = None
    ip: str | None = None
    login_time: str | None = None
    restored: bool = False
    # Digest of the matching durable refresh_tokens row
    token_hash: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FingerprintMetadata:
        known = {k: data.get(k) for k in ("user_agent", "ip", "login_time", "token_hash")}
        return cls(
            user_id=data["user_id"],
            fingerprint=data["fingerprint"],
            created_at=data["created_at"],
            restored=bool(data.get("restored", False)),
            **known,
        )


@dataclass
class CachedPermission:
    allowed: bool
    timestamp: float


@dataclass
class Principal:
    """The authenticated identity attached to a request."""

    id: str
    email: str
    name: str | None = None
    phone: str | None = None
    profile: dict[str, Any] | None = None
    is_super_admin: bool = False
    token: str | None = field(default=None, repr=False)

    @classmethod
    def from_user_data(cls, data: dict[str, Any], is_super_admin: bool, token: str | None = None) -> Principal:
        return cls(
            id=data["id"],
            email=data["email"],
            name=data.get("name"),
            phone=data.get("phone"),
            profile=data.get("profile"),
            is_super_admin=is_super_admin,
            token=token,
        )


@dataclass
class AuthResult:
    """Outcome of register / login: sanitized user, fresh tokens, derived flag."""

    user: dict[str, Any]
    tokens: TokenPair
    is_super_admin: bool = False
    # Raw e-mail verification token, handed to the mailer, never to the client.
    verification_token: str | None = field(default=None, repr=False)
