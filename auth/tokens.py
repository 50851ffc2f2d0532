"""
auth/tokens.py -- JWT issuance/verification, password hashing, token digests.

Security design decisions:
  JWT: python-jose with HS256. Access and refresh tokens carry the same
       identity claims (userId, email) but are signed with DISTINCT secrets and
       have distinct lifetimes (1 day / 7 days by default). Every token also
       carries a random jti so two logins in the same second still produce two
       distinct token pairs.

       Verification raises AuthError with a precise code (TOKEN_EXPIRED vs
       INVALID_TOKEN) because the auth middleware reacts differently to each:
       an expired token triggers best-effort cleanup of its cache entry.

  Passwords: bcrypt used directly (no passlib wrapper), work factor from
       Settings.bcrypt_rounds. _dummy_hash() enables timing equalization in
       the login flow so response time does not reveal whether an e-mail is
       registered [C1].

  Digests: hash_token() is HMAC-SHA256(server secret, raw). It is used for
       every secret value the database would otherwise hold in plain text:
       durable refresh-token rows, password-reset tokens and e-mail
       verification tokens. Deterministic, so lookup stays O(1).

Rotating either signing secret invalidates every outstanding token of that
kind. That is an accepted operational cost, not handled automatically.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import time
import uuid
from datetime import datetime, timedelta, timezone
from functools import lru_cache

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import AuthError, ErrorCode
from auth.models import TokenPair
from core.config import Settings

logger = logging.getLogger("tripwise.auth")

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int = 10) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes; the API layer caps password
    length well below that.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


@lru_cache
def _dummy_hash(rounds: int) -> str:
    # Same cost factor as real hashes, so a miss costs as much as a hit [C1].
    return hash_password("tripwise_timing_dummy", rounds)


def burn_password_check(plain: str, rounds: int = 10) -> None:
    """Run a bcrypt comparison against a dummy hash and discard the result."""
    verify_password(plain, _dummy_hash(rounds))


# ---------------------------------------------------------------------------
# Random tokens and digests
# ---------------------------------------------------------------------------


def generate_reset_token() -> str:
    """256 bits of entropy as 64 hex chars."""
    return secrets.token_hex(32)


def hash_token(raw: str, key: str) -> str:
    """Return HMAC-SHA256(key, raw) as a hex string."""
    return hmac.new(key.encode(), raw.encode(), hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# Token issuer
# ---------------------------------------------------------------------------


class TokenIssuer:
    """Mints and verifies access/refresh JWTs.

    Usage:
        issuer = TokenIssuer(settings)
        pair = issuer.issue_token_pair(user.id, user.email)
        claims = issuer.verify_access(pair.access_token)
    """

    def __init__(self, settings: Settings) -> None:
        self._access_secret = settings.jwt_access_secret
        self._refresh_secret = settings.jwt_refresh_secret
        self.access_ttl = settings.access_token_expire_seconds
        self.refresh_ttl = settings.refresh_token_expire_seconds

    def _encode(self, user_id: str, email: str, kind: str, ttl: int, secret: str) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "userId": user_id,
            "email": email,
            "type": kind,
            "jti": uuid.uuid4().hex,
            "iat": now,
            "exp": now + timedelta(seconds=ttl),
        }
        return jwt.encode(payload, secret, algorithm=_ALGORITHM)

    def create_access_token(self, user_id: str, email: str) -> str:
        return self._encode(user_id, email, "access", self.access_ttl, self._access_secret)

    def create_refresh_token(self, user_id: str, email: str) -> str:
        return self._encode(user_id, email, "refresh", self.refresh_ttl, self._refresh_secret)

    def issue_token_pair(self, user_id: str, email: str) -> TokenPair:
        return TokenPair(
            access_token=self.create_access_token(user_id, email),
            refresh_token=self.create_refresh_token(user_id, email),
        )

    def verify_access(self, token: str) -> dict:
        """Decode and verify an access token.

        Raises AuthError(TOKEN_EXPIRED) for a well-signed but expired token and
        AuthError(INVALID_TOKEN) for anything else that fails verification.
        """
        try:
            claims = jwt.decode(token, self._access_secret, algorithms=[_ALGORITHM])
        except ExpiredSignatureError as exc:
            raise AuthError(ErrorCode.TOKEN_EXPIRED) from exc
        except JWTError as exc:
            raise AuthError(ErrorCode.INVALID_TOKEN) from exc
        if "userId" not in claims or claims.get("type", "access") != "access":
            raise AuthError(ErrorCode.INVALID_TOKEN)
        return claims

    def verify_refresh(self, token: str) -> dict:
        """Decode and verify a refresh token. Any failure is INVALID_REFRESH_TOKEN."""
        try:
            claims = jwt.decode(token, self._refresh_secret, algorithms=[_ALGORITHM])
        except JWTError as exc:
            raise AuthError(ErrorCode.INVALID_REFRESH_TOKEN) from exc
        if "userId" not in claims or claims.get("type", "refresh") != "refresh":
            raise AuthError(ErrorCode.INVALID_REFRESH_TOKEN)
        return claims

    def remaining_lifetime(self, token: str) -> int:
        """Seconds until the token's exp claim, at least 1.

        Reads claims WITHOUT verifying the signature -- only use on tokens that
        already passed verification. Falls back to the full access lifetime
        when the claim cannot be read.
        """
        try:
            exp = jwt.get_unverified_claims(token).get("exp")
        except JWTError:
            return self.access_ttl
        if exp is None:
            return self.access_ttl
        return max(1, int(exp - time.time()))

    def refresh_digest(self, raw_refresh_token: str) -> str:
        """Digest stored in the durable refresh_tokens table."""
        return hash_token(raw_refresh_token, self._refresh_secret)

    def secret_digest(self, raw: str) -> str:
        """Digest for reset / verification tokens stored on the user row."""
        return hash_token(raw, self._access_secret)
