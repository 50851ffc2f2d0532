"""
tests/test_tokens.py -- Unit tests for auth/tokens.py.

Covers:
  - bcrypt hash / verify round trip and malformed-hash tolerance
  - access and refresh tokens are signed with distinct secrets
  - expired vs invalid access tokens map to distinct error codes
  - every issued pair is unique (jti), even within the same second
  - remaining_lifetime and HMAC digests
"""

from __future__ import annotations

import time

import pytest
from jose import jwt

from auth.errors import AuthError, ErrorCode
from auth.tokens import (
    TokenIssuer,
    burn_password_check,
    generate_reset_token,
    hash_password,
    hash_token,
    verify_password,
)


class TestPasswords:
    def test_hash_and_verify(self) -> None:
        hashed = hash_password("Secret123", rounds=4)
        assert hashed != "Secret123"
        assert verify_password("Secret123", hashed)
        assert not verify_password("secret123", hashed)

    def test_malformed_hash_is_rejected_not_raised(self) -> None:
        assert verify_password("Secret123", "not-a-bcrypt-hash") is False

    def test_burn_password_check_returns_nothing(self) -> None:
        assert burn_password_check("anything", rounds=4) is None


class TestTokenIssuer:
    def test_pair_claims(self, settings) -> None:
        issuer = TokenIssuer(settings)
        pair = issuer.issue_token_pair("u1", "a@x.com")
        access = issuer.verify_access(pair.access_token)
        refresh = issuer.verify_refresh(pair.refresh_token)
        assert access["userId"] == refresh["userId"] == "u1"
        assert access["email"] == "a@x.com"
        assert access["type"] == "access"
        assert refresh["type"] == "refresh"
        assert refresh["exp"] - access["exp"] == pytest.approx(
            settings.refresh_token_expire_seconds - settings.access_token_expire_seconds, abs=2
        )

    def test_secrets_are_not_interchangeable(self, settings) -> None:
        issuer = TokenIssuer(settings)
        pair = issuer.issue_token_pair("u1", "a@x.com")
        with pytest.raises(AuthError) as exc:
            issuer.verify_access(pair.refresh_token)
        assert exc.value.code is ErrorCode.INVALID_TOKEN
        with pytest.raises(AuthError) as exc:
            issuer.verify_refresh(pair.access_token)
        assert exc.value.code is ErrorCode.INVALID_REFRESH_TOKEN

    def test_expired_access_token(self, settings) -> None:
        issuer = TokenIssuer(settings.model_copy(update={"access_token_expire_seconds": -10}))
        token = issuer.create_access_token("u1", "a@x.com")
        with pytest.raises(AuthError) as exc:
            issuer.verify_access(token)
        assert exc.value.code is ErrorCode.TOKEN_EXPIRED
        assert exc.value.status_code == 401

    def test_garbage_token(self, settings) -> None:
        with pytest.raises(AuthError) as exc:
            TokenIssuer(settings).verify_access("not.a.jwt")
        assert exc.value.code is ErrorCode.INVALID_TOKEN

    def test_wrong_type_claim_rejected(self, settings) -> None:
        token = jwt.encode(
            {"userId": "u1", "email": "a@x.com", "type": "refresh", "exp": int(time.time()) + 60},
            settings.jwt_access_secret,
            algorithm="HS256",
        )
        with pytest.raises(AuthError):
            TokenIssuer(settings).verify_access(token)

    def test_pairs_are_unique(self, settings) -> None:
        issuer = TokenIssuer(settings)
        first = issuer.issue_token_pair("u1", "a@x.com")
        second = issuer.issue_token_pair("u1", "a@x.com")
        assert first.access_token != second.access_token
        assert first.refresh_token != second.refresh_token

    def test_remaining_lifetime(self, settings) -> None:
        issuer = TokenIssuer(settings)
        token = issuer.create_access_token("u1", "a@x.com")
        remaining = issuer.remaining_lifetime(token)
        assert settings.access_token_expire_seconds - 5 <= remaining <= settings.access_token_expire_seconds
        assert issuer.remaining_lifetime("garbage") == settings.access_token_expire_seconds


class TestDigests:
    def test_reset_token_entropy(self) -> None:
        token = generate_reset_token()
        assert len(token) == 64
        assert token != generate_reset_token()

    def test_hash_token_is_keyed_and_deterministic(self) -> None:
        assert hash_token("raw", "k1") == hash_token("raw", "k1")
        assert hash_token("raw", "k1") != hash_token("raw", "k2")
        assert "raw" not in hash_token("raw", "k1")

    def test_refresh_and_secret_digests_differ(self, settings) -> None:
        issuer = TokenIssuer(settings)
        assert issuer.refresh_digest("abc") != issuer.secret_digest("abc")
