"""
tests/test_user_store.py -- UserStore repository against SQLite.

Covers:
  - user + profile created together, e-mail uniqueness is case-insensitive
  - update / delete (with profile and refresh-token cascade)
  - reset and verification digests only match while unexpired
  - refresh-token rows: active lookup, per-token and bulk revocation,
    user scoping, purge of expired or revoked rows
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from auth.models import RefreshTokenRecord, User
from conftest import make_store, unique_email


@pytest.fixture
def store():
    s = make_store("store")
    yield s
    s.close()


def _user(store, email: str | None = None) -> User:
    user, _ = store.create_user_with_profile(User(email=email or unique_email(), password_hash="$2b$04$hash"))
    return user


def _token(store, user_id: str, digest: str, expires_in: int = 3600) -> int:
    return store.create_refresh_token(
        RefreshTokenRecord(
            token_hash=digest,
            user_id=user_id,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        )
    )


class TestUsers:
    def test_create_with_profile(self, store) -> None:
        user, profile = store.create_user_with_profile(User(email="Mixed@Example.com", password_hash="h"))
        assert user.id and profile.id
        assert user.email == "mixed@example.com"
        assert profile.user_id == user.id
        assert profile.last_login is None
        assert store.get_profile_by_id(profile.id).user_id == user.id
        assert store.get_by_email("MIXED@example.com").id == user.id
        assert store.count_users() == 1

    def test_duplicate_email_raises(self, store) -> None:
        _user(store, "dup@example.com")
        with pytest.raises(IntegrityError):
            _user(store, "DUP@example.com")

    def test_update_user(self, store) -> None:
        user = _user(store)
        assert store.update_user(user.id, name="Grace", phone="+1555")
        updated = store.get_by_id(user.id)
        assert (updated.name, updated.phone) == ("Grace", "+1555")
        assert updated.updated_at >= user.updated_at
        assert not store.update_user("missing", name="x")

    def test_touch_last_login(self, store) -> None:
        user = _user(store)
        profile = store.touch_last_login(user.id)
        assert profile.last_login is not None
        assert profile.last_login.tzinfo is not None

    def test_delete_cascades(self, store) -> None:
        user = _user(store)
        _token(store, user.id, "d" * 64)

        assert store.delete_user(user.id)

        assert store.get_by_id(user.id) is None
        assert store.get_profile(user.id) is None
        assert store.find_active_refresh_token("d" * 64, user.id) is None
        assert not store.delete_user(user.id)

    def test_list_users_pages_with_profiles(self, store) -> None:
        for email in ("c@example.com", "b@example.com", "a@example.com"):
            _user(store, email)

        page = store.list_users(limit=2)
        assert [u.email for u, _ in page] == ["a@example.com", "b@example.com"]
        assert all(profile.user_id == user.id for user, profile in page)
        assert [u.email for u, _ in store.list_users(limit=2, offset=2)] == ["c@example.com"]
        assert store.count_users() == 3


class TestTokenDigests:
    def test_reset_token_expiry(self, store) -> None:
        user = _user(store)
        now = datetime.now(timezone.utc)
        store.update_user(user.id, reset_password_token_hash="r" * 64, reset_password_expiry=now + timedelta(hours=1))
        assert store.find_by_reset_token("r" * 64).id == user.id

        store.update_user(user.id, reset_password_expiry=now - timedelta(seconds=1))
        assert store.find_by_reset_token("r" * 64) is None

    def test_verification_token(self, store) -> None:
        user = _user(store)
        store.update_user(
            user.id,
            email_verification_token_hash="v" * 64,
            email_verification_expiry=datetime.now(timezone.utc) + timedelta(hours=1),
        )
        assert store.find_by_verification_token("v" * 64).id == user.id

        store.mark_email_verified(user.id)

        assert store.find_by_verification_token("v" * 64) is None
        assert store.get_by_id(user.id).email_verified
        assert store.get_profile(user.id).email_verified


class TestRefreshTokens:
    def test_active_lookup_is_user_scoped(self, store) -> None:
        user = _user(store)
        other = _user(store)
        _token(store, user.id, "a" * 64)

        assert store.find_active_refresh_token("a" * 64, user.id).user_id == user.id
        assert store.find_active_refresh_token("a" * 64, other.id) is None
        assert store.revoke_refresh_token("a" * 64, other.id) == 0

    def test_expired_row_is_not_active(self, store) -> None:
        user = _user(store)
        _token(store, user.id, "e" * 64, expires_in=-10)
        assert store.find_active_refresh_token("e" * 64, user.id) is None

    def test_revoke_single_and_all(self, store) -> None:
        user = _user(store)
        for digest in ("1" * 64, "2" * 64, "3" * 64):
            _token(store, user.id, digest)

        assert store.revoke_refresh_token("1" * 64, user.id) == 1
        assert store.find_active_refresh_token("1" * 64, user.id) is None
        assert store.find_active_refresh_token("2" * 64, user.id) is not None

        assert store.revoke_all_refresh_tokens(user.id) == 3
        assert all(store.find_active_refresh_token(d * 64, user.id) is None for d in "123")

    def test_purge_removes_expired_and_revoked(self, store) -> None:
        user = _user(store)
        _token(store, user.id, "live".ljust(64, "0"))
        _token(store, user.id, "old".ljust(64, "0"), expires_in=-10)
        _token(store, user.id, "gone".ljust(64, "0"))
        store.revoke_refresh_token("gone".ljust(64, "0"), user.id)

        assert store.purge_refresh_tokens() == 2
        assert store.find_active_refresh_token("live".ljust(64, "0"), user.id) is not None
        assert store.purge_refresh_tokens() == 0

    def test_ping(self, store) -> None:
        assert store.ping() is True
