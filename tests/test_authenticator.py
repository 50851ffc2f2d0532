"""
tests/test_authenticator.py -- Bearer token -> Principal resolution.

Covers:
  - missing / garbled / expired tokens and their error codes
  - slow path populates the access-token and user caches
  - profiles come from the profile cache, else the database (then cached)
  - fast path serves from cache, including for superadmins
  - blacklist is checked before the fast path, and fails closed
  - cache outage degrades to signature verification
"""

from __future__ import annotations

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from auth.authenticator import extract_bearer_token
from auth.errors import AuthError, ErrorCode
from auth.tokens import TokenIssuer
from conftest import PASSWORD, unique_email


async def _registered(services):
    return await services.auth.register(unique_email(), PASSWORD)


def test_extract_bearer_token() -> None:
    assert extract_bearer_token("Bearer abc.def") == "abc.def"
    assert extract_bearer_token("Basic abc") is None
    assert extract_bearer_token("Bearer ") is None
    assert extract_bearer_token(None) is None


async def test_missing_token(services) -> None:
    with pytest.raises(AuthError) as exc:
        await services.authenticator.authenticate(None)
    assert exc.value.code is ErrorCode.UNAUTHENTICATED


async def test_garbled_token(services) -> None:
    with pytest.raises(AuthError) as exc:
        await services.authenticator.authenticate("garbage")
    assert exc.value.code is ErrorCode.INVALID_TOKEN


async def test_slow_path_populates_caches(services) -> None:
    result = await _registered(services)
    token = result.tokens.access_token
    assert await services.cache.validate_access_token(token) is None

    principal = await services.authenticator.authenticate(token)

    assert principal.id == result.user["id"]
    assert principal.email == result.user["email"]
    assert principal.is_super_admin is False
    assert principal.token == token
    assert await services.cache.validate_access_token(token) == {"userId": principal.id, "type": "access"}
    assert (await services.cache.get_user(principal.id))["email"] == principal.email


async def test_fast_path_uses_cached_user(services) -> None:
    result = await _registered(services)
    token = result.tokens.access_token
    await services.authenticator.authenticate(token)

    # Change the cached user so a cache-served answer is observable
    cached = await services.cache.get_user(result.user["id"])
    cached["name"] = "From Cache"
    await services.cache.cache_user(result.user["id"], cached)

    principal = await services.authenticator.authenticate(token)
    assert principal.name == "From Cache"


async def test_fast_path_reports_super_admin(services) -> None:
    result = await _registered(services)
    token = result.tokens.access_token
    await services.authenticator.authenticate(token)

    await services.engine.assign_super_admin(result.user["id"])
    await services.permissions.invalidate_user(result.user["id"])

    principal = await services.authenticator.authenticate(token)
    assert principal.is_super_admin is True


async def test_blacklisted_token_rejected_even_when_cached(services) -> None:
    result = await _registered(services)
    token = result.tokens.access_token
    await services.authenticator.authenticate(token)
    assert await services.cache.validate_access_token(token) is not None

    await services.cache.blacklist_access_token(token, 3600)

    with pytest.raises(AuthError) as exc:
        await services.authenticator.authenticate(token)
    assert exc.value.code is ErrorCode.INVALID_TOKEN
    assert exc.value.message == "Token has been revoked"


async def test_blacklist_unreadable_fails_closed(services) -> None:
    result = await _registered(services)
    services.redis_server.connected = False

    with pytest.raises(AuthError) as exc:
        await services.authenticator.authenticate(result.tokens.access_token)
    assert exc.value.code is ErrorCode.SERVICE_UNAVAILABLE
    assert exc.value.status_code == 503


async def test_access_cache_outage_falls_back_to_signature(services, monkeypatch) -> None:
    result = await _registered(services)

    async def _down(*args, **kwargs):
        raise RedisConnectionError("down")

    for name in ("validate_access_token", "cache_access_token", "get_user", "cache_user",
                 "get_cached_permission", "cache_permission"):
        monkeypatch.setattr(services.cache, name, _down)

    principal = await services.authenticator.authenticate(result.tokens.access_token)
    assert principal.id == result.user["id"]


async def test_expired_token(services) -> None:
    result = await _registered(services)
    expired_issuer = TokenIssuer(services.settings.model_copy(update={"access_token_expire_seconds": -10}))
    token = expired_issuer.create_access_token(result.user["id"], result.user["email"])

    with pytest.raises(AuthError) as exc:
        await services.authenticator.authenticate(token)
    assert exc.value.code is ErrorCode.TOKEN_EXPIRED
    assert await services.cache.validate_access_token(token) is None


async def test_deleted_user_is_rejected(services) -> None:
    result = await _registered(services)
    services.store.delete_user(result.user["id"])

    with pytest.raises(AuthError) as exc:
        await services.authenticator.authenticate(result.tokens.access_token)
    assert exc.value.code is ErrorCode.USER_NOT_FOUND


async def test_profile_served_from_profile_cache(services, monkeypatch) -> None:
    result = await _registered(services)
    uid = result.user["id"]
    await services.cache.invalidate_user_cache(uid)
    await services.cache.invalidate_profile(uid)

    principal = await services.authenticator.authenticate(result.tokens.access_token)
    assert principal.profile == result.user["profile"]
    assert await services.cache.get_profile(uid) == result.user["profile"]

    def no_database(_user_id):
        raise AssertionError("profile cache should have answered")

    monkeypatch.setattr(services.store, "get_profile", no_database)
    await services.cache.invalidate_user_cache(uid)
    again = await services.authenticator.authenticate(result.tokens.access_token)
    assert again.profile == result.user["profile"]
