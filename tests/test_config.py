"""
tests/test_config.py -- Settings secret policy and derived values.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from core.config import Settings

_A = "a" * 40
_B = "b" * 40


def test_production_requires_secrets() -> None:
    with pytest.raises(ValidationError, match="JWT_ACCESS_SECRET is required"):
        Settings(debug=False, jwt_access_secret="", jwt_refresh_secret=_B)


def test_debug_generates_distinct_secrets() -> None:
    settings = Settings(debug=True, jwt_access_secret="", jwt_refresh_secret="")
    assert len(settings.jwt_access_secret) >= 32
    assert settings.jwt_access_secret != settings.jwt_refresh_secret


def test_short_secret_rejected() -> None:
    with pytest.raises(ValidationError, match="at least 32"):
        Settings(debug=True, jwt_access_secret="short", jwt_refresh_secret=_B)


def test_identical_secrets_rejected() -> None:
    with pytest.raises(ValidationError, match="must differ"):
        Settings(debug=False, jwt_access_secret=_A, jwt_refresh_secret=_A)


def test_unknown_permission_engine_rejected() -> None:
    with pytest.raises(ValidationError, match="PERMISSION_ENGINE"):
        Settings(debug=True, jwt_access_secret=_A, jwt_refresh_secret=_B, permission_engine="ldap")


def test_limiter_storage_defaults_to_redis_url() -> None:
    settings = Settings(
        debug=True,
        jwt_access_secret=_A,
        jwt_refresh_secret=_B,
        redis_url="redis://cache:6379/3",
        rate_limit_storage_uri="",
    )
    assert settings.limiter_storage_uri == "redis://cache:6379/3"


def test_defaults() -> None:
    settings = Settings(debug=False, jwt_access_secret=_A, jwt_refresh_secret=_B, environment="production")
    assert settings.access_token_expire_seconds == 86400
    assert settings.refresh_token_expire_seconds == 604800
    assert settings.permission_cache_ttl_seconds == 300
    assert settings.is_production
