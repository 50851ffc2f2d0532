"""
tests/test_dependencies.py -- FastAPI guards in auth/dependencies.py.

The guards only need request.headers, request.path_params and
request.app.state, so they are driven with bare Starlette requests built
from an ASGI scope instead of a full TestClient round trip.
"""

from __future__ import annotations

from types import SimpleNamespace

import pytest
from starlette.requests import Request

from auth.dependencies import (
    get_current_principal,
    require_permission,
    require_super_admin,
    try_get_current_principal,
)
from auth.errors import AuthError, ErrorCode
from conftest import PASSWORD, unique_email


def _request(services, token: str | None = None, path_params: dict | None = None) -> Request:
    headers = [(b"authorization", f"Bearer {token}".encode())] if token else []
    app = SimpleNamespace(state=SimpleNamespace(authenticator=services.authenticator,
                                                permissions=services.permissions))
    return Request({"type": "http", "headers": headers, "app": app, "path_params": path_params or {}})


async def test_current_principal_sets_request_state(services) -> None:
    result = await services.auth.register(unique_email(), PASSWORD)
    request = _request(services, result.tokens.access_token)

    principal = await get_current_principal(request)

    assert principal.id == result.user["id"]
    assert request.state.principal is principal


async def test_optional_principal(services) -> None:
    assert await try_get_current_principal(_request(services)) is None
    assert await try_get_current_principal(_request(services, "garbage")) is None

    result = await services.auth.register(unique_email(), PASSWORD)
    principal = await try_get_current_principal(_request(services, result.tokens.access_token))
    assert principal.id == result.user["id"]


async def test_optional_principal_propagates_outage(services) -> None:
    result = await services.auth.register(unique_email(), PASSWORD)
    services.redis_server.connected = False
    with pytest.raises(AuthError) as exc:
        await try_get_current_principal(_request(services, result.tokens.access_token))
    assert exc.value.code is ErrorCode.SERVICE_UNAVAILABLE


async def test_require_super_admin(services) -> None:
    result = await services.auth.register(unique_email(), PASSWORD)
    with pytest.raises(AuthError) as exc:
        await require_super_admin(_request(services, result.tokens.access_token))
    assert exc.value.code is ErrorCode.FORBIDDEN

    await services.engine.assign_super_admin(result.user["id"])
    await services.permissions.invalidate_user(result.user["id"])
    principal = await require_super_admin(_request(services, result.tokens.access_token))
    assert principal.is_super_admin


async def test_require_permission(services) -> None:
    owner = await services.auth.register(unique_email(), PASSWORD)
    stranger = await services.auth.register(unique_email(), PASSWORD)
    guard = require_permission("profile", "can_edit")
    params = {"id": owner.user["profile"]["id"]}

    principal = await guard(_request(services, owner.tokens.access_token, params))
    assert principal.id == owner.user["id"]

    with pytest.raises(AuthError) as exc:
        await guard(_request(services, stranger.tokens.access_token, params))
    assert exc.value.code is ErrorCode.FORBIDDEN


async def test_require_permission_needs_object_id(services) -> None:
    result = await services.auth.register(unique_email(), PASSWORD)
    with pytest.raises(AuthError) as exc:
        await require_permission("trip", "can_view", param="trip_id")(_request(services, result.tokens.access_token))
    assert exc.value.code is ErrorCode.BAD_REQUEST
    assert exc.value.message == "Object ID required"


async def test_super_admin_bypasses_relation(services) -> None:
    owner = await services.auth.register(unique_email(), PASSWORD)
    admin = await services.auth.register(unique_email(), PASSWORD)
    await services.engine.assign_super_admin(admin.user["id"])

    guard = require_permission("profile", "can_delete")
    principal = await guard(_request(services, admin.tokens.access_token, {"id": owner.user["profile"]["id"]}))
    assert principal.id == admin.user["id"]
