"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

One auth method: the Authorization: Bearer <access token> header. Resolution
is delegated to app.state.authenticator (auth/authenticator.py), which owns
the blacklist check, the access-token cache fast path and the JWT slow path.

try_get_current_principal() is the soft variant (returns None on failure).
get_current_principal() raises AuthError (rendered as a 401 envelope).
require_super_admin() wraps get_current_principal() and raises 403.
require_permission(type, relation) builds a guard that checks a relation on
the object named by a path parameter.

Guards raise AuthError rather than HTTPException so every denial renders
through the same error envelope handler in api/main.py.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Depends/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from fastapi import Request

from auth.authenticator import extract_bearer_token
from auth.errors import AuthError, ErrorCode
from auth.models import Principal

logger = logging.getLogger("tripwise.auth")


async def get_current_principal(request: Request) -> Principal:
    """Require authentication. Raises AuthError if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(principal: Principal = Depends(get_current_principal)): ...

    The resolved principal is also attached to request.state.principal.
    """
    token = extract_bearer_token(request.headers.get("Authorization"))
    principal = await request.app.state.authenticator.authenticate(token)
    request.state.principal = principal
    return principal


async def try_get_current_principal(request: Request) -> Principal | None:
    """Like get_current_principal() but returns None instead of raising 401s.

    A SERVICE_UNAVAILABLE (blacklist unreadable) still propagates: an
    optional-auth route must not silently downgrade a revoked token to
    anonymous access.
    """
    try:
        return await get_current_principal(request)
    except AuthError as exc:
        if exc.code is ErrorCode.SERVICE_UNAVAILABLE:
            raise
        return None


async def require_super_admin(request: Request) -> Principal:
    """Require the global superadmin relation. 401 if unauthenticated, 403 otherwise."""
    principal = await get_current_principal(request)
    if not principal.is_super_admin:
        raise AuthError(ErrorCode.FORBIDDEN, "Superadmin access required")
    return principal


def require_permission(
    object_type: str, relation: str, param: str = "id"
) -> Callable[[Request], Awaitable[Principal]]:
    """Build a dependency that requires `relation` on `{object_type}:{path param}`.

    Use as a FastAPI dependency:
        @router.get("/profiles/{id}")
        async def route(principal: Principal = Depends(require_permission("profile", "can_view"))): ...

    Superadmins bypass the relation check.
    """

    async def _guard(request: Request) -> Principal:
        principal = await get_current_principal(request)
        object_id = request.path_params.get(param)
        if not object_id:
            raise AuthError(ErrorCode.BAD_REQUEST, "Object ID required")
        if principal.is_super_admin:
            return principal

        obj = f"{object_type}:{object_id}"
        allowed = await request.app.state.permissions.has_permission(principal.id, obj, relation)
        if not allowed:
            logger.info("Denied %s on %s for user %s", relation, obj, principal.id)
            raise AuthError(ErrorCode.FORBIDDEN)
        return principal

    return _guard
