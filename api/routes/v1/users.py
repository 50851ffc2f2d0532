"""
api/routes/v1/users.py -- User administration and session management endpoints.

Routes:
  GET    /api/v1/users                       -- page through all users (superadmin only)
  POST   /api/v1/users/{user_id}/superadmin  -- grant superadmin (superadmin only)
  DELETE /api/v1/users/{user_id}/superadmin  -- revoke superadmin (superadmin only, not self)
  GET    /api/v1/users/{user_id}/sessions    -- list live sessions (self or superadmin)
  DELETE /api/v1/users/{user_id}/sessions    -- revoke every session (self or superadmin)
  DELETE /api/v1/users/{user_id}/sessions/{fingerprint}
                                             -- revoke one session (self or superadmin)
  DELETE /api/v1/users/{user_id}/cache       -- drop cached identity/permissions (superadmin only)
  DELETE /api/v1/users/{user_id}             -- delete user + cascade (superadmin only)
  GET    /api/v1/users/profiles/{id}         -- read a profile (relation can_view on profile:{id})

Role changes always invalidate the target's cached permission results, so
the new flag is visible on the target's very next request.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.models import ProfileOut, SessionList, SessionOut, SuccessResponse, UserList, UserOut
from auth.dependencies import get_current_principal, require_permission, require_super_admin
from auth.models import Principal
from auth.service import AuthService

# Auth policy:
# - listing, superadmin, cache,
#   DELETE /{user_id}:                   require_super_admin
# - sessions:                             get_current_principal + self-or-superadmin check in AuthService
# - profiles/{id}:                        require_permission("profile", "can_view")
router = APIRouter()


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _ok(message: str | None = None, data: dict | None = None) -> JSONResponse:
    return JSONResponse(content=SuccessResponse(message=message, data=data).model_dump(by_alias=True, mode="json"))


@router.get("/users")
async def list_users(
    request: Request,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    principal: Principal = Depends(require_super_admin),
) -> JSONResponse:
    users, total = await _service(request).list_users(limit, offset)
    data = UserList(users=[UserOut.model_validate(u) for u in users], total=total, limit=limit, offset=offset)
    return _ok(data=data.model_dump(by_alias=True, mode="json"))


# Declared before /users/{user_id} so "profiles" is never captured as a user id.
@router.get("/users/profiles/{id}")
async def get_profile(
    request: Request,
    id: str,
    principal: Principal = Depends(require_permission("profile", "can_view")),
) -> JSONResponse:
    profile = await _service(request).get_profile(id)
    out = ProfileOut.model_validate(profile.to_dict())
    return _ok(data=out.model_dump(by_alias=True, mode="json"))


@router.post("/users/{user_id}/superadmin")
async def grant_super_admin(
    request: Request,
    user_id: str,
    principal: Principal = Depends(require_super_admin),
) -> JSONResponse:
    await _service(request).assign_super_admin(principal, user_id)
    return _ok("Superadmin role assigned")


@router.delete("/users/{user_id}/superadmin")
async def revoke_super_admin(
    request: Request,
    user_id: str,
    principal: Principal = Depends(require_super_admin),
) -> JSONResponse:
    await _service(request).remove_super_admin(principal, user_id)
    return _ok("Superadmin role removed")


@router.get("/users/{user_id}/sessions")
async def list_sessions(
    request: Request,
    user_id: str,
    principal: Principal = Depends(get_current_principal),
) -> JSONResponse:
    sessions = await _service(request).list_sessions(principal, user_id)
    data = SessionList(
        user_id=user_id,
        sessions=[
            SessionOut(
                fingerprint=s.fingerprint,
                created_at=s.created_at,
                user_agent=s.user_agent,
                ip=s.ip,
                login_time=s.login_time,
                restored=s.restored,
            )
            for s in sessions
        ],
    )
    return _ok(data=data.model_dump(by_alias=True, mode="json"))


@router.delete("/users/{user_id}/sessions")
async def revoke_sessions(
    request: Request,
    user_id: str,
    principal: Principal = Depends(get_current_principal),
) -> JSONResponse:
    revoked = await _service(request).revoke_all_sessions(principal, user_id)
    return _ok("All sessions revoked", {"revoked": revoked})


@router.delete("/users/{user_id}/sessions/{fingerprint}")
async def revoke_session(
    request: Request,
    user_id: str,
    fingerprint: str,
    principal: Principal = Depends(get_current_principal),
) -> JSONResponse:
    await _service(request).revoke_session(principal, user_id, fingerprint)
    return _ok("Session revoked")


@router.delete("/users/{user_id}/cache")
async def clear_cache(
    request: Request,
    user_id: str,
    principal: Principal = Depends(require_super_admin),
) -> JSONResponse:
    await _service(request).clear_user_cache(user_id)
    return _ok("User cache cleared")


@router.delete("/users/{user_id}")
async def delete_user(
    request: Request,
    user_id: str,
    principal: Principal = Depends(require_super_admin),
) -> JSONResponse:
    await _service(request).delete_user(principal, user_id)
    return _ok("User deleted")
