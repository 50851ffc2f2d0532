"""auth/ -- Authentication and authorization package for Tripwise.

Modules (bottom-up):
  errors         ErrorCode / AuthError taxonomy
  models         dataclasses (User, Profile, Principal, ...)
  tokens         JWT issuer, bcrypt helpers, HMAC token digests
  store          UserStore -- SQLAlchemy Core repository
  permissions    permission engines + cached PermissionService
  authenticator  bearer token -> Principal
  service        AuthService -- register/login/refresh/logout/password flows
  dependencies   FastAPI guards

Layer rule: auth/ may import from core/ and cache/. It does NOT import from
api/. api/ imports from auth/, not the other way around.
"""
