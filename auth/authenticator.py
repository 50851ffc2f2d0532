"""
auth/authenticator.py -- Request-time authentication orchestration.

Authenticator.authenticate(token) turns a raw bearer token into a Principal:

  0. Blacklist check. Runs before anything else, on every request. A token
     revoked at logout must never authenticate, even if an earlier request
     left a "previously validated" entry in the access-token cache. If the
     blacklist cannot be read the request fails closed (SERVICE_UNAVAILABLE).

  1. Fast path -- the access-token cache knows this token:
       user   <- user cache, else Credential Store (then cached)
       flag   <- permission cache, else Permission Engine (then cached)

  2. Slow path -- cache miss (or cache unavailable):
       verify JWT signature/expiry with the access secret
         expired -> best-effort drop of any stale cache entry, TOKEN_EXPIRED
         invalid -> INVALID_TOKEN
       user   <- Credential Store by claim userId, else USER_NOT_FOUND
       profile <- profile cache, else Credential Store (then cached)
       flag   <- Permission Engine (via PermissionService, cached)
       populate access-token cache (TTL = remaining token lifetime) and user cache

Cache reads and writes other than the blacklist are soft: a RedisError is
logged and treated as a miss, because the JWT signature plus the database
are a complete fallback.

Layer rule: no imports from api/. FastAPI glue lives in auth/dependencies.py.
"""

from __future__ import annotations

import asyncio
import logging

from redis.exceptions import RedisError

from auth.errors import AuthError, ErrorCode
from auth.models import Principal
from auth.permissions import PermissionService
from auth.store import UserStore
from auth.tokens import TokenIssuer
from cache.store import RedisCache

logger = logging.getLogger("tripwise.auth")

_BEARER_PREFIX = "Bearer "


def extract_bearer_token(authorization: str | None) -> str | None:
    """Return the token from an 'Authorization: Bearer <token>' header value."""
    if authorization and authorization.startswith(_BEARER_PREFIX):
        token = authorization[len(_BEARER_PREFIX) :].strip()
        return token or None
    return None


class Authenticator:
    def __init__(
        self,
        tokens: TokenIssuer,
        cache: RedisCache,
        store: UserStore,
        permissions: PermissionService,
    ) -> None:
        self.tokens = tokens
        self.cache = cache
        self.store = store
        self.permissions = permissions

    async def authenticate(self, token: str | None) -> Principal:
        if not token:
            raise AuthError(ErrorCode.UNAUTHENTICATED)

        await self._reject_blacklisted(token)

        cached = await self._cached_token(token)
        if cached is not None:
            user_data = await self._load_user(cached["userId"])
            is_super_admin = await self.permissions.is_super_admin(user_data["id"])
            return Principal.from_user_data(user_data, is_super_admin, token=token)

        try:
            claims = self.tokens.verify_access(token)
        except AuthError as exc:
            if exc.code is ErrorCode.TOKEN_EXPIRED:
                await self._drop_cached_token(token)
            raise

        user = await asyncio.to_thread(self.store.get_by_id, claims["userId"])
        if user is None:
            raise AuthError(ErrorCode.USER_NOT_FOUND)
        user_data = user.public_dict()
        user_data["profile"] = await self._load_profile(user.id)

        is_super_admin = await self.permissions.is_super_admin(user.id)

        try:
            await self.cache.cache_access_token(user.id, token, self.tokens.remaining_lifetime(token))
            await self.cache.cache_user(user.id, user_data)
        except RedisError:
            logger.warning("Could not populate auth caches for user %s", user.id, exc_info=True)

        return Principal.from_user_data(user_data, is_super_admin, token=token)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _reject_blacklisted(self, token: str) -> None:
        try:
            blacklisted = await self.cache.is_blacklisted(token)
        except RedisError as exc:
            logger.error("Blacklist lookup failed; rejecting request", exc_info=True)
            raise AuthError(ErrorCode.SERVICE_UNAVAILABLE, "Authentication temporarily unavailable") from exc
        if blacklisted:
            raise AuthError(ErrorCode.INVALID_TOKEN, "Token has been revoked")

    async def _cached_token(self, token: str) -> dict | None:
        try:
            return await self.cache.validate_access_token(token)
        except RedisError:
            logger.warning("Access-token cache unavailable; verifying signature", exc_info=True)
            return None

    async def _drop_cached_token(self, token: str) -> None:
        try:
            await self.cache.invalidate_access_token(token)
        except RedisError:
            logger.debug("Expired-token cleanup skipped; cache unavailable")

    async def _load_user(self, user_id: str) -> dict:
        """Sanitized user dict from the user cache, else from the store (then cached)."""
        try:
            user_data = await self.cache.get_user(user_id)
        except RedisError:
            logger.warning("User cache unavailable; reading from database", exc_info=True)
            user_data = None
        if user_data is not None:
            return user_data

        user = await asyncio.to_thread(self.store.get_by_id, user_id)
        if user is None:
            raise AuthError(ErrorCode.USER_NOT_FOUND)
        user_data = user.public_dict()
        user_data["profile"] = await self._load_profile(user.id)
        try:
            await self.cache.cache_user(user.id, user_data)
        except RedisError:
            logger.warning("Could not cache user %s", user.id, exc_info=True)
        return user_data

    async def _load_profile(self, user_id: str) -> dict | None:
        try:
            profile_data = await self.cache.get_profile(user_id)
        except RedisError:
            logger.warning("Profile cache unavailable; reading from database", exc_info=True)
            profile_data = None
        if profile_data is not None:
            return profile_data

        profile = await asyncio.to_thread(self.store.get_profile, user_id)
        if profile is None:
            return None
        profile_data = profile.to_dict()
        try:
            await self.cache.cache_profile(user_id, profile_data)
        except RedisError:
            logger.warning("Could not cache profile of user %s", user_id, exc_info=True)
        return profile_data
