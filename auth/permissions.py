"""
auth/permissions.py -- Relationship-based permission engine adapters.

The Permission Engine is the source of truth for "does user U have relation R
on object O" (Zanzibar / OpenFGA style tuples). PermissionService layers the
short-TTL result cache from cache/store.py in front of it.

Engines (selected by Settings.permission_engine via build_permission_engine):

  OpenFGAPermissionEngine  -- HTTP client for an OpenFGA-compatible API
                              (POST /stores/{id}/check, POST /stores/{id}/write).
  InMemoryPermissionEngine -- process-local tuple set with relation implication.
                              Development and tests.
  DisabledPermissionEngine -- no integration configured. Every check is an
                              explicit deny; writes are logged and dropped.

Every engine implements the same family methods (check_permission,
check_super_admin, assign_super_admin, remove_super_admin,
create_profile_relations). There are no optional methods: a missing
integration is a configuration state, not an absent attribute.

Cache policy (PermissionService):
  - A cached result is used when present; a miss or a cache error falls
    through to the engine. The cache is never the sole source of a deny.
  - Engine failures deny and are NOT cached, so the next request retries.

Layer rule: may import from core/ and cache/ (for the cache type only).
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import requests
from redis.exceptions import RedisError

from cache.store import SUPERADMIN_OBJECT, SUPERADMIN_RELATION
from core.config import Settings

if TYPE_CHECKING:
    from cache.store import RedisCache

logger = logging.getLogger("tripwise.permissions")

# (user, relation, object), e.g. ("user:42", "owner", "profile:7")
RelationTuple = tuple[str, str, str]

SUPERADMIN_GRANT = "superadmin"

# Checkable relations a profile owner holds, primed into the cache at registration
PROFILE_OWNER_RELATIONS = ("can_view", "can_edit", "can_delete")

# relation -> relations that imply it on the same object
_IMPLIED_BY: dict[str, tuple[str, ...]] = {
    "viewer": ("editor", "owner"),
    "editor": ("owner",),
    "can_view": ("viewer", "editor", "owner"),
    "can_edit": ("editor", "owner"),
    "can_delete": ("owner",),
    SUPERADMIN_RELATION: (SUPERADMIN_GRANT,),
}


def user_ref(user_id: str) -> str:
    return f"user:{user_id}"


class PermissionEngineError(Exception):
    """The permission engine could not answer (network, HTTP or protocol failure)."""


class PermissionEngine(ABC):
    """Base class: three tuple primitives plus the family methods built on them."""

    name = "abstract"

    async def connect(self) -> None:  # noqa: B027 -- optional hook
        pass

    async def close(self) -> None:  # noqa: B027 -- optional hook
        pass

    @abstractmethod
    async def check(self, user: str, relation: str, obj: str) -> bool: ...

    @abstractmethod
    async def write(self, tuples: list[RelationTuple]) -> None: ...

    @abstractmethod
    async def delete(self, tuples: list[RelationTuple]) -> None: ...

    # ------------------------------------------------------------------
    # Family methods
    # ------------------------------------------------------------------

    async def check_permission(self, user_id: str, relation: str, obj: str) -> bool:
        return await self.check(user_ref(user_id), relation, obj)

    async def check_super_admin(self, user_id: str) -> bool:
        return await self.check(user_ref(user_id), SUPERADMIN_RELATION, SUPERADMIN_OBJECT)

    async def assign_super_admin(self, user_id: str) -> None:
        await self.write([(user_ref(user_id), SUPERADMIN_GRANT, SUPERADMIN_OBJECT)])

    async def remove_super_admin(self, user_id: str) -> None:
        await self.delete([(user_ref(user_id), SUPERADMIN_GRANT, SUPERADMIN_OBJECT)])

    async def create_profile_relations(self, user_id: str, profile_id: str) -> None:
        """Baseline relations for a freshly registered user: owner of their profile."""
        await self.write([(user_ref(user_id), "owner", f"profile:{profile_id}")])


class InMemoryPermissionEngine(PermissionEngine):
    """Process-local tuple store. Not shared between workers."""

    name = "memory"

    def __init__(self) -> None:
        self._tuples: set[RelationTuple] = set()

    async def check(self, user: str, relation: str, obj: str) -> bool:
        if (user, relation, obj) in self._tuples:
            return True
        return any((user, implied, obj) in self._tuples for implied in _IMPLIED_BY.get(relation, ()))

    async def write(self, tuples: list[RelationTuple]) -> None:
        self._tuples.update(tuples)

    async def delete(self, tuples: list[RelationTuple]) -> None:
        self._tuples.difference_update(tuples)


class DisabledPermissionEngine(PermissionEngine):
    """Explicit deny when no engine is configured."""

    name = "disabled"

    async def check(self, user: str, relation: str, obj: str) -> bool:
        return False

    async def write(self, tuples: list[RelationTuple]) -> None:
        logger.warning("Permission engine disabled; dropping %d tuple write(s)", len(tuples))

    async def delete(self, tuples: list[RelationTuple]) -> None:
        logger.warning("Permission engine disabled; dropping %d tuple delete(s)", len(tuples))


class OpenFGAPermissionEngine(PermissionEngine):
    """Client for an OpenFGA-compatible HTTP API.

    requests is blocking, so every call runs in a worker thread via
    asyncio.to_thread() to keep the event loop free.
    """

    name = "openfga"

    def __init__(self, settings: Settings) -> None:
        self.api_url = settings.fga_api_url.rstrip("/")
        self.store_id = settings.fga_store_id
        self.model_id = settings.fga_model_id
        self.timeout = settings.fga_timeout_seconds
        self._api_token = settings.fga_api_token
        self._session: requests.Session | None = None

    async def connect(self) -> None:
        if not self.store_id:
            raise PermissionEngineError("FGA_STORE_ID is required when PERMISSION_ENGINE=openfga")
        session = requests.Session()
        # Known internal service: a redirect chain is a misconfiguration.
        session.max_redirects = 3
        if self._api_token:
            session.headers["Authorization"] = f"Bearer {self._api_token}"
        self._session = session
        logger.info("OpenFGA client ready (store=%s)", self.store_id)

    async def close(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None

    def _post(self, path: str, body: dict) -> dict:
        if self._session is None:
            raise PermissionEngineError("OpenFGA client is not connected")
        if self.model_id:
            body["authorization_model_id"] = self.model_id
        url = f"{self.api_url}/stores/{self.store_id}/{path}"
        try:
            resp = self._session.post(url, json=body, timeout=self.timeout)
            resp.raise_for_status()
            return resp.json() if resp.content else {}
        except (requests.RequestException, ValueError) as exc:
            raise PermissionEngineError(f"OpenFGA {path} failed: {exc}") from exc

    @staticmethod
    def _tuple_keys(tuples: list[RelationTuple]) -> list[dict]:
        return [{"user": u, "relation": r, "object": o} for u, r, o in tuples]

    async def check(self, user: str, relation: str, obj: str) -> bool:
        body = {"tuple_key": {"user": user, "relation": relation, "object": obj}}
        data = await asyncio.to_thread(self._post, "check", body)
        return bool(data.get("allowed", False))

    async def write(self, tuples: list[RelationTuple]) -> None:
        if tuples:
            await asyncio.to_thread(self._post, "write", {"writes": {"tuple_keys": self._tuple_keys(tuples)}})

    async def delete(self, tuples: list[RelationTuple]) -> None:
        if tuples:
            await asyncio.to_thread(self._post, "write", {"deletes": {"tuple_keys": self._tuple_keys(tuples)}})


def build_permission_engine(settings: Settings) -> PermissionEngine:
    if settings.permission_engine == "openfga":
        return OpenFGAPermissionEngine(settings)
    if settings.permission_engine == "disabled":
        return DisabledPermissionEngine()
    return InMemoryPermissionEngine()


# ---------------------------------------------------------------------------
# Cached service
# ---------------------------------------------------------------------------


class PermissionService:
    """Permission checks with the 5-minute result cache in front of the engine."""

    def __init__(self, engine: PermissionEngine, cache: RedisCache) -> None:
        self.engine = engine
        self.cache = cache

    async def has_permission(self, user_id: str, obj: str, relation: str) -> bool:
        try:
            cached = await self.cache.get_cached_permission(user_id, obj, relation)
        except RedisError:
            logger.warning("Permission cache read failed; querying engine", exc_info=True)
            cached = None
        if cached is not None:
            return cached.allowed

        try:
            if obj == SUPERADMIN_OBJECT and relation == SUPERADMIN_RELATION:
                allowed = await self.engine.check_super_admin(user_id)
            else:
                allowed = await self.engine.check_permission(user_id, relation, obj)
        except PermissionEngineError:
            logger.error("Permission engine unavailable; denying %s on %s", relation, obj, exc_info=True)
            return False

        try:
            await self.cache.cache_permission(user_id, obj, relation, allowed)
        except RedisError:
            logger.warning("Permission cache write failed", exc_info=True)
        return allowed

    async def is_super_admin(self, user_id: str) -> bool:
        return await self.has_permission(user_id, SUPERADMIN_OBJECT, SUPERADMIN_RELATION)

    async def invalidate_user(self, user_id: str) -> None:
        """Drop cached results after a role change. Cache errors are logged, not raised."""
        try:
            await self.cache.invalidate_all_user_permissions(user_id)
        except RedisError:
            logger.warning("Could not invalidate cached permissions for user %s", user_id, exc_info=True)

    async def prime(self, user_id: str, results: list[tuple[str, str, bool]]) -> None:
        """Seed the cache with (object, relation, allowed) outcomes already known to hold."""
        try:
            await self.cache.cache_batch_permissions(user_id, results)
        except RedisError:
            logger.warning("Could not prime permission cache for user %s", user_id, exc_info=True)
