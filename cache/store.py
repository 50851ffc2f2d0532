"""
cache/store.py -- Redis-backed cache for the auth core.

One class, RedisCache, owns the redis.asyncio client and every key layout the
auth core uses:

  refresh:{user_id}:{fingerprint}  JSON FingerprintMetadata, TTL = refresh lifetime
  user:refresh:{user_id}           SET of live fingerprints, TTL refreshed on add
  token:access:{sha256(token)}     JSON {userId, type}, TTL <= access lifetime
  blacklist:{sha256(token)}        "1", TTL = token's remaining lifetime
  user:data:{user_id}              JSON sanitized user, TTL 1h
  user:email:{email}               JSON sanitized user, TTL 1h
  profile:{user_id}                JSON profile, TTL 1h
  perm:{user_id}:{object}:{rel}    JSON {allowed, timestamp}, TTL 5 min
  lock:{resource}                  random value, SET NX EX

Invariants:
  - Raw refresh tokens never reach Redis. The fingerprint is
    SHA-256(raw + refresh secret); access tokens are keyed by SHA-256(raw).
  - A fingerprint key and its set membership are written and removed in the
    same MULTI/EXEC pipeline -- never one without the other.
  - Blacklist entries expire exactly when the token would have, so the
    blacklist cannot grow without bound.

Error policy: this module lets redis.RedisError propagate. Callers decide
whether a failure is a soft miss (durable fallback exists) or must fail
closed (blacklist).

Usage:
    cache = RedisCache(settings)
    await cache.connect()
    await cache.store_fingerprint(user_id, refresh_token, {"ip": "10.0.0.1"})
    await cache.close()
"""

from __future__ import annotations

import hashlib
import json
import logging
import secrets
import time
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import WatchError

from auth.models import CachedPermission, FingerprintMetadata
from core.config import Settings

logger = logging.getLogger("tripwise.cache")

SUPERADMIN_OBJECT = "superadmin:global"
SUPERADMIN_RELATION = "can_manage_all"

_SCAN_BATCH = 500


def _sha256(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()


class CacheLock:
    """Handle for a lock acquired with RedisCache.acquire_lock()."""

    def __init__(self, cache: RedisCache, key: str, value: str) -> None:
        self._cache = cache
        self.key = key
        self.value = value

    async def release(self) -> bool:
        """Delete the lock only if we still own it. Returns True if deleted."""
        return await self._cache._compare_and_delete(self.key, self.value)


class RedisCache:
    """Thin Redis wrapper for fingerprints, access tokens, identities and permissions."""

    def __init__(self, settings: Settings, client: aioredis.Redis | None = None) -> None:
        self.redis_url = settings.redis_url
        self.socket_timeout = settings.redis_socket_timeout
        self.refresh_ttl = settings.refresh_token_expire_seconds
        self.access_ttl = settings.access_token_expire_seconds
        self.default_ttl = settings.user_cache_ttl_seconds
        self.permission_ttl = settings.permission_cache_ttl_seconds
        self._refresh_secret = settings.jwt_refresh_secret
        self._client = client

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Create the client (unless one was injected) and verify connectivity."""
        if self._client is None:
            self._client = aioredis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_timeout=self.socket_timeout,
                socket_connect_timeout=self.socket_timeout,
            )
        await self._client.ping()
        logger.info("Redis connected")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("Redis disconnected")

    @property
    def client(self) -> aioredis.Redis:
        if self._client is None:
            raise RuntimeError("RedisCache is not connected. Call connect() first.")
        return self._client

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def _get_json(self, key: str) -> Any | None:
        data = await self.client.get(key)
        return json.loads(data) if data is not None else None

    async def _set_json(self, key: str, value: Any, ttl: int) -> None:
        await self.client.set(key, json.dumps(value), ex=max(1, int(ttl)))

    # ------------------------------------------------------------------
    # Refresh-token fingerprints
    # ------------------------------------------------------------------

    def fingerprint(self, raw_refresh_token: str) -> str:
        return _sha256(raw_refresh_token + self._refresh_secret)

    async def store_fingerprint(
        self, user_id: str, raw_refresh_token: str, metadata: dict[str, Any] | None = None
    ) -> str:
        """Record a live refresh token by digest. Returns the fingerprint."""
        fp = self.fingerprint(raw_refresh_token)
        meta = metadata or {}
        record = FingerprintMetadata(
            user_id=user_id,
            fingerprint=fp,
            created_at=time.time(),
            user_agent=meta.get("user_agent"),
            ip=meta.get("ip"),
            login_time=meta.get("login_time"),
            restored=bool(meta.get("restored", False)),
            token_hash=meta.get("token_hash"),
        )
        set_key = f"user:refresh:{user_id}"
        pipe = self.client.pipeline()
        pipe.set(f"refresh:{user_id}:{fp}", json.dumps(record.to_dict()), ex=self.refresh_ttl)
        pipe.sadd(set_key, fp)
        # Newest member lives longest, so refreshing the set TTL covers every member.
        pipe.expire(set_key, self.refresh_ttl)
        await pipe.execute()
        return fp

    async def validate_fingerprint(self, user_id: str, raw_refresh_token: str) -> FingerprintMetadata | None:
        """Return the stored metadata, or None when absent.

        None means "not in the fast cache", NOT "invalid": callers must fall
        back to the durable refresh_tokens table.
        """
        data = await self._get_json(f"refresh:{user_id}:{self.fingerprint(raw_refresh_token)}")
        return FingerprintMetadata.from_dict(data) if data is not None else None

    async def get_fingerprint(self, user_id: str, fingerprint: str) -> FingerprintMetadata | None:
        """Metadata for a fingerprint as listed by list_fingerprints()."""
        data = await self._get_json(f"refresh:{user_id}:{fingerprint}")
        return FingerprintMetadata.from_dict(data) if data is not None else None

    async def remove_fingerprint(self, user_id: str, raw_refresh_token: str) -> None:
        await self.remove_fingerprint_by_id(user_id, self.fingerprint(raw_refresh_token))

    async def remove_fingerprint_by_id(self, user_id: str, fingerprint: str) -> bool:
        """Drop the keyed entry and its set membership. Returns True if the entry existed."""
        pipe = self.client.pipeline()
        pipe.delete(f"refresh:{user_id}:{fingerprint}")
        pipe.srem(f"user:refresh:{user_id}", fingerprint)
        deleted, _ = await pipe.execute()
        return bool(deleted)

    async def remove_all_fingerprints(self, user_id: str) -> int:
        """Delete every fingerprint key for the user plus the set. Returns the count."""
        set_key = f"user:refresh:{user_id}"
        fingerprints = await self.client.smembers(set_key)
        pipe = self.client.pipeline()
        for fp in fingerprints:
            pipe.delete(f"refresh:{user_id}:{fp}")
        pipe.delete(set_key)
        await pipe.execute()
        return len(fingerprints)

    async def list_fingerprints(self, user_id: str) -> list[FingerprintMetadata]:
        """Metadata for every live refresh token of the user, newest first.

        Set members whose keyed entry has already expired are pruned from the set.
        """
        set_key = f"user:refresh:{user_id}"
        fingerprints = sorted(await self.client.smembers(set_key))
        if not fingerprints:
            return []
        values = await self.client.mget([f"refresh:{user_id}:{fp}" for fp in fingerprints])
        live: list[FingerprintMetadata] = []
        stale: list[str] = []
        for fp, value in zip(fingerprints, values):
            if value is None:
                stale.append(fp)
            else:
                live.append(FingerprintMetadata.from_dict(json.loads(value)))
        if stale:
            await self.client.srem(set_key, *stale)
        return sorted(live, key=lambda m: m.created_at, reverse=True)

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    async def cache_access_token(self, user_id: str, raw_token: str, ttl: int | None = None) -> None:
        """Mark an access token as previously validated.

        ttl should be the token's remaining lifetime so the entry never
        outlives the token; it is capped at the configured access lifetime.
        """
        ttl = min(ttl or self.access_ttl, self.access_ttl)
        await self._set_json(f"token:access:{_sha256(raw_token)}", {"userId": user_id, "type": "access"}, ttl)

    async def validate_access_token(self, raw_token: str) -> dict[str, Any] | None:
        return await self._get_json(f"token:access:{_sha256(raw_token)}")

    async def invalidate_access_token(self, raw_token: str) -> None:
        await self.client.delete(f"token:access:{_sha256(raw_token)}")

    # ------------------------------------------------------------------
    # Blacklist
    # ------------------------------------------------------------------

    async def blacklist_access_token(self, raw_token: str, ttl_seconds: int) -> None:
        await self.client.set(f"blacklist:{_sha256(raw_token)}", "1", ex=max(1, int(ttl_seconds)))

    async def is_blacklisted(self, raw_token: str) -> bool:
        return bool(await self.client.exists(f"blacklist:{_sha256(raw_token)}"))

    # ------------------------------------------------------------------
    # Users and profiles
    # ------------------------------------------------------------------

    async def cache_user(self, user_id: str, user_data: dict[str, Any]) -> None:
        await self._set_json(f"user:data:{user_id}", user_data, self.default_ttl)

    async def get_user(self, user_id: str) -> dict[str, Any] | None:
        return await self._get_json(f"user:data:{user_id}")

    async def cache_user_by_email(self, email: str, user_data: dict[str, Any]) -> None:
        await self._set_json(f"user:email:{email.lower()}", user_data, self.default_ttl)

    async def get_user_by_email(self, email: str) -> dict[str, Any] | None:
        return await self._get_json(f"user:email:{email.lower()}")

    async def invalidate_user_cache(self, user_id: str, email: str | None = None) -> None:
        keys = [f"user:data:{user_id}"]
        if email:
            keys.append(f"user:email:{email.lower()}")
        await self.client.delete(*keys)

    async def cache_profile(self, user_id: str, profile_data: dict[str, Any]) -> None:
        await self._set_json(f"profile:{user_id}", profile_data, self.default_ttl)

    async def get_profile(self, user_id: str) -> dict[str, Any] | None:
        return await self._get_json(f"profile:{user_id}")

    async def invalidate_profile(self, user_id: str) -> None:
        await self.client.delete(f"profile:{user_id}")

    # ------------------------------------------------------------------
    # Permission results
    # ------------------------------------------------------------------

    async def cache_permission(self, user_id: str, obj: str, relation: str, allowed: bool) -> None:
        await self._set_json(
            f"perm:{user_id}:{obj}:{relation}",
            {"allowed": bool(allowed), "timestamp": time.time()},
            self.permission_ttl,
        )

    async def get_cached_permission(self, user_id: str, obj: str, relation: str) -> CachedPermission | None:
        data = await self._get_json(f"perm:{user_id}:{obj}:{relation}")
        if data is None:
            return None
        return CachedPermission(allowed=bool(data["allowed"]), timestamp=data["timestamp"])

    async def cache_batch_permissions(self, user_id: str, permissions: list[tuple[str, str, bool]]) -> None:
        """Cache several (object, relation, allowed) results in one round trip."""
        now = time.time()
        pipe = self.client.pipeline()
        for obj, relation, allowed in permissions:
            pipe.set(
                f"perm:{user_id}:{obj}:{relation}",
                json.dumps({"allowed": bool(allowed), "timestamp": now}),
                ex=self.permission_ttl,
            )
        await pipe.execute()

    async def invalidate_all_user_permissions(self, user_id: str) -> int:
        """Drop every cached permission result for the user.

        Call after any role change (superadmin grant/revoke, vendor approval).
        """
        return await self.delete_pattern(f"perm:{user_id}:*")

    async def delete_pattern(self, pattern: str) -> int:
        """Delete keys matching a glob pattern. Uses SCAN, never KEYS."""
        deleted = 0
        batch: list[str] = []
        async for key in self.client.scan_iter(match=pattern, count=_SCAN_BATCH):
            batch.append(key)
            if len(batch) >= _SCAN_BATCH:
                deleted += await self.client.delete(*batch)
                batch = []
        if batch:
            deleted += await self.client.delete(*batch)
        return deleted

    # ------------------------------------------------------------------
    # Locks
    # ------------------------------------------------------------------

    async def acquire_lock(self, resource: str, ttl: int = 10) -> CacheLock | None:
        """Try to take lock:{resource} for ttl seconds. Returns None if held elsewhere."""
        key = f"lock:{resource}"
        value = secrets.token_hex(16)
        acquired = await self.client.set(key, value, nx=True, ex=ttl)
        return CacheLock(self, key, value) if acquired else None

    async def _compare_and_delete(self, key: str, value: str) -> bool:
        async with self.client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                if await pipe.get(key) != value:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.delete(key)
                await pipe.execute()
                return True
            except WatchError:
                # Lock expired and was re-acquired by someone else meanwhile
                return False
