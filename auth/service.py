"""
auth/service.py -- Session / token lifecycle controller.

AuthService owns every flow that creates, extends or destroys session
material. Each flow touches up to four collaborators:

  TokenIssuer        mint / verify JWTs
  RedisCache         fingerprints, access-token cache, blacklist, user cache
  UserStore          users, profiles, durable refresh_tokens rows
  PermissionService  superadmin flag + baseline relations (via its engine)

Failure policy:
  - Database errors propagate (generic 500 at the boundary).
  - Cache population and lookups are soft: errors are logged and the flow
    continues. The durable refresh_tokens row is written on every issuance
    and checked on every refresh, so a fingerprint that survives a failed
    removal can never mint tokens for a revoked session.
  - Revocation writes durable state first. The access-token blacklist entry
    has no durable fallback, so a failed blacklist write is a hard
    SERVICE_UNAVAILABLE and the client retries the logout.
  - bcrypt runs in a worker thread (asyncio.to_thread) so hashing never
    blocks the event loop.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable

from redis.exceptions import RedisError
from sqlalchemy.exc import IntegrityError

from auth.errors import AuthError, ErrorCode
from auth.models import AuthResult, FingerprintMetadata, Principal, Profile, RefreshTokenRecord, TokenPair, User
from auth.permissions import PROFILE_OWNER_RELATIONS, PermissionEngineError, PermissionService
from auth.store import UserStore
from auth.tokens import TokenIssuer, burn_password_check, generate_reset_token, hash_password, verify_password
from cache.store import RedisCache
from core.config import Settings

logger = logging.getLogger("tripwise.auth")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthService:
    def __init__(
        self,
        settings: Settings,
        store: UserStore,
        cache: RedisCache,
        tokens: TokenIssuer,
        permissions: PermissionService,
    ) -> None:
        self.settings = settings
        self.store = store
        self.cache = cache
        self.tokens = tokens
        self.permissions = permissions

    # ------------------------------------------------------------------
    # Registration and login
    # ------------------------------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        name: str | None = None,
        phone: str | None = None,
        client: dict[str, Any] | None = None,
    ) -> AuthResult:
        email = email.strip().lower()
        if await self._soft("read e-mail cache", self.cache.get_user_by_email(email)) is not None:
            raise AuthError(ErrorCode.CONFLICT, "User already exists with this email")
        if await asyncio.to_thread(self.store.get_by_email, email) is not None:
            raise AuthError(ErrorCode.CONFLICT, "User already exists with this email")

        password_hash = await asyncio.to_thread(hash_password, password, self.settings.bcrypt_rounds)
        try:
            user, profile = await asyncio.to_thread(
                self.store.create_user_with_profile,
                User(email=email, password_hash=password_hash, name=name, phone=phone),
            )
        except IntegrityError as exc:
            # Lost a race against a concurrent registration for the same e-mail
            raise AuthError(ErrorCode.CONFLICT, "User already exists with this email") from exc
        logger.info("Registered user %s", user.id)

        try:
            await self.permissions.engine.create_profile_relations(user.id, profile.id)
        except PermissionEngineError:
            logger.error("Baseline relations not written for user %s", user.id, exc_info=True)
        else:
            await self.permissions.prime(
                user.id, [(f"profile:{profile.id}", relation, True) for relation in PROFILE_OWNER_RELATIONS]
            )

        verification_token = await self._issue_verification_token(user)

        tokens = self.tokens.issue_token_pair(user.id, user.email)
        await self._persist_session(user.id, tokens.refresh_token, client)

        user_data = user.public_dict(profile)
        await self._soft("populate user caches", self._cache_user_data(user_data))
        return AuthResult(user=user_data, tokens=tokens, verification_token=verification_token)

    async def login(self, email: str, password: str, client: dict[str, Any] | None = None) -> AuthResult:
        user = await asyncio.to_thread(self.store.get_by_email, email.strip())
        if user is None:
            # Equalize timing with the wrong-password branch
            await asyncio.to_thread(burn_password_check, password, self.settings.bcrypt_rounds)
            raise AuthError(ErrorCode.INVALID_CREDENTIALS)
        if not await asyncio.to_thread(verify_password, password, user.password_hash):
            logger.info("Failed login for user %s", user.id)
            raise AuthError(ErrorCode.INVALID_CREDENTIALS)

        is_super_admin = await self.permissions.is_super_admin(user.id)

        tokens = self.tokens.issue_token_pair(user.id, user.email)
        metadata = dict(client or {})
        metadata["login_time"] = _utcnow().isoformat()
        await self._persist_session(user.id, tokens.refresh_token, metadata)

        profile = await asyncio.to_thread(self.store.touch_last_login, user.id)
        user_data = user.public_dict(profile)
        await self._soft("refresh user caches", self._cache_user_data(user_data))

        logger.info("User %s logged in", user.id)
        return AuthResult(user=user_data, tokens=tokens, is_super_admin=is_super_admin)

    # ------------------------------------------------------------------
    # Refresh and logout
    # ------------------------------------------------------------------

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Mint a new access token. The refresh token itself is returned unchanged.

        The durable row always decides. A fingerprint whose row is revoked or
        expired is stale (its removal failed during an outage) and is dropped;
        an active row without a fingerprint (evicted, or Redis down) restores
        it so the session shows up in listings again.
        """
        claims = self.tokens.verify_refresh(refresh_token)
        user_id = claims["userId"]

        try:
            fingerprint = await self.cache.validate_fingerprint(user_id, refresh_token)
        except RedisError:
            logger.warning("Fingerprint cache unavailable; using durable store", exc_info=True)
            fingerprint = None

        token_hash = self.tokens.refresh_digest(refresh_token)
        record = await asyncio.to_thread(self.store.find_active_refresh_token, token_hash, user_id)
        if record is None:
            if fingerprint is not None:
                logger.warning("Dropping stale refresh fingerprint for user %s", user_id)
                await self._soft("drop stale fingerprint", self.cache.remove_fingerprint(user_id, refresh_token))
            raise AuthError(ErrorCode.REFRESH_TOKEN_EXPIRED_OR_REVOKED)

        if fingerprint is None:
            logger.info("Restoring refresh fingerprint for user %s from durable store", user_id)
            await self._soft(
                "restore refresh fingerprint",
                self.cache.store_fingerprint(user_id, refresh_token, {"restored": True, "token_hash": token_hash}),
            )

        access_token = self.tokens.create_access_token(user_id, claims["email"])
        return TokenPair(access_token=access_token, refresh_token=refresh_token)

    async def logout(
        self, principal: Principal, refresh_token: str | None = None, access_token: str | None = None
    ) -> None:
        """End one session (refresh_token given) or every session of the principal.

        The presented access token is blacklisted for its remaining lifetime
        in both cases, so it stops authenticating immediately. Refresh tokens
        are revoked in the durable store before the blacklist write, so a
        cache outage still ends the session; the blacklist failure itself
        raises SERVICE_UNAVAILABLE.
        """
        if refresh_token:
            await asyncio.to_thread(
                self.store.revoke_refresh_token, self.tokens.refresh_digest(refresh_token), principal.id
            )
            await self._soft("remove refresh fingerprint", self.cache.remove_fingerprint(principal.id, refresh_token))
        else:
            await self._revoke_all_refresh(principal.id)

        if access_token:
            await self._hard(
                "blacklist access token",
                self.cache.blacklist_access_token(access_token, self.tokens.remaining_lifetime(access_token)),
            )
            await self._soft("drop cached access token", self.cache.invalidate_access_token(access_token))

        await self._invalidate_identity(principal.id, principal.email)
        logger.info("User %s logged out (%s)", principal.id, "session" if refresh_token else "everywhere")

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    async def change_password(self, principal: Principal, current_password: str, new_password: str) -> None:
        user = await asyncio.to_thread(self.store.get_by_id, principal.id)
        if user is None:
            raise AuthError(ErrorCode.USER_NOT_FOUND)
        if not await asyncio.to_thread(verify_password, current_password, user.password_hash):
            raise AuthError(ErrorCode.INVALID_CREDENTIALS, "Current password is incorrect")

        password_hash = await asyncio.to_thread(hash_password, new_password, self.settings.bcrypt_rounds)
        await asyncio.to_thread(self.store.update_user, user.id, password_hash=password_hash)
        await self._revoke_all_refresh(user.id)
        await self._invalidate_identity(user.id, user.email)
        logger.info("Password changed for user %s; all sessions revoked", user.id)

    async def forgot_password(self, email: str) -> str | None:
        """Store a fresh reset token digest. Returns the raw token, or None for unknown e-mails.

        Callers must respond identically in both cases.
        """
        user = await asyncio.to_thread(self.store.get_by_email, email.strip())
        if user is None:
            logger.info("Password reset requested for unknown e-mail")
            return None

        raw = generate_reset_token()
        expiry = _utcnow() + timedelta(seconds=self.settings.password_reset_expire_seconds)
        await asyncio.to_thread(
            self.store.update_user,
            user.id,
            reset_password_token_hash=self.tokens.secret_digest(raw),
            reset_password_expiry=expiry,
        )
        if self.settings.debug:
            logger.debug("Password reset token for %s: %s", user.email, raw)
        return raw

    async def reset_password(self, token: str, new_password: str) -> None:
        user = await asyncio.to_thread(self.store.find_by_reset_token, self.tokens.secret_digest(token))
        if user is None:
            raise AuthError(ErrorCode.BAD_REQUEST, "Invalid or expired reset token")

        password_hash = await asyncio.to_thread(hash_password, new_password, self.settings.bcrypt_rounds)
        await asyncio.to_thread(
            self.store.update_user,
            user.id,
            password_hash=password_hash,
            reset_password_token_hash=None,
            reset_password_expiry=None,
        )
        await self._revoke_all_refresh(user.id)
        await self._invalidate_identity(user.id, user.email)
        logger.info("Password reset for user %s; all sessions revoked", user.id)

    # ------------------------------------------------------------------
    # E-mail verification
    # ------------------------------------------------------------------

    async def verify_email(self, token: str) -> None:
        user = await asyncio.to_thread(self.store.find_by_verification_token, self.tokens.secret_digest(token))
        if user is None:
            raise AuthError(ErrorCode.BAD_REQUEST, "Invalid or expired verification token")
        await asyncio.to_thread(self.store.mark_email_verified, user.id)
        await self._invalidate_identity(user.id, user.email)
        logger.info("E-mail verified for user %s", user.id)

    async def resend_verification(self, email: str) -> str | None:
        """Issue a new verification token for an unverified account.

        Returns None for unknown or already-verified e-mails; callers respond
        identically either way.
        """
        user = await asyncio.to_thread(self.store.get_by_email, email.strip())
        if user is None or user.email_verified:
            return None
        return await self._issue_verification_token(user)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def get_profile(self, profile_id: str) -> Profile:
        profile = await asyncio.to_thread(self.store.get_profile_by_id, profile_id)
        if profile is None:
            raise AuthError(ErrorCode.NOT_FOUND, "Profile not found")
        return profile

    async def assign_super_admin(self, actor: Principal, user_id: str) -> None:
        user = await self._require_user(user_id)
        await self._engine_call(self.permissions.engine.assign_super_admin(user.id))
        await self.permissions.invalidate_user(user.id)
        await self._soft("invalidate user cache", self.cache.invalidate_user_cache(user.id, user.email))
        logger.info("User %s granted superadmin by %s", user.id, actor.id)

    async def remove_super_admin(self, actor: Principal, user_id: str) -> None:
        if actor.id == user_id:
            raise AuthError(ErrorCode.BAD_REQUEST, "Cannot remove your own superadmin status")
        user = await self._require_user(user_id)
        await self._engine_call(self.permissions.engine.remove_super_admin(user.id))
        await self.permissions.invalidate_user(user.id)
        await self._soft("invalidate user cache", self.cache.invalidate_user_cache(user.id, user.email))
        logger.info("User %s lost superadmin (by %s)", user.id, actor.id)

    async def delete_user(self, actor: Principal, user_id: str) -> None:
        if actor.id == user_id:
            raise AuthError(ErrorCode.BAD_REQUEST, "Cannot delete your own account")
        user = await self._require_user(user_id)
        await self._soft("remove refresh fingerprints", self.cache.remove_all_fingerprints(user.id))
        await asyncio.to_thread(self.store.delete_user, user.id)
        await self._invalidate_identity(user.id, user.email)
        await self.permissions.invalidate_user(user.id)
        logger.info("User %s deleted by %s", user.id, actor.id)

    async def list_sessions(self, actor: Principal, user_id: str) -> list[FingerprintMetadata]:
        self._require_self_or_super_admin(actor, user_id)
        try:
            return await self.cache.list_fingerprints(user_id)
        except RedisError as exc:
            logger.error("Session listing failed for user %s", user_id, exc_info=True)
            raise AuthError(ErrorCode.SERVICE_UNAVAILABLE, "Session store temporarily unavailable") from exc

    async def revoke_session(self, actor: Principal, user_id: str, fingerprint: str) -> None:
        """Revoke one refresh token, addressed by the fingerprint list_sessions() reports."""
        self._require_self_or_super_admin(actor, user_id)
        session = await self._hard("read session", self.cache.get_fingerprint(user_id, fingerprint))
        if session is None:
            raise AuthError(ErrorCode.NOT_FOUND, "Session not found")
        if session.token_hash:
            await asyncio.to_thread(self.store.revoke_refresh_token, session.token_hash, user_id)
        else:
            logger.warning("Session %s of user %s has no durable link; dropping cache entry only", fingerprint, user_id)
        await self._hard("remove session", self.cache.remove_fingerprint_by_id(user_id, fingerprint))
        logger.info("Session %s of user %s revoked by %s", fingerprint, user_id, actor.id)

    async def list_users(self, limit: int = 50, offset: int = 0) -> tuple[list[dict[str, Any]], int]:
        """One page of sanitized users plus the total user count."""
        rows = await asyncio.to_thread(self.store.list_users, limit, offset)
        total = await asyncio.to_thread(self.store.count_users)
        return [user.public_dict(profile) for user, profile in rows], total

    async def revoke_all_sessions(self, actor: Principal, user_id: str) -> int:
        """Revoke every refresh token of user_id. Returns the number of durable rows revoked."""
        self._require_self_or_super_admin(actor, user_id)
        user = await self._require_user(user_id)
        revoked = await self._revoke_all_refresh(user.id)
        await self._invalidate_identity(user.id, user.email)
        logger.info("All sessions of user %s revoked by %s", user.id, actor.id)
        return revoked

    async def clear_user_cache(self, user_id: str) -> None:
        """Drop every cached entry about the user (identity, profile, permissions)."""
        user = await self._require_user(user_id)
        await self._invalidate_identity(user.id, user.email)
        await self.permissions.invalidate_user(user.id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _soft(self, action: str, op: Awaitable[Any]) -> Any:
        """Await a cache operation; log and swallow RedisError."""
        try:
            return await op
        except RedisError:
            logger.warning("Cache operation failed: %s", action, exc_info=True)
            return None

    async def _hard(self, action: str, op: Awaitable[Any]) -> Any:
        """Await a cache operation that has no durable fallback; RedisError becomes SERVICE_UNAVAILABLE."""
        try:
            return await op
        except RedisError as exc:
            logger.error("Cache operation failed: %s", action, exc_info=True)
            raise AuthError(ErrorCode.SERVICE_UNAVAILABLE, "Session store temporarily unavailable") from exc

    async def _engine_call(self, op: Awaitable[None]) -> None:
        try:
            await op
        except PermissionEngineError as exc:
            logger.error("Permission engine write failed", exc_info=True)
            raise AuthError(ErrorCode.SERVICE_UNAVAILABLE, "Permission service temporarily unavailable") from exc

    async def _persist_session(self, user_id: str, refresh_token: str, metadata: dict[str, Any] | None) -> None:
        """Durable row (hard) plus fingerprint (soft) for a freshly issued refresh token."""
        token_hash = self.tokens.refresh_digest(refresh_token)
        await asyncio.to_thread(
            self.store.create_refresh_token,
            RefreshTokenRecord(
                token_hash=token_hash,
                user_id=user_id,
                expires_at=_utcnow() + timedelta(seconds=self.tokens.refresh_ttl),
            ),
        )
        await self._soft(
            "store refresh fingerprint",
            self.cache.store_fingerprint(user_id, refresh_token, {**(metadata or {}), "token_hash": token_hash}),
        )

    async def _revoke_all_refresh(self, user_id: str) -> int:
        revoked = await asyncio.to_thread(self.store.revoke_all_refresh_tokens, user_id)
        await self._soft("remove refresh fingerprints", self.cache.remove_all_fingerprints(user_id))
        return revoked

    async def _cache_user_data(self, user_data: dict[str, Any]) -> None:
        await self.cache.cache_user(user_data["id"], user_data)
        await self.cache.cache_user_by_email(user_data["email"], user_data)
        if user_data.get("profile"):
            await self.cache.cache_profile(user_data["id"], user_data["profile"])

    async def _invalidate_identity(self, user_id: str, email: str | None) -> None:
        await self._soft("invalidate user cache", self.cache.invalidate_user_cache(user_id, email))
        await self._soft("invalidate profile cache", self.cache.invalidate_profile(user_id))

    async def _issue_verification_token(self, user: User) -> str:
        raw = generate_reset_token()
        expiry = _utcnow() + timedelta(seconds=self.settings.email_verification_expire_seconds)
        await asyncio.to_thread(
            self.store.update_user,
            user.id,
            email_verification_token_hash=self.tokens.secret_digest(raw),
            email_verification_expiry=expiry,
        )
        if self.settings.debug:
            logger.debug("E-mail verification token for %s: %s", user.email, raw)
        return raw

    async def _require_user(self, user_id: str) -> User:
        user = await asyncio.to_thread(self.store.get_by_id, user_id)
        if user is None:
            raise AuthError(ErrorCode.NOT_FOUND, "User not found")
        return user

    @staticmethod
    def _require_self_or_super_admin(actor: Principal, user_id: str) -> None:
        if actor.id != user_id and not actor.is_super_admin:
            raise AuthError(ErrorCode.FORBIDDEN)
