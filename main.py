#!/usr/bin/env python3
"""
Tripwise -- maintenance commands for the auth core.

Usage:
  python main.py create-superadmin --email admin@example.com --password '...'
  python main.py create-superadmin --email admin@example.com     (prompts for the password)
  python main.py cleanup-tokens

Configuration comes from the environment / .env file (see core/config.py):
  DATABASE_URL, REDIS_URL, JWT_ACCESS_SECRET, JWT_REFRESH_SECRET,
  PERMISSION_ENGINE, FGA_API_URL, FGA_STORE_ID, ...

create-superadmin is idempotent: an existing account keeps its password and
only (re)receives the superadmin relation. Cached permission results for the
user are dropped so the grant is visible on the next request.
"""

import argparse
import asyncio
import getpass
import logging
import sys
from typing import Optional

from redis.exceptions import RedisError

from auth.models import User
from auth.permissions import PermissionEngine, build_permission_engine
from auth.store import UserStore
from auth.tokens import hash_password
from cache.store import RedisCache
from core.config import Settings, get_settings

logger = logging.getLogger("tripwise.cli")


async def create_superadmin(
    settings: Settings,
    email: str,
    password: str,
    name: Optional[str] = None,
    phone: Optional[str] = None,
    store: Optional[UserStore] = None,
    cache: Optional[RedisCache] = None,
    engine: Optional[PermissionEngine] = None,
) -> tuple[str, bool]:
    """Ensure `email` exists and holds the superadmin relation.

    Returns (user_id, created). Collaborators may be injected; those built
    here are closed before returning.
    """
    own_store, own_cache, own_engine = store is None, cache is None, engine is None
    store = store or UserStore(settings.database_url)
    cache = cache or RedisCache(settings)
    engine = engine or build_permission_engine(settings)
    try:
        if own_engine:
            await engine.connect()

        user = await asyncio.to_thread(store.get_by_email, email)
        created = user is None
        if created:
            password_hash = await asyncio.to_thread(hash_password, password, settings.bcrypt_rounds)
            user, profile = await asyncio.to_thread(
                store.create_user_with_profile,
                User(email=email, password_hash=password_hash, name=name, phone=phone),
            )
            await engine.create_profile_relations(user.id, profile.id)

        await engine.assign_super_admin(user.id)

        try:
            if own_cache:
                await cache.connect()
            await cache.invalidate_all_user_permissions(user.id)
            await cache.invalidate_user_cache(user.id, user.email)
        except RedisError:
            logger.warning("Could not clear cached permissions; they expire within %ds",
                           settings.permission_cache_ttl_seconds)
        return user.id, created
    finally:
        if own_engine:
            await engine.close()
        if own_cache:
            await cache.close()
        if own_store:
            store.close()


def cleanup_tokens(settings: Settings, store: Optional[UserStore] = None) -> int:
    """Delete expired or revoked refresh-token rows. Returns the number deleted."""
    own_store = store is None
    store = store or UserStore(settings.database_url)
    try:
        return store.purge_refresh_tokens()
    finally:
        if own_store:
            store.close()


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="tripwise",
        description="Maintenance commands for the Tripwise auth core.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-superadmin --email admin@example.com
  python main.py cleanup-tokens
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p_admin = sub.add_parser("create-superadmin", help="Create (or promote) a superadmin account")
    p_admin.add_argument("--email", required=True, help="Account e-mail address")
    p_admin.add_argument("--password", default=None, help="Password for a NEW account (prompted if omitted)")
    p_admin.add_argument("--name", default=None, help="Display name for a new account")
    p_admin.add_argument("--phone", default=None, help="Phone number for a new account")

    sub.add_parser("cleanup-tokens", help="Purge expired or revoked refresh tokens")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    logging.basicConfig(level=logging.INFO, format="%(levelname)-5s %(name)s %(message)s")
    settings = get_settings()

    if args.command == "cleanup-tokens":
        deleted = cleanup_tokens(settings)
        print(f"Cleaned up {deleted} expired/revoked refresh token(s).")
        return 0

    if settings.permission_engine == "memory":
        print("  [!] PERMISSION_ENGINE=memory keeps relations in-process; the grant will not")
        print("      survive this command. Configure PERMISSION_ENGINE=openfga for a real grant.")

    password = args.password or getpass.getpass("Password: ")
    if len(password) < 8:
        print("  [!] Password must be at least 8 characters.")
        return 1

    user_id, created = asyncio.run(
        create_superadmin(settings, args.email.strip().lower(), password, name=args.name, phone=args.phone)
    )
    verb = "Created" if created else "Promoted existing"
    print(f"{verb} superadmin {args.email} (user id {user_id}).")
    return 0


if __name__ == "__main__":
    sys.exit(main())
