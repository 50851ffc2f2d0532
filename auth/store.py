"""
auth/store.py -- SQLAlchemy Core persistence layer for the Credential Store.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user / _row_to_profile /
_row_to_refresh_token are the mappers. Service and route code never touches
SQL directly.

Tables:
  users           -- identity records, bcrypt password hash, reset and
                     verification token digests.
  profiles        -- one row per user (user_id UNIQUE), last_login stamp.
  refresh_tokens  -- durable backup of every issued refresh token (digest
                     only), revoked flag, expiry. Every refresh checks its row
                     here, so revocation holds even if Redis missed it.

Security:
  All queries use bound parameters. No f-strings in SQL.
  The store never returns password hashes to callers outside auth/ -- the
  User.public_dict() mapper drops them.

Deleting a user removes its profile and refresh-token rows in the same
transaction. SQLite does not enforce foreign keys unless asked per
connection, so the cascade is done in code rather than relying on
ON DELETE CASCADE.

Layer rule: no imports from api/, core/, or cache/.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import Profile, RefreshTokenRecord, User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("name", String(255)),
    Column("phone", String(32)),
    Column("email_verified", Boolean, nullable=False, default=False),
    Column("reset_password_token_hash", String(64), index=True),
    Column("reset_password_expiry", DateTime(timezone=True)),
    Column("email_verification_token_hash", String(64), index=True),
    Column("email_verification_expiry", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

_profiles = Table(
    "profiles",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True),
    Column("last_login", DateTime(timezone=True)),
    Column("email_verified", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token_hash", String(64), nullable=False, index=True),  # HMAC-SHA256 hex
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("is_revoked", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers never block on the token writer."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything stored here is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User, Profile and RefreshTokenRecord entities.

    Usage:
        store = UserStore("sqlite:///tripwise.db")
        user, profile = store.create_user_with_profile(User(email="a@x.com", password_hash=...))
        store.get_by_email("a@x.com")
        store.close()
    """

    def __init__(self, db_url: str = "sqlite:///tripwise.db") -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Cheap liveness check used by the health endpoint."""
        with self.engine.connect() as conn:
            conn.execute(select(1))
        return True

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def count_users(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_users)).scalar() or 0

    def create_user_with_profile(self, user: User) -> tuple[User, Profile]:
        """Insert a user and its empty profile in one transaction.

        Raises sqlalchemy.exc.IntegrityError if the e-mail already exists.
        The registration flow checks first and translates a race-induced
        IntegrityError into a CONFLICT error.
        """
        now = _now()
        user_id = user.id or _new_id()
        profile_id = _new_id()
        with self.engine.begin() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    email=user.email.lower(),
                    password_hash=user.password_hash,
                    name=user.name,
                    phone=user.phone,
                    email_verified=user.email_verified,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.execute(
                _profiles.insert().values(
                    id=profile_id,
                    user_id=user_id,
                    email_verified=user.email_verified,
                    created_at=now,
                    updated_at=now,
                )
            )
        created = self.get_by_id(user_id)
        profile = self.get_profile(user_id)
        return created, profile

    def get_by_id(self, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by e-mail (case-insensitive; stored lower-cased)."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self, limit: int = 50, offset: int = 0) -> list[tuple[User, Profile | None]]:
        """One page of users ordered by e-mail, each with its profile (outer join)."""
        query = (
            select(_users, *[c.label(f"profile_{c.name}") for c in _profiles.c])
            .select_from(_users.outerjoin(_profiles, _profiles.c.user_id == _users.c.id))
            .order_by(_users.c.email)
            .limit(limit)
            .offset(offset)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [(_row_to_user(r), _joined_profile(r)) for r in rows]

    def update_user(self, user_id: str, **fields) -> bool:
        """Update mutable columns on a user. Returns False if user_id was not found.

        Accepted fields: name, phone, password_hash, email_verified, and the
        reset / verification token digest + expiry columns.
        """
        fields["updated_at"] = _now()
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
        return result.rowcount > 0

    def delete_user(self, user_id: str) -> bool:
        """Hard-delete a user and cascade its profile and refresh-token rows."""
        with self.engine.begin() as conn:
            conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == user_id))
            conn.execute(_profiles.delete().where(_profiles.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    def find_by_reset_token(self, token_hash: str) -> User | None:
        """Return the user owning an UNEXPIRED password-reset token digest."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(
                    (_users.c.reset_password_token_hash == token_hash) & (_users.c.reset_password_expiry > _now())
                )
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_by_verification_token(self, token_hash: str) -> User | None:
        """Return the user owning an UNEXPIRED e-mail verification token digest."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(
                    (_users.c.email_verification_token_hash == token_hash)
                    & (_users.c.email_verification_expiry > _now())
                )
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def get_profile(self, user_id: str) -> Profile | None:
        with self.engine.connect() as conn:
            row = conn.execute(_profiles.select().where(_profiles.c.user_id == user_id)).fetchone()
        return _row_to_profile(row) if row is not None else None

    def get_profile_by_id(self, profile_id: str) -> Profile | None:
        with self.engine.connect() as conn:
            row = conn.execute(_profiles.select().where(_profiles.c.id == profile_id)).fetchone()
        return _row_to_profile(row) if row is not None else None

    def touch_last_login(self, user_id: str) -> Profile:
        """Stamp last_login on the user's profile, creating the profile if absent (upsert)."""
        now = _now()
        with self.engine.begin() as conn:
            result = conn.execute(
                _profiles.update().where(_profiles.c.user_id == user_id).values(last_login=now, updated_at=now)
            )
            if result.rowcount == 0:
                conn.execute(
                    _profiles.insert().values(
                        id=_new_id(),
                        user_id=user_id,
                        last_login=now,
                        created_at=now,
                        updated_at=now,
                    )
                )
        return self.get_profile(user_id)

    def mark_email_verified(self, user_id: str) -> None:
        """Flag the user and profile as verified and clear the verification token."""
        now = _now()
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(
                    email_verified=True,
                    email_verification_token_hash=None,
                    email_verification_expiry=None,
                    updated_at=now,
                )
            )
            conn.execute(
                _profiles.update().where(_profiles.c.user_id == user_id).values(email_verified=True, updated_at=now)
            )

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def create_refresh_token(self, record: RefreshTokenRecord) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.insert().values(
                    token_hash=record.token_hash,
                    user_id=record.user_id,
                    expires_at=record.expires_at,
                    is_revoked=record.is_revoked,
                    created_at=_now(),
                )
            )
        return result.inserted_primary_key[0]

    def find_active_refresh_token(self, token_hash: str, user_id: str) -> RefreshTokenRecord | None:
        """Return the row only if it is NOT revoked and NOT expired."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _refresh_tokens.select().where(
                    (_refresh_tokens.c.token_hash == token_hash)
                    & (_refresh_tokens.c.user_id == user_id)
                    & (_refresh_tokens.c.is_revoked.is_(False))
                    & (_refresh_tokens.c.expires_at > _now())
                )
            ).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def revoke_refresh_token(self, token_hash: str, user_id: str) -> int:
        """Mark matching rows revoked. user_id is part of the WHERE clause (IDOR guard)."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.token_hash == token_hash) & (_refresh_tokens.c.user_id == user_id))
                .values(is_revoked=True)
            )
        return result.rowcount

    def revoke_all_refresh_tokens(self, user_id: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update().where(_refresh_tokens.c.user_id == user_id).values(is_revoked=True)
            )
        return result.rowcount

    def purge_refresh_tokens(self) -> int:
        """Delete expired or revoked rows. Returns the number of rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.delete().where(
                    or_(_refresh_tokens.c.expires_at < _now(), _refresh_tokens.c.is_revoked.is_(True))
                )
            )
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        name=row.name,
        phone=row.phone,
        email_verified=bool(row.email_verified),
        reset_password_token_hash=row.reset_password_token_hash,
        reset_password_expiry=_aware(row.reset_password_expiry),
        email_verification_token_hash=row.email_verification_token_hash,
        email_verification_expiry=_aware(row.email_verification_expiry),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def _row_to_profile(row) -> Profile:
    return Profile(
        id=row.id,
        user_id=row.user_id,
        last_login=_aware(row.last_login),
        email_verified=bool(row.email_verified),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def _joined_profile(row) -> Profile | None:
    """Profile half of a list_users() row; None when the outer join found nothing."""
    if row.profile_id is None:
        return None
    return Profile(
        id=row.profile_id,
        user_id=row.profile_user_id,
        last_login=_aware(row.profile_last_login),
        email_verified=bool(row.profile_email_verified),
        created_at=_aware(row.profile_created_at),
        updated_at=_aware(row.profile_updated_at),
    )


def _row_to_refresh_token(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=row.id,
        token_hash=row.token_hash,
        user_id=row.user_id,
        expires_at=_aware(row.expires_at),
        is_revoked=bool(row.is_revoked),
        created_at=_aware(row.created_at),
    )
