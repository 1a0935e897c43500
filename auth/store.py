"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. CredentialStore is the repository; the
_row_to_* functions are the mappers. Service and route code never touches SQL.

Tables:
  users                  -- accounts (never hard-deleted)
  invite_links           -- single-use registration invites
  password_reset_links   -- single-use password reset links
  refresh_tokens         -- long-lived opaque session credentials

Opaque tokens live only as token_hash (HMAC digest computed by the caller,
see auth/tokens.py::TokenService.hash_token). Each token_hash column is
UNIQUE, which also makes lookup by presented token an index hit.

Atomic units:
  register_user()           -- consume invite + insert user
  complete_password_reset() -- consume reset link + update password + revoke sessions
  record_login()            -- insert refresh token + zero failed-login counter
  rotate_refresh_token()    -- revoke presented token + insert its replacement
  Each runs inside engine.begin(): commit on success, rollback on any
  exception. Single-use consumption is a conditional UPDATE (is_used = 0) and
  the rowcount decides which of two concurrent consumers wins.

Security:
  All queries use bound parameters. No f-strings in SQL.

Timestamps are ISO 8601 UTC strings, parsed back to aware datetimes by the
mappers where the domain compares them (expiry, revocation).

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import Pool

from auth.errors import UserNotFound
from auth.models import InviteLink, PasswordResetLink, RefreshToken, User

logger = logging.getLogger("healthdiary.store")

_DEFAULT_DB_URL = "sqlite:///healthdiary_auth.db"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("username", String(100), nullable=False, unique=True),
    Column("name", String(255), nullable=False),
    Column("hashed_password", Text, nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("is_admin", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
)

_invite_links = Table(
    "invite_links",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("email", String(255), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("is_used", Integer, nullable=False, server_default="0"),
    Column("created_by", Integer, nullable=False),
    Column("created_at", String(32), nullable=False),
)

_password_reset_links = Table(
    "password_reset_links",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("expires_at", String(32), nullable=False),
    Column("is_used", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("revoked_at", String(32)),  # NULL = not revoked
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block behind a writer.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return _to_iso(datetime.now(timezone.utc))


def _to_iso(value: datetime) -> str:
    # Fixed width so stored timestamps compare correctly as strings in SQL.
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for users, invite links, reset links and refresh tokens.

    Usage:
        store = CredentialStore("sqlite:///:memory:")
        invite_id = store.create_invite(invite)
        user_id = store.register_user(user, invite.token_hash, now=utcnow())
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, poolclass: type[Pool] | None = None) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        engine_kwargs: dict = {"connect_args": connect_args}
        if poolclass is not None:
            # In-memory SQLite needs one shared connection (StaticPool).
            engine_kwargs["poolclass"] = poolclass
        self.engine: Engine = create_engine(db_url, **engine_kwargs)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                return conn.execute(select(1)).scalar() == 1
        except SQLAlchemyError:
            logger.exception("Database ping failed")
            return False

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> int:
        """Insert a user outside any invite flow (operator bootstrap).

        Raises sqlalchemy.exc.IntegrityError if the email or username exists.
        """
        with self.engine.begin() as conn:
            return _insert_user(conn, user)

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Exact match on the stored (already normalised) email."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_by_email_or_username(self, email: str, username: str) -> User | None:
        """Return any user holding either identity, or None."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where((_users.c.email == email) | (_users.c.username == username)).limit(1)
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all users ordered by id. Admin-only operation."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.id)).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user and bump updated_at.

        Accepted fields: is_active, is_admin, hashed_password, name.
        Booleans are stored as 0/1.

        Returns True if a row was updated, False if user_id was not found.
        """
        for flag in ("is_active", "is_admin"):
            if flag in fields:
                fields[flag] = 1 if fields[flag] else 0
        fields["updated_at"] = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
        return result.rowcount > 0

    def increment_failed_logins(self, user_id: int) -> None:
        """Add one to the failed-login counter in a single SQL statement."""
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(failed_login_attempts=_users.c.failed_login_attempts + 1)
            )

    def count_active_admins(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_users).where((_users.c.is_admin == 1) & (_users.c.is_active == 1))
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Invite links
    # ------------------------------------------------------------------

    def create_invite(self, invite: InviteLink) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _invite_links.insert().values(
                    token_hash=invite.token_hash,
                    email=invite.email,
                    expires_at=_to_iso(invite.expires_at),
                    is_used=1 if invite.is_used else 0,
                    created_by=invite.created_by,
                    created_at=_now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def get_invite_by_hash(self, token_hash: str) -> InviteLink | None:
        with self.engine.connect() as conn:
            row = conn.execute(_invite_links.select().where(_invite_links.c.token_hash == token_hash)).fetchone()
        return _row_to_invite(row) if row is not None else None

    def register_user(self, user: User, invite_token_hash: str, now: datetime) -> int | None:
        """Consume the invite and create the user in one transaction.

        The claim only succeeds for an unused invite that is still unexpired at
        now. Returns the new user id, or None when the invite was consumed by a
        concurrent registration or expired since the caller checked it.
        Nothing is written in that case. Raises sqlalchemy.exc.IntegrityError on a duplicate email or
        username; the invite consumption is rolled back with it.
        """
        with self.engine.begin() as conn:
            claimed = conn.execute(
                _invite_links.update()
                .where(
                    (_invite_links.c.token_hash == invite_token_hash)
                    & (_invite_links.c.is_used == 0)
                    & (_invite_links.c.expires_at > _to_iso(now))
                )
                .values(is_used=1)
            ).rowcount
            if claimed != 1:
                return None
            return _insert_user(conn, user)

    # ------------------------------------------------------------------
    # Password reset links
    # ------------------------------------------------------------------

    def create_password_reset(self, link: PasswordResetLink) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _password_reset_links.insert().values(
                    token_hash=link.token_hash,
                    user_id=link.user_id,
                    expires_at=_to_iso(link.expires_at),
                    is_used=1 if link.is_used else 0,
                    created_at=_now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def get_password_reset_by_hash(self, token_hash: str) -> PasswordResetLink | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _password_reset_links.select().where(_password_reset_links.c.token_hash == token_hash)
            ).fetchone()
        return _row_to_reset(row) if row is not None else None

    def complete_password_reset(self, token_hash: str, user_id: int, hashed_password: str, now: datetime) -> bool:
        """Consume the reset link, set the new hash and end every session, atomically.

        Returns False when the link was already consumed or has expired at now
        (nothing written).
        Raises UserNotFound, rolling everything back, if the owner vanished
        between the caller's lookup and this write.
        """
        stamp = _to_iso(now)
        with self.engine.begin() as conn:
            claimed = conn.execute(
                _password_reset_links.update()
                .where(
                    (_password_reset_links.c.token_hash == token_hash)
                    & (_password_reset_links.c.is_used == 0)
                    & (_password_reset_links.c.expires_at > stamp)
                )
                .values(is_used=1)
            ).rowcount
            if claimed != 1:
                return False
            updated = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(hashed_password=hashed_password, failed_login_attempts=0, updated_at=stamp)
            ).rowcount
            if updated != 1:
                raise UserNotFound()
            conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.revoked_at.is_(None)))
                .values(revoked_at=stamp)
            )
        return True

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def record_login(self, user_id: int, refresh_token: RefreshToken) -> int:
        """Persist the new refresh token and zero the failed-login counter together."""
        with self.engine.begin() as conn:
            token_id = _insert_refresh_token(conn, refresh_token)
            conn.execute(_users.update().where(_users.c.id == user_id).values(failed_login_attempts=0))
            return token_id

    def get_refresh_token_by_hash(self, token_hash: str) -> RefreshToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def revoke_refresh_token(self, token_id: int, revoked_at: datetime) -> bool:
        """Stamp revoked_at. Returns False if already revoked or not found."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.id == token_id) & (_refresh_tokens.c.revoked_at.is_(None)))
                .values(revoked_at=_to_iso(revoked_at))
            )
        return result.rowcount > 0

    def rotate_refresh_token(self, old_token_id: int, replacement: RefreshToken, revoked_at: datetime) -> int | None:
        """Revoke the presented token and insert its replacement in one transaction.

        Returns the replacement id, or None if the old token was revoked
        concurrently (nothing written).
        """
        with self.engine.begin() as conn:
            revoked = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.id == old_token_id) & (_refresh_tokens.c.revoked_at.is_(None)))
                .values(revoked_at=_to_iso(revoked_at))
            ).rowcount
            if revoked != 1:
                return None
            return _insert_refresh_token(conn, replacement)

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Insert helpers (shared by single and multi-statement units)
# ---------------------------------------------------------------------------


def _insert_user(conn: Connection, user: User) -> int:
    now = _now_iso()
    result = conn.execute(
        _users.insert().values(
            email=user.email,
            username=user.username,
            name=user.name,
            hashed_password=user.hashed_password,
            is_active=1 if user.is_active else 0,
            is_admin=1 if user.is_admin else 0,
            created_at=now,
            updated_at=now,
            failed_login_attempts=0,
        )
    )
    return result.inserted_primary_key[0]


def _insert_refresh_token(conn: Connection, token: RefreshToken) -> int:
    result = conn.execute(
        _refresh_tokens.insert().values(
            token_hash=token.token_hash,
            user_id=token.user_id,
            expires_at=_to_iso(token.expires_at),
            created_at=_now_iso(),
            revoked_at=_to_iso(token.revoked_at) if token.revoked_at else None,
        )
    )
    return result.inserted_primary_key[0]


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        username=row.username,
        name=row.name,
        hashed_password=row.hashed_password,
        is_active=bool(row.is_active),
        is_admin=bool(row.is_admin),
        created_at=row.created_at,
        updated_at=row.updated_at,
        failed_login_attempts=row.failed_login_attempts,
    )


def _row_to_invite(row) -> InviteLink:
    return InviteLink(
        id=row.id,
        token_hash=row.token_hash,
        email=row.email,
        expires_at=_parse_iso(row.expires_at),
        is_used=bool(row.is_used),
        created_by=row.created_by,
        created_at=row.created_at,
    )


def _row_to_reset(row) -> PasswordResetLink:
    return PasswordResetLink(
        id=row.id,
        token_hash=row.token_hash,
        user_id=row.user_id,
        expires_at=_parse_iso(row.expires_at),
        is_used=bool(row.is_used),
        created_at=row.created_at,
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        token_hash=row.token_hash,
        user_id=row.user_id,
        expires_at=_parse_iso(row.expires_at),
        created_at=row.created_at,
        revoked_at=_parse_iso(row.revoked_at),
    )
