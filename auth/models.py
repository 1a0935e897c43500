"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container). The only logic here is the
validity predicates, which are pure functions of the record and a clock
reading. Stores and services do the work.

Opaque tokens (invite, reset, refresh) are persisted as token_hash only. The
raw token field is populated on freshly minted records and is None on every
record read back from the store.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class TokenStatus(str, Enum):
    """Classification of a single-use link (invite or password reset)."""

    NOT_FOUND = "not_found"
    ALREADY_USED = "already_used"
    EXPIRED = "expired"
    VALID = "valid"


@dataclass
class User:
    """A diary owner. Never hard-deleted; deactivate via is_active instead."""

    email: str
    username: str
    name: str
    hashed_password: str
    id: int | None = None
    is_active: bool = True
    is_admin: bool = False
    created_at: str | None = None
    updated_at: str | None = None
    failed_login_attempts: int = 0


@dataclass
class InviteLink:
    """Single-use registration invite.

    Used and expired are independent terminal states. A link that is both
    reports ALREADY_USED.
    """

    token_hash: str
    email: str
    expires_at: datetime
    created_by: int
    id: int | None = None
    token: str | None = None  # raw value, only on the record returned at creation
    is_used: bool = False
    created_at: str | None = None

    def status(self, now: datetime) -> TokenStatus:
        if self.is_used:
            return TokenStatus.ALREADY_USED
        if now >= self.expires_at:
            return TokenStatus.EXPIRED
        return TokenStatus.VALID


@dataclass
class PasswordResetLink:
    """Single-use, admin-issued password reset link."""

    token_hash: str
    user_id: int
    expires_at: datetime
    id: int | None = None
    token: str | None = None
    is_used: bool = False
    created_at: str | None = None

    def status(self, now: datetime) -> TokenStatus:
        if self.is_used:
            return TokenStatus.ALREADY_USED
        if now >= self.expires_at:
            return TokenStatus.EXPIRED
        return TokenStatus.VALID


@dataclass
class RefreshToken:
    """Long-lived opaque credential used to mint new access tokens.

    There is no "used" state: a refresh token stays valid across repeated use
    until it expires or is revoked. Both transitions are one-way.
    """

    token_hash: str
    user_id: int
    expires_at: datetime
    id: int | None = None
    token: str | None = None
    created_at: str | None = None
    revoked_at: datetime | None = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_valid(self, now: datetime) -> bool:
        return not self.is_revoked and not self.is_expired(now)


@dataclass
class AccessToken:
    """A freshly signed JWT. Transient -- never persisted."""

    token: str
    user_id: int
    expires_at: datetime
