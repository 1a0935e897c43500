"""
auth/service.py -- Invite-gated registration, login, token refresh, password reset.

AuthService composes the leaf components:
  CredentialStore  -- persistence (auth/store.py)
  TokenService     -- JWT access tokens, opaque refresh tokens, token digests
  RateLimiter      -- per-client failed-login counter
  passwords        -- Argon2id hash / verify

Every public method either returns its result or raises an AuthError subclass
(auth/errors.py). Nothing here knows about HTTP; api/main.py maps errors to
status codes.

Login policy, in order:
  1. Rate limit check on the client identifier. A blocked client gets
     RateLimited without a user lookup and without recording an attempt.
  2. Unknown email: verify against DUMMY_HASH (timing), record the attempt,
     InvalidCredentials. The absent user is never touched.
  3. Wrong password: record the attempt, bump the user's failed-login
     counter, InvalidCredentials (same message as step 2).
  4. Inactive account: AccountDisabled -- only reachable with the right
     password, so it does not disclose anything to a guesser.
  5. Success: issue tokens, persist the refresh token and zero the counter in
     one transaction, clear the limiter record.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError

from auth.errors import (
    AccountDisabled,
    DuplicateIdentity,
    InvalidCredentials,
    InvalidOrExpiredToken,
    InvalidProfile,
    InvalidUserUpdate,
    RateLimited,
    TokenAlreadyUsed,
    TokenExpired,
    TokenNotFound,
    UserNotFound,
    WeakPassword,
)
from auth.models import AccessToken, InviteLink, PasswordResetLink, RefreshToken, TokenStatus, User
from auth.passwords import DUMMY_HASH, hash_password, needs_rehash, verify_password
from auth.rate_limit import RateLimiter
from auth.store import CredentialStore
from auth.tokens import TokenService, generate_secure_token, utcnow
from core.config import Settings, get_settings

logger = logging.getLogger("healthdiary.auth")

_STATUS_ERRORS = {
    TokenStatus.NOT_FOUND: TokenNotFound,
    TokenStatus.ALREADY_USED: TokenAlreadyUsed,
    TokenStatus.EXPIRED: TokenExpired,
}


@dataclass
class LoginResult:
    access_token: AccessToken
    refresh_token: RefreshToken


@dataclass
class RefreshResult:
    access_token: AccessToken
    # Set only when refresh_token_rotation is enabled.
    refresh_token: RefreshToken | None = None


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AuthService:
    """Authentication and session-lifecycle operations.

    Usage:
        service = AuthService(store, TokenService(), RateLimiter())
        invite = service.generate_invite("a@x.com", created_by=admin.id)
        user = service.register(invite.token, "a@x.com", "alice", "Alice", "longenough1")
        result = service.login("a@x.com", "longenough1", client_identifier="203.0.113.7")
    """

    def __init__(
        self,
        store: CredentialStore,
        tokens: TokenService,
        limiter: RateLimiter,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.limiter = limiter
        self.settings = settings or get_settings()
        self._clock = clock

    # ------------------------------------------------------------------
    # Invites
    # ------------------------------------------------------------------

    def generate_invite(self, email: str, created_by: int) -> InviteLink:
        """Mint and persist an invite for email. Admin-gated by the caller."""
        raw = generate_secure_token()
        invite = InviteLink(
            token=raw,
            token_hash=self.tokens.hash_token(raw),
            email=normalize_email(email),
            expires_at=self._clock() + timedelta(days=self.settings.invite_expire_days),
            created_by=created_by,
        )
        invite.id = self.store.create_invite(invite)
        logger.info("Invite %d issued by user %d for %s", invite.id, created_by, invite.email)
        return invite

    def validate_invite(self, token: str) -> TokenStatus:
        """Classify an invite token. Pure read."""
        invite = self.store.get_invite_by_hash(self.tokens.hash_token(token))
        if invite is None:
            return TokenStatus.NOT_FOUND
        return invite.status(self._clock())

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, invite_token: str, email: str, username: str, name: str, password: str) -> User:
        """Create an account from a valid invite. The invite is consumed atomically."""
        raise_for_status(self.validate_invite(invite_token))

        email = normalize_email(email)
        username = username.strip()
        if self.store.find_by_email_or_username(email, username) is not None:
            raise DuplicateIdentity()

        name = name.strip()
        self._check_profile(username, name)
        self._check_password_policy(password)

        user = User(
            email=email,
            username=username,
            name=name,
            hashed_password=hash_password(password),
        )
        try:
            user_id = self.store.register_user(user, self.tokens.hash_token(invite_token), self._clock())
        except IntegrityError as exc:
            # Lost a uniqueness race with a concurrent registration.
            raise DuplicateIdentity() from exc
        if user_id is None:
            # Consumed concurrently or expired since the check above.
            raise_for_status(self.validate_invite(invite_token))
            raise TokenAlreadyUsed()

        logger.info("User %d registered (%s)", user_id, email)
        return self.store.get_by_id(user_id)

    def create_admin(self, email: str, username: str, name: str, password: str) -> User:
        """Bootstrap an admin account without an invite (operator CLI only)."""
        email = normalize_email(email)
        username = username.strip()
        if self.store.find_by_email_or_username(email, username) is not None:
            raise DuplicateIdentity()
        name = name.strip()
        self._check_profile(username, name)
        self._check_password_policy(password)
        user = User(
            email=email,
            username=username,
            name=name,
            hashed_password=hash_password(password),
            is_admin=True,
        )
        try:
            user_id = self.store.create_user(user)
        except IntegrityError as exc:
            raise DuplicateIdentity() from exc
        logger.info("Admin user %d created (%s)", user_id, email)
        return self.store.get_by_id(user_id)

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, email: str, password: str, client_identifier: str) -> LoginResult:
        """Authenticate by email and password under the per-client rate limit."""
        max_attempts = self.settings.login_max_attempts
        window = self.settings.login_window_seconds
        if not self.limiter.allowed(client_identifier, max_attempts, window):
            logger.warning("Login blocked for client %s (rate limited)", client_identifier)
            raise RateLimited(retry_after=self.limiter.retry_after(client_identifier))

        user = self.store.get_by_email(normalize_email(email))
        if user is None:
            verify_password(password, DUMMY_HASH)
            self.limiter.record_attempt(client_identifier, window)
            logger.info("Failed login for unknown email from client %s", client_identifier)
            raise InvalidCredentials()

        if not verify_password(password, user.hashed_password):
            self.limiter.record_attempt(client_identifier, window)
            self.store.increment_failed_logins(user.id)
            logger.info("Failed login for user %d from client %s", user.id, client_identifier)
            raise InvalidCredentials()

        if not user.is_active:
            logger.info("Login refused for disabled user %d", user.id)
            raise AccountDisabled()

        access = self.tokens.issue_access_token(user)
        refresh = self.tokens.issue_refresh_token(user.id)
        refresh.id = self.store.record_login(user.id, refresh)
        self.limiter.reset(client_identifier)

        if needs_rehash(user.hashed_password):
            self.store.update_user(user.id, hashed_password=hash_password(password))
            logger.info("Upgraded password hash parameters for user %d", user.id)

        logger.info("User %d logged in", user.id)
        return LoginResult(access_token=access, refresh_token=refresh)

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def refresh_access_token(self, refresh_token: str) -> RefreshResult:
        """Mint a new access token from a valid refresh token.

        Without rotation the refresh token stays usable until it expires or is
        revoked. With refresh_token_rotation enabled the presented token is
        revoked and a replacement returned.
        """
        now = self._clock()
        record = self.store.get_refresh_token_by_hash(self.tokens.hash_token(refresh_token))
        if record is None or not record.is_valid(now):
            raise InvalidOrExpiredToken()

        user = self.store.get_by_id(record.user_id)
        if user is None or not user.is_active:
            raise InvalidOrExpiredToken()

        replacement = None
        if self.settings.refresh_token_rotation:
            replacement = self.tokens.issue_refresh_token(user.id)
            replacement.id = self.store.rotate_refresh_token(record.id, replacement, now)
            if replacement.id is None:
                raise InvalidOrExpiredToken()

        logger.info("Access token refreshed for user %d", user.id)
        return RefreshResult(access_token=self.tokens.issue_access_token(user), refresh_token=replacement)

    def revoke_refresh_token(self, refresh_token: str) -> None:
        """Revoke a refresh token (logout). Revoking twice is a no-op."""
        record = self.store.get_refresh_token_by_hash(self.tokens.hash_token(refresh_token))
        if record is None:
            raise InvalidOrExpiredToken()
        if self.store.revoke_refresh_token(record.id, self._clock()):
            logger.info("Refresh token %d revoked for user %d", record.id, record.user_id)

    def authenticate_access_token(self, token: str) -> User | None:
        """Resolve a bearer access token to an active user, or None."""
        claims = self.tokens.decode_access_token(token)
        if claims is None:
            return None
        try:
            user_id = int(claims["sub"])
        except (TypeError, ValueError):
            return None
        user = self.store.get_by_id(user_id)
        if user is None or not user.is_active:
            return None
        return user

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def generate_password_reset(self, user_id: int) -> PasswordResetLink:
        """Mint a one-hour reset link for an existing user. Admin-triggered."""
        if self.store.get_by_id(user_id) is None:
            raise UserNotFound()
        raw = generate_secure_token()
        link = PasswordResetLink(
            token=raw,
            token_hash=self.tokens.hash_token(raw),
            user_id=user_id,
            expires_at=self._clock() + timedelta(hours=self.settings.password_reset_expire_hours),
        )
        link.id = self.store.create_password_reset(link)
        logger.info("Password reset link %d issued for user %d", link.id, user_id)
        return link

    def reset_password(self, reset_token: str, new_password: str) -> None:
        """Set a new password from a valid reset link, consuming the link."""
        token_hash = self.tokens.hash_token(reset_token)
        link = self.store.get_password_reset_by_hash(token_hash)
        raise_for_status(link.status(self._clock()) if link is not None else TokenStatus.NOT_FOUND)

        self._check_password_policy(new_password)

        if self.store.get_by_id(link.user_id) is None:
            raise UserNotFound()

        hashed = hash_password(new_password)
        if not self.store.complete_password_reset(token_hash, link.user_id, hashed, self._clock()):
            link = self.store.get_password_reset_by_hash(token_hash)
            raise_for_status(link.status(self._clock()))
            raise TokenAlreadyUsed()
        logger.info("Password reset completed for user %d", link.user_id)

    # ------------------------------------------------------------------
    # User administration
    # ------------------------------------------------------------------

    def list_users(self) -> list[User]:
        return self.store.list_users()

    def update_user_flags(
        self,
        actor_id: int,
        user_id: int,
        is_active: bool | None = None,
        is_admin: bool | None = None,
    ) -> User:
        """Toggle a user's active/admin flags. Admin-gated by the caller.

        Refuses to let admins lock themselves out and to remove the last
        active admin, since there is no recovery path short of the CLI.
        """
        target = self.store.get_by_id(user_id)
        if target is None:
            raise UserNotFound()

        updates: dict = {}
        losing_admin = False
        if is_active is not None and is_active != target.is_active:
            if not is_active and target.id == actor_id:
                raise InvalidUserUpdate("You cannot deactivate your own account.")
            updates["is_active"] = is_active
            losing_admin = losing_admin or (not is_active and target.is_admin)
        if is_admin is not None and is_admin != target.is_admin:
            if not is_admin and target.id == actor_id:
                raise InvalidUserUpdate("You cannot remove your own admin rights.")
            updates["is_admin"] = is_admin
            losing_admin = losing_admin or (not is_admin and target.is_active)

        if losing_admin and self.store.count_active_admins() <= 1:
            raise InvalidUserUpdate("Cannot remove the last active admin.")

        if updates:
            self.store.update_user(user_id, **updates)
            logger.info("User %d updated by admin %d: %s", user_id, actor_id, sorted(updates))
        return self.store.get_by_id(user_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_profile(self, username: str, name: str) -> None:
        if not username or not name:
            raise InvalidProfile()

    def _check_password_policy(self, password: str) -> None:
        minimum = self.settings.min_password_length
        if not password or not password.strip() or len(password) < minimum:
            raise WeakPassword(f"Password must be at least {minimum} characters long.")


def raise_for_status(status: TokenStatus) -> None:
    if status is not TokenStatus.VALID:
        raise _STATUS_ERRORS[status]()
