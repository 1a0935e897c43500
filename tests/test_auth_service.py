"""
tests/test_auth_service.py -- Unit tests for auth/service.py (AuthService).

Runs against a plain in-memory CredentialStore with FakeClock (wall time) and
FakeMonotonic (rate-limit windows) from conftest.py, so every expiry and
window edge is hit exactly without sleeping.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

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
from auth.models import TokenStatus
from auth.rate_limit import RateLimiter
from auth.service import AuthService, raise_for_status
from auth.tokens import TokenService
from core.config import get_settings

ADMIN_EMAIL = "admin@example.com"  # created by the admin fixture
ADMIN_PASSWORD = "adminpass123"
CLIENT = "203.0.113.7"
PASSWORD = "longenough1"


def _register(service: AuthService, admin, email: str = "alice@example.com", username: str = "alice"):
    invite = service.generate_invite(email, created_by=admin.id)
    return service.register(invite.token, email, username, "Alice", PASSWORD)


class TestInvites:
    def test_fresh_invite_is_valid(self, service, admin, clock) -> None:
        invite = service.generate_invite("New@Example.com ", created_by=admin.id)
        assert invite.email == "new@example.com"
        assert invite.expires_at == clock.now + timedelta(days=7)
        assert invite.token and invite.token_hash != invite.token
        assert service.validate_invite(invite.token) is TokenStatus.VALID

    def test_unknown_invite(self, service) -> None:
        assert service.validate_invite("no-such-token") is TokenStatus.NOT_FOUND

    def test_invite_expires_at_boundary(self, service, admin, clock) -> None:
        invite = service.generate_invite("a@example.com", created_by=admin.id)
        clock.advance(days=7, seconds=-1)
        assert service.validate_invite(invite.token) is TokenStatus.VALID
        clock.advance(seconds=1)
        assert service.validate_invite(invite.token) is TokenStatus.EXPIRED

    def test_used_invite(self, service, admin) -> None:
        invite = service.generate_invite("a@example.com", created_by=admin.id)
        service.register(invite.token, "a@example.com", "a", "A", PASSWORD)
        assert service.validate_invite(invite.token) is TokenStatus.ALREADY_USED

    def test_raise_for_status_maps_each_state(self) -> None:
        raise_for_status(TokenStatus.VALID)
        for status, error in (
            (TokenStatus.NOT_FOUND, TokenNotFound),
            (TokenStatus.ALREADY_USED, TokenAlreadyUsed),
            (TokenStatus.EXPIRED, TokenExpired),
        ):
            with pytest.raises(error):
                raise_for_status(status)


class TestRegister:
    def test_creates_plain_active_user(self, service, admin) -> None:
        user = _register(service, admin, email=" Alice@Example.COM")
        assert user.id is not None
        assert user.email == "alice@example.com"
        assert user.is_active and not user.is_admin
        assert user.hashed_password != PASSWORD

    def test_reusing_invite_fails(self, service, admin) -> None:
        invite = service.generate_invite("a@example.com", created_by=admin.id)
        service.register(invite.token, "a@example.com", "a", "A", PASSWORD)
        with pytest.raises(TokenAlreadyUsed):
            service.register(invite.token, "b@example.com", "b", "B", PASSWORD)

    def test_expired_invite_fails(self, service, admin, clock) -> None:
        invite = service.generate_invite("a@example.com", created_by=admin.id)
        clock.advance(days=8)
        with pytest.raises(TokenExpired):
            service.register(invite.token, "a@example.com", "a", "A", PASSWORD)

    def test_unknown_invite_fails(self, service) -> None:
        with pytest.raises(TokenNotFound):
            service.register("bogus", "a@example.com", "a", "A", PASSWORD)

    def test_duplicate_email_keeps_invite_unused(self, service, admin) -> None:
        invite = service.generate_invite("x@example.com", created_by=admin.id)
        with pytest.raises(DuplicateIdentity):
            service.register(invite.token, ADMIN_EMAIL.upper(), "someone", "S", PASSWORD)
        assert service.validate_invite(invite.token) is TokenStatus.VALID

    def test_duplicate_username(self, service, admin) -> None:
        invite = service.generate_invite("x@example.com", created_by=admin.id)
        with pytest.raises(DuplicateIdentity):
            service.register(invite.token, "x@example.com", "admin", "S", PASSWORD)

    @pytest.mark.parametrize("password", ["", "       ", "short"])
    def test_weak_password_keeps_invite_unused(self, service, admin, password) -> None:
        invite = service.generate_invite("x@example.com", created_by=admin.id)
        with pytest.raises(WeakPassword):
            service.register(invite.token, "x@example.com", "x", "X", password)
        assert service.validate_invite(invite.token) is TokenStatus.VALID

    def test_invite_expiring_mid_registration_is_not_consumed(self, service, admin, clock, monkeypatch) -> None:
        invite = service.generate_invite("late@example.com", created_by=admin.id)
        clock.advance(days=7, seconds=-1)
        lookup = service.store.find_by_email_or_username

        def slow_lookup(email, username):
            # Lookup plus hashing outlasts the remaining second.
            clock.advance(seconds=5)
            return lookup(email, username)

        monkeypatch.setattr(service.store, "find_by_email_or_username", slow_lookup)
        with pytest.raises(TokenExpired):
            service.register(invite.token, "late@example.com", "late", "Late", PASSWORD)
        assert service.store.get_by_email("late@example.com") is None
        assert service.store.get_invite_by_hash(invite.token_hash).is_used is False

    @pytest.mark.parametrize(("username", "name"), [("bob", "   "), ("   ", "Bob"), ("bob", "")])
    def test_blank_profile_keeps_invite_unused(self, service, admin, username, name) -> None:
        invite = service.generate_invite("bob@example.com", created_by=admin.id)
        with pytest.raises(InvalidProfile):
            service.register(invite.token, "bob@example.com", username, name, PASSWORD)
        assert service.validate_invite(invite.token) is TokenStatus.VALID

    def test_create_admin_rejects_blank_name(self, service) -> None:
        with pytest.raises(InvalidProfile):
            service.create_admin("root@example.com", "root", "  ", ADMIN_PASSWORD)
        assert not service.store.has_users()

    def test_create_admin_rejects_duplicate(self, service, admin) -> None:
        with pytest.raises(DuplicateIdentity):
            service.create_admin(ADMIN_EMAIL, "other", "Other", ADMIN_PASSWORD)


class TestLogin:
    def test_register_then_login(self, service, admin, clock) -> None:
        user = _register(service, admin)
        result = service.login("ALICE@example.com", PASSWORD, CLIENT)
        assert result.access_token.user_id == user.id
        assert result.access_token.expires_at == clock.now + timedelta(minutes=15)
        assert result.refresh_token.expires_at == clock.now + timedelta(days=7)
        assert result.refresh_token.id is not None
        claims = service.tokens.decode_access_token(result.access_token.token)
        assert claims["sub"] == str(user.id)

    def test_unknown_email_and_wrong_password_look_the_same(self, service, admin) -> None:
        _register(service, admin)
        with pytest.raises(InvalidCredentials) as unknown:
            service.login("nobody@example.com", PASSWORD, CLIENT)
        with pytest.raises(InvalidCredentials) as wrong:
            service.login("alice@example.com", "wrong-password", CLIENT)
        assert unknown.value.message == wrong.value.message
        assert unknown.value.code == wrong.value.code

    def test_unknown_email_counts_toward_limit(self, service) -> None:
        with pytest.raises(InvalidCredentials):
            service.login("nobody@example.com", PASSWORD, CLIENT)
        assert service.limiter.attempts(CLIENT) == 1

    def test_wrong_password_bumps_user_counter(self, service, admin) -> None:
        user = _register(service, admin)
        for _ in range(2):
            with pytest.raises(InvalidCredentials):
                service.login("alice@example.com", "wrong-password", CLIENT)
        assert service.store.get_by_id(user.id).failed_login_attempts == 2
        service.login("alice@example.com", PASSWORD, CLIENT)
        assert service.store.get_by_id(user.id).failed_login_attempts == 0
        assert service.limiter.attempts(CLIENT) == 0

    def test_rate_limited_after_max_failures(self, service, admin) -> None:
        _register(service, admin)
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                service.login("alice@example.com", "wrong-password", CLIENT)
        with pytest.raises(RateLimited) as exc_info:
            service.login("alice@example.com", PASSWORD, CLIENT)
        assert 0 < exc_info.value.retry_after <= 60
        # A blocked attempt is not itself recorded.
        assert service.limiter.attempts(CLIENT) == 5

    def test_rate_limit_is_per_client(self, service, admin) -> None:
        _register(service, admin)
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                service.login("alice@example.com", "wrong-password", CLIENT)
        assert service.login("alice@example.com", PASSWORD, "198.51.100.1").access_token

    def test_login_allowed_after_window(self, service, admin, monotonic) -> None:
        _register(service, admin)
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                service.login("alice@example.com", "wrong-password", CLIENT)
        monotonic.advance(60)
        assert service.login("alice@example.com", PASSWORD, CLIENT).access_token

    def test_inactive_user_cannot_login(self, service, admin) -> None:
        user = _register(service, admin)
        service.update_user_flags(admin.id, user.id, is_active=False)
        with pytest.raises(AccountDisabled):
            service.login("alice@example.com", PASSWORD, CLIENT)

    def test_inactive_user_with_wrong_password_sees_invalid_credentials(self, service, admin) -> None:
        user = _register(service, admin)
        service.update_user_flags(admin.id, user.id, is_active=False)
        with pytest.raises(InvalidCredentials):
            service.login("alice@example.com", "wrong-password", CLIENT)


class TestRefresh:
    def test_valid_refresh_yields_owner_access_token(self, service, admin) -> None:
        user = _register(service, admin)
        login = service.login("alice@example.com", PASSWORD, CLIENT)
        result = service.refresh_access_token(login.refresh_token.token)
        assert result.refresh_token is None
        claims = service.tokens.decode_access_token(result.access_token.token)
        assert claims["sub"] == str(user.id)
        # Without rotation the same refresh token keeps working.
        assert service.refresh_access_token(login.refresh_token.token).access_token

    def test_unknown_refresh_token(self, service) -> None:
        with pytest.raises(InvalidOrExpiredToken):
            service.refresh_access_token("nope")

    def test_expired_refresh_token(self, service, admin, clock) -> None:
        _register(service, admin)
        login = service.login("alice@example.com", PASSWORD, CLIENT)
        clock.advance(days=7)
        with pytest.raises(InvalidOrExpiredToken):
            service.refresh_access_token(login.refresh_token.token)

    def test_revoked_refresh_token(self, service, admin) -> None:
        _register(service, admin)
        login = service.login("alice@example.com", PASSWORD, CLIENT)
        service.revoke_refresh_token(login.refresh_token.token)
        with pytest.raises(InvalidOrExpiredToken):
            service.refresh_access_token(login.refresh_token.token)
        # Logging out twice is harmless.
        service.revoke_refresh_token(login.refresh_token.token)

    def test_revoke_unknown_token(self, service) -> None:
        with pytest.raises(InvalidOrExpiredToken):
            service.revoke_refresh_token("nope")

    def test_deactivated_owner_cannot_refresh(self, service, admin) -> None:
        user = _register(service, admin)
        login = service.login("alice@example.com", PASSWORD, CLIENT)
        service.update_user_flags(admin.id, user.id, is_active=False)
        with pytest.raises(InvalidOrExpiredToken):
            service.refresh_access_token(login.refresh_token.token)

    def test_rotation(self, store, clock, monotonic) -> None:
        settings = get_settings().model_copy(update={"refresh_token_rotation": True})
        service = AuthService(
            store,
            TokenService(settings, clock=clock),
            RateLimiter(clock=monotonic),
            settings,
            clock=clock,
        )
        service.create_admin(ADMIN_EMAIL, "admin", "Admin", ADMIN_PASSWORD)
        login = service.login(ADMIN_EMAIL, ADMIN_PASSWORD, CLIENT)
        result = service.refresh_access_token(login.refresh_token.token)
        assert result.refresh_token is not None
        assert result.refresh_token.token != login.refresh_token.token
        with pytest.raises(InvalidOrExpiredToken):
            service.refresh_access_token(login.refresh_token.token)
        assert service.refresh_access_token(result.refresh_token.token).refresh_token is not None


class TestAuthenticateAccessToken:
    def test_resolves_active_user(self, service, admin) -> None:
        login = service.login(ADMIN_EMAIL, ADMIN_PASSWORD, CLIENT)
        assert service.authenticate_access_token(login.access_token.token).id == admin.id

    def test_expired_or_garbage_is_none(self, service, admin, clock) -> None:
        login = service.login(ADMIN_EMAIL, ADMIN_PASSWORD, CLIENT)
        assert service.authenticate_access_token("garbage") is None
        clock.advance(minutes=15)
        assert service.authenticate_access_token(login.access_token.token) is None

    def test_deactivated_user_is_none(self, service, admin) -> None:
        user = _register(service, admin)
        login = service.login("alice@example.com", PASSWORD, CLIENT)
        service.update_user_flags(admin.id, user.id, is_active=False)
        assert service.authenticate_access_token(login.access_token.token) is None


class TestPasswordReset:
    def test_reset_token_single_use(self, service, admin, clock) -> None:
        user = _register(service, admin)
        link = service.generate_password_reset(user.id)
        assert link.expires_at == clock.now + timedelta(hours=1)

        service.reset_password(link.token, "brand-new-password")
        with pytest.raises(TokenAlreadyUsed):
            service.reset_password(link.token, "another-password")

        with pytest.raises(InvalidCredentials):
            service.login("alice@example.com", PASSWORD, CLIENT)
        assert service.login("alice@example.com", "brand-new-password", CLIENT).access_token

    def test_reset_ends_existing_sessions(self, service, admin) -> None:
        user = _register(service, admin)
        login = service.login("alice@example.com", PASSWORD, CLIENT)
        service.reset_password(service.generate_password_reset(user.id).token, "brand-new-password")
        with pytest.raises(InvalidOrExpiredToken):
            service.refresh_access_token(login.refresh_token.token)

    def test_expired_reset_token(self, service, admin, clock) -> None:
        user = _register(service, admin)
        link = service.generate_password_reset(user.id)
        clock.advance(hours=1)
        with pytest.raises(TokenExpired):
            service.reset_password(link.token, "brand-new-password")

    def test_link_expiring_mid_reset_is_not_consumed(self, service, admin, clock, monkeypatch) -> None:
        user = _register(service, admin)
        link = service.generate_password_reset(user.id)
        clock.advance(hours=1, seconds=-1)
        get_by_id = service.store.get_by_id

        def slow_get_by_id(user_id):
            clock.advance(seconds=5)
            return get_by_id(user_id)

        monkeypatch.setattr(service.store, "get_by_id", slow_get_by_id)
        with pytest.raises(TokenExpired):
            service.reset_password(link.token, "brand-new-password")
        monkeypatch.undo()
        assert service.store.get_password_reset_by_hash(link.token_hash).is_used is False
        assert service.login("alice@example.com", PASSWORD, CLIENT).access_token

    def test_unknown_reset_token(self, service) -> None:
        with pytest.raises(TokenNotFound):
            service.reset_password("nope", "brand-new-password")

    def test_weak_new_password_keeps_link_usable(self, service, admin) -> None:
        user = _register(service, admin)
        link = service.generate_password_reset(user.id)
        with pytest.raises(WeakPassword):
            service.reset_password(link.token, "short")
        service.reset_password(link.token, "brand-new-password")

    def test_unknown_user(self, service) -> None:
        with pytest.raises(UserNotFound):
            service.generate_password_reset(999)


class TestUserAdministration:
    def test_list_users(self, service, admin) -> None:
        _register(service, admin)
        assert [u.username for u in service.list_users()] == ["admin", "alice"]

    def test_grant_and_revoke_admin(self, service, admin) -> None:
        user = _register(service, admin)
        assert service.update_user_flags(admin.id, user.id, is_admin=True).is_admin
        assert not service.update_user_flags(admin.id, user.id, is_admin=False).is_admin

    def test_cannot_deactivate_self(self, service, admin) -> None:
        with pytest.raises(InvalidUserUpdate):
            service.update_user_flags(admin.id, admin.id, is_active=False)

    def test_cannot_demote_self(self, service, admin) -> None:
        with pytest.raises(InvalidUserUpdate):
            service.update_user_flags(admin.id, admin.id, is_admin=False)

    def test_cannot_remove_last_active_admin(self, service, admin) -> None:
        other = _register(service, admin)
        service.update_user_flags(admin.id, other.id, is_admin=True)
        # Two active admins: demoting one is allowed.
        service.update_user_flags(admin.id, other.id, is_admin=False)
        service.update_user_flags(admin.id, other.id, is_admin=True)
        service.update_user_flags(admin.id, other.id, is_active=False)
        with pytest.raises(InvalidUserUpdate):
            service.update_user_flags(other.id, admin.id, is_admin=False)

    def test_no_op_update_returns_user(self, service, admin) -> None:
        assert service.update_user_flags(admin.id, admin.id).id == admin.id

    def test_unknown_user(self, service, admin) -> None:
        with pytest.raises(UserNotFound):
            service.update_user_flags(admin.id, 999, is_active=False)
