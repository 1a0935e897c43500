"""
api/routes/v1/auth.py -- Public authentication REST endpoints.

Routes:
  POST /api/v1/auth/register                -- invite-gated registration; 201
  GET  /api/v1/auth/invite/validate?token=  -- classify an invite; 200 or 400
  POST /api/v1/auth/login                   -- email/password; access + refresh tokens
  POST /api/v1/auth/token/refresh           -- refresh token -> new access token
  POST /api/v1/auth/logout                  -- revoke a refresh token
  POST /api/v1/auth/password-reset/confirm  -- set a new password from a reset link
  GET  /api/v1/auth/me                      -- current user (requires auth)

Error mapping:
  Handlers call AuthService and let AuthError propagate. api/main.py turns it
  into the standard envelope with the error's own status code, so a handler
  only ever builds its success response.

Security:
  Login brute-force defense is the failure-counting limiter inside
  AuthService.login(), keyed by the client address. The other mutation routes
  carry a coarse slowapi per-IP ceiling on top.
  Cache-Control: no-store on every response that carries a credential.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, Response
from slowapi.util import get_remote_address

from api.limiter import limiter
from api.models import (
    InviteValidResponse,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    PasswordResetConfirm,
    RefreshRequest,
    RefreshResponse,
    RegisterRequest,
    RegisterResponse,
    UserResponse,
)
from auth.dependencies import get_auth_service, get_current_user
from auth.models import User
from auth.service import raise_for_status
from core.config import get_settings

_API_LIMIT = get_settings().api_rate_limit

# Auth policy:
# - POST /auth/register:                public -- gated by the invite token instead
# - GET  /auth/invite/validate:         public -- registration page checks the link first
# - POST /auth/login:                   public
# - POST /auth/token/refresh:           public -- the refresh token is the credential
# - POST /auth/logout:                  public -- the refresh token is the credential
# - POST /auth/password-reset/confirm:  public -- gated by the reset token
# - GET  /auth/me:                      requires auth (get_current_user)
router = APIRouter()


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


@limiter.limit(_API_LIMIT)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=RegisterResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> RegisterResponse:
    """Create an account from an invite link. The invite is consumed on success."""
    user = get_auth_service(request).register(
        invite_token=body.invite_token,
        email=body.email,
        username=body.username,
        name=body.name,
        password=body.password,
    )
    return RegisterResponse(id=user.id, email=user.email)


@router.get("/auth/invite/validate", response_model=InviteValidResponse)
def validate_invite(request: Request, token: str = Query(min_length=1, max_length=255)) -> InviteValidResponse:
    """Return {valid: true} for a usable invite; otherwise 400 with the reason code."""
    raise_for_status(get_auth_service(request).validate_invite(token))
    return InviteValidResponse(valid=True)


# ---------------------------------------------------------------------------
# Login / tokens
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, response: Response, body: LoginRequest) -> LoginResponse:
    """Authenticate with email and password; return access and refresh tokens.

    The same 401 invalid_credentials error is returned for an unknown email
    and a wrong password, so the endpoint cannot be used to probe accounts.
    """
    result = get_auth_service(request).login(body.email, body.password, get_remote_address(request))
    response.headers["Cache-Control"] = "no-store"
    return LoginResponse(
        access_token=result.access_token.token,
        access_token_expires_at=result.access_token.expires_at,
        refresh_token=result.refresh_token.token,
        refresh_token_expires_at=result.refresh_token.expires_at,
    )


@limiter.limit(_API_LIMIT)
@router.post("/auth/token/refresh", response_model=RefreshResponse, response_model_exclude_none=True)
def refresh(request: Request, response: Response, body: RefreshRequest) -> RefreshResponse:
    """Exchange a refresh token for a new access token."""
    result = get_auth_service(request).refresh_access_token(body.refresh_token)
    response.headers["Cache-Control"] = "no-store"
    rotated = result.refresh_token
    return RefreshResponse(
        access_token=result.access_token.token,
        expires_at=result.access_token.expires_at,
        refresh_token=rotated.token if rotated else None,
        refresh_token_expires_at=rotated.expires_at if rotated else None,
    )


@limiter.limit(_API_LIMIT)
@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, body: RefreshRequest) -> MessageResponse:
    """Revoke the given refresh token. Access tokens simply run out."""
    get_auth_service(request).revoke_refresh_token(body.refresh_token)
    return MessageResponse(message="Logged out.")


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@limiter.limit(_API_LIMIT)
@router.post("/auth/password-reset/confirm", response_model=MessageResponse)
def confirm_password_reset(request: Request, body: PasswordResetConfirm) -> MessageResponse:
    """Set a new password from a reset link. Ends every existing session."""
    get_auth_service(request).reset_password(body.reset_token, body.new_password)
    return MessageResponse(message="Password reset successful.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=UserResponse)
def me(current_user: User = Depends(get_current_user)) -> UserResponse:
    """Return identity information for the currently authenticated user."""
    return user_to_response(current_user)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        username=user.username,
        name=user.name,
        is_active=user.is_active,
        is_admin=user.is_admin,
        created_at=user.created_at or "",
        failed_login_attempts=user.failed_login_attempts,
    )
