"""
api/routes/v1/admin.py -- Admin-only account management routes.

Routes:
  POST  /admin/invite            -- mint an invite link for an email; 201
  POST  /admin/password-reset    -- mint a one-hour reset link for a user
  GET   /admin/users             -- list every account
  PATCH /admin/users/{user_id}   -- toggle isActive / isAdmin

Every route requires an authenticated admin (router-level require_admin).
Link tokens are returned exactly once, here; only their digests are stored.
Delivering the link to the user (email, chat) is out of scope for the API.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.models import (
    ErrorDetail,
    InviteCreate,
    InviteResponse,
    PasswordResetCreate,
    PasswordResetResponse,
    UserPatch,
    UserResponse,
)
from api.routes.v1.auth import user_to_response
from auth.dependencies import get_auth_service, require_admin
from auth.errors import UserNotFound
from auth.models import User

router = APIRouter(dependencies=[Depends(require_admin)])


# ---------------------------------------------------------------------------
# POST /admin/invite
# ---------------------------------------------------------------------------


@router.post("/admin/invite", response_model=InviteResponse, status_code=201)
def create_invite(
    request: Request,
    response: Response,
    body: InviteCreate,
    admin: User = Depends(require_admin),
) -> InviteResponse:
    invite = get_auth_service(request).generate_invite(body.email, created_by=admin.id)
    response.headers["Cache-Control"] = "no-store"
    return InviteResponse(
        id=invite.id,
        token=invite.token,
        email=invite.email,
        expires_at=invite.expires_at,
    )


# ---------------------------------------------------------------------------
# POST /admin/password-reset
# ---------------------------------------------------------------------------


@router.post("/admin/password-reset", response_model=PasswordResetResponse)
def create_password_reset(
    request: Request,
    response: Response,
    body: PasswordResetCreate,
) -> PasswordResetResponse:
    """Issue a reset link for an existing user.

    An unknown user id is a 404 here: the caller is an admin addressing a
    specific account, not an anonymous client probing for one.
    """
    try:
        link = get_auth_service(request).generate_password_reset(body.user_id)
    except UserNotFound as exc:
        raise HTTPException(
            status_code=404,
            detail=ErrorDetail(code=exc.code, message=exc.message).model_dump(),
        ) from exc
    response.headers["Cache-Control"] = "no-store"
    return PasswordResetResponse(token=link.token, expires_at=link.expires_at)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@router.get("/admin/users", response_model=list[UserResponse])
def list_users(request: Request) -> list[UserResponse]:
    return [user_to_response(u) for u in get_auth_service(request).list_users()]


@router.patch("/admin/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserPatch,
    admin: User = Depends(require_admin),
) -> UserResponse:
    """Activate/deactivate a user or grant/revoke admin.

    Deactivating a user blocks new logins and refreshes; access tokens already
    issued to them stop authenticating at the next request.
    """
    try:
        user = get_auth_service(request).update_user_flags(
            actor_id=admin.id,
            user_id=user_id,
            is_active=body.is_active,
            is_admin=body.is_admin,
        )
    except UserNotFound as exc:
        raise HTTPException(
            status_code=404,
            detail=ErrorDetail(code=exc.code, message=exc.message).model_dump(),
        ) from exc
    return user_to_response(user)
