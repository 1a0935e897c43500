"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The only accepted credential is an access token in the
"Authorization: Bearer <token>" header. Refresh tokens are never accepted
here; they are only exchanged at POST /auth/token/refresh.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
require_admin() wraps get_current_user() and raises HTTP 403 if not admin.

These are the entry points for every collaborator (health records, summaries)
that needs an authenticated principal.

Layer rule: no imports from api/ or core/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import User
from auth.service import AuthService


def get_auth_service(request: Request) -> AuthService:
    """Return the AuthService wired into app.state during lifespan startup."""
    return request.app.state.auth_service


def try_get_current_user(request: Request) -> User | None:
    """Attempt to authenticate the request via its Bearer access token.

    Returns the authenticated, active User on success, None on any failure.
    Never raises -- callers that need a hard 401 should use get_current_user().
    """
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    token = auth_header[7:].strip()
    if not token:
        return None
    return get_auth_service(request).authenticate_access_token(token)


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def require_admin(request: Request) -> User:
    """Require the admin flag. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin."""
    user = get_current_user(request)
    if not user.is_admin:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return user
