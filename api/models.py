"""
API request and response models for Health Diary auth endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers map between the two.

Field names are snake_case in Python and camelCase on the wire
(alias_generator=to_camel). populate_by_name lets tests and internal callers
construct models with either spelling.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(CamelModel):
    """Request body for POST /api/v1/auth/register.

    Password length policy lives in the service so the error carries the
    domain code (weak_password) instead of a generic validation failure.
    """

    invite_token: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    username: str = Field(min_length=1, max_length=100)
    name: str = Field(min_length=1, max_length=255)
    password: str = Field(max_length=255)


class LoginRequest(CamelModel):
    email: str = Field(max_length=255)
    password: str = Field(max_length=255)


class RefreshRequest(CamelModel):
    refresh_token: str = Field(min_length=1, max_length=255)


class InviteCreate(CamelModel):
    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")


class PasswordResetCreate(CamelModel):
    user_id: int


class PasswordResetConfirm(CamelModel):
    reset_token: str = Field(min_length=1, max_length=255)
    new_password: str = Field(max_length=255)


class UserPatch(CamelModel):
    """Request body for PATCH /api/v1/admin/users/{id}. Omitted fields are unchanged."""

    is_active: Optional[bool] = None
    is_admin: Optional[bool] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class RegisterResponse(CamelModel):
    id: int
    email: str


class InviteValidResponse(CamelModel):
    valid: bool = True


class LoginResponse(CamelModel):
    access_token: str
    access_token_expires_at: datetime
    refresh_token: str
    refresh_token_expires_at: datetime
    token_type: str = "bearer"


class RefreshResponse(CamelModel):
    access_token: str
    expires_at: datetime
    # Present only when refresh-token rotation is enabled.
    refresh_token: Optional[str] = None
    refresh_token_expires_at: Optional[datetime] = None


class InviteResponse(CamelModel):
    id: int
    token: str
    email: str
    expires_at: datetime


class PasswordResetResponse(CamelModel):
    token: str
    expires_at: datetime


class MessageResponse(CamelModel):
    message: str


class UserResponse(CamelModel):
    id: int
    email: str
    username: str
    name: str
    is_active: bool
    is_admin: bool
    created_at: str
    failed_login_attempts: int = 0


# ---------------------------------------------------------------------------
# Envelope / health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
