"""
API request and response models for the auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
Field length caps here are transport hygiene only; password strength and
email format are enforced by the core so every caller gets the same rules.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import AuditEvent, Role

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=255)
    first_name: str = Field(default="", max_length=100)
    last_name: str = Field(default="", max_length=100)


class UserCreate(RegisterRequest):
    """Request body for POST /api/v1/auth/users (admin only)."""

    role: Role = Role.VIEWER


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1, max_length=512)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=1, max_length=255)


class UserPatch(BaseModel):
    """Request body for PATCH /api/v1/auth/users/{id}. Omitted fields are unchanged."""

    role: Optional[Role] = None
    is_active: Optional[bool] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class RegisterResponse(BaseModel):
    user_id: str


class TokenResponse(BaseModel):
    """Response for login and refresh. The refresh token is shown exactly once."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    session_id: str


class MeResponse(BaseModel):
    user_id: str
    email: str
    role: Role
    first_name: str
    last_name: str
    is_active: bool
    created_at: Optional[str] = None
    last_login_at: Optional[str] = None


class SessionResponse(BaseModel):
    """One row of "my active sessions". Never carries token material."""

    id: str
    client_meta: str
    created_at: str
    last_used_at: str
    expires_at: str
    revoked_at: Optional[str] = None
    is_current: bool


class AuditEntryResponse(BaseModel):
    id: int
    event_type: AuditEvent
    user_id: Optional[str] = None
    occurred_at: str
    context: dict


class AuditPageResponse(BaseModel):
    """Response for GET /api/v1/auth/audit."""

    events: list[AuditEntryResponse]
    total: int
    offset: int
    limit: int
    has_next: bool
    has_prev: bool


class UserListResponse(BaseModel):
    """Response for GET /api/v1/auth/users."""

    users: list[MeResponse]
    total: int
    offset: int
    limit: int
    has_next: bool
    has_prev: bool


class UserStatsResponse(BaseModel):
    total: int
    active: int
    inactive: int
    by_role: dict[str, int]


class AttemptStatsResponse(BaseModel):
    total: int
    succeeded: int
    failed: int
    by_identifier: dict[str, int]
    by_origin: dict[str, int]


class SessionStatsResponse(BaseModel):
    total: int
    active: int
    revoked: int
    expired: int
    by_user: dict[str, int]


class AuditStatsResponse(BaseModel):
    total: int
    by_event: dict[str, int]
    by_user: dict[str, int]
    by_date: dict[str, int]


class StatsResponse(BaseModel):
    """Response for GET /api/v1/auth/stats."""

    model_config = ConfigDict(frozen=True)

    users: UserStatsResponse
    attempts: AttemptStatsResponse
    sessions: SessionStatsResponse
    audit: AuditStatsResponse


class MessageResponse(BaseModel):
    message: str


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
