"""
api/routes/v1/auth.py -- Authentication and session REST endpoints.

Routes:
  POST   /api/v1/auth/register           -- self-registration (VIEWER role)
  POST   /api/v1/auth/login              -- password login; returns token pair
  POST   /api/v1/auth/refresh            -- rotate refresh token
  POST   /api/v1/auth/logout             -- revoke current session (requires auth)
  POST   /api/v1/auth/logout-all         -- revoke every session (requires auth)
  POST   /api/v1/auth/change-password    -- requires auth; revokes all sessions
  GET    /api/v1/auth/sessions           -- list my sessions (requires auth)
  DELETE /api/v1/auth/sessions/{id}      -- revoke one of my sessions (requires auth)
  GET    /api/v1/auth/me                 -- current user profile (requires auth)
  GET    /api/v1/auth/users              -- filtered, paginated user list (admin only)
  POST   /api/v1/auth/users              -- create user with role (admin only)
  PATCH  /api/v1/auth/users/{id}         -- update role/is_active (admin only)
  GET    /api/v1/auth/audit              -- paginated audit events (admin only)
  GET    /api/v1/auth/stats              -- user/attempt/session/audit counts (admin only)

Thin adapter: every route delegates to AuthService. AuthError subclasses
propagate to the handler in api/main.py, which turns them into the standard
error envelope -- routes do not catch them.

Route functions are plain `def`, not `async def`: bcrypt is CPU-bound, and
FastAPI runs sync routes in its worker thread pool instead of on the event
loop.

Security:
  [C1] Credential checks go through AuthService.login(), which runs the
       lockout check and timing-equalized verify. Never inline them here.
  [M4] PATCH /users/{id} blocks self-deactivation.
  [M5] Cache-Control: no-store on every response that carries tokens.
  IDOR guard: DELETE /sessions/{id} passes the caller's user id to the
       registry; the WHERE clause requires both to match.
"""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse

from api.models import (
    AuditEntryResponse,
    AuditPageResponse,
    ChangePasswordRequest,
    LoginRequest,
    MeResponse,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    RegisterResponse,
    SessionResponse,
    StatsResponse,
    TokenResponse,
    UserCreate,
    UserListResponse,
    UserPatch,
)
from auth.dependencies import bearer_token, get_identity, require_role
from auth.models import AuditEvent, Identity, IssuedTokens, Role, UserProfile
from auth.service import AuthService

router = APIRouter()


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _origin_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _token_response(issued: IssuedTokens) -> JSONResponse:
    resp = JSONResponse(
        status_code=200,
        content=TokenResponse(
            access_token=issued.access_token,
            refresh_token=issued.refresh_token,
            token_type=issued.token_type,
            expires_in=issued.expires_in,
            session_id=issued.session_id,
        ).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _profile_response(profile: UserProfile) -> MeResponse:
    return MeResponse(
        user_id=profile.user_id,
        email=profile.email,
        role=profile.role,
        first_name=profile.first_name,
        last_name=profile.last_name,
        is_active=profile.is_active,
        created_at=profile.created_at,
        last_login_at=profile.last_login_at,
    )


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=RegisterResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> RegisterResponse:
    """Create a VIEWER account. The caller logs in afterwards to get tokens."""
    service = _service(request)
    if not service.settings.self_registration_enabled:
        raise HTTPException(
            status_code=403,
            detail={"code": "registration_disabled", "message": "Self-registration is disabled."},
        )
    user_id = service.register(
        body.email,
        body.password,
        Role.VIEWER,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return RegisterResponse(user_id=user_id)


@router.post("/auth/login", response_model=TokenResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; return access + refresh tokens.

    Wrong email, wrong password and inactive account all produce the same
    401 invalid_credentials. A locked account or origin produces 429 with no
    hint about how long the lockout lasts.
    """
    issued = _service(request).login(
        body.email,
        body.password,
        origin_key=_origin_key(request),
        client_meta=request.headers.get("User-Agent", ""),
    )
    return _token_response(issued)


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new pair. The presented token stops working."""
    return _token_response(_service(request).refresh(body.refresh_token))


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, identity: Identity = Depends(get_identity)) -> MessageResponse:
    """Revoke the session this access token belongs to. 404 if already revoked."""
    _service(request).logout(identity)
    return MessageResponse(message="Logged out.")


@router.post("/auth/logout-all", response_model=MessageResponse)
def logout_all(request: Request, identity: Identity = Depends(get_identity)) -> MessageResponse:
    count = _service(request).logout_all(identity)
    return MessageResponse(message=f"Revoked {count} session(s).")


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    identity: Identity = Depends(get_identity),
) -> MessageResponse:
    """Change password. Every session, including this one, is revoked."""
    _service(request).change_password(identity, body.current_password, body.new_password)
    return MessageResponse(message="Password changed. Please log in again.")


@router.get("/auth/sessions", response_model=list[SessionResponse])
def list_sessions(
    request: Request,
    include_inactive: bool = Query(default=False),
    identity: Identity = Depends(get_identity),
) -> list[SessionResponse]:
    sessions = _service(request).list_sessions(identity, include_inactive=include_inactive)
    return [
        SessionResponse(
            id=s.id,
            client_meta=s.client_meta,
            created_at=s.created_at,
            last_used_at=s.last_used_at,
            expires_at=s.expires_at,
            revoked_at=s.revoked_at,
            is_current=s.is_current,
        )
        for s in sessions
    ]


@router.delete("/auth/sessions/{session_id}", status_code=204)
def revoke_session(
    request: Request,
    session_id: str,
    identity: Identity = Depends(get_identity),
) -> Response:
    """Revoke one of the caller's sessions. Ownership is verified server-side [IDOR guard]."""
    _service(request).revoke_session(identity, session_id)
    return Response(status_code=204)


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, identity: Identity = Depends(get_identity)) -> MeResponse:
    """Return profile information for the currently authenticated user."""
    return _profile_response(_service(request).me(bearer_token(request) or ""))


# ---------------------------------------------------------------------------
# User management (admin only)
# ---------------------------------------------------------------------------


@router.post("/auth/users", response_model=RegisterResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    identity: Identity = Depends(require_role(Role.ADMIN)),
) -> RegisterResponse:
    """Create an account with an explicit role. Admin only."""
    user_id = _service(request).register(
        body.email,
        body.password,
        body.role,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return RegisterResponse(user_id=user_id)


@router.patch("/auth/users/{user_id}", response_model=MeResponse)
def update_user(
    request: Request,
    user_id: str,
    body: UserPatch,
    identity: Identity = Depends(require_role(Role.ADMIN)),
) -> MeResponse:
    """Update a user's role or active status. Admin only.

    Deactivation revokes every session of the target immediately. Role
    changes reach the target's access tokens on their next refresh.
    """
    service = _service(request)
    target = service.users.get_by_id(user_id)
    if target is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )
    if body.role is None and body.is_active is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    # [M4] Block self-deactivation
    if body.is_active is False and target.id == identity.user_id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deactivation", "message": "You cannot deactivate your own account."},
        )
    if body.role is not None:
        service.set_role(user_id, body.role)
    if body.is_active is not None:
        service.set_active(user_id, body.is_active)

    updated = service.users.get_by_id(user_id)
    return MeResponse(
        user_id=updated.id,
        email=updated.email,
        role=updated.role,
        first_name=updated.first_name,
        last_name=updated.last_name,
        is_active=updated.is_active,
        created_at=updated.created_at,
        last_login_at=updated.last_login_at,
    )


@router.get("/auth/users", response_model=UserListResponse)
def list_users(
    request: Request,
    role: Role | None = Query(default=None),
    active: bool | None = Query(default=None),
    search: str | None = Query(default=None, max_length=255),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=500),
    identity: Identity = Depends(require_role(Role.ADMIN)),
) -> UserListResponse:
    """Page through accounts, newest first. search matches email and names. Admin only."""
    page = _service(request).list_users(role=role, active=active, search=search, offset=offset, limit=limit)
    return UserListResponse(
        users=[_profile_response(p) for p in page.items],
        total=page.total,
        offset=page.offset,
        limit=page.limit,
        has_next=page.has_next,
        has_prev=page.has_prev,
    )


@router.get("/auth/audit", response_model=AuditPageResponse)
def list_audit(
    request: Request,
    user_id: str | None = Query(default=None),
    event_type: AuditEvent | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=500),
    identity: Identity = Depends(require_role(Role.ADMIN)),
) -> AuditPageResponse:
    """Return audit events newest first. Admin only."""
    page = _service(request).audit_page(user_id=user_id, event_type=event_type, limit=limit, offset=offset)
    return AuditPageResponse(
        events=[
            AuditEntryResponse(
                id=e.id,
                event_type=e.event_type,
                user_id=e.user_id,
                occurred_at=e.occurred_at,
                context=e.context,
            )
            for e in page.items
        ],
        total=page.total,
        offset=page.offset,
        limit=page.limit,
        has_next=page.has_next,
        has_prev=page.has_prev,
    )


@router.get("/auth/stats", response_model=StatsResponse)
def stats(
    request: Request,
    top: int = Query(default=10, ge=1, le=100),
    identity: Identity = Depends(require_role(Role.ADMIN)),
) -> StatsResponse:
    """Counts across users, login attempts, sessions and the audit log. Admin only."""
    return StatsResponse(**asdict(_service(request).statistics(top)))
