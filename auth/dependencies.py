"""
auth/dependencies.py -- FastAPI Depends() helpers for request identity.

Access tokens are read from the Authorization: Bearer <token> header and
verified statelessly by the Token Service -- no database lookup on the hot
path. The result is an Identity(user_id, role, session_id) that every other
module consumes.

try_get_identity() is the soft variant (returns None on failure).
get_identity() wraps it and raises HTTP 401 if unauthenticated.
require_role(Role.X) builds a dependency that also raises HTTP 403 when
has_role() says no.

Layer rule: auth/dependencies.py may import from fastapi (for
Depends/HTTPException/Request) because this module is part of the FastAPI
dependency injection system. Nothing else under auth/ does.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import HTTPException, Request

from auth.errors import AuthError
from auth.models import Identity, Role, has_role
from auth.service import AuthService


def bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def try_get_identity(request: Request) -> Identity | None:
    """Return the Identity for a valid access token, None on any failure. Never raises."""
    token = bearer_token(request)
    if not token:
        return None
    service: AuthService = request.app.state.auth_service
    try:
        return service.authenticate(token)
    except AuthError:
        return None


def get_identity(request: Request) -> Identity:
    """Require authentication. Raises HTTP 401 with the token error code.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(identity: Identity = Depends(get_identity)): ...
    """
    token = bearer_token(request)
    if not token:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    service: AuthService = request.app.state.auth_service
    try:
        return service.authenticate(token)
    except AuthError as exc:
        raise HTTPException(
            status_code=401,
            detail={"code": exc.code, "message": exc.message},
        ) from exc


def require_role(required: Role) -> Callable[[Request], Identity]:
    """Build a dependency that requires `required` or a higher role.

    Use as a FastAPI dependency:
        @router.patch("/admin-only")
        def route(identity: Identity = Depends(require_role(Role.ADMIN))): ...
    """

    def dependency(request: Request) -> Identity:
        identity = get_identity(request)
        if not has_role(identity, required):
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": f"{required.value} access required."},
            )
        return identity

    return dependency
