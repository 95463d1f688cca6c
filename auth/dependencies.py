"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Access tokens arrive as "Authorization: Bearer <token>". The token is
verified, then resolved to a live User record so that deactivation and
lockout take effect immediately instead of waiting for the token to expire.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
require_privilege(name) builds a dependency that raises HTTP 403 unless the
user's role currently grants that privilege.

Layer rule: may import from fastapi because this module is part of the
FastAPI dependency injection system. No imports from api/.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request

from auth.models import User
from auth.service import AuthService


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def try_get_current_user(request: Request) -> User | None:
    """Authenticate the request via its Bearer header. Never raises."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    return get_auth_service(request).authenticate_access_token(auth_header[7:])


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user


def require_privilege(privilege: str):
    """Build a dependency that requires the given privilege.

    Use as a FastAPI dependency:
        @router.post("/users/{id}/unlock")
        async def route(user: User = Depends(require_privilege("ManageUsers"))): ...
    """

    def dependency(request: Request, user: User = Depends(get_current_user)) -> User:
        if not get_auth_service(request).access.authorize(user, privilege):
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": f"Privilege '{privilege}' required."},
            )
        return user

    return dependency
