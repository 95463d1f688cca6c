"""
api/routes/v1/auth.py -- Authentication, session and administration REST endpoints.

Routes:
  POST /api/v1/auth/register                 -- create an account with the default role
  POST /api/v1/auth/login                    -- password login; returns access + refresh token
  POST /api/v1/auth/refresh                  -- rotate a refresh token
  POST /api/v1/auth/logout                   -- revoke the presented refresh token
  POST /api/v1/auth/logout-all               -- revoke every refresh token of the caller
  GET  /api/v1/auth/me                       -- current user info
  GET  /api/v1/auth/sessions                 -- caller's active refresh tokens
  POST /api/v1/auth/password-reset/request   -- issue a reset token (always 202)
  POST /api/v1/auth/password-reset/confirm   -- spend a reset token, set a new password
  POST /api/v1/auth/users/{id}/unlock        -- clear a lockout (ManageUsers)
  GET  /api/v1/auth/roles/{id}               -- role with privileges (ManageRoles)

Errors:
  Core failures are raised as auth.errors.AuthError subclasses and rendered
  by the handler in api/main.py. Route handlers do not translate them.

Security:
  Cache-Control: no-store on every response that carries a token.
  password-reset/request answers 202 whether or not the email exists.
  Handlers are plain def: bcrypt and the store block, so FastAPI runs them
  in its threadpool.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from api.models import (
    LoginRequest,
    LogoutAllResponse,
    MessageResponse,
    PasswordResetRequest,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    RoleResponse,
    SessionResponse,
    TokenResponse,
    UserResponse,
)
from auth.dependencies import get_auth_service, get_current_user, require_privilege
from auth.models import User
from auth.service import AuthService

MANAGE_USERS = "ManageUsers"
MANAGE_ROLES = "ManageRoles"

router = APIRouter()


def _token_response(pair) -> JSONResponse:
    resp = JSONResponse(status_code=200, content=TokenResponse.from_pair(pair).model_dump())
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=UserResponse, status_code=201)
def register(body: RegisterRequest, service: AuthService = Depends(get_auth_service)) -> UserResponse:
    """Create an account with the default role. It starts out needing verification."""
    user = service.register(
        full_name=body.full_name,
        phone_number=body.phone_number,
        email=body.email,
        password=body.password,
        gender=body.gender,
        identity_number=body.identity_number,
        date_of_birth=body.date_of_birth,
        address=body.address,
        is_patient=body.is_patient,
    )
    return UserResponse.from_user(user, service.access.role_code(user))


@router.post("/auth/login", response_model=TokenResponse)
def login(body: LoginRequest, service: AuthService = Depends(get_auth_service)) -> JSONResponse:
    """Authenticate with email and password.

    Wrong email, wrong password and inactive account all return the same
    401 "bad_credentials". A locked account returns 423 before the password
    is checked.
    """
    return _token_response(service.login(body.email, body.password))


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(body: RefreshRequest, service: AuthService = Depends(get_auth_service)) -> JSONResponse:
    """Exchange a refresh token for a new pair. The presented token stops working.

    Presenting an already-rotated token returns 401 "token_reuse_detected" and
    signs the user out everywhere.
    """
    return _token_response(service.refresh(body.refresh_token))


@router.post("/auth/logout", status_code=204)
def logout(body: RefreshRequest, service: AuthService = Depends(get_auth_service)) -> Response:
    """Revoke the presented refresh token. Idempotent; unknown tokens also return 204."""
    service.logout(body.refresh_token)
    return Response(status_code=204)


@router.post("/auth/password-reset/request", response_model=MessageResponse, status_code=202)
def request_password_reset(
    request: Request,
    body: PasswordResetRequest,
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Issue a reset token and hand it to the configured delivery sink.

    The response is identical whether or not the email is registered.
    """
    token = service.request_password_reset(body.email)
    if token is not None:
        request.app.state.reset_token_sink(token)
    return MessageResponse(message="If the account exists, reset instructions have been sent.")


@router.post("/auth/password-reset/confirm", response_model=MessageResponse)
def confirm_password_reset(
    body: ResetPasswordRequest,
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Spend a reset token and set a new password. All sessions are revoked."""
    service.reset_password(body.user_id, body.token, body.new_password, body.confirm_password)
    return MessageResponse(message="Password has been reset.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=UserResponse)
def me(
    current_user: User = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
) -> UserResponse:
    return UserResponse.from_user(current_user, service.access.role_code(current_user))


@router.get("/auth/sessions", response_model=list[SessionResponse])
def list_sessions(
    current_user: User = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
) -> list[SessionResponse]:
    return [SessionResponse.from_token(t) for t in service.rotation.active_tokens(current_user.id)]


@router.post("/auth/logout-all", response_model=LogoutAllResponse)
def logout_all(
    current_user: User = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
) -> LogoutAllResponse:
    """Revoke every refresh token of the caller. Access tokens expire on their own."""
    return LogoutAllResponse(revoked=service.logout_everywhere(current_user.id))


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


@router.post("/auth/users/{user_id}/unlock", response_model=UserResponse)
def unlock_user(
    user_id: str,
    current_user: User = Depends(require_privilege(MANAGE_USERS)),
    service: AuthService = Depends(get_auth_service),
) -> UserResponse:
    if service.store.get_user_by_id(user_id) is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "User not found."})
    user = service.unlock(user_id)
    return UserResponse.from_user(user, service.access.role_code(user))


@router.get("/auth/roles/{role_id}", response_model=RoleResponse)
def get_role(
    role_id: int,
    current_user: User = Depends(require_privilege(MANAGE_ROLES)),
    service: AuthService = Depends(get_auth_service),
) -> RoleResponse:
    role = service.store.get_role_with_privileges(role_id)
    if role is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Role not found."})
    return RoleResponse.from_role(role)
