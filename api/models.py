"""
API request and response models for credcore REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from auth.models import RefreshToken, Role, TokenPair, User
from auth.tokens import BCRYPT_MAX_BYTES

_PASSWORD_MAX = 64


def _fits_bcrypt(value: str) -> str:
    # max_length counts characters; bcrypt counts UTF-8 bytes.
    if len(value.encode("utf-8")) > BCRYPT_MAX_BYTES:
        raise ValueError(f"password cannot be longer than {BCRYPT_MAX_BYTES} bytes when UTF-8 encoded")
    return value


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=_PASSWORD_MAX)


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh and POST /api/v1/auth/logout."""

    refresh_token: str = Field(min_length=1, max_length=256)


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    Field-level format rules (phone, identity number, email shape) are
    enforced by User.create() so the API and the core cannot drift apart.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    full_name: str = Field(max_length=100)
    phone_number: str = Field(max_length=20)
    email: str = Field(max_length=255)
    password: str = Field(min_length=8, max_length=_PASSWORD_MAX)
    gender: bool = False
    identity_number: str = Field(max_length=12)
    date_of_birth: date
    address: str = Field(max_length=500)
    is_patient: bool = False

    _password_fits = field_validator("password")(_fits_bcrypt)


class PasswordResetRequest(BaseModel):
    """Request body for POST /api/v1/auth/password-reset/request."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255)


class ResetPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/password-reset/confirm."""

    user_id: str = Field(min_length=1, max_length=32)
    token: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=8, max_length=_PASSWORD_MAX)
    confirm_password: str = Field(min_length=8, max_length=_PASSWORD_MAX)

    _passwords_fit = field_validator("new_password", "confirm_password")(_fits_bcrypt)

    @model_validator(mode="after")
    def passwords_match(self) -> "ResetPasswordRequest":
        if self.new_password != self.confirm_password:
            raise ValueError("new_password and confirm_password do not match")
        return self


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of an account. Never includes the password hash."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    full_name: str
    email: str
    role_code: str
    is_active: bool
    needs_verification: bool
    is_patient: bool

    @classmethod
    def from_user(cls, user: User, role_code: str) -> "UserResponse":
        return cls(
            user_id=user.id,
            full_name=user.full_name,
            email=user.email,
            role_code=role_code,
            is_active=user.is_active,
            needs_verification=user.needs_verification,
            is_patient=user.is_patient,
        )


class TokenResponse(BaseModel):
    """Response for login and refresh. refresh_token is shown once per issuance."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_token: str
    refresh_expires_at: str
    user: UserResponse

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenResponse":
        return cls(
            access_token=pair.access_token,
            expires_in=pair.expires_in,
            refresh_token=pair.refresh_token,
            refresh_expires_at=pair.refresh_expires_at.isoformat(),
            user=UserResponse.from_user(pair.user, pair.role_code),
        )


class SessionResponse(BaseModel):
    """One active refresh token. The hash is never exposed."""

    model_config = ConfigDict(frozen=True)

    id: str
    created_at: str
    expires_at: str

    @classmethod
    def from_token(cls, token: RefreshToken) -> "SessionResponse":
        return cls(id=token.id, created_at=token.created_at.isoformat(), expires_at=token.expires_at.isoformat())


class PrivilegeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    privilege_id: int
    privilege_name: str


class RoleResponse(BaseModel):
    """Role with its privileges, for GET /api/v1/auth/roles/{id}."""

    model_config = ConfigDict(frozen=True)

    role_id: int
    role_name: str
    role_code: str
    description: str
    is_default: bool
    privileges: list[PrivilegeResponse]

    @classmethod
    def from_role(cls, role: Role) -> "RoleResponse":
        return cls(
            role_id=role.id,
            role_name=role.name,
            role_code=role.code,
            description=role.description,
            is_default=role.is_default,
            privileges=[PrivilegeResponse(privilege_id=p.id, privilege_name=p.name) for p in role.privileges],
        )


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class LogoutAllResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    revoked: int


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
