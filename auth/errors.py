"""
auth/errors.py -- Exceptions raised by the authentication core.

Every failure the core reports to its caller is an AuthError subclass with a
stable error code and a suggested HTTP status. The API layer renders them as
{"error": {"code": ..., "message": ...}} without knowing the concrete class.

All of these are local, caller-recoverable conditions. Storage failures are
not wrapped (except unique-constraint violations, which become ConflictError)
and propagate as raised by SQLAlchemy.

Messages for NotFoundError and InvalidCredentialsError are deliberately
generic: they must not reveal which part of a credential was wrong.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for all credential-lifecycle and access-control failures."""

    code: str = "auth_error"
    status_code: int = 400

    def __init__(self, message: str, *, detail: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ValidationError(AuthError, ValueError):
    """Malformed entity construction or mutation. Never retried."""

    code = "validation_error"
    status_code = 400


class NotFoundError(AuthError):
    """No matching token, user, role or privilege."""

    code = "not_found"
    status_code = 401

    def __init__(self, message: str = "Credential not recognised.", *, detail: dict | None = None) -> None:
        super().__init__(message, detail=detail)


class ExpiredError(AuthError):
    """The presented token is past its expiry. Callers may prompt a re-login."""

    code = "token_expired"
    status_code = 401

    def __init__(self, message: str = "Token has expired.", *, detail: dict | None = None) -> None:
        super().__init__(message, detail=detail)


class ReplayDetectedError(AuthError):
    """A superseded refresh token was presented again.

    By the time this is raised every active refresh token of the owning user
    has been revoked. Callers should force re-authentication everywhere.
    """

    code = "token_reuse_detected"
    status_code = 401

    def __init__(self, message: str = "Refresh token reuse detected.", *, detail: dict | None = None) -> None:
        super().__init__(message, detail=detail)


class AlreadyUsedError(AuthError):
    """A single-use password-reset token was presented a second time."""

    code = "token_already_used"
    status_code = 400

    def __init__(self, message: str = "Token has already been used.", *, detail: dict | None = None) -> None:
        super().__init__(message, detail=detail)


class LockedOutError(AuthError):
    """The account is temporarily locked after repeated failed logins.

    retry_after is the remaining lockout in whole seconds, or None when the
    policy does not allow disclosing it.
    """

    code = "locked_out"
    status_code = 423

    def __init__(self, retry_after: int | None = None) -> None:
        detail = {"retry_after": retry_after} if retry_after is not None else {}
        super().__init__("Account is temporarily locked.", detail=detail)
        self.retry_after = retry_after


class InvalidCredentialsError(AuthError):
    """Unknown account, wrong password, or inactive account."""

    code = "bad_credentials"
    status_code = 401

    def __init__(self, message: str = "Invalid email or password.", *, detail: dict | None = None) -> None:
        super().__init__(message, detail=detail)


class PermissionDeniedError(AuthError):
    """The user lacks the privilege required for an operation."""

    code = "forbidden"
    status_code = 403


class ConflictError(AuthError):
    """A unique name, code or email is already taken."""

    code = "conflict"
    status_code = 409


__all__ = [
    "AuthError",
    "ValidationError",
    "NotFoundError",
    "ExpiredError",
    "ReplayDetectedError",
    "AlreadyUsedError",
    "LockedOutError",
    "InvalidCredentialsError",
    "PermissionDeniedError",
    "ConflictError",
]
