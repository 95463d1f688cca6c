"""
auth/models.py -- Domain dataclasses for credential and access-control entities.

Pattern: Data class with co-located invariants. Shape lives in the dataclass;
validation and the small state transitions an entity owns (revoke, consume,
rename) live beside the fields they protect, so every path that mutates an
entity goes through the same checks. Persistence is the store's job and
orchestration is the services' job.

Relationships are plain foreign-key fields (user_id, role_id,
replaced_by_token_id). Nothing here holds a live reference to a parent or
child object. A Role fetched with get_role_with_privileges() carries a
snapshot list of its Privilege records, not a shared graph.

All timestamps are timezone-aware UTC datetimes.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum

from auth.errors import AlreadyUsedError, ExpiredError, ValidationError

_PHONE_STRIP = re.compile(r"[ \-()]")
# re.ASCII keeps \d from matching non-ASCII digits such as "²" or "٣".
_PHONE_DIGITS = re.compile(r"0\d{9}", re.ASCII)
_IDENTITY_DIGITS = re.compile(r"\d{12}", re.ASCII)


def new_id() -> str:
    return uuid.uuid4().hex


def _require_text(value: str | None, label: str) -> str:
    if value is None or not value.strip():
        raise ValidationError(f"{label} cannot be null or empty.", detail={"field": label})
    return value


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@dataclass
class User:
    """An account that can log in and hold a role.

    Construct new accounts with User.create(), which validates every profile
    field. The bare constructor is what the store's row mapper uses for
    records that were validated when they were first written.

    failed_login_attempts and lockout_end are owned by AccountGuard
    (auth/guard.py). Nothing else should assign them.
    """

    full_name: str
    email: str
    hashed_password: str
    role_id: int
    phone_number: str = ""
    identity_number: str = ""
    address: str = ""
    gender: bool = False
    date_of_birth: date | None = None
    id: str = field(default_factory=new_id)
    is_active: bool = True
    is_patient: bool = False
    needs_verification: bool = True
    failed_login_attempts: int = 0
    lockout_end: datetime | None = None
    created_at: datetime | None = None

    @classmethod
    def create(
        cls,
        full_name: str,
        phone_number: str,
        email: str,
        hashed_password: str,
        gender: bool,
        identity_number: str,
        date_of_birth: date,
        address: str,
        role_id: int,
        is_patient: bool = False,
    ) -> User:
        """Validate profile fields and build a new, unverified account."""
        _validate_full_name(full_name)
        _validate_phone_number(phone_number)
        _validate_email(email)
        email = _normalize_email(email)
        _require_text(hashed_password, "hashed_password")
        _validate_identity_number(identity_number)
        _require_text(address, "address")
        return cls(
            full_name=full_name,
            email=email,
            hashed_password=hashed_password,
            role_id=role_id,
            phone_number=phone_number,
            identity_number=identity_number,
            address=address,
            gender=gender,
            date_of_birth=date_of_birth,
            is_patient=is_patient,
            needs_verification=True,
        )

    def update_profile(
        self,
        full_name: str | None = None,
        phone_number: str | None = None,
        email: str | None = None,
        gender: bool | None = None,
        identity_number: str | None = None,
        date_of_birth: date | None = None,
        address: str | None = None,
    ) -> None:
        """Apply a partial profile update. Blank or None arguments are ignored."""
        if full_name and full_name.strip():
            _validate_full_name(full_name)
            self.full_name = full_name
        if phone_number and phone_number.strip():
            _validate_phone_number(phone_number)
            self.phone_number = phone_number
        if email and email.strip():
            _validate_email(email)
            self.email = _normalize_email(email)
        if gender is not None:
            self.gender = gender
        if identity_number and identity_number.strip():
            _validate_identity_number(identity_number)
            self.identity_number = identity_number
        if date_of_birth is not None:
            self.date_of_birth = date_of_birth
        if address and address.strip():
            self.address = address

    def mark_verified(self) -> None:
        self.needs_verification = False

    def age(self, today: date) -> int | None:
        """Whole years between date_of_birth and today."""
        dob = self.date_of_birth
        if dob is None:
            return None
        years = today.year - dob.year
        if (today.month, today.day) < (dob.month, dob.day):
            years -= 1
        return years


def _validate_full_name(full_name: str) -> None:
    if not full_name:
        raise ValidationError("Full name cannot be null or empty.", detail={"field": "full_name"})
    if len(full_name) < 2:
        raise ValidationError("Full name must be at least 2 characters.", detail={"field": "full_name"})
    if len(full_name) > 100:
        raise ValidationError("Full name cannot exceed 100 characters.", detail={"field": "full_name"})


def _validate_phone_number(phone_number: str) -> None:
    if not phone_number:
        raise ValidationError("Phone number cannot be null or empty.", detail={"field": "phone_number"})
    cleaned = _PHONE_STRIP.sub("", phone_number)
    if not _PHONE_DIGITS.fullmatch(cleaned):
        raise ValidationError(
            "Phone number must contain only digits, start with 0, and be exactly 10 digits long.",
            detail={"field": "phone_number"},
        )


def _validate_email(email: str) -> None:
    _require_text(email, "email")
    if "@" not in email or "." not in email:
        raise ValidationError("Email must be in a valid format.", detail={"field": "email"})
    parts = email.split("@")
    if len(parts) != 2 or not parts[0].strip() or not parts[1].strip():
        raise ValidationError("Email must be in a valid format.", detail={"field": "email"})


def _normalize_email(email: str) -> str:
    """Emails are stored trimmed and lower-cased; IdentityStore.get_user_by_email looks them up the same way."""
    return email.strip().lower()


def _validate_identity_number(identity_number: str) -> None:
    _require_text(identity_number, "identity_number")
    if not _IDENTITY_DIGITS.fullmatch(identity_number):
        raise ValidationError(
            "Identity number must contain only digits and be exactly 12 digits long.",
            detail={"field": "identity_number"},
        )


# ---------------------------------------------------------------------------
# Roles and privileges
# ---------------------------------------------------------------------------


@dataclass
class Privilege:
    """A named permission, e.g. "ViewRecords". id is None until stored."""

    name: str
    id: int | None = None

    def __post_init__(self) -> None:
        _require_text(self.name, "privilege_name")

    def rename(self, new_name: str) -> None:
        self.name = _require_text(new_name, "privilege_name")


@dataclass
class Role:
    """A named bundle of privileges. Each user holds exactly one role.

    privileges is a snapshot populated by IdentityStore.get_role_with_privileges().
    Membership changes go through the store (grant / revoke), never by
    appending to this list.
    """

    name: str
    code: str
    description: str
    id: int | None = None
    is_default: bool = False
    privileges: list[Privilege] = field(default_factory=list)

    def __post_init__(self) -> None:
        _require_text(self.name, "role_name")
        _require_text(self.code, "role_code")
        _require_text(self.description, "description")

    def rename(self, new_name: str) -> None:
        self.name = _require_text(new_name, "role_name")

    def change_code(self, new_code: str) -> None:
        self.code = _require_text(new_code, "role_code")

    def change_description(self, new_description: str) -> None:
        self.description = _require_text(new_description, "description")

    def privilege_names(self) -> frozenset[str]:
        return frozenset(p.name for p in self.privileges)


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


class TokenStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


@dataclass
class RefreshToken:
    """A stored refresh credential.

    Security design:
    - token_hash is HMAC-SHA256(SECRET_KEY, raw_secret). The raw secret is
      handed to the client once by TokenIssuer and never persisted.
    - revoked_at is set exactly once. Rotation also records
      replaced_by_token_id, linking the token to its successor; presenting a
      token that already has a successor is the replay signal.
    - Rows are never deleted. Revoked and expired tokens stay for audit and so
      a late replay can still be recognised.
    """

    user_id: str
    token_hash: str
    created_at: datetime
    expires_at: datetime
    id: str = field(default_factory=new_id)
    revoked_at: datetime | None = None
    replaced_by_token_id: str | None = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: datetime) -> bool:
        # expires_at == now counts as expired
        return self.expires_at <= now

    def is_active(self, now: datetime) -> bool:
        return not self.is_revoked and not self.is_expired(now)

    def status(self, now: datetime) -> TokenStatus:
        if self.is_revoked:
            return TokenStatus.REVOKED
        if self.is_expired(now):
            return TokenStatus.EXPIRED
        return TokenStatus.ACTIVE

    def revoke(self, now: datetime, replaced_by_token_id: str | None = None) -> bool:
        """Mark the token revoked. Returns False (and changes nothing) if it already was."""
        if self.revoked_at is not None:
            return False
        self.revoked_at = now
        self.replaced_by_token_id = replaced_by_token_id
        return True


@dataclass
class PasswordResetToken:
    """A single-use token authorising one password change."""

    user_id: str
    token: str
    expires_at: datetime
    id: str = field(default_factory=new_id)
    is_used: bool = False
    created_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def consume(self, now: datetime) -> None:
        """Flip is_used. Raises ExpiredError or AlreadyUsedError instead."""
        if self.is_expired(now):
            raise ExpiredError("Password reset token has expired.")
        if self.is_used:
            raise AlreadyUsedError("Password reset token has already been used.")
        self.is_used = True


@dataclass
class IssuedAccessToken:
    """An encoded access JWT and the facts the caller needs about it."""

    token: str
    jti: str
    expires_at: datetime


@dataclass
class AccessClaims:
    """Decoded, verified access-token payload."""

    user_id: str
    email: str
    role: str
    privileges: frozenset[str]
    jti: str
    issued_at: datetime
    expires_at: datetime


@dataclass
class TokenPair:
    """What a successful login or refresh hands back to the caller.

    refresh_token is the raw secret. It exists only in this object and on the
    client; the store keeps its hash.
    """

    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime
    user: User
    role_code: str
    issued_at: datetime

    @property
    def expires_in(self) -> int:
        return round((self.access_expires_at - self.issued_at).total_seconds())
