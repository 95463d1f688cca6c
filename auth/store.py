"""
auth/store.py -- SQLAlchemy Core persistence layer for identity and credential entities.

Pattern: Repository + Data Mapper.
IdentityStore is the repository; the _row_to_* functions are the mappers.
Services never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Refresh tokens store only token_hash (HMAC of the raw secret). Rows are
  never deleted -- revoked and expired tokens are kept for audit and replay
  detection.

Atomicity:
  Every method runs in its own connection and commits once, so single-entity
  writes are transactional. The multi-step credential transitions are done
  as compare-and-swap updates guarded by "revoked_at IS NULL" /
  "is_used = 0", which makes them safe across processes:
    rotate_refresh_token()           -- revoke old + insert successor, one transaction
    revoke_refresh_token()           -- idempotent single revoke
    revoke_all_refresh_tokens()      -- one batch UPDATE per user
    mark_password_reset_token_used() -- single-use flip

Timestamps are stored as ISO 8601 UTC strings with fixed microsecond
precision so lexical comparison in SQL matches chronological order.

Layer rule: no imports from api/. core/ is allowed.
"""

from __future__ import annotations

from datetime import date, datetime
from pathlib import Path

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import PasswordResetToken, Privilege, RefreshToken, Role, User
from core.clock import SystemClock, to_utc

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'credcore_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_roles = Table(
    "roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("code", String(50), nullable=False, unique=True),
    Column("description", Text, nullable=False),
    Column("is_default", Integer, nullable=False, server_default="0"),
)

_privileges = Table(
    "privileges",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False, unique=True),
)

_role_privileges = Table(
    "role_privileges",
    _metadata,
    Column("role_id", Integer, ForeignKey("roles.id"), primary_key=True),
    Column("privilege_id", Integer, ForeignKey("privileges.id"), primary_key=True),
)

_users = Table(
    "users",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("full_name", String(100), nullable=False),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("role_id", Integer, ForeignKey("roles.id"), nullable=False),
    Column("phone_number", String(20), nullable=False, server_default=""),
    Column("identity_number", String(12), nullable=False, server_default=""),
    Column("address", Text, nullable=False, server_default=""),
    Column("gender", Integer, nullable=False, server_default="0"),
    Column("date_of_birth", String(10)),  # ISO date
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("is_patient", Integer, nullable=False, server_default="0"),
    Column("needs_verification", Integer, nullable=False, server_default="1"),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("lockout_end", String(32)),
    Column("created_at", String(32), nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("user_id", String(32), ForeignKey("users.id"), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("revoked_at", String(32)),
    Column("replaced_by_token_id", String(32)),
)

_password_reset_tokens = Table(
    "password_reset_tokens",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("user_id", String(32), ForeignKey("users.id"), nullable=False, index=True),
    Column("token", String(128), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False),
    Column("is_used", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block behind a writer.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return to_utc(value).isoformat(timespec="microseconds")


def _parse(value: str | None) -> datetime | None:
    if not value:
        return None
    return to_utc(datetime.fromisoformat(value))


def _now() -> datetime:
    return SystemClock().now()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class IdentityStore:
    """Repository for users, roles, privileges and credential records.

    Usage:
        store = IdentityStore("sqlite:///:memory:")
        role_id = store.create_role(Role(name="Clinician", code="CLN", description="Clinical staff"))
        store.create_user(user)
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Roles and privileges
    # ------------------------------------------------------------------

    def create_role(self, role: Role) -> int:
        """Insert a role and return its ID. Raises IntegrityError on duplicate name/code."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _roles.insert().values(
                    name=role.name,
                    code=role.code,
                    description=role.description,
                    is_default=1 if role.is_default else 0,
                )
            )
            conn.commit()
            role.id = result.inserted_primary_key[0]
            return role.id

    def update_role(self, role: Role) -> bool:
        """Persist name/code/description/is_default. Returns False if the role does not exist."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _roles.update()
                .where(_roles.c.id == role.id)
                .values(
                    name=role.name,
                    code=role.code,
                    description=role.description,
                    is_default=1 if role.is_default else 0,
                )
            )
            conn.commit()
        return result.rowcount > 0

    def get_role(self, role_id: int) -> Role | None:
        """Role without its privileges."""
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.id == role_id)).fetchone()
        return _row_to_role(row) if row is not None else None

    def get_role_with_privileges(self, role_id: int) -> Role | None:
        """Role with a snapshot of its privileges (ordered by name). None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.id == role_id)).fetchone()
            if row is None:
                return None
            priv_rows = conn.execute(
                select(_privileges)
                .join(_role_privileges, _role_privileges.c.privilege_id == _privileges.c.id)
                .where(_role_privileges.c.role_id == role_id)
                .order_by(_privileges.c.name)
            ).fetchall()
        role = _row_to_role(row)
        role.privileges = [_row_to_privilege(r) for r in priv_rows]
        return role

    def get_default_role(self) -> Role | None:
        """The lowest-id role flagged is_default, or None."""
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.is_default == 1).order_by(_roles.c.id)).fetchone()
        return _row_to_role(row) if row is not None else None

    def create_privilege(self, privilege: Privilege) -> int:
        """Insert a privilege and return its ID. Raises IntegrityError on duplicate name."""
        with self.engine.connect() as conn:
            result = conn.execute(_privileges.insert().values(name=privilege.name))
            conn.commit()
            privilege.id = result.inserted_primary_key[0]
            return privilege.id

    def update_privilege(self, privilege: Privilege) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _privileges.update().where(_privileges.c.id == privilege.id).values(name=privilege.name)
            )
            conn.commit()
        return result.rowcount > 0

    def get_privilege(self, privilege_id: int) -> Privilege | None:
        with self.engine.connect() as conn:
            row = conn.execute(_privileges.select().where(_privileges.c.id == privilege_id)).fetchone()
        return _row_to_privilege(row) if row is not None else None

    def get_privilege_by_name(self, name: str) -> Privilege | None:
        with self.engine.connect() as conn:
            row = conn.execute(_privileges.select().where(_privileges.c.name == name)).fetchone()
        return _row_to_privilege(row) if row is not None else None

    def add_privilege_to_role(self, role_id: int, privilege_id: int) -> bool:
        """Link a privilege to a role. Returns False if the link already exists."""
        try:
            with self.engine.connect() as conn:
                conn.execute(_role_privileges.insert().values(role_id=role_id, privilege_id=privilege_id))
                conn.commit()
        except IntegrityError:
            return False
        return True

    def remove_privilege_from_role(self, role_id: int, privilege_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _role_privileges.delete().where(
                    (_role_privileges.c.role_id == role_id) & (_role_privileges.c.privilege_id == privilege_id)
                )
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> str:
        """Insert a new user and return its ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        if user.created_at is None:
            user.created_at = _now()
        with self.engine.connect() as conn:
            conn.execute(_users.insert().values(id=user.id, created_at=_iso(user.created_at), **_user_values(user)))
            conn.commit()
        return user.id

    def save_user(self, user: User) -> bool:
        """Write every mutable field of an existing user. Returns False if not found."""
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user.id).values(**_user_values(user)))
            conn.commit()
        return result.rowcount > 0

    def get_user_by_id(self, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_email(self, email: str) -> User | None:
        """Look up a user by email. Emails are stored lower-cased, so the lookup is too."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.strip().lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def save_refresh_token(self, token: RefreshToken) -> None:
        """Insert a freshly issued refresh token."""
        with self.engine.connect() as conn:
            conn.execute(_refresh_tokens.insert().values(**_refresh_token_values(token)))
            conn.commit()

    def get_refresh_token(self, token_id: str) -> RefreshToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.id == token_id)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def get_refresh_token_by_hash(self, token_hash: str) -> RefreshToken | None:
        """Look up a token (active or not) by its HMAC hash. O(1) via UNIQUE index."""
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def list_active_refresh_tokens_for_user(self, user_id: str, now: datetime) -> list[RefreshToken]:
        """Unrevoked, unexpired tokens for a user, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select()
                .where(
                    (_refresh_tokens.c.user_id == user_id)
                    & _refresh_tokens.c.revoked_at.is_(None)
                    & (_refresh_tokens.c.expires_at > _iso(now))
                )
                .order_by(_refresh_tokens.c.created_at.desc())
            ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    def rotate_refresh_token(self, old_token_id: str, successor: RefreshToken, revoked_at: datetime) -> bool:
        """Revoke old_token_id in favour of successor and insert successor, atomically.

        The UPDATE only matches while revoked_at IS NULL. If another request
        already revoked the token, nothing is written and False is returned --
        the caller treats that as a replay.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.id == old_token_id) & _refresh_tokens.c.revoked_at.is_(None))
                .values(revoked_at=_iso(revoked_at), replaced_by_token_id=successor.id)
            )
            if result.rowcount == 0:
                conn.rollback()
                return False
            conn.execute(_refresh_tokens.insert().values(**_refresh_token_values(successor)))
            conn.commit()
        return True

    def revoke_refresh_token(self, token_id: str, revoked_at: datetime) -> bool:
        """Revoke one token. Returns False if it was already revoked or does not exist."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.id == token_id) & _refresh_tokens.c.revoked_at.is_(None))
                .values(revoked_at=_iso(revoked_at))
            )
            conn.commit()
        return result.rowcount > 0

    def revoke_all_refresh_tokens(self, user_id: str, revoked_at: datetime) -> int:
        """Revoke every active token of a user in one UPDATE. Returns the number revoked."""
        stamp = _iso(revoked_at)
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.user_id == user_id)
                    & _refresh_tokens.c.revoked_at.is_(None)
                    & (_refresh_tokens.c.expires_at > stamp)
                )
                .values(revoked_at=stamp)
            )
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def save_password_reset_token(self, token: PasswordResetToken) -> None:
        if token.created_at is None:
            token.created_at = _now()
        with self.engine.connect() as conn:
            conn.execute(
                _password_reset_tokens.insert().values(
                    id=token.id,
                    user_id=token.user_id,
                    token=token.token,
                    expires_at=_iso(token.expires_at),
                    is_used=1 if token.is_used else 0,
                    created_at=_iso(token.created_at),
                )
            )
            conn.commit()

    def get_password_reset_token(self, token: str) -> PasswordResetToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _password_reset_tokens.select().where(_password_reset_tokens.c.token == token)
            ).fetchone()
        return _row_to_reset_token(row) if row is not None else None

    def mark_password_reset_token_used(self, token_id: str) -> bool:
        """Flip is_used. Returns False if another request consumed it first."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _password_reset_tokens.update()
                .where((_password_reset_tokens.c.id == token_id) & (_password_reset_tokens.c.is_used == 0))
                .values(is_used=1)
            )
            conn.commit()
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _user_values(user: User) -> dict:
    return {
        "full_name": user.full_name,
        "email": user.email,
        "hashed_password": user.hashed_password,
        "role_id": user.role_id,
        "phone_number": user.phone_number,
        "identity_number": user.identity_number,
        "address": user.address,
        "gender": 1 if user.gender else 0,
        "date_of_birth": user.date_of_birth.isoformat() if user.date_of_birth else None,
        "is_active": 1 if user.is_active else 0,
        "is_patient": 1 if user.is_patient else 0,
        "needs_verification": 1 if user.needs_verification else 0,
        "failed_login_attempts": user.failed_login_attempts,
        "lockout_end": _iso(user.lockout_end),
    }


def _refresh_token_values(token: RefreshToken) -> dict:
    return {
        "id": token.id,
        "user_id": token.user_id,
        "token_hash": token.token_hash,
        "created_at": _iso(token.created_at),
        "expires_at": _iso(token.expires_at),
        "revoked_at": _iso(token.revoked_at),
        "replaced_by_token_id": token.replaced_by_token_id,
    }


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        full_name=row.full_name,
        email=row.email,
        hashed_password=row.hashed_password,
        role_id=row.role_id,
        phone_number=row.phone_number,
        identity_number=row.identity_number,
        address=row.address,
        gender=bool(row.gender),
        date_of_birth=date.fromisoformat(row.date_of_birth) if row.date_of_birth else None,
        is_active=bool(row.is_active),
        is_patient=bool(row.is_patient),
        needs_verification=bool(row.needs_verification),
        failed_login_attempts=row.failed_login_attempts,
        lockout_end=_parse(row.lockout_end),
        created_at=_parse(row.created_at),
    )


def _row_to_role(row) -> Role:
    return Role(
        id=row.id,
        name=row.name,
        code=row.code,
        description=row.description,
        is_default=bool(row.is_default),
    )


def _row_to_privilege(row) -> Privilege:
    return Privilege(id=row.id, name=row.name)


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        created_at=_parse(row.created_at),
        expires_at=_parse(row.expires_at),
        revoked_at=_parse(row.revoked_at),
        replaced_by_token_id=row.replaced_by_token_id,
    )


def _row_to_reset_token(row) -> PasswordResetToken:
    return PasswordResetToken(
        id=row.id,
        user_id=row.user_id,
        token=row.token,
        expires_at=_parse(row.expires_at),
        is_used=bool(row.is_used),
        created_at=_parse(row.created_at),
    )
