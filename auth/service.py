"""
auth/service.py -- Entry point the adapter layer calls into.

AuthService wires the core components to one store, one clock and one
settings object, and implements the multi-step flows:

  login:    AccountGuard -> password check -> TokenIssuer -> store refresh token
  refresh:  RefreshRotationEngine.rotate
  logout:   revoke one refresh token / every refresh token
  reset:    PasswordResetService.issue / consume -> new hash -> revoke sessions

Login security [timing]: unknown emails still run bcrypt against DUMMY_HASH so
response time does not reveal whether an account exists. Unknown email,
wrong password and inactive account all raise the same
InvalidCredentialsError.

Login atomicity: the lockout check, the password check and the counter
update run under the per-user lock against a freshly loaded user, so
concurrent wrong guesses cannot overwrite each other's increments.
"""

from __future__ import annotations

import logging
from datetime import date

from sqlalchemy.exc import IntegrityError

from auth.access import AccessControlResolver
from auth.errors import ConflictError, InvalidCredentialsError, LockedOutError, NotFoundError, ValidationError
from auth.guard import AccountGuard
from auth.locks import KeyedLock, user_key
from auth.models import PasswordResetToken, TokenPair, User
from auth.reset import PasswordResetService
from auth.rotation import RefreshRotationEngine
from auth.store import IdentityStore
from auth.tokens import DUMMY_HASH, TokenIssuer, check_password, hash_password, verify_password
from core.clock import Clock, SystemClock
from core.config import Settings, get_settings

logger = logging.getLogger("credcore.auth")


class AuthService:
    """Credential lifecycle facade.

    Usage:
        service = AuthService(IdentityStore())
        pair = service.login("ada@example.com", "correct horse")
        pair = service.refresh(pair.refresh_token)
    """

    def __init__(
        self,
        store: IdentityStore,
        settings: Settings | None = None,
        clock: Clock | None = None,
        issuer: TokenIssuer | None = None,
        locks: KeyedLock | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self.issuer = issuer or TokenIssuer(self.settings, self.clock)
        self.locks = locks or KeyedLock()
        self.guard = AccountGuard(self.settings, self.clock)
        self.access = AccessControlResolver(store, self.guard)
        self.rotation = RefreshRotationEngine(store, self.issuer, self.access, self.guard, self.locks)
        self.resets = PasswordResetService(store, self.issuer)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        full_name: str,
        phone_number: str,
        email: str,
        password: str,
        gender: bool,
        identity_number: str,
        date_of_birth: date,
        address: str,
        role_id: int | None = None,
        is_patient: bool = False,
    ) -> User:
        """Create an account. Without role_id the default role is assigned."""
        check_password(password)
        if role_id is None:
            default = self.access.default_role()
            if default is None:
                raise NotFoundError("No default role is configured.")
            role_id = default.id
        elif self.store.get_role(role_id) is None:
            raise NotFoundError("Role not found.")
        user = User.create(
            full_name=full_name,
            phone_number=phone_number,
            email=email,
            hashed_password=hash_password(password),
            gender=gender,
            identity_number=identity_number,
            date_of_birth=date_of_birth,
            address=address,
            role_id=role_id,
            is_patient=is_patient,
        )
        try:
            self.store.create_user(user)
        except IntegrityError as exc:
            raise ConflictError("An account with that email already exists.") from exc
        logger.info("User registered user_id=%s role_id=%s", user.id, role_id)
        return user

    # ------------------------------------------------------------------
    # Login / refresh / logout
    # ------------------------------------------------------------------

    def login(self, email: str, password: str) -> TokenPair:
        candidate = self.store.get_user_by_email(email)
        if candidate is None:
            verify_password(password, DUMMY_HASH)
            raise InvalidCredentialsError()

        with self.locks.hold(user_key(candidate.id)):
            user = self.store.get_user_by_id(candidate.id) or candidate
            if self.guard.is_locked_out(user):
                # Rejected before the password is looked at; counter untouched.
                raise self._locked_out(user)
            if not verify_password(password, user.hashed_password):
                self.guard.record_failure(user)
                self.store.save_user(user)
                logger.warning(
                    "Login failed: bad password user_id=%s attempts=%d", user.id, user.failed_login_attempts
                )
                raise InvalidCredentialsError()
            if not user.is_active:
                logger.warning("Login failed: inactive account user_id=%s", user.id)
                raise InvalidCredentialsError()
            self.guard.record_success(user)
            self.store.save_user(user)

        pair = self._issue_pair(user)
        logger.info("User logged in user_id=%s", user.id)
        return pair

    def refresh(self, refresh_secret: str) -> TokenPair:
        result = self.rotation.rotate(refresh_secret)
        return TokenPair(
            access_token=result.access_token.token,
            access_expires_at=result.access_token.expires_at,
            refresh_token=result.refresh_secret,
            refresh_expires_at=result.refresh_token.expires_at,
            user=result.user,
            role_code=result.role_code,
            issued_at=result.refresh_token.created_at,
        )

    def logout(self, refresh_secret: str) -> bool:
        return self.rotation.revoke_secret(refresh_secret)

    def logout_everywhere(self, user_id: str) -> int:
        return self.rotation.revoke_all(user_id)

    def authenticate_access_token(self, token: str) -> User | None:
        """Resolve a bearer token to an active, unlocked user, or None."""
        claims = self.issuer.decode_access_token(token)
        if claims is None:
            return None
        user = self.store.get_user_by_id(claims.user_id)
        if user is None or not user.is_active or self.guard.is_locked_out(user):
            return None
        return user

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str) -> PasswordResetToken | None:
        """Issue a reset token for an active account. None (silently) otherwise."""
        user = self.store.get_user_by_email(email)
        if user is None or not user.is_active:
            return None
        return self.resets.issue(user.id)

    def reset_password(self, user_id: str, token: str, new_password: str, confirm_password: str) -> User:
        check_password(new_password, field="new_password")
        if new_password != confirm_password:
            raise ValidationError("Passwords do not match.", detail={"field": "confirm_password"})
        self.resets.consume(token, user_id)
        with self.locks.hold(user_key(user_id)):
            user = self.store.get_user_by_id(user_id)
            if user is None:
                raise NotFoundError("User not found.")
            user.hashed_password = hash_password(new_password)
            self.guard.unlock(user)
            self.store.save_user(user)
        revoked = self.rotation.revoke_all(user_id)
        logger.info("Password reset completed user_id=%s sessions_revoked=%d", user_id, revoked)
        return user

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def unlock(self, user_id: str) -> User:
        with self.locks.hold(user_key(user_id)):
            user = self.store.get_user_by_id(user_id)
            if user is None:
                raise NotFoundError("User not found.")
            self.guard.unlock(user)
            self.store.save_user(user)
        return user

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _issue_pair(self, user: User) -> TokenPair:
        privileges = self.access.effective_privileges(user)
        role_code = self.access.role_code(user)
        access_token = self.issuer.issue_access_token(user, role_code, privileges)
        refresh_secret, refresh_token = self.issuer.issue_refresh_token(user.id)
        self.store.save_refresh_token(refresh_token)
        return TokenPair(
            access_token=access_token.token,
            access_expires_at=access_token.expires_at,
            refresh_token=refresh_secret,
            refresh_expires_at=refresh_token.expires_at,
            user=user,
            role_code=role_code,
            issued_at=refresh_token.created_at,
        )

    def _locked_out(self, user: User) -> LockedOutError:
        if not self.settings.disclose_lockout_remaining:
            return LockedOutError()
        remaining = self.guard.remaining(user)
        return LockedOutError(max(1, int(remaining.total_seconds())) if remaining else None)
