"""
auth/rotation.py -- Refresh-token rotation with replay detection.

Every successful refresh revokes the presented token and issues a successor,
recording the link in replaced_by_token_id. A legitimate client only ever
holds the newest secret, so presenting a secret that already has a successor
means a copy of it exists somewhere else. When that happens the engine
revokes every active token of the owning user and raises
ReplayDetectedError: one stolen, already-used token becomes a kill switch for
the whole session family rather than a silent compromise.

Check order for rotate():
  1. unknown hash                 -> NotFoundError
  2. expires_at <= now            -> ExpiredError (even if also revoked)
  3. revoked_at set               -> revoke_all + ReplayDetectedError
  4. owner missing / inactive     -> NotFoundError, token untouched
     owner locked out             -> LockedOutError, token untouched
  5. compare-and-swap old -> new  -> success, or treated as 3 if the swap lost

Two racing rotations of the same secret are serialized by the per-user lock
in-process and by the store's "revoked_at IS NULL" swap across processes.
The loser sees a revoked token and gets ReplayDetectedError -- that is the
intended outcome even when the loser is a legitimate client retrying.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from auth.access import AccessControlResolver
from auth.errors import ExpiredError, LockedOutError, NotFoundError, ReplayDetectedError
from auth.guard import AccountGuard
from auth.locks import KeyedLock, user_key
from auth.models import IssuedAccessToken, RefreshToken, User
from auth.store import IdentityStore
from auth.tokens import TokenIssuer

logger = logging.getLogger("credcore.auth.rotation")


@dataclass
class RotationResult:
    refresh_secret: str
    refresh_token: RefreshToken
    access_token: IssuedAccessToken
    user: User
    role_code: str


class RefreshRotationEngine:
    def __init__(
        self,
        store: IdentityStore,
        issuer: TokenIssuer,
        access: AccessControlResolver,
        guard: AccountGuard,
        locks: KeyedLock | None = None,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.access = access
        self.guard = guard
        self.locks = locks or KeyedLock()

    @property
    def clock(self):
        return self.issuer.clock

    def rotate(self, raw_secret: str) -> RotationResult:
        """Exchange a refresh secret for a new one plus a fresh access token."""
        token_hash = self.issuer.hash_secret(raw_secret)
        found = self.store.get_refresh_token_by_hash(token_hash)
        if found is None:
            raise NotFoundError()

        with self.locks.hold(user_key(found.user_id)):
            # Re-read under the lock; a concurrent rotation may have revoked it.
            current = self.store.get_refresh_token(found.id) or found
            now = self.clock.now()
            if current.is_expired(now):
                raise ExpiredError("Refresh token has expired.")
            if current.is_revoked:
                self._reject_replay(current)

            user = self.store.get_user_by_id(current.user_id)
            if user is None or not user.is_active:
                raise NotFoundError()
            if self.guard.is_locked_out(user):
                remaining = self.guard.remaining(user)
                disclose = self.issuer.settings.disclose_lockout_remaining
                raise LockedOutError(max(1, int(remaining.total_seconds())) if disclose and remaining else None)

            new_secret, successor = self.issuer.issue_refresh_token(user.id)
            current.revoke(now, replaced_by_token_id=successor.id)
            if not self.store.rotate_refresh_token(current.id, successor, current.revoked_at):
                # Another process rotated it first; report the link it actually wrote.
                self._reject_replay(self.store.get_refresh_token(current.id) or current)

        privileges = self.access.effective_privileges(user)
        role_code = self.access.role_code(user)
        access_token = self.issuer.issue_access_token(user, role_code, privileges)
        logger.debug("Refresh token rotated user_id=%s old=%s new=%s", user.id, current.id, successor.id)
        return RotationResult(
            refresh_secret=new_secret,
            refresh_token=successor,
            access_token=access_token,
            user=user,
            role_code=role_code,
        )

    def revoke(self, user_id: str, token_id: str) -> bool:
        """Revoke one of the user's tokens. Returns False if it was already revoked.

        The ownership check keeps one user from revoking another user's
        session by guessing token IDs.
        """
        token = self.store.get_refresh_token(token_id)
        if token is None or token.user_id != user_id:
            raise NotFoundError("Refresh token not found.")
        return self._revoke(token)

    def revoke_secret(self, raw_secret: str) -> bool:
        """Revoke the token behind a presented secret (logout). False if unknown or already revoked."""
        token = self.store.get_refresh_token_by_hash(self.issuer.hash_secret(raw_secret))
        if token is None:
            return False
        return self._revoke(token)

    def revoke_all(self, user_id: str) -> int:
        """Revoke every active token of the user. Returns how many were revoked."""
        count = self.store.revoke_all_refresh_tokens(user_id, self.clock.now())
        logger.info("Revoked all refresh tokens user_id=%s count=%d", user_id, count)
        return count

    def active_tokens(self, user_id: str) -> list[RefreshToken]:
        return self.store.list_active_refresh_tokens_for_user(user_id, self.clock.now())

    def _revoke(self, token: RefreshToken) -> bool:
        if not token.revoke(self.clock.now()):
            return False
        return self.store.revoke_refresh_token(token.id, token.revoked_at)

    def _reject_replay(self, token: RefreshToken) -> None:
        revoked = self.store.revoke_all_refresh_tokens(token.user_id, self.clock.now())
        logger.warning(
            "Refresh token reuse detected user_id=%s token_id=%s replaced_by=%s revoked=%d",
            token.user_id,
            token.id,
            token.replaced_by_token_id,
            revoked,
        )
        raise ReplayDetectedError()
