"""
auth/guard.py -- Failed-login counter and lockout state machine.

States (derived from User.failed_login_attempts and User.lockout_end):

  open     lockout_end is None, counter < threshold
  locked   lockout_end > now
  elapsed  lockout_end <= now -- behaves as open; the next record_failure()
           resets the counter before counting, so an attacker gets a fresh
           threshold window rather than an immediate re-lock

AccountGuard only mutates the User it is given. Saving the user, and holding
the per-user lock around load -> mutate -> save, is the caller's job
(see AuthService.login).
"""

from __future__ import annotations

import logging
from datetime import timedelta

from auth.models import User
from core.clock import Clock, SystemClock
from core.config import Settings, get_settings

logger = logging.getLogger("credcore.auth.guard")


class AccountGuard:
    def __init__(self, settings: Settings | None = None, clock: Clock | None = None) -> None:
        settings = settings or get_settings()
        self.threshold = settings.lockout_threshold
        self.lockout_duration = timedelta(minutes=settings.lockout_minutes)
        self.clock = clock or SystemClock()

    def is_locked_out(self, user: User) -> bool:
        return user.lockout_end is not None and user.lockout_end > self.clock.now()

    def remaining(self, user: User) -> timedelta | None:
        """Time left on an active lockout, or None if the account is not locked."""
        if not self.is_locked_out(user):
            return None
        return user.lockout_end - self.clock.now()

    def record_failure(self, user: User) -> bool:
        """Count one failed login. Returns True if this failure locked the account."""
        now = self.clock.now()
        if user.lockout_end is not None and user.lockout_end <= now:
            # Lockout has elapsed -- leaving it is a transition out of lockout.
            user.lockout_end = None
            user.failed_login_attempts = 0
        user.failed_login_attempts += 1
        if user.failed_login_attempts >= self.threshold and user.lockout_end is None:
            user.lockout_end = now + self.lockout_duration
            logger.warning(
                "Account locked user_id=%s attempts=%d until=%s",
                user.id,
                user.failed_login_attempts,
                user.lockout_end.isoformat(),
            )
            return True
        return False

    def record_success(self, user: User) -> None:
        user.failed_login_attempts = 0
        user.lockout_end = None

    def unlock(self, user: User) -> None:
        """Administrative override: clear the lockout and the counter."""
        was_locked = self.is_locked_out(user)
        user.lockout_end = None
        user.failed_login_attempts = 0
        if was_locked:
            logger.info("Account unlocked by administrator user_id=%s", user.id)
