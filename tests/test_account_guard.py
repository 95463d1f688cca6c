"""Unit tests for auth/guard.py -- failed-login counter and lockout transitions.

Covers:
- Counter increments below the threshold without locking
- The threshold-th failure locks for exactly lockout_minutes
- remaining() while locked and after the lockout elapses
- A failure after an elapsed lockout starts a fresh window
- record_success() and unlock() clear both fields
"""

from datetime import timedelta

import pytest

from auth.guard import AccountGuard


@pytest.fixture
def guard(settings, clock) -> AccountGuard:
    return AccountGuard(settings, clock)


class TestRecordFailure:
    def test_below_threshold_does_not_lock(self, guard, user):
        for _ in range(4):
            assert guard.record_failure(user) is False
        assert user.failed_login_attempts == 4
        assert user.lockout_end is None
        assert guard.is_locked_out(user) is False

    def test_threshold_failure_locks(self, guard, user, clock):
        for _ in range(4):
            guard.record_failure(user)
        assert guard.record_failure(user) is True
        assert user.failed_login_attempts == 5
        assert user.lockout_end == clock.now() + timedelta(minutes=15)
        assert guard.is_locked_out(user) is True

    def test_further_failures_while_locked_keep_lockout_end(self, guard, user):
        for _ in range(5):
            guard.record_failure(user)
        lockout_end = user.lockout_end
        assert guard.record_failure(user) is False
        assert user.lockout_end == lockout_end

    def test_failure_after_elapsed_lockout_starts_fresh(self, guard, user, clock):
        for _ in range(5):
            guard.record_failure(user)
        clock.advance(minutes=15)
        assert guard.is_locked_out(user) is False
        assert guard.record_failure(user) is False
        assert user.failed_login_attempts == 1
        assert user.lockout_end is None


class TestRemaining:
    def test_none_when_not_locked(self, guard, user):
        assert guard.remaining(user) is None

    def test_counts_down(self, guard, user, clock):
        for _ in range(5):
            guard.record_failure(user)
        clock.advance(minutes=5)
        assert guard.remaining(user) == timedelta(minutes=10)

    def test_lockout_end_equal_to_now_is_not_locked(self, guard, user, clock):
        user.lockout_end = clock.now()
        assert guard.is_locked_out(user) is False
        assert guard.remaining(user) is None


class TestReset:
    def test_record_success_clears_counter(self, guard, user):
        guard.record_failure(user)
        guard.record_failure(user)
        guard.record_success(user)
        assert user.failed_login_attempts == 0
        assert user.lockout_end is None

    def test_unlock_clears_lockout(self, guard, user):
        for _ in range(5):
            guard.record_failure(user)
        guard.unlock(user)
        assert guard.is_locked_out(user) is False
        assert user.failed_login_attempts == 0
