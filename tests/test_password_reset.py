"""Tests for auth/reset.py and the reset flow in auth/service.py.

Covers:
- Issued tokens are stored with the configured window
- Single use: the second consume fails with AlreadyUsedError
- A consumer that read the token before another spent it also gets AlreadyUsedError
- Two threads consuming one token: exactly one succeeds
- Expiry boundary and wrong-user tokens
- Full reset: new password works, old does not, sessions revoked, lockout cleared
- Mismatched, empty and over-long passwords are rejected before the token is spent
- Unknown and inactive emails get no token
"""

import threading
from datetime import timedelta

import pytest

from auth.errors import (
    AlreadyUsedError,
    ExpiredError,
    InvalidCredentialsError,
    NotFoundError,
    ReplayDetectedError,
    ValidationError,
)
from auth.service import AuthService
from auth.store import IdentityStore
from conftest import PASSWORD, START, make_user

NEW_PASSWORD = "brand-new-passphrase"


class TestPasswordResetService:
    def test_issue_stores_token(self, service, user):
        token = service.resets.issue(user.id)
        stored = service.store.get_password_reset_token(token.token)
        assert stored.user_id == user.id
        assert stored.expires_at == START + timedelta(minutes=30)

    def test_issue_unknown_user(self, service):
        with pytest.raises(NotFoundError):
            service.resets.issue("missing")

    def test_consume_once(self, service, user):
        token = service.resets.issue(user.id)
        service.resets.consume(token.token, user.id)
        with pytest.raises(AlreadyUsedError):
            service.resets.consume(token.token, user.id)

    def test_consume_at_expiry(self, service, user, clock):
        token = service.resets.issue(user.id)
        clock.current = token.expires_at
        with pytest.raises(ExpiredError):
            service.resets.consume(token.token, user.id)

    def test_consume_for_other_user(self, service, user, clinician_role):
        other = make_user(service, email="grace@example.com", role_id=clinician_role.id)
        token = service.resets.issue(user.id)
        with pytest.raises(NotFoundError):
            service.resets.consume(token.token, other.id)
        service.resets.consume(token.token, user.id)

    def test_consume_unknown(self, service, user):
        with pytest.raises(NotFoundError):
            service.resets.consume("nope", user.id)

    def test_consume_loses_to_concurrent_consumer(self, service, user, monkeypatch):
        token = service.resets.issue(user.id)
        stale = service.store.get_password_reset_token(token.token)
        assert service.store.mark_password_reset_token_used(stale.id) is True
        # The record was read before the other consumer's write landed.
        monkeypatch.setattr(service.store, "get_password_reset_token", lambda _: stale)
        with pytest.raises(AlreadyUsedError):
            service.resets.consume(token.token, user.id)


class TestConcurrentConsume:
    def test_only_one_consumer_wins(self, tmp_path, settings):
        store = IdentityStore(f"sqlite:///{tmp_path / 'reset.db'}")
        try:
            service = AuthService(store, settings)
            role = service.access.create_role("Clinician", "CLN", "Clinical staff", is_default=True)
            owner = make_user(service, role_id=role.id)
            token = service.resets.issue(owner.id)

            barrier = threading.Barrier(2)
            outcomes = []

            def worker():
                barrier.wait()
                try:
                    service.resets.consume(token.token, owner.id)
                    outcomes.append("consumed")
                except AlreadyUsedError:
                    outcomes.append("used")

            threads = [threading.Thread(target=worker) for _ in range(2)]
            for t in threads:
                t.start()
            for t in threads:
                t.join(timeout=30)

            assert sorted(outcomes) == ["consumed", "used"]
            assert store.get_password_reset_token(token.token).is_used is True
        finally:
            store.close()


class TestResetFlow:
    def test_reset_replaces_password_and_revokes_sessions(self, service, user):
        pair = service.login(user.email, PASSWORD)
        token = service.request_password_reset(user.email)

        service.reset_password(user.id, token.token, NEW_PASSWORD, NEW_PASSWORD)

        with pytest.raises(ReplayDetectedError):
            service.refresh(pair.refresh_token)
        with pytest.raises(InvalidCredentialsError):
            service.login(user.email, PASSWORD)
        service.login(user.email, NEW_PASSWORD)

    def test_reset_clears_lockout(self, service, user):
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                service.login(user.email, "wrong")
        token = service.request_password_reset(user.email)
        service.reset_password(user.id, token.token, NEW_PASSWORD, NEW_PASSWORD)
        stored = service.store.get_user_by_id(user.id)
        assert stored.lockout_end is None
        assert stored.failed_login_attempts == 0

    def test_mismatch_does_not_spend_token(self, service, user):
        token = service.request_password_reset(user.email)
        with pytest.raises(ValidationError):
            service.reset_password(user.id, token.token, NEW_PASSWORD, "different")
        with pytest.raises(ValidationError):
            service.reset_password(user.id, token.token, "", "")
        too_long = "\U0001F600" * 20
        with pytest.raises(ValidationError) as excinfo:
            service.reset_password(user.id, token.token, too_long, too_long)
        assert excinfo.value.detail == {"field": "new_password"}
        service.reset_password(user.id, token.token, NEW_PASSWORD, NEW_PASSWORD)

    def test_token_is_single_use(self, service, user):
        token = service.request_password_reset(user.email)
        service.reset_password(user.id, token.token, NEW_PASSWORD, NEW_PASSWORD)
        with pytest.raises(AlreadyUsedError):
            service.reset_password(user.id, token.token, "another-one", "another-one")

    def test_unknown_or_inactive_email_gets_nothing(self, service, user):
        assert service.request_password_reset("nobody@example.com") is None
        user.is_active = False
        service.store.save_user(user)
        assert service.request_password_reset(user.email) is None
