"""Unit tests for auth/store.py -- SQLAlchemy Core repository.

Covers:
- Role / privilege CRUD, default role lookup, role-privilege links
- User round trip with every field, case-insensitive email lookup, duplicates
- Refresh-token compare-and-swap rotation and idempotent revoke
- Batch revoke skips revoked and expired rows
- Reset-token single-use flip
"""

from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from auth.models import PasswordResetToken, Privilege, RefreshToken, Role
from conftest import START


def _token(user_id, suffix, expires_in=timedelta(days=7)) -> RefreshToken:
    return RefreshToken(
        user_id=user_id,
        token_hash=f"hash-{suffix}",
        created_at=START,
        expires_at=START + expires_in,
    )


# ---------------------------------------------------------------------------
# TestRolesAndPrivileges
# ---------------------------------------------------------------------------


class TestRolesAndPrivileges:
    def test_create_and_get_role(self, store):
        role = Role(name="Clinician", code="CLN", description="Clinical staff", is_default=True)
        role_id = store.create_role(role)
        assert role.id == role_id
        loaded = store.get_role(role_id)
        assert (loaded.name, loaded.code, loaded.is_default) == ("Clinician", "CLN", True)
        assert store.get_default_role().id == role_id
        assert store.get_role(9999) is None

    def test_duplicate_role_code_raises(self, store):
        store.create_role(Role(name="Clinician", code="CLN", description="x"))
        with pytest.raises(IntegrityError):
            store.create_role(Role(name="Other", code="CLN", description="x"))

    def test_role_privileges_ordered_by_name(self, store):
        role_id = store.create_role(Role(name="Admin", code="ADM", description="x"))
        for name in ("ManageUsers", "EditRecords", "ViewRecords"):
            privilege = Privilege(name=name)
            store.create_privilege(privilege)
            store.add_privilege_to_role(role_id, privilege.id)
        role = store.get_role_with_privileges(role_id)
        assert [p.name for p in role.privileges] == ["EditRecords", "ManageUsers", "ViewRecords"]

    def test_duplicate_link_returns_false(self, store):
        role_id = store.create_role(Role(name="Admin", code="ADM", description="x"))
        privilege = Privilege(name="ViewRecords")
        store.create_privilege(privilege)
        assert store.add_privilege_to_role(role_id, privilege.id) is True
        assert store.add_privilege_to_role(role_id, privilege.id) is False
        assert store.remove_privilege_from_role(role_id, privilege.id) is True
        assert store.remove_privilege_from_role(role_id, privilege.id) is False

    def test_privilege_by_name(self, store):
        privilege = Privilege(name="ViewRecords")
        store.create_privilege(privilege)
        assert store.get_privilege_by_name("ViewRecords").id == privilege.id
        assert store.get_privilege_by_name("Nope") is None


# ---------------------------------------------------------------------------
# TestUsers
# ---------------------------------------------------------------------------


class TestUsers:
    def test_round_trip(self, store, user):
        loaded = store.get_user_by_id(user.id)
        assert loaded.email == "ada@example.com"
        assert loaded.phone_number == "0912-345-678"
        assert loaded.date_of_birth == user.date_of_birth
        assert loaded.needs_verification is True
        assert loaded.created_at is not None
        assert store.has_users() is True

    def test_email_lookup_is_case_insensitive(self, store, user):
        assert store.get_user_by_email("  ADA@Example.com ").id == user.id

    def test_save_user_persists_lockout(self, store, user, clock):
        user.failed_login_attempts = 5
        user.lockout_end = clock.now() + timedelta(minutes=15)
        assert store.save_user(user) is True
        loaded = store.get_user_by_id(user.id)
        assert loaded.failed_login_attempts == 5
        assert loaded.lockout_end == user.lockout_end

    def test_duplicate_email_raises(self, store, user):
        loaded = store.get_user_by_id(user.id)
        loaded.id = "f" * 32
        with pytest.raises(IntegrityError):
            store.create_user(loaded)

    def test_empty_store(self, store):
        assert store.has_users() is False
        assert store.get_user_by_email("nobody@example.com") is None


# ---------------------------------------------------------------------------
# TestRefreshTokens
# ---------------------------------------------------------------------------


class TestRefreshTokens:
    def test_lookup_by_hash(self, store, user):
        token = _token(user.id, "a")
        store.save_refresh_token(token)
        loaded = store.get_refresh_token_by_hash("hash-a")
        assert loaded.id == token.id
        assert loaded.expires_at == token.expires_at
        assert store.get_refresh_token_by_hash("hash-missing") is None

    def test_rotate_is_compare_and_swap(self, store, user):
        old = _token(user.id, "old")
        store.save_refresh_token(old)
        first, second = _token(user.id, "first"), _token(user.id, "second")

        assert store.rotate_refresh_token(old.id, first, START) is True
        assert store.rotate_refresh_token(old.id, second, START) is False

        assert store.get_refresh_token(old.id).replaced_by_token_id == first.id
        assert store.get_refresh_token(first.id) is not None
        assert store.get_refresh_token(second.id) is None

    def test_revoke_once(self, store, user):
        token = _token(user.id, "a")
        store.save_refresh_token(token)
        assert store.revoke_refresh_token(token.id, START) is True
        assert store.revoke_refresh_token(token.id, START + timedelta(hours=1)) is False
        assert store.get_refresh_token(token.id).revoked_at == START
        assert store.revoke_refresh_token("missing", START) is False

    def test_revoke_all_counts_only_active(self, store, user):
        active = [_token(user.id, i) for i in range(2)]
        expired = _token(user.id, "expired", expires_in=timedelta(seconds=0))
        revoked = _token(user.id, "revoked")
        for token in (*active, expired, revoked):
            store.save_refresh_token(token)
        store.revoke_refresh_token(revoked.id, START)

        assert store.revoke_all_refresh_tokens(user.id, START) == 2
        assert store.get_refresh_token(expired.id).revoked_at is None


# ---------------------------------------------------------------------------
# TestPasswordResetTokens
# ---------------------------------------------------------------------------


class TestPasswordResetTokens:
    def test_mark_used_once(self, store, user):
        token = PasswordResetToken(user_id=user.id, token="reset-1", expires_at=START + timedelta(minutes=30))
        store.save_password_reset_token(token)
        assert store.get_password_reset_token("reset-1").is_used is False
        assert store.mark_password_reset_token_used(token.id) is True
        assert store.mark_password_reset_token_used(token.id) is False
        assert store.get_password_reset_token("reset-1").is_used is True
