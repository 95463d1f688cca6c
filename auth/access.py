"""
auth/access.py -- Role/privilege resolution and authorization checks.

A user holds exactly one role; a role holds any number of privileges. A
user's effective privileges are the names attached to their role, read from
the store on every call, so granting a privilege to a role takes effect on
the next check without touching any user record.

Role and privilege mutation also lives here: it is the only place that
writes the role -> privilege graph, and it maps storage uniqueness failures
to ConflictError.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from auth.errors import ConflictError, NotFoundError, PermissionDeniedError
from auth.guard import AccountGuard
from auth.models import Privilege, Role, User
from auth.store import IdentityStore

logger = logging.getLogger("credcore.auth.access")


class AccessControlResolver:
    def __init__(self, store: IdentityStore, guard: AccountGuard | None = None) -> None:
        self.store = store
        self.guard = guard or AccountGuard()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def effective_privileges(self, user: User) -> frozenset[str]:
        role = self.store.get_role_with_privileges(user.role_id)
        if role is None:
            return frozenset()
        return role.privilege_names()

    def authorize(self, user: User, privilege: str) -> bool:
        """True iff the user is active, not locked out, and their role grants privilege."""
        if not user.is_active or self.guard.is_locked_out(user):
            return False
        return privilege in self.effective_privileges(user)

    def require(self, user: User, privilege: str) -> None:
        if not self.authorize(user, privilege):
            logger.info("Authorization denied user_id=%s privilege=%s", user.id, privilege)
            raise PermissionDeniedError(f"Privilege '{privilege}' is required.", detail={"privilege": privilege})

    def role_code(self, user: User) -> str:
        role = self.store.get_role(user.role_id)
        return role.code if role is not None else ""

    def default_role(self) -> Role | None:
        return self.store.get_default_role()

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def create_role(self, name: str, code: str, description: str, is_default: bool = False) -> Role:
        role = Role(name=name, code=code, description=description, is_default=is_default)
        try:
            self.store.create_role(role)
        except IntegrityError as exc:
            raise ConflictError("A role with that name or code already exists.") from exc
        return role

    def rename_role(self, role_id: int, new_name: str) -> Role:
        role = self._role(role_id)
        role.rename(new_name)
        return self._save_role(role)

    def change_role_code(self, role_id: int, new_code: str) -> Role:
        role = self._role(role_id)
        role.change_code(new_code)
        return self._save_role(role)

    def change_role_description(self, role_id: int, new_description: str) -> Role:
        role = self._role(role_id)
        role.change_description(new_description)
        return self._save_role(role)

    # ------------------------------------------------------------------
    # Privileges
    # ------------------------------------------------------------------

    def create_privilege(self, name: str) -> Privilege:
        privilege = Privilege(name=name)
        try:
            self.store.create_privilege(privilege)
        except IntegrityError as exc:
            raise ConflictError("A privilege with that name already exists.") from exc
        return privilege

    def rename_privilege(self, privilege_id: int, new_name: str) -> Privilege:
        privilege = self.store.get_privilege(privilege_id)
        if privilege is None:
            raise NotFoundError("Privilege not found.")
        privilege.rename(new_name)
        try:
            self.store.update_privilege(privilege)
        except IntegrityError as exc:
            raise ConflictError("A privilege with that name already exists.") from exc
        return privilege

    def grant(self, role_id: int, privilege_id: int) -> bool:
        """Attach a privilege to a role. Returns False if it was already attached."""
        self._role(role_id)
        if self.store.get_privilege(privilege_id) is None:
            raise NotFoundError("Privilege not found.")
        return self.store.add_privilege_to_role(role_id, privilege_id)

    def revoke_privilege(self, role_id: int, privilege_id: int) -> bool:
        return self.store.remove_privilege_from_role(role_id, privilege_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _role(self, role_id: int) -> Role:
        role = self.store.get_role(role_id)
        if role is None:
            raise NotFoundError("Role not found.")
        return role

    def _save_role(self, role: Role) -> Role:
        try:
            self.store.update_role(role)
        except IntegrityError as exc:
            raise ConflictError("A role with that name or code already exists.") from exc
        return role
