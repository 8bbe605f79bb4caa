"""
auth/rbac.py -- Role/permission resolution and authorization checks.

Resolution walks live principal -> live roles -> live permissions. Stale
junction rows that point at a soft-deleted role or permission resolve to
nothing, and a soft-deleted principal resolves to no roles at all, so
trashing a record revokes its grants without touching the junction tables.

Two styles of check:
  Predicates (has_permission, is_admin, can_act_on_owned_resource) return bool.
  Guards (require_permission, require_owner_or_admin, require_can_grant)
  raise Unauthorized, which the API layer maps to 403.

Admin-equivalence is configuration, not a hard-coded string: any role named
in admin_role_names grants the admin override.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Optional

from sqlalchemy.engine import Connection

from auth.errors import Unauthorized
from auth.models import Role
from auth.store import AuthStore

logger = logging.getLogger("blogapi.auth.rbac")


class RbacEvaluator:
    def __init__(self, store: AuthStore, admin_role_names: Iterable[str] = ("Admin",)) -> None:
        self._store = store
        self.admin_role_names = frozenset(admin_role_names)

    def roles_of(self, principal_id: str, conn: Optional[Connection] = None) -> set[str]:
        return self._store.users.role_names(principal_id, conn=conn)

    def permissions_of(self, principal_id: str, conn: Optional[Connection] = None) -> set[str]:
        """Union of permission names across all of the principal's roles. Zero roles -> empty set."""
        return self._store.users.permission_names(principal_id, conn=conn)

    def has_permission(self, principal_id: str, permission: str, conn: Optional[Connection] = None) -> bool:
        return permission in self.permissions_of(principal_id, conn=conn)

    def is_admin(self, principal_id: str, conn: Optional[Connection] = None) -> bool:
        return bool(self.roles_of(principal_id, conn=conn) & self.admin_role_names)

    @staticmethod
    def can_act_on_owned_resource(principal_id: str, owner_id: str, is_admin_override: bool) -> bool:
        """Owner-or-admin policy for authored resources (posts, comments, profiles)."""
        return principal_id == owner_id or is_admin_override

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def require_permission(self, principal_id: str, permission: str, conn: Optional[Connection] = None) -> None:
        if not self.has_permission(principal_id, permission, conn=conn):
            logger.info("Permission denied: principal=%s permission=%s", principal_id, permission)
            raise Unauthorized(f"Missing permission '{permission}'.")

    def require_owner_or_admin(self, principal_id: str, owner_id: str, conn: Optional[Connection] = None) -> None:
        """Raise Unauthorized unless the principal owns the resource or holds an admin role.

        The role lookup only runs when the principal is not the owner.
        """
        if principal_id == owner_id:
            return
        if not self.can_act_on_owned_resource(principal_id, owner_id, self.is_admin(principal_id, conn=conn)):
            logger.info("Ownership check denied: principal=%s owner=%s", principal_id, owner_id)
            raise Unauthorized("Only the owner or an administrator may perform this action.")

    def require_can_grant(self, actor_id: str, target_id: str, role: Role, conn: Optional[Connection] = None) -> None:
        """Raise Unauthorized unless actor_id may give role to, or take it from, target_id.

        Admins manage any role. A delegate holding only users.manage.roles is
        confined to non-admin roles whose permissions it already holds, and may
        not grant itself a role it does not have.
        """
        if self.is_admin(actor_id, conn=conn):
            return
        if role.name in self.admin_role_names:
            logger.warning("Blocked non-admin principal=%s managing admin role=%s", actor_id, role.name)
            raise Unauthorized("Only an administrator may manage administrator roles.")
        if actor_id == target_id and role.name not in self.roles_of(actor_id, conn=conn):
            logger.warning("Blocked self-grant: principal=%s role=%s", actor_id, role.name)
            raise Unauthorized("You may not grant yourself a role you do not hold.")
        carried = {p.name for p in self._store.permissions.for_role(role.id, conn=conn)}
        if not carried <= self.permissions_of(actor_id, conn=conn):
            logger.warning("Blocked grant beyond own permissions: principal=%s role=%s", actor_id, role.name)
            raise Unauthorized("Role carries permissions you do not hold.")
