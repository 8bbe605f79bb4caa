"""
auth/management.py -- Administrative operations on roles, permissions, and principals.

Every rule violation raises an AuthError subclass BEFORE any write happens, so
a rejected call leaves no partial state:

  NotFound / PrincipalNotFound -- target is missing or soft-deleted
  ValidationFailed             -- bad input, name collision, or a delete that
                                  would orphan live references
  DuplicatePrincipal           -- username/email collision among live users
  Forbidden                    -- mutation of a system role's identity or
                                  emptying its permission set

Operations that change more than one row (password change + token revocation,
permission-set replacement, deactivation) share one connection and commit once.

Authorization (who may call these) is the API layer's job, with one exception:
role grants depend on the role being granted, so assign_role / remove_role take
the acting principal and run RbacEvaluator.require_can_grant before writing.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.credentials import CredentialStore
from auth.errors import (
    CorruptHashError,
    DuplicatePrincipal,
    Forbidden,
    NotFound,
    PrincipalNotFound,
    ValidationFailed,
)
from auth.ledger import RefreshTokenLedger
from auth.models import Permission, Role, User
from auth.rbac import RbacEvaluator
from auth.service import (
    DUPLICATE_PRINCIPAL_MESSAGE,
    validate_identity,
    validate_password_policy,
)
from auth.store import AuthStore

logger = logging.getLogger("blogapi.auth.management")

MAX_ROLE_NAME_LENGTH = 100
MAX_PERMISSION_NAME_LENGTH = 100


def _clean_name(value: Optional[str], label: str, max_length: int) -> str:
    name = (value or "").strip()
    if not name:
        raise ValidationFailed(f"{label} name is required.")
    if len(name) > max_length:
        raise ValidationFailed(f"{label} name must be at most {max_length} characters.")
    return name


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


class RoleManager:
    def __init__(self, store: AuthStore) -> None:
        self._store = store

    def list_all(self) -> list[Role]:
        return self._store.roles.get_all()

    def list_trashed(self) -> list[Role]:
        return self._store.roles.get_trashed()

    def get(self, role_id: str) -> Role:
        role = self._store.roles.get(role_id)
        if role is None:
            raise NotFound("Role not found.")
        return role

    def get_by_name(self, name: str) -> Role:
        role = self._store.roles.get_by_name(name)
        if role is None:
            raise NotFound(f"Role '{name}' not found.")
        return role

    def create(self, name: str, description: str = "", is_system: bool = False) -> Role:
        name = _clean_name(name, "Role", MAX_ROLE_NAME_LENGTH)
        if self._store.roles.get_by_name(name) is not None:
            raise ValidationFailed(f"Role with name '{name}' already exists")
        role = Role(name=name, description=(description or "").strip(), is_system=is_system)
        try:
            self._store.roles.add(role)
        except IntegrityError as exc:
            raise ValidationFailed(f"Role with name '{name}' already exists") from exc
        logger.info("Created role id=%s name=%s", role.id, name)
        return role

    def update(self, role_id: str, name: Optional[str] = None, description: Optional[str] = None) -> Role:
        role = self.get(role_id)
        if name is not None:
            new_name = _clean_name(name, "Role", MAX_ROLE_NAME_LENGTH)
            if new_name != role.name:
                if role.is_system:
                    raise Forbidden("System roles cannot be renamed.")
                if self._store.roles.get_by_name(new_name) is not None:
                    raise ValidationFailed(f"Role with name '{new_name}' already exists")
                role.name = new_name
        if description is not None:
            role.description = description.strip()
        try:
            self._store.roles.update(role)
        except IntegrityError as exc:
            raise ValidationFailed(f"Role with name '{role.name}' already exists") from exc
        return role

    def delete(self, role_id: str) -> None:
        role = self.get(role_id)
        if role.is_system:
            raise Forbidden("System roles cannot be deleted.")
        if self._store.roles.member_count(role.id) > 0:
            raise ValidationFailed("Cannot delete role that has associated users")
        self._store.roles.soft_delete(role)
        logger.info("Soft-deleted role id=%s name=%s", role.id, role.name)

    def restore(self, role_id: str) -> Role:
        role = self._store.roles.get_trashed_by_id(role_id)
        if role is None:
            raise NotFound("No deleted role with that id.")
        if self._store.roles.get_by_name(role.name) is not None:
            raise ValidationFailed(f"A live role named '{role.name}' already exists")
        self._store.roles.restore(role)
        logger.info("Restored role id=%s name=%s", role.id, role.name)
        return role

    # ------------------------------------------------------------------
    # Permission set
    # ------------------------------------------------------------------

    def permissions_of_role(self, role_id: str) -> list[Permission]:
        role = self.get(role_id)
        return self._store.permissions.for_role(role.id)

    def assign_permission(self, role_id: str, permission_id: str) -> bool:
        """Grant a permission. Returns False if it was already granted (no-op)."""
        role = self.get(role_id)
        if self._store.permissions.get(permission_id) is None:
            raise NotFound("Permission not found.")
        return self._store.roles.add_permission(role.id, permission_id)

    def remove_permission(self, role_id: str, permission_id: str) -> bool:
        role = self.get(role_id)
        if role.is_system:
            granted = {p.id for p in self._store.permissions.for_role(role.id)}
            if granted == {permission_id}:
                raise Forbidden("A system role must keep at least one permission.")
        return self._store.roles.remove_permission(role.id, permission_id)

    def replace_permissions(self, role_id: str, permission_ids: Iterable[str]) -> list[Permission]:
        """Set the role's permissions to exactly permission_ids, atomically."""
        role = self.get(role_id)
        wanted = list(dict.fromkeys(permission_ids))
        if role.is_system and not wanted:
            raise Forbidden("A system role must keep at least one permission.")
        with self._store.engine.connect() as conn:
            for permission_id in wanted:
                if self._store.permissions.get(permission_id, conn=conn) is None:
                    raise NotFound(f"Permission {permission_id} not found.")
            self._store.roles.clear_permissions(role.id, conn=conn)
            for permission_id in wanted:
                self._store.roles.add_permission(role.id, permission_id, conn=conn)
            self._store.roles.update(role, conn=conn)
            conn.commit()
        return self._store.permissions.for_role(role.id)


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


class PermissionManager:
    def __init__(self, store: AuthStore) -> None:
        self._store = store

    def list_all(self) -> list[Permission]:
        return self._store.permissions.get_all()

    def get(self, permission_id: str) -> Permission:
        permission = self._store.permissions.get(permission_id)
        if permission is None:
            raise NotFound("Permission not found.")
        return permission

    def get_by_name(self, name: str) -> Permission:
        permission = self._store.permissions.get_by_name(name)
        if permission is None:
            raise NotFound(f"Permission '{name}' not found.")
        return permission

    def by_resource(self, resource: str) -> list[Permission]:
        return self._store.permissions.by_resource(resource)

    def by_category(self, category: str) -> list[Permission]:
        return self._store.permissions.by_category(category)

    def create(
        self,
        name: str,
        resource: str = "",
        action: str = "",
        category: str = "",
        description: str = "",
    ) -> Permission:
        name = _clean_name(name, "Permission", MAX_PERMISSION_NAME_LENGTH)
        if self._store.permissions.name_taken(name):
            raise ValidationFailed(f"Permission with name '{name}' already exists")
        permission = Permission(
            name=name,
            resource=(resource or "").strip(),
            action=(action or "").strip(),
            category=(category or "").strip(),
            description=(description or "").strip(),
        )
        try:
            self._store.permissions.add(permission)
        except IntegrityError as exc:
            raise ValidationFailed(f"Permission with name '{name}' already exists") from exc
        logger.info("Created permission id=%s name=%s", permission.id, name)
        return permission

    def update(
        self,
        permission_id: str,
        name: Optional[str] = None,
        resource: Optional[str] = None,
        action: Optional[str] = None,
        category: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Permission:
        permission = self.get(permission_id)
        if name is not None:
            new_name = _clean_name(name, "Permission", MAX_PERMISSION_NAME_LENGTH)
            if new_name != permission.name and self._store.permissions.name_taken(new_name, exclude_id=permission.id):
                raise ValidationFailed(f"Permission with name '{new_name}' already exists")
            permission.name = new_name
        if resource is not None:
            permission.resource = resource.strip()
        if action is not None:
            permission.action = action.strip()
        if category is not None:
            permission.category = category.strip()
        if description is not None:
            permission.description = description.strip()
        try:
            self._store.permissions.update(permission)
        except IntegrityError as exc:
            raise ValidationFailed(f"Permission with name '{permission.name}' already exists") from exc
        return permission

    def delete(self, permission_id: str) -> None:
        permission = self.get(permission_id)
        if self._store.permissions.assignment_count(permission.id) > 0:
            raise ValidationFailed("Cannot delete permission that is assigned to roles")
        self._store.permissions.soft_delete(permission)
        logger.info("Soft-deleted permission id=%s name=%s", permission.id, permission.name)


# ---------------------------------------------------------------------------
# Principals
# ---------------------------------------------------------------------------


class PrincipalManager:
    def __init__(
        self,
        store: AuthStore,
        credentials: CredentialStore,
        ledger: RefreshTokenLedger,
        rbac: RbacEvaluator,
    ) -> None:
        self._store = store
        self._credentials = credentials
        self._ledger = ledger
        self._rbac = rbac

    def get(self, principal_id: str) -> User:
        user = self._store.users.get(principal_id)
        if user is None:
            raise PrincipalNotFound("User not found.")
        return user

    def get_by_username(self, username: str) -> User:
        user = self._store.users.get_by_username(username or "")
        if user is None:
            raise PrincipalNotFound("User not found.")
        return user

    def get_by_email(self, email: str) -> User:
        user = self._store.users.get_by_email(email or "")
        if user is None:
            raise PrincipalNotFound("User not found.")
        return user

    def create(
        self,
        username: str,
        email: str,
        password: str,
        first_name: str = "",
        last_name: str = "",
    ) -> User:
        """Administrator-created account. Same rules as self-registration, no tokens issued."""
        username = (username or "").strip()
        email = (email or "").strip()
        problem = validate_identity(username, email) or validate_password_policy(password or "")
        if problem is not None:
            raise ValidationFailed(problem)
        if self._store.users.identity_taken(email, username):
            raise DuplicatePrincipal(DUPLICATE_PRINCIPAL_MESSAGE)
        user = User(
            username=username,
            email=email,
            password_hash=self._credentials.hash(password),
            first_name=(first_name or "").strip(),
            last_name=(last_name or "").strip(),
        )
        try:
            self._store.users.add(user)
        except IntegrityError as exc:
            raise DuplicatePrincipal(DUPLICATE_PRINCIPAL_MESSAGE) from exc
        logger.info("Created principal id=%s username=%s", user.id, username)
        return user

    def list_all(self) -> list[User]:
        return self._store.users.get_all()

    def list_active(self) -> list[User]:
        return self._store.users.list_active()

    def list_trashed(self) -> list[User]:
        return self._store.users.get_trashed()

    def list_by_role(self, role_id: str) -> list[User]:
        if self._store.roles.get(role_id) is None:
            raise NotFound("Role not found.")
        return self._store.users.list_by_role(role_id)

    def roles_of(self, principal_id: str) -> list[Role]:
        user = self.get(principal_id)
        role_ids = self._store.users.role_ids(user.id)
        return [role for role in self._store.roles.get_all() if role.id in role_ids]

    def update_profile(
        self,
        principal_id: str,
        username: Optional[str] = None,
        email: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        bio: Optional[str] = None,
    ) -> User:
        """Edit identity and profile fields. Changing the email resets its confirmation."""
        user = self.get(principal_id)
        new_username = username.strip() if username is not None else user.username
        new_email = email.strip() if email is not None else user.email

        problem = validate_identity(new_username, new_email)
        if problem is not None:
            raise ValidationFailed(problem)
        if self._store.users.identity_taken(new_email, new_username, exclude_id=user.id):
            raise DuplicatePrincipal(DUPLICATE_PRINCIPAL_MESSAGE)

        if new_email.lower() != user.email.lower():
            user.is_email_confirmed = False
        user.username = new_username
        user.email = new_email
        if first_name is not None:
            user.first_name = first_name.strip()
        if last_name is not None:
            user.last_name = last_name.strip()
        if bio is not None:
            user.bio = bio
        try:
            self._store.users.update(user)
        except IntegrityError as exc:
            raise DuplicatePrincipal(DUPLICATE_PRINCIPAL_MESSAGE) from exc
        return user

    def change_password(self, principal_id: str, new_password: str, current_password: Optional[str] = None) -> int:
        """Set a new password and revoke every refresh token. Returns how many were revoked.

        When current_password is given (self-service), it must verify first.
        """
        user = self.get(principal_id)
        if current_password is not None:
            try:
                verified = self._credentials.verify(current_password, user.password_hash)
            except CorruptHashError:
                logger.error("Stored password hash for principal id=%s is malformed", user.id)
                verified = False
            if not verified:
                raise ValidationFailed("Current password is incorrect.")
        problem = validate_password_policy(new_password or "")
        if problem is not None:
            raise ValidationFailed(problem)

        user.password_hash = self._credentials.hash(new_password)
        with self._store.engine.connect() as conn:
            self._store.users.update(user, conn=conn)
            revoked = self._ledger.revoke_all(user.id, conn=conn)
            conn.commit()
        logger.info("Password changed for principal id=%s", user.id)
        return revoked

    def set_active(self, principal_id: str, active: bool) -> User:
        """Activate or deactivate. Deactivation also revokes every refresh token."""
        user = self.get(principal_id)
        if user.is_active == active:
            return user
        user.is_active = active
        with self._store.engine.connect() as conn:
            self._store.users.update(user, conn=conn)
            if not active:
                self._ledger.revoke_all(user.id, conn=conn)
            conn.commit()
        logger.info("Principal id=%s %s", user.id, "activated" if active else "deactivated")
        return user

    def confirm_email(self, principal_id: str) -> User:
        user = self.get(principal_id)
        if not user.is_email_confirmed:
            user.is_email_confirmed = True
            self._store.users.update(user)
        return user

    def assign_role(self, principal_id: str, role_id: str, granted_by: Optional[str] = None) -> bool:
        """Returns False if the principal already held the role (no-op).

        granted_by is the acting principal; None means a trusted caller (CLI, seeding).
        """
        user = self.get(principal_id)
        role = self._store.roles.get(role_id)
        if role is None:
            raise NotFound("Role not found.")
        if granted_by is not None:
            self._rbac.require_can_grant(granted_by, user.id, role)
        added = self._store.users.add_role(user.id, role.id)
        if added:
            logger.info("Assigned role id=%s to principal id=%s", role.id, user.id)
        return added

    def remove_role(self, principal_id: str, role_id: str, removed_by: Optional[str] = None) -> bool:
        user = self.get(principal_id)
        if removed_by is not None:
            role = self._store.roles.get(role_id)
            if role is None:
                raise NotFound("Role not found.")
            self._rbac.require_can_grant(removed_by, user.id, role)
        removed = self._store.users.remove_role(user.id, role_id)
        if removed:
            logger.info("Removed role id=%s from principal id=%s", role_id, user.id)
        return removed

    def soft_delete(self, principal_id: str) -> None:
        """Trash a principal and revoke its refresh tokens in one transaction."""
        user = self.get(principal_id)
        with self._store.engine.connect() as conn:
            self._ledger.revoke_all(user.id, conn=conn)
            self._store.users.soft_delete(user, conn=conn)
            conn.commit()
        logger.info("Soft-deleted principal id=%s", user.id)

    def restore(self, principal_id: str) -> User:
        """Bring a trashed principal back, unless a live principal took its identity meanwhile."""
        user = self._store.users.get_trashed_by_id(principal_id)
        if user is None:
            raise PrincipalNotFound("No deleted user with that id.")
        if self._store.users.identity_taken(user.email, user.username):
            raise DuplicatePrincipal(DUPLICATE_PRINCIPAL_MESSAGE)
        try:
            self._store.users.restore(user)
        except IntegrityError as exc:
            raise DuplicatePrincipal(DUPLICATE_PRINCIPAL_MESSAGE) from exc
        logger.info("Restored principal id=%s", user.id)
        return user
