"""
Tests for auth/management.py -- role, permission and principal administration.

Covers:
  RoleManager:
    - create / duplicate name / rename rules for system roles
    - delete: system roles forbidden, roles with live members refused,
      restore brings a trashed role back
    - permission set: assign (idempotent), remove, replace atomically,
      system roles keep at least one permission
  PermissionManager:
    - create / global name uniqueness (trash included)
    - delete refused while assigned to a live role
    - lookup by resource and category
  PrincipalManager:
    - create (no tokens), update_profile with identity collisions and email
      confirmation reset, change_password revokes tokens, set_active,
      soft_delete revokes tokens, restore refuses a reused identity
  Role grants with an acting principal:
    - a users.manage.roles delegate cannot hand out or strip admin roles,
      cannot self-grant, and cannot grant permissions it does not hold
    - admins grant anything
"""

import pytest

from auth.credentials import CredentialStore
from auth.errors import (
    DuplicatePrincipal,
    Forbidden,
    NotFound,
    PrincipalNotFound,
    Unauthorized,
    ValidationFailed,
)
from auth.ledger import RefreshTokenLedger
from auth.management import PermissionManager, PrincipalManager, RoleManager
from auth.rbac import RbacEvaluator
from auth.store import AuthStore


@pytest.fixture
def roles(store: AuthStore) -> RoleManager:
    return RoleManager(store)


@pytest.fixture
def permissions(store: AuthStore) -> PermissionManager:
    return PermissionManager(store)


@pytest.fixture
def principals(
    store: AuthStore, credentials: CredentialStore, ledger: RefreshTokenLedger, rbac: RbacEvaluator
) -> PrincipalManager:
    return PrincipalManager(store, credentials, ledger, rbac)


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


class TestRoleManager:
    def test_create_and_get(self, roles: RoleManager) -> None:
        role = roles.create("  Editor ", "Edits things")
        assert role.name == "Editor"
        assert roles.get(role.id).description == "Edits things"
        assert roles.get_by_name("Editor").id == role.id

    def test_create_duplicate_name(self, roles: RoleManager, catalog: dict) -> None:
        with pytest.raises(ValidationFailed):
            roles.create("Author")

    def test_create_requires_name(self, roles: RoleManager) -> None:
        with pytest.raises(ValidationFailed):
            roles.create("   ")

    def test_get_missing(self, roles: RoleManager) -> None:
        with pytest.raises(NotFound):
            roles.get("missing")

    def test_rename_custom_role(self, roles: RoleManager) -> None:
        role = roles.create("Editor")
        assert roles.update(role.id, name="Copy Editor").name == "Copy Editor"

    def test_rename_system_role_forbidden(self, roles: RoleManager, catalog: dict) -> None:
        with pytest.raises(Forbidden):
            roles.update(catalog["roles"]["Admin"].id, name="Superuser")

    def test_system_role_description_is_editable(self, roles: RoleManager, catalog: dict) -> None:
        updated = roles.update(catalog["roles"]["Admin"].id, name="Admin", description="Full access")
        assert updated.description == "Full access"

    def test_rename_onto_existing_name(self, roles: RoleManager, catalog: dict) -> None:
        role = roles.create("Editor")
        with pytest.raises(ValidationFailed):
            roles.update(role.id, name="Reader")

    def test_delete_system_role_forbidden(self, roles: RoleManager, catalog: dict) -> None:
        with pytest.raises(Forbidden):
            roles.delete(catalog["roles"]["Reader"].id)

    def test_delete_role_with_members_refused(self, roles: RoleManager, make_user) -> None:
        role = roles.create("Editor")
        make_user("ed", "ed@example.com", "pass-word-1", role)
        with pytest.raises(ValidationFailed, match="associated users"):
            roles.delete(role.id)

    def test_delete_and_restore(self, roles: RoleManager) -> None:
        role = roles.create("Editor")
        roles.delete(role.id)

        assert [r.id for r in roles.list_trashed()] == [role.id]
        with pytest.raises(NotFound):
            roles.get(role.id)

        restored = roles.restore(role.id)
        assert restored.lifecycle.is_deleted is False
        assert roles.get(role.id).name == "Editor"

    def test_restore_blocked_by_live_namesake(self, roles: RoleManager) -> None:
        role = roles.create("Editor")
        roles.delete(role.id)
        roles.create("Editor")
        with pytest.raises(ValidationFailed):
            roles.restore(role.id)

    def test_restore_unknown(self, roles: RoleManager) -> None:
        with pytest.raises(NotFound):
            roles.restore("missing")


class TestRolePermissions:
    def test_assign_is_idempotent(self, roles: RoleManager, catalog: dict) -> None:
        role = roles.create("Editor")
        perm = catalog["permissions"]["posts.publish"]
        assert roles.assign_permission(role.id, perm.id) is True
        assert roles.assign_permission(role.id, perm.id) is False
        assert [p.name for p in roles.permissions_of_role(role.id)] == ["posts.publish"]

    def test_assign_unknown_permission(self, roles: RoleManager) -> None:
        role = roles.create("Editor")
        with pytest.raises(NotFound):
            roles.assign_permission(role.id, "missing")

    def test_remove_permission(self, roles: RoleManager, catalog: dict) -> None:
        role = roles.create("Editor")
        perm = catalog["permissions"]["posts.publish"]
        roles.assign_permission(role.id, perm.id)
        assert roles.remove_permission(role.id, perm.id) is True
        assert roles.permissions_of_role(role.id) == []

    def test_system_role_keeps_last_permission(self, roles: RoleManager, permissions: PermissionManager) -> None:
        role = roles.create("Auditor", is_system=True)
        perm = permissions.create("audit.read")
        roles.assign_permission(role.id, perm.id)
        with pytest.raises(Forbidden):
            roles.remove_permission(role.id, perm.id)

    def test_replace_permissions(self, roles: RoleManager, catalog: dict) -> None:
        perms = catalog["permissions"]
        role = catalog["roles"]["Reader"]
        result = roles.replace_permissions(role.id, [perms["posts.read"].id, perms["posts.create"].id])
        assert {p.name for p in result} == {"posts.read", "posts.create"}

    def test_replace_with_unknown_permission_changes_nothing(self, roles: RoleManager, catalog: dict) -> None:
        role = catalog["roles"]["Reader"]
        before = {p.id for p in roles.permissions_of_role(role.id)}
        with pytest.raises(NotFound):
            roles.replace_permissions(role.id, [catalog["permissions"]["posts.create"].id, "missing"])
        assert {p.id for p in roles.permissions_of_role(role.id)} == before

    def test_replace_system_role_with_empty_set_forbidden(self, roles: RoleManager, catalog: dict) -> None:
        with pytest.raises(Forbidden):
            roles.replace_permissions(catalog["roles"]["Author"].id, [])

    def test_replace_custom_role_with_empty_set(self, roles: RoleManager, catalog: dict) -> None:
        role = roles.create("Editor")
        roles.assign_permission(role.id, catalog["permissions"]["posts.read"].id)
        assert roles.replace_permissions(role.id, []) == []


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


class TestPermissionManager:
    def test_create_and_lookup(self, permissions: PermissionManager) -> None:
        perm = permissions.create("comments.moderate", resource="Comments", action="Moderate", category="Content")
        assert permissions.get(perm.id).name == "comments.moderate"
        assert permissions.get_by_name("comments.moderate").id == perm.id
        assert [p.id for p in permissions.by_resource("Comments")] == [perm.id]
        assert [p.id for p in permissions.by_category("Content")] == [perm.id]

    def test_duplicate_name(self, permissions: PermissionManager, catalog: dict) -> None:
        with pytest.raises(ValidationFailed):
            permissions.create("posts.read")

    def test_trashed_name_still_taken(self, permissions: PermissionManager) -> None:
        perm = permissions.create("comments.moderate")
        permissions.delete(perm.id)
        with pytest.raises(ValidationFailed):
            permissions.create("comments.moderate")

    def test_delete_assigned_permission_refused(self, permissions: PermissionManager, catalog: dict) -> None:
        with pytest.raises(ValidationFailed, match="assigned to roles"):
            permissions.delete(catalog["permissions"]["posts.read"].id)

    def test_update(self, permissions: PermissionManager) -> None:
        perm = permissions.create("comments.moderate")
        updated = permissions.update(perm.id, name="comments.review", description="Review comments")
        assert updated.name == "comments.review"
        assert permissions.get_by_name("comments.review").description == "Review comments"

    def test_rename_onto_existing(self, permissions: PermissionManager, catalog: dict) -> None:
        perm = permissions.create("comments.moderate")
        with pytest.raises(ValidationFailed):
            permissions.update(perm.id, name="posts.read")

    def test_get_missing(self, permissions: PermissionManager) -> None:
        with pytest.raises(NotFound):
            permissions.get("missing")


# ---------------------------------------------------------------------------
# Principals
# ---------------------------------------------------------------------------


class TestPrincipalManager:
    def test_create_issues_no_tokens(
        self, principals: PrincipalManager, ledger: RefreshTokenLedger, credentials: CredentialStore
    ) -> None:
        user = principals.create("ed", "ed@example.com", "pass-word-1", first_name="Ed")
        assert ledger.active_for(user.id) == []
        assert credentials.verify("pass-word-1", user.password_hash)
        assert user.first_name == "Ed"

    def test_create_duplicate(self, principals: PrincipalManager) -> None:
        principals.create("ed", "ed@example.com", "pass-word-1")
        with pytest.raises(DuplicatePrincipal):
            principals.create("ED", "another@example.com", "pass-word-1")

    def test_create_weak_password(self, principals: PrincipalManager) -> None:
        with pytest.raises(ValidationFailed):
            principals.create("ed", "ed@example.com", "short")

    def test_get_missing(self, principals: PrincipalManager) -> None:
        with pytest.raises(PrincipalNotFound):
            principals.get("missing")

    def test_update_profile(self, principals: PrincipalManager) -> None:
        user = principals.create("ed", "ed@example.com", "pass-word-1")
        updated = principals.update_profile(user.id, first_name="Edward", bio="Writes about tea")
        assert updated.first_name == "Edward"
        assert principals.get(user.id).bio == "Writes about tea"

    def test_email_change_resets_confirmation(self, principals: PrincipalManager) -> None:
        user = principals.create("ed", "ed@example.com", "pass-word-1")
        principals.confirm_email(user.id)
        assert principals.get(user.id).is_email_confirmed is True

        principals.update_profile(user.id, email="ed@new.example.com")
        assert principals.get(user.id).is_email_confirmed is False

    def test_email_case_change_keeps_confirmation(self, principals: PrincipalManager) -> None:
        user = principals.create("ed", "ed@example.com", "pass-word-1")
        principals.confirm_email(user.id)
        principals.update_profile(user.id, email="Ed@Example.com")
        assert principals.get(user.id).is_email_confirmed is True

    def test_update_onto_taken_identity(self, principals: PrincipalManager) -> None:
        principals.create("ed", "ed@example.com", "pass-word-1")
        other = principals.create("al", "al@example.com", "pass-word-1")
        with pytest.raises(DuplicatePrincipal):
            principals.update_profile(other.id, email="ED@example.com")

    def test_change_password_revokes_tokens(
        self, principals: PrincipalManager, ledger: RefreshTokenLedger, credentials: CredentialStore
    ) -> None:
        user = principals.create("ed", "ed@example.com", "pass-word-1")
        ledger.issue(user.id)
        ledger.issue(user.id)

        assert principals.change_password(user.id, "new-pass-word", current_password="pass-word-1") == 2
        assert ledger.active_for(user.id) == []
        assert credentials.verify("new-pass-word", principals.get(user.id).password_hash)

    def test_change_password_wrong_current(self, principals: PrincipalManager, ledger: RefreshTokenLedger) -> None:
        user = principals.create("ed", "ed@example.com", "pass-word-1")
        ledger.issue(user.id)
        with pytest.raises(ValidationFailed, match="Current password is incorrect"):
            principals.change_password(user.id, "new-pass-word", current_password="wrong-one")
        assert len(ledger.active_for(user.id)) == 1

    def test_change_password_policy(self, principals: PrincipalManager) -> None:
        user = principals.create("ed", "ed@example.com", "pass-word-1")
        with pytest.raises(ValidationFailed):
            principals.change_password(user.id, "short")

    def test_deactivate_revokes_tokens(self, principals: PrincipalManager, ledger: RefreshTokenLedger) -> None:
        user = principals.create("ed", "ed@example.com", "pass-word-1")
        ledger.issue(user.id)
        assert principals.set_active(user.id, False).is_active is False
        assert ledger.active_for(user.id) == []
        assert principals.list_active() == []
        assert principals.set_active(user.id, True).is_active is True

    def test_role_assignment(self, principals: PrincipalManager, catalog: dict) -> None:
        user = principals.create("ed", "ed@example.com", "pass-word-1")
        author = catalog["roles"]["Author"]
        assert principals.assign_role(user.id, author.id) is True
        assert principals.assign_role(user.id, author.id) is False
        assert [r.name for r in principals.roles_of(user.id)] == ["Author"]
        assert [u.id for u in principals.list_by_role(author.id)] == [user.id]

        assert principals.remove_role(user.id, author.id) is True
        assert principals.roles_of(user.id) == []

    def test_assign_unknown_role(self, principals: PrincipalManager) -> None:
        user = principals.create("ed", "ed@example.com", "pass-word-1")
        with pytest.raises(NotFound):
            principals.assign_role(user.id, "missing")

    def test_soft_delete_revokes_tokens(self, principals: PrincipalManager, ledger: RefreshTokenLedger) -> None:
        user = principals.create("ed", "ed@example.com", "pass-word-1")
        value = ledger.issue(user.id).value
        principals.soft_delete(user.id)

        assert [u.id for u in principals.list_trashed()] == [user.id]
        assert ledger.redeem(value).ok is False
        with pytest.raises(PrincipalNotFound):
            principals.get(user.id)

    def test_restore(self, principals: PrincipalManager) -> None:
        user = principals.create("ed", "ed@example.com", "pass-word-1")
        principals.soft_delete(user.id)
        assert principals.restore(user.id).id == user.id
        assert principals.get(user.id).username == "ed"

    def test_restore_blocked_by_reused_identity(self, principals: PrincipalManager) -> None:
        user = principals.create("ed", "ed@example.com", "pass-word-1")
        principals.soft_delete(user.id)
        principals.create("ed", "ed@example.com", "pass-word-1")
        with pytest.raises(DuplicatePrincipal):
            principals.restore(user.id)

    def test_restore_live_principal(self, principals: PrincipalManager) -> None:
        user = principals.create("ed", "ed@example.com", "pass-word-1")
        with pytest.raises(PrincipalNotFound):
            principals.restore(user.id)


class TestRoleGrants:
    """assign_role / remove_role with an acting principal."""

    @pytest.fixture
    def helpdesk(self, roles: RoleManager, catalog: dict, make_user):
        role = roles.create("Helpdesk", "Role triage")
        for name in ("users.manage.roles", "posts.read", "users.update.own"):
            roles.assign_permission(role.id, catalog["permissions"][name].id)
        return make_user("desk", "desk@example.com", "pass-word-1", role)

    def test_delegate_cannot_grant_admin_to_self(
        self, principals: PrincipalManager, catalog: dict, helpdesk, rbac: RbacEvaluator
    ) -> None:
        with pytest.raises(Unauthorized):
            principals.assign_role(helpdesk.id, catalog["roles"]["Admin"].id, granted_by=helpdesk.id)
        assert rbac.is_admin(helpdesk.id) is False

    def test_delegate_cannot_grant_admin_to_others(
        self, principals: PrincipalManager, catalog: dict, helpdesk, make_user, rbac: RbacEvaluator
    ) -> None:
        friend = make_user("friend", "friend@example.com")
        with pytest.raises(Unauthorized):
            principals.assign_role(friend.id, catalog["roles"]["Admin"].id, granted_by=helpdesk.id)
        assert rbac.roles_of(friend.id) == set()

    def test_delegate_cannot_grant_self_a_role_it_lacks(
        self, principals: PrincipalManager, catalog: dict, helpdesk
    ) -> None:
        with pytest.raises(Unauthorized):
            principals.assign_role(helpdesk.id, catalog["roles"]["Reader"].id, granted_by=helpdesk.id)

    def test_delegate_cannot_grant_permissions_it_lacks(
        self, principals: PrincipalManager, catalog: dict, helpdesk, make_user
    ) -> None:
        friend = make_user("friend", "friend@example.com")
        with pytest.raises(Unauthorized):
            principals.assign_role(friend.id, catalog["roles"]["Moderator"].id, granted_by=helpdesk.id)

    def test_delegate_grants_role_within_its_permissions(
        self, principals: PrincipalManager, catalog: dict, helpdesk, make_user, rbac: RbacEvaluator
    ) -> None:
        friend = make_user("friend", "friend@example.com")
        assert principals.assign_role(friend.id, catalog["roles"]["Reader"].id, granted_by=helpdesk.id) is True
        assert rbac.roles_of(friend.id) == {"Reader"}
        assert principals.remove_role(friend.id, catalog["roles"]["Reader"].id, removed_by=helpdesk.id) is True

    def test_delegate_cannot_strip_admin(
        self, principals: PrincipalManager, catalog: dict, helpdesk, make_user, rbac: RbacEvaluator
    ) -> None:
        admin = make_user("boss", "boss@example.com", "pass-word-1", catalog["roles"]["Admin"])
        with pytest.raises(Unauthorized):
            principals.remove_role(admin.id, catalog["roles"]["Admin"].id, removed_by=helpdesk.id)
        assert rbac.is_admin(admin.id) is True

    def test_admin_grants_any_role(
        self, principals: PrincipalManager, catalog: dict, make_user, rbac: RbacEvaluator
    ) -> None:
        admin = make_user("boss", "boss@example.com", "pass-word-1", catalog["roles"]["Admin"])
        peer = make_user("peer", "peer@example.com")
        assert principals.assign_role(peer.id, catalog["roles"]["Admin"].id, granted_by=admin.id) is True
        assert rbac.is_admin(peer.id) is True
