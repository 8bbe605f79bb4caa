"""
api/routes/users.py -- Principal administration and self-service profile endpoints.

Routes:
  GET    /api/users                        -- list live users            (users.read)
  GET    /api/users/active                 -- list active users          (users.read)
  GET    /api/users/trash                  -- list soft-deleted users    (admin)
  GET    /api/users/username/{name}        -- lookup by username         (users.read)
  GET    /api/users/email/{email}          -- lookup by email            (users.read)
  GET    /api/users/{id}                   -- one user                   (self or users.read)
  POST   /api/users                        -- create account, no tokens  (users.create)
  PUT    /api/users/{id}                   -- profile / identity edit    (self or users.update.any)
  PUT    /api/users/{id}/password          -- change password            (self with current password, or users.update.any)
  PUT    /api/users/{id}/status            -- activate / deactivate      (users.update.any)
  DELETE /api/users/{id}                   -- soft delete                (users.delete)
  POST   /api/users/{id}/restore           -- undo soft delete           (admin)
  GET    /api/users/{id}/roles             -- roles held                 (self or users.read)
  POST   /api/users/{id}/roles/{roleId}    -- assign role (idempotent)   (users.manage.roles)
  DELETE /api/users/{id}/roles/{roleId}    -- remove role                (users.manage.roles)

Security:
  Owner-or-override: "self" routes go through RbacEvaluator.can_act_on_owned_resource()
  with the *.any permission (or an admin role) as the override.
  [M4] Status and delete routes block acting on your own account.
  Password change and deactivation revoke every refresh token of the target.
  Role grants by a non-admin delegate are bounded by RbacEvaluator.require_can_grant:
  no admin roles, no self-grant of an unheld role, nothing beyond its own permissions.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.models import (
    MessageResponse,
    PasswordChange,
    RevokeAllResponse,
    RoleResponse,
    UserCreate,
    UserResponse,
    UserStatusUpdate,
    UserUpdate,
)
from auth.dependencies import get_current_principal, require_admin, require_permission
from auth.errors import Unauthorized
from auth.management import PrincipalManager
from auth.models import PrincipalSnapshot, User
from auth.rbac import RbacEvaluator

router = APIRouter()


def _principals(request: Request) -> PrincipalManager:
    return request.app.state.principal_manager


def _to_response(request: Request, user: User) -> UserResponse:
    rbac: RbacEvaluator = request.app.state.rbac
    return UserResponse.from_user(user, sorted(rbac.roles_of(user.id)))


def _require_self_or(request: Request, principal: PrincipalSnapshot, owner_id: str, override_permission: str) -> None:
    """Raise Unauthorized unless principal is owner_id or holds override_permission / an admin role."""
    rbac: RbacEvaluator = request.app.state.rbac
    if principal.id == owner_id:
        return
    override = rbac.has_permission(principal.id, override_permission) or rbac.is_admin(principal.id)
    if not rbac.can_act_on_owned_resource(principal.id, owner_id, override):
        raise Unauthorized("You may only act on your own account.")


def _refuse_self(principal: PrincipalSnapshot, user_id: str, code: str, message: str) -> None:
    if principal.id == user_id:
        raise HTTPException(status_code=400, detail={"code": code, "message": message})


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------


@router.get("/users", response_model=list[UserResponse])
def list_users(
    request: Request,
    principal: PrincipalSnapshot = Depends(require_permission("users.read")),
) -> list[UserResponse]:
    return [_to_response(request, u) for u in _principals(request).list_all()]


@router.get("/users/active", response_model=list[UserResponse])
def list_active_users(
    request: Request,
    principal: PrincipalSnapshot = Depends(require_permission("users.read")),
) -> list[UserResponse]:
    return [_to_response(request, u) for u in _principals(request).list_active()]


@router.get("/users/trash", response_model=list[UserResponse])
def list_trashed_users(
    request: Request,
    admin: PrincipalSnapshot = Depends(require_admin),
) -> list[UserResponse]:
    return [UserResponse.from_user(u) for u in _principals(request).list_trashed()]


@router.get("/users/username/{username}", response_model=UserResponse)
def get_user_by_username(
    request: Request,
    username: str,
    principal: PrincipalSnapshot = Depends(require_permission("users.read")),
) -> UserResponse:
    return _to_response(request, _principals(request).get_by_username(username))


@router.get("/users/email/{email}", response_model=UserResponse)
def get_user_by_email(
    request: Request,
    email: str,
    principal: PrincipalSnapshot = Depends(require_permission("users.read")),
) -> UserResponse:
    return _to_response(request, _principals(request).get_by_email(email))


# ---------------------------------------------------------------------------
# Single user
# ---------------------------------------------------------------------------


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(
    request: Request,
    user_id: str,
    principal: PrincipalSnapshot = Depends(get_current_principal),
) -> UserResponse:
    _require_self_or(request, principal, user_id, "users.read")
    return _to_response(request, _principals(request).get(user_id))


@router.post("/users", response_model=UserResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    principal: PrincipalSnapshot = Depends(require_permission("users.create")),
) -> UserResponse:
    """Create an account on someone's behalf. The new user logs in normally."""
    created = _principals(request).create(
        body.username,
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return _to_response(request, created)


@router.put("/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: str,
    body: UserUpdate,
    principal: PrincipalSnapshot = Depends(get_current_principal),
) -> UserResponse:
    """Edit profile fields. Changing the email resets its confirmation flag."""
    _require_self_or(request, principal, user_id, "users.update.any")
    updated = _principals(request).update_profile(
        user_id,
        username=body.username,
        email=body.email,
        first_name=body.first_name,
        last_name=body.last_name,
        bio=body.bio,
    )
    return _to_response(request, updated)


@router.put("/users/{user_id}/password", response_model=RevokeAllResponse)
def change_password(
    request: Request,
    user_id: str,
    body: PasswordChange,
    principal: PrincipalSnapshot = Depends(get_current_principal),
) -> RevokeAllResponse:
    """Set a new password. Every refresh token of the target is revoked."""
    _require_self_or(request, principal, user_id, "users.update.any")
    current = body.current_password
    if principal.id == user_id and current is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "validation_failed", "message": "Current password is required."},
        )
    revoked = _principals(request).change_password(user_id, body.new_password, current_password=current)
    return RevokeAllResponse(revoked=revoked, message="Password changed.")


@router.put("/users/{user_id}/status", response_model=UserResponse)
def set_user_status(
    request: Request,
    user_id: str,
    body: UserStatusUpdate,
    principal: PrincipalSnapshot = Depends(require_permission("users.update.any")),
) -> UserResponse:
    """Activate or deactivate. [M4] You cannot deactivate your own account."""
    if not body.is_active:
        _refuse_self(principal, user_id, "self_deactivation", "You cannot deactivate your own account.")
    return _to_response(request, _principals(request).set_active(user_id, body.is_active))


@router.delete("/users/{user_id}", status_code=204)
def delete_user(
    request: Request,
    user_id: str,
    principal: PrincipalSnapshot = Depends(require_permission("users.delete")),
) -> Response:
    """Soft delete. The account can be restored from the trash."""
    _refuse_self(principal, user_id, "self_deletion", "You cannot delete your own account.")
    _principals(request).soft_delete(user_id)
    return Response(status_code=204)


@router.post("/users/{user_id}/restore", response_model=UserResponse)
def restore_user(
    request: Request,
    user_id: str,
    admin: PrincipalSnapshot = Depends(require_admin),
) -> UserResponse:
    return _to_response(request, _principals(request).restore(user_id))


# ---------------------------------------------------------------------------
# Role assignment
# ---------------------------------------------------------------------------


@router.get("/users/{user_id}/roles", response_model=list[RoleResponse])
def list_user_roles(
    request: Request,
    user_id: str,
    principal: PrincipalSnapshot = Depends(get_current_principal),
) -> list[RoleResponse]:
    _require_self_or(request, principal, user_id, "users.read")
    return [RoleResponse.from_role(r) for r in _principals(request).roles_of(user_id)]


@router.post("/users/{user_id}/roles/{role_id}", response_model=MessageResponse)
def assign_user_role(
    request: Request,
    user_id: str,
    role_id: str,
    principal: PrincipalSnapshot = Depends(require_permission("users.manage.roles")),
) -> MessageResponse:
    added = _principals(request).assign_role(user_id, role_id, granted_by=principal.id)
    return MessageResponse(message="Role assigned." if added else "Role already assigned.")


@router.delete("/users/{user_id}/roles/{role_id}", status_code=204)
def remove_user_role(
    request: Request,
    user_id: str,
    role_id: str,
    principal: PrincipalSnapshot = Depends(require_permission("users.manage.roles")),
) -> Response:
    _principals(request).remove_role(user_id, role_id, removed_by=principal.id)
    return Response(status_code=204)
