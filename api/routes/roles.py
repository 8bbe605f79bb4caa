"""
api/routes/roles.py -- Role and permission administration endpoints.

Routes (all admin only):
  GET    /api/roles                              -- list live roles
  GET    /api/roles/trash                        -- list soft-deleted roles
  GET    /api/roles/name/{name}                  -- role by exact name
  GET    /api/roles/{id}                         -- role by id
  POST   /api/roles                              -- create role
  PUT    /api/roles/{id}                         -- rename / re-describe (system roles keep their name)
  DELETE /api/roles/{id}                         -- soft delete (not system roles, not roles in use)
  POST   /api/roles/{id}/restore                 -- undo soft delete
  GET    /api/roles/{id}/permissions             -- permissions granted to the role
  PUT    /api/roles/{id}/permissions             -- replace the whole permission set
  POST   /api/roles/{id}/permissions/{permId}    -- grant one (idempotent)
  DELETE /api/roles/{id}/permissions/{permId}    -- revoke one

  GET    /api/permissions                        -- list (optional ?resource= / ?category=)
  GET    /api/permissions/name/{name}
  GET    /api/permissions/{id}
  POST   /api/permissions
  PUT    /api/permissions/{id}
  DELETE /api/permissions/{id}                   -- soft delete (not while assigned)

Rule violations surface as AuthError subclasses from auth/management.py;
api/main.py maps them to the error envelope (400 / 403 / 404).
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request, Response

from api.models import (
    MessageResponse,
    PermissionCreate,
    PermissionResponse,
    PermissionUpdate,
    RoleCreate,
    RolePermissionsReplace,
    RoleResponse,
    RoleUpdate,
)
from auth.dependencies import require_admin
from auth.management import PermissionManager, RoleManager
from auth.models import PrincipalSnapshot

# Auth policy: every route below requires an admin-equivalent role (require_admin).
router = APIRouter()


def _roles(request: Request) -> RoleManager:
    return request.app.state.role_manager


def _permissions(request: Request) -> PermissionManager:
    return request.app.state.permission_manager


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


@router.get("/roles", response_model=list[RoleResponse])
def list_roles(request: Request, admin: PrincipalSnapshot = Depends(require_admin)) -> list[RoleResponse]:
    return [RoleResponse.from_role(r) for r in _roles(request).list_all()]


@router.get("/roles/trash", response_model=list[RoleResponse])
def list_trashed_roles(request: Request, admin: PrincipalSnapshot = Depends(require_admin)) -> list[RoleResponse]:
    return [RoleResponse.from_role(r) for r in _roles(request).list_trashed()]


@router.get("/roles/name/{name}", response_model=RoleResponse)
def get_role_by_name(request: Request, name: str, admin: PrincipalSnapshot = Depends(require_admin)) -> RoleResponse:
    return RoleResponse.from_role(_roles(request).get_by_name(name))


@router.get("/roles/{role_id}", response_model=RoleResponse)
def get_role(request: Request, role_id: str, admin: PrincipalSnapshot = Depends(require_admin)) -> RoleResponse:
    return RoleResponse.from_role(_roles(request).get(role_id))


@router.post("/roles", response_model=RoleResponse, status_code=201)
def create_role(request: Request, body: RoleCreate, admin: PrincipalSnapshot = Depends(require_admin)) -> RoleResponse:
    """Create a custom (non-system) role. System roles come from seeding only."""
    return RoleResponse.from_role(_roles(request).create(body.name, body.description))


@router.put("/roles/{role_id}", response_model=RoleResponse)
def update_role(
    request: Request,
    role_id: str,
    body: RoleUpdate,
    admin: PrincipalSnapshot = Depends(require_admin),
) -> RoleResponse:
    return RoleResponse.from_role(_roles(request).update(role_id, name=body.name, description=body.description))


@router.delete("/roles/{role_id}", status_code=204)
def delete_role(request: Request, role_id: str, admin: PrincipalSnapshot = Depends(require_admin)) -> Response:
    _roles(request).delete(role_id)
    return Response(status_code=204)


@router.post("/roles/{role_id}/restore", response_model=RoleResponse)
def restore_role(request: Request, role_id: str, admin: PrincipalSnapshot = Depends(require_admin)) -> RoleResponse:
    return RoleResponse.from_role(_roles(request).restore(role_id))


@router.get("/roles/{role_id}/permissions", response_model=list[PermissionResponse])
def list_role_permissions(
    request: Request,
    role_id: str,
    admin: PrincipalSnapshot = Depends(require_admin),
) -> list[PermissionResponse]:
    return [PermissionResponse.from_permission(p) for p in _roles(request).permissions_of_role(role_id)]


@router.put("/roles/{role_id}/permissions", response_model=list[PermissionResponse])
def replace_role_permissions(
    request: Request,
    role_id: str,
    body: RolePermissionsReplace,
    admin: PrincipalSnapshot = Depends(require_admin),
) -> list[PermissionResponse]:
    granted = _roles(request).replace_permissions(role_id, body.permission_ids)
    return [PermissionResponse.from_permission(p) for p in granted]


@router.post("/roles/{role_id}/permissions/{permission_id}", response_model=MessageResponse)
def assign_role_permission(
    request: Request,
    role_id: str,
    permission_id: str,
    admin: PrincipalSnapshot = Depends(require_admin),
) -> MessageResponse:
    added = _roles(request).assign_permission(role_id, permission_id)
    return MessageResponse(message="Permission assigned." if added else "Permission already assigned.")


@router.delete("/roles/{role_id}/permissions/{permission_id}", status_code=204)
def remove_role_permission(
    request: Request,
    role_id: str,
    permission_id: str,
    admin: PrincipalSnapshot = Depends(require_admin),
) -> Response:
    _roles(request).remove_permission(role_id, permission_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


@router.get("/permissions", response_model=list[PermissionResponse])
def list_permissions(
    request: Request,
    resource: Optional[str] = None,
    category: Optional[str] = None,
    admin: PrincipalSnapshot = Depends(require_admin),
) -> list[PermissionResponse]:
    manager = _permissions(request)
    if resource:
        found = manager.by_resource(resource)
    elif category:
        found = manager.by_category(category)
    else:
        found = manager.list_all()
    return [PermissionResponse.from_permission(p) for p in found]


@router.get("/permissions/name/{name}", response_model=PermissionResponse)
def get_permission_by_name(
    request: Request,
    name: str,
    admin: PrincipalSnapshot = Depends(require_admin),
) -> PermissionResponse:
    return PermissionResponse.from_permission(_permissions(request).get_by_name(name))


@router.get("/permissions/{permission_id}", response_model=PermissionResponse)
def get_permission(
    request: Request,
    permission_id: str,
    admin: PrincipalSnapshot = Depends(require_admin),
) -> PermissionResponse:
    return PermissionResponse.from_permission(_permissions(request).get(permission_id))


@router.post("/permissions", response_model=PermissionResponse, status_code=201)
def create_permission(
    request: Request,
    body: PermissionCreate,
    admin: PrincipalSnapshot = Depends(require_admin),
) -> PermissionResponse:
    created = _permissions(request).create(
        body.name,
        resource=body.resource,
        action=body.action,
        category=body.category,
        description=body.description,
    )
    return PermissionResponse.from_permission(created)


@router.put("/permissions/{permission_id}", response_model=PermissionResponse)
def update_permission(
    request: Request,
    permission_id: str,
    body: PermissionUpdate,
    admin: PrincipalSnapshot = Depends(require_admin),
) -> PermissionResponse:
    updated = _permissions(request).update(
        permission_id,
        name=body.name,
        resource=body.resource,
        action=body.action,
        category=body.category,
        description=body.description,
    )
    return PermissionResponse.from_permission(updated)


@router.delete("/permissions/{permission_id}", status_code=204)
def delete_permission(
    request: Request,
    permission_id: str,
    admin: PrincipalSnapshot = Depends(require_admin),
) -> Response:
    _permissions(request).delete(permission_id)
    return Response(status_code=204)
