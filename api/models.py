"""
API request and response models for BlogAPI REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Wire format is camelCase (confirmPassword, refreshToken, expiresAt). Python
attributes stay snake_case: alias_generator produces the camelCase names and
populate_by_name lets tests and handlers construct models either way.

Password fields carry only a generous max_length here. The real password
policy (8..72 bytes) lives in auth/service.py so a weak password comes back as
a 400 validation_failed envelope rather than a 422 schema error.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from auth.models import Permission, PrincipalSnapshot, Role, User


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Auth -- requests
# ---------------------------------------------------------------------------


class RegisterRequest(_CamelModel):
    """Request body for POST /api/auth/register.

    Not whitespace-stripped at the model level: the service trims identity
    fields itself and leaves passwords untouched.
    """

    username: str = Field(default="", max_length=50)
    email: str = Field(default="", max_length=255)
    password: str = Field(default="", max_length=255)
    confirm_password: str = Field(default="", max_length=255)
    first_name: str = Field(default="", max_length=100)
    last_name: str = Field(default="", max_length=100)


class LoginRequest(_CamelModel):
    """Request body for POST /api/auth/login."""

    email: str = Field(max_length=255)
    password: str = Field(max_length=255)
    remember_me: bool = False


class RefreshRequest(_CamelModel):
    """Request body for POST /api/auth/refresh and POST /api/auth/revoke."""

    refresh_token: str = Field(min_length=1, max_length=512)


# ---------------------------------------------------------------------------
# Auth -- responses
# ---------------------------------------------------------------------------


class UserResponse(_CamelModel):
    """Public view of a principal. Never includes the password hash."""

    model_config = ConfigDict(frozen=True)

    id: str
    username: str
    email: str
    first_name: str = ""
    last_name: str = ""
    bio: Optional[str] = None
    is_email_confirmed: bool = False
    is_active: bool = True
    roles: list[str] = Field(default_factory=list)
    created_at: str = ""
    last_login_at: Optional[str] = None
    deleted_at: Optional[str] = None

    @classmethod
    def from_snapshot(cls, snapshot: PrincipalSnapshot) -> "UserResponse":
        return cls(
            id=snapshot.id,
            username=snapshot.username,
            email=snapshot.email,
            first_name=snapshot.first_name,
            last_name=snapshot.last_name,
            is_email_confirmed=snapshot.is_email_confirmed,
            is_active=snapshot.is_active,
            roles=list(snapshot.roles),
            created_at=snapshot.created_at,
            last_login_at=snapshot.last_login_at,
        )

    @classmethod
    def from_user(cls, user: User, roles: Optional[list[str]] = None) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            bio=user.bio,
            is_email_confirmed=user.is_email_confirmed,
            is_active=user.is_active,
            roles=sorted(roles or []),
            created_at=user.lifecycle.created_at,
            last_login_at=user.last_login_at,
            deleted_at=user.lifecycle.deleted_at,
        )


class AuthResponse(_CamelModel):
    """Successful register / login / refresh. The refresh token is shown once."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_at: datetime
    user: UserResponse


class MeResponse(UserResponse):
    """GET /api/auth/me -- the caller plus its effective permissions."""

    permissions: list[str] = Field(default_factory=list)


class ValidateResponse(_CamelModel):
    model_config = ConfigDict(frozen=True)

    valid: bool
    user_id: str
    username: str
    message: str = "Token is valid"


class RevokeAllResponse(_CamelModel):
    model_config = ConfigDict(frozen=True)

    revoked: int
    message: str


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Roles and permissions
# ---------------------------------------------------------------------------


class PermissionResponse(_CamelModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    resource: str = ""
    action: str = ""
    category: str = ""
    description: str = ""
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_permission(cls, permission: Permission) -> "PermissionResponse":
        return cls(
            id=permission.id,
            name=permission.name,
            resource=permission.resource,
            action=permission.action,
            category=permission.category,
            description=permission.description,
            created_at=permission.lifecycle.created_at,
            updated_at=permission.lifecycle.updated_at,
        )


class RoleResponse(_CamelModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    is_system: bool = False
    created_at: str = ""
    updated_at: str = ""
    deleted_at: Optional[str] = None

    @classmethod
    def from_role(cls, role: Role) -> "RoleResponse":
        return cls(
            id=role.id,
            name=role.name,
            description=role.description,
            is_system=role.is_system,
            created_at=role.lifecycle.created_at,
            updated_at=role.lifecycle.updated_at,
            deleted_at=role.lifecycle.deleted_at,
        )


class RoleCreate(_CamelModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    description: str = Field(default="", max_length=500)


class RoleUpdate(_CamelModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)


class RolePermissionsReplace(_CamelModel):
    """PUT /api/roles/{id}/permissions -- the complete new permission set."""

    permission_ids: list[str] = Field(default_factory=list, max_length=500)


class PermissionCreate(_CamelModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    resource: str = Field(default="", max_length=50)
    action: str = Field(default="", max_length=50)
    category: str = Field(default="", max_length=50)
    description: str = Field(default="", max_length=500)


class PermissionUpdate(_CamelModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    resource: Optional[str] = Field(default=None, max_length=50)
    action: Optional[str] = Field(default=None, max_length=50)
    category: Optional[str] = Field(default=None, max_length=50)
    description: Optional[str] = Field(default=None, max_length=500)


# ---------------------------------------------------------------------------
# User administration
# ---------------------------------------------------------------------------


class UserCreate(_CamelModel):
    """POST /api/users -- admin-created account. No tokens are issued."""

    username: str = Field(max_length=50)
    email: str = Field(max_length=255)
    password: str = Field(max_length=255)
    first_name: str = Field(default="", max_length=100)
    last_name: str = Field(default="", max_length=100)


class UserUpdate(_CamelModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: Optional[str] = Field(default=None, max_length=50)
    email: Optional[str] = Field(default=None, max_length=255)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    bio: Optional[str] = Field(default=None, max_length=2000)


class UserStatusUpdate(_CamelModel):
    is_active: bool


class PasswordChange(_CamelModel):
    """Self-service changes must include current_password; admins may omit it for other users."""

    new_password: str = Field(max_length=255)
    current_password: Optional[str] = Field(default=None, max_length=255)


# ---------------------------------------------------------------------------
# Shared error and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
