"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services do
the work; these classes only own domain shape.

Every persisted entity embeds a Lifecycle value (id, timestamps, soft-delete
state) rather than inheriting one. LifecycleStore[T] in auth/lifecycle.py reads
and writes the Lifecycle columns generically; each repository maps only its
own entity-specific columns.

Timestamps are ISO 8601 UTC strings (microsecond precision) -- the same
representation the stores write -- so rows compare lexicographically in SQL.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from auth.errors import ErrorCode


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Lifecycle:
    """Identity and soft-delete state shared by every entity.

    created_at / updated_at are empty until the store writes the record.
    A record is live iff is_deleted is False.
    """

    id: str = field(default_factory=new_id)
    created_at: str = ""
    updated_at: str = ""
    is_deleted: bool = False
    deleted_at: Optional[str] = None


@dataclass
class User:
    """A principal (user account).

    username and email are unique case-insensitively among live users only;
    a soft-deleted user's identity can be reused until it is restored.

    password_hash is a bcrypt hash produced by CredentialStore. The plaintext
    never reaches this object.
    """

    username: str
    email: str
    password_hash: str
    first_name: str = ""
    last_name: str = ""
    bio: Optional[str] = None
    is_email_confirmed: bool = False
    is_active: bool = True
    last_login_at: Optional[str] = None
    lifecycle: Lifecycle = field(default_factory=Lifecycle)

    @property
    def id(self) -> str:
        return self.lifecycle.id


@dataclass
class Role:
    """A named bundle of permissions. System roles are immutable and undeletable."""

    name: str
    description: str = ""
    is_system: bool = False
    lifecycle: Lifecycle = field(default_factory=Lifecycle)

    @property
    def id(self) -> str:
        return self.lifecycle.id


@dataclass
class Permission:
    """A resource+action grant, e.g. name="posts.update.own", resource="Posts", action="UpdateOwn"."""

    name: str
    resource: str = ""
    action: str = ""
    category: str = ""
    description: str = ""
    lifecycle: Lifecycle = field(default_factory=Lifecycle)

    @property
    def id(self) -> str:
        return self.lifecycle.id


@dataclass
class RefreshToken:
    """Ledger record for one opaque refresh token.

    token_hash is SHA-256 of the raw value. The raw value is returned to the
    client once at issue time and never persisted -- a leaked database does not
    leak usable refresh tokens.

    Expired is a derived state (now > expires_at), not a stored flag.
    """

    token_hash: str
    user_id: str
    expires_at: str
    is_revoked: bool = False
    lifecycle: Lifecycle = field(default_factory=Lifecycle)

    @property
    def id(self) -> str:
        return self.lifecycle.id


@dataclass(frozen=True)
class PrincipalSnapshot:
    """Read-only view of a principal plus its resolved role names.

    This is what the token issuer embeds into access tokens and what auth
    workflows hand back to the caller. It carries no password material.
    """

    id: str
    username: str
    email: str
    first_name: str = ""
    last_name: str = ""
    is_active: bool = True
    is_email_confirmed: bool = False
    roles: tuple[str, ...] = ()
    created_at: str = ""
    last_login_at: Optional[str] = None

    @classmethod
    def of(cls, user: User, roles: set[str] | list[str] | tuple[str, ...]) -> "PrincipalSnapshot":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            is_active=user.is_active,
            is_email_confirmed=user.is_email_confirmed,
            roles=tuple(sorted(roles)),
            created_at=user.lifecycle.created_at,
            last_login_at=user.last_login_at,
        )


@dataclass(frozen=True)
class RegistrationRequest:
    username: str
    email: str
    password: str
    confirm_password: str
    first_name: str = ""
    last_name: str = ""


@dataclass
class AuthResult:
    """Uniform outcome of every auth workflow.

    success=True carries the token pair, the principal snapshot, and the
    access-token expiry. success=False carries only an ErrorCode and a
    human-readable message safe to show to the client.
    """

    success: bool
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    user: Optional[PrincipalSnapshot] = None
    expires_at: Optional[datetime] = None
    error: Optional[ErrorCode] = None
    message: Optional[str] = None

    @classmethod
    def fail(cls, error: ErrorCode, message: str) -> "AuthResult":
        return cls(success=False, error=error, message=message)
