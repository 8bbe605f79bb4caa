"""
auth/store.py -- SQLAlchemy Core schema and repositories for auth entities.

Pattern: Repository + Data Mapper. Each repository below is a
LifecycleStore[T] (auth/lifecycle.py) bound to one table, adding only the
entity-specific queries. AuthStore owns the engine and hands the same engine
to all four repositories, so a caller can thread one Connection through
several of them as a single transaction.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Case-insensitive identity uniqueness among LIVE users is enforced in code
  (UserRepository.identity_taken) and backstopped by partial unique indexes on
  lower(username) / lower(email) WHERE is_deleted = 0. A plain UNIQUE column
  constraint would wrongly block reuse of a soft-deleted user's email.

  Permission names are globally unique (plain UNIQUE, trashed rows included).
  Role names are unique among live roles (partial unique index).

  Refresh tokens are stored as SHA-256 digests. The raw value never touches
  the database.

Booleans are stored as 0/1 Integers so the same schema works on SQLite and
PostgreSQL without dialect-specific types.

DB path: blogapi_auth.db at the repository root by default.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.pool import SingletonThreadPool

from auth.lifecycle import Clock, LifecycleStore, lifecycle_from_row, utcnow
from auth.models import Permission, RefreshToken, Role, User

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'blogapi_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()


def _lifecycle_columns() -> list[Column]:
    return [
        Column("id", String(36), primary_key=True),
        Column("created_at", String(32), nullable=False),
        Column("updated_at", String(32), nullable=False),
        Column("is_deleted", Integer, nullable=False, server_default="0"),
        Column("deleted_at", String(32)),
    ]


_users = Table(
    "users",
    _metadata,
    *_lifecycle_columns(),
    Column("username", String(50), nullable=False),
    Column("email", String(255), nullable=False),
    Column("password_hash", Text, nullable=False),
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("bio", Text),
    Column("is_email_confirmed", Integer, nullable=False, server_default="0"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("last_login_at", String(32)),
)

_roles = Table(
    "roles",
    _metadata,
    *_lifecycle_columns(),
    Column("name", String(100), nullable=False),
    Column("description", Text, nullable=False, server_default=""),
    Column("is_system", Integer, nullable=False, server_default="0"),
)

_permissions = Table(
    "permissions",
    _metadata,
    *_lifecycle_columns(),
    Column("name", String(100), nullable=False, unique=True),
    Column("resource", String(50), nullable=False, server_default=""),
    Column("action", String(50), nullable=False, server_default=""),
    Column("category", String(50), nullable=False, server_default=""),
    Column("description", Text, nullable=False, server_default=""),
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("user_id", String(36), primary_key=True),
    Column("role_id", String(36), primary_key=True),
    Column("assigned_at", String(32), nullable=False),
)

_role_permissions = Table(
    "role_permissions",
    _metadata,
    Column("role_id", String(36), primary_key=True),
    Column("permission_id", String(36), primary_key=True),
    Column("assigned_at", String(32), nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    *_lifecycle_columns(),
    Column("token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("user_id", String(36), nullable=False, index=True),
    Column("expires_at", String(32), nullable=False),
    Column("is_revoked", Integer, nullable=False, server_default="0"),
)

Index(
    "ux_users_username_live",
    func.lower(_users.c.username),
    unique=True,
    sqlite_where=_users.c.is_deleted == 0,
    postgresql_where=_users.c.is_deleted == 0,
)
Index(
    "ux_users_email_live",
    func.lower(_users.c.email),
    unique=True,
    sqlite_where=_users.c.is_deleted == 0,
    postgresql_where=_users.c.is_deleted == 0,
)
Index(
    "ux_roles_name_live",
    _roles.c.name,
    unique=True,
    sqlite_where=_roles.c.is_deleted == 0,
    postgresql_where=_roles.c.is_deleted == 0,
)
Index("ix_refresh_tokens_expires_at", _refresh_tokens.c.expires_at)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    WAL (Write-Ahead Logging) allows readers to proceed without blocking
    during writes. Set per-connection because SQLite PRAGMAs are not
    inherited by new connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


class UserRepository(LifecycleStore[User]):
    table = _users

    def _values(self, user: User) -> dict:
        return {
            "username": user.username,
            "email": user.email,
            "password_hash": user.password_hash,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "bio": user.bio,
            "is_email_confirmed": 1 if user.is_email_confirmed else 0,
            "is_active": 1 if user.is_active else 0,
            "last_login_at": user.last_login_at,
        }

    def _entity(self, row: Any) -> User:
        return User(
            username=row.username,
            email=row.email,
            password_hash=row.password_hash,
            first_name=row.first_name,
            last_name=row.last_name,
            bio=row.bio,
            is_email_confirmed=bool(row.is_email_confirmed),
            is_active=bool(row.is_active),
            last_login_at=row.last_login_at,
            lifecycle=lifecycle_from_row(row),
        )

    def get_by_email(self, email: str, conn: Optional[Connection] = None) -> Optional[User]:
        """Live user by email, case-insensitive."""
        return self.find_one(func.lower(_users.c.email) == email.strip().lower(), conn=conn)

    def get_by_username(self, username: str, conn: Optional[Connection] = None) -> Optional[User]:
        """Live user by username, case-insensitive."""
        return self.find_one(func.lower(_users.c.username) == username.strip().lower(), conn=conn)

    def identity_taken(
        self,
        email: str,
        username: str,
        exclude_id: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> bool:
        """True if a live user other than exclude_id already holds this email or username."""
        criteria = [
            self._live,
            or_(
                func.lower(_users.c.email) == email.strip().lower(),
                func.lower(_users.c.username) == username.strip().lower(),
            ),
        ]
        if exclude_id is not None:
            criteria.append(_users.c.id != exclude_id)
        stmt = select(_users.c.id).where(*criteria).limit(1)
        with self._session(conn) as c:
            return c.execute(stmt).first() is not None

    def list_active(self, conn: Optional[Connection] = None) -> list[User]:
        return self.find(_users.c.is_active == 1, conn=conn)

    def list_by_role(self, role_id: str, conn: Optional[Connection] = None) -> list[User]:
        member_ids = select(_user_roles.c.user_id).where(_user_roles.c.role_id == role_id)
        return self.find(_users.c.id.in_(member_ids), conn=conn)

    def set_last_login(self, user_id: str, conn: Optional[Connection] = None) -> str:
        """Stamp last_login_at (and updated_at) with the current time. Returns the stamp."""
        now = self._now()
        with self._session(conn) as c:
            c.execute(_users.update().where(_users.c.id == user_id).values(last_login_at=now, updated_at=now))
        return now

    # ------------------------------------------------------------------
    # Role assignment (user_roles junction)
    # ------------------------------------------------------------------

    def role_ids(self, user_id: str, conn: Optional[Connection] = None) -> list[str]:
        stmt = select(_user_roles.c.role_id).where(_user_roles.c.user_id == user_id)
        with self._session(conn) as c:
            return [r.role_id for r in c.execute(stmt).fetchall()]

    def add_role(self, user_id: str, role_id: str, conn: Optional[Connection] = None) -> bool:
        """Link user to role. Idempotent: returns False if the link already existed."""
        with self._session(conn) as c:
            existing = c.execute(
                select(_user_roles.c.role_id).where(
                    (_user_roles.c.user_id == user_id) & (_user_roles.c.role_id == role_id)
                )
            ).first()
            if existing is not None:
                return False
            c.execute(_user_roles.insert().values(user_id=user_id, role_id=role_id, assigned_at=self._now()))
        return True

    def remove_role(self, user_id: str, role_id: str, conn: Optional[Connection] = None) -> bool:
        with self._session(conn) as c:
            result = c.execute(
                _user_roles.delete().where((_user_roles.c.user_id == user_id) & (_user_roles.c.role_id == role_id))
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Effective grants (live user -> live roles -> live permissions)
    # ------------------------------------------------------------------

    def role_names(self, user_id: str, conn: Optional[Connection] = None) -> set[str]:
        """Names of the live roles held by a live user. Empty for trashed or unknown users."""
        stmt = (
            select(_roles.c.name)
            .select_from(
                _user_roles.join(_users, _users.c.id == _user_roles.c.user_id).join(
                    _roles, _roles.c.id == _user_roles.c.role_id
                )
            )
            .where((_user_roles.c.user_id == user_id) & (_users.c.is_deleted == 0) & (_roles.c.is_deleted == 0))
        )
        with self._session(conn) as c:
            return {r.name for r in c.execute(stmt).fetchall()}

    def permission_names(self, user_id: str, conn: Optional[Connection] = None) -> set[str]:
        """Union of live permission names across the user's live roles."""
        stmt = (
            select(_permissions.c.name)
            .distinct()
            .select_from(
                _user_roles.join(_users, _users.c.id == _user_roles.c.user_id)
                .join(_roles, _roles.c.id == _user_roles.c.role_id)
                .join(_role_permissions, _role_permissions.c.role_id == _roles.c.id)
                .join(_permissions, _permissions.c.id == _role_permissions.c.permission_id)
            )
            .where(
                (_user_roles.c.user_id == user_id)
                & (_users.c.is_deleted == 0)
                & (_roles.c.is_deleted == 0)
                & (_permissions.c.is_deleted == 0)
            )
        )
        with self._session(conn) as c:
            return {r.name for r in c.execute(stmt).fetchall()}


class RoleRepository(LifecycleStore[Role]):
    table = _roles

    def _values(self, role: Role) -> dict:
        return {
            "name": role.name,
            "description": role.description,
            "is_system": 1 if role.is_system else 0,
        }

    def _entity(self, row: Any) -> Role:
        return Role(
            name=row.name,
            description=row.description,
            is_system=bool(row.is_system),
            lifecycle=lifecycle_from_row(row),
        )

    def get_by_name(self, name: str, conn: Optional[Connection] = None) -> Optional[Role]:
        return self.find_one(_roles.c.name == name, conn=conn)

    def member_count(self, role_id: str, conn: Optional[Connection] = None) -> int:
        """Number of LIVE users holding this role."""
        stmt = (
            select(func.count())
            .select_from(_user_roles.join(_users, _users.c.id == _user_roles.c.user_id))
            .where((_user_roles.c.role_id == role_id) & (_users.c.is_deleted == 0))
        )
        with self._session(conn) as c:
            return c.execute(stmt).scalar() or 0

    # ------------------------------------------------------------------
    # Permission assignment (role_permissions junction)
    # ------------------------------------------------------------------

    def permission_ids(self, role_id: str, conn: Optional[Connection] = None) -> list[str]:
        stmt = select(_role_permissions.c.permission_id).where(_role_permissions.c.role_id == role_id)
        with self._session(conn) as c:
            return [r.permission_id for r in c.execute(stmt).fetchall()]

    def add_permission(self, role_id: str, permission_id: str, conn: Optional[Connection] = None) -> bool:
        """Grant permission to role. Idempotent: returns False if already granted."""
        with self._session(conn) as c:
            existing = c.execute(
                select(_role_permissions.c.permission_id).where(
                    (_role_permissions.c.role_id == role_id) & (_role_permissions.c.permission_id == permission_id)
                )
            ).first()
            if existing is not None:
                return False
            c.execute(
                _role_permissions.insert().values(role_id=role_id, permission_id=permission_id, assigned_at=self._now())
            )
        return True

    def remove_permission(self, role_id: str, permission_id: str, conn: Optional[Connection] = None) -> bool:
        with self._session(conn) as c:
            result = c.execute(
                _role_permissions.delete().where(
                    (_role_permissions.c.role_id == role_id) & (_role_permissions.c.permission_id == permission_id)
                )
            )
        return result.rowcount > 0

    def clear_permissions(self, role_id: str, conn: Optional[Connection] = None) -> int:
        with self._session(conn) as c:
            result = c.execute(_role_permissions.delete().where(_role_permissions.c.role_id == role_id))
        return result.rowcount


class PermissionRepository(LifecycleStore[Permission]):
    table = _permissions

    def _values(self, permission: Permission) -> dict:
        return {
            "name": permission.name,
            "resource": permission.resource,
            "action": permission.action,
            "category": permission.category,
            "description": permission.description,
        }

    def _entity(self, row: Any) -> Permission:
        return Permission(
            name=row.name,
            resource=row.resource,
            action=row.action,
            category=row.category,
            description=row.description,
            lifecycle=lifecycle_from_row(row),
        )

    def get_by_name(self, name: str, conn: Optional[Connection] = None) -> Optional[Permission]:
        return self.find_one(_permissions.c.name == name, conn=conn)

    def name_taken(self, name: str, exclude_id: Optional[str] = None, conn: Optional[Connection] = None) -> bool:
        """Global uniqueness check -- trashed permissions still hold their name."""
        criteria = [_permissions.c.name == name]
        if exclude_id is not None:
            criteria.append(_permissions.c.id != exclude_id)
        with self._session(conn) as c:
            return c.execute(select(_permissions.c.id).where(*criteria).limit(1)).first() is not None

    def by_resource(self, resource: str, conn: Optional[Connection] = None) -> list[Permission]:
        return self.find(_permissions.c.resource == resource, conn=conn)

    def by_category(self, category: str, conn: Optional[Connection] = None) -> list[Permission]:
        return self.find(_permissions.c.category == category, conn=conn)

    def for_role(self, role_id: str, conn: Optional[Connection] = None) -> list[Permission]:
        """Live permissions granted to a role (stale junction rows to trashed permissions are skipped)."""
        granted = select(_role_permissions.c.permission_id).where(_role_permissions.c.role_id == role_id)
        return self.find(_permissions.c.id.in_(granted), conn=conn)

    def assignment_count(self, permission_id: str, conn: Optional[Connection] = None) -> int:
        """Number of LIVE roles this permission is granted to."""
        stmt = (
            select(func.count())
            .select_from(_role_permissions.join(_roles, _roles.c.id == _role_permissions.c.role_id))
            .where((_role_permissions.c.permission_id == permission_id) & (_roles.c.is_deleted == 0))
        )
        with self._session(conn) as c:
            return c.execute(stmt).scalar() or 0


class RefreshTokenRepository(LifecycleStore[RefreshToken]):
    table = _refresh_tokens

    def _values(self, token: RefreshToken) -> dict:
        return {
            "token_hash": token.token_hash,
            "user_id": token.user_id,
            "expires_at": token.expires_at,
            "is_revoked": 1 if token.is_revoked else 0,
        }

    def _entity(self, row: Any) -> RefreshToken:
        return RefreshToken(
            token_hash=row.token_hash,
            user_id=row.user_id,
            expires_at=row.expires_at,
            is_revoked=bool(row.is_revoked),
            lifecycle=lifecycle_from_row(row),
        )

    def get_by_hash(self, token_hash: str, conn: Optional[Connection] = None) -> Optional[RefreshToken]:
        return self.find_one(_refresh_tokens.c.token_hash == token_hash, conn=conn)

    def claim(self, token_hash: str, conn: Optional[Connection] = None) -> bool:
        """Flip is_revoked 0 -> 1 with a compare-and-swap guard.

        The WHERE clause includes is_revoked = 0, so of N concurrent callers
        exactly one sees rowcount == 1. The database row lock (PostgreSQL) or
        write lock (SQLite) serializes the UPDATEs; the losers re-evaluate the
        guard after the winner commits and match nothing.
        """
        with self._session(conn) as c:
            result = c.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.token_hash == token_hash)
                    & (_refresh_tokens.c.is_revoked == 0)
                    & self._live
                )
                .values(is_revoked=1, updated_at=self._now())
            )
        return result.rowcount == 1

    def revoke_for_user(self, user_id: str, conn: Optional[Connection] = None) -> int:
        """Revoke every outstanding token owned by user_id. Returns how many flipped."""
        with self._session(conn) as c:
            result = c.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.is_revoked == 0))
                .values(is_revoked=1, updated_at=self._now())
            )
        return result.rowcount

    def active_for_user(self, user_id: str, now_iso: str, conn: Optional[Connection] = None) -> list[RefreshToken]:
        return self.find(
            _refresh_tokens.c.user_id == user_id,
            _refresh_tokens.c.is_revoked == 0,
            _refresh_tokens.c.expires_at >= now_iso,
            conn=conn,
        )

    def purge_expired(self, now_iso: str, conn: Optional[Connection] = None) -> int:
        """Physically delete rows whose expiry has passed. Expired tokens have no recovery value."""
        return self._purge(_refresh_tokens.c.expires_at < now_iso, conn=conn)


# ---------------------------------------------------------------------------
# Store facade
# ---------------------------------------------------------------------------


def _is_memory_sqlite(db_url: str) -> bool:
    """True for sqlite:///:memory:, a bare sqlite:// and file:...?mode=memory URIs."""
    url = make_url(db_url)
    if url.get_backend_name() != "sqlite":
        return False
    return url.database in (None, "", ":memory:") or url.query.get("mode") == "memory"


class AuthStore:
    """Owns the engine and the four entity repositories.

    Usage:
        store = AuthStore()                                # SQLite default
        store = AuthStore("postgresql://user:pw@host/db")  # PostgreSQL
        user = store.users.get_by_email("alice@example.com")
        with store.engine.connect() as conn:               # unit of work
            store.users.add(user, conn=conn)
            store.refresh_tokens.add(token, conn=conn)
            conn.commit()
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, clock: Clock = utcnow) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            # SQLite requires check_same_thread=False when used from FastAPI's
            # threadpool, where one pooled connection may serve several threads.
            connect_args["check_same_thread"] = False
        engine_kwargs: dict = {}
        if _is_memory_sqlite(db_url):
            # One connection per thread keeps an in-memory database alive for
            # the life of the engine.
            engine_kwargs["poolclass"] = SingletonThreadPool
        self.engine: Engine = create_engine(db_url, connect_args=connect_args, **engine_kwargs)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        self.users = UserRepository(self.engine, clock)
        self.roles = RoleRepository(self.engine, clock)
        self.permissions = PermissionRepository(self.engine, clock)
        self.refresh_tokens = RefreshTokenRepository(self.engine, clock)

    def has_users(self) -> bool:
        """Return True if at least one live user exists."""
        with self.engine.connect() as conn:
            result = conn.execute(text("SELECT COUNT(*) FROM users WHERE is_deleted = 0")).scalar()
        return (result or 0) > 0

    def ping(self) -> bool:
        """Cheap connectivity probe for the health endpoint."""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    def close(self) -> None:
        self.engine.dispose()
