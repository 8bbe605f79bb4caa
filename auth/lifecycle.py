"""
auth/lifecycle.py -- Generic soft-delete-aware repository over SQLAlchemy Core.

Pattern: Repository + Data Mapper, generalized. LifecycleStore[T] owns every
operation that touches the shared lifecycle columns (id, created_at,
updated_at, is_deleted, deleted_at). Subclasses bind a Table and implement two
mappers -- _values(entity) and _entity(row) -- for their own columns.

Soft delete is an explicit predicate, not an ORM interceptor: every read
method below states which rows it sees (_live, _trashed, or all). Nothing
filters implicitly, so the behaviour is visible at the call site and testable.

Hard delete: there is no public delete. _purge() is the one physical delete
path and is only called by RefreshTokenRepository.purge_expired().

Unit of work: every method takes an optional conn. Without one, the call opens
its own connection and commits. With one, the caller owns the transaction and
commits (or lets the connection close, which rolls back). AuthService uses this
to make multi-row workflows all-or-nothing.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Generic, Optional, Protocol, TypeVar, Union

from sqlalchemy import Table, select
from sqlalchemy.engine import Connection, Engine

from auth.models import Lifecycle

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    """Serialize a datetime as a fixed-width UTC ISO 8601 string.

    timespec="microseconds" keeps the width constant so string comparison in
    SQL (expires_at < :now) matches chronological order.
    """
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


class HasLifecycle(Protocol):
    lifecycle: Lifecycle


T = TypeVar("T", bound=HasLifecycle)


def lifecycle_from_row(row: Any) -> Lifecycle:
    return Lifecycle(
        id=row.id,
        created_at=row.created_at,
        updated_at=row.updated_at,
        is_deleted=bool(row.is_deleted),
        deleted_at=row.deleted_at,
    )


class LifecycleStore(Generic[T]):
    """Soft-delete-aware CRUD for one entity type.

    Subclasses set `table` and implement `_values` / `_entity`.
    """

    table: Table

    def __init__(self, engine: Engine, clock: Clock = utcnow) -> None:
        self.engine = engine
        self._clock = clock

    # ------------------------------------------------------------------
    # Mappers (subclass responsibility)
    # ------------------------------------------------------------------

    def _values(self, entity: T) -> dict:
        """Entity-specific column values (everything except lifecycle columns)."""
        raise NotImplementedError

    def _entity(self, row: Any) -> T:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    @contextmanager
    def _session(self, conn: Optional[Connection]) -> Iterator[Connection]:
        if conn is not None:
            yield conn
            return
        with self.engine.connect() as own:
            yield own
            own.commit()

    def _now(self) -> str:
        return to_iso(self._clock())

    @property
    def _live(self):
        return self.table.c.is_deleted == 0

    @property
    def _trashed(self):
        return self.table.c.is_deleted == 1

    def _select(self, *criteria, conn: Optional[Connection] = None) -> list[T]:
        stmt = select(self.table)
        if criteria:
            stmt = stmt.where(*criteria)
        stmt = stmt.order_by(self.table.c.created_at)
        with self._session(conn) as c:
            rows = c.execute(stmt).fetchall()
        return [self._entity(r) for r in rows]

    def _first(self, *criteria, conn: Optional[Connection] = None) -> Optional[T]:
        stmt = select(self.table).where(*criteria).limit(1)
        with self._session(conn) as c:
            row = c.execute(stmt).fetchone()
        return self._entity(row) if row is not None else None

    @staticmethod
    def _id_of(entity_or_id: Union[T, str]) -> str:
        return entity_or_id if isinstance(entity_or_id, str) else entity_or_id.lifecycle.id

    # ------------------------------------------------------------------
    # Live reads
    # ------------------------------------------------------------------

    def get(self, entity_id: str, conn: Optional[Connection] = None) -> Optional[T]:
        """Return the live record with this id, or None (missing or trashed)."""
        return self._first(self._live, self.table.c.id == entity_id, conn=conn)

    def get_all(self, conn: Optional[Connection] = None) -> list[T]:
        return self._select(self._live, conn=conn)

    def find(self, *criteria, conn: Optional[Connection] = None) -> list[T]:
        """Return live records matching every SQLAlchemy criterion given."""
        return self._select(self._live, *criteria, conn=conn)

    def find_one(self, *criteria, conn: Optional[Connection] = None) -> Optional[T]:
        return self._first(self._live, *criteria, conn=conn)

    def exists(self, entity_id: str, conn: Optional[Connection] = None) -> bool:
        stmt = select(self.table.c.id).where(self._live, self.table.c.id == entity_id).limit(1)
        with self._session(conn) as c:
            return c.execute(stmt).first() is not None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add(self, entity: T, conn: Optional[Connection] = None) -> T:
        """Insert a new record. Stamps created_at/updated_at on the entity."""
        now = self._now()
        lc = entity.lifecycle
        lc.created_at = lc.created_at or now
        lc.updated_at = now
        with self._session(conn) as c:
            c.execute(
                self.table.insert().values(
                    id=lc.id,
                    created_at=lc.created_at,
                    updated_at=lc.updated_at,
                    is_deleted=1 if lc.is_deleted else 0,
                    deleted_at=lc.deleted_at,
                    **self._values(entity),
                )
            )
        return entity

    def update(self, entity: T, conn: Optional[Connection] = None) -> T:
        """Persist entity-specific fields. Always refreshes updated_at."""
        lc = entity.lifecycle
        lc.updated_at = self._now()
        with self._session(conn) as c:
            c.execute(
                self.table.update()
                .where(self.table.c.id == lc.id)
                .values(updated_at=lc.updated_at, **self._values(entity))
            )
        return entity

    def soft_delete(self, entity_or_id: Union[T, str], conn: Optional[Connection] = None) -> bool:
        """Flag a live record as deleted. Idempotent: returns False if it was not live."""
        now = self._now()
        with self._session(conn) as c:
            result = c.execute(
                self.table.update()
                .where(self.table.c.id == self._id_of(entity_or_id), self._live)
                .values(is_deleted=1, deleted_at=now, updated_at=now)
            )
        changed = result.rowcount > 0
        if changed and not isinstance(entity_or_id, str):
            entity_or_id.lifecycle.is_deleted = True
            entity_or_id.lifecycle.deleted_at = now
            entity_or_id.lifecycle.updated_at = now
        return changed

    def restore(self, entity_or_id: Union[T, str], conn: Optional[Connection] = None) -> bool:
        """Clear the deleted flag. Only valid on a trashed record; returns False otherwise."""
        now = self._now()
        with self._session(conn) as c:
            result = c.execute(
                self.table.update()
                .where(self.table.c.id == self._id_of(entity_or_id), self._trashed)
                .values(is_deleted=0, deleted_at=None, updated_at=now)
            )
        changed = result.rowcount > 0
        if changed and not isinstance(entity_or_id, str):
            entity_or_id.lifecycle.is_deleted = False
            entity_or_id.lifecycle.deleted_at = None
            entity_or_id.lifecycle.updated_at = now
        return changed

    # ------------------------------------------------------------------
    # Admin / recovery escape hatches
    # ------------------------------------------------------------------

    def get_trashed(self, conn: Optional[Connection] = None) -> list[T]:
        return self._select(self._trashed, conn=conn)

    def get_trashed_by_id(self, entity_id: str, conn: Optional[Connection] = None) -> Optional[T]:
        return self._first(self._trashed, self.table.c.id == entity_id, conn=conn)

    def get_all_including_deleted(self, conn: Optional[Connection] = None) -> list[T]:
        return self._select(conn=conn)

    # ------------------------------------------------------------------
    # Physical delete (restricted)
    # ------------------------------------------------------------------

    def _purge(self, *criteria, conn: Optional[Connection] = None) -> int:
        """Physically delete matching rows regardless of soft-delete state."""
        if not criteria:
            raise ValueError("_purge requires at least one criterion.")
        with self._session(conn) as c:
            result = c.execute(self.table.delete().where(*criteria))
        return result.rowcount
