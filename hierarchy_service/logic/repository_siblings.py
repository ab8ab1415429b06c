"""Sibling store adapter: container-scoped reads and writes of ordered rows.

Every method runs on a connection the caller obtained from
``engine.begin()``, so reading the current positions and writing the planned
updates happen inside one transaction. Table and column names come from the
hierarchy schema declaration, never from request input.
"""

from __future__ import annotations

import logging
import threading
import weakref
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from sqlalchemy import text as sql_text
from sqlalchemy.engine import Connection

from hierarchy_service.db.base import supports_row_locks
from hierarchy_service.db.tables import table_for
from hierarchy_service.logic.errors import ConflictError, NotFoundError, ValidationError
from hierarchy_service.logic.order_sequences import PositionUpdate
from hierarchy_service.models.hierarchy import HierarchySchema, NodeKind

logger = logging.getLogger(__name__)


class _ContainerLock:
    __slots__ = ("lock", "__weakref__")

    def __init__(self) -> None:
        self.lock = threading.Lock()


class ContainerLocks:
    """In-process lock per (kind, container_id).

    Complements row locks on dialects without ``FOR UPDATE`` (SQLite). Locks
    are dropped once no caller holds them, so the registry does not grow with
    the number of containers ever touched.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: "weakref.WeakValueDictionary[Tuple[str, int], _ContainerLock]" = weakref.WeakValueDictionary()

    @contextmanager
    def hold(self, kind: str, container_id: int) -> Iterator[None]:
        key = (kind, int(container_id))
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = _ContainerLock()
                self._locks[key] = entry
        with entry.lock:
            yield


CONTAINER_LOCKS = ContainerLocks()


class SiblingStore:
    def __init__(self, conn: Connection, schema: HierarchySchema, kind_name: str) -> None:
        self.conn = conn
        self.kind: NodeKind = schema.kind(kind_name)
        if not self.kind.ordered:
            raise ValidationError(f"{kind_name} is not an ordered kind", code="kind_not_ordered", kind=kind_name)
        self.container: NodeKind = schema.container_of(kind_name)

    # -- container scope -------------------------------------------------

    def container_exists(self, container_id: int, *, for_update: bool = False) -> bool:
        c = self.container
        sql = f"SELECT {c.id_column} FROM {c.table} WHERE {c.id_column} = :cid"
        if for_update and supports_row_locks(self.conn.engine):
            sql += " FOR UPDATE"
        return self.conn.execute(sql_text(sql), {"cid": int(container_id)}).fetchone() is not None

    def lock_container(self, container_id: int) -> None:
        """Take the row lock on the container, or fail when it does not exist."""
        c = self.container
        if not self.container_exists(container_id, for_update=True):
            raise NotFoundError(
                f"{c.name} not found",
                code=f"{c.name}_not_found",
                container_id=container_id,
            )

    def current_positions(self, container_id: int) -> List[Tuple[int, int]]:
        k = self.kind
        rows = self.conn.execute(
            sql_text(
                f"SELECT {k.id_column}, {k.position_column} FROM {k.table} "
                f"WHERE {k.parent_column} = :cid ORDER BY {k.position_column} ASC, {k.id_column} ASC"
            ),
            {"cid": int(container_id)},
        ).fetchall()
        return [(int(r[0]), int(r[1])) for r in rows]

    def list_rows(self, container_id: int) -> List[Dict[str, Any]]:
        k = self.kind
        cols = ", ".join((k.id_column, k.parent_column) + k.copied_columns)  # type: ignore[operator]
        rows = self.conn.execute(
            sql_text(
                f"SELECT {cols} FROM {k.table} WHERE {k.parent_column} = :cid "
                f"ORDER BY {k.position_column} ASC, {k.id_column} ASC"
            ),
            {"cid": int(container_id)},
        ).mappings().fetchall()
        return [dict(r) for r in rows]

    # -- entity scope ----------------------------------------------------

    def locate(self, entity_id: int) -> Optional[Tuple[int, int]]:
        """Return ``(container_id, position)`` for an entity, or None when missing."""
        k = self.kind
        row = self.conn.execute(
            sql_text(
                f"SELECT {k.parent_column}, {k.position_column} FROM {k.table} WHERE {k.id_column} = :eid"
            ),
            {"eid": int(entity_id)},
        ).fetchone()
        if not row:
            return None
        return int(row[0]), int(row[1])

    def insert(self, container_id: int, position: int, payload: Mapping[str, Any]) -> int:
        k = self.kind
        writable = set(k.columns) - {k.position_column}
        unknown = sorted(set(payload) - writable)
        if unknown:
            raise ValidationError(
                f"unknown attributes for {k.name}",
                code="unknown_attributes",
                attributes=unknown,
            )
        missing = sorted(c for c in k.required if payload.get(c) is None)
        if missing:
            raise ValidationError(
                f"missing attributes for {k.name}",
                code="missing_attributes",
                attributes=missing,
            )
        values ={key: payload[key] for key in payload if key in writable}
        values[k.parent_column] = int(container_id)  # type: ignore[index]
        values[k.position_column] = int(position)  # type: ignore[index]
        result = self.conn.execute(table_for(k.table).insert().values(**values))
        new_id = int(result.inserted_primary_key[0])
        logger.info(
            "siblings.insert kind=%s container_id=%s entity_id=%s position=%s",
            k.name,
            container_id,
            new_id,
            position,
        )
        return new_id

    def delete(self, entity_id: int) -> None:
        k = self.kind
        result = self.conn.execute(
            sql_text(f"DELETE FROM {k.table} WHERE {k.id_column} = :eid"),
            {"eid": int(entity_id)},
        )
        if result.rowcount != 1:
            raise ConflictError(
                f"{k.name} vanished during delete",
                kind=k.name,
                entity_id=entity_id,
            )

    def apply_updates(self, container_id: int, updates: Iterable[PositionUpdate]) -> int:
        """Write position updates for one container; all-or-nothing.

        Updated rows are first parked at ``-(new_position + 1)`` and then
        flipped, so the unique (container, position) index never sees two rows
        on the same slot mid-batch. Any row that no longer sits at its expected
        position raises ConflictError, aborting the enclosing transaction.
        """
        k = self.kind
        batch = list(updates)
        if not batch:
            return 0
        park_sql = sql_text(
            f"UPDATE {k.table} SET {k.position_column} = :parked "
            f"WHERE {k.id_column} = :eid AND {k.parent_column} = :cid AND {k.position_column} = :old"
        )
        for upd in batch:
            result = self.conn.execute(
                park_sql,
                {
                    "parked": -(int(upd.new_position) + 1),
                    "eid": int(upd.entity_id),
                    "cid": int(container_id),
                    "old": int(upd.old_position),
                },
            )
            if result.rowcount != 1:
                raise ConflictError(
                    "sibling position changed concurrently",
                    kind=k.name,
                    container_id=container_id,
                    entity_id=upd.entity_id,
                    expected_position=upd.old_position,
                )
        flipped = self.conn.execute(
            sql_text(
                f"UPDATE {k.table} SET {k.position_column} = -{k.position_column} - 1 "
                f"WHERE {k.parent_column} = :cid AND {k.position_column} < 0"
            ),
            {"cid": int(container_id)},
        )
        if flipped.rowcount != len(batch):
            raise ConflictError(
                "unexpected parked rows while applying positions",
                kind=k.name,
                container_id=container_id,
                expected=len(batch),
                actual=flipped.rowcount,
            )
        logger.info(
            "siblings.apply_updates kind=%s container_id=%s count=%s",
            k.name,
            container_id,
            len(batch),
        )
        return len(batch)


__all__ = ["SiblingStore", "ContainerLocks", "CONTAINER_LOCKS"]
