"""Deep copy of one episode subtree inside a single transaction.

The executor walks a ``DuplicationPlan`` level by level: every level is one
``SELECT`` of the source rows whose parents were copied at the previous level
and one bulk ``INSERT ... RETURNING`` of their copies, so round trips grow
with depth rather than with node count. Attachment rows are copied with a
fresh destination key and a pending copy task committed in the same
transaction; the blob copies themselves run after commit.
"""

from __future__ import annotations

import logging
import posixpath
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import bindparam, select
from sqlalchemy.engine import Connection, Engine

from hierarchy_service.config import MAX_DEPTH_CEILING
from hierarchy_service.db.base import get_engine, translate_storage_errors
from hierarchy_service.db.tables import attachment_copy_task, duplication_record, table_for
from hierarchy_service.logic.clock import utcnow
from hierarchy_service.logic.duplication_plan import DuplicationPlan, plan_duplication
from hierarchy_service.logic.errors import IntegrityError, NotFoundError
from hierarchy_service.logic.identifier_map import IdentifierMap
from hierarchy_service.models.hierarchy import DEFAULT_SCHEMA, HierarchySchema, NodeKind

logger = logging.getLogger(__name__)

# Upper bound on bound parameters per IN (...) clause
_IN_CHUNK = 500

PENDING = "pending"


@dataclass(frozen=True)
class AttachmentCopy:
    task_id: str
    kind: str
    entity_id: int
    source_location: str
    dest_location: str


@dataclass
class DuplicationResult:
    source_episode_id: int
    duplicate_episode_id: int
    created: bool
    counts: Dict[str, int] = field(default_factory=dict)
    attachment_task_ids: List[str] = field(default_factory=list)
    # Discarded once the job finishes; never persisted
    identifier_map: Optional[IdentifierMap] = None


def _chunks(values: Sequence[int], size: int = _IN_CHUNK) -> List[Sequence[int]]:
    return [values[i : i + size] for i in range(0, len(values), size)]


def destination_key(prefix: str, new_root_id: int, kind: str, new_id: int, source_location: str) -> str:
    basename = posixpath.basename(str(source_location).rstrip("/")) or "blob"
    return f"{prefix}/episodes/{new_root_id}/{kind}/{new_id}/{basename}"


class DuplicationExecutor:
    def __init__(
        self,
        *,
        schema: HierarchySchema = DEFAULT_SCHEMA,
        max_depth: int = MAX_DEPTH_CEILING,
        location_prefix: str = "blobs",
        engine: Optional[Engine] = None,
        dispatch: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.schema = schema
        self.plan: DuplicationPlan = plan_duplication(schema, max_depth=max_depth)
        self.location_prefix = location_prefix
        self._engine = engine
        self._dispatch = dispatch

    @property
    def engine(self) -> Engine:
        return self._engine or get_engine()

    def run(self, source_episode_id: int, actor_id: str, job_id: Optional[str] = None) -> DuplicationResult:
        """Duplicate the episode for ``actor_id``; idempotent per (source, actor)."""
        source_episode_id = int(source_episode_id)
        with translate_storage_errors("duplicate", source_episode_id=source_episode_id, actor_id=actor_id):
            with self.engine.begin() as conn:
                existing = self._existing_duplicate(conn, source_episode_id, actor_id)
                if existing is not None:
                    logger.info(
                        "duplication.executor.already_done source_episode_id=%s actor_id=%s duplicate_episode_id=%s",
                        source_episode_id,
                        actor_id,
                        existing,
                    )
                    return DuplicationResult(source_episode_id, existing, created=False)
                ids = IdentifierMap()
                new_root = self._copy_root(conn, source_episode_id, actor_id, ids)
                conn.execute(
                    duplication_record.insert().values(
                        source_episode_id=source_episode_id,
                        actor_id=actor_id,
                        duplicate_episode_id=new_root,
                        job_id=job_id,
                        created_at=utcnow(),
                    )
                )
                copies = self._copy_levels(conn, source_episode_id, new_root, ids)
                self._persist_tasks(conn, job_id, copies)

        logger.info(
            "duplication.executor.committed source_episode_id=%s actor_id=%s duplicate_episode_id=%s nodes=%s attachments=%s",
            source_episode_id,
            actor_id,
            new_root,
            len(ids),
            len(copies),
        )
        result = DuplicationResult(
            source_episode_id=source_episode_id,
            duplicate_episode_id=new_root,
            created=True,
            counts={kind: ids.count(kind) for kind in self.plan.kinds()},
            attachment_task_ids=[c.task_id for c in copies],
            identifier_map=ids,
        )
        self._dispatch_tasks(result.attachment_task_ids)
        return result

    # --- stages -------------------------------------------------------------

    def _existing_duplicate(self, conn: Connection, source_id: int, actor_id: str) -> Optional[int]:
        row = conn.execute(
            select(duplication_record.c.duplicate_episode_id).where(
                duplication_record.c.source_episode_id == source_id,
                duplication_record.c.actor_id == actor_id,
            )
        ).first()
        return int(row[0]) if row is not None else None

    def _copy_root(self, conn: Connection, source_id: int, actor_id: str, ids: IdentifierMap) -> int:
        kind = self.schema.kind(self.plan.root)
        table = table_for(kind.table)
        cols = [table.c[c] for c in kind.copied_columns]
        row = conn.execute(select(*cols).where(table.c[kind.id_column] == source_id)).mappings().first()
        if row is None:
            raise NotFoundError(
                f"{kind.name} {source_id} not found",
                code=f"{kind.name}_not_found",
                source_id=source_id,
            )
        payload: Dict[str, Any] = dict(row)
        for col in kind.ownership_columns:
            payload[col] = actor_id
        new_id = int(conn.execute(table.insert().values(**payload)).inserted_primary_key[0])
        ids.record(kind.name, source_id, new_id)
        return new_id

    def _copy_levels(self, conn: Connection, source_root: int, new_root: int, ids: IdentifierMap) -> List[AttachmentCopy]:
        copies: List[AttachmentCopy] = []
        frontier: Dict[str, List[int]] = {self.plan.root: [source_root]}
        for depth in range(1, self.plan.depth + 1):
            next_frontier: Dict[str, List[int]] = defaultdict(list)
            for level in (lvl for lvl in self.plan.levels if lvl.depth == depth):
                parents = frontier.get(level.parent_kind) or []
                if not parents:
                    continue
                kind = self.schema.kind(level.kind)
                rows = self._load_children(conn, kind, parents)
                if not rows:
                    continue
                payloads = []
                for row in rows:
                    payload = {c: row[c] for c in kind.copied_columns}
                    payload[str(kind.parent_column)] = ids.require(level.parent_kind, row[str(kind.parent_column)])
                    if kind.copy_status_column:
                        payload[kind.copy_status_column] = PENDING
                    payloads.append(payload)
                source_ids = [int(row[kind.id_column]) for row in rows]
                new_ids = self._insert_many(conn, kind, payloads)
                ids.record_batch(kind.name, source_ids, new_ids)
                next_frontier[kind.name].extend(source_ids)
                if kind.is_attachment:
                    copies.extend(self._relocate_attachments(conn, kind, new_root, rows, new_ids))
            frontier = next_frontier
        self._check_ceiling(conn, frontier)
        return copies

    def _load_children(self, conn: Connection, kind: NodeKind, parent_ids: Sequence[int]) -> List[Mapping[str, Any]]:
        table = table_for(kind.table)
        parent_col = table.c[str(kind.parent_column)]
        cols = [table.c[kind.id_column], parent_col] + [table.c[c] for c in kind.copied_columns]
        order = [parent_col]
        if kind.position_column:
            order.append(table.c[kind.position_column])
        order.append(table.c[kind.id_column])
        stmt = select(*cols).where(parent_col.in_(bindparam("parent_ids", expanding=True))).order_by(*order)
        rows: List[Mapping[str, Any]] = []
        for chunk in _chunks(list(parent_ids)):
            rows.extend(dict(r) for r in conn.execute(stmt, {"parent_ids": list(chunk)}).mappings())
        return rows

    def _insert_many(self, conn: Connection, kind: NodeKind, payloads: List[Dict[str, Any]]) -> List[int]:
        table = table_for(kind.table)
        pk = table.c[kind.id_column]
        if getattr(conn.dialect, "insert_executemany_returning_sort_by_parameter_order", False):
            result = conn.execute(table.insert().returning(pk, sort_by_parameter_order=True), payloads)
            return [int(r[0]) for r in result.all()]
        # Dialect cannot guarantee RETURNING order for executemany
        return [int(conn.execute(table.insert().values(**p)).inserted_primary_key[0]) for p in payloads]

    def _relocate_attachments(
        self,
        conn: Connection,
        kind: NodeKind,
        new_root: int,
        rows: Sequence[Mapping[str, Any]],
        new_ids: Sequence[int],
    ) -> List[AttachmentCopy]:
        table = table_for(kind.table)
        location = str(kind.location_column)
        copies = [
            AttachmentCopy(
                task_id=str(uuid.uuid4()),
                kind=kind.name,
                entity_id=int(new_id),
                source_location=str(row[location]),
                dest_location=destination_key(self.location_prefix, new_root, kind.name, int(new_id), row[location]),
            )
            for row, new_id in zip(rows, new_ids)
        ]
        stmt = (
            table.update()
            .where(table.c[kind.id_column] == bindparam("b_entity_id"))
            .values({location: bindparam("b_dest")})
        )
        conn.execute(stmt, [{"b_entity_id": c.entity_id, "b_dest": c.dest_location} for c in copies])
        return copies

    def _check_ceiling(self, conn: Connection, frontier: Mapping[str, Sequence[int]]) -> None:
        for kind_name in sorted(self.plan.truncated_kinds):
            parents = list(frontier.get(kind_name) or [])
            if not parents:
                continue
            for child in self.schema.children_of(kind_name):
                table = table_for(child.table)
                parent_col = table.c[str(child.parent_column)]
                stmt = select(table.c[child.id_column]).where(parent_col.in_(bindparam("parent_ids", expanding=True))).limit(1)
                for chunk in _chunks(parents):
                    if conn.execute(stmt, {"parent_ids": list(chunk)}).first() is not None:
                        raise IntegrityError(
                            f"hierarchy deeper than the duplication ceiling of {self.plan.max_depth}",
                            code="depth_ceiling_exceeded",
                            kind=child.name,
                            max_depth=self.plan.max_depth,
                        )

    def _persist_tasks(self, conn: Connection, job_id: Optional[str], copies: Sequence[AttachmentCopy]) -> None:
        if not copies:
            return
        now = utcnow()
        conn.execute(
            attachment_copy_task.insert(),
            [
                {
                    "task_id": c.task_id,
                    "job_id": job_id,
                    "kind": c.kind,
                    "entity_id": c.entity_id,
                    "source_location": c.source_location,
                    "dest_location": c.dest_location,
                    "status": PENDING,
                    "attempts": 0,
                    "created_at": now,
                    "updated_at": now,
                }
                for c in copies
            ],
        )

    def _dispatch_tasks(self, task_ids: Sequence[str]) -> None:
        if self._dispatch is None:
            return
        for task_id in task_ids:
            try:
                self._dispatch(task_id)
            except Exception:
                # Task rows are committed as pending; startup recovery dispatches them again.
                logger.error("duplication.executor.dispatch_failed task_id=%s", task_id, exc_info=True)


__all__ = ["AttachmentCopy", "DuplicationResult", "DuplicationExecutor", "destination_key"]
