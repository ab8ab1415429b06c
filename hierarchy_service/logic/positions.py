"""Position-changing operations on ordered siblings.

Each operation maps 1:1 to a ledger plan applied by the sibling store inside
a single transaction, under the per-container lock. Storage races surface as
ConflictError and are retried a bounded number of times with linear backoff;
validation failures are raised immediately.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, TypeVar

from sqlalchemy.engine import Engine

from hierarchy_service.config import PositionSettings
from hierarchy_service.db.base import get_engine, translate_storage_errors
from hierarchy_service.logic.errors import ConflictError, NotFoundError
from hierarchy_service.logic.order_sequences import (
    assert_contiguous,
    plan_bulk_reorder,
    plan_delete,
    plan_insert,
    plan_move,
)
from hierarchy_service.logic.repository_siblings import CONTAINER_LOCKS, SiblingStore
from hierarchy_service.models.hierarchy import DEFAULT_SCHEMA, HierarchySchema

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PositionResult:
    entity_id: int
    container_id: int
    position: Optional[int]
    shifted: int


def _run_in_container(
    kind: str,
    container_id: int,
    operation: str,
    work: Callable[[SiblingStore], T],
    *,
    schema: HierarchySchema,
    settings: PositionSettings,
    engine: Engine,
) -> T:
    attempt = 0
    while True:
        attempt += 1
        try:
            with CONTAINER_LOCKS.hold(kind, container_id):
                with translate_storage_errors(operation, kind=kind, container_id=container_id):
                    with engine.begin() as conn:
                        store = SiblingStore(conn, schema, kind)
                        store.lock_container(container_id)
                        return work(store)
        except ConflictError as exc:
            if attempt >= settings.max_attempts:
                logger.error(
                    "positions.%s.conflict_exhausted kind=%s container_id=%s attempts=%s cause=%s",
                    operation,
                    kind,
                    container_id,
                    attempt,
                    exc.detail,
                )
                raise
            delay = settings.backoff_seconds * attempt
            logger.warning(
                "positions.%s.conflict_retry kind=%s container_id=%s attempt=%s delay=%.3f",
                operation,
                kind,
                container_id,
                attempt,
                delay,
            )
            time.sleep(delay)


def _resolve_container(kind: str, entity_id: int, *, schema: HierarchySchema, engine: Engine) -> int:
    with engine.connect() as conn:
        located = SiblingStore(conn, schema, kind).locate(entity_id)
    if located is None:
        raise NotFoundError(f"{kind} not found", code=f"{kind}_not_found", entity_id=entity_id)
    return located[0]


def _relocate(store: SiblingStore, entity_id: int, container_id: int) -> int:
    """Re-read the entity inside the transaction; it may have moved containers since lookup."""
    located = store.locate(entity_id)
    if located is None:
        raise NotFoundError(
            f"{store.kind.name} not found",
            code=f"{store.kind.name}_not_found",
            entity_id=entity_id,
        )
    if located[0] != container_id:
        raise ConflictError(
            f"{store.kind.name} changed container concurrently",
            entity_id=entity_id,
            container_id=container_id,
        )
    return located[1]


def insert_entity(
    kind: str,
    container_id: int,
    payload: Mapping[str, Any],
    position: Optional[int] = None,
    *,
    schema: HierarchySchema = DEFAULT_SCHEMA,
    settings: Optional[PositionSettings] = None,
    engine: Optional[Engine] = None,
) -> PositionResult:
    """Insert a sibling at ``position`` (clamped) or append when omitted."""

    def work(store: SiblingStore) -> PositionResult:
        existing = store.current_positions(container_id)
        assert_contiguous(existing)
        plan = plan_insert(existing, position)
        store.apply_updates(container_id, plan.updates)
        new_id = store.insert(container_id, plan.position, payload)
        return PositionResult(new_id, int(container_id), plan.position, len(plan.updates))

    return _run_in_container(
        kind, container_id, "insert", work,
        schema=schema, settings=settings or PositionSettings(), engine=engine or get_engine(),
    )


def delete_entity(
    kind: str,
    entity_id: int,
    *,
    schema: HierarchySchema = DEFAULT_SCHEMA,
    settings: Optional[PositionSettings] = None,
    engine: Optional[Engine] = None,
) -> PositionResult:
    eng = engine or get_engine()
    container_id = _resolve_container(kind, entity_id, schema=schema, engine=eng)

    def work(store: SiblingStore) -> PositionResult:
        current = _relocate(store, entity_id, container_id)
        existing = store.current_positions(container_id)
        assert_contiguous(existing)
        updates = plan_delete(existing, current)
        store.delete(entity_id)
        store.apply_updates(container_id, updates)
        return PositionResult(int(entity_id), container_id, None, len(updates))

    return _run_in_container(
        kind, container_id, "delete", work,
        schema=schema, settings=settings or PositionSettings(), engine=eng,
    )


def move_entity(
    kind: str,
    entity_id: int,
    new_position: int,
    *,
    schema: HierarchySchema = DEFAULT_SCHEMA,
    settings: Optional[PositionSettings] = None,
    engine: Optional[Engine] = None,
) -> PositionResult:
    eng = engine or get_engine()
    container_id = _resolve_container(kind, entity_id, schema=schema, engine=eng)

    def work(store: SiblingStore) -> PositionResult:
        current = _relocate(store, entity_id, container_id)
        existing = store.current_positions(container_id)
        assert_contiguous(existing)
        updates = plan_move(existing, current, new_position)
        store.apply_updates(container_id, updates)
        final = next((u.new_position for u in updates if u.entity_id == int(entity_id)), current)
        return PositionResult(int(entity_id), container_id, final, max(len(updates) - 1, 0))

    return _run_in_container(
        kind, container_id, "move", work,
        schema=schema, settings=settings or PositionSettings(), engine=eng,
    )


def bulk_reorder(
    kind: str,
    container_id: int,
    ordered_ids: Sequence[int],
    *,
    schema: HierarchySchema = DEFAULT_SCHEMA,
    settings: Optional[PositionSettings] = None,
    engine: Optional[Engine] = None,
) -> List[Dict[str, int]]:
    """Reorder every sibling of a container; returns the final ``[{id, position}]``."""

    def work(store: SiblingStore) -> List[Dict[str, int]]:
        existing = store.current_positions(container_id)
        updates = plan_bulk_reorder(existing, ordered_ids)
        store.apply_updates(container_id, updates)
        return [{"id": int(eid), "position": idx} for idx, eid in enumerate(ordered_ids)]

    return _run_in_container(
        kind, container_id, "bulk_reorder", work,
        schema=schema, settings=settings or PositionSettings(), engine=engine or get_engine(),
    )


def list_entities(
    kind: str,
    container_id: int,
    *,
    schema: HierarchySchema = DEFAULT_SCHEMA,
    engine: Optional[Engine] = None,
) -> List[Dict[str, Any]]:
    eng = engine or get_engine()
    with eng.connect() as conn:
        store = SiblingStore(conn, schema, kind)
        if not store.container_exists(container_id):
            c = store.container
            raise NotFoundError(f"{c.name} not found", code=f"{c.name}_not_found", container_id=container_id)
        return store.list_rows(container_id)


__all__ = [
    "PositionResult",
    "insert_entity",
    "delete_entity",
    "move_entity",
    "bulk_reorder",
    "list_entities",
]
