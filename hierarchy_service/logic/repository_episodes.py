"""Episode data access helpers.

Creates root episodes and reads a whole episode tree back, nested by
containment and ordered by position, so route handlers stay free of SQL.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import bindparam
from sqlalchemy import text as sql_text
from sqlalchemy.engine import Engine

from hierarchy_service.config import MAX_DEPTH_CEILING
from hierarchy_service.db.base import get_engine, translate_storage_errors
from hierarchy_service.db.tables import episode
from hierarchy_service.logic.clock import utcnow
from hierarchy_service.logic.errors import NotFoundError, ValidationError
from hierarchy_service.models.hierarchy import DEFAULT_SCHEMA, HierarchySchema, NodeKind

logger = logging.getLogger(__name__)


def create_episode(
    title: str,
    owner_id: str,
    description: Optional[str] = None,
    share_token: Optional[str] = None,
    *,
    engine: Optional[Engine] = None,
) -> int:
    if not str(title or "").strip():
        raise ValidationError("title must be non-empty", code="title_required")
    if not str(owner_id or "").strip():
        raise ValidationError("owner_id must be non-empty", code="owner_required")
    eng = engine or get_engine()
    with translate_storage_errors("create_episode"):
        with eng.begin() as conn:
            result = conn.execute(
                episode.insert().values(
                    title=title,
                    description=description,
                    owner_id=owner_id,
                    created_by=owner_id,
                    share_token=share_token,
                    created_at=utcnow(),
                )
            )
            episode_id = int(result.inserted_primary_key[0])
    logger.info("episodes.create episode_id=%s owner_id=%s", episode_id, owner_id)
    return episode_id


def _select_children(conn: Any, kind: NodeKind, parent_ids: List[int]) -> List[Dict[str, Any]]:
    cols = ", ".join((kind.id_column, str(kind.parent_column)) + kind.columns)
    order = f"{kind.parent_column}, {kind.position_column}, {kind.id_column}" if kind.ordered else f"{kind.parent_column}, {kind.id_column}"
    stmt = sql_text(
        f"SELECT {cols} FROM {kind.table} WHERE {kind.parent_column} IN :ids ORDER BY {order}"
    ).bindparams(bindparam("ids", expanding=True))
    return [dict(r) for r in conn.execute(stmt, {"ids": parent_ids}).mappings().fetchall()]


def get_episode_tree(
    episode_id: int,
    *,
    schema: HierarchySchema = DEFAULT_SCHEMA,
    engine: Optional[Engine] = None,
) -> Dict[str, Any]:
    """Return the episode with every descendant nested under ``children[kind]``."""
    root = schema.kind(schema.root)
    eng = engine or get_engine()
    with eng.connect() as conn:
        cols = ", ".join((root.id_column,) + root.columns)
        row = conn.execute(
            sql_text(f"SELECT {cols} FROM {root.table} WHERE {root.id_column} = :eid"),
            {"eid": int(episode_id)},
        ).mappings().fetchone()
        if row is None:
            raise NotFoundError(f"{root.name} not found", code=f"{root.name}_not_found", episode_id=episode_id)
        tree = {"kind": root.name, "id": int(row[root.id_column]), **{c: row[c] for c in root.columns if c not in root.excluded}}
        tree["children"] = {}
        frontier: Dict[str, Dict[int, Dict[str, Any]]] = {root.name: {tree["id"]: tree}}
        depth = 0
        while frontier and depth < MAX_DEPTH_CEILING:
            depth += 1
            next_frontier: Dict[str, Dict[int, Dict[str, Any]]] = {}
            for parent_kind, nodes in frontier.items():
                for child in schema.children_of(parent_kind):
                    for r in _select_children(conn, child, list(nodes)):
                        node = {"kind": child.name, "id": int(r[child.id_column])}
                        node.update({c: r[c] for c in child.columns if c not in child.excluded})
                        node["children"] = {}
                        nodes[int(r[str(child.parent_column)])]["children"].setdefault(child.name, []).append(node)
                        next_frontier.setdefault(child.name, {})[node["id"]] = node
            frontier = next_frontier
    return tree


__all__ = ["create_episode", "get_episode_tree"]
