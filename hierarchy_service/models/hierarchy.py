"""Declarative description of the episode content hierarchy.

The schema drives both the sibling ordering routes (which kinds are ordered
and what their container is) and the duplication planner (which child
relations to walk and which attributes to copy).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple


@dataclass(frozen=True)
class NodeKind:
    name: str
    table: str
    id_column: str
    columns: Tuple[str, ...]
    parent_kind: Optional[str] = None
    parent_column: Optional[str] = None
    position_column: Optional[str] = None
    # Sensitive attributes that are never copied
    # Attributes that must be supplied on insert
    required: FrozenSet[str] = frozenset()
    excluded: FrozenSet[str] = frozenset()
    # Set from the acting user on the copied root
    ownership_columns: Tuple[str, ...] = ()
    # Blob reference column for attachment kinds
    location_column: Optional[str] = None
    copy_status_column: Optional[str] = None

    @property
    def ordered(self) -> bool:
        return self.position_column is not None

    @property
    def is_attachment(self) -> bool:
        return self.location_column is not None

    @property
    def copied_columns(self) -> Tuple[str, ...]:
        return tuple(c for c in self.columns if c not in self.excluded)


@dataclass(frozen=True)
class HierarchySchema:
    root: str
    kinds: Dict[str, NodeKind] = field(default_factory=dict)

    def kind(self, name: str) -> NodeKind:
        try:
            return self.kinds[name]
        except KeyError:
            raise KeyError(f"unknown node kind: {name}") from None

    def children_of(self, name: str) -> List[NodeKind]:
        return [k for k in self.kinds.values() if k.parent_kind == name]

    def ordered_kinds(self) -> List[NodeKind]:
        return [k for k in self.kinds.values() if k.ordered]

    def container_of(self, name: str) -> NodeKind:
        kind = self.kind(name)
        if kind.parent_kind is None:
            raise KeyError(f"node kind {name} has no container")
        return self.kind(kind.parent_kind)


def build_schema(root: str, kinds: Iterable[NodeKind]) -> HierarchySchema:
    return HierarchySchema(root=root, kinds={k.name: k for k in kinds})


EPISODE = NodeKind(
    name="episode",
    table="episode",
    id_column="episode_id",
    columns=("title", "description", "owner_id", "created_by", "share_token", "published_at"),
    excluded=frozenset({"share_token", "published_at"}),
    ownership_columns=("owner_id", "created_by"),
)

PART = NodeKind(
    name="part",
    table="part",
    id_column="part_id",
    columns=("title", "summary", "position"),
    required=frozenset({"title"}),
    parent_kind="episode",
    parent_column="episode_id",
    position_column="position",
)

ITEM = NodeKind(
    name="item",
    table="item",
    id_column="item_id",
    columns=("title", "body", "position"),
    required=frozenset({"title"}),
    parent_kind="part",
    parent_column="part_id",
    position_column="position",
)

BLOCK = NodeKind(
    name="block",
    table="block",
    id_column="block_id",
    columns=("block_type", "content", "position"),
    required=frozenset({"block_type"}),
    parent_kind="item",
    parent_column="item_id",
    position_column="position",
)

BLOCK_FIELD = NodeKind(
    name="block_field",
    table="block_field",
    id_column="block_field_id",
    columns=("name", "value", "position"),
    required=frozenset({"name"}),
    parent_kind="block",
    parent_column="block_id",
    position_column="position",
)

MEDIA = NodeKind(
    name="media",
    table="media",
    id_column="media_id",
    columns=("storage_key", "content_type", "size_bytes", "access_token", "copy_status"),
    required=frozenset({"storage_key"}),
    parent_kind="block",
    parent_column="block_id",
    excluded=frozenset({"access_token"}),
    location_column="storage_key",
    copy_status_column="copy_status",
)

DEFAULT_SCHEMA = build_schema("episode", [EPISODE, PART, ITEM, BLOCK, BLOCK_FIELD, MEDIA])

# Route-facing names for the ordered kinds
ORDERED_KIND_ALIASES: Dict[str, str] = {
    "parts": "part",
    "items": "item",
    "blocks": "block",
    "block-fields": "block_field",
}


__all__ = [
    "NodeKind",
    "HierarchySchema",
    "build_schema",
    "DEFAULT_SCHEMA",
    "ORDERED_KIND_ALIASES",
]
