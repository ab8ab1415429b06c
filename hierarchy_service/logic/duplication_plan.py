"""Schema-driven duplication planner.

Turns a hierarchy schema into an ordered list of levels to copy, breadth
first, parents before children. Self-referencing kinds are expanded level by
level up to ``max_depth``; kinds whose children would lie beyond the ceiling
are reported in ``truncated_kinds`` so the executor can refuse data that
actually reaches that deep. Pure: never touches storage.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet, List, Optional, Tuple

from hierarchy_service.config import MAX_DEPTH_CEILING
from hierarchy_service.logic.errors import ValidationError
from hierarchy_service.models.hierarchy import HierarchySchema


@dataclass(frozen=True)
class PlanLevel:
    depth: int
    kind: str
    parent_kind: str
    parent_column: str
    ordered: bool


@dataclass(frozen=True)
class DuplicationPlan:
    root: str
    max_depth: int
    levels: Tuple[PlanLevel, ...]
    truncated_kinds: FrozenSet[str] = frozenset()

    @property
    def depth(self) -> int:
        return max((lvl.depth for lvl in self.levels), default=0)

    def kinds(self) -> List[str]:
        seen: List[str] = [self.root]
        for lvl in self.levels:
            if lvl.kind not in seen:
                seen.append(lvl.kind)
        return seen


def _validate_schema(schema: HierarchySchema) -> None:
    for kind in schema.kinds.values():
        if kind.parent_kind is None:
            continue
        if kind.parent_kind not in schema.kinds:
            raise ValidationError(
                f"{kind.name} references undeclared parent kind {kind.parent_kind}",
                code="schema_invalid",
                kind=kind.name,
            )
        if not kind.parent_column:
            raise ValidationError(
                f"{kind.name} declares a parent without a parent column",
                code="schema_invalid",
                kind=kind.name,
            )


def plan_duplication(
    schema: HierarchySchema,
    root_kind: Optional[str] = None,
    max_depth: int = MAX_DEPTH_CEILING,
) -> DuplicationPlan:
    root = root_kind or schema.root
    if root not in schema.kinds:
        raise ValidationError(f"unknown root kind {root}", code="schema_invalid", kind=root)
    if isinstance(max_depth, bool) or not isinstance(max_depth, int) or not 1 <= max_depth <= MAX_DEPTH_CEILING:
        raise ValidationError(
            f"max_depth must be between 1 and {MAX_DEPTH_CEILING}",
            code="invalid_max_depth",
            max_depth=max_depth,
        )
    _validate_schema(schema)

    levels: List[PlanLevel] = []
    frontier: List[str] = [root]
    depth = 0
    while frontier:
        if depth == max_depth:
            truncated = frozenset(k for k in frontier if schema.children_of(k))
            return DuplicationPlan(root, max_depth, tuple(levels), truncated)
        depth += 1
        next_frontier: List[str] = []
        for parent in frontier:
            for child in schema.children_of(parent):
                levels.append(
                    PlanLevel(
                        depth=depth,
                        kind=child.name,
                        parent_kind=parent,
                        parent_column=str(child.parent_column),
                        ordered=child.ordered,
                    )
                )
                if child.name not in next_frontier:
                    next_frontier.append(child.name)
        frontier = next_frontier
    return DuplicationPlan(root, max_depth, tuple(levels))


__all__ = ["PlanLevel", "DuplicationPlan", "plan_duplication"]
