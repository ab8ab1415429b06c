"""Sibling position ledger.

Pure planning helpers that keep the ``position`` values of the children of a
single container dense and zero-based (``0..n-1``). Each helper receives the
current ``(entity_id, position)`` pairs and returns only the updates that
must be written; applying them atomically is the job of the sibling store.

Moves are expressed as interval shifts: only the rows between the old and the
new slot are touched, never the whole collection.
"""

from __future__ import annotations

from bisect import bisect_left, bisect_right
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple
import logging

from hierarchy_service.logic.errors import IntegrityError, ValidationError

logger = logging.getLogger(__name__)

PositionPair = Tuple[int, int]


@dataclass(frozen=True)
class PositionUpdate:
    entity_id: int
    old_position: int
    new_position: int


@dataclass(frozen=True)
class InsertPlan:
    position: int
    updates: List[PositionUpdate] = field(default_factory=list)


def _as_int(value: object, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer", code="invalid_position", field=name, value=value)
    return value


def _ordered(existing: Iterable[PositionPair]) -> List[PositionPair]:
    pairs = [(int(eid), int(pos)) for eid, pos in existing]
    pairs.sort(key=lambda p: (p[1], p[0]))
    return pairs


def _shift(pairs: Sequence[PositionPair], delta: int) -> List[PositionUpdate]:
    return [PositionUpdate(eid, pos, pos + delta) for eid, pos in pairs]


def assert_contiguous(existing: Iterable[PositionPair]) -> None:
    """Raise IntegrityError unless positions are exactly ``0..n-1`` without duplicates."""
    positions = sorted(pos for _, pos in existing)
    if positions != list(range(len(positions))):
        raise IntegrityError(
            "sibling positions are not contiguous",
            code="positions_not_contiguous",
            positions=positions,
        )


def plan_insert(existing: Iterable[PositionPair], target_position: Optional[int] = None) -> InsertPlan:
    """Plan the slot for a new sibling.

    - ``target_position`` omitted: append at ``max(position) + 1`` (``0`` when empty).
    - Otherwise clamp into ``[0, count]`` and shift every sibling at or after
      the slot up by one.
    """
    pairs = _ordered(existing)
    if target_position is None:
        next_pos = pairs[-1][1] + 1 if pairs else 0
        return InsertPlan(position=next_pos)

    target = min(max(_as_int(target_position, "position"), 0), len(pairs))
    positions = [pos for _, pos in pairs]
    start = bisect_left(positions, target)
    return InsertPlan(position=target, updates=_shift(pairs[start:], +1))


def plan_delete(existing: Iterable[PositionPair], deleted_position: int) -> List[PositionUpdate]:
    """Close the gap left by the sibling at ``deleted_position``."""
    pairs = _ordered(existing)
    deleted = _as_int(deleted_position, "position")
    positions = [pos for _, pos in pairs]
    idx = bisect_left(positions, deleted)
    if idx >= len(positions) or positions[idx] != deleted:
        raise ValidationError(
            "no sibling at the given position",
            code="position_not_found",
            position=deleted,
        )
    return _shift(pairs[idx + 1:], -1)


def plan_move(existing: Iterable[PositionPair], old_position: int, new_position: int) -> List[PositionUpdate]:
    """Move the sibling at ``old_position`` so that it ends at ``new_position``.

    ``new_position`` is the final index of the moved sibling and is clamped
    into ``[0, count - 1]``.
    """
    pairs = _ordered(existing)
    old = _as_int(old_position, "old_position")
    positions = [pos for _, pos in pairs]
    idx = bisect_left(positions, old)
    if idx >= len(positions) or positions[idx] != old:
        raise ValidationError(
            "no sibling at the given position",
            code="position_not_found",
            position=old,
        )
    new = min(max(_as_int(new_position, "new_position"), 0), len(pairs) - 1)
    if new == old:
        return []

    moved_id = pairs[idx][0]
    if new > old:
        # (old, new] shifts down
        span = pairs[idx + 1:bisect_right(positions, new)]
        updates = _shift(span, -1)
    else:
        # [new, old) shifts up
        span = pairs[bisect_left(positions, new):idx]
        updates = _shift(span, +1)
    updates.append(PositionUpdate(moved_id, old, new))
    return updates


def plan_bulk_reorder(existing: Iterable[PositionPair], ordered_ids: Sequence[int]) -> List[PositionUpdate]:
    """Assign ``position = index`` following ``ordered_ids``.

    The list must name exactly the current siblings; anything else is rejected
    as a whole so no partial reorder is ever applied.
    """
    pairs = _ordered(existing)
    current = {eid: pos for eid, pos in pairs}
    requested = [_as_int(i, "ids[]") for i in ordered_ids]

    duplicates = sorted(i for i, n in Counter(requested).items() if n > 1)
    missing = sorted(set(current) - set(requested))
    unknown = sorted(set(requested) - set(current))
    if duplicates or missing or unknown or len(requested) != len(current):
        logger.info(
            "order_sequences.bulk_reorder.rejected missing=%s unknown=%s duplicates=%s",
            missing,
            unknown,
            duplicates,
        )
        raise ValidationError(
            "reorder list must contain exactly the current siblings",
            code="reorder_set_mismatch",
            missing=missing,
            unknown=unknown,
            duplicates=duplicates,
        )

    return [
        PositionUpdate(eid, current[eid], idx)
        for idx, eid in enumerate(requested)
        if current[eid] != idx
    ]


def apply_plan(existing: Iterable[PositionPair], updates: Iterable[PositionUpdate]) -> List[PositionPair]:
    """Return the sibling pairs after ``updates``; used to verify a plan in memory."""
    result = dict(_ordered(existing))
    for upd in updates:
        result[upd.entity_id] = upd.new_position
    return sorted(result.items(), key=lambda p: p[1])


__all__ = [
    "PositionUpdate",
    "InsertPlan",
    "assert_contiguous",
    "plan_insert",
    "plan_delete",
    "plan_move",
    "plan_bulk_reorder",
    "apply_plan",
]
