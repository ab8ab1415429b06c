"""Functional tests for the pure sibling position ledger.

Positions are zero-based and dense; every plan is checked by applying it in
memory and asserting the resulting order and contiguity.
"""

from __future__ import annotations

import random

import pytest

from hierarchy_service.logic.errors import IntegrityError, ValidationError
from hierarchy_service.logic.order_sequences import (
    PositionUpdate,
    apply_plan,
    assert_contiguous,
    plan_bulk_reorder,
    plan_delete,
    plan_insert,
    plan_move,
)


def _siblings(n: int) -> list[tuple[int, int]]:
    # ids 101.. at positions 0..n-1
    return [(101 + i, i) for i in range(n)]


def _order(pairs: list[tuple[int, int]]) -> list[int]:
    return [eid for eid, _ in sorted(pairs, key=lambda p: p[1])]


def test_insert_without_position_appends_after_last() -> None:
    plan = plan_insert(_siblings(3))
    assert plan.position == 3
    assert plan.updates == []


def test_insert_into_empty_container_starts_at_zero() -> None:
    assert plan_insert([]).position == 0
    assert plan_insert([], 5).position == 0


def test_insert_in_middle_shifts_only_following_siblings() -> None:
    plan = plan_insert(_siblings(4), 1)
    assert plan.position == 1
    assert plan.updates == [
        PositionUpdate(102, 1, 2),
        PositionUpdate(103, 2, 3),
        PositionUpdate(104, 3, 4),
    ]


def test_insert_position_is_clamped_to_count() -> None:
    plan = plan_insert(_siblings(2), 99)
    assert plan.position == 2
    assert plan.updates == []


def test_insert_rejects_non_integer_position() -> None:
    with pytest.raises(ValidationError):
        plan_insert(_siblings(2), "1")  # type: ignore[arg-type]
    with pytest.raises(ValidationError):
        plan_insert(_siblings(2), True)  # type: ignore[arg-type]


def test_delete_closes_gap() -> None:
    existing = _siblings(5)
    updates = plan_delete(existing, 2)
    assert [u.entity_id for u in updates] == [104, 105]
    remaining = [p for p in existing if p[0] != 103]
    after = apply_plan(remaining, updates)
    assert_contiguous(after)
    assert _order(after) == [101, 102, 104, 105]


def test_delete_of_last_sibling_touches_nothing() -> None:
    assert plan_delete(_siblings(3), 2) == []


def test_delete_unknown_position_is_rejected() -> None:
    with pytest.raises(ValidationError) as exc:
        plan_delete(_siblings(2), 7)
    assert exc.value.code == "position_not_found"


def test_move_forward_shifts_interval_down() -> None:
    existing = _siblings(5)
    updates = plan_move(existing, 1, 3)
    after = apply_plan(existing, updates)
    assert _order(after) == [101, 103, 104, 102, 105]
    # 101 and 105 lie outside the interval
    assert {u.entity_id for u in updates} == {102, 103, 104}


def test_move_backward_shifts_interval_up() -> None:
    existing = _siblings(5)
    after = apply_plan(existing, plan_move(existing, 4, 0))
    assert _order(after) == [105, 101, 102, 103, 104]


def test_move_to_same_position_is_a_no_op() -> None:
    assert plan_move(_siblings(3), 1, 1) == []


def test_move_target_is_clamped_to_last_index() -> None:
    existing = _siblings(3)
    after = apply_plan(existing, plan_move(existing, 0, 50))
    assert _order(after) == [102, 103, 101]


def test_bulk_reorder_assigns_index_positions() -> None:
    existing = _siblings(4)
    updates = plan_bulk_reorder(existing, [104, 101, 103, 102])
    after = apply_plan(existing, updates)
    assert _order(after) == [104, 101, 103, 102]
    # 103 already sits at index 2
    assert 103 not in {u.entity_id for u in updates}


@pytest.mark.parametrize(
    "ids",
    [
        [101, 102],
        [101, 102, 103, 999],
        [101, 101, 102],
        [],
    ],
)
def test_bulk_reorder_rejects_mismatched_sets(ids: list[int]) -> None:
    with pytest.raises(ValidationError) as exc:
        plan_bulk_reorder(_siblings(3), ids)
    assert exc.value.code == "reorder_set_mismatch"


def test_assert_contiguous_detects_gaps_and_duplicates() -> None:
    assert_contiguous(_siblings(3))
    assert_contiguous([])
    with pytest.raises(IntegrityError):
        assert_contiguous([(1, 0), (2, 2)])
    with pytest.raises(IntegrityError):
        assert_contiguous([(1, 0), (2, 0)])


def test_random_operation_sequences_keep_positions_dense() -> None:
    rng = random.Random(20240917)
    pairs: list[tuple[int, int]] = []
    next_id = 1
    for _ in range(300):
        op = rng.choice(["insert", "insert", "delete", "move", "reorder"])
        if op == "insert" or not pairs:
            target = rng.choice([None, rng.randint(0, len(pairs) + 2)])
            plan = plan_insert(pairs, target)
            pairs = apply_plan(pairs, plan.updates) + [(next_id, plan.position)]
            next_id += 1
        elif op == "delete":
            eid, pos = rng.choice(pairs)
            updates = plan_delete(pairs, pos)
            pairs = apply_plan([p for p in pairs if p[0] != eid], updates)
        elif op == "move":
            _, pos = rng.choice(pairs)
            pairs = apply_plan(pairs, plan_move(pairs, pos, rng.randint(0, len(pairs))))
        else:
            ids = [eid for eid, _ in pairs]
            rng.shuffle(ids)
            pairs = apply_plan(pairs, plan_bulk_reorder(pairs, ids))
            assert _order(pairs) == ids
        assert_contiguous(pairs)
