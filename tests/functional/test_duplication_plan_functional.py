"""Functional tests for the schema-driven duplication planner."""

from __future__ import annotations

import pytest

from hierarchy_service.logic.duplication_plan import plan_duplication
from hierarchy_service.logic.errors import ValidationError
from hierarchy_service.models.hierarchy import DEFAULT_SCHEMA, NodeKind, build_schema


def test_default_schema_plans_parents_before_children() -> None:
    plan = plan_duplication(DEFAULT_SCHEMA)
    assert plan.root == "episode"
    assert [(lvl.depth, lvl.kind, lvl.parent_kind) for lvl in plan.levels] == [
        (1, "part", "episode"),
        (2, "item", "part"),
        (3, "block", "item"),
        (4, "block_field", "block"),
        (4, "media", "block"),
    ]
    assert plan.truncated_kinds == frozenset()
    assert plan.depth == 4
    assert plan.kinds() == ["episode", "part", "item", "block", "block_field", "media"]


def test_ordered_flag_follows_schema() -> None:
    plan = plan_duplication(DEFAULT_SCHEMA)
    ordered = {lvl.kind: lvl.ordered for lvl in plan.levels}
    assert ordered["block_field"] is True
    assert ordered["media"] is False


def test_ceiling_truncates_deeper_relations() -> None:
    plan = plan_duplication(DEFAULT_SCHEMA, max_depth=2)
    assert [lvl.kind for lvl in plan.levels] == ["part", "item"]
    assert plan.truncated_kinds == frozenset({"item"})


def test_ceiling_equal_to_schema_depth_truncates_nothing() -> None:
    plan = plan_duplication(DEFAULT_SCHEMA, max_depth=4)
    assert plan.truncated_kinds == frozenset()
    assert len(plan.levels) == 5


def test_self_referencing_kind_expands_until_ceiling() -> None:
    schema = build_schema(
        "node",
        [
            NodeKind(name="node", table="node", id_column="node_id", columns=("name",)),
            NodeKind(
                name="child",
                table="child",
                id_column="child_id",
                columns=("name",),
                parent_kind="child",
                parent_column="parent_id",
            ),
        ],
    )
    # Unreachable from the root: nothing to plan
    assert plan_duplication(schema).levels == ()

    cyclic = build_schema(
        "node",
        [
            NodeKind(
                name="node",
                table="node",
                id_column="node_id",
                columns=("name",),
                parent_kind="node",
                parent_column="parent_id",
            ),
        ],
    )
    plan = plan_duplication(cyclic, max_depth=3)
    assert [(lvl.depth, lvl.kind) for lvl in plan.levels] == [(1, "node"), (2, "node"), (3, "node")]
    assert plan.truncated_kinds == frozenset({"node"})


@pytest.mark.parametrize("depth", [0, 11, -1, True, "3"])
def test_invalid_max_depth_is_rejected(depth) -> None:
    with pytest.raises(ValidationError) as exc:
        plan_duplication(DEFAULT_SCHEMA, max_depth=depth)
    assert exc.value.code == "invalid_max_depth"


def test_unknown_root_or_parent_is_rejected() -> None:
    with pytest.raises(ValidationError):
        plan_duplication(DEFAULT_SCHEMA, root_kind="season")
    broken = build_schema(
        "episode",
        [
            NodeKind(name="episode", table="episode", id_column="episode_id", columns=("title",)),
            NodeKind(
                name="part",
                table="part",
                id_column="part_id",
                columns=("title",),
                parent_kind="season",
                parent_column="season_id",
            ),
        ],
    )
    with pytest.raises(ValidationError) as exc:
        plan_duplication(broken)
    assert exc.value.code == "schema_invalid"
