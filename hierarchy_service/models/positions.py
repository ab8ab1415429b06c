"""Pydantic request/response bodies for sibling ordering routes."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class EntityCreate(BaseModel):
    """Insert body: kind-specific attributes plus an optional target position."""

    # Out-of-range values are clamped by the ledger
    position: Optional[int] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)


class PositionMove(BaseModel):
    position: int


class BulkReorder(BaseModel):
    ordered_ids: List[int]


class PositionOut(BaseModel):
    id: int
    container_id: int
    position: Optional[int] = None
    shifted: int = 0


class SiblingPosition(BaseModel):
    id: int
    position: int


class ReorderOut(BaseModel):
    container_id: int
    items: List[SiblingPosition]


class SiblingList(BaseModel):
    container_id: int
    items: List[Dict[str, Any]]


__all__ = [
    "EntityCreate",
    "PositionMove",
    "BulkReorder",
    "PositionOut",
    "SiblingPosition",
    "ReorderOut",
    "SiblingList",
]
