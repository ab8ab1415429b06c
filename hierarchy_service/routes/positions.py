"""Sibling ordering routes.

``{kind}`` is the plural route name of an ordered kind (``parts``, ``items``,
``blocks``, ``block-fields``); container ids refer to that kind's parent.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request, Response

from hierarchy_service.logic.errors import NotFoundError
from hierarchy_service.logic.positions import (
    bulk_reorder,
    delete_entity,
    insert_entity,
    list_entities,
    move_entity,
)
from hierarchy_service.models.hierarchy import ORDERED_KIND_ALIASES
from hierarchy_service.models.positions import (
    BulkReorder,
    EntityCreate,
    PositionMove,
    PositionOut,
    ReorderOut,
    SiblingList,
)

router = APIRouter()
logger = logging.getLogger(__name__)


def _kind(alias: str) -> str:
    try:
        return ORDERED_KIND_ALIASES[alias]
    except KeyError:
        raise NotFoundError(f"unknown kind {alias}", code="unknown_kind", kind=alias) from None


@router.get("/containers/{kind}/{container_id}/entities", response_model=SiblingList)
def get_siblings(kind: str, container_id: int, request: Request) -> SiblingList:
    items = list_entities(_kind(kind), container_id, schema=request.app.state.schema)
    return SiblingList(container_id=container_id, items=items)


@router.post("/containers/{kind}/{container_id}/entities", status_code=201, response_model=PositionOut)
def create_sibling(kind: str, container_id: int, body: EntityCreate, request: Request) -> PositionOut:
    result = insert_entity(
        _kind(kind),
        container_id,
        body.attributes,
        body.position,
        schema=request.app.state.schema,
        settings=request.app.state.config.positions,
    )
    return PositionOut(id=result.entity_id, container_id=result.container_id, position=result.position, shifted=result.shifted)


@router.delete("/entities/{kind}/{entity_id}", status_code=204)
def remove_sibling(kind: str, entity_id: int, request: Request) -> Response:
    delete_entity(
        _kind(kind),
        entity_id,
        schema=request.app.state.schema,
        settings=request.app.state.config.positions,
    )
    return Response(status_code=204)


@router.patch("/entities/{kind}/{entity_id}/position", response_model=PositionOut)
def move_sibling(kind: str, entity_id: int, body: PositionMove, request: Request) -> PositionOut:
    result = move_entity(
        _kind(kind),
        entity_id,
        body.position,
        schema=request.app.state.schema,
        settings=request.app.state.config.positions,
    )
    return PositionOut(id=result.entity_id, container_id=result.container_id, position=result.position, shifted=result.shifted)


@router.put("/containers/{kind}/{container_id}/order", response_model=ReorderOut)
def reorder_siblings(kind: str, container_id: int, body: BulkReorder, request: Request) -> ReorderOut:
    items = bulk_reorder(
        _kind(kind),
        container_id,
        body.ordered_ids,
        schema=request.app.state.schema,
        settings=request.app.state.config.positions,
    )
    return ReorderOut(container_id=container_id, items=items)


__all__ = ["router"]
