"""APIRouter registration for the hierarchy service."""

from __future__ import annotations

from fastapi import APIRouter

from hierarchy_service.routes.duplication import router as duplication_router
from hierarchy_service.routes.episodes import router as episodes_router
from hierarchy_service.routes.positions import router as positions_router

api_router = APIRouter()
api_router.include_router(episodes_router, tags=["Episodes"])
api_router.include_router(positions_router, tags=["Ordering"])
api_router.include_router(duplication_router, tags=["Duplication"])

__all__ = ["api_router"]
