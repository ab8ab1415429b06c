"""Hierarchy service: ordered episode content and asynchronous deep copy.

Exposes the FastAPI application factory. Business logic lives in
`hierarchy_service/logic/` and route handlers in `hierarchy_service/routes/`.
"""

from __future__ import annotations

from hierarchy_service.main import create_app

__all__ = ["create_app"]
