"""Database bootstrap utilities for the hierarchy service.

Exposes engine construction and the migrations runner that applies SQL files
from the local migrations/ directory. The DB layer does not leak table
objects into route handlers.
"""

from hierarchy_service.db.base import get_engine, supports_row_locks, translate_storage_errors
from hierarchy_service.db.migrations_runner import apply_migrations

__all__ = [
    "get_engine",
    "supports_row_locks",
    "translate_storage_errors",
    "apply_migrations",
]
