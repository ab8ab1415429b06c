"""SQLAlchemy engine management and storage error translation.

The service targets PostgreSQL in production but supports SQLite for local
development and CI. Repositories write SQL directly against connections
obtained from ``get_engine().begin()``; no ORM sessions are involved.
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from hierarchy_service.logic.errors import ConflictError

logger = logging.getLogger(__name__)


def _db_url() -> str:
    return (
        os.getenv("TEST_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or "sqlite+pysqlite:///:memory:"
    )


# Module-level cached Engine to ensure a single shared connection pool
_ENGINE: Engine | None = None
_ENGINE_URL: str | None = None


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:  # type: ignore[no-untyped-def]
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=5000")
    finally:
        cursor.close()


def get_engine(url: str | None = None) -> Engine:
    """Return a singleton SQLAlchemy Engine for the given URL.

    Without a URL the current engine is reused, so the DSN chosen by the
    application factory stays in effect for every repository call.

    For SQLite in-memory URLs, use a StaticPool to keep a single connection
    alive across threads during tests. SQLite connections get foreign keys
    enabled so cascading deletes behave as on PostgreSQL.
    """
    global _ENGINE, _ENGINE_URL
    resolved_url = url or _ENGINE_URL or _db_url()

    if _ENGINE is None or _ENGINE_URL != resolved_url:
        kwargs: dict = {"future": True, "pool_pre_ping": True}
        if resolved_url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in resolved_url:
                kwargs["poolclass"] = StaticPool
        if _ENGINE is not None:
            _ENGINE.dispose()
        _ENGINE = create_engine(resolved_url, **kwargs)
        _ENGINE_URL = resolved_url
        if resolved_url.startswith("sqlite"):
            event.listen(_ENGINE, "connect", _enable_sqlite_foreign_keys)

    return _ENGINE


def supports_row_locks(engine: Engine) -> bool:
    """True when the dialect honours ``SELECT ... FOR UPDATE``."""
    return (engine.dialect.name or "").lower() not in {"sqlite"}


def _is_storage_race(exc: sa_exc.DBAPIError) -> bool:
    msg = str(getattr(exc, "orig", exc)).lower()
    markers = (
        "deadlock",
        "database is locked",
        "lock timeout",
        "could not serialize",
        "could not obtain lock",
        "unique constraint",
        "duplicate key",
    )
    return any(m in msg for m in markers)


@contextmanager
def translate_storage_errors(operation: str, **context: object) -> Iterator[None]:
    """Re-raise deadlocks, lock timeouts and unique races as ``ConflictError``.

    Any other database error propagates unchanged after being logged.
    """
    try:
        yield
    except (sa_exc.OperationalError, sa_exc.IntegrityError) as exc:
        if _is_storage_race(exc):
            logger.warning("storage_conflict operation=%s context=%s error=%s", operation, context, exc.orig)
            raise ConflictError(
                f"concurrent modification during {operation}",
                operation=operation,
                cause=str(exc.orig),
                **context,
            ) from exc
        logger.error("storage_error operation=%s context=%s", operation, context, exc_info=True)
        raise


__all__ = [
    "get_engine",
    "supports_row_locks",
    "translate_storage_errors",
]
