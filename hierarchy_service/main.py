from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from sqlalchemy import text as sql_text
from sqlalchemy.exc import SQLAlchemyError

from hierarchy_service.config import AppConfig, load_config
from hierarchy_service.db.base import get_engine
from hierarchy_service.db.migrations_runner import apply_migrations
from hierarchy_service.http.problem import (
    handle_domain_error,
    handle_http_exception,
    handle_request_validation_error,
    handle_unexpected_error,
)
from hierarchy_service.http.request_id import RequestIdMiddleware
from hierarchy_service.logging_setup import configure_logging
from hierarchy_service.logic.blob_store import BlobStore, InMemoryBlobStore
from hierarchy_service.logic.duplication_jobs import build_coordinator
from hierarchy_service.logic.errors import HierarchyError
from hierarchy_service.logic.job_queue import InProcessJobQueue, JobQueue
from hierarchy_service.models.hierarchy import DEFAULT_SCHEMA, HierarchySchema
from hierarchy_service.routes import api_router

logger = logging.getLogger(__name__)


def _should_apply_migrations(url: str) -> bool:
    if os.getenv("AUTO_APPLY_MIGRATIONS", "").strip().lower() in {"1", "true", "yes", "on"}:
        return True
    # A fresh in-memory database has no other way to get its schema
    return url.startswith("sqlite") and ":memory:" in url


def create_app(
    config: Optional[AppConfig] = None,
    job_queue: Optional[JobQueue] = None,
    blob_store: Optional[BlobStore] = None,
    schema: HierarchySchema = DEFAULT_SCHEMA,
) -> FastAPI:
    """Build the FastAPI application and wire the duplication runtime.

    ``job_queue`` defaults to an in-process thread pool and ``blob_store`` to
    the in-memory store; tests pass an ``InlineJobQueue`` to run jobs
    synchronously.
    """
    configure_logging()
    cfg = config or load_config()
    url = os.getenv("TEST_DATABASE_URL") or cfg.database.dsn
    engine = get_engine(url)
    queue = job_queue or InProcessJobQueue(cfg.duplication.worker_count)
    blobs = blob_store or InMemoryBlobStore()
    coordinator = build_coordinator(cfg, queue, blobs, schema=schema)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if _should_apply_migrations(url):
            try:
                applied = apply_migrations(engine)
                logger.info("startup_migrations_applied count=%s", len(applied))
            except SQLAlchemyError:
                logger.error("Failed to apply migrations at startup", exc_info=True)
                raise
        else:
            logger.info("AUTO_APPLY_MIGRATIONS disabled; skipping migrations at startup")
        try:
            requeued = coordinator.recover_stale()
            if requeued:
                logger.info("startup_recovered_jobs count=%s", len(requeued))
        except HierarchyError:
            logger.error("startup_job_recovery_failed", exc_info=True)
        yield
        coordinator.shutdown(wait=False)
        shutdown = getattr(queue, "shutdown", None)
        if callable(shutdown):
            shutdown(wait=False)

    app = FastAPI(title="Hierarchy Service", lifespan=lifespan)
    app.state.config = cfg
    app.state.schema = schema
    app.state.job_queue = queue
    app.state.blob_store = blobs
    app.state.coordinator = coordinator

    app.add_exception_handler(HierarchyError, handle_domain_error)
    app.add_exception_handler(HTTPException, handle_http_exception)
    app.add_exception_handler(RequestValidationError, handle_request_validation_error)
    app.add_exception_handler(Exception, handle_unexpected_error)
    app.add_middleware(RequestIdMiddleware)

    app.include_router(api_router, prefix="/api/v1")

    @app.get("/health")
    def health() -> dict:
        try:
            with get_engine().connect() as conn:
                conn.execute(sql_text("SELECT 1"))
            return {"status": "ok", "db": True}
        except SQLAlchemyError as e:
            logger.error("Health DB check failed", exc_info=True)
            return {"status": "degraded", "db": False, "reason": str(e)}

    return app


# Intentionally do not instantiate the app at import time to prevent side effects.
