"""Attachment copy worker.

Each copy task is a committed ``attachment_copy_task`` row plus a queue
message carrying its id. Deliveries re-read the row, so duplicates and late
redeliveries are harmless. A failed copy is retried with linear backoff up
to ``attachments.max_attempts``; after that the task is ``failed``, the
media row is marked ``broken`` and an event is published. Copied rows are
never rolled back for an attachment failure.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.engine import Connection, Engine

from hierarchy_service.config import AttachmentSettings
from hierarchy_service.db.base import get_engine, translate_storage_errors
from hierarchy_service.db.tables import attachment_copy_task, table_for
from hierarchy_service.logic import events
from hierarchy_service.logic.blob_store import BlobStore
from hierarchy_service.logic.clock import utcnow
from hierarchy_service.logic.errors import PartialResourceFailure
from hierarchy_service.logic.job_queue import ATTACHMENT_COPY_TOPIC, JobQueue
from hierarchy_service.models.hierarchy import DEFAULT_SCHEMA, HierarchySchema

logger = logging.getLogger(__name__)

PENDING = "pending"
SUCCEEDED = "succeeded"
FAILED = "failed"

COPY_OK = "ok"
COPY_BROKEN = "broken"


@dataclass
class AttachmentSummary:
    total: int = 0
    succeeded: int = 0
    pending: int = 0
    failed: int = 0
    broken: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return self.failed > 0


class AttachmentCopier:
    def __init__(
        self,
        blob_store: BlobStore,
        queue: JobQueue,
        *,
        settings: Optional[AttachmentSettings] = None,
        schema: HierarchySchema = DEFAULT_SCHEMA,
        engine: Optional[Engine] = None,
    ) -> None:
        self.blob_store = blob_store
        self.queue = queue
        self.settings = settings or AttachmentSettings()
        self.schema = schema
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine or get_engine()

    def dispatch(self, task_id: str, delay_seconds: float = 0.0) -> None:
        self.queue.publish(ATTACHMENT_COPY_TOPIC, task_id, delay_seconds)

    def handle_delivery(self, task_id: str) -> Optional[str]:
        """Attempt one copy; returns the task status afterwards, None if unknown."""
        task = self._load_task(task_id)
        if task is None:
            logger.warning("attachments.copy.unknown_task task_id=%s", task_id)
            return None
        if task["status"] != PENDING:
            logger.info("attachments.copy.skip task_id=%s status=%s", task_id, task["status"])
            return str(task["status"])

        error: Optional[str] = None
        try:
            if not self.blob_store.copy(task["source_location"], task["dest_location"]):
                error = f"source blob missing: {task['source_location']}"
        except Exception as exc:
            # Recorded on the task row below
            logger.warning("attachments.copy.error task_id=%s", task_id, exc_info=True)
            error = f"{type(exc).__name__}: {exc}"

        attempts = int(task["attempts"] or 0) + 1
        if error is None:
            return self._finish(task, SUCCEEDED, COPY_OK, attempts, None)
        if attempts < self.settings.max_attempts:
            with translate_storage_errors("attachment_copy_retry", task_id=task_id):
                with self.engine.begin() as conn:
                    self._update_task(conn, task_id, PENDING, attempts, error)
            delay = self.settings.backoff_seconds * attempts
            logger.warning(
                "attachments.copy.retry task_id=%s attempt=%s delay=%.2f error=%s",
                task_id,
                attempts,
                delay,
                error,
            )
            self.dispatch(task_id, delay)
            return PENDING
        return self._finish(task, FAILED, COPY_BROKEN, attempts, error)

    def _finish(self, task: Dict[str, Any], status: str, copy_status: str, attempts: int, error: Optional[str]) -> str:
        task_id = task["task_id"]
        with translate_storage_errors("attachment_copy_finish", task_id=task_id):
            with self.engine.begin() as conn:
                self._update_task(conn, task_id, status, attempts, error)
                self._set_copy_status(conn, task["kind"], task["entity_id"], copy_status)
        payload = {
            "task_id": task_id,
            "job_id": task["job_id"],
            "kind": task["kind"],
            "entity_id": task["entity_id"],
            "dest_location": task["dest_location"],
            "attempts": attempts,
        }
        if status == SUCCEEDED:
            logger.info("attachments.copy.succeeded task_id=%s attempts=%s", task_id, attempts)
            events.publish(events.ATTACHMENT_COPY_SUCCEEDED, payload)
        else:
            failure = PartialResourceFailure(
                f"attachment copy failed after {attempts} attempts",
                task_id=task_id,
                job_id=task["job_id"],
                entity_id=task["entity_id"],
                cause=error,
            )
            logger.error("attachments.copy.failed %s", failure.to_dict())
            events.publish(events.ATTACHMENT_COPY_FAILED, dict(payload, error=error))
        return status

    def retry_failed(self, job_id: str) -> List[str]:
        """Reset a job's failed copy tasks to pending and dispatch them again."""
        with translate_storage_errors("attachment_copy_manual_retry", job_id=job_id):
            with self.engine.begin() as conn:
                rows = conn.execute(
                    select(attachment_copy_task).where(
                        attachment_copy_task.c.job_id == job_id,
                        attachment_copy_task.c.status == FAILED,
                    )
                ).mappings().all()
                for row in rows:
                    self._update_task(conn, row["task_id"], PENDING, 0, row["last_error"])
                    self._set_copy_status(conn, row["kind"], row["entity_id"], PENDING)
        task_ids = [str(r["task_id"]) for r in rows]
        logger.info("attachments.copy.manual_retry job_id=%s tasks=%s", job_id, len(task_ids))
        for task_id in task_ids:
            self.dispatch(task_id)
        return task_ids

    def requeue_pending(self, job_id: Optional[str] = None) -> List[str]:
        """Publish every pending task again (lost deliveries)."""
        stmt = select(attachment_copy_task.c.task_id).where(attachment_copy_task.c.status == PENDING)
        if job_id is not None:
            stmt = stmt.where(attachment_copy_task.c.job_id == job_id)
        with self.engine.connect() as conn:
            task_ids = [str(r[0]) for r in conn.execute(stmt)]
        for task_id in task_ids:
            self.dispatch(task_id)
        return task_ids

    def summary(self, job_id: str) -> AttachmentSummary:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(attachment_copy_task)
                .where(attachment_copy_task.c.job_id == job_id)
                .order_by(attachment_copy_task.c.created_at, attachment_copy_task.c.task_id)
            ).mappings().all()
        out = AttachmentSummary(total=len(rows))
        for row in rows:
            if row["status"] == SUCCEEDED:
                out.succeeded += 1
            elif row["status"] == FAILED:
                out.failed += 1
                out.broken.append(
                    {
                        "task_id": row["task_id"],
                        "kind": row["kind"],
                        "entity_id": row["entity_id"],
                        "dest_location": row["dest_location"],
                        "last_error": row["last_error"],
                    }
                )
            else:
                out.pending += 1
        return out

    # --- storage helpers ------------------------------------------------------

    def _load_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(attachment_copy_task).where(attachment_copy_task.c.task_id == task_id)
            ).mappings().first()
        return dict(row) if row is not None else None

    @staticmethod
    def _update_task(conn: Connection, task_id: str, status: str, attempts: int, error: Optional[str]) -> None:
        conn.execute(
            attachment_copy_task.update()
            .where(attachment_copy_task.c.task_id == task_id)
            .values(status=status, attempts=attempts, last_error=error, updated_at=utcnow())
        )

    def _set_copy_status(self, conn: Connection, kind_name: str, entity_id: int, copy_status: str) -> None:
        kind = self.schema.kind(kind_name)
        if not kind.copy_status_column:
            return
        table = table_for(kind.table)
        res = conn.execute(
            table.update()
            .where(table.c[kind.id_column] == int(entity_id))
            .values({kind.copy_status_column: copy_status})
        )
        if res.rowcount == 0:
            # Copied entity deleted after duplication; the task row still records the outcome
            logger.warning("attachments.copy.entity_missing kind=%s entity_id=%s", kind_name, entity_id)


__all__ = [
    "AttachmentCopier",
    "AttachmentSummary",
    "PENDING",
    "SUCCEEDED",
    "FAILED",
    "COPY_OK",
    "COPY_BROKEN",
]
