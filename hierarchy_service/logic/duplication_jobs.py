"""Duplication job coordinator.

Jobs are rows in ``duplication_job``; queue messages only carry the job id.
State machine::

    queued -> running -> succeeded
                      -> queued         (retryable failure, backoff)
                      -> dead_lettered  (terminal failure or retries exhausted)
    queued -> cancelled

A delivery claims the job with a conditional ``UPDATE`` on ``status='queued'``
so concurrent or duplicate deliveries never run the same attempt twice, and
the executor's idempotency gate covers an attempt that timed out but still
committed.
"""

from __future__ import annotations

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import exc as sa_exc
from sqlalchemy import select
from sqlalchemy.engine import Connection, Engine

from hierarchy_service.config import AppConfig, DuplicationSettings
from hierarchy_service.db.base import get_engine, translate_storage_errors
from hierarchy_service.db.tables import duplication_job
from hierarchy_service.logic import events
from hierarchy_service.logic.attachment_copies import AttachmentCopier, AttachmentSummary
from hierarchy_service.logic.blob_store import BlobStore
from hierarchy_service.logic.clock import utc_in, utcnow
from hierarchy_service.logic.duplication_executor import DuplicationExecutor, DuplicationResult
from hierarchy_service.logic.errors import (
    AttemptTimeoutError,
    ConflictError,
    HierarchyError,
    NotFoundError,
    ValidationError,
    is_retryable,
)
from hierarchy_service.logic.job_queue import ATTACHMENT_COPY_TOPIC, DUPLICATION_TOPIC, JobQueue
from hierarchy_service.models.hierarchy import DEFAULT_SCHEMA, HierarchySchema

logger = logging.getLogger(__name__)

QUEUED = "queued"
RUNNING = "running"
SUCCEEDED = "succeeded"
DEAD_LETTERED = "dead_lettered"
CANCELLED = "cancelled"
TERMINAL_STATES = frozenset({SUCCEEDED, DEAD_LETTERED, CANCELLED})

# Timer jitter allowance when checking whether a delivery is due
_DUE_TOLERANCE = timedelta(seconds=1)


@dataclass
class JobView:
    job_id: str
    source_episode_id: int
    actor_id: str
    status: str
    attempts: int
    max_attempts: int
    next_attempt_at: Optional[datetime] = None
    error_kind: Optional[str] = None
    last_error: Optional[str] = None
    result_episode_id: Optional[int] = None
    cancel_requested: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    attachments: AttachmentSummary = field(default_factory=AttachmentSummary)

    @property
    def outcome(self) -> str:
        if self.status == SUCCEEDED and self.attachments.degraded:
            return "degraded"
        return self.status


def _view(row: Any) -> JobView:
    return JobView(
        job_id=str(row["job_id"]),
        source_episode_id=int(row["source_episode_id"]),
        actor_id=str(row["actor_id"]),
        status=str(row["status"]),
        attempts=int(row["attempts"] or 0),
        max_attempts=int(row["max_attempts"]),
        next_attempt_at=row["next_attempt_at"],
        error_kind=row["error_kind"],
        last_error=row["last_error"],
        result_episode_id=row["result_episode_id"],
        cancel_requested=bool(row["cancel_requested"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class DuplicationCoordinator:
    def __init__(
        self,
        queue: JobQueue,
        executor: DuplicationExecutor,
        copier: Optional[AttachmentCopier] = None,
        *,
        settings: Optional[DuplicationSettings] = None,
        engine: Optional[Engine] = None,
    ) -> None:
        self.queue = queue
        self.executor = executor
        self.copier = copier
        self.settings = settings or DuplicationSettings()
        self._engine = engine
        self._attempts = ThreadPoolExecutor(
            max_workers=self.settings.worker_count, thread_name_prefix="duplication-attempt"
        )

    @property
    def engine(self) -> Engine:
        return self._engine or get_engine()

    # --- public operations ----------------------------------------------------

    def submit(self, source_episode_id: int, actor_id: str) -> JobView:
        """Accept a duplication request; returns the (possibly existing) job."""
        actor = str(actor_id or "").strip()
        if not actor:
            raise ValidationError("an acting user is required", code="actor_required")
        source_episode_id = int(source_episode_id)
        now = utcnow()
        with translate_storage_errors("duplication_submit", source_episode_id=source_episode_id, actor_id=actor):
            with self.engine.begin() as conn:
                existing = conn.execute(
                    select(duplication_job)
                    .where(
                        duplication_job.c.source_episode_id == source_episode_id,
                        duplication_job.c.actor_id == actor,
                        duplication_job.c.status.not_in([DEAD_LETTERED, CANCELLED]),
                    )
                    .order_by(duplication_job.c.created_at.desc())
                    .limit(1)
                ).mappings().first()
                if existing is not None:
                    logger.info(
                        "duplication.job.reused job_id=%s source_episode_id=%s actor_id=%s status=%s",
                        existing["job_id"],
                        source_episode_id,
                        actor,
                        existing["status"],
                    )
                    return _view(existing)
                job_id = str(uuid.uuid4())
                conn.execute(
                    duplication_job.insert().values(
                        job_id=job_id,
                        source_episode_id=source_episode_id,
                        actor_id=actor,
                        status=QUEUED,
                        attempts=0,
                        max_attempts=self.settings.max_attempts,
                        next_attempt_at=now,
                        cancel_requested=False,
                        created_at=now,
                        updated_at=now,
                    )
                )
        logger.info(
            "duplication.job.accepted job_id=%s source_episode_id=%s actor_id=%s",
            job_id,
            source_episode_id,
            actor,
        )
        view = self.status(job_id)
        self.queue.publish(DUPLICATION_TOPIC, job_id)
        return view

    def handle_delivery(self, job_id: str) -> Optional[str]:
        """Run one attempt for ``job_id`` if it is due; returns the resulting status."""
        row = self._load(job_id)
        if row is None:
            logger.warning("duplication.job.unknown job_id=%s", job_id)
            return None
        if row["status"] != QUEUED:
            logger.info("duplication.job.skip job_id=%s status=%s", job_id, row["status"])
            return str(row["status"])
        if row["cancel_requested"]:
            return self._cancel_queued(job_id)
        due = row["next_attempt_at"]
        if due is not None and due > utcnow() + _DUE_TOLERANCE:
            logger.info("duplication.job.not_due job_id=%s next_attempt_at=%s", job_id, due)
            return QUEUED

        attempt = self._claim(job_id)
        if attempt is None:
            logger.info("duplication.job.claim_lost job_id=%s", job_id)
            return None
        job = _view(row)
        logger.info(
            "duplication.job.attempt job_id=%s source_episode_id=%s actor_id=%s attempt=%s",
            job_id,
            job.source_episode_id,
            job.actor_id,
            attempt,
        )
        try:
            result = self._run_attempt(job)
        except HierarchyError as exc:
            return self._on_failure(job, attempt, exc)
        except (sa_exc.OperationalError, sa_exc.InterfaceError, sa_exc.DisconnectionError) as exc:
            # Dropped connections and similar transient store failures
            logger.warning("duplication.job.storage_unavailable job_id=%s attempt=%s", job_id, attempt, exc_info=True)
            transient = ConflictError(
                f"storage unavailable: {getattr(exc, 'orig', None) or exc}",
                code="storage_unavailable",
                job_id=job_id,
            )
            return self._on_failure(job, attempt, transient)
        except Exception as exc:
            logger.error("duplication.job.unexpected_error job_id=%s attempt=%s", job_id, attempt, exc_info=True)
            return self._dead_letter(job, attempt, "unexpected_error", f"{type(exc).__name__}: {exc}", exc)
        return self._on_success(job, attempt, result)

    def cancel(self, job_id: str) -> JobView:
        row = self._load(job_id)
        if row is None:
            raise NotFoundError(f"duplication job {job_id} not found", code="job_not_found", job_id=job_id)
        status = row["status"]
        if status == QUEUED:
            self._cancel_queued(job_id)
        elif status == RUNNING:
            with translate_storage_errors("duplication_cancel", job_id=job_id):
                with self.engine.begin() as conn:
                    self._update(conn, job_id, cancel_requested=True)
            logger.info("duplication.job.cancel_requested job_id=%s", job_id)
        elif status != CANCELLED:
            raise ConflictError(
                f"duplication job {job_id} already {status}",
                code="job_not_cancellable",
                job_id=job_id,
                status=status,
            )
        return self.status(job_id)

    def status(self, job_id: str) -> JobView:
        row = self._load(job_id)
        if row is None:
            raise NotFoundError(f"duplication job {job_id} not found", code="job_not_found", job_id=job_id)
        view = _view(row)
        if self.copier is not None:
            view.attachments = self.copier.summary(job_id)
        return view

    def retry_attachments(self, job_id: str) -> List[str]:
        view = self.status(job_id)
        if self.copier is None or view.status != SUCCEEDED:
            raise ConflictError(
                f"duplication job {job_id} has no copied attachments to retry",
                code="job_not_succeeded",
                job_id=job_id,
                status=view.status,
            )
        return self.copier.retry_failed(job_id)

    def recover_stale(self, now: Optional[datetime] = None) -> List[str]:
        """Publish again every job whose delivery appears lost.

        Queued jobs past their due time are republished; running jobs not
        updated for twice the attempt timeout are returned to the queue with
        that attempt counted. Attachment copy tasks still pending are
        dispatched again as well.
        """
        now = now or utcnow()
        stale_running = now - timedelta(seconds=2 * self.settings.attempt_timeout_seconds)
        with translate_storage_errors("duplication_recover_stale"):
            with self.engine.begin() as conn:
                running = [
                    str(r[0])
                    for r in conn.execute(
                        select(duplication_job.c.job_id).where(
                            duplication_job.c.status == RUNNING,
                            duplication_job.c.updated_at < stale_running,
                        )
                    )
                ]
                for job_id in running:
                    conn.execute(
                        duplication_job.update()
                        .where(duplication_job.c.job_id == job_id, duplication_job.c.status == RUNNING)
                        .values(status=QUEUED, next_attempt_at=now, error_kind="stale_attempt", updated_at=now)
                    )
                queued = [
                    str(r[0])
                    for r in conn.execute(
                        select(duplication_job.c.job_id).where(
                            duplication_job.c.status == QUEUED,
                            duplication_job.c.next_attempt_at <= now,
                        )
                    )
                ]
        if running:
            logger.warning("duplication.job.stale_running_requeued job_ids=%s", running)
        for job_id in queued:
            self.queue.publish(DUPLICATION_TOPIC, job_id)
        if self.copier is not None:
            tasks = self.copier.requeue_pending()
            if tasks:
                logger.info("duplication.attachments.pending_requeued count=%s", len(tasks))
        return queued

    def shutdown(self, wait: bool = True) -> None:
        self._attempts.shutdown(wait=wait)

    # --- attempt outcomes ------------------------------------------------------

    def _run_attempt(self, job: JobView) -> DuplicationResult:
        future = self._attempts.submit(self.executor.run, job.source_episode_id, job.actor_id, job.job_id)
        timeout = self.settings.attempt_timeout_seconds
        try:
            return future.result(timeout=timeout)
        except FuturesTimeoutError:
            raise AttemptTimeoutError(
                f"attempt exceeded {timeout:.1f}s",
                job_id=job.job_id,
                timeout_seconds=timeout,
            ) from None

    def _on_success(self, job: JobView, attempt: int, result: DuplicationResult) -> str:
        with translate_storage_errors("duplication_complete", job_id=job.job_id):
            with self.engine.begin() as conn:
                self._update(
                    conn,
                    job.job_id,
                    status=SUCCEEDED,
                    result_episode_id=result.duplicate_episode_id,
                    error_kind=None,
                    last_error=None,
                    next_attempt_at=None,
                )
        logger.info(
            "duplication.job.succeeded job_id=%s source_episode_id=%s duplicate_episode_id=%s created=%s attempt=%s",
            job.job_id,
            job.source_episode_id,
            result.duplicate_episode_id,
            result.created,
            attempt,
        )
        events.publish(
            events.DUPLICATION_SUCCEEDED,
            {
                "job_id": job.job_id,
                "source_episode_id": job.source_episode_id,
                "actor_id": job.actor_id,
                "duplicate_episode_id": result.duplicate_episode_id,
                "created": result.created,
                "counts": dict(result.counts),
                "attachment_tasks": len(result.attachment_task_ids),
            },
        )
        return SUCCEEDED

    def _on_failure(self, job: JobView, attempt: int, exc: HierarchyError) -> str:
        cause = f"{exc.code}: {exc.detail}"
        if not is_retryable(exc):
            return self._dead_letter(job, attempt, exc.code, cause, exc)
        if self._cancel_requested(job.job_id):
            return self._cancel_after_attempt(job, attempt, exc.code, cause)
        if attempt >= job.max_attempts:
            return self._dead_letter(job, attempt, exc.code, cause, exc)
        delay = self.backoff_seconds(attempt)
        with translate_storage_errors("duplication_retry", job_id=job.job_id):
            with self.engine.begin() as conn:
                self._update(
                    conn,
                    job.job_id,
                    status=QUEUED,
                    next_attempt_at=utc_in(delay),
                    error_kind=exc.code,
                    last_error=cause,
                )
        logger.warning(
            "duplication.job.retry job_id=%s source_episode_id=%s actor_id=%s attempt=%s delay=%.2f cause=%s",
            job.job_id,
            job.source_episode_id,
            job.actor_id,
            attempt,
            delay,
            cause,
        )
        self.queue.publish(DUPLICATION_TOPIC, job.job_id, delay)
        return QUEUED

    def backoff_seconds(self, attempt: int) -> float:
        base = self.settings.backoff_base_seconds * (2 ** max(0, attempt - 1))
        return float(min(base, self.settings.backoff_max_seconds))

    def _dead_letter(self, job: JobView, attempt: int, error_kind: str, cause: str, exc: BaseException) -> str:
        with translate_storage_errors("duplication_dead_letter", job_id=job.job_id):
            with self.engine.begin() as conn:
                self._update(
                    conn,
                    job.job_id,
                    status=DEAD_LETTERED,
                    next_attempt_at=None,
                    error_kind=error_kind,
                    last_error=cause,
                )
        logger.error(
            "duplication.job.dead_lettered job_id=%s source_episode_id=%s actor_id=%s attempts=%s error_kind=%s cause=%s",
            job.job_id,
            job.source_episode_id,
            job.actor_id,
            attempt,
            error_kind,
            cause,
            exc_info=exc,
        )
        events.publish(
            events.DUPLICATION_DEAD_LETTERED,
            {
                "job_id": job.job_id,
                "source_episode_id": job.source_episode_id,
                "actor_id": job.actor_id,
                "attempts": attempt,
                "error_kind": error_kind,
                "cause": cause,
            },
        )
        return DEAD_LETTERED

    def _cancel_after_attempt(self, job: JobView, attempt: int, error_kind: str, cause: str) -> str:
        with translate_storage_errors("duplication_cancel", job_id=job.job_id):
            with self.engine.begin() as conn:
                self._update(
                    conn,
                    job.job_id,
                    status=CANCELLED,
                    next_attempt_at=None,
                    error_kind=error_kind,
                    last_error=cause,
                )
        logger.info("duplication.job.cancelled job_id=%s attempts=%s", job.job_id, attempt)
        events.publish(events.DUPLICATION_CANCELLED, {"job_id": job.job_id, "attempts": attempt})
        return CANCELLED

    def _cancel_queued(self, job_id: str) -> str:
        with translate_storage_errors("duplication_cancel", job_id=job_id):
            with self.engine.begin() as conn:
                res = conn.execute(
                    duplication_job.update()
                    .where(duplication_job.c.job_id == job_id, duplication_job.c.status == QUEUED)
                    .values(status=CANCELLED, next_attempt_at=None, updated_at=utcnow())
                )
        if res.rowcount == 0:
            # Claimed by a worker in the meantime; let the attempt finish
            with translate_storage_errors("duplication_cancel", job_id=job_id):
                with self.engine.begin() as conn:
                    self._update(conn, job_id, cancel_requested=True)
            logger.info("duplication.job.cancel_requested job_id=%s", job_id)
            return RUNNING
        logger.info("duplication.job.cancelled job_id=%s", job_id)
        events.publish(events.DUPLICATION_CANCELLED, {"job_id": job_id, "attempts": None})
        return CANCELLED

    # --- storage helpers ------------------------------------------------------

    def _load(self, job_id: str) -> Optional[Dict[str, Any]]:
        with self.engine.connect() as conn:
            row = conn.execute(select(duplication_job).where(duplication_job.c.job_id == job_id)).mappings().first()
        return dict(row) if row is not None else None

    def _claim(self, job_id: str) -> Optional[int]:
        with translate_storage_errors("duplication_claim", job_id=job_id):
            with self.engine.begin() as conn:
                res = conn.execute(
                    duplication_job.update()
                    .where(duplication_job.c.job_id == job_id, duplication_job.c.status == QUEUED)
                    .values(status=RUNNING, attempts=duplication_job.c.attempts + 1, updated_at=utcnow())
                )
                if res.rowcount != 1:
                    return None
                attempts = conn.execute(
                    select(duplication_job.c.attempts).where(duplication_job.c.job_id == job_id)
                ).scalar_one()
        return int(attempts)

    def _cancel_requested(self, job_id: str) -> bool:
        row = self._load(job_id)
        return bool(row and row["cancel_requested"])

    @staticmethod
    def _update(conn: Connection, job_id: str, **values: Any) -> None:
        values["updated_at"] = utcnow()
        conn.execute(duplication_job.update().where(duplication_job.c.job_id == job_id).values(**values))


def build_coordinator(
    config: AppConfig,
    queue: JobQueue,
    blob_store: BlobStore,
    *,
    schema: HierarchySchema = DEFAULT_SCHEMA,
    engine: Optional[Engine] = None,
) -> DuplicationCoordinator:
    """Wire executor, attachment worker and coordinator onto ``queue``."""
    copier = AttachmentCopier(blob_store, queue, settings=config.attachments, schema=schema, engine=engine)
    executor = DuplicationExecutor(
        schema=schema,
        max_depth=config.duplication.max_depth,
        location_prefix=config.attachments.location_prefix,
        engine=engine,
        dispatch=copier.dispatch,
    )
    coordinator = DuplicationCoordinator(queue, executor, copier, settings=config.duplication, engine=engine)
    queue.subscribe(DUPLICATION_TOPIC, coordinator.handle_delivery)
    queue.subscribe(ATTACHMENT_COPY_TOPIC, copier.handle_delivery)
    return coordinator


__all__ = [
    "QUEUED",
    "RUNNING",
    "SUCCEEDED",
    "DEAD_LETTERED",
    "CANCELLED",
    "TERMINAL_STATES",
    "JobView",
    "DuplicationCoordinator",
    "build_coordinator",
]
