"""Duplication job routes: status, cancellation and attachment repair."""

from __future__ import annotations

import logging
from dataclasses import asdict

from fastapi import APIRouter, Request

from hierarchy_service.logic.duplication_jobs import JobView
from hierarchy_service.models.duplication import AttachmentRetryOut, AttachmentSummaryOut, DuplicationJobOut

router = APIRouter(prefix="/duplication-jobs")
logger = logging.getLogger(__name__)


def _job_out(job: JobView) -> DuplicationJobOut:
    return DuplicationJobOut(
        job_id=job.job_id,
        source_episode_id=job.source_episode_id,
        actor_id=job.actor_id,
        status=job.status,
        outcome=job.outcome,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
        next_attempt_at=job.next_attempt_at,
        error_kind=job.error_kind,
        last_error=job.last_error,
        result_episode_id=job.result_episode_id,
        cancel_requested=job.cancel_requested,
        attachments=AttachmentSummaryOut(**asdict(job.attachments)),
    )


@router.get("/{job_id}", response_model=DuplicationJobOut)
def get_job(job_id: str, request: Request) -> DuplicationJobOut:
    return _job_out(request.app.state.coordinator.status(job_id))


@router.post("/{job_id}/cancel", response_model=DuplicationJobOut)
def cancel_job(job_id: str, request: Request) -> DuplicationJobOut:
    return _job_out(request.app.state.coordinator.cancel(job_id))


@router.post("/{job_id}/attachments/retry", response_model=AttachmentRetryOut)
def retry_attachments(job_id: str, request: Request) -> AttachmentRetryOut:
    task_ids = request.app.state.coordinator.retry_attachments(job_id)
    logger.info("duplication.attachments.retry_requested job_id=%s tasks=%s", job_id, len(task_ids))
    return AttachmentRetryOut(job_id=job_id, requeued_task_ids=task_ids)


__all__ = ["router"]
