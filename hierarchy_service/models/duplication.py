"""Pydantic bodies for episodes and duplication jobs."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class EpisodeCreate(BaseModel):
    title: str = Field(min_length=1)
    owner_id: str = Field(min_length=1)
    description: Optional[str] = None
    share_token: Optional[str] = None


class EpisodeCreated(BaseModel):
    episode_id: int


class DuplicationAccepted(BaseModel):
    job_id: str
    status: str


class AttachmentSummaryOut(BaseModel):
    total: int = 0
    succeeded: int = 0
    pending: int = 0
    failed: int = 0
    broken: List[Dict[str, Any]] = Field(default_factory=list)


class DuplicationJobOut(BaseModel):
    job_id: str
    source_episode_id: int
    actor_id: str
    status: str
    outcome: str
    attempts: int
    max_attempts: int
    next_attempt_at: Optional[datetime] = None
    error_kind: Optional[str] = None
    last_error: Optional[str] = None
    result_episode_id: Optional[int] = None
    cancel_requested: bool = False
    attachments: AttachmentSummaryOut = Field(default_factory=AttachmentSummaryOut)


class AttachmentRetryOut(BaseModel):
    job_id: str
    requeued_task_ids: List[str]


__all__ = [
    "EpisodeCreate",
    "EpisodeCreated",
    "DuplicationAccepted",
    "AttachmentSummaryOut",
    "DuplicationJobOut",
    "AttachmentRetryOut",
]
