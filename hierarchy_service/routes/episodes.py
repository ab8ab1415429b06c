"""Episode routes: create a root episode, read its full tree, duplicate it."""

from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse

from hierarchy_service.logic.repository_episodes import create_episode, get_episode_tree
from hierarchy_service.models.duplication import DuplicationAccepted, EpisodeCreate, EpisodeCreated

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/episodes", status_code=201, response_model=EpisodeCreated)
def post_episode(body: EpisodeCreate) -> EpisodeCreated:
    episode_id = create_episode(body.title, body.owner_id, body.description, body.share_token)
    return EpisodeCreated(episode_id=episode_id)


@router.get("/episodes/{episode_id}")
def get_episode(episode_id: int, request: Request) -> Dict[str, Any]:
    return get_episode_tree(episode_id, schema=request.app.state.schema)


@router.post("/episodes/{episode_id}/duplicates", status_code=202)
def duplicate_episode(
    episode_id: int,
    request: Request,
    actor_id: str = Header(..., alias="X-Actor-Id"),
) -> JSONResponse:
    """Accept a duplication request; the copy runs on the job queue."""
    job = request.app.state.coordinator.submit(episode_id, actor_id)
    body = DuplicationAccepted(job_id=job.job_id, status=job.status)
    return JSONResponse(
        body.model_dump(),
        status_code=202,
        headers={"Location": f"/api/v1/duplication-jobs/{job.job_id}"},
    )


__all__ = ["router"]
