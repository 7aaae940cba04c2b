from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from ..errors import NotFoundError
from ..jobs.queue import AudioQueue
from ..security import AuthUser, get_current_user
from ..services.progress_hub import ProgressHub
from .deps import get_hub, get_queue

router = APIRouter(tags=["health"])


@router.get("/health/queue")
def queue_health(
    request: Request,
    queue: AudioQueue = Depends(get_queue),
    hub: ProgressHub = Depends(get_hub),
) -> dict:
    """Queue counts, worker pool state and live websocket connections."""
    worker = getattr(request.app.state, "worker", None)
    return {
        "queue": queue.name,
        "counts": queue.counts(),
        "worker": worker.status() if worker else {"is_running": False},
        "connections": hub.connection_count(),
    }


@router.get("/jobs/{job_id}")
def job_detail(
    job_id: str,
    queue: AudioQueue = Depends(get_queue),
    user: AuthUser = Depends(get_current_user),
) -> dict:
    job = queue.get(job_id)
    if job is None or job["data"]["userId"] != user.id:
        raise NotFoundError("Job not found")
    return job
