"""
Status API endpoints.
Reports batch queue health for dashboards.
"""
from datetime import timedelta
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from portrait_batch.core.config import settings
from portrait_batch.db.types import utcnow
from portrait_batch.models.batch_job import JobStatus
from portrait_batch.services.job_runner import BatchJobRunner, job_runner
from portrait_batch.services.job_store import JobStore, job_store


router = APIRouter(prefix="/status", tags=["status"])


class StatusItem(BaseModel):
    """Base status indicator."""
    state: Literal["ok", "warn", "error"]
    detail: str
    last_check_at: Optional[str] = None


class QueueStatus(StatusItem):
    """Batch job queue status."""
    pending_jobs: int = 0
    running_jobs: int = 0
    oldest_job_age_s: int = 0
    stale_jobs: int = 0
    queued: int = 0
    active_jobs: List[str] = []
    workers: int = 0


class StatusSummary(BaseModel):
    """Aggregated service status."""
    queue: QueueStatus


def get_store() -> JobStore:
    return job_store


def get_runner() -> BatchJobRunner:
    return job_runner


def get_queue_status(store: JobStore, runner: BatchJobRunner) -> QueueStatus:
    now = utcnow()
    counts = store.count_jobs_by_status()
    oldest = store.oldest_job(JobStatus.PENDING.value)
    stale = store.find_stale_jobs(now - timedelta(seconds=settings.STALE_JOB_TIMEOUT_S))
    runner_status = runner.status()

    pending = counts.get(JobStatus.PENDING.value, 0)
    running = counts.get(JobStatus.RUNNING.value, 0)

    if not runner_status["running"]:
        state, detail = "error", "job runner is not running"
    elif stale:
        state, detail = "warn", f"{len(stale)} running jobs have stalled"
    elif pending or running:
        state, detail = "ok", f"{running} running, {pending} pending"
    else:
        state, detail = "ok", "no pending jobs"

    return QueueStatus(
        state=state,
        detail=detail,
        last_check_at=now.isoformat(),
        pending_jobs=pending,
        running_jobs=running,
        oldest_job_age_s=int((now - oldest.created_at).total_seconds()) if oldest else 0,
        stale_jobs=len(stale),
        queued=runner_status["queued"],
        active_jobs=runner_status["active_jobs"],
        workers=runner_status["workers"],
    )


@router.get("/summary", response_model=StatusSummary)
def get_status_summary(
    store: JobStore = Depends(get_store),
    runner: BatchJobRunner = Depends(get_runner),
):
    """Get aggregated status for the batch queue."""
    return StatusSummary(queue=get_queue_status(store, runner))
