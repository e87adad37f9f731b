"""
Batch Jobs API Endpoints

1. SUBMISSION (POST /batch-jobs/) - creates the job and its items, queues it
2. POLLING (GET /batch-jobs/, GET /batch-jobs/{job_id})
3. CANCELLATION (POST /batch-jobs/{job_id}/cancel, DELETE /batch-jobs/{job_id})
4. TIMELINE (GET /batch-jobs/{job_id}/logs)

Execution happens in portrait_batch.services.job_runner; handlers here only
read and write the job store.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from portrait_batch.core.config import settings
from portrait_batch.models.batch_job import (
    BatchJobCreate,
    BatchJobDetail,
    BatchJobItemRead,
    BatchJobRead,
    BatchJobSubmitted,
    JobProgress,
    JobStatus,
)
from portrait_batch.services.job_logs import JobLogsResponse, build_job_logs
from portrait_batch.services.job_runner import BatchJobRunner, job_runner
from portrait_batch.services.job_store import (
    JobConflictError,
    JobNotFoundError,
    JobStore,
    job_store,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def get_job_store() -> JobStore:
    return job_store


def get_job_runner() -> BatchJobRunner:
    return job_runner


@router.post("/", response_model=BatchJobSubmitted)
def create_batch_job(
    payload: BatchJobCreate,
    store: JobStore = Depends(get_job_store),
    runner: BatchJobRunner = Depends(get_job_runner),
):
    """
    Submit a batch of variations for one source image.
    - Expands the variation sets into ordered items
    - Creates the job and all items atomically
    - Queues the job on the runner and returns without waiting
    """
    try:
        job = store.create_job(
            payload.to_targets(),
            payload.job_config(),
            original_image_id=payload.source_image_id,
            target_age=payload.target_age,
        )
    except JobConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc))

    runner.submit(job.id)
    logger.info(
        "Queued batch job %s with %d items",
        job.id,
        job.total_items,
        extra={"job_id": job.id},
    )
    return BatchJobSubmitted(
        job_id=job.id,
        status=job.status,
        total_items=job.total_items,
        message="Batch job created and processing started",
    )


@router.get("/", response_model=List[BatchJobRead])
def read_batch_jobs(
    limit: Optional[int] = Query(default=None, ge=1, le=500),
    status: Optional[JobStatus] = None,
    store: JobStore = Depends(get_job_store),
):
    return store.list_jobs(
        limit=limit or settings.RECENT_JOBS_LIMIT,
        status=status.value if status else None,
    )


@router.get("/{job_id}", response_model=BatchJobDetail)
def read_batch_job(job_id: str, store: JobStore = Depends(get_job_store)):
    snapshot = store.get_job_snapshot(job_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Job not found")

    job, items = snapshot
    return BatchJobDetail(
        job=BatchJobRead.model_validate(job, from_attributes=True),
        items=[BatchJobItemRead.from_item(item) for item in items],
        progress=JobProgress.from_job(job),
    )


def _cancel(job_id: str, store: JobStore):
    try:
        return store.request_cancellation(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    except JobConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc))


@router.post("/{job_id}/cancel", response_model=BatchJobRead)
def cancel_batch_job(job_id: str, store: JobStore = Depends(get_job_store)):
    """Stop a job between items; the item in flight still records its result."""
    return _cancel(job_id, store)


@router.delete("/{job_id}")
def delete_batch_job(job_id: str, store: JobStore = Depends(get_job_store)):
    job = _cancel(job_id, store)
    return {
        "success": True,
        "message": "Job cancelled successfully",
        "job": BatchJobRead.model_validate(job, from_attributes=True),
    }


@router.get("/{job_id}/logs", response_model=JobLogsResponse)
def read_batch_job_logs(job_id: str, store: JobStore = Depends(get_job_store)):
    snapshot = store.get_job_snapshot(job_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Job not found")

    job, items = snapshot
    timeline = build_job_logs(job, items)
    return JobLogsResponse(
        job=BatchJobRead.model_validate(job, from_attributes=True),
        items=[BatchJobItemRead.from_item(item) for item in items],
        logs=timeline.logs,
        summary=timeline.summary,
    )
