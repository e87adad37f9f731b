"""
Timeline projection for a batch job.

Builds a chronological event stream purely from the persisted job and item
rows. Nothing here writes, so the same rows always yield the same output.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Sequence

from pydantic import BaseModel

from portrait_batch.models.batch_job import (
    BatchJob,
    BatchJobItem,
    BatchJobItemRead,
    BatchJobRead,
    ItemStatus,
    JobStatus,
)
from portrait_batch.models.variation import describe_target
from portrait_batch.services.pacing import PacingConfig, recommend_delay

LogLevel = Literal["info", "success", "error"]


class LogEntry(BaseModel):
    timestamp: datetime
    level: LogLevel
    type: str
    message: str
    details: Dict[str, Any] = {}


class LogSummary(BaseModel):
    total_logs: int
    log_types: List[str]
    levels: List[str]
    last_update: datetime


class JobTimeline(BaseModel):
    logs: List[LogEntry]
    summary: LogSummary


class JobLogsResponse(JobTimeline):
    job: BatchJobRead
    items: List[BatchJobItemRead]


def _percent(numerator: int, denominator: int) -> int:
    return round(numerator * 100 / denominator) if denominator else 0


def _describe_item(item: BatchJobItem, labels: Dict[str, str]):
    try:
        target = item.target
    except ValueError:
        return f"item {item.item_index + 1}", None
    return describe_target(target, labels), target.model_dump()


def _latest_outcome(items: Sequence[BatchJobItem]) -> Optional[datetime]:
    finished = [
        item.completed_at
        for item in items
        if item.completed_at is not None
        and item.status in (ItemStatus.COMPLETED.value, ItemStatus.FAILED.value)
    ]
    return max(finished) if finished else None


def build_job_logs(
    job: BatchJob,
    items: Sequence[BatchJobItem],
    pacing: Optional[PacingConfig] = None,
) -> JobTimeline:
    pacing = pacing or PacingConfig.from_settings()
    labels = (job.config or {}).get("labels") or {}
    logs: List[LogEntry] = []

    logs.append(
        LogEntry(
            timestamp=job.created_at,
            level="info",
            type="job_created",
            message=f"Batch job created with {job.total_items} items",
            details={
                "job_id": job.id,
                "job_type": job.job_type,
                "total_items": job.total_items,
                "config": job.config,
            },
        )
    )

    if job.started_at:
        logs.append(
            LogEntry(
                timestamp=job.started_at,
                level="info",
                type="job_started",
                message="Batch processing started",
                details={
                    "base_delay_ms": pacing.base_delay_ms,
                    "target_success_rate": f"{round(pacing.success_threshold * 100)}%",
                },
            )
        )

    for position, item in enumerate(items, start=1):
        name, target = _describe_item(item, labels)

        if item.started_at:
            logs.append(
                LogEntry(
                    timestamp=item.started_at,
                    level="info",
                    type="item_started",
                    message=f"Processing item {position}/{job.total_items}: {name}",
                    details={"item_index": item.item_index, "item_id": item.id, "target": target},
                )
            )

        if not item.completed_at:
            continue
        if item.status == ItemStatus.COMPLETED.value:
            logs.append(
                LogEntry(
                    timestamp=item.completed_at,
                    level="success",
                    type="item_completed",
                    message=f"Generated {name}",
                    details={
                        "item_index": item.item_index,
                        "generated_image_id": item.generated_image_id,
                        "gemini_duration_ms": item.gemini_duration_ms,
                        "total_duration_ms": item.total_duration_ms,
                        "retry_count": item.retry_count,
                    },
                )
            )
        elif item.status == ItemStatus.FAILED.value:
            logs.append(
                LogEntry(
                    timestamp=item.completed_at,
                    level="error",
                    type="item_failed",
                    message=f"Failed to generate {name}: {item.error_message or 'unknown error'}",
                    details={
                        "item_index": item.item_index,
                        "error": item.error_message,
                        "retry_count": item.retry_count,
                        "total_duration_ms": item.total_duration_ms,
                    },
                )
            )

    speed_at = _latest_outcome(items)
    if job.status in (JobStatus.RUNNING.value, JobStatus.COMPLETED.value) and job.completed_items > 0 and speed_at:
        recommendation = recommend_delay(
            job.completed_items, job.successful_items, job.failed_items, pacing
        )
        logs.append(
            LogEntry(
                timestamp=speed_at,
                level="info",
                type="speed_adjustment",
                message=f"Speed controller: {recommendation.reasoning}",
                details={
                    "success_rate": f"{_percent(job.successful_items, job.completed_items)}%",
                    "delay_ms": recommendation.delay_ms,
                    "adjustment_type": recommendation.adjustment_type.value,
                    "confidence": f"{round(recommendation.confidence * 100)}%",
                },
            )
        )

    if job.completed_at:
        began = job.started_at or job.created_at
        duration_s = max((job.completed_at - began).total_seconds(), 0.0)
        success_rate = _percent(job.successful_items, job.completed_items)
        logs.append(
            LogEntry(
                timestamp=job.completed_at,
                level="success" if job.status == JobStatus.COMPLETED.value else "error",
                type="job_completed",
                message=(
                    f"Batch job {job.status}: {job.successful_items}/{job.total_items} "
                    f"items successful ({success_rate}% success rate)"
                ),
                details={
                    "status": job.status,
                    "total_duration_s": round(duration_s, 1),
                    "successful_items": job.successful_items,
                    "failed_items": job.failed_items,
                    "skipped_items": sum(1 for i in items if i.status == ItemStatus.SKIPPED.value),
                    "success_rate": f"{success_rate}%",
                    "average_item_duration_s": round(duration_s / len(items), 1) if items else 0.0,
                    "errors": list(job.error_log or []),
                },
            )
        )

    # sorted() is stable, so equal timestamps keep emission order
    logs = sorted(logs, key=lambda entry: entry.timestamp)

    types: List[str] = []
    levels: List[str] = []
    for entry in logs:
        if entry.type not in types:
            types.append(entry.type)
        if entry.level not in levels:
            levels.append(entry.level)

    return JobTimeline(
        logs=logs,
        summary=LogSummary(
            total_logs=len(logs),
            log_types=types,
            levels=levels,
            last_update=logs[-1].timestamp,
        ),
    )
