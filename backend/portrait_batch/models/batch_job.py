import math
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field as PydanticField
from sqlalchemy import CheckConstraint, UniqueConstraint
from sqlmodel import JSON, Field, SQLModel

from portrait_batch.db.types import UTCDateTime, utcnow
from portrait_batch.models.variation import (
    BreedCoatTarget,
    FormatTarget,
    OutfitTarget,
    SourceAttributes,
    VariationSets,
    VariationTarget,
)


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ItemStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED.value, JobStatus.FAILED.value, JobStatus.CANCELLED.value})
TERMINAL_ITEM_STATUSES = frozenset({ItemStatus.COMPLETED.value, ItemStatus.FAILED.value, ItemStatus.SKIPPED.value})

IMAGE_VARIATION_JOB = "image_generation"


def _new_id() -> str:
    return str(uuid.uuid4())


class BatchJobBase(SQLModel):
    job_type: str = IMAGE_VARIATION_JOB
    status: str = Field(default=JobStatus.PENDING.value, index=True)
    original_image_id: Optional[str] = None
    # Originating request, kept for display and audit only
    config: Dict[str, Any] = Field(default_factory=dict, sa_type=JSON)
    target_age: Optional[str] = None
    total_items: int = 0
    completed_items: int = 0
    successful_items: int = 0
    failed_items: int = 0
    error_log: List[str] = Field(default_factory=list, sa_type=JSON)


class BatchJob(BatchJobBase, table=True):
    __tablename__ = "batch_jobs"

    id: str = Field(default_factory=_new_id, primary_key=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime, index=True)
    # Heartbeat: bumped on every progress write, used to detect stalled jobs
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    started_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


class BatchJobRead(BatchJobBase):
    id: str
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class BatchJobItemBase(SQLModel):
    job_id: str = Field(foreign_key="batch_jobs.id", index=True)
    item_index: int
    breed_id: Optional[str] = None
    coat_id: Optional[str] = None
    outfit_id: Optional[str] = None
    format_id: Optional[str] = None
    status: str = Field(default=ItemStatus.PENDING.value, index=True)
    generated_image_id: Optional[str] = None
    error_message: Optional[str] = None
    gemini_duration_ms: Optional[int] = None
    total_duration_ms: Optional[int] = None
    retry_count: int = 0


class BatchJobItem(BatchJobItemBase, table=True):
    __tablename__ = "batch_job_items"
    __table_args__ = (
        UniqueConstraint("job_id", "item_index", name="uq_batch_job_items_job_index"),
        CheckConstraint(
            "(breed_id IS NOT NULL AND coat_id IS NOT NULL AND outfit_id IS NULL AND format_id IS NULL)"
            " OR (breed_id IS NULL AND coat_id IS NULL AND outfit_id IS NOT NULL AND format_id IS NULL)"
            " OR (breed_id IS NULL AND coat_id IS NULL AND outfit_id IS NULL AND format_id IS NOT NULL)",
            name="ck_batch_job_items_single_target",
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    started_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    @classmethod
    def from_target(cls, job_id: str, item_index: int, target: VariationTarget) -> "BatchJobItem":
        return cls(job_id=job_id, item_index=item_index, **target.model_dump(exclude={"kind"}))

    @property
    def target(self) -> VariationTarget:
        return target_from_columns(self)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ITEM_STATUSES


def target_from_columns(item: BatchJobItemBase) -> VariationTarget:
    """Rebuild the tagged target from the item's mutually exclusive columns."""
    if item.breed_id and item.coat_id:
        return BreedCoatTarget(breed_id=item.breed_id, coat_id=item.coat_id)
    if item.outfit_id:
        return OutfitTarget(outfit_id=item.outfit_id)
    if item.format_id:
        return FormatTarget(format_id=item.format_id)
    raise ValueError(f"Item {item.job_id}/{item.item_index} has no variation target")


class BatchJobItemRead(BatchJobItemBase):
    id: int
    target: VariationTarget
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_item(cls, item: BatchJobItem) -> "BatchJobItemRead":
        return cls(**item.model_dump(), target=item.target)


class BatchJobCreate(BaseModel):
    """Inbound job submission."""

    source_image_id: str = PydanticField(min_length=1)
    source_image_url: str = PydanticField(min_length=1)
    source_prompt: str = PydanticField(min_length=1)
    source_attributes: SourceAttributes = PydanticField(default_factory=SourceAttributes)
    target_age: Optional[str] = None
    variation_sets: VariationSets
    # Optional id -> display name map used for prompts and log messages
    labels: Dict[str, str] = PydanticField(default_factory=dict)

    def to_targets(self) -> List[VariationTarget]:
        return self.variation_sets.to_targets()

    def job_config(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude={"target_age"})


class BatchJobSubmitted(BaseModel):
    job_id: str
    status: str
    total_items: int
    message: str


class JobProgress(BaseModel):
    total: int
    completed: int
    successful: int
    failed: int
    percentage: int

    @classmethod
    def from_job(cls, job: BatchJobBase) -> "JobProgress":
        percentage = 0
        if job.total_items > 0:
            percentage = math.floor(job.completed_items * 100 / job.total_items + 0.5)
        return cls(
            total=job.total_items,
            completed=job.completed_items,
            successful=job.successful_items,
            failed=job.failed_items,
            percentage=percentage,
        )


class BatchJobDetail(BaseModel):
    job: BatchJobRead
    items: List[BatchJobItemRead]
    progress: JobProgress
