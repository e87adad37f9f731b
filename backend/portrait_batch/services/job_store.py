"""
Job Store

Durable state for batch jobs and their items. Every state transition is a
conditional UPDATE guarded on the current status, so the orchestrator and a
concurrent cancellation request can never overwrite each other's writes.
Job counters are recomputed from the item rows inside the same transaction
as each terminal item write, which keeps item-level and job-level progress
in agreement for any reader.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func, literal, update
from sqlmodel import Session, select

from portrait_batch.db.engine import engine as db_engine
from portrait_batch.db.types import UTCDateTime, utcnow
from portrait_batch.models.batch_job import (
    IMAGE_VARIATION_JOB,
    BatchJob,
    BatchJobItem,
    ItemStatus,
    JobStatus,
)
from portrait_batch.models.variation import VariationTarget

logger = logging.getLogger(__name__)

ACTIVE_JOB_STATUSES = (JobStatus.PENDING.value, JobStatus.RUNNING.value)


class JobStoreError(Exception):
    """Base class for job store failures."""


class JobNotFoundError(JobStoreError):
    """Raised when a job id does not exist."""


class JobConflictError(JobStoreError):
    """Raised when a request conflicts with the job's current state."""


def _if_unset(column, value):
    return func.coalesce(column, literal(value, UTCDateTime()))


class JobStore:
    """Typed read/write operations over the batch job tables."""

    def __init__(self, bind=None):
        self.engine = bind if bind is not None else db_engine

    # ----- creation -----

    def create_job(
        self,
        targets: Sequence[VariationTarget],
        config: Optional[Dict[str, Any]] = None,
        *,
        job_type: str = IMAGE_VARIATION_JOB,
        original_image_id: Optional[str] = None,
        target_age: Optional[str] = None,
    ) -> BatchJob:
        """Create the job row and all of its items in a single transaction."""
        if not targets:
            raise JobConflictError("No variations specified")

        with Session(self.engine) as session:
            job = BatchJob(
                job_type=job_type,
                original_image_id=original_image_id,
                config=config or {},
                target_age=target_age,
                total_items=len(targets),
            )
            try:
                session.add(job)
                session.flush()
                session.add_all(
                    BatchJobItem.from_target(job.id, index, target)
                    for index, target in enumerate(targets)
                )
                session.commit()
            except Exception:
                session.rollback()
                logger.exception("Failed to create batch job with %d items", len(targets))
                raise
            session.refresh(job)
            return job

    # ----- reads -----

    def get_job(self, job_id: str) -> Optional[BatchJob]:
        with Session(self.engine) as session:
            return session.get(BatchJob, job_id)

    def require_job(self, job_id: str) -> BatchJob:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    def get_items(self, job_id: str) -> List[BatchJobItem]:
        with Session(self.engine) as session:
            query = (
                select(BatchJobItem)
                .where(BatchJobItem.job_id == job_id)
                .order_by(BatchJobItem.item_index)
            )
            return list(session.exec(query).all())

    def get_job_snapshot(self, job_id: str) -> Optional[Tuple[BatchJob, List[BatchJobItem]]]:
        """Read a job and its items inside one transaction."""
        with Session(self.engine) as session:
            job = session.get(BatchJob, job_id)
            if job is None:
                return None
            items = session.exec(
                select(BatchJobItem)
                .where(BatchJobItem.job_id == job_id)
                .order_by(BatchJobItem.item_index)
            ).all()
            return job, list(items)

    def list_jobs(self, limit: int = 50, status: Optional[str] = None) -> List[BatchJob]:
        with Session(self.engine) as session:
            query = select(BatchJob).order_by(BatchJob.created_at.desc())
            if status:
                query = query.where(BatchJob.status == status)
            return list(session.exec(query.limit(limit)).all())

    def list_job_ids(self, status: str) -> List[str]:
        """Ids of every job in ``status``, oldest first."""
        with Session(self.engine) as session:
            query = (
                select(BatchJob.id)
                .where(BatchJob.status == status)
                .order_by(BatchJob.created_at)
            )
            return list(session.exec(query).all())

    def count_jobs_by_status(self) -> Dict[str, int]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(BatchJob.status, func.count()).group_by(BatchJob.status)
            ).all()
            return {status: count for status, count in rows}

    def oldest_job(self, status: str) -> Optional[BatchJob]:
        with Session(self.engine) as session:
            query = (
                select(BatchJob)
                .where(BatchJob.status == status)
                .order_by(BatchJob.created_at)
                .limit(1)
            )
            return session.exec(query).first()

    def find_stale_jobs(self, older_than: datetime) -> List[BatchJob]:
        """Running jobs whose heartbeat has not moved since ``older_than``."""
        with Session(self.engine) as session:
            query = (
                select(BatchJob)
                .where(BatchJob.status == JobStatus.RUNNING.value)
                .where(BatchJob.updated_at < older_than)
                .order_by(BatchJob.updated_at)
            )
            return list(session.exec(query).all())

    def find_terminal_jobs_with_running_items(self) -> List[str]:
        with Session(self.engine) as session:
            query = (
                select(BatchJob.id)
                .join(BatchJobItem, BatchJobItem.job_id == BatchJob.id)
                .where(BatchJob.status.not_in(ACTIVE_JOB_STATUSES))
                .where(BatchJobItem.status == ItemStatus.RUNNING.value)
                .distinct()
            )
            return list(session.exec(query).all())

    # ----- generic partial updates -----

    def update_job(
        self,
        job_id: str,
        fields: Dict[str, Any],
        *,
        expected_status: Optional[Iterable[str]] = None,
        set_if_null: Iterable[str] = (),
    ) -> bool:
        """Apply a partial update; fields in ``set_if_null`` only fill empty columns."""
        with Session(self.engine) as session:
            updated = self._update_job(session, job_id, fields, expected_status, set_if_null)
            session.commit()
            return updated

    def update_item(
        self,
        job_id: str,
        item_index: int,
        fields: Dict[str, Any],
        *,
        expected_status: Optional[Iterable[str]] = None,
    ) -> bool:
        with Session(self.engine) as session:
            updated = self._update_item(session, job_id, item_index, fields, expected_status)
            session.commit()
            return updated

    # ----- orchestrator transitions -----

    def claim_item(self, job_id: str, item_index: int) -> bool:
        """Move a pending item to running and the job to running if it was pending."""
        now = utcnow()
        with Session(self.engine) as session:
            claimed = self._update_item(
                session,
                job_id,
                item_index,
                {"status": ItemStatus.RUNNING.value, "started_at": now},
                [ItemStatus.PENDING.value],
            )
            if not claimed:
                session.rollback()
                return False
            job_updated = self._update_job(
                session,
                job_id,
                {"status": JobStatus.RUNNING.value, "started_at": now},
                ACTIVE_JOB_STATUSES,
                ("started_at",),
            )
            if not job_updated:
                session.rollback()
                return False
            session.commit()
            return True

    def record_retry(self, job_id: str, item_index: int) -> bool:
        with Session(self.engine) as session:
            updated = self._update_item(
                session,
                job_id,
                item_index,
                {"retry_count": BatchJobItem.retry_count + 1},
                [ItemStatus.RUNNING.value],
            )
            session.commit()
            return updated

    def finalize_item(self, job_id: str, item_index: int, status: str, **fields: Any) -> bool:
        """Record a running item's terminal outcome together with fresh job counters."""
        if status not in (ItemStatus.COMPLETED.value, ItemStatus.FAILED.value):
            raise ValueError(f"Cannot finalize item as {status}")

        with Session(self.engine) as session:
            updated = self._update_item(
                session,
                job_id,
                item_index,
                {**fields, "status": status, "completed_at": utcnow()},
                [ItemStatus.RUNNING.value],
            )
            if not updated:
                session.rollback()
                return False
            self._refresh_counters(session, job_id)
            session.commit()
            return True

    def skip_pending_items(self, job_id: str) -> int:
        with Session(self.engine) as session:
            skipped = self._skip_pending(session, job_id)
            session.commit()
            return skipped

    def complete_job(self, job_id: str) -> bool:
        now = utcnow()
        with Session(self.engine) as session:
            updated = self._update_job(
                session,
                job_id,
                {"status": JobStatus.COMPLETED.value, "completed_at": now, "started_at": now},
                ACTIVE_JOB_STATUSES,
                ("started_at",),
            )
            session.commit()
            return updated

    def fail_job(self, job_id: str, message: str) -> bool:
        """Mark a job failed and close out any item it left unfinished."""
        now = utcnow()
        with Session(self.engine) as session:
            updated = self._update_job(
                session,
                job_id,
                {"status": JobStatus.FAILED.value, "completed_at": now},
                ACTIVE_JOB_STATUSES,
            )
            if not updated:
                session.rollback()
                return False

            self._update_items(
                session,
                job_id,
                {"status": ItemStatus.FAILED.value, "completed_at": now, "error_message": message},
                [ItemStatus.RUNNING.value],
            )
            self._skip_pending(session, job_id)
            self._refresh_counters(session, job_id)

            job = session.get(BatchJob, job_id)
            job.error_log = [*(job.error_log or []), message]
            session.add(job)
            session.commit()
            return True

    def request_cancellation(self, job_id: str) -> BatchJob:
        """Cancel a pending or running job and skip every item not yet claimed.

        An item already running keeps its status; the orchestrator finalizes it
        when its in-flight call returns.
        """
        now = utcnow()
        with Session(self.engine) as session:
            cancelled = self._update_job(
                session,
                job_id,
                {"status": JobStatus.CANCELLED.value, "completed_at": now},
                ACTIVE_JOB_STATUSES,
            )
            if not cancelled:
                session.rollback()
                job = session.get(BatchJob, job_id)
                if job is None:
                    raise JobNotFoundError(f"Job {job_id} not found")
                raise JobConflictError(f"Cannot cancel {job.status} job")

            skipped = self._skip_pending(session, job_id)
            session.commit()
            logger.info("Cancelled batch job %s (%d items skipped)", job_id, skipped)
            return session.get(BatchJob, job_id)

    def reconcile_running_items(self, job_id: str, status: str, message: Optional[str] = None) -> int:
        """Close out items left running by a process that is no longer executing them."""
        fields: Dict[str, Any] = {"status": status, "completed_at": utcnow()}
        if status == ItemStatus.FAILED.value:
            fields["error_message"] = message or "Interrupted before completion"
        with Session(self.engine) as session:
            count = self._update_items(session, job_id, fields, [ItemStatus.RUNNING.value])
            if count:
                self._refresh_counters(session, job_id)
            session.commit()
            return count

    def recompute_counters(self, job_id: str) -> Dict[str, int]:
        with Session(self.engine) as session:
            counters = self._refresh_counters(session, job_id)
            session.commit()
            return counters

    def count_items_by_status(self, job_id: str) -> Dict[str, int]:
        with Session(self.engine) as session:
            return self._count_items(session, job_id)

    # ----- statement helpers -----

    def _update_job(self, session, job_id, fields, expected_status=None, set_if_null=()) -> bool:
        values = dict(fields)
        for name in set_if_null:
            if name in values:
                values[name] = _if_unset(getattr(BatchJob, name), values[name])
        values["updated_at"] = utcnow()

        stmt = update(BatchJob).where(BatchJob.id == job_id)
        if expected_status is not None:
            stmt = stmt.where(BatchJob.status.in_(list(expected_status)))
        result = session.execute(stmt.values(**values).execution_options(synchronize_session=False))
        return result.rowcount > 0

    def _update_item(self, session, job_id, item_index, fields, expected_status=None) -> bool:
        stmt = (
            update(BatchJobItem)
            .where(BatchJobItem.job_id == job_id)
            .where(BatchJobItem.item_index == item_index)
        )
        if expected_status is not None:
            stmt = stmt.where(BatchJobItem.status.in_(list(expected_status)))
        result = session.execute(stmt.values(**fields).execution_options(synchronize_session=False))
        return result.rowcount > 0

    def _update_items(self, session, job_id, fields, expected_status) -> int:
        stmt = (
            update(BatchJobItem)
            .where(BatchJobItem.job_id == job_id)
            .where(BatchJobItem.status.in_(list(expected_status)))
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        return session.execute(stmt).rowcount

    def _skip_pending(self, session, job_id) -> int:
        return self._update_items(
            session,
            job_id,
            {"status": ItemStatus.SKIPPED.value, "completed_at": utcnow()},
            [ItemStatus.PENDING.value],
        )

    def _count_items(self, session, job_id) -> Dict[str, int]:
        rows = session.exec(
            select(BatchJobItem.status, func.count())
            .where(BatchJobItem.job_id == job_id)
            .group_by(BatchJobItem.status)
        ).all()
        return {status: count for status, count in rows}

    def _refresh_counters(self, session, job_id) -> Dict[str, int]:
        counts = self._count_items(session, job_id)
        successful = counts.get(ItemStatus.COMPLETED.value, 0)
        failed = counts.get(ItemStatus.FAILED.value, 0)
        counters = {
            "completed_items": successful + failed,
            "successful_items": successful,
            "failed_items": failed,
        }
        self._update_job(session, job_id, counters)
        return counters


job_store = JobStore()
