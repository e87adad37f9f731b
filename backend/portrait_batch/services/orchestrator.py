"""
Batch Orchestrator

Runs the items of one batch job strictly in ``item_index`` order, one remote
generation call at a time, pacing each call with the adaptive delay computed
from the job's persisted counters.

Cancellation is cooperative: the job status is re-read from the store at the
top of every item, so a call already in flight finishes and its result is
recorded before the loop notices the job was cancelled.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError

from portrait_batch.core.cloudinary_client import ArtifactUploadError
from portrait_batch.core.config import settings
from portrait_batch.core.generator_client import (
    GeminiVariationClient,
    GenerationError,
    SourceImage,
    VariationRequest,
    fetch_source_image,
)
from portrait_batch.models.batch_job import BatchJob, BatchJobItem, ItemStatus, JobStatus
from portrait_batch.models.variation import SourceAttributes
from portrait_batch.services.artifact_store import ArtifactStore
from portrait_batch.services.job_store import JobStore, JobStoreError, job_store
from portrait_batch.services.pacing import PacingConfig, recommend_delay

logger = logging.getLogger(__name__)


class JobConfigurationError(Exception):
    """Raised when a job's stored configuration cannot be executed."""


@dataclass
class JobContext:
    source_image_url: str
    source_prompt: str
    source_attributes: Dict[str, Optional[str]] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    target_age: Optional[str] = None


def load_job_context(job: BatchJob) -> JobContext:
    """Validate the stored job config and pull out what each item request needs."""
    config = job.config or {}
    url = config.get("source_image_url")
    prompt = config.get("source_prompt")
    if not isinstance(url, str) or not url:
        raise JobConfigurationError(f"Job {job.id} config has no source_image_url")
    if not isinstance(prompt, str) or not prompt:
        raise JobConfigurationError(f"Job {job.id} config has no source_prompt")

    try:
        attributes = SourceAttributes.model_validate(config.get("source_attributes") or {})
    except ValidationError as exc:
        raise JobConfigurationError(f"Job {job.id} has invalid source_attributes: {exc}") from exc

    labels = config.get("labels") or {}
    if not isinstance(labels, dict):
        raise JobConfigurationError(f"Job {job.id} labels must be a mapping")

    return JobContext(
        source_image_url=url,
        source_prompt=prompt,
        source_attributes=attributes.model_dump(),
        labels={str(k): str(v) for k, v in labels.items()},
        target_age=job.target_age,
    )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class BatchOrchestrator:
    def __init__(
        self,
        store: Optional[JobStore] = None,
        generator=None,
        artifacts: Optional[ArtifactStore] = None,
        pacing: Optional[PacingConfig] = None,
        *,
        source_fetcher: Optional[Callable[[str], SourceImage]] = None,
        generation_timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store or job_store
        self.generator = generator or GeminiVariationClient()
        self.artifacts = artifacts or ArtifactStore()
        self.pacing = pacing or PacingConfig.from_settings()
        self.source_fetcher = source_fetcher or fetch_source_image
        self.generation_timeout = generation_timeout or settings.GENERATION_TIMEOUT_S
        self.max_attempts = max(1, max_attempts or settings.ITEM_MAX_ATTEMPTS)
        self._sleep = sleep
        self.last_item_index: Optional[int] = None
        # A timed-out call whose worker thread may still be talking to the generator
        self._abandoned_call: Optional["asyncio.Future[Any]"] = None

    async def run(self, job_id: str) -> None:
        """Execute a job until it completes, is cancelled, or fails fatally.

        Never raises for job-level failures: they are logged and the job is
        marked ``failed`` so it cannot stay ``running`` forever.
        """
        try:
            await self._run(job_id)
        except asyncio.CancelledError:
            # Runner shutdown. The job stays running and the supervisor resumes
            # it once its heartbeat goes stale.
            logger.warning(
                "Batch job %s interrupted after item %s",
                job_id,
                self.last_item_index,
                extra={"job_id": job_id, "item_index": self.last_item_index},
            )
            raise
        except Exception as exc:
            logger.exception(
                "Batch job %s failed after item %s",
                job_id,
                self.last_item_index,
                extra={"job_id": job_id, "item_index": self.last_item_index},
            )
            await self._fail(job_id, f"{type(exc).__name__}: {exc}")
        # Hold the worker until no generation thread of this job is left running
        await self._drain_abandoned_call(job_id)

    async def _drain_abandoned_call(self, job_id: str) -> None:
        call, self._abandoned_call = self._abandoned_call, None
        if call is None:
            return
        if not call.done():
            logger.info(
                "Waiting for a timed-out generation call of job %s to finish",
                job_id,
                extra={"job_id": job_id},
            )
        try:
            await call
        except Exception as exc:
            # The item was already failed with the timeout; the late outcome is dropped
            logger.debug("Timed-out generation call of job %s ended with %r", job_id, exc, extra={"job_id": job_id})

    async def _generate(self, job_id: str, request: VariationRequest):
        """Run one generator call, bounded by ``generation_timeout``.

        The thread behind a timed-out call cannot be interrupted, so it is kept
        and awaited before the next call starts. At most one generator call per
        job is ever in flight.
        """
        await self._drain_abandoned_call(job_id)
        call = asyncio.ensure_future(asyncio.to_thread(self.generator.generate, request))
        try:
            return await asyncio.wait_for(asyncio.shield(call), timeout=self.generation_timeout)
        except (asyncio.TimeoutError, asyncio.CancelledError):
            self._abandoned_call = call
            raise

    async def _fail(self, job_id: str, message: str) -> None:
        try:
            await asyncio.to_thread(self.store.fail_job, job_id, message)
        except Exception:
            # Store unreachable; the supervisor picks the job up once stale.
            logger.exception("Could not mark batch job %s failed", job_id, extra={"job_id": job_id})

    async def _run(self, job_id: str) -> None:
        job = await asyncio.to_thread(self.store.get_job, job_id)
        if job is None:
            logger.warning("Batch job %s not found", job_id, extra={"job_id": job_id})
            return
        if job.is_terminal:
            logger.info("Batch job %s already %s", job_id, job.status, extra={"job_id": job_id})
            return

        context = load_job_context(job)
        items = await asyncio.to_thread(self.store.get_items, job_id)
        pending = [item for item in items if item.status == ItemStatus.PENDING.value]
        logger.info(
            "Starting batch job %s: %d of %d items pending",
            job_id,
            len(pending),
            len(items),
            extra={"job_id": job_id},
        )

        source = None
        if pending:
            source = await asyncio.to_thread(self.source_fetcher, context.source_image_url)

        for item in pending:
            job = await asyncio.to_thread(self.store.get_job, job_id)
            if job is None:
                raise JobStoreError(f"Job {job_id} disappeared while running")
            if job.status == JobStatus.CANCELLED.value:
                await self._stop_cancelled(job_id)
                return
            if job.is_terminal:
                logger.warning("Batch job %s became %s while running", job_id, job.status, extra={"job_id": job_id})
                return

            claimed = await asyncio.to_thread(self.store.claim_item, job_id, item.item_index)
            if not claimed:
                # Skipped by a cancellation that landed after the check above
                continue

            recommendation = recommend_delay(
                job.completed_items, job.successful_items, job.failed_items, self.pacing
            )
            logger.debug(
                "Item %d of job %s waits %dms (%s)",
                item.item_index,
                job_id,
                recommendation.delay_ms,
                recommendation.reasoning,
                extra={"job_id": job_id, "item_index": item.item_index},
            )
            await self._sleep(recommendation.delay_ms / 1000)

            await self._process_item(job_id, item, context, source)
            self.last_item_index = item.item_index

        job = await asyncio.to_thread(self.store.get_job, job_id)
        if job is not None and job.status == JobStatus.CANCELLED.value:
            await self._stop_cancelled(job_id)
            return

        completed = await asyncio.to_thread(self.store.complete_job, job_id)
        if completed:
            job = await asyncio.to_thread(self.store.get_job, job_id)
            logger.info(
                "Batch job %s completed: %d/%d items successful",
                job_id,
                job.successful_items,
                job.total_items,
                extra={"job_id": job_id},
            )

    async def _stop_cancelled(self, job_id: str) -> None:
        skipped = await asyncio.to_thread(self.store.skip_pending_items, job_id)
        logger.info(
            "Batch job %s cancelled after item %s (%d more items skipped)",
            job_id,
            self.last_item_index,
            skipped,
            extra={"job_id": job_id, "item_index": self.last_item_index},
        )

    async def _process_item(
        self,
        job_id: str,
        item: BatchJobItem,
        context: JobContext,
        source: SourceImage,
    ) -> None:
        try:
            target = item.target
        except ValueError as exc:
            raise JobConfigurationError(str(exc)) from exc

        request = VariationRequest(
            source_image=source,
            source_prompt=context.source_prompt,
            target=target,
            source_attributes=context.source_attributes,
            labels=context.labels,
            target_age=context.target_age,
        )
        log_extra = {"job_id": job_id, "item_index": item.item_index}
        started = time.monotonic()
        gemini_ms = None
        error = None

        for attempt in range(1, self.max_attempts + 1):
            call_started = time.monotonic()
            try:
                variation = await self._generate(job_id, request)
                gemini_ms = _elapsed_ms(call_started)
                artifact = await asyncio.to_thread(
                    self.artifacts.store,
                    variation,
                    job_id=job_id,
                    item_index=item.item_index,
                    source_attributes=context.source_attributes,
                )
            except asyncio.TimeoutError:
                gemini_ms = _elapsed_ms(call_started)
                error = f"Generation timed out after {self.generation_timeout:g}s"
            except (GenerationError, ArtifactUploadError) as exc:
                error = str(exc) or type(exc).__name__
            except Exception as exc:
                # Anything else raised by the generator or the artifact upload
                # still only fails this item.
                logger.exception(
                    "Item %d of job %s raised %s",
                    item.item_index,
                    job_id,
                    type(exc).__name__,
                    extra=log_extra,
                )
                error = f"{type(exc).__name__}: {exc}"
            else:
                await asyncio.to_thread(
                    self.store.finalize_item,
                    job_id,
                    item.item_index,
                    ItemStatus.COMPLETED.value,
                    generated_image_id=artifact.id,
                    gemini_duration_ms=gemini_ms,
                    total_duration_ms=_elapsed_ms(started),
                )
                logger.info(
                    "Item %d of job %s completed as image %s",
                    item.item_index,
                    job_id,
                    artifact.id,
                    extra=log_extra,
                )
                return

            if attempt < self.max_attempts:
                await asyncio.to_thread(self.store.record_retry, job_id, item.item_index)
                logger.warning(
                    "Item %d of job %s attempt %d failed, retrying: %s",
                    item.item_index,
                    job_id,
                    attempt,
                    error,
                    extra=log_extra,
                )

        await asyncio.to_thread(
            self.store.finalize_item,
            job_id,
            item.item_index,
            ItemStatus.FAILED.value,
            error_message=error,
            gemini_duration_ms=gemini_ms,
            total_duration_ms=_elapsed_ms(started),
        )
        logger.warning("Item %d of job %s failed: %s", item.item_index, job_id, error, extra=log_extra)
