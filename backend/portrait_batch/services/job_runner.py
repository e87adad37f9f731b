import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, List, Optional, Set

from portrait_batch.core.config import settings
from portrait_batch.db.types import utcnow
from portrait_batch.models.batch_job import ItemStatus, JobStatus
from portrait_batch.services.job_store import JobStore, job_store
from portrait_batch.services.orchestrator import BatchOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class RecoveryReport:
    requeued: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    reconciled_items: int = 0


class BatchJobRunner:
    """Background worker pool that executes batch jobs outside the request cycle."""

    def __init__(
        self,
        orchestrator_factory: Optional[Callable[[], BatchOrchestrator]] = None,
        store: Optional[JobStore] = None,
        max_concurrent_jobs: Optional[int] = None,
        supervisor_interval: Optional[float] = None,
        stale_after: Optional[float] = None,
        stale_policy: Optional[str] = None,
    ):
        self.orchestrator_factory = orchestrator_factory or BatchOrchestrator
        self.store = store or job_store
        self.max_concurrent_jobs = max(1, max_concurrent_jobs or settings.MAX_CONCURRENT_JOBS)
        self.supervisor_interval = supervisor_interval or settings.SUPERVISOR_INTERVAL_S
        self.stale_after = stale_after or settings.STALE_JOB_TIMEOUT_S
        self.stale_policy = stale_policy or settings.STALE_JOB_POLICY
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []
        self._supervisor: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._queued: Set[str] = set()
        self._active: Set[str] = set()

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self, supervise: bool = True):
        if self._workers:
            return

        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._stop_event = asyncio.Event()
        self._workers = [
            asyncio.create_task(self._worker(n)) for n in range(self.max_concurrent_jobs)
        ]
        if supervise:
            self._supervisor = asyncio.create_task(self._supervise())
        logger.info("Batch job runner started with %d workers", self.max_concurrent_jobs)

    async def stop(self):
        if not self._workers:
            return

        self._stop_event.set()
        tasks = [*self._workers]
        if self._supervisor:
            tasks.append(self._supervisor)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._workers = []
        self._supervisor = None
        self._queued.clear()
        self._active.clear()
        self._loop = None
        logger.info("Batch job runner stopped")

    def submit(self, job_id: str) -> None:
        """Queue a job for execution and return immediately.

        Safe to call from request handlers running in the threadpool.
        """
        if self._loop is None:
            raise RuntimeError("Batch job runner is not started")

        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None

        if current is self._loop:
            self._enqueue(job_id)
        else:
            self._loop.call_soon_threadsafe(self._enqueue, job_id)

    async def join(self):
        """Wait until every queued job has been processed."""
        if self._queue is not None:
            await self._queue.join()

    def status(self) -> dict:
        return {
            "running": self.running,
            "workers": len(self._workers),
            "max_concurrent_jobs": self.max_concurrent_jobs,
            "queued": len(self._queued),
            "active_jobs": sorted(self._active),
            "stale_policy": self.stale_policy,
        }

    def _enqueue(self, job_id: str):
        if job_id in self._queued or job_id in self._active:
            return
        self._queued.add(job_id)
        self._queue.put_nowait(job_id)

    async def _worker(self, worker_id: int):
        while True:
            job_id = await self._queue.get()
            self._queued.discard(job_id)
            self._active.add(job_id)
            try:
                await self.orchestrator_factory().run(job_id)
            except Exception:
                logger.exception(
                    "Worker %d crashed while running batch job %s",
                    worker_id,
                    job_id,
                    extra={"job_id": job_id},
                )
            finally:
                self._active.discard(job_id)
                self._queue.task_done()

    async def _supervise(self):
        while not self._stop_event.is_set():
            try:
                await self.recover()
            except Exception:
                logger.exception("Batch job supervisor pass failed")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.supervisor_interval)
            except asyncio.TimeoutError:
                continue

    async def recover(self) -> RecoveryReport:
        """Requeue pending jobs and deal with running jobs nobody is executing."""
        active = set(self._active)
        report = await asyncio.to_thread(self._scan, active)
        for job_id in report.requeued:
            self._enqueue(job_id)
        if report.requeued or report.failed or report.reconciled_items:
            logger.info(
                "Supervisor requeued %d jobs, failed %d stale jobs, reconciled %d items",
                len(report.requeued),
                len(report.failed),
                report.reconciled_items,
            )
        return report

    def _scan(self, active: Set[str]) -> RecoveryReport:
        report = RecoveryReport()

        for job_id in self.store.find_terminal_jobs_with_running_items():
            report.reconciled_items += self.store.reconcile_running_items(
                job_id, ItemStatus.SKIPPED.value
            )

        cutoff = utcnow() - timedelta(seconds=self.stale_after)
        for job in self.store.find_stale_jobs(cutoff):
            if job.id in active:
                continue
            report.reconciled_items += self.store.reconcile_running_items(
                job.id, ItemStatus.FAILED.value, "Interrupted before completion"
            )
            if self.stale_policy == "resume":
                logger.warning("Resuming stale batch job %s", job.id, extra={"job_id": job.id})
                report.requeued.append(job.id)
            elif self.store.fail_job(job.id, f"Stalled: no progress for {self.stale_after:g}s"):
                logger.warning("Failed stale batch job %s", job.id, extra={"job_id": job.id})
                report.failed.append(job.id)

        report.requeued.extend(self.store.list_job_ids(JobStatus.PENDING.value))
        return report


job_runner = BatchJobRunner()
