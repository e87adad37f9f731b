"""
Inspect recent batch jobs and flag the ones that look stuck.

Prints per-job progress, item status counts, long-running items and
recent failures, and checks that each job's counters agree with its items.
With --repair, counters that disagree are recomputed from the item rows.
"""

import argparse
import sys
from datetime import timedelta
from pathlib import Path


def _add_backend_to_path() -> None:
    current = Path(__file__).resolve()
    backend_root = current.parent.parent
    sys.path.append(str(backend_root))


def _fmt_duration(delta: timedelta) -> str:
    seconds = int(delta.total_seconds())
    return f"{seconds // 60}m {seconds % 60}s"


def main() -> int:
    _add_backend_to_path()

    from portrait_batch.core.config import settings
    from portrait_batch.db.types import utcnow
    from portrait_batch.models.batch_job import ItemStatus, JobStatus
    from portrait_batch.services.job_store import job_store

    parser = argparse.ArgumentParser(description="Analyze batch job status and spot stalled jobs")
    parser.add_argument("--limit", type=int, default=10, help="How many recent jobs to inspect")
    parser.add_argument("--job", type=str, default=None, help="Inspect a single job id")
    parser.add_argument(
        "--stalled-after",
        type=int,
        default=300,
        help="Seconds an item may stay running before it is flagged",
    )
    parser.add_argument("--repair", action="store_true", help="Recompute counters that disagree with items")
    args = parser.parse_args()

    if args.job:
        job = job_store.get_job(args.job)
        if job is None:
            print(f"Job {args.job} not found")
            return 1
        jobs = [job]
    else:
        jobs = job_store.list_jobs(limit=args.limit)

    if not jobs:
        print("No batch jobs found")
        return 0

    now = utcnow()
    stale_cutoff = now - timedelta(seconds=settings.STALE_JOB_TIMEOUT_S)
    problems = 0

    print(f"Found {len(jobs)} batch jobs\n")
    for job in jobs:
        items = job_store.get_items(job.id)
        counts = {status.value: 0 for status in ItemStatus}
        for item in items:
            counts[item.status] = counts.get(item.status, 0) + 1

        rate = round(job.successful_items * 100 / job.completed_items) if job.completed_items else 0
        print(f"JOB {job.id[:8]}  {job.status.upper()}")
        print(f"   Created:  {job.created_at:%Y-%m-%d %H:%M:%S}")
        print(f"   Started:  {job.started_at:%Y-%m-%d %H:%M:%S}" if job.started_at else "   Started:  not started")
        print(f"   Progress: {job.completed_items}/{job.total_items} items, {rate}% success")
        print("   Items:    " + ", ".join(f"{name} {count}" for name, count in counts.items()))

        if job.status == JobStatus.RUNNING.value:
            print(f"   Running for {_fmt_duration(now - (job.started_at or job.created_at))}")
            if job.updated_at < stale_cutoff:
                problems += 1
                print(f"   WARNING: no progress since {job.updated_at:%H:%M:%S}, supervisor will {settings.STALE_JOB_POLICY} it")

        for item in items:
            if item.status != ItemStatus.RUNNING.value or item.started_at is None:
                continue
            running_for = now - item.started_at
            if running_for.total_seconds() > args.stalled_after:
                problems += 1
                print(f"   WARNING: item {item.item_index + 1} running for {_fmt_duration(running_for)}")

        failed = [item for item in items if item.status == ItemStatus.FAILED.value]
        for item in failed[:3]:
            print(f"   Failed item {item.item_index + 1}: {item.error_message or 'unknown error'}")

        expected = (
            counts[ItemStatus.COMPLETED.value] + counts[ItemStatus.FAILED.value],
            counts[ItemStatus.COMPLETED.value],
            counts[ItemStatus.FAILED.value],
        )
        actual = (job.completed_items, job.successful_items, job.failed_items)
        if actual != expected:
            problems += 1
            print(f"   WARNING: counters {actual} disagree with items {expected}")
            if args.repair:
                job_store.recompute_counters(job.id)
                print("   Repaired counters")

        if job.is_terminal and (counts[ItemStatus.PENDING.value] or counts[ItemStatus.RUNNING.value]):
            problems += 1
            print("   WARNING: terminal job still has unfinished items")
        print()

    print(f"{problems} potential issues found")
    return 1 if problems and not args.repair else 0


if __name__ == "__main__":
    raise SystemExit(main())
