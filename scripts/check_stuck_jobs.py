"""
Lists jobs that have sat in `processing` without an update for too long.

    python scripts/check_stuck_jobs.py [--minutes 30] [--requeue]

With --requeue the unit each stuck job is waiting on is enqueued again:
prepare_book while segmenting, the unfinished chapters while condensing,
finalize_book while assembling. Every unit is safe to redeliver.
"""
import argparse
import os
import sys
from datetime import datetime, timedelta, timezone

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'cloud_function'))

from models.job import JobPhase, JobStatus  # noqa: E402
from services.job_store import GcsJobStore  # noqa: E402
from services.task_dispatcher import CloudTasksDispatcher  # noqa: E402


def find_stuck_jobs(store, minutes: int, now=None):
    now = now or datetime.now(timezone.utc)
    threshold = now - timedelta(minutes=minutes)
    stuck = []
    for job in store.list_jobs(JobStatus.PROCESSING):
        if datetime.fromisoformat(job.updated_at) < threshold:
            stuck.append(job)
    return sorted(stuck, key=lambda j: j.updated_at)


def requeue(job, dispatcher):
    if job.phase == JobPhase.ASSEMBLING:
        dispatcher.enqueue_assembly(job.job_id)
        return "finalize_book"
    if job.phase == JobPhase.CONDENSING:
        pending = [ch.chapter_id for ch in job.essential_chapters if not ch.status.is_terminal]
        if pending:
            dispatcher.enqueue_chapters(job.job_id, pending)
            return f"{len(pending)} chapter(s)"
        # Every chapter finished but fan-in never ran; a prepare redelivery re-checks it
        dispatcher.enqueue_prepare(job.job_id)
        return "fan-in check"
    dispatcher.enqueue_prepare(job.job_id)
    return "prepare_book"


def check_stuck_jobs(minutes: int = 30, do_requeue: bool = False):
    store = GcsJobStore()
    print(f"Checking jobs in {store.bucket_name} (no update for {minutes} min)...")

    stuck_jobs = find_stuck_jobs(store, minutes)

    print("\n--- Stuck Jobs Report ---")
    dispatcher = CloudTasksDispatcher() if do_requeue and stuck_jobs else None
    for job in stuck_jobs:
        essential = job.essential_chapters
        done = sum(1 for ch in essential if ch.status.is_terminal)
        print(f"Job ID: {job.job_id}")
        print(f"  Title: {job.title}")
        print(f"  Phase: {job.phase.value if job.phase else 'unknown'}")
        print(f"  Progress: {job.progress}% ({done}/{len(essential)} chapters)")
        print(f"  Updated: {job.updated_at}")
        print(f"  Cancel requested: {job.cancel_requested}")
        if dispatcher:
            print(f"  Requeued: {requeue(job, dispatcher)}")
        print("-" * 30)

    if not stuck_jobs:
        print("No stuck jobs.")
    return stuck_jobs


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--minutes", type=int, default=30)
    parser.add_argument("--requeue", action="store_true")
    args = parser.parse_args()
    check_stuck_jobs(args.minutes, args.requeue)
