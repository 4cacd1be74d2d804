"""
Progress aggregation.

compute_progress is a pure function of the job record. The stored percent
only ever moves up (JobStore.advance_progress), so notifications never show
a regression even when chapter units report out of order.
"""
from typing import Tuple

from models.job import Job, JobPhase, JobStatus, ProgressEvent
from services.exceptions import JobFinalizedError
from services.logging_service import get_logger

# Milestones (percent)
UPLOADED = 5
SEGMENTING = 10
SEGMENTED = 25
CONDENSED = 90
ASSEMBLING = 95
COMPLETE = 100


def compute_progress(job: Job) -> Tuple[int, str]:
    """Returns (percent, step description) for the job's current state."""
    if job.status == JobStatus.UPLOADING:
        return 0, "Waiting for upload..."
    if job.status == JobStatus.QUEUED:
        return UPLOADED, "Queued for processing..."
    if job.status == JobStatus.COMPLETED:
        return COMPLETE, "Complete!"
    if job.status == JobStatus.FAILED:
        return job.progress, job.current_step

    if job.phase == JobPhase.ASSEMBLING:
        return ASSEMBLING, "Assembling final PDF..."
    if job.phase == JobPhase.CONDENSING:
        essential = job.essential_chapters
        total = len(essential)
        if total == 0:
            return SEGMENTED, "No chapters to condense"
        done = sum(1 for ch in essential if ch.status.is_terminal)
        percent = SEGMENTED + int((CONDENSED - SEGMENTED) * done / total)
        if done == 0:
            return percent, f"Found {total} chapters to condense"
        return percent, f"Condensing chapters ({done}/{total})..."
    return SEGMENTING, "Analyzing book structure..."


class ProgressReporter:
    """Recomputes job progress after state changes and emits notifications."""

    def __init__(self, store, notifier):
        self.store = store
        self.notifier = notifier

    def refresh(self, job_id: str) -> Job:
        """
        Recomputes progress from the stored record, raises the stored percent if
        needed and emits an event when the stored progress changed. Terminal jobs
        are left alone; their final event is published by whoever finished them.
        """
        job = self.store.get(job_id)
        if job.is_terminal:
            return job
        percent, step = compute_progress(job)
        try:
            job, changed = self.store.advance_progress(job_id, percent, step)
        except JobFinalizedError:
            return self.store.get(job_id)
        if changed:
            self.publish(job)
        return job

    def publish(self, job: Job, retry_available: bool = False):
        event = ProgressEvent(
            job_id=job.job_id,
            percent=job.progress,
            step_description=job.current_step,
            status=job.status.value,
            retry_available=retry_available,
            download_url=job.download_url,
            context=job.context,
        )
        try:
            self.notifier.notify(event)
        except Exception as e:
            # Notifications are best effort; the job record stays authoritative
            get_logger().warning(f"Failed to send progress notification: {e}", job_id=job.job_id)
