"""
Job Store - The job record is the single source of truth for a job.

The record (job fields plus its embedded chapter list) lives as one JSON
document at jobs/{job_id}/job.json. Chapter units run in separate processes
and finish concurrently, so every mutation is a read-modify-write guarded by
the object generation: a writer that lost the race re-reads and re-applies its
own targeted change instead of overwriting a sibling chapter's update.
"""
import json
import random
import threading
import time
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from google.api_core import exceptions as gcp_exceptions
from google.cloud import storage

from config import BUCKET_NAME
from models.job import Chapter, Job, JobPhase, JobStatus, utc_now
from services.exceptions import (
    InvalidStateTransition, JobFinalizedError, JobNotFound, JobStoreConflict, StorageError
)
from services.gcs_service import STORAGE_RETRY
from services.logging_service import get_logger

ALLOWED_TRANSITIONS = {
    JobStatus.UPLOADING: {JobStatus.QUEUED, JobStatus.FAILED},
    JobStatus.QUEUED: {JobStatus.PROCESSING, JobStatus.FAILED},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}

# Fields that have dedicated operations with their own rules
_PROTECTED_FIELDS = {"job_id", "status", "chapters", "progress", "assembly_claimed", "created_at"}


def job_path(job_id: str) -> str:
    return f"jobs/{job_id}/job.json"


class JobStore:
    """
    Targeted partial updates on job records.

    Subclasses provide versioned load/save; this class owns the conflict
    loop and the record rules (terminal jobs are immutable, status changes
    follow ALLOWED_TRANSITIONS, chapters are written once, progress never
    goes down, assembly is claimed at most once).
    """

    max_conflict_retries = 20

    def __init__(self, sleep: Callable[[float], None] = time.sleep):
        self._sleep = sleep

    # --- backend hooks ---

    def _load(self, job_id: str) -> Tuple[Job, int]:
        raise NotImplementedError

    def _save(self, job: Job, generation: int):
        """Raises JobStoreConflict when the stored generation moved on."""
        raise NotImplementedError

    def _insert(self, job: Job):
        raise NotImplementedError

    def list_jobs(self, status: Optional[JobStatus] = None) -> List[Job]:
        raise NotImplementedError

    # --- contract ---

    def create(self, job: Job) -> Job:
        self._insert(job)
        get_logger().debug("Job record created", job_id=job.job_id, status=job.status.value)
        return job

    def get(self, job_id: str) -> Job:
        job, _ = self._load(job_id)
        return job

    def _mutate(self, job_id: str, mutator: Callable[[Job], Optional[bool]]) -> Tuple[Job, bool]:
        """
        Applies mutator to a fresh copy of the record until the write wins.

        mutator returns False when it decided nothing needs to change; in that
        case nothing is written. Returns (job, changed).
        """
        for attempt in range(1, self.max_conflict_retries + 1):
            try:
                job, generation = self._load(job_id)
                if job.is_terminal:
                    raise JobFinalizedError(f"Job {job_id} is already {job.status.value}")
                if mutator(job) is False:
                    return job, False
                job.updated_at = utc_now()
                self._save(job, generation)
                return job, True
            except JobStoreConflict:
                # Jittered so that racing chapter units spread out
                self._sleep(random.uniform(0.01, 0.05) * attempt)
        raise JobStoreConflict(f"Gave up updating job {job_id} after {self.max_conflict_retries} conflicts")

    def update(self, job_id: str, **fields) -> Job:
        """Job-level partial update of plain fields."""
        bad = set(fields) & _PROTECTED_FIELDS
        if bad:
            raise ValueError(f"Use the dedicated operation to change {sorted(bad)}")

        def apply(job: Job):
            for name, value in fields.items():
                if not hasattr(job, name):
                    raise ValueError(f"Unknown job field: {name}")
                setattr(job, name, value)

        job, _ = self._mutate(job_id, apply)
        return job

    def update_chapter(self, job_id: str, chapter_id: str, **fields) -> Job:
        """Partial update scoped to one chapter; sibling chapters are untouched."""

        def apply(job: Job):
            chapter = job.get_chapter(chapter_id)
            if chapter is None:
                raise ValueError(f"Job {job_id} has no chapter {chapter_id}")
            for name, value in fields.items():
                if name in ("chapter_id", "index") or not hasattr(chapter, name):
                    raise ValueError(f"Cannot update chapter field: {name}")
                setattr(chapter, name, value)

        job, _ = self._mutate(job_id, apply)
        return job

    def transition(self, job_id: str, status: JobStatus,
                   expected: Optional[Sequence[JobStatus]] = None, **fields) -> Job:
        """
        Validated status change, applied together with any extra fields.

        Raises InvalidStateTransition when the current status is not in
        `expected` (when given) or the move is not allowed at all.
        """

        def apply(job: Job):
            if expected is not None and job.status not in expected:
                raise InvalidStateTransition(
                    f"Job {job_id} is {job.status.value}, expected one of {[s.value for s in expected]}"
                )
            if status not in ALLOWED_TRANSITIONS[job.status]:
                raise InvalidStateTransition(f"Job {job_id}: {job.status.value} -> {status.value} not allowed")
            job.status = status
            for name, value in fields.items():
                if name in _PROTECTED_FIELDS and name != "progress":
                    raise ValueError(f"Cannot set {name} during a transition")
                setattr(job, name, value)

        job, _ = self._mutate(job_id, apply)
        get_logger().info(f"Job status changed to {status.value}", job_id=job_id)
        return job

    def set_chapters(self, job_id: str, chapters: List[Chapter]) -> Job:
        """
        Stores the segmented chapter list and enters the condensing phase.

        A job's chapter list is written once.
        """

        def apply(job: Job):
            if job.chapters or job.phase not in (None, JobPhase.SEGMENTING):
                raise InvalidStateTransition(f"Chapters of job {job_id} were already stored")
            job.chapters = list(chapters)
            job.phase = JobPhase.CONDENSING

        job, _ = self._mutate(job_id, apply)
        return job

    def advance_progress(self, job_id: str, percent: int, step: str) -> Tuple[Job, bool]:
        """
        Raises the stored percent to `percent`. Lower values are ignored.

        Returns (job, changed); nothing is written when the progress is unchanged.
        """
        percent = max(0, min(100, int(percent)))

        def apply(job: Job):
            if percent < job.progress or (percent == job.progress and step == job.current_step):
                return False
            job.progress = percent
            job.current_step = step

        return self._mutate(job_id, apply)

    def claim_assembly(self, job_id: str) -> bool:
        """
        Test-and-set of the assembly flag; the winner moves the job to the assembling phase.

        Returns True for exactly one caller per job; everyone else gets False.
        """
        claimed = []

        def apply(job: Job):
            claimed.clear()
            if job.assembly_claimed:
                return False
            job.assembly_claimed = True
            job.phase = JobPhase.ASSEMBLING
            claimed.append(True)

        self._mutate(job_id, apply)
        return bool(claimed)


class GcsJobStore(JobStore):
    """Job records as JSON objects in the job bucket, guarded by if_generation_match."""

    def __init__(self, bucket_name: str = BUCKET_NAME, client=None, **kwargs):
        super().__init__(**kwargs)
        self.client = client or storage.Client()
        self.bucket_name = bucket_name

    @property
    def bucket(self):
        return self.client.bucket(self.bucket_name)

    def _load(self, job_id: str) -> Tuple[Job, int]:
        path = job_path(job_id)
        try:
            blob = self.bucket.get_blob(path, retry=STORAGE_RETRY)
            if blob is None:
                raise JobNotFound(f"Job {job_id} not found")
            generation = blob.generation
            content = blob.download_as_bytes(if_generation_match=generation, retry=STORAGE_RETRY)
        except gcp_exceptions.PreconditionFailed:
            # Rewritten between metadata fetch and download; reload on the next round
            raise JobStoreConflict(f"Job {job_id} changed while loading")
        except gcp_exceptions.NotFound as e:
            raise JobNotFound(f"Job {job_id} not found") from e
        except gcp_exceptions.GoogleAPICallError as e:
            raise StorageError(f"Failed to read job {job_id}: {e}") from e
        return Job.from_dict(json.loads(content)), generation

    def _write(self, job: Job, if_generation_match: int):
        self.bucket.blob(job_path(job.job_id)).upload_from_string(
            json.dumps(job.to_dict(), ensure_ascii=False, indent=2),
            content_type="application/json",
            if_generation_match=if_generation_match,
            retry=STORAGE_RETRY,
        )

    def _save(self, job: Job, generation: int):
        try:
            self._write(job, generation)
        except gcp_exceptions.PreconditionFailed:
            raise JobStoreConflict(f"Job {job.job_id} was modified concurrently")
        except gcp_exceptions.GoogleAPICallError as e:
            raise StorageError(f"Failed to write job {job.job_id}: {e}") from e

    def _insert(self, job: Job):
        try:
            self._write(job, 0)
        except gcp_exceptions.PreconditionFailed:
            raise JobStoreConflict(f"Job {job.job_id} already exists")
        except gcp_exceptions.GoogleAPICallError as e:
            raise StorageError(f"Failed to create job {job.job_id}: {e}") from e

    def list_jobs(self, status: Optional[JobStatus] = None) -> List[Job]:
        logger = get_logger()
        jobs = []
        for blob in self.client.list_blobs(self.bucket_name, prefix="jobs/"):
            if not blob.name.endswith("/job.json"):
                continue
            try:
                job = Job.from_dict(json.loads(blob.download_as_bytes(retry=STORAGE_RETRY)))
            except (gcp_exceptions.GoogleAPICallError, ValueError, KeyError, TypeError) as e:
                logger.warning(f"Skipping unreadable job record {blob.name}: {e}")
                continue
            if status is None or job.status == status:
                jobs.append(job)
        return jobs


class InMemoryJobStore(JobStore):
    """Same contract as GcsJobStore, for local runs and tests."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._lock = threading.Lock()
        self._records: Dict[str, Tuple[dict, int]] = {}

    def _load(self, job_id: str) -> Tuple[Job, int]:
        with self._lock:
            record = self._records.get(job_id)
        if record is None:
            raise JobNotFound(f"Job {job_id} not found")
        data, generation = record
        # Round-trip through JSON so callers never share objects with the store
        return Job.from_dict(json.loads(json.dumps(data))), generation

    def _save(self, job: Job, generation: int):
        data = json.loads(json.dumps(job.to_dict()))
        with self._lock:
            _, current = self._records[job.job_id]
            if current != generation:
                raise JobStoreConflict(f"Job {job.job_id} was modified concurrently")
            self._records[job.job_id] = (data, current + 1)

    def _insert(self, job: Job):
        data = json.loads(json.dumps(job.to_dict()))
        with self._lock:
            if job.job_id in self._records:
                raise JobStoreConflict(f"Job {job.job_id} already exists")
            self._records[job.job_id] = (data, 1)

    def list_jobs(self, status: Optional[JobStatus] = None) -> List[Job]:
        with self._lock:
            job_ids = list(self._records)
        jobs = [self.get(job_id) for job_id in job_ids]
        return [j for j in jobs if status is None or j.status == status]
