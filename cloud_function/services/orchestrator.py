"""
Orchestrator - per-job state machine.

    uploading -> queued -> processing -> completed | failed
                           (segmenting -> condensing -> assembling)

Every unit of work (process_job, condense_chapter, assemble) reads the job
record fresh, so units can run in separate processes and can be redelivered.
Fan-in is a set comparison on the record: once every essential chapter is
completed or skipped, claim_assembly lets exactly one caller dispatch the
assembly unit.
"""
import uuid
from typing import Any, Dict, Optional

from config import (
    DISPATCH_MODE, DOWNLOAD_URL_TTL, JOB_EXPIRY_DAYS, LOCAL_STORAGE_DIR, NOTIFY_URL, UPLOAD_URL_TTL
)
from models.job import (
    ChapterStatus, CondensationRequest, CondensingLevel, Job, JobPhase, JobStatus
)
from services.exceptions import (
    ChapterNotFound, ConfigurationError, DocumentTooLarge, InvalidStateTransition, JobCancelled,
    JobFinalizedError, NothingToAssemble, PipelineError, StorageError
)
from services.condensing_service import ChapterCondenser
from services.gcs_service import (
    GcsService, LocalBlobStore, chapter_key, condensed_key, final_key, original_key
)
from services.gemini_service import GeminiService
from services.job_store import GcsJobStore, InMemoryJobStore
from services.logging_service import JobLogger
from services.notification_service import CloudTasksNotifier, LoggingNotifier
from services.pdf_processor import PdfProcessor
from services.pdf_renderer import TextPdfRenderer
from services.progress_service import ProgressReporter
from services.retry import RetryPolicy
from services.segmentation_service import ChapterSegmenter, MetadataExtractor
from services.task_dispatcher import CloudTasksDispatcher, LocalDispatcher

CANCELLED_SKIP_REASON = "cancelled"


class Orchestrator:
    def __init__(self, store, blobs, pdf_processor, renderer, metadata_extractor, segmenter,
                 condenser, dispatcher, notifier, retry_policy: Optional[RetryPolicy] = None,
                 download_url_ttl: int = DOWNLOAD_URL_TTL, upload_url_ttl: int = UPLOAD_URL_TTL,
                 expiry_days: int = JOB_EXPIRY_DAYS):
        self.store = store
        self.blobs = blobs
        self.pdf = pdf_processor
        self.renderer = renderer
        self.metadata_extractor = metadata_extractor
        self.segmenter = segmenter
        self.condenser = condenser
        self.dispatcher = dispatcher
        self.progress = ProgressReporter(store, notifier)
        self.retry = retry_policy or RetryPolicy()
        self.download_url_ttl = download_url_ttl
        self.upload_url_ttl = upload_url_ttl
        self.expiry_days = expiry_days

    # === Job intake ===

    def create_job(self, file_name: str, level: str, context: Optional[Dict[str, Any]] = None,
                   job_id: Optional[str] = None) -> Job:
        """Creates a job in `uploading`. Raises ValueError for an unknown level."""
        level = CondensingLevel(level)
        job_id = job_id or str(uuid.uuid4())
        title = file_name[:-4] if file_name.lower().endswith(".pdf") else file_name
        job = Job.new(job_id, original_key(job_id), level, title or "Untitled",
                      self.expiry_days, context)
        self.store.create(job)
        JobLogger(job_id).log_stage("create_job", "completed", file_name=file_name, level=level.value)
        return job

    def upload_url(self, job: Job) -> str:
        """Presigned PUT URL for the source document."""
        return self.blobs.presigned_url(job.source_ref, self.upload_url_ttl, method="PUT")

    def mark_uploaded(self, job_id: str) -> Job:
        """
        uploading -> queued, then dispatches post-upload processing.

        Duplicate upload events for the same job are no-ops. An upload above the
        size ceiling fails the job here and raises DocumentTooLarge to the caller.
        """
        logger = JobLogger(job_id)
        job = self.store.get(job_id)
        if job.status != JobStatus.UPLOADING:
            logger.info("Upload already registered", status=job.status.value)
            return job

        size = self._retry_storage(self.blobs.size, job.source_ref)
        if size is None:
            raise StorageError(f"Source document {job.source_ref} is not in the blob store yet")
        if size > self.pdf.max_bytes:
            error = DocumentTooLarge(f"File is too large ({size} bytes, maximum {self.pdf.max_bytes} allowed)")
            logger.log_error("upload", str(error), error_kind=error.kind)
            self.fail(job_id, error)
            raise error

        try:
            job = self.store.transition(job_id, JobStatus.QUEUED, expected=[JobStatus.UPLOADING])
        except InvalidStateTransition:
            # Another upload event won the race
            return self.store.get(job_id)

        self.progress.refresh(job_id)
        self.dispatcher.enqueue_prepare(job_id)
        logger.log_stage("upload", "completed")
        return job

    # === Units of work ===

    def process_job(self, job_id: str) -> Job:
        """
        Post-upload unit: load, extract metadata, segment, then fan out.

        Safe to redeliver: segmentation runs only while the job is still in
        the segmenting phase, and dispatch covers every essential chapter not yet terminal.
        """
        logger = JobLogger(job_id)
        job = self.store.get(job_id)
        if job.is_terminal:
            logger.info("Job already finished, nothing to process", status=job.status.value)
            return job
        if job.cancel_requested:
            return self._finish_cancelled(job_id)

        if job.status == JobStatus.QUEUED:
            try:
                job = self.store.transition(job_id, JobStatus.PROCESSING, expected=[JobStatus.QUEUED],
                                            phase=JobPhase.SEGMENTING)
            except InvalidStateTransition:
                job = self.store.get(job_id)
        if job.status != JobStatus.PROCESSING:
            raise InvalidStateTransition(f"Job {job_id} cannot be processed while {job.status.value}")

        if job.phase in (None, JobPhase.SEGMENTING):
            job = self._segment(job, logger)
            if job.is_terminal:
                return job

        job = self.store.get(job_id)
        if job.cancel_requested:
            return self._finish_cancelled(job_id)

        pending = [ch.chapter_id for ch in job.chapters
                   if ch.is_essential and not ch.status.is_terminal]
        if pending:
            self.dispatcher.enqueue_chapters(job_id, pending)
            logger.log_metric("chapters_dispatched", len(pending))
        else:
            # Nothing to condense (or a redelivery after all chapters finished)
            self._check_fan_in(job_id)
        return self.store.get(job_id)

    def _segment(self, job: Job, logger: JobLogger) -> Job:
        job_id = job.job_id
        self.progress.refresh(job_id)
        logger.log_stage("segmentation", "started")
        try:
            data = self._retry_storage(self.blobs.get, job.source_ref)
            document = self.pdf.load_document(data)
            metadata = self.metadata_extractor.extract(document.text)
            spans = self.segmenter.segment(document)
        except PipelineError as e:
            logger.log_error("segmentation", str(e), error_kind=e.kind)
            return self.fail(job_id, e)

        self.store.update(
            job_id,
            title=metadata.title or job.title,
            author=metadata.author,
            genre=metadata.genre,
            page_count=document.page_count,
        )
        chapters = ChapterSegmenter.build_chapters(spans)
        job = self.store.set_chapters(job_id, chapters)
        logger.log_stage("segmentation", "completed", total_chapters=len(chapters),
                         essential_chapters=len(job.essential_chapters))
        self.progress.refresh(job_id)
        return job

    def condense_chapter(self, job_id: str, chapter_id: str) -> Job:
        """
        Condensation unit: materialize -> extract text -> condense -> render.

        Any failure marks only this chapter `skipped`; the book carries on.
        """
        logger = JobLogger(job_id, chapter_id)
        job = self.store.get(job_id)
        chapter = job.get_chapter(chapter_id)
        if chapter is None:
            raise ChapterNotFound(f"Job {job_id} has no chapter {chapter_id}")
        if job.is_terminal:
            logger.info("Job already finished, chapter not processed", status=job.status.value)
            return job
        if chapter.status.is_terminal:
            # Redelivered unit; the earlier run may have died before fan-in
            logger.info("Chapter already finished", chapter_status=chapter.status.value)
            self._check_fan_in(job_id)
            return self.store.get(job_id)

        if job.cancel_requested:
            self._update_chapter(job_id, chapter_id, status=ChapterStatus.SKIPPED,
                                 skip_reason=CANCELLED_SKIP_REASON)
        else:
            self._update_chapter(job_id, chapter_id, status=ChapterStatus.PROCESSING)
            logger.log_stage("condensation", "started", chapter_title=chapter.title,
                             page_range=f"{chapter.start_page}-{chapter.end_page}")
            try:
                fields = self._condense(job, chapter)
                logger.log_stage("condensation", "completed")
            except Exception as e:
                kind = e.kind if isinstance(e, PipelineError) else type(e).__name__
                logger.log_error("condensation", str(e), error_kind=kind)
                fields = {"status": ChapterStatus.SKIPPED, "skip_reason": f"{kind}: {e}"}
            self._update_chapter(job_id, chapter_id, **fields)

        self.progress.refresh(job_id)
        self._check_fan_in(job_id)
        return self.store.get(job_id)

    def _condense(self, job: Job, chapter) -> Dict[str, Any]:
        source = self._retry_storage(self.blobs.get, job.source_ref)
        original = self.pdf.extract_chapter(source, chapter.start_page, chapter.end_page,
                                            title=chapter.title)
        original_ref = chapter_key(job.job_id, chapter.chapter_id)
        self._retry_storage(self.blobs.put, original_ref, original)

        text = self.pdf.extract_text(original)
        condensed = self.condenser.condense(CondensationRequest(
            chapter_title=chapter.title,
            text=text,
            level=job.level,
            book_title=job.title,
            author=job.author,
            genre=job.genre,
        ))

        rendered = self.renderer.render(condensed, chapter.title, job.title, job.author)
        condensed_ref = condensed_key(job.job_id, chapter.chapter_id)
        self._retry_storage(self.blobs.put, condensed_ref, rendered)
        return {
            "status": ChapterStatus.COMPLETED,
            "original_ref": original_ref,
            "condensed_ref": condensed_ref,
            "skip_reason": None,
        }

    def assemble(self, job_id: str) -> Job:
        """Assembly unit: concatenates completed chapters in original order."""
        logger = JobLogger(job_id)
        job = self.store.get(job_id)
        if job.is_terminal:
            logger.info("Job already finished, skipping assembly", status=job.status.value)
            return job
        if job.cancel_requested:
            return self._finish_cancelled(job_id)

        self.progress.refresh(job_id)
        logger.log_stage("assembly", "started")
        try:
            completed = job.completed_chapters
            if not completed:
                raise NothingToAssemble(f"None of the {len(job.essential_chapters)} essential chapters were condensed")
            parts = [(ch.title, self._retry_storage(self.blobs.get, ch.condensed_ref)) for ch in completed]
            output = self.pdf.combine_chapters(
                parts, title=f"{job.title} (Condensed - {job.level.value})", author=job.author
            )
            output_ref = final_key(job_id)
            self._retry_storage(self.blobs.put, output_ref, output)
        except PipelineError as e:
            logger.log_error("assembly", str(e), error_kind=e.kind)
            return self.fail(job_id, e)

        download_url = self._download_url(output_ref, logger)
        job = self.store.transition(
            job_id, JobStatus.COMPLETED, expected=[JobStatus.PROCESSING],
            progress=100, current_step="Complete!", output_ref=output_ref, download_url=download_url,
        )
        self.progress.publish(job)

        skipped = [ch for ch in job.essential_chapters if ch.status == ChapterStatus.SKIPPED]
        logger.log_stage("assembly", "completed", chapters_included=len(completed),
                         output_size=len(output))
        if skipped:
            logger.warning("Some chapters were skipped",
                           skipped={ch.chapter_id: ch.skip_reason for ch in skipped})
        return job

    # === Fan-in, failure, cancellation ===

    def _check_fan_in(self, job_id: str) -> bool:
        """Dispatches assembly if this caller is the one to observe fan-in."""
        job = self.store.get(job_id)
        if job.is_terminal or job.phase != JobPhase.CONDENSING or not job.all_essential_terminal:
            return False
        try:
            if not self.store.claim_assembly(job_id):
                return False
        except JobFinalizedError:
            return False

        job = self.store.get(job_id)
        if job.cancel_requested:
            self._finish_cancelled(job_id)
            return True

        JobLogger(job_id).log_stage("fan_in", "completed",
                                    completed_chapters=len(job.completed_chapters))
        self.progress.refresh(job_id)
        self.dispatcher.enqueue_assembly(job_id)
        return True

    def fail(self, job_id: str, error: Exception) -> Job:
        """Moves the job to `failed` and notifies with a retry offer."""
        if isinstance(error, PipelineError):
            kind, user_message = error.kind, error.user_message
        else:
            kind, user_message = type(error).__name__, PipelineError.user_message
        try:
            job = self.store.transition(job_id, JobStatus.FAILED, error=str(error), error_kind=kind,
                                        current_step=user_message)
        except JobFinalizedError:
            return self.store.get(job_id)
        JobLogger(job_id).log_stage("job", "failed", error_kind=kind, error=str(error))
        self.progress.publish(job, retry_available=True)
        return job

    def _finish_cancelled(self, job_id: str) -> Job:
        return self.fail(job_id, JobCancelled("Cancelled by user"))

    def cancel(self, job_id: str) -> Job:
        """
        Stops dispatching new work. Chapter units already running finish;
        the job then fails as cancelled instead of being assembled.
        """
        job = self.store.get(job_id)
        if job.is_terminal:
            return job
        try:
            job = self.store.update(job_id, cancel_requested=True)
        except JobFinalizedError:
            return self.store.get(job_id)
        JobLogger(job_id).log_stage("cancel", "requested", job_status=job.status.value)

        if job.status in (JobStatus.UPLOADING, JobStatus.QUEUED):
            return self._finish_cancelled(job_id)
        # Every chapter may already be done while assembly was not yet claimed
        self._check_fan_in(job_id)
        return self.store.get(job_id)

    def get_status(self, job_id: str) -> Dict[str, Any]:
        """Public job summary; completed jobs get a freshly signed download URL."""
        job = self.store.get(job_id)
        summary = job.summary()
        if job.status == JobStatus.COMPLETED and job.output_ref:
            summary["download_url"] = self._download_url(job.output_ref, JobLogger(job_id)) or job.download_url
        return summary

    # === helpers ===

    def _update_chapter(self, job_id: str, chapter_id: str, **fields):
        try:
            self.store.update_chapter(job_id, chapter_id, **fields)
        except JobFinalizedError:
            # The job failed or was cancelled while this unit was running
            JobLogger(job_id, chapter_id).info("Job finished before chapter update", **{
                k: getattr(v, "value", v) for k, v in fields.items()
            })

    def _retry_storage(self, func, *args):
        return self.retry.call(func, *args, description=f"Blob store {func.__name__}")

    def _download_url(self, key: str, logger: JobLogger) -> Optional[str]:
        try:
            return self.blobs.presigned_url(key, self.download_url_ttl)
        except StorageError as e:
            logger.warning(f"Could not sign download URL: {e}")
            return None


def build_orchestrator(dispatch_mode: str = DISPATCH_MODE) -> Orchestrator:
    """
    Wires the production collaborators.

    "cloud_tasks": GCS job records and blobs, Cloud Tasks dispatch.
    "local": in-memory job records, filesystem blobs, thread-pool dispatch.
    """
    ai = GeminiService()
    if dispatch_mode == "local":
        store = InMemoryJobStore()
        blobs = LocalBlobStore(LOCAL_STORAGE_DIR)
        dispatcher = LocalDispatcher()
        notifier = LoggingNotifier()
    elif dispatch_mode == "cloud_tasks":
        store = GcsJobStore()
        blobs = GcsService()
        dispatcher = CloudTasksDispatcher()
        notifier = CloudTasksNotifier(dispatcher) if NOTIFY_URL else LoggingNotifier()
    else:
        raise ConfigurationError(f"Unknown dispatch mode: {dispatch_mode}")

    orchestrator = Orchestrator(
        store=store,
        blobs=blobs,
        pdf_processor=PdfProcessor(),
        renderer=TextPdfRenderer(),
        metadata_extractor=MetadataExtractor(ai),
        segmenter=ChapterSegmenter(ai),
        condenser=ChapterCondenser(ai),
        dispatcher=dispatcher,
        notifier=notifier,
    )
    if isinstance(dispatcher, LocalDispatcher):
        dispatcher.attach(orchestrator)
    return orchestrator


_orchestrator = None


def get_orchestrator() -> Orchestrator:
    """Get or create the process-wide orchestrator."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator()
    return _orchestrator
