"""
Main Entry Point - HTTP surface of the Book Condenser.

This module provides HTTP endpoints for:
1. create_job - Registers a new book and returns a presigned upload URL.
2. process_book - Post-upload trigger: queues the job and enqueues preparation.
3. prepare_book - Loads the PDF, extracts metadata, segments chapters, fans out.
4. process_chapter - Condenses one chapter (from chapter_worker).
5. finalize_book - Assembles the condensed book (from finalizer).
6. cancel_job / job_status - Job control and status for the front-ends.

Architecture:
- One function, routed by path suffix, so every Cloud Task targets the same URL base.
- Each chapter is its own Cloud Task; the queue bounds parallelism and redelivers on 5xx.
- The job record in GCS is the only shared state; see services/job_store.py.
"""
import json
import traceback

import functions_framework

from services.exceptions import DocumentTooLarge, JobNotFound, PipelineError, http_status_for
from services.logging_service import JobLogger, StructuredLogger, get_logger, set_global_job_id
from services.orchestrator import get_orchestrator

# Import task handlers for routing
from tasks.chapter_worker import process_chapter
from tasks.finalizer import finalize_book


@functions_framework.http
def main_http_entry(request):
    """
    Main HTTP entry point that routes requests based on path.
    Enables Single-Function deployment for multiple handlers.
    """
    path = request.path
    get_logger().debug(f"Routing request: method={request.method}, path={path}")

    data = request.get_json(silent=True) or {}
    set_global_job_id(data.get("job_id"))

    if path.endswith("/create_job"):
        return create_job(request)
    elif path == "/" or path.endswith("/process_book"):
        return process_book(request)
    elif path.endswith("/prepare_book"):
        return prepare_book(request)
    elif path.endswith("/process_chapter"):
        return process_chapter(request)
    elif path.endswith("/finalize_book"):
        return finalize_book(request)
    elif path.endswith("/cancel_job"):
        return cancel_job(request)
    elif path.endswith("/job_status"):
        return job_status(request)
    else:
        return json.dumps({"error": f"Path {path} not found"}), 404


def _job_id_from(request):
    request_json = request.get_json(silent=True)
    if not request_json or not request_json.get("job_id"):
        return None
    return request_json["job_id"]


def _error_response(e: Exception, logger, stage: str):
    """Logs the failure and maps it to a body and status code."""
    code = http_status_for(e)
    if isinstance(e, PipelineError):
        logger.error(f"Error in {stage}: {e}", stage=stage, error_kind=e.kind)
        body = {"error": e.user_message, "error_kind": e.kind, "detail": str(e)}
    else:
        logger.error(f"Error in {stage}: {e}", stage=stage, error_kind=type(e).__name__)
        traceback.print_exc()
        body = {"error": str(e)}
    return json.dumps(body, ensure_ascii=False), code


@functions_framework.http
def create_job(request):
    """
    Registers a new book.

    Expected payload:
    {
        "file_name": "My Book.pdf",
        "level": "light" | "medium" | "heavy",
        "context": {...}   # optional, echoed back in every notification
    }
    """
    logger = StructuredLogger()
    request_json = request.get_json(silent=True)
    if not request_json or not request_json.get("file_name"):
        logger.error("Invalid request", error="file_name required")
        return json.dumps({"error": "file_name required"}), 400

    context = request_json.get("context") or {}
    if not isinstance(context, dict):
        return json.dumps({"error": "context must be an object"}), 400

    try:
        orchestrator = get_orchestrator()
        job = orchestrator.create_job(
            request_json["file_name"], request_json.get("level", "medium"), context=context
        )
    except ValueError as e:
        logger.error("Invalid condensing level", error=str(e))
        return json.dumps({"error": f"Invalid level: {request_json.get('level')}"}), 400
    except Exception as e:
        return _error_response(e, logger, "create_job")

    set_global_job_id(job.job_id)
    logger = JobLogger(job.job_id)
    try:
        upload_url = orchestrator.upload_url(job)
    except PipelineError as e:
        logger.warning(f"Could not sign upload URL: {e}")
        upload_url = None

    return json.dumps({
        "status": job.status.value,
        "job_id": job.job_id,
        "source_key": job.source_ref,
        "upload_url": upload_url,
    }), 200


@functions_framework.http
def process_book(request):
    """
    Post-upload trigger: uploading -> queued, then enqueues prepare_book.
    Returns immediately.
    """
    job_id = _job_id_from(request)
    if not job_id:
        return json.dumps({"error": "job_id required"}), 400

    logger = JobLogger(job_id)
    try:
        job = get_orchestrator().mark_uploaded(job_id)
    except DocumentTooLarge as e:
        # Caller broke the upload contract; nothing to retry
        body, _ = _error_response(e, logger, "process_book")
        return body, 413
    except Exception as e:
        return _error_response(e, logger, "process_book")

    logger.info("Book processing accepted", status=job.status.value)
    return json.dumps({
        "status": "accepted",
        "job_id": job_id,
        "message": "Book processing started in background",
    }), 200


@functions_framework.http
def prepare_book(request):
    """
    Cloud Task Handler - Heavy Lifting.
    1. Downloads and validates the PDF.
    2. Metadata extraction and chapter segmentation (Gemini).
    3. Stores the chapter list on the job.
    4. Enqueues one process_chapter task per essential chapter.
    """
    job_id = _job_id_from(request)
    if not job_id:
        return json.dumps({"error": "job_id required"}), 400

    logger = JobLogger(job_id)
    logger.log_stage("prepare_book", "started")
    try:
        job = get_orchestrator().process_job(job_id)
    except Exception as e:
        return _error_response(e, logger, "prepare_book")

    logger.log_stage("prepare_book", "completed", job_status=job.status.value,
                     chapter_count=len(job.chapters))
    return json.dumps({"status": job.status.value, "job_id": job_id}), 200


@functions_framework.http
def cancel_job(request):
    job_id = _job_id_from(request)
    if not job_id:
        return json.dumps({"error": "job_id required"}), 400
    try:
        job = get_orchestrator().cancel(job_id)
    except JobNotFound:
        return json.dumps({"error": "Job not found"}), 404
    except Exception as e:
        return _error_response(e, JobLogger(job_id), "cancel_job")
    return json.dumps({"status": job.status.value, "cancel_requested": job.cancel_requested}), 200


@functions_framework.http
def job_status(request):
    job_id = _job_id_from(request) or request.args.get("job_id")
    if not job_id:
        return json.dumps({"error": "job_id required"}), 400
    try:
        summary = get_orchestrator().get_status(job_id)
    except JobNotFound:
        return json.dumps({"error": "Job not found"}), 404
    except Exception as e:
        return _error_response(e, JobLogger(job_id), "job_status")
    return json.dumps(summary, ensure_ascii=False), 200


@functions_framework.cloud_event
def on_upload_finalized(cloud_event):
    """
    Cloud Storage trigger (google.cloud.storage.object.v1.finalized).
    An object written under original/{job_id} means the upload finished.
    """
    data = cloud_event.data or {}
    name = data.get("name", "")
    if not name.startswith("original/"):
        return

    job_id = name[len("original/"):]
    set_global_job_id(job_id)
    logger = JobLogger(job_id)
    try:
        get_orchestrator().mark_uploaded(job_id)
    except PipelineError as e:
        logger.log_error("upload_trigger", str(e), error_kind=e.kind)
        if e.retryable:
            # Event delivery retries the trigger when retry is enabled
            raise
