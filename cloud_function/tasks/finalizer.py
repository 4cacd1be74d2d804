"""
Finalizer - Assembles the condensed chapters into the final book.

This finalizer:
1. Reads the job record and its completed chapters.
2. Concatenates their condensed PDFs in original chapter order.
3. Writes final/{job_id} and signs a download URL.
4. Marks the job completed (or failed when no chapter could be condensed).
"""
import json

import functions_framework

from models.job import JobStatus
from services.exceptions import http_status_for
from services.logging_service import JobLogger
from services.orchestrator import get_orchestrator


@functions_framework.http
def finalize_book(request):
    """
    Cloud Tasks handler for finalizing a condensed book.

    Expected payload:
    {
        "job_id": "uuid-xxx"
    }
    """
    request_json = request.get_json(silent=True)
    if not request_json:
        return json.dumps({"error": "No payload"}), 400

    job_id = request_json.get("job_id")
    if not job_id:
        return json.dumps({"error": "job_id required"}), 400

    logger = JobLogger(job_id)
    try:
        job = get_orchestrator().assemble(job_id)
    except Exception as e:
        logger.log_error("finalize_book", str(e), error_kind=getattr(e, "kind", type(e).__name__))
        return json.dumps({"error": str(e)}), http_status_for(e)

    if job.status == JobStatus.COMPLETED:
        return json.dumps({
            "status": "success",
            "job_id": job_id,
            "output_ref": job.output_ref,
            "title": job.title,
        }), 200

    # Failed jobs are a handled outcome; 200 stops Cloud Tasks from retrying
    return json.dumps({
        "status": job.status.value,
        "job_id": job_id,
        "error_kind": job.error_kind,
        "error": job.current_step,
    }), 200
