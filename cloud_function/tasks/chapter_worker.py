"""
Chapter Worker - Processes a single chapter via Cloud Tasks.

This worker:
1. Receives job_id and chapter_id from the task payload.
2. Slices the chapter's pages out of the source PDF (chapters/{job_id}/{chapter_id}).
3. Calls Gemini to condense the chapter text at the job's level.
4. Renders the condensed text to PDF (condensed/{job_id}/{chapter_id}).
5. Records the chapter outcome and enqueues finalize_book once every chapter is done.

A chapter that cannot be condensed is marked skipped; the task still answers 200.
"""
import json

import functions_framework

from services.exceptions import http_status_for
from services.logging_service import JobLogger
from services.orchestrator import get_orchestrator


@functions_framework.http
def process_chapter(request):
    """
    Cloud Tasks handler for processing a single chapter.

    Expected payload:
    {
        "job_id": "uuid-xxx",
        "chapter_id": "chapter-001"
    }
    """
    request_json = request.get_json(silent=True)
    if not request_json:
        return json.dumps({"error": "No payload"}), 400

    job_id = request_json.get("job_id")
    chapter_id = request_json.get("chapter_id")
    if not job_id or not chapter_id:
        return json.dumps({"error": "job_id and chapter_id required"}), 400

    logger = JobLogger(job_id, chapter_id)
    try:
        job = get_orchestrator().condense_chapter(job_id, chapter_id)
    except Exception as e:
        logger.log_error("process_chapter", str(e), error_kind=getattr(e, "kind", type(e).__name__))
        return json.dumps({"error": str(e)}), http_status_for(e)

    chapter = job.get_chapter(chapter_id)
    return json.dumps({
        "status": "success",
        "job_id": job_id,
        "chapter_id": chapter_id,
        "chapter_status": chapter.status.value if chapter else None,
    }), 200
