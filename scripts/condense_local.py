"""
Condenses a PDF end to end on this machine.

    python scripts/condense_local.py book.pdf --level medium --out book.condensed.pdf

Job records stay in memory, blobs go to --storage on disk and chapter units
run on a local thread pool. Only Gemini is remote (GEMINI_API_KEY).
"""
import argparse
import os
import sys

os.environ.setdefault("CLOUD_LOGGING_ENABLED", "false")
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'cloud_function'))

from models.job import JobStatus  # noqa: E402
from services.condensing_service import ChapterCondenser  # noqa: E402
from services.gcs_service import LocalBlobStore  # noqa: E402
from services.gemini_service import GeminiService  # noqa: E402
from services.job_store import InMemoryJobStore  # noqa: E402
from services.notification_service import LoggingNotifier  # noqa: E402
from services.orchestrator import Orchestrator  # noqa: E402
from services.pdf_processor import PdfProcessor  # noqa: E402
from services.pdf_renderer import TextPdfRenderer  # noqa: E402
from services.segmentation_service import ChapterSegmenter, MetadataExtractor  # noqa: E402
from services.task_dispatcher import LocalDispatcher  # noqa: E402


def condense(pdf_path: str, level: str, out_path: str, storage_dir: str, workers: int) -> int:
    ai = GeminiService()
    blobs = LocalBlobStore(storage_dir)
    dispatcher = LocalDispatcher(max_workers=workers)
    orchestrator = Orchestrator(
        store=InMemoryJobStore(),
        blobs=blobs,
        pdf_processor=PdfProcessor(),
        renderer=TextPdfRenderer(),
        metadata_extractor=MetadataExtractor(ai),
        segmenter=ChapterSegmenter(ai),
        condenser=ChapterCondenser(ai),
        dispatcher=dispatcher,
        notifier=LoggingNotifier(),
    )
    dispatcher.attach(orchestrator)

    job = orchestrator.create_job(os.path.basename(pdf_path), level)
    with open(pdf_path, "rb") as f:
        blobs.put(job.source_ref, f.read())

    orchestrator.mark_uploaded(job.job_id)
    dispatcher.wait_idle()
    dispatcher.shutdown()

    job = orchestrator.store.get(job.job_id)
    if job.status != JobStatus.COMPLETED:
        print(f"\nJob {job.status.value}: {job.error_kind}: {job.error}")
        return 1

    with open(out_path, "wb") as f:
        f.write(blobs.get(job.output_ref))
    included = len(job.completed_chapters)
    print(f"\nWrote {out_path} ({included}/{len(job.essential_chapters)} essential chapters)")
    for ch in job.chapters:
        note = f" [{ch.skip_reason}]" if ch.skip_reason else ""
        print(f"  {ch.chapter_id} p.{ch.start_page}-{ch.end_page} {ch.status.value}{note}: {ch.title}")
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Condense a PDF book locally")
    parser.add_argument("pdf")
    parser.add_argument("--level", choices=["light", "medium", "heavy"], default="medium")
    parser.add_argument("--out")
    parser.add_argument("--storage", default=".local_storage")
    parser.add_argument("--workers", type=int, default=4)
    args = parser.parse_args()

    out = args.out or os.path.splitext(args.pdf)[0] + ".condensed.pdf"
    sys.exit(condense(args.pdf, args.level, out, args.storage, args.workers))
