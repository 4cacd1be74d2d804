import os
import re
import sys
import threading

# Must be set before config / logging_service are imported
os.environ["CLOUD_LOGGING_ENABLED"] = "false"
os.environ.pop("GCS_BUCKET_NAME", None)
os.environ.setdefault("GEMINI_API_KEY", "test-key")

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "cloud_function"))

import fitz  # noqa: E402
import pytest  # noqa: E402

from services.condensing_service import ChapterCondenser  # noqa: E402
from services.exceptions import BlobNotFound  # noqa: E402
from services.job_store import InMemoryJobStore  # noqa: E402
from services.notification_service import CollectingNotifier  # noqa: E402
from services.orchestrator import Orchestrator  # noqa: E402
from services.pdf_processor import PdfProcessor  # noqa: E402
from services.pdf_renderer import TextPdfRenderer  # noqa: E402
from services.retry import RetryPolicy  # noqa: E402
from services.segmentation_service import ChapterSegmenter, MetadataExtractor  # noqa: E402

LOREM = (
    "The quick brown fox jumps over the lazy dog while the narrator explains "
    "why every chapter of this book matters to the reader."
)


def make_pdf(page_texts, title="Test Book"):
    """Real multi-page PDF with extractable text; padded well above the 1KB floor."""
    with fitz.open() as doc:
        for text in page_texts:
            page = doc.new_page()
            y = 72
            for line in text.split("\n"):
                page.insert_text((72, y), line, fontname="helv", fontsize=11)
                y += 16
        doc.set_metadata({"title": title, "subject": "padding " * 200})
        return doc.tobytes()


def make_book(chapters, pages_per_chapter=2):
    """PDF whose pages say which chapter they belong to."""
    texts = []
    for title in chapters:
        for p in range(pages_per_chapter):
            texts.append(f"{title} page {p + 1}\n{LOREM}\n{LOREM}")
    return make_pdf(texts)


def make_blank_pdf(pages=2):
    with fitz.open() as doc:
        for _ in range(pages):
            doc.new_page()
        doc.set_metadata({"subject": "padding " * 200})
        return doc.tobytes()


def no_sleep(_seconds):
    pass


def fast_retry(max_attempts=3):
    return RetryPolicy(max_attempts=max_attempts, base_delay=0.0, max_delay=0.0, sleep=no_sleep)


_CHAPTER_LINE_RE = re.compile(r"^Chapter: (.+)$", re.MULTILINE)


def default_condense(prompt):
    match = _CHAPTER_LINE_RE.search(prompt)
    title = match.group(1) if match else "Unknown"
    return f"## Key ideas\n\n- First point of {title}\n- Second point\n\nCondensed text of {title}."


class FakeAI:
    """
    Scripted stand-in for GeminiService.complete.

    Each purpose maps to a string, an exception, a callable(prompt), or a list
    of those consumed in order (the last item repeats).
    """

    def __init__(self, segmentation="[]", metadata='{"title": "Test Book", "author": "A. Writer"}',
                 condensation=default_condense):
        self.handlers = {
            "segmentation": segmentation,
            "metadata": metadata,
            "condensation": condensation,
        }
        self.calls = []
        self._lock = threading.Lock()

    def complete(self, prompt, max_output_tokens=None, temperature=None, purpose="completion"):
        with self._lock:
            self.calls.append((purpose, prompt))
            handler = self.handlers[purpose]
            if isinstance(handler, list):
                item = handler.pop(0) if len(handler) > 1 else handler[0]
            else:
                item = handler
        if callable(item) and not isinstance(item, Exception):
            item = item(prompt)
        if isinstance(item, Exception):
            raise item
        return item

    def prompts(self, purpose):
        return [p for kind, p in self.calls if kind == purpose]


class MemoryBlobStore:
    def __init__(self):
        self.blobs = {}
        self.fail_presign = False

    def get(self, key):
        if key not in self.blobs:
            raise BlobNotFound(f"{key} not found")
        return self.blobs[key]

    def put(self, key, data, content_type="application/pdf"):
        self.blobs[key] = data
        return f"mem://{key}"

    def size(self, key):
        return len(self.blobs[key]) if key in self.blobs else None

    def presigned_url(self, key, ttl, method="GET"):
        if self.fail_presign:
            from services.exceptions import StorageError
            raise StorageError("signing unavailable")
        return f"https://signed.example/{key}?ttl={ttl}&method={method}"


class RecordingDispatcher:
    """
    Synchronous dispatcher. With inline=True units run immediately; otherwise
    they are queued until run_pending()/run_unit() is called.
    """

    def __init__(self, inline=True):
        self.inline = inline
        self.orchestrator = None
        self.prepare_calls = []
        self.chapter_calls = []
        self.assembly_calls = []
        self.pending = []
        self._lock = threading.Lock()

    def attach(self, orchestrator):
        self.orchestrator = orchestrator
        return self

    def _dispatch(self, unit):
        if self.inline:
            self._run(unit)
        else:
            with self._lock:
                self.pending.append(unit)

    def _run(self, unit):
        kind, args = unit
        if kind == "prepare":
            self.orchestrator.process_job(*args)
        elif kind == "chapter":
            self.orchestrator.condense_chapter(*args)
        else:
            self.orchestrator.assemble(*args)

    def enqueue_prepare(self, job_id):
        with self._lock:
            self.prepare_calls.append(job_id)
        self._dispatch(("prepare", (job_id,)))

    def enqueue_chapters(self, job_id, chapter_ids):
        for chapter_id in chapter_ids:
            with self._lock:
                self.chapter_calls.append((job_id, chapter_id))
            self._dispatch(("chapter", (job_id, chapter_id)))

    def enqueue_assembly(self, job_id):
        with self._lock:
            self.assembly_calls.append(job_id)
        self._dispatch(("assembly", (job_id,)))

    def take_pending(self, kind=None):
        with self._lock:
            taken = [u for u in self.pending if kind is None or u[0] == kind]
            self.pending = [u for u in self.pending if u not in taken]
        return taken

    def run_pending(self):
        while True:
            with self._lock:
                if not self.pending:
                    return
                unit = self.pending.pop(0)
            self._run(unit)

    def run_unit(self, unit):
        self._run(unit)


def build_orchestrator(ai, dispatcher=None, blobs=None, store=None, notifier=None):
    dispatcher = dispatcher or RecordingDispatcher()
    retry = fast_retry()
    orchestrator = Orchestrator(
        store=store or InMemoryJobStore(sleep=no_sleep),
        blobs=blobs or MemoryBlobStore(),
        pdf_processor=PdfProcessor(),
        renderer=TextPdfRenderer(),
        metadata_extractor=MetadataExtractor(ai, retry_policy=retry),
        segmenter=ChapterSegmenter(ai, retry_policy=retry),
        condenser=ChapterCondenser(ai, retry_policy=retry),
        dispatcher=dispatcher,
        notifier=notifier or CollectingNotifier(),
        retry_policy=retry,
    )
    if hasattr(dispatcher, "attach"):
        dispatcher.attach(orchestrator)
    return orchestrator


def submit_book(orchestrator, pdf_bytes, level="medium", file_name="Test Book.pdf", context=None):
    """create_job + upload + mark_uploaded. Returns the job id."""
    job = orchestrator.create_job(file_name, level, context=context)
    orchestrator.blobs.put(job.source_ref, pdf_bytes)
    orchestrator.mark_uploaded(job.job_id)
    return job.job_id


def outline_titles(pdf_bytes):
    with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
        return [entry[1] for entry in doc.get_toc()]


def pdf_text(pdf_bytes):
    with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
        return "\n".join(page.get_text() for page in doc)


@pytest.fixture
def collecting_notifier():
    return CollectingNotifier()


@pytest.fixture
def memory_blobs():
    return MemoryBlobStore()
