"""
Book analysis prompts: metadata extraction and chapter segmentation.

Both stages look only at the head of the book (cost control) and go through
the structured-extraction boundary in response_parser before their output is
trusted.
"""
from typing import List, Optional

from config import METADATA_PROMPT_CHARS, SEGMENTATION_PROMPT_CHARS
from models.job import BookMetadata, Chapter, ChapterSpan, ChapterStatus
from services.exceptions import AIResponseMalformed, PipelineError
from services.logging_service import get_logger
from services.pdf_processor import LoadedDocument, clamp_page_range
from services.response_parser import parse_book_metadata, parse_chapter_spans
from services.retry import RetryPolicy

NON_ESSENTIAL_SKIP_REASON = "non_essential"


class MetadataExtractor:
    """Best-effort title/author/genre detection. Never fails the job."""

    def __init__(self, ai_client, retry_policy: Optional[RetryPolicy] = None,
                 prompt_chars: int = METADATA_PROMPT_CHARS):
        self.ai = ai_client
        self.retry = retry_policy or RetryPolicy()
        self.prompt_chars = prompt_chars

    def build_prompt(self, text: str) -> str:
        return f"""Extract metadata from the beginning of this book. Look for:
- Book title
- Author name(s)
- Genre or subject area (e.g. "software engineering", "history", "self-help")

Return ONLY a JSON object:
{{
  "title": "Book Title",
  "author": "Author Name",
  "genre": "Genre"
}}

If any information is not found, omit that field.

Book text:
{text[:self.prompt_chars]}
"""

    def extract(self, text: str) -> BookMetadata:
        logger = get_logger()
        if not text.strip():
            return BookMetadata()
        try:
            response = self.retry.call(
                self.ai.complete, self.build_prompt(text),
                purpose="metadata", description="Metadata extraction",
            )
            metadata = parse_book_metadata(response)
        except PipelineError as e:
            logger.warning(f"Metadata extraction failed, continuing without it: {e}",
                           error_kind=e.kind)
            return BookMetadata()

        logger.info("Book metadata extracted", title=metadata.title, author=metadata.author,
                    genre=metadata.genre)
        return metadata


class ChapterSegmenter:
    """Maps the book text to chapter spans with an essential/non-essential split."""

    def __init__(self, ai_client, retry_policy: Optional[RetryPolicy] = None,
                 prompt_chars: int = SEGMENTATION_PROMPT_CHARS):
        self.ai = ai_client
        self.retry = retry_policy or RetryPolicy()
        self.prompt_chars = prompt_chars

    def build_prompt(self, document: LoadedDocument) -> str:
        return f"""Analyze this book text and identify all chapters with their page numbers.
Also determine which chapters are essential (main content) and which are
non-essential (front matter and back matter).

The book has {document.page_count} pages. Page boundaries are marked as [Page N].

Return ONLY a JSON array with this exact structure:
[
  {{
    "title": "Chapter title",
    "startPage": 1,
    "endPage": 50,
    "isEssential": true
  }}
]

Guidelines:
- Mark preface, foreword, acknowledgments, about the author, bibliography, index and appendices as non-essential
- Mark main chapters, core content, tutorials and worked examples as essential
- Cover the whole book, in reading order, without overlapping page ranges
- Page numbers must be between 1 and {document.page_count}
- Keep titles concise but descriptive

Book text:
{document.text_with_page_markers(self.prompt_chars)}
"""

    def _request_spans(self, document: LoadedDocument) -> List[ChapterSpan]:
        response = self.ai.complete(self.build_prompt(document), purpose="segmentation")
        return parse_chapter_spans(response, document.page_count)

    def segment(self, document: LoadedDocument) -> List[ChapterSpan]:
        """
        Returns clamped chapter spans in page order.

        Model output varies between calls, so a malformed response is retried
        like a transient error before giving up with AIResponseMalformed.
        """
        logger = get_logger()
        spans = self.retry.call(
            self._request_spans, document,
            description="Chapter segmentation", retry_on=(AIResponseMalformed,),
        )

        clamped = []
        for span in spans:
            start, end = clamp_page_range(span.start_page, span.end_page, document.page_count)
            if (start, end) != (span.start_page, span.end_page):
                logger.debug(f"Clamped chapter '{span.title}'",
                             original=f"{span.start_page}-{span.end_page}", clamped=f"{start}-{end}")
            clamped.append(ChapterSpan(title=span.title, start_page=start, end_page=end,
                                       is_essential=span.is_essential))

        # Python's sort is stable: entries the model gave the same start keep their order
        clamped.sort(key=lambda s: s.start_page)

        logger.info("Chapters identified", total_chapters=len(clamped),
                    essential_chapters=sum(1 for s in clamped if s.is_essential))
        return clamped

    @staticmethod
    def build_chapters(spans: List[ChapterSpan]) -> List[Chapter]:
        """Chapter records for a job: essential ones pending, the rest skipped."""
        chapters = []
        for index, span in enumerate(spans):
            chapters.append(Chapter(
                chapter_id=f"chapter-{index + 1:03d}",
                index=index,
                title=span.title,
                start_page=span.start_page,
                end_page=span.end_page,
                is_essential=span.is_essential,
                status=ChapterStatus.PENDING if span.is_essential else ChapterStatus.SKIPPED,
                skip_reason=None if span.is_essential else NON_ESSENTIAL_SKIP_REASON,
            ))
        return chapters
