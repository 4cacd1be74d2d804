import io
import re
import threading
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import fitz  # PyMuPDF
import pypdf
from pypdf.errors import PyPdfError

from config import MIN_PDF_BYTES, MAX_PDF_BYTES
from services.exceptions import (
    DocumentTooLarge, InvalidDocument, PageRangeInvalid, UnsupportedDocument
)
from services.logging_service import get_logger

PDF_CREATOR = "Book Condenser"

# MuPDF keeps global state; thread-pool runs in one process must not use it concurrently
FITZ_LOCK = threading.RLock()

# Below this many characters per page on average the book is probably scanned
SPARSE_TEXT_CHARS_PER_PAGE = 50


@dataclass
class LoadedDocument:
    """Result of loading an uploaded PDF."""
    page_count: int
    page_texts: List[str] = field(default_factory=list)
    byte_size: int = 0

    @property
    def text(self) -> str:
        return "\n".join(t for t in self.page_texts if t)

    @property
    def is_text_sparse(self) -> bool:
        return len(self.text.strip()) < SPARSE_TEXT_CHARS_PER_PAGE * max(1, self.page_count)

    def text_with_page_markers(self, limit: Optional[int] = None) -> str:
        """Full text with `[Page N]` markers so the model can estimate page numbers."""
        parts = []
        size = 0
        for number, page_text in enumerate(self.page_texts, start=1):
            if not page_text:
                continue
            part = f"[Page {number}]\n{page_text}\n"
            parts.append(part)
            size += len(part)
            if limit is not None and size >= limit:
                break
        joined = "".join(parts)
        return joined[:limit] if limit is not None else joined


def clamp_page_range(start_page: int, end_page: int, total_pages: int) -> Tuple[int, int]:
    """
    Clamps a 1-based inclusive span to the document.

    Only the outer bounds are clamped (start up to 1, end down to the last
    page); a span that is still inverted afterwards stays inverted so callers
    can reject it.
    """
    return max(1, start_page), min(total_pages, end_page)


class PdfProcessor:
    """Document loading, chapter slicing and final assembly."""

    def __init__(self, min_bytes: int = MIN_PDF_BYTES, max_bytes: int = MAX_PDF_BYTES):
        self.min_bytes = min_bytes
        self.max_bytes = max_bytes

    # === Document Loader ===

    def validate_pdf(self, data: bytes):
        """Header and size checks. Raises InvalidDocument / DocumentTooLarge."""
        if not data or not data[:4].startswith(b"%PDF"):
            raise InvalidDocument("File does not appear to be a valid PDF (missing %PDF header)")
        if len(data) < self.min_bytes:
            raise InvalidDocument(f"File is too small to be a valid PDF ({len(data)} bytes)")
        if len(data) > self.max_bytes:
            raise DocumentTooLarge(
                f"File is too large ({len(data)} bytes, maximum {self.max_bytes} allowed)"
            )

    def _open_reader(self, data: bytes) -> pypdf.PdfReader:
        try:
            reader = pypdf.PdfReader(io.BytesIO(data))
            if reader.is_encrypted:
                # Many "protected" books only carry an owner password
                if not reader.decrypt(""):
                    raise UnsupportedDocument("PDF is encrypted with a user password")
            return reader
        except (PyPdfError, ValueError, KeyError) as e:
            raise UnsupportedDocument(f"PDF could not be parsed: {e}") from e

    def load_document(self, data: bytes) -> LoadedDocument:
        """Validates the buffer and extracts per-page text and the page count."""
        logger = get_logger()
        self.validate_pdf(data)
        reader = self._open_reader(data)

        try:
            page_count = len(reader.pages)
        except (PyPdfError, ValueError, KeyError) as e:
            raise UnsupportedDocument(f"Page count could not be determined: {e}") from e
        if page_count == 0:
            raise UnsupportedDocument("PDF has no pages")

        page_texts = self._extract_page_texts(reader)
        document = LoadedDocument(page_count=page_count, page_texts=page_texts, byte_size=len(data))

        if not document.text.strip():
            raise UnsupportedDocument("No extractable text found (scanned or image-only PDF)")
        if document.is_text_sparse:
            logger.warning("Very little text extracted; the PDF may be scanned",
                           pages=page_count, text_length=len(document.text))

        logger.info("PDF loaded", pages=page_count, text_length=len(document.text), size=len(data))
        return document

    def extract_text(self, data: bytes) -> str:
        """Plain text of a (chapter) PDF buffer."""
        reader = self._open_reader(data)
        return "\n".join(t for t in self._extract_page_texts(reader) if t)

    def _extract_page_texts(self, reader: pypdf.PdfReader) -> List[str]:
        logger = get_logger()
        page_texts = []
        for i, page in enumerate(reader.pages):
            try:
                text = page.extract_text() or ""
            except Exception as e:
                # pypdf raises a wide range of errors on damaged content streams
                logger.warning(f"Failed to extract text from page {i + 1}: {e}")
                text = ""
            page_texts.append(self.clean_extracted_text(text))
        return page_texts

    def clean_extracted_text(self, text: str) -> str:
        """
        Removes extraction noise:
        - dot leaders and runs of repeated symbols (.....  ----  ::::)
        - runs of spaces/tabs and excess blank lines
        """
        text = re.sub(r'([.\-_:;!…·])\1{3,}', ' ', text)
        text = re.sub(r'[ \t]+', ' ', text)
        text = re.sub(r'\n{3,}', '\n\n', text)
        return text.strip()

    # === Chapter Materializer ===

    def extract_chapter(self, data: bytes, start_page: int, end_page: int,
                        title: Optional[str] = None) -> bytes:
        """
        Copies pages [start_page, end_page] (1-based, inclusive, clamped to the
        document) into a standalone PDF. Pages are copied as-is, not rasterized.

        The output is deterministic: the same span of the same source yields
        byte-identical documents.
        """
        logger = get_logger()
        with FITZ_LOCK, fitz.open(stream=data, filetype="pdf") as source:
            total_pages = source.page_count
            start, end = clamp_page_range(start_page, end_page, total_pages)
            if start > end:
                raise PageRangeInvalid(start, end, total_pages)

            with fitz.open() as chapter_doc:
                chapter_doc.insert_pdf(source, from_page=start - 1, to_page=end - 1)
                metadata = {"creator": PDF_CREATOR, "producer": PDF_CREATOR}
                if title:
                    metadata["title"] = title
                chapter_doc.set_metadata(metadata)
                output = chapter_doc.tobytes(garbage=3, deflate=True, no_new_id=True)

        logger.info("Chapter extracted from PDF", chapter_title=title,
                    page_range=f"{start}-{end}", output_size=len(output))
        return output

    # === Assembler ===

    def combine_chapters(self, chapters: Sequence[Tuple[str, bytes]], title: str,
                         author: Optional[str] = None) -> bytes:
        """
        Concatenates rendered chapter PDFs, in the order given, into one document
        with a top-level outline entry per chapter.

        Args:
            chapters: (chapter title, chapter PDF bytes) pairs in output order
            title: Output document title
            author: Output document author
        """
        logger = get_logger()
        toc = []

        with FITZ_LOCK, fitz.open() as combined:
            for i, (chapter_title, chapter_bytes) in enumerate(chapters):
                with fitz.open(stream=chapter_bytes, filetype="pdf") as chapter_doc:
                    toc.append([1, chapter_title, combined.page_count + 1])
                    combined.insert_pdf(chapter_doc)
                    logger.debug("Chapter added to combined PDF",
                                 chapter_index=i + 1, pages=chapter_doc.page_count)

            combined.set_metadata({
                "title": title,
                "author": author or "",
                "creator": PDF_CREATOR,
                "producer": PDF_CREATOR,
                "creationDate": fitz.get_pdf_now(),
                "modDate": fitz.get_pdf_now(),
            })
            combined.set_toc(toc)
            output = combined.tobytes(garbage=3, deflate=True)
            page_count = combined.page_count

        logger.info("Chapters combined into single PDF", chapter_count=len(chapters),
                    total_pages=page_count, output_size=len(output))
        return output
