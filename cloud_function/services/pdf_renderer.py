"""
Renders condensed chapter text (light markdown) into a paginated PDF.

Only the markdown the condenser prompt asks for is interpreted: `#` headings,
`-`/`*` bullets, numbered lists, fenced code blocks and `**bold**` markers
(which are dropped). Everything else is laid out as wrapped body text.

Layout goes through MuPDF's HTML engine (fitz.Story), which picks a fallback
font per glyph, so Cyrillic, Greek and CJK chapters render as real text.
"""
import html
import io
import re
import unicodedata
from typing import Iterator, List, Optional

import fitz  # PyMuPDF

from services.logging_service import get_logger
from services.pdf_processor import FITZ_LOCK, PDF_CREATOR

PAGE_WIDTH, PAGE_HEIGHT = fitz.paper_size("letter")  # 612 x 792 pt
MARGIN = 72  # 1 inch

BODY_SIZE = 11
CODE_SIZE = 9.5
HEADING_SIZES = {1: 18, 2: 15, 3: 13}

# Only used to decide where over-long words must be hard-broken
MEASURE_FONT = "helv"

STYLESHEET = f"""
body {{ font-family: sans-serif; font-size: {BODY_SIZE}pt; line-height: 1.35; }}
h1 {{ font-size: {HEADING_SIZES[1]}pt; margin: 0 0 8pt 0; }}
h2 {{ font-size: {HEADING_SIZES[2]}pt; margin: 8pt 0 4pt 0; }}
h3 {{ font-size: {HEADING_SIZES[3]}pt; margin: 6pt 0 3pt 0; }}
p {{ margin: 0 0 6pt 0; }}
p.item {{ margin: 0 0 2pt 18pt; text-indent: -12pt; }}
pre {{ font-family: monospace; font-size: {CODE_SIZE}pt; white-space: pre-wrap; margin: 0 0 6pt 12pt; }}
"""

_HEADING_RE = re.compile(r"^(#{1,6})\s+(.*)$")
_BULLET_RE = re.compile(r"^\s*[-*+]\s+(.*)$")
_NUMBERED_RE = re.compile(r"^\s*(\d+[.)])\s+(.*)$")
_INLINE_MARKUP_RE = re.compile(r"(\*\*|__|`)")


class TextPdfRenderer:
    """Lays text out on fixed-size pages with a safe printable margin."""

    def __init__(self, page_width: float = PAGE_WIDTH, page_height: float = PAGE_HEIGHT,
                 margin: float = MARGIN):
        self.page_width = page_width
        self.page_height = page_height
        self.margin = margin
        self.text_width = page_width - 2 * margin

    def render(self, text: str, chapter_title: str, book_title: str,
               author: Optional[str] = None) -> bytes:
        """
        Produces a standalone chapter PDF.

        Document title is "{book title} - {chapter title} (Condensed)".
        """
        logger = get_logger()
        body = self._to_html(text, chapter_title)

        mediabox = fitz.Rect(0, 0, self.page_width, self.page_height)
        where = mediabox + (self.margin, self.margin, -self.margin, -self.margin)
        buffer = io.BytesIO()

        with FITZ_LOCK:
            story = fitz.Story(html=body, user_css=STYLESHEET)
            writer = fitz.DocumentWriter(buffer)
            more = 1
            while more:
                device = writer.begin_page(mediabox)
                more, _ = story.place(where)
                story.draw(device)
                writer.end_page()
            writer.close()

            with fitz.open(stream=buffer.getvalue(), filetype="pdf") as doc:
                doc.set_metadata({
                    "title": f"{book_title} - {chapter_title} (Condensed)",
                    "author": author or "",
                    "creator": PDF_CREATOR,
                    "producer": PDF_CREATOR,
                })
                output = doc.tobytes(garbage=3, deflate=True)
                page_count = doc.page_count

        logger.info("Text converted to PDF", text_length=len(text), pages=page_count,
                    output_size=len(output))
        return output

    def _to_html(self, text: str, chapter_title: str) -> str:
        parts = [f"<h1>{self._escape(chapter_title, HEADING_SIZES[1])}</h1>"]
        parts.extend(self._blocks(text))
        return "<body>" + "\n".join(parts) + "</body>"

    def _blocks(self, text: str) -> Iterator[str]:
        code: Optional[List[str]] = None
        for raw in text.splitlines():
            stripped = raw.strip()

            if stripped.startswith("```"):
                if code is None:
                    code = []
                else:
                    yield self._code_block(code)
                    code = None
                continue
            if code is not None:
                code.append(raw.rstrip().expandtabs(4))
                continue
            if not stripped:
                continue

            heading = _HEADING_RE.match(stripped)
            if heading:
                level = min(len(heading.group(1)), 3)
                content = self._escape(_clean_inline(heading.group(2)), HEADING_SIZES[level])
                yield f"<h{level}>{content}</h{level}>"
                continue

            bullet = _BULLET_RE.match(raw)
            if bullet:
                yield f'<p class="item">- {self._escape(_clean_inline(bullet.group(1)))}</p>'
                continue

            numbered = _NUMBERED_RE.match(raw)
            if numbered:
                content = self._escape(_clean_inline(numbered.group(2)))
                yield f'<p class="item">{html.escape(numbered.group(1))} {content}</p>'
                continue

            yield f"<p>{self._escape(_clean_inline(stripped))}</p>"

        # An unterminated fence still keeps its content
        if code:
            yield self._code_block(code)

    def _code_block(self, lines: List[str]) -> str:
        escaped = [self._escape(line, CODE_SIZE, fontname="cour") for line in lines]
        return "<pre>" + "\n".join(escaped) + "</pre>"

    def _escape(self, text: str, size: float = BODY_SIZE, fontname: str = MEASURE_FONT) -> str:
        words = [" ".join(_break_word(word, fontname, size, self.text_width - 24))
                 for word in text.split(" ")]
        return html.escape(" ".join(words), quote=False)


def _break_word(word: str, fontname: str, size: float, width: float) -> List[str]:
    """
    Hard-breaks a word wider than the text column.

    Ideographic text has no spaces and is line-broken by the layout engine
    itself, so words containing wide characters are left whole.
    """
    if any(unicodedata.east_asian_width(ch) in ("W", "F") for ch in word):
        return [word]
    pieces = []
    while fitz.get_text_length(word, fontname=fontname, fontsize=size) > width and len(word) > 1:
        cut = len(word)
        while cut > 1 and fitz.get_text_length(word[:cut], fontname=fontname, fontsize=size) > width:
            cut -= 1
        pieces.append(word[:cut])
        word = word[cut:]
    pieces.append(word)
    return pieces


def _clean_inline(text: str) -> str:
    return _INLINE_MARKUP_RE.sub("", text).strip()
