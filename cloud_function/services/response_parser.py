"""
Structured extraction from free-form model output.

Model responses are untrusted text: they may be wrapped in code fences,
prefixed with commentary, or contain several JSON-looking fragments. This
module finds the first well-formed JSON value of the requested shape and
validates it against a strict schema before anything downstream uses it.
"""
import json
import re
from typing import Any, Callable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from models.job import BookMetadata, ChapterSpan
from services.exceptions import AIResponseMalformed
from services.logging_service import get_logger

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)\s*```", re.DOTALL)


class ChapterSpanPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", str_strip_whitespace=True)

    title: str = Field(..., min_length=1)
    start_page: int = Field(..., alias="startPage")
    end_page: Optional[int] = Field(None, alias="endPage")
    is_essential: bool = Field(True, alias="isEssential")


class BookMetadataPayload(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    title: Optional[str] = None
    author: Optional[str] = None
    genre: Optional[str] = None

    @field_validator("title", "author", "genre", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        if isinstance(value, list):
            # "author": ["A", "B"]
            names = [str(v).strip() for v in value if str(v).strip()]
            return ", ".join(names) or None
        return value


def _candidates(text: str) -> List[str]:
    """Fenced blocks first, then the raw text."""
    blocks = _FENCE_RE.findall(text)
    return blocks + [text]


def _first_json_value(text: str, opener: str, expected_type: type,
                      accept: Optional[Callable[[Any], bool]] = None) -> Any:
    decoder = json.JSONDecoder()
    for candidate in _candidates(text):
        pos = candidate.find(opener)
        while pos != -1:
            try:
                value, _ = decoder.raw_decode(candidate, pos)
            except json.JSONDecodeError:
                value = None
            if isinstance(value, expected_type) and (accept is None or accept(value)):
                return value
            pos = candidate.find(opener, pos + 1)
    return None


def extract_json_array(text: str, of_objects: bool = False) -> list:
    """
    Returns the first well-formed JSON array in text, or raises AIResponseMalformed.

    With of_objects, arrays of scalars (e.g. a "[1]" footnote in prose) are passed
    over; an empty array still counts.
    """
    accept = (lambda v: not v or any(isinstance(i, dict) for i in v)) if of_objects else None
    value = _first_json_value(text or "", "[", list, accept)
    if value is None:
        raise AIResponseMalformed("No valid JSON array found in AI response")
    return value


def extract_json_object(text: str) -> dict:
    """Returns the first well-formed JSON object in text, or raises AIResponseMalformed."""
    value = _first_json_value(text or "", "{", dict)
    if value is None:
        raise AIResponseMalformed("No valid JSON object found in AI response")
    return value


def parse_chapter_spans(text: str, total_pages: int) -> List[ChapterSpan]:
    """
    Parses the segmenter response into chapter spans.

    Entries failing validation are dropped (and logged). A response whose
    array holds entries but none of them valid is malformed. Missing end
    pages are derived from the next entry's start page, like a table of
    contents.
    """
    logger = get_logger()
    raw_items = extract_json_array(text, of_objects=True)

    payloads: List[ChapterSpanPayload] = []
    for i, item in enumerate(raw_items):
        if not isinstance(item, dict):
            logger.warning(f"Dropping non-object chapter entry #{i}", entry=str(item)[:200])
            continue
        try:
            payloads.append(ChapterSpanPayload.model_validate(item))
        except ValidationError as e:
            logger.warning(f"Dropping invalid chapter entry #{i}", errors=e.errors(include_url=False))

    if raw_items and not payloads:
        raise AIResponseMalformed(f"None of the {len(raw_items)} chapter entries matched the schema")

    spans = []
    for i, payload in enumerate(payloads):
        end_page = payload.end_page
        if end_page is None:
            next_start = payloads[i + 1].start_page if i + 1 < len(payloads) else None
            if next_start is not None and next_start > payload.start_page:
                end_page = next_start - 1
            else:
                end_page = total_pages
        spans.append(ChapterSpan(
            title=payload.title,
            start_page=payload.start_page,
            end_page=end_page,
            is_essential=payload.is_essential,
        ))
    return spans


def parse_book_metadata(text: str) -> BookMetadata:
    """Parses the metadata response. Raises AIResponseMalformed on any problem."""
    raw = extract_json_object(text)
    try:
        payload = BookMetadataPayload.model_validate(raw)
    except ValidationError as e:
        raise AIResponseMalformed(f"Metadata response failed validation: {e}") from e
    return BookMetadata(title=payload.title, author=payload.author, genre=payload.genre)
