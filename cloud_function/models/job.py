from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional, Dict, Any


class JobStatus(str, Enum):
    UPLOADING = "uploading"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class JobPhase(str, Enum):
    """Sub-phase of `processing`."""
    SEGMENTING = "segmenting"
    CONDENSING = "condensing"
    ASSEMBLING = "assembling"


class ChapterStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (ChapterStatus.COMPLETED, ChapterStatus.SKIPPED)


class CondensingLevel(str, Enum):
    LIGHT = "light"
    MEDIUM = "medium"
    HEAVY = "heavy"

    @property
    def target_reduction(self) -> int:
        """Approximate share of the text to remove, in percent."""
        return {"light": 30, "medium": 50, "heavy": 70}[self.value]


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Chapter:
    chapter_id: str
    index: int
    title: str
    start_page: int
    end_page: int
    is_essential: bool = True
    status: ChapterStatus = ChapterStatus.PENDING
    original_ref: Optional[str] = None
    condensed_ref: Optional[str] = None
    skip_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Chapter":
        data = dict(data)
        data["status"] = ChapterStatus(data.get("status", ChapterStatus.PENDING.value))
        return cls(**data)


@dataclass
class Job:
    job_id: str
    source_ref: str
    level: CondensingLevel
    title: str = ""
    author: Optional[str] = None
    genre: Optional[str] = None
    page_count: int = 0
    status: JobStatus = JobStatus.UPLOADING
    phase: Optional[JobPhase] = None
    progress: int = 0
    current_step: str = ""
    chapters: List[Chapter] = field(default_factory=list)
    output_ref: Optional[str] = None
    download_url: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    cancel_requested: bool = False
    assembly_claimed: bool = False
    # Opaque routing data for the external notifier (chat ids, user ids, ...)
    context: Dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    expires_at: Optional[str] = None

    @classmethod
    def new(cls, job_id: str, source_ref: str, level: CondensingLevel, title: str,
            expiry_days: int, context: Optional[Dict[str, Any]] = None) -> "Job":
        now = datetime.now(timezone.utc)
        return cls(
            job_id=job_id,
            source_ref=source_ref,
            level=level,
            title=title,
            current_step="Waiting for upload...",
            context=context or {},
            created_at=now.isoformat(),
            updated_at=now.isoformat(),
            expires_at=(now + timedelta(days=expiry_days)).isoformat(),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def get_chapter(self, chapter_id: str) -> Optional[Chapter]:
        return next((ch for ch in self.chapters if ch.chapter_id == chapter_id), None)

    @property
    def essential_chapters(self) -> List[Chapter]:
        return [ch for ch in self.chapters if ch.is_essential]

    @property
    def all_essential_terminal(self) -> bool:
        return all(ch.status.is_terminal for ch in self.essential_chapters)

    @property
    def completed_chapters(self) -> List[Chapter]:
        """Chapters that were condensed and rendered, in original order."""
        return [ch for ch in sorted(self.chapters, key=lambda c: c.index)
                if ch.status == ChapterStatus.COMPLETED and ch.condensed_ref]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["level"] = self.level.value
        data["status"] = self.status.value
        data["phase"] = self.phase.value if self.phase else None
        data["chapters"] = [ch.to_dict() for ch in self.chapters]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        data = dict(data)
        data["level"] = CondensingLevel(data["level"])
        data["status"] = JobStatus(data["status"])
        data["phase"] = JobPhase(data["phase"]) if data.get("phase") else None
        data["chapters"] = [Chapter.from_dict(ch) for ch in data.get("chapters", [])]
        return cls(**data)

    def summary(self) -> Dict[str, Any]:
        """Public view of the job for status endpoints."""
        return {
            "job_id": self.job_id,
            "title": self.title,
            "author": self.author,
            "status": self.status.value,
            "progress": self.progress,
            "current_step": self.current_step,
            "level": self.level.value,
            "download_url": self.download_url,
            "error": self.error,
            "chapters": [
                {"chapter_id": ch.chapter_id, "title": ch.title, "status": ch.status.value,
                 "is_essential": ch.is_essential}
                for ch in self.chapters
            ],
        }


@dataclass
class BookMetadata:
    title: Optional[str] = None
    author: Optional[str] = None
    genre: Optional[str] = None


@dataclass
class ChapterSpan:
    """Chapter boundaries as proposed by the segmenter (pages are 1-based, inclusive)."""
    title: str
    start_page: int
    end_page: int
    is_essential: bool = True


@dataclass
class CondensationRequest:
    chapter_title: str
    text: str
    level: CondensingLevel
    book_title: str
    author: Optional[str] = None
    genre: Optional[str] = None


@dataclass
class ProgressEvent:
    job_id: str
    percent: int
    step_description: str
    status: str
    retry_available: bool = False
    download_url: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
