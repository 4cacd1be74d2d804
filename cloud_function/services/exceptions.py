"""
Exceptions for the condensing pipeline.

Every stage raises a subclass of PipelineError so the orchestrator can tell
input errors, transient errors (safe to retry), degradable errors and fatal
errors apart. `kind` is what gets recorded on the job, `user_message` is what
the end user sees.
"""
from typing import Optional


class PipelineError(Exception):
    """Base class for all pipeline exceptions."""

    user_message = "Something went wrong while condensing your book."
    retryable = False

    def __init__(self, message: str = "", *, user_message: Optional[str] = None):
        super().__init__(message or self.user_message)
        if user_message:
            self.user_message = user_message

    @property
    def kind(self) -> str:
        return type(self).__name__


# === Input errors (caller's fault, never retried) ===

class InvalidDocument(PipelineError):
    """Raised when the uploaded bytes are not a PDF we can accept."""
    user_message = "The uploaded file doesn't look like a valid PDF."


class DocumentTooLarge(InvalidDocument):
    """Raised when the upload exceeds the configured size ceiling."""
    user_message = "The uploaded PDF is too large. Please upload a smaller file."


class UnsupportedDocument(PipelineError):
    """Raised when the PDF opens but has no usable pages or text."""
    user_message = ("We couldn't read this PDF. Scanned or image-only books "
                    "are not supported.")


class PageRangeInvalid(PipelineError):
    """Raised when a chapter span is empty after clamping to the document."""
    user_message = "A chapter had an invalid page range."

    def __init__(self, start_page: int, end_page: int, total_pages: int):
        super().__init__(f"Invalid page range: {start_page}-{end_page} (document has {total_pages} pages)")
        self.start_page = start_page
        self.end_page = end_page
        self.total_pages = total_pages


class ChapterTextMissing(PipelineError):
    """Raised when a chapter slice has no extractable text to condense."""
    user_message = "A chapter contained no readable text."


# === AI errors ===

class AIError(PipelineError):
    """Base class for failures talking to the language model."""
    user_message = "The AI service had trouble processing your book."


class AITimeout(AIError):
    """The completion request exceeded its timeout."""
    retryable = True


class AITransientError(AIError):
    """Rate limiting or a 5xx from the model provider."""
    retryable = True


class AIEmptyResponse(AIError):
    """The model returned no text (blocked or truncated response)."""
    retryable = True


class AIServiceError(AIError):
    """Non-recoverable provider error (bad request, auth failure, ...)."""


class AIResponseMalformed(AIError):
    """The model response did not contain the structure we asked for."""
    user_message = "We couldn't work out the chapter structure of this book."


# === Storage errors ===

class StorageError(PipelineError):
    """Blob store I/O failed after the client library's own retries."""
    retryable = True
    user_message = "We had trouble reading or saving your files."


class BlobNotFound(StorageError):
    """The requested object does not exist."""
    retryable = False


# === Assembly ===

class NothingToAssemble(PipelineError):
    """No chapter reached `completed`, so there is no usable output."""
    user_message = "None of the chapters could be condensed, so no book was produced."


# === Job store / state machine ===

class JobNotFound(PipelineError):
    """Raised when the job record does not exist."""
    user_message = "We couldn't find this book request."


class ChapterNotFound(JobNotFound):
    """Raised when a unit of work names a chapter the job does not have."""


class InvalidStateTransition(PipelineError):
    """Raised when a status change is not allowed from the current status."""


class JobFinalizedError(PipelineError):
    """Raised when mutating a job that is already completed or failed."""


class JobStoreConflict(PipelineError):
    """Raised when an optimistic update keeps losing to concurrent writers."""
    retryable = True


class JobCancelled(PipelineError):
    """Recorded on jobs that were cancelled by the user."""
    user_message = "Processing was cancelled."


class DispatchError(PipelineError):
    """Raised when a unit of work could not be handed to the task queue."""
    retryable = True


class ConfigurationError(PipelineError):
    """Raised when required configuration is missing."""


def http_status_for(error: Exception) -> int:
    """
    Status code for a task handler outcome. Cloud Tasks redelivers on
    anything but 2xx, so permanent failures answer 200.
    """
    if isinstance(error, JobNotFound):
        return 404
    if isinstance(error, PipelineError) and not error.retryable:
        return 200
    return 500
