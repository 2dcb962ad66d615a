"""
Error taxonomy for book generation.

Stage-level errors never compensate on their own; only the orchestrators and
the queue delivery boundary decide between retry and refund.
"""

from typing import Optional


class ChaptersmithError(Exception):
    """Base class for domain errors. `status_code` is used at the HTTP edge."""

    status_code: int = 500

    def __init__(self, message: str, chapter_number: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.chapter_number = chapter_number

    @property
    def public_message(self) -> str:
        return self.message


class ValidationError(ChaptersmithError):
    """Bad input. Never retried."""

    status_code = 400


class BookNotFoundError(ChaptersmithError):
    status_code = 404

    def __init__(self, book_id=None):
        super().__init__("Book not found")
        self.book_id = book_id


class BookAlreadyCompletedError(ChaptersmithError):
    status_code = 409

    def __init__(self, book_id=None):
        super().__init__("Book already completed")
        self.book_id = book_id


class InsufficientCredits(ChaptersmithError):
    """Terminal for this attempt; nothing was deducted so nothing is refunded."""

    status_code = 402

    def __init__(self, required: int, available: int):
        super().__init__("Insufficient credits")
        self.required = required
        self.available = available


class GenerationStageError(ChaptersmithError):
    """The content generator failed during a pipeline stage. Retryable."""

    def __init__(
        self,
        stage: str,
        cause: BaseException,
        chapter_number: Optional[int] = None,
    ):
        super().__init__(f"{stage} stage failed: {cause}", chapter_number)
        self.stage = stage
        self.cause = cause


class PersistenceConflict(ChaptersmithError):
    """A concurrent writer won a conditional update. Retry from persisted state."""

    status_code = 409


class NotAllChaptersCompleteError(ChaptersmithError):
    """Finalize was invoked while chapters are still outstanding."""

    def __init__(self, book_id, incomplete: list[int]):
        super().__init__(
            f"Not all chapters completed (incomplete: {incomplete})",
            incomplete[0] if incomplete else None,
        )
        self.book_id = book_id
        self.incomplete = incomplete


class QueueUnavailableError(ChaptersmithError):
    status_code = 503

    def __init__(self, message: str = "Job queue is temporarily unavailable"):
        super().__init__(message)


class GenerationCancelled(ChaptersmithError):
    """The caller cancelled a streaming run. Not a failure; the book stays resumable."""

    status_code = 499

    def __init__(self, chapter_number: Optional[int] = None):
        super().__init__("Generation cancelled", chapter_number)
