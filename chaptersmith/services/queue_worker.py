"""
Durable queue worker.

`QueueWorker.handle` runs exactly one `GenerationJob` step and is safe to run
more than once for the same message. It never marks the book failed and never
refunds: `deliver_generation_job` is the boundary that classifies errors into
"retry" and "terminal, compensate".
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from chaptersmith.core.config import settings
from chaptersmith.core.exceptions import (
    ChaptersmithError,
    NotAllChaptersCompleteError,
    PersistenceConflict,
    ValidationError,
)
from chaptersmith.models.book import BookStatus
from chaptersmith.models.chapter import ChapterStatus
from chaptersmith.schemas.generation import GenerationJob, JobStep
from chaptersmith.services.book_store import BookStore
from chaptersmith.services.content_generator import ContentGeneratorFactory, get_content_generator
from chaptersmith.services.credits import CreditLedger
from chaptersmith.services.job_queue import JobQueue
from chaptersmith.services.pipeline import (
    append_section,
    chapter_heading,
    ensure_chapter_outline,
    ensure_plan,
    generate_section_draft,
    join_section,
)

logger = logging.getLogger(__name__)


class QueueWorker:
    """Drives a book forward by one step per queue message."""

    def __init__(
        self,
        db: Session,
        queue: JobQueue,
        generator_factory: ContentGeneratorFactory = get_content_generator,
    ):
        self.db = db
        self.store = BookStore(db)
        self.queue = queue
        self.generator_factory = generator_factory

    async def handle(self, job: GenerationJob) -> None:
        logger.info(f"[Worker] {job.deduplication_id} started")
        if job.step == JobStep.INIT:
            await self._init(job)
        elif job.step == JobStep.CHAPTER:
            await self._chapter(job)
        elif job.step == JobStep.FINALIZE:
            await self._finalize(job)
        else:
            raise ValidationError(f"Unknown step: {job.step}")
        logger.info(f"[Worker] {job.deduplication_id} done")

    async def _init(self, job: GenerationJob) -> None:
        book = self.store.require_book(job.book_id)
        if not book.source_text or not book.toc:
            raise ValidationError("Missing sourceText or tableOfContents")

        job_settings = job.settings
        self.store.start_generation(book.id, job_settings)
        book = self.store.require_book(book.id)

        generator = self.generator_factory(job_settings)
        await ensure_plan(self.store, book, generator, job_settings)
        self.store.upsert_chapters(book)

        await self.queue.enqueue(job.next_step(JobStep.CHAPTER, 1))

    async def _chapter(self, job: GenerationJob) -> None:
        number = job.chapter_number
        if number is None:
            raise ValidationError("Missing chapterNumber")

        book = self.store.require_book(job.book_id)
        toc = book.toc
        if not book.source_text or number > len(toc):
            raise ValidationError(
                f"Missing sourceText or chapter title for chapter {number}", number
            )

        chapter = self.store.get_chapter(book.id, number)
        if chapter is None:
            raise PersistenceConflict(f"Chapter {number} row not found", number)
        if chapter.status == ChapterStatus.COMPLETED:
            logger.info(f"[Worker] Book {book.id} chapter {number} already completed; skipping")
            await self._enqueue_next(job, len(toc))
            return

        job_settings = job.settings
        generator = self.generator_factory(job_settings)
        plan = await ensure_plan(self.store, book, generator, job_settings)

        # A chapter left `generating` by an earlier delivery is rebuilt from scratch.
        self.store.start_chapter(book.id, number, reset=True)
        chapter = self.store.get_chapter(book.id, number)
        outline = await ensure_chapter_outline(
            self.store, book, chapter, plan, generator, job_settings
        )

        content = chapter_heading(chapter.title)
        for index in range(len(outline.sections)):
            text = await join_section(
                generate_section_draft(
                    generator,
                    chapter_number=number,
                    chapter_title=chapter.title,
                    outline=outline,
                    section_index=index,
                    plan=plan,
                    settings=job_settings,
                )
            )
            content = append_section(content, text)

        self.store.complete_chapter(book.id, number, content)
        await self._enqueue_next(job, len(toc))

    async def _finalize(self, job: GenerationJob) -> None:
        book = self.store.require_book(job.book_id)
        incomplete = self.store.incomplete_chapters(book)
        if incomplete:
            logger.error(
                f"[Worker] Finalize for book {book.id} with incomplete chapters {incomplete}"
            )
            raise NotAllChaptersCompleteError(book.id, incomplete)
        self.store.complete_book(book.id)

    async def _enqueue_next(self, job: GenerationJob, total_chapters: int) -> None:
        next_chapter = (job.chapter_number or 0) + 1
        if next_chapter <= total_chapters:
            await self.queue.enqueue(job.next_step(JobStep.CHAPTER, next_chapter))
        else:
            await self.queue.enqueue(job.next_step(JobStep.FINALIZE))


# ─────────────────────────────────────────────────────────────────────────
# Delivery boundary
# ─────────────────────────────────────────────────────────────────────────


class JobDeliveryError(Exception):
    """Raised by the delivery boundary after a handler failure."""

    def __init__(self, cause: BaseException, terminal: bool):
        super().__init__(str(cause))
        self.cause = cause
        self.terminal = terminal


def is_terminal(error: BaseException, attempt: int, max_retries: Optional[int] = None) -> bool:
    """
    Decide whether a failed delivery is final.

    `attempt` counts earlier deliveries of the same message (0 on first try).
    """
    max_retries = settings.QUEUE_MAX_RETRIES if max_retries is None else max_retries
    if isinstance(error, ValidationError):
        return True
    if isinstance(error, NotAllChaptersCompleteError):
        return attempt >= 1
    return attempt >= max_retries


async def deliver_generation_job(
    db: Session,
    job: GenerationJob,
    queue: JobQueue,
    generator_factory: ContentGeneratorFactory = get_content_generator,
    attempt: int = 0,
) -> str:
    """
    Run one queue message through the worker.

    Returns "handled", or "acknowledged" for books that are missing or already
    finished. Raises `JobDeliveryError` on failure; when the failure is
    terminal the usage charge has been refunded and the book marked failed.
    """
    store = BookStore(db)
    book = store.get_book(job.book_id)
    if book is None:
        logger.info(f"[Worker] Book {job.book_id} not found; acknowledging {job.deduplication_id}")
        return "acknowledged"
    if book.status in (BookStatus.COMPLETED, BookStatus.FAILED):
        logger.info(
            f"[Worker] Book {job.book_id} is {book.status.value}; "
            f"acknowledging {job.deduplication_id}"
        )
        return "acknowledged"
    user_id = book.user_id

    try:
        await QueueWorker(db, queue, generator_factory).handle(job)
    except Exception as e:
        db.rollback()
        terminal = is_terminal(e, attempt)
        if terminal:
            logger.error(f"[Worker] {job.deduplication_id} failed terminally: {e}")
            compensate_failed_job(db, user_id, job, e)
        else:
            logger.warning(
                f"[Worker] {job.deduplication_id} failed on attempt {attempt + 1}, will retry: {e}"
            )
        raise JobDeliveryError(e, terminal) from e

    return "handled"


def compensate_failed_job(db: Session, user_id, job: GenerationJob, error: BaseException) -> None:
    """Refund the book's usage charge, then mark it failed."""
    CreditLedger(db).refund_usage_credits(
        user_id,
        job.book_id,
        metadata={"reason": "async_book_generation_failed", "step": job.step.value},
    )
    message = error.public_message if isinstance(error, ChaptersmithError) else str(error)
    chapter_number = getattr(error, "chapter_number", None) or job.chapter_number
    BookStore(db).mark_failed(job.book_id, message or "Worker error", chapter_number)
