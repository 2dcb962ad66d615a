"""
Synchronous streaming orchestrator.

Drives the whole pipeline inside one request and yields `StreamEvent`s that
the API layer writes out as Server-Sent Events:

    idle -> charging -> planning -> (outlining -> drafting -> chapter-complete)*
         -> book-complete

with a terminal `error` event from any state. A checkpoint
`{lastChapter, lastSection}` and the partial chapter buffer are persisted
after every section, so a later run resumes mid-chapter.

Setup (`prepare_stream` / `prepare_resume`) runs before the first byte is
sent, so setup failures surface as plain HTTP errors.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from chaptersmith.core.config import settings
from chaptersmith.core.exceptions import (
    BookAlreadyCompletedError,
    ChaptersmithError,
    GenerationCancelled,
    NotAllChaptersCompleteError,
    ValidationError,
)
from chaptersmith.models.book import Book, BookStatus, normalize_toc
from chaptersmith.models.chapter import Chapter, ChapterStatus
from chaptersmith.schemas.book import StreamBookRequest
from chaptersmith.schemas.generation import GenerationSettings, PlanOutput
from chaptersmith.services.book_store import BookStore
from chaptersmith.services.content_generator import (
    ContentGenerator,
    ContentGeneratorFactory,
    get_content_generator,
)
from chaptersmith.services.credits import CreditLedger
from chaptersmith.services.pipeline import (
    append_section,
    chapter_heading,
    ensure_chapter_outline,
    ensure_plan,
    generate_section_draft,
    resolve_settings,
)

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation flag, set when the client goes away."""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self, chapter_number: Optional[int] = None) -> None:
        if self._cancelled:
            raise GenerationCancelled(chapter_number)


@dataclass(frozen=True)
class StreamEvent:
    type: str
    data: dict

    def encode(self) -> str:
        return f"event: {self.type}\ndata: {json.dumps(self.data, ensure_ascii=False)}\n\n"


@dataclass
class StreamRun:
    """What one invocation did during setup; drives compensation on failure."""

    book_id: UUID
    user_id: UUID
    settings: GenerationSettings
    start_from_chapter: int = 1
    created_book: bool = False
    charged: bool = False
    completed_chapters: list[int] = field(default_factory=list)


@dataclass
class _SectionProgress:
    chapter_number: Optional[int] = None
    last_section: Optional[int] = None
    partial_text: str = ""
    drafting: bool = False


class StreamOrchestrator:
    def __init__(
        self,
        db: Session,
        generator_factory: ContentGeneratorFactory = get_content_generator,
        token: Optional[CancellationToken] = None,
    ):
        self.db = db
        self.store = BookStore(db)
        self.ledger = CreditLedger(db)
        self.generator_factory = generator_factory
        self.token = token or CancellationToken()
        self._progress = _SectionProgress()

    # ─────────────────────────────────────────────────────────────────────
    # Setup
    # ─────────────────────────────────────────────────────────────────────

    def prepare_stream(
        self, user_id: UUID, book_id: UUID, request: StreamBookRequest
    ) -> StreamRun:
        """
        Create the book if absent, charge it once, upsert chapters and move
        it to `generating`.
        """
        toc = normalize_toc(request.table_of_contents)
        if not request.source_text or not toc:
            raise ValidationError("Missing sourceText or tableOfContents")

        run_settings = request.settings
        book, created = self.store.create_book_if_absent(
            book_id,
            user_id,
            title=request.title,
            table_of_contents=toc,
            source_text=request.source_text,
            settings=run_settings,
        )
        if book.status == BookStatus.COMPLETED:
            raise BookAlreadyCompletedError(book_id)

        run = StreamRun(
            book_id=book_id,
            user_id=user_id,
            settings=run_settings,
            start_from_chapter=max(1, request.start_from_chapter or 1),
            created_book=created,
        )
        try:
            if book.status in (BookStatus.DRAFT, BookStatus.FAILED) and not created:
                self.store.update_inputs(
                    book_id,
                    title=request.title,
                    table_of_contents=toc,
                    source_text=request.source_text,
                )
            if not self.ledger.has_usage_for_book(book_id):
                tx = self.ledger.deduct_credits(
                    user_id,
                    settings.BOOK_CREATION_COST,
                    book_id,
                    metadata={"reason": "streaming_generation"},
                )
                run.charged = tx is not None
            self.store.upsert_chapters(self.store.require_book(book_id))
            self.store.start_generation(book_id, run_settings)
        except Exception as e:
            self._compensate(run, e, None, mark_failed=False)
            raise

        logger.info(
            f"[Stream] Prepared book {book_id} (created={created}, charged={run.charged}, "
            f"start={run.start_from_chapter})"
        )
        return run

    def prepare_resume(
        self, user_id: UUID, book_id: UUID, start_from_chapter: Optional[int] = None
    ) -> StreamRun:
        """Resume a book that already has a plan. Never charges."""
        book = self.store.require_book(book_id, user_id)
        if book.status == BookStatus.COMPLETED:
            raise BookAlreadyCompletedError(book_id)
        if not book.plan or not book.toc:
            raise ValidationError("Book has no plan or table of contents to resume from")

        self.store.upsert_chapters(book)
        if start_from_chapter is None:
            incomplete = self.store.incomplete_chapters(book)
            start_from_chapter = incomplete[0] if incomplete else len(book.toc) + 1
        self.store.start_generation(book_id)

        logger.info(f"[Stream] Resuming book {book_id} from chapter {start_from_chapter}")
        return StreamRun(
            book_id=book_id,
            user_id=user_id,
            settings=resolve_settings(book),
            start_from_chapter=max(1, start_from_chapter),
        )

    # ─────────────────────────────────────────────────────────────────────
    # Streaming
    # ─────────────────────────────────────────────────────────────────────

    async def run(self, run: StreamRun) -> AsyncIterator[StreamEvent]:
        progress = self._progress
        try:
            yield StreamEvent("progress", {"phase": "plan", "message": "Preparing book plan"})

            book = self.store.require_book(run.book_id)
            generator = self.generator_factory(run.settings)
            self.token.raise_if_cancelled()
            plan = await ensure_plan(self.store, book, generator, run.settings)

            for number in range(run.start_from_chapter, len(book.toc) + 1):
                chapter = self.store.get_chapter(book.id, number)
                if chapter is None or chapter.status == ChapterStatus.COMPLETED:
                    continue
                progress.chapter_number = number
                progress.last_section = None
                async for event in self._stream_chapter(book, chapter, plan, generator, run):
                    yield event
                run.completed_chapters.append(number)
            progress.chapter_number = None

            self.token.raise_if_cancelled()
            incomplete = self.store.incomplete_chapters(book)
            if incomplete:
                logger.error(f"[Stream] Book {book.id} has incomplete chapters {incomplete}")
                raise NotAllChaptersCompleteError(book.id, incomplete)
            content = self.store.complete_book(book.id)
            yield StreamEvent("book_complete", {"bookId": str(book.id), "content": content})

        except GenerationCancelled:
            self._save_partial(run)
        except (GeneratorExit, asyncio.CancelledError):
            self._save_partial(run)
            raise
        except Exception as e:
            chapter_number = getattr(e, "chapter_number", None) or progress.chapter_number
            message = self._compensate(run, e, chapter_number)
            data = {"message": message}
            if chapter_number is not None:
                data["chapterNumber"] = chapter_number
            yield StreamEvent("error", data)

    async def _stream_chapter(
        self,
        book: Book,
        chapter: Chapter,
        plan: PlanOutput,
        generator: ContentGenerator,
        run: StreamRun,
    ) -> AsyncIterator[StreamEvent]:
        number = chapter.chapter_number
        progress = self._progress
        heading = chapter_heading(chapter.title)

        resume_after = self._resume_point(book, chapter, heading)
        buffer = chapter.content if resume_after is not None else heading
        # A cancellation from here on must keep the persisted resume point.
        progress.last_section = resume_after

        self.token.raise_if_cancelled(number)
        self.store.start_chapter(book.id, number, reset=resume_after is None)
        chapter = self.store.get_chapter(book.id, number)

        yield StreamEvent(
            "progress",
            {"phase": "outline", "message": f"Outlining chapter {number}", "chapterNumber": number},
        )
        self.token.raise_if_cancelled(number)
        outline = await ensure_chapter_outline(
            self.store, book, chapter, plan, generator, run.settings
        )
        yield StreamEvent(
            "chapter_start",
            {"chapterNumber": number, "title": chapter.title, "totalSections": len(outline.sections)},
        )

        start = 0 if resume_after is None else resume_after + 1
        for index in range(start, len(outline.sections)):
            section = outline.sections[index]
            yield StreamEvent(
                "section_start",
                {"chapterNumber": number, "sectionIndex": index, "title": section.title},
            )

            self.token.raise_if_cancelled(number)
            progress.partial_text = ""
            progress.drafting = True
            async for chunk in generate_section_draft(
                generator,
                chapter_number=number,
                chapter_title=chapter.title,
                outline=outline,
                section_index=index,
                plan=plan,
                settings=run.settings,
            ):
                progress.partial_text += chunk
                yield StreamEvent(
                    "chunk", {"chapterNumber": number, "sectionIndex": index, "content": chunk}
                )
                self.token.raise_if_cancelled(number)
            progress.drafting = False

            buffer = append_section(buffer, progress.partial_text)
            self.token.raise_if_cancelled(number)
            self.store.save_section_checkpoint(book.id, number, index, buffer)
            progress.last_section = index
            progress.partial_text = ""
            yield StreamEvent("section_complete", {"chapterNumber": number, "sectionIndex": index})

        self.token.raise_if_cancelled(number)
        self.store.complete_chapter(book.id, number, buffer)
        yield StreamEvent("chapter_complete", {"chapterNumber": number, "content": buffer})

    @staticmethod
    def _resume_point(book: Book, chapter: Chapter, heading: str) -> Optional[int]:
        """Index of the last persisted section of an interrupted chapter, if any."""
        checkpoint = book.streaming_checkpoint or {}
        last_section = checkpoint.get("lastSection")
        if (
            chapter.status == ChapterStatus.GENERATING
            and chapter.outline
            and checkpoint.get("lastChapter") == chapter.chapter_number
            and isinstance(last_section, int)
            and (chapter.content or "").startswith(heading)
        ):
            return last_section
        return None

    # ─────────────────────────────────────────────────────────────────────
    # Cancellation / failure
    # ─────────────────────────────────────────────────────────────────────

    def _save_partial(self, run: StreamRun) -> None:
        """Keep the book `generating` (and charged) with the interrupted text in its checkpoint."""
        progress = self._progress
        logger.info(
            f"[Stream] Book {run.book_id} cancelled at chapter {progress.chapter_number}, "
            f"after section {progress.last_section}"
        )
        if progress.chapter_number is None:
            return
        try:
            self.db.rollback()
            self.store.save_partial_section(
                run.book_id,
                progress.chapter_number,
                progress.last_section,
                progress.partial_text if progress.drafting else "",
            )
        except ChaptersmithError as e:
            logger.warning(f"[Stream] Could not checkpoint cancelled book {run.book_id}: {e}")

    def _compensate(
        self,
        run: StreamRun,
        error: BaseException,
        chapter_number: Optional[int],
        mark_failed: bool = True,
    ) -> str:
        """
        Undo what this invocation did: refund its charge, then delete a book
        it created (if no chapter was completed) or mark the book failed.
        Setup failures leave an existing book as it was.
        """
        self.db.rollback()
        message = (
            error.public_message if isinstance(error, ChaptersmithError) else str(error)
        ) or "Unknown error"
        logger.error(f"[Stream] Book {run.book_id} failed at chapter {chapter_number}: {message}")

        if run.charged:
            self.ledger.refund_usage_credits(
                run.user_id,
                run.book_id,
                metadata={"reason": "streaming_generation_failed"},
            )
        if run.created_book and not run.completed_chapters:
            self.store.delete_book(run.book_id)
        elif mark_failed:
            self.store.mark_failed(run.book_id, message, chapter_number)
        return message
