"""
Book/Chapter store.

Persisted book and chapter state doubles as the checkpoint log for resuming.
Every status transition is a conditional UPDATE guarded by the current
status; a zero row count means a concurrent writer got there first and
raises `PersistenceConflict`.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy import case
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chaptersmith.core.exceptions import BookNotFoundError, PersistenceConflict
from chaptersmith.models.book import Book, BookStatus
from chaptersmith.models.chapter import Chapter, ChapterStatus
from chaptersmith.schemas.book import BookStatusResponse, ChapterStatusItem
from chaptersmith.schemas.generation import GenerationSettings

logger = logging.getLogger(__name__)

# Statuses from which a book may (re)enter generation.
RESTARTABLE = (BookStatus.DRAFT, BookStatus.FAILED, BookStatus.GENERATING)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _values(statuses: Iterable) -> list[str]:
    return [s.value for s in statuses]


class BookStore:
    """Reads and guarded writes of Book/Chapter rows for one session."""

    def __init__(self, db: Session):
        self.db = db

    # ─────────────────────────────────────────────────────────────────────
    # Books
    # ─────────────────────────────────────────────────────────────────────

    def get_book(self, book_id: UUID, user_id: Optional[UUID] = None) -> Optional[Book]:
        query = self.db.query(Book).filter(Book.id == book_id)
        if user_id is not None:
            query = query.filter(Book.user_id == user_id)
        return query.populate_existing().first()

    def require_book(self, book_id: UUID, user_id: Optional[UUID] = None) -> Book:
        book = self.get_book(book_id, user_id)
        if book is None:
            raise BookNotFoundError(book_id)
        return book

    def list_books(self, user_id: UUID) -> list[Book]:
        return (
            self.db.query(Book)
            .filter(Book.user_id == user_id)
            .order_by(Book.created_at.desc())
            .all()
        )

    def create_book_if_absent(
        self,
        book_id: UUID,
        user_id: UUID,
        *,
        title: str,
        table_of_contents: list[str],
        source_text: str,
        settings: GenerationSettings,
    ) -> tuple[Book, bool]:
        """
        Return `(book, created)`. A book owned by another user is reported
        as not found.
        """
        existing = self.get_book(book_id)
        if existing is not None:
            if existing.user_id != user_id:
                raise BookNotFoundError(book_id)
            return existing, False

        book = Book(
            id=book_id,
            user_id=user_id,
            title=title,
            table_of_contents=list(table_of_contents),
            source_text=source_text,
            status=BookStatus.DRAFT,
            content="",
            current_chapter_index=0,
            generation_settings=settings.model_dump(mode="json", by_alias=True),
        )
        self.db.add(book)
        try:
            self.db.commit()
        except IntegrityError:
            # A concurrent request created the same book first.
            self.db.rollback()
            existing = self.get_book(book_id)
            if existing is None or existing.user_id != user_id:
                raise
            return existing, False

        logger.info(f"[Store] Created book {book_id} for user {user_id}")
        return self.require_book(book_id), True

    def update_inputs(
        self,
        book_id: UUID,
        *,
        title: str,
        table_of_contents: list[str],
        source_text: str,
    ) -> None:
        """Replace generation inputs of a book that is not generating or completed."""
        self._update_book(
            book_id,
            (BookStatus.DRAFT, BookStatus.FAILED),
            {
                Book.title: title,
                Book.table_of_contents: list(table_of_contents),
                Book.source_text: source_text,
            },
        )

    def start_generation(
        self,
        book_id: UUID,
        settings: Optional[GenerationSettings] = None,
        from_statuses: Iterable[BookStatus] = RESTARTABLE,
    ) -> None:
        values = {Book.status: BookStatus.GENERATING, Book.error: None}
        if settings is not None:
            values[Book.generation_settings] = settings.model_dump(mode="json", by_alias=True)
        self._update_book(book_id, from_statuses, values)
        logger.info(f"[Store] Book {book_id} -> generating")

    def save_plan(self, book_id: UUID, plan: dict) -> None:
        self._update_book(book_id, (BookStatus.GENERATING,), {Book.plan: plan})

    def complete_book(self, book_id: UUID) -> str:
        """
        Assemble completed chapters in order and mark the book completed.

        Callers verify every chapter is completed first.
        """
        total = len(self.require_book(book_id).toc)
        chapters = [c for c in self.list_chapters(book_id) if c.chapter_number <= total]
        content = "\n\n".join(c.content for c in chapters if c.status == ChapterStatus.COMPLETED)
        self._update_book(
            book_id,
            (BookStatus.GENERATING,),
            {
                Book.status: BookStatus.COMPLETED,
                Book.content: content,
                Book.error: None,
                Book.streaming_checkpoint: None,
                Book.current_chapter_index: len(chapters),
            },
        )
        logger.info(f"[Store] Book {book_id} completed ({len(chapters)} chapters)")
        return content

    def mark_failed(
        self, book_id: UUID, error: str, chapter_number: Optional[int] = None
    ) -> bool:
        """
        Mark a book (and the chapter being generated, if any) failed.

        Returns False when the book is missing or already completed.
        """
        rows = (
            self.db.query(Book)
            .filter(
                Book.id == book_id,
                Book.status.in_((BookStatus.DRAFT, BookStatus.GENERATING, BookStatus.FAILED)),
            )
            .update({Book.status: BookStatus.FAILED, Book.error: error}, synchronize_session=False)
        )
        if rows and chapter_number is not None:
            self.db.query(Chapter).filter(
                Chapter.book_id == book_id,
                Chapter.chapter_number == chapter_number,
                Chapter.status == ChapterStatus.GENERATING,
            ).update({Chapter.status: ChapterStatus.FAILED}, synchronize_session=False)
        self.db.commit()
        if rows:
            logger.warning(f"[Store] Book {book_id} failed (chapter {chapter_number}): {error}")
        return bool(rows)

    def delete_book(self, book_id: UUID) -> None:
        book = self.get_book(book_id)
        if book is None:
            return
        self.db.delete(book)
        self.db.commit()
        logger.info(f"[Store] Deleted book {book_id}")

    # ─────────────────────────────────────────────────────────────────────
    # Chapters
    # ─────────────────────────────────────────────────────────────────────

    def list_chapters(self, book_id: UUID) -> list[Chapter]:
        return (
            self.db.query(Chapter)
            .filter(Chapter.book_id == book_id)
            .order_by(Chapter.chapter_number)
            .populate_existing()
            .all()
        )

    def get_chapter(self, book_id: UUID, chapter_number: int) -> Optional[Chapter]:
        return (
            self.db.query(Chapter)
            .filter(Chapter.book_id == book_id, Chapter.chapter_number == chapter_number)
            .populate_existing()
            .first()
        )

    def upsert_chapters(self, book: Book) -> list[Chapter]:
        """
        Create a pending row for every TOC entry that has none.

        Existing rows keep their status and content; titles of chapters that
        are not completed follow the TOC.
        """
        toc = book.toc
        for attempt in range(2):
            existing = {c.chapter_number: c for c in self.list_chapters(book.id)}
            for number, title in enumerate(toc, start=1):
                chapter = existing.get(number)
                if chapter is None:
                    self.db.add(
                        Chapter(
                            book_id=book.id,
                            chapter_number=number,
                            title=title,
                            content="",
                            status=ChapterStatus.PENDING,
                        )
                    )
                elif chapter.title != title and chapter.status != ChapterStatus.COMPLETED:
                    chapter.title = title
            try:
                self.db.commit()
                break
            except IntegrityError:
                # Another writer inserted the same rows; re-read and reconcile.
                self.db.rollback()
                if attempt:
                    raise
        return self.list_chapters(book.id)

    def incomplete_chapters(self, book: Book) -> list[int]:
        completed = {
            c.chapter_number
            for c in self.list_chapters(book.id)
            if c.status == ChapterStatus.COMPLETED
        }
        return [n for n in range(1, len(book.toc) + 1) if n not in completed]

    def save_chapter_outline(self, book_id: UUID, chapter_number: int, outline: dict) -> None:
        self._update_chapter(
            book_id,
            chapter_number,
            (ChapterStatus.PENDING, ChapterStatus.GENERATING, ChapterStatus.FAILED),
            {Chapter.outline: outline},
        )

    def start_chapter(self, book_id: UUID, chapter_number: int, reset: bool = False) -> None:
        """
        pending/failed/generating -> generating.

        `reset` clears any partial buffer so the chapter is rebuilt from its
        first section.
        """
        values = {Chapter.status: ChapterStatus.GENERATING}
        if reset:
            values[Chapter.content] = ""
        self._update_chapter(
            book_id,
            chapter_number,
            (ChapterStatus.PENDING, ChapterStatus.FAILED, ChapterStatus.GENERATING),
            values,
        )

    def save_section_checkpoint(
        self, book_id: UUID, chapter_number: int, section_index: int, buffer: str
    ) -> None:
        """Persist the chapter buffer and `{lastChapter, lastSection}` in one transaction."""
        self.db.query(Chapter).filter(
            Chapter.book_id == book_id,
            Chapter.chapter_number == chapter_number,
            Chapter.status == ChapterStatus.GENERATING,
        ).update({Chapter.content: buffer}, synchronize_session=False)
        self._update_book(
            book_id,
            (BookStatus.GENERATING,),
            {
                Book.streaming_checkpoint: {
                    "lastChapter": chapter_number,
                    "lastSection": section_index,
                    "timestamp": _now_iso(),
                }
            },
        )

    def save_partial_section(
        self,
        book_id: UUID,
        chapter_number: int,
        last_section: Optional[int],
        partial_text: str,
    ) -> None:
        """Record text of an interrupted section. The section itself is redone on resume."""
        self._update_book(
            book_id,
            (BookStatus.GENERATING,),
            {
                Book.streaming_checkpoint: {
                    "lastChapter": chapter_number,
                    "lastSection": last_section,
                    "timestamp": _now_iso(),
                    "partialSection": partial_text,
                }
            },
        )

    def complete_chapter(self, book_id: UUID, chapter_number: int, content: str) -> None:
        """generating -> completed, and advance the book's chapter index."""
        rows = (
            self.db.query(Chapter)
            .filter(
                Chapter.book_id == book_id,
                Chapter.chapter_number == chapter_number,
                Chapter.status == ChapterStatus.GENERATING,
            )
            .update(
                {Chapter.content: content, Chapter.status: ChapterStatus.COMPLETED},
                synchronize_session=False,
            )
        )
        if not rows:
            self.db.rollback()
            raise PersistenceConflict(
                f"Chapter {chapter_number} of book {book_id} is no longer generating",
                chapter_number,
            )
        self._update_book(
            book_id,
            (BookStatus.GENERATING,),
            {
                Book.current_chapter_index: case(
                    (Book.current_chapter_index < chapter_number, chapter_number),
                    else_=Book.current_chapter_index,
                ),
                Book.streaming_checkpoint: {
                    "lastChapter": chapter_number,
                    "lastSection": None,
                    "timestamp": _now_iso(),
                },
            },
        )
        logger.info(f"[Store] Book {book_id} chapter {chapter_number} completed")

    # ─────────────────────────────────────────────────────────────────────
    # Status
    # ─────────────────────────────────────────────────────────────────────

    def status_payload(self, book: Book) -> BookStatusResponse:
        chapters = self.list_chapters(book.id)
        items = [
            ChapterStatusItem(
                chapter_number=c.chapter_number,
                title=c.title,
                status=c.status.value,
                content=c.content if c.status == ChapterStatus.COMPLETED else None,
            )
            for c in chapters
        ]
        return BookStatusResponse(
            status=book.status.value,
            error=book.error,
            current_chapter_index=book.current_chapter_index or 0,
            total_chapters=len(book.toc),
            completed_chapters=sum(1 for c in chapters if c.status == ChapterStatus.COMPLETED),
            chapters=items,
        )

    # ─────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────

    def _update_book(self, book_id: UUID, from_statuses: Iterable[BookStatus], values: dict) -> None:
        allowed = list(from_statuses)
        rows = (
            self.db.query(Book)
            .filter(Book.id == book_id, Book.status.in_(allowed))
            .update(values, synchronize_session=False)
        )
        if not rows:
            self.db.rollback()
            raise PersistenceConflict(f"Book {book_id} is not in {_values(allowed)}")
        self.db.commit()

    def _update_chapter(
        self,
        book_id: UUID,
        chapter_number: int,
        from_statuses: Iterable[ChapterStatus],
        values: dict,
    ) -> None:
        allowed = list(from_statuses)
        rows = (
            self.db.query(Chapter)
            .filter(
                Chapter.book_id == book_id,
                Chapter.chapter_number == chapter_number,
                Chapter.status.in_(allowed),
            )
            .update(values, synchronize_session=False)
        )
        if not rows:
            self.db.rollback()
            raise PersistenceConflict(
                f"Chapter {chapter_number} of book {book_id} is not in {_values(allowed)}",
                chapter_number,
            )
        self.db.commit()
