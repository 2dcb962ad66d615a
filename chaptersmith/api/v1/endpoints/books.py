"""
Book endpoints: queued generation, streamed generation, resume and status.

Domain errors raised here are turned into `{"ok": false, "error": ...}`
responses by the exception handlers in `chaptersmith.main`.
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.orm import Session

from chaptersmith.api import deps
from chaptersmith.core.config import settings
from chaptersmith.core.exceptions import (
    BookAlreadyCompletedError,
    InsufficientCredits,
    PersistenceConflict,
    QueueUnavailableError,
    ValidationError,
)
from chaptersmith.models.book import Book, BookStatus, normalize_toc
from chaptersmith.models.user import User
from chaptersmith.schemas.book import (
    BookDetail,
    BookStatusResponse,
    BookSummary,
    GenerateBookRequest,
    ResumeBookRequest,
    StreamBookRequest,
)
from chaptersmith.schemas.generation import GenerationJob, JobStep
from chaptersmith.services.book_store import BookStore
from chaptersmith.services.content_generator import ContentGeneratorFactory
from chaptersmith.services.credits import CreditLedger
from chaptersmith.services.job_queue import JobQueue
from chaptersmith.services.stream_orchestrator import (
    CancellationToken,
    StreamOrchestrator,
    StreamRun,
)

logger = logging.getLogger(__name__)

router = APIRouter()

SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


def _summary(book: Book) -> dict:
    return {
        "id": book.id,
        "title": book.title,
        "status": book.status.value,
        "current_chapter_index": book.current_chapter_index or 0,
        "table_of_contents": book.toc,
        "created_at": book.created_at,
        "updated_at": book.updated_at,
    }


def _accepted(book_id: UUID, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content={"ok": True, "bookId": str(book_id), "status": "generating", "message": message},
    )


@router.get("")
async def list_books(
    db: Session = Depends(deps.get_db),
    current_user: User = Depends(deps.get_current_user),
):
    """List the current user's books, newest first."""
    books = BookStore(db).list_books(current_user.id)
    return {
        "ok": True,
        "books": [BookSummary(**_summary(b)).model_dump(mode="json", by_alias=True) for b in books],
    }


@router.get("/{book_id}")
async def get_book(
    book_id: UUID,
    db: Session = Depends(deps.get_db),
    current_user: User = Depends(deps.get_current_user),
):
    book = BookStore(db).require_book(book_id, current_user.id)
    detail = BookDetail(
        **_summary(book),
        content=book.content or "",
        plan=book.plan,
        streaming_checkpoint=book.streaming_checkpoint,
        error=book.error,
        generation_settings=book.generation_settings,
    )
    return {"ok": True, "book": detail.model_dump(mode="json", by_alias=True)}


@router.get("/{book_id}/status", response_model=BookStatusResponse, response_model_by_alias=True)
async def get_book_status(
    book_id: UUID,
    db: Session = Depends(deps.get_db),
    current_user: User = Depends(deps.get_current_user),
):
    """
    Per-chapter progress. Content is included only for completed chapters,
    which is enough for a client to rebuild its progress view.
    """
    store = BookStore(db)
    book = store.require_book(book_id, current_user.id)
    return store.status_payload(book)


@router.post("/{book_id}/generate", status_code=status.HTTP_202_ACCEPTED)
async def start_generation(
    book_id: UUID,
    body: GenerateBookRequest,
    db: Session = Depends(deps.get_db),
    current_user: User = Depends(deps.get_current_user),
    job_queue: JobQueue = Depends(deps.get_job_queue),
):
    """
    Start queued generation of a book.

    Returns 202 once the `init` step is enqueued. A repeated request while the
    book is generating returns 202 without enqueuing anything.
    """
    toc = normalize_toc(body.table_of_contents)
    if not toc:
        raise ValidationError("tableOfContents must contain at least one title")

    store = BookStore(db)
    ledger = CreditLedger(db)
    book, created = store.create_book_if_absent(
        book_id,
        current_user.id,
        title=body.title,
        table_of_contents=toc,
        source_text=body.source_text,
        settings=body.settings,
    )
    if book.status == BookStatus.COMPLETED:
        raise BookAlreadyCompletedError(book_id)
    if book.status == BookStatus.GENERATING:
        return _accepted(book_id, "Generation already in progress")
    if book.status in (BookStatus.DRAFT, BookStatus.FAILED) and not created:
        store.update_inputs(
            book_id, title=body.title, table_of_contents=toc, source_text=body.source_text
        )

    charged = False
    try:
        if not ledger.has_usage_for_book(book_id):
            tx = ledger.deduct_credits(
                current_user.id,
                settings.BOOK_CREATION_COST,
                book_id,
                metadata={"reason": "async_book_generation"},
            )
            charged = tx is not None
    except InsufficientCredits:
        if created:
            store.delete_book(book_id)
        raise

    try:
        store.start_generation(
            book_id, body.settings, from_statuses=(BookStatus.DRAFT, BookStatus.FAILED)
        )
    except PersistenceConflict:
        # A concurrent request moved the book to generating first.
        return _accepted(book_id, "Generation already in progress")

    job = GenerationJob(
        book_id=book_id,
        step=JobStep.INIT,
        provider=body.provider,
        model=body.model,
        language=body.language,
        user_preference=body.user_preference,
    )
    try:
        await job_queue.enqueue(job)
    except QueueUnavailableError:
        if charged:
            ledger.refund_usage_credits(
                current_user.id, book_id, metadata={"reason": "enqueue_failed"}
            )
        if created:
            store.delete_book(book_id)
        else:
            store.mark_failed(book_id, "Failed to enqueue generation job")
        raise

    logger.info(f"[Books] Queued generation for book {book_id}")
    return _accepted(book_id, "Generation started")


async def _event_stream(
    orchestrator: StreamOrchestrator,
    run: StreamRun,
    request: Request,
    token: CancellationToken,
):
    async for event in orchestrator.run(run):
        yield event.encode()
        if await request.is_disconnected():
            logger.info(f"[Books] Client disconnected from book {run.book_id}")
            token.cancel()


@router.post("/{book_id}/stream")
async def stream_book(
    book_id: UUID,
    body: StreamBookRequest,
    request: Request,
    db: Session = Depends(deps.get_db),
    current_user: User = Depends(deps.get_current_user),
    generator_factory: ContentGeneratorFactory = Depends(deps.get_generator_factory),
):
    """Generate the whole book inside this request as Server-Sent Events."""
    token = CancellationToken()
    orchestrator = StreamOrchestrator(db, generator_factory, token)
    run = orchestrator.prepare_stream(current_user.id, book_id, body)
    return StreamingResponse(
        _event_stream(orchestrator, run, request, token),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.post("/{book_id}/resume")
async def resume_book(
    book_id: UUID,
    request: Request,
    body: Optional[ResumeBookRequest] = None,
    db: Session = Depends(deps.get_db),
    current_user: User = Depends(deps.get_current_user),
    generator_factory: ContentGeneratorFactory = Depends(deps.get_generator_factory),
):
    """Continue a planned book from its first unfinished chapter (or `startFromChapter`)."""
    token = CancellationToken()
    orchestrator = StreamOrchestrator(db, generator_factory, token)
    run = orchestrator.prepare_resume(
        current_user.id, book_id, body.start_from_chapter if body else None
    )
    return StreamingResponse(
        _event_stream(orchestrator, run, request, token),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.post("/{book_id}/deduct-credits")
async def deduct_book_credits(
    book_id: UUID,
    db: Session = Depends(deps.get_db),
    current_user: User = Depends(deps.get_current_user),
):
    """Charge a book up front. Charging an already-charged book is a no-op."""
    book = BookStore(db).require_book(book_id, current_user.id)
    if book.status == BookStatus.COMPLETED:
        raise BookAlreadyCompletedError(book_id)

    ledger = CreditLedger(db)
    charged = False
    if not ledger.has_usage_for_book(book_id):
        tx = ledger.deduct_credits(
            current_user.id,
            settings.BOOK_CREATION_COST,
            book_id,
            metadata={"reason": "sync_book_generation"},
        )
        charged = tx is not None
    return {"ok": True, "charged": charged, "balance": ledger.get_balance(current_user.id).balance}
