"""Queued generation: one step per message, safe under redelivery."""
import asyncio
import uuid

import pytest
from sqlalchemy.orm import Session

from chaptersmith.core.config import settings
from chaptersmith.core.exceptions import (
    GenerationStageError,
    NotAllChaptersCompleteError,
    PersistenceConflict,
    ValidationError,
)
from chaptersmith.models.book import BookStatus
from chaptersmith.models.chapter import Chapter, ChapterStatus
from chaptersmith.models.credit import CreditTransaction, TransactionType
from chaptersmith.models.user import User
from chaptersmith.schemas.generation import JobStep
from chaptersmith.services.book_store import BookStore
from chaptersmith.services.credits import CreditLedger
from chaptersmith.services.queue_worker import (
    JobDeliveryError,
    deliver_generation_job,
    is_terminal,
)

EXPECTED_CORE = (
    "## Core\n\n"
    "Chapter 2, section 1: Core part 1.\n\n"
    "Chapter 2, section 2: Core part 2.\n\n"
)


def _deliver(db, job, job_queue, generator_factory, attempt=0):
    return asyncio.run(
        deliver_generation_job(db, job, job_queue, generator_factory, attempt=attempt)
    )


def _usage_rows(db: Session, book_id, tx_type=TransactionType.USAGE):
    return (
        db.query(CreditTransaction)
        .filter(CreditTransaction.book_id == book_id, CreditTransaction.type == tx_type)
        .all()
    )


class TestQueueDrain:
    def test_full_drain_completes_book(
        self, db: Session, queued_book, job_queue, generator_factory, drain
    ):
        job = queued_book()
        job_queue.pending.append(job)

        outcomes = drain()

        assert outcomes == ["handled"] * 5
        assert job_queue.steps() == ["chapter:1", "chapter:2", "chapter:3", "finalize:"]
        book = BookStore(db).require_book(job.book_id)
        assert book.status == BookStatus.COMPLETED
        assert book.current_chapter_index == 3
        assert book.streaming_checkpoint is None
        assert book.content.startswith("## Intro\n\nChapter 1, section 1: Intro part 1.")
        assert EXPECTED_CORE in book.content

    def test_init_replay_keeps_single_plan_and_chapter_set(
        self, db: Session, queued_book, job_queue, generator_factory, generator
    ):
        job = queued_book()

        _deliver(db, job, job_queue, generator_factory)
        _deliver(db, job, job_queue, generator_factory)

        assert generator.count("plan") == 1
        assert db.query(Chapter).filter(Chapter.book_id == job.book_id).count() == 3
        assert len(_usage_rows(db, job.book_id)) == 1

    def test_completed_chapter_step_is_idempotent(
        self, db: Session, queued_book, job_queue, generator_factory, generator
    ):
        job = queued_book()
        _deliver(db, job, job_queue, generator_factory)
        chapter_job = job.next_step(JobStep.CHAPTER, 1)
        _deliver(db, chapter_job, job_queue, generator_factory)
        first_content = BookStore(db).get_chapter(job.book_id, 1).content

        _deliver(db, chapter_job, job_queue, generator_factory)

        assert BookStore(db).get_chapter(job.book_id, 1).content == first_content
        assert generator.count("section", 1) == 2
        assert job_queue.steps().count("chapter:2") == 2

    def test_interrupted_chapter_is_rebuilt_without_touching_earlier_ones(
        self, db: Session, queued_book, job_queue, generator_factory, generator
    ):
        job = queued_book(toc=("Intro", "Core", "Advanced"))
        _deliver(db, job, job_queue, generator_factory)
        _deliver(db, job.next_step(JobStep.CHAPTER, 1), job_queue, generator_factory)
        store = BookStore(db)
        intro = store.get_chapter(job.book_id, 1).content

        # A crashed delivery left chapter 2 half written.
        store.start_chapter(job.book_id, 2)
        store.save_section_checkpoint(job.book_id, 2, 0, "## Core\n\nstale text\n\n")

        _deliver(db, job.next_step(JobStep.CHAPTER, 2), job_queue, generator_factory)

        core = store.get_chapter(job.book_id, 2)
        assert core.status == ChapterStatus.COMPLETED
        assert core.content == EXPECTED_CORE
        assert store.get_chapter(job.book_id, 1).content == intro
        assert generator.count("section", 1) == 2
        assert job_queue.steps()[-1] == "chapter:3"

    def test_finalize_assembles_chapters_in_order(
        self, db: Session, queued_book, job_queue, generator_factory, drain
    ):
        job = queued_book(toc=("Only",))
        job_queue.pending.append(job)
        drain()

        book = BookStore(db).require_book(job.book_id)
        assert book.content == (
            "## Only\n\n"
            "Chapter 1, section 1: Only part 1.\n\n"
            "Chapter 1, section 2: Only part 2.\n\n"
        )


class TestDeliveryBoundary:
    def test_missing_book_is_acknowledged(self, db: Session, queued_book, job_queue, generator_factory):
        job = queued_book().model_copy(update={"book_id": uuid.uuid4()})
        assert _deliver(db, job, job_queue, generator_factory) == "acknowledged"
        assert job_queue.published == []

    def test_completed_book_is_acknowledged(
        self, db: Session, queued_book, job_queue, generator_factory, drain
    ):
        job = queued_book()
        job_queue.pending.append(job)
        drain()
        published = len(job_queue.published)

        assert _deliver(db, job, job_queue, generator_factory) == "acknowledged"
        assert len(job_queue.published) == published

    def test_retryable_failure_leaves_book_generating(
        self, db: Session, queued_book, job_queue, generator_factory, generator, test_user: User
    ):
        job = queued_book()
        _deliver(db, job, job_queue, generator_factory)
        generator.fail_stage = "section"

        with pytest.raises(JobDeliveryError) as exc_info:
            _deliver(db, job.next_step(JobStep.CHAPTER, 1), job_queue, generator_factory)

        assert exc_info.value.terminal is False
        assert isinstance(exc_info.value.cause, GenerationStageError)
        assert BookStore(db).require_book(job.book_id).status == BookStatus.GENERATING
        assert _usage_rows(db, job.book_id, TransactionType.USAGE_REFUND) == []

    def test_last_attempt_refunds_and_fails_book(
        self, db: Session, queued_book, job_queue, generator_factory, generator, test_user: User
    ):
        job = queued_book()
        _deliver(db, job, job_queue, generator_factory)
        balance_after_charge = CreditLedger(db).get_balance(test_user.id).balance
        generator.fail_stage = "section"

        with pytest.raises(JobDeliveryError) as exc_info:
            _deliver(
                db,
                job.next_step(JobStep.CHAPTER, 1),
                job_queue,
                generator_factory,
                attempt=settings.QUEUE_MAX_RETRIES,
            )

        assert exc_info.value.terminal is True
        store = BookStore(db)
        book = store.require_book(job.book_id)
        assert book.status == BookStatus.FAILED
        assert "section stage failed" in book.error
        assert store.get_chapter(job.book_id, 1).status == ChapterStatus.FAILED
        assert len(_usage_rows(db, job.book_id, TransactionType.USAGE_REFUND)) == 1
        assert (
            CreditLedger(db).get_balance(test_user.id).balance
            == balance_after_charge + settings.BOOK_CREATION_COST
        )

    def test_out_of_range_chapter_is_terminal(
        self, db: Session, queued_book, job_queue, generator_factory, test_user: User
    ):
        job = queued_book()
        _deliver(db, job, job_queue, generator_factory)

        with pytest.raises(JobDeliveryError) as exc_info:
            _deliver(db, job.next_step(JobStep.CHAPTER, 9), job_queue, generator_factory)

        assert exc_info.value.terminal is True
        assert isinstance(exc_info.value.cause, ValidationError)
        assert BookStore(db).require_book(job.book_id).status == BookStatus.FAILED
        assert len(_usage_rows(db, job.book_id, TransactionType.USAGE_REFUND)) == 1

    def test_early_finalize_retries_once_then_fails(
        self, db: Session, queued_book, job_queue, generator_factory
    ):
        job = queued_book()
        _deliver(db, job, job_queue, generator_factory)
        finalize = job.next_step(JobStep.FINALIZE)

        with pytest.raises(JobDeliveryError) as first:
            _deliver(db, finalize, job_queue, generator_factory, attempt=0)
        assert first.value.terminal is False
        assert isinstance(first.value.cause, NotAllChaptersCompleteError)
        assert BookStore(db).require_book(job.book_id).status == BookStatus.GENERATING

        with pytest.raises(JobDeliveryError) as second:
            _deliver(db, finalize, job_queue, generator_factory, attempt=1)
        assert second.value.terminal is True
        assert BookStore(db).require_book(job.book_id).status == BookStatus.FAILED

    def test_failed_book_acknowledges_later_messages(
        self, db: Session, queued_book, job_queue, generator_factory
    ):
        job = queued_book()
        BookStore(db).mark_failed(job.book_id, "gave up")

        assert _deliver(db, job.next_step(JobStep.CHAPTER, 1), job_queue, generator_factory) == (
            "acknowledged"
        )


class TestIsTerminal:
    def test_validation_errors_are_terminal(self):
        assert is_terminal(ValidationError("bad"), attempt=0)

    def test_stage_errors_retry_until_attempts_run_out(self):
        error = GenerationStageError("section", RuntimeError("boom"), 1)
        assert not is_terminal(error, attempt=0, max_retries=3)
        assert not is_terminal(error, attempt=2, max_retries=3)
        assert is_terminal(error, attempt=3, max_retries=3)

    def test_persistence_conflicts_are_retried(self):
        assert not is_terminal(PersistenceConflict("raced"), attempt=0, max_retries=3)

    def test_incomplete_finalize_gets_one_retry(self):
        error = NotAllChaptersCompleteError(uuid.uuid4(), [2])
        assert not is_terminal(error, attempt=0)
        assert is_terminal(error, attempt=1)
