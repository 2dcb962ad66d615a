import asyncio
import os
import uuid
from typing import Optional

# Keep the application engine off any real database during tests.
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import chaptersmith.models  # noqa: F401
from chaptersmith.api import deps
from chaptersmith.core.config import settings
from chaptersmith.core.exceptions import QueueUnavailableError
from chaptersmith.db.base import Base
from chaptersmith.main import app
from chaptersmith.models.credit import TransactionType
from chaptersmith.models.user import User
from chaptersmith.schemas.generation import (
    ChapterOutline,
    GenerationJob,
    JobStep,
    PlanOutput,
    SectionOutline,
    TocOutput,
)
from chaptersmith.services.book_store import BookStore
from chaptersmith.services.content_generator import ContentGenerator
from chaptersmith.services.credits import CreditLedger
from chaptersmith.services.job_queue import JobQueue
from chaptersmith.services.queue_worker import JobDeliveryError, deliver_generation_job

engine = create_engine(
    "sqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


@event.listens_for(engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class StubContentGenerator(ContentGenerator):
    """
    Deterministic generator. Every section streams as two chunks whose text
    depends only on the chapter number, section index and titles, so two runs
    over the same TOC produce byte-identical books.

    Set `fail_stage` ("toc", "plan", "outline" or "section") and optionally
    `fail_chapter` to make that stage raise.
    """

    def __init__(self, sections_per_chapter: int = 2):
        self.sections_per_chapter = sections_per_chapter
        self.fail_stage: Optional[str] = None
        self.fail_chapter: Optional[int] = None
        self.calls: list[tuple] = []

    def _maybe_fail(self, stage: str, chapter_number: Optional[int] = None) -> None:
        if self.fail_stage != stage:
            return
        if self.fail_chapter is None or self.fail_chapter == chapter_number:
            raise RuntimeError(f"stub {stage} failure")

    async def generate_toc(self, source_text, settings):
        self.calls.append(("toc",))
        self._maybe_fail("toc")
        return TocOutput(title="Stub Book", chapters=["Intro", "Core", "Advanced"])

    async def generate_plan(self, source_text, toc, settings):
        self.calls.append(("plan",))
        self._maybe_fail("plan")
        return PlanOutput(
            target_audience="Curious readers",
            writing_style="Plain",
            key_themes=["stubs"],
        )

    async def generate_outline(
        self, *, toc, chapter_title, chapter_number, source_text, plan, settings
    ):
        self.calls.append(("outline", chapter_number))
        self._maybe_fail("outline", chapter_number)
        return ChapterOutline(
            chapter_number=chapter_number,
            chapter_title=chapter_title,
            sections=[
                SectionOutline(title=f"{chapter_title} part {i + 1}", summary="stub summary")
                for i in range(self.sections_per_chapter)
            ],
        )

    async def stream_section(
        self,
        *,
        chapter_number,
        chapter_title,
        outline,
        section_index,
        previous_sections,
        plan,
        settings,
    ):
        self.calls.append(("section", chapter_number, section_index))
        self._maybe_fail("section", chapter_number)
        yield f"Chapter {chapter_number}, "
        yield f"section {section_index + 1}: {outline.sections[section_index].title}."

    def count(self, stage: str, chapter_number: Optional[int] = None) -> int:
        return sum(
            1
            for call in self.calls
            if call[0] == stage and (chapter_number is None or call[1] == chapter_number)
        )


class RecordingJobQueue(JobQueue):
    """In-memory job queue. `pending` is drained by tests; `published` keeps everything."""

    def __init__(self):
        self.pending: list[GenerationJob] = []
        self.published: list[GenerationJob] = []
        self.fail = False

    async def enqueue(self, job: GenerationJob) -> None:
        if self.fail:
            raise QueueUnavailableError()
        self.pending.append(job)
        self.published.append(job)

    def steps(self) -> list[str]:
        return [job.deduplication_id.split(":", 1)[1] for job in self.published]


@pytest.fixture(scope="function")
def db():
    """Fresh in-memory schema per test."""
    Base.metadata.create_all(bind=engine)
    db_session = TestingSessionLocal()
    try:
        yield db_session
    finally:
        db_session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def generator():
    return StubContentGenerator()


@pytest.fixture
def generator_factory(generator):
    return lambda settings: generator


@pytest.fixture
def job_queue():
    return RecordingJobQueue()


@pytest.fixture(scope="function")
def test_user(db: Session):
    """Create a test user."""
    user = User(
        id=uuid.uuid4(),
        email="testuser@example.com",
        username="testuser",
        hashed_password="not-a-real-hash",
        full_name="Test User",
        is_active=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def fund(db: Session):
    """Credit a user's balance through the ledger."""

    def _fund(user: User, amount: int = None) -> None:
        CreditLedger(db).add_credits(
            user.id,
            amount if amount is not None else settings.BOOK_CREATION_COST * 2,
            TransactionType.PURCHASE,
            idempotency_key=f"seed-{uuid.uuid4()}",
        )

    return _fund


@pytest.fixture
def queued_book(db: Session, test_user: User, fund):
    """
    Set a book up the way the generate endpoint does (created, charged,
    generating) and return its `init` job.
    """

    def _queued_book(toc=("Intro", "Core", "Advanced"), book_id=None) -> GenerationJob:
        book_id = book_id or uuid.uuid4()
        job = GenerationJob(
            book_id=book_id,
            step=JobStep.INIT,
            provider="anthropic",
            model="claude-test",
        )
        fund(test_user, settings.BOOK_CREATION_COST)
        store = BookStore(db)
        store.create_book_if_absent(
            book_id,
            test_user.id,
            title="Queued Book",
            table_of_contents=list(toc),
            source_text="Source material about stubs.",
            settings=job.settings,
        )
        CreditLedger(db).deduct_credits(test_user.id, settings.BOOK_CREATION_COST, book_id)
        store.start_generation(book_id, job.settings)
        return job

    return _queued_book


@pytest.fixture
def drain(db: Session, job_queue: RecordingJobQueue, generator_factory):
    """Deliver pending jobs in order until the queue is empty or `limit` is hit."""

    def _drain(limit: int = 50) -> list[str]:
        outcomes = []

        async def run():
            for _ in range(limit):
                if not job_queue.pending:
                    break
                job = job_queue.pending.pop(0)
                try:
                    outcomes.append(
                        await deliver_generation_job(db, job, job_queue, generator_factory)
                    )
                except JobDeliveryError as e:
                    outcomes.append(f"error: {e}")

        asyncio.run(run())
        return outcomes

    return _drain


@pytest.fixture(scope="function")
def client(db: Session, test_user: User, job_queue: RecordingJobQueue, generator_factory):
    """Create a test client with the test database, queue and generator."""

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[deps.get_db] = override_get_db
    app.dependency_overrides[deps.get_current_user] = lambda: test_user
    app.dependency_overrides[deps.get_job_queue] = lambda: job_queue
    app.dependency_overrides[deps.get_generator_factory] = lambda: generator_factory

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
