"""
Celery delivery path for book generation steps.

Each task runs one `GenerationJob` step through the delivery boundary.
Retryable failures go back to the broker through `self.retry`; terminal ones
have already been compensated (usage refunded, book failed) when they reach
this module.
"""

import asyncio
import logging

from pydantic import ValidationError as PydanticValidationError

from chaptersmith.core.celery_app import celery_app
from chaptersmith.core.config import settings
from chaptersmith.db.base import SessionLocal
from chaptersmith.schemas.generation import GenerationJob
from chaptersmith.services.job_queue import get_job_queue
from chaptersmith.services.queue_worker import JobDeliveryError, deliver_generation_job

logger = logging.getLogger(__name__)


def get_db_session():
    """Get a database session for task execution."""
    return SessionLocal()


def retry_countdown(retries: int) -> int:
    """Exponential backoff in seconds, capped at five minutes."""
    return min(5 * 2**retries, 300)


@celery_app.task(bind=True, name="chaptersmith.tasks.process_generation_job")
def process_generation_job(self, payload: dict):
    """Run one generation step (init, chapter or finalize)."""
    try:
        job = GenerationJob.model_validate(payload)
    except PydanticValidationError as e:
        logger.error(f"[Task] Invalid generation job payload: {e}")
        return {"ok": False, "error": "Invalid payload"}

    attempt = self.request.retries
    db = get_db_session()
    try:
        outcome = asyncio.run(
            deliver_generation_job(db, job, get_job_queue(), attempt=attempt)
        )
        return {"ok": True, "job": job.deduplication_id, "outcome": outcome}
    except JobDeliveryError as e:
        if e.terminal:
            return {"ok": False, "job": job.deduplication_id, "error": str(e)}
        raise self.retry(
            exc=e.cause,
            countdown=retry_countdown(attempt),
            max_retries=settings.QUEUE_MAX_RETRIES,
        )
    finally:
        db.close()
