"""
Signed queue callback.

The push queue delivers each `GenerationJob` here. Any handler failure
returns 500 so the queue's own retry policy applies; terminal failures are
compensated by the delivery boundary before the 500 goes out.
"""

import json
import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from chaptersmith.api import deps
from chaptersmith.core.config import settings
from chaptersmith.schemas.generation import GenerationJob
from chaptersmith.services.content_generator import ContentGeneratorFactory
from chaptersmith.services.job_queue import JobQueue
from chaptersmith.services.queue_worker import JobDeliveryError, deliver_generation_job
from chaptersmith.services.signatures import SignatureError, verify_queue_signature

logger = logging.getLogger(__name__)

router = APIRouter()


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"ok": False, "error": message})


def _delivery_attempt(request: Request) -> int:
    try:
        return max(0, int(request.headers.get("Upstash-Retried", "0")))
    except ValueError:
        return 0


@router.post("/book-generation")
async def book_generation_callback(
    request: Request,
    db: Session = Depends(deps.get_db),
    job_queue: JobQueue = Depends(deps.get_job_queue),
    generator_factory: ContentGeneratorFactory = Depends(deps.get_generator_factory),
):
    body = await request.body()
    try:
        verify_queue_signature(
            request.headers.get("Upstash-Signature"),
            body,
            settings.QUEUE_CALLBACK_URL,
            settings.QSTASH_CURRENT_SIGNING_KEY,
            settings.QSTASH_NEXT_SIGNING_KEY,
        )
    except SignatureError:
        return _error(status.HTTP_401_UNAUTHORIZED, "Unauthorized")

    try:
        payload = json.loads(body)
    except ValueError:
        return _error(status.HTTP_400_BAD_REQUEST, "Invalid JSON")

    try:
        job = GenerationJob.model_validate(payload)
    except PydanticValidationError:
        return _error(status.HTTP_400_BAD_REQUEST, "Invalid payload")

    try:
        outcome = await deliver_generation_job(
            db, job, job_queue, generator_factory, attempt=_delivery_attempt(request)
        )
    except JobDeliveryError as e:
        logger.error(
            f"[Queue] {job.deduplication_id} handler error (terminal={e.terminal}): {e}"
        )
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Worker error")

    return {"ok": True, "outcome": outcome}
