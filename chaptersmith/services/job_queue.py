"""
Job queue publishers for book generation steps.

Two backends are supported:
- celery: steps run on Celery workers (`chaptersmith.tasks.process_generation_job`)
- http: steps are published to a QStash-style push queue, which delivers them
  to the signed callback at `QUEUE_CALLBACK_URL`
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx
from kombu.exceptions import OperationalError

from chaptersmith.core.config import settings
from chaptersmith.core.exceptions import QueueUnavailableError
from chaptersmith.schemas.generation import GenerationJob

logger = logging.getLogger(__name__)


class JobQueue(ABC):
    """Publishes one `GenerationJob` per call. Delivery is at-least-once."""

    @abstractmethod
    async def enqueue(self, job: GenerationJob) -> None:
        """Raise `QueueUnavailableError` when the job could not be published."""


class CeleryJobQueue(JobQueue):
    async def enqueue(self, job: GenerationJob) -> None:
        # Imported here: the task module imports the worker, which imports us.
        from chaptersmith.tasks.generation import process_generation_job

        try:
            process_generation_job.apply_async(args=[job.to_payload()])
        except OperationalError as e:
            logger.error(f"[Queue] Broker unavailable for {job.deduplication_id}: {e}")
            raise QueueUnavailableError() from e
        logger.info(f"[Queue] Enqueued {job.deduplication_id} (celery)")


class HttpJobQueue(JobQueue):
    """Publishes jobs to an HTTP push queue with deduplication and retry headers."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        callback_url: Optional[str] = None,
        retries: Optional[int] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.QSTASH_URL).rstrip("/")
        self.token = token if token is not None else settings.QSTASH_TOKEN
        self.callback_url = callback_url or settings.QUEUE_CALLBACK_URL
        self.retries = settings.QUEUE_MAX_RETRIES if retries is None else retries
        self.timeout = timeout
        self.transport = transport

    def _headers(self, job: GenerationJob) -> dict:
        return {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
            "Upstash-Deduplication-Id": job.deduplication_id,
            "Upstash-Retries": str(self.retries),
        }

    async def enqueue(self, job: GenerationJob) -> None:
        if not self.token:
            raise QueueUnavailableError("QSTASH_TOKEN is not configured")

        url = f"{self.base_url}/v2/publish/{self.callback_url}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(url, json=job.to_payload(), headers=self._headers(job))
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"[Queue] Publish failed for {job.deduplication_id}: {e}")
            raise QueueUnavailableError() from e
        logger.info(f"[Queue] Enqueued {job.deduplication_id} (http)")


def get_job_queue() -> JobQueue:
    """Queue backend selected by `QUEUE_BACKEND`."""
    if settings.QUEUE_BACKEND == "http":
        return HttpJobQueue()
    if settings.QUEUE_BACKEND == "celery":
        return CeleryJobQueue()
    raise ValueError(f"Unknown QUEUE_BACKEND: {settings.QUEUE_BACKEND}")
