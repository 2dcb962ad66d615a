"""
Celery configuration for background tasks.
"""

from celery import Celery

from chaptersmith.core.config import settings

# Create Celery instance
celery_app = Celery(
    "chaptersmith",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["chaptersmith.tasks"],
)

# Configure Celery
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # Task routing
    task_routes={
        "chaptersmith.tasks.process_generation_job": {"queue": "generation"},
    },
    # A step is only acknowledged once it has run to completion, so a worker
    # crash redelivers the message.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # Task time limits
    task_time_limit=3600,  # 1 hour hard limit
    task_soft_time_limit=3000,  # 50 minutes soft limit
    # Result backend settings
    result_expires=86400,  # Results expire after 24 hours
    # Worker settings
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
)
