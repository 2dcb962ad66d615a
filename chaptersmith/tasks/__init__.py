"""
Celery tasks for queued book generation.

These tasks are queued and executed by Celery workers.
"""

from chaptersmith.tasks.generation import process_generation_job

__all__ = ["process_generation_job"]
