"""Celery application factory for background broadcast tasks."""
from __future__ import annotations

import os
from celery import Celery
from celery.schedules import crontab

DEFAULT_BROKER_URL = os.getenv("CELERY_BROKER_URL", os.getenv("REDIS_URL", "redis://localhost:6379/0"))
DEFAULT_BACKEND_URL = os.getenv("CELERY_RESULT_BACKEND", DEFAULT_BROKER_URL)


def create_celery_app() -> Celery:
    """Create and configure the Celery app for the project."""
    celery_app = Celery(
        "broadcasts",
        broker=DEFAULT_BROKER_URL,
        backend=DEFAULT_BACKEND_URL,
        include=["broadcasts.tasks"],
    )

    celery_app.conf.update(
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        timezone=os.getenv("CELERY_TIMEZONE", "UTC"),
        enable_utc=True,
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        beat_schedule={
            "resume-stalled-broadcasts": {
                "task": "broadcasts.tasks.resume_stalled_broadcasts",
                "schedule": crontab(minute=os.getenv("BROADCAST_WATCHDOG_MINUTES", "*/5")),
            },
            "process-sequence-queue": {
                "task": "broadcasts.tasks.process_sequence_queue",
                "schedule": crontab(minute=os.getenv("SEQUENCE_QUEUE_MINUTES", "*/10")),
            },
        },
    )

    return celery_app


celery_app = create_celery_app()
