from __future__ import annotations

import logging
from typing import Dict

from celery import shared_task

from . import scheduler
from .config import STALL_HORIZON
from .db import get_session_factory
from .errors import FanOutError, JobNotFound
from .service import process_sequences, trigger_job

LOGGER = logging.getLogger(__name__)


def _enqueue_next(job_id: str, delay: float) -> None:
    process_broadcast.apply_async((job_id,), countdown=delay)


@shared_task(name="broadcasts.tasks.process_broadcast")
def process_broadcast(job_id: str) -> Dict:
    try:
        summary = trigger_job(job_id, enqueue=_enqueue_next)
    except JobNotFound:
        LOGGER.warning("Broadcast job %s not found", job_id)
        return {"job_id": job_id, "error": "not_found"}
    except FanOutError as exc:
        # Job stays pending; the stalled-job scan retries it.
        LOGGER.warning("Fan-out failed for job %s: %s", job_id, exc)
        return {"job_id": job_id, "error": str(exc)}
    LOGGER.info(
        "Broadcast job %s step: status=%s processed=%d/%d remaining=%d",
        job_id,
        summary.status,
        summary.processed,
        summary.total_recipients,
        summary.remaining,
    )
    return summary.to_dict()


@shared_task(name="broadcasts.tasks.resume_stalled_broadcasts")
def resume_stalled_broadcasts() -> str:
    resumed = scheduler.resume_stalled(get_session_factory(), _enqueue_next, STALL_HORIZON)
    return str(resumed)


@shared_task(name="broadcasts.tasks.process_sequence_queue")
def process_sequence_queue() -> Dict[str, int]:
    counts = process_sequences()
    LOGGER.info("Processed sequence queue: %s", counts)
    return counts
