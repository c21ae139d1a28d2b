"""Drives a broadcast job through its state machine one step at a time.

pending -> processing (fan-out) -> processing (batches) -> completed, with
failed reachable from either non-terminal state. Completed and failed jobs
are never touched again.
"""
from __future__ import annotations

import logging
import uuid
from typing import Callable, Optional

from sqlalchemy.orm import sessionmaker

from . import resolver, store
from .config import CLAIM_TTL, DELIVERY_TIMEOUT, LEASE_SECONDS, STALL_HORIZON
from .db import BroadcastJobModel
from .models import JobStatus, StepSummary, TERMINAL_JOB_STATUSES
from .processor import process_batch

LOGGER = logging.getLogger(__name__)

Enqueue = Callable[[str, float], None]


def summarize(job: BroadcastJobModel, **extra) -> StepSummary:
    remaining = extra.pop("remaining", max(job.total_recipients - job.processed_count, 0))
    return StepSummary(
        job_id=job.id,
        status=job.status,
        processed=job.processed_count,
        success_count=job.success_count,
        failed_count=job.failed_count,
        remaining=remaining,
        total_recipients=job.total_recipients,
        **extra,
    )


def _schedule_next(enqueue: Optional[Enqueue], job: BroadcastJobModel) -> bool:
    if enqueue is None:
        return False
    try:
        enqueue(job.id, job.batch_delay)
    except Exception:
        # Job stays processing; the watchdog picks it up later.
        LOGGER.exception("Failed to schedule next batch for job %s", job.id)
        return False
    LOGGER.info("Scheduled next batch for job %s in %.1fs", job.id, job.batch_delay)
    return True


def run_step(
    session_factory: sessionmaker,
    job_id: str,
    *,
    directory,
    dispatcher,
    enqueue: Optional[Enqueue] = None,
    worker_id: Optional[str] = None,
    lease_seconds: int = LEASE_SECONDS,
    claim_ttl: int = CLAIM_TTL,
    timeout: Optional[float] = DELIVERY_TIMEOUT,
) -> StepSummary:
    """Perform one fan-out-or-batch step for a job.

    Safe to call repeatedly: terminal jobs are returned untouched and a job
    whose lease is held by another worker is reported as busy.
    """
    job = store.load_job(session_factory, job_id)
    if job.status in TERMINAL_JOB_STATUSES:
        LOGGER.info("Job %s already %s; nothing to do", job_id, job.status)
        return summarize(job, remaining=0, noop=True)

    owner = worker_id or str(uuid.uuid4())
    if not store.acquire_lease(session_factory, job_id, owner, lease_seconds):
        job = store.load_job(session_factory, job_id)
        if job.status in TERMINAL_JOB_STATUSES:
            return summarize(job, remaining=0, noop=True)
        LOGGER.info("Job %s is leased by another worker; skipping", job_id)
        return summarize(job, busy=True)

    try:
        if job.status == JobStatus.PENDING.value:
            resolver.fan_out(session_factory, job_id, directory)
            store.mark_processing(session_factory, job_id)
            job = store.load_job(session_factory, job_id)
            if job.status != JobStatus.PROCESSING.value:
                return summarize(job, remaining=0, noop=True)

        batch = process_batch(
            session_factory,
            job,
            dispatcher,
            timeout=timeout,
            claim_ttl=claim_ttl,
            lease_owner=owner,
            lease_seconds=lease_seconds,
        )
        remaining = store.count_pending(session_factory, job_id)
        job = store.load_job(session_factory, job_id)
        if batch.lease_lost and job.status == JobStatus.PROCESSING.value:
            # The new lease holder owns the counters and the next step.
            return summarize(job, remaining=remaining, busy=True)
        if batch.lease_lost or not batch.claimed:
            store.refresh_counters(session_factory, job_id)
            job = store.load_job(session_factory, job_id)

        rescheduled = False
        if job.status != JobStatus.PROCESSING.value:
            LOGGER.info("Job %s moved to %s during the batch; stopping", job_id, job.status)
        elif remaining and not batch.claimed:
            LOGGER.info("Job %s has %d recipients claimed elsewhere; leaving them to the watchdog", job_id, remaining)
        elif remaining:
            rescheduled = _schedule_next(enqueue, job)
        else:
            store.mark_completed(session_factory, job_id)
            LOGGER.info(
                "Job %s completed: %d sent, %d failed", job_id, job.success_count, job.failed_count
            )

        job = store.load_job(session_factory, job_id)
        return summarize(job, remaining=remaining, batch_processed=batch.succeeded + batch.failed, rescheduled=rescheduled)
    finally:
        store.release_lease(session_factory, job_id, owner)


def cancel_job(session_factory: sessionmaker, job_id: str, reason: str = "cancelled") -> bool:
    """Stop a running job; returns False when it was already terminal."""
    store.load_job(session_factory, job_id)
    cancelled = store.mark_failed(session_factory, job_id, reason)
    if cancelled:
        LOGGER.info("Job %s cancelled: %s", job_id, reason)
    return cancelled


def resume_stalled(session_factory: sessionmaker, enqueue: Enqueue, horizon: int = STALL_HORIZON) -> int:
    """Re-enqueue jobs that stopped making progress."""
    resumed = 0
    for job_id in store.find_stalled_jobs(session_factory, horizon):
        try:
            enqueue(job_id, 0)
        except Exception:
            LOGGER.exception("Failed to re-enqueue stalled job %s", job_id)
            continue
        resumed += 1
    if resumed:
        LOGGER.info("Re-enqueued %d stalled broadcast jobs", resumed)
    return resumed
