"""Durable job and recipient records.

Every function here takes a session or a session factory and commits its
own unit of work, so callers can isolate one recipient's outcome from the
next.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import and_, case, delete, func, insert, or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from .config import (
    CLAIM_TTL,
    DEFAULT_BATCH_DELAY,
    DEFAULT_BATCH_SIZE,
    ERROR_MAX_LENGTH,
    FANOUT_CHUNK,
    MAX_BATCH_DELAY,
    MAX_BATCH_SIZE,
    MAX_FANOUT_ATTEMPTS,
)
from .db import BroadcastJobModel, BroadcastRecipientModel
from .errors import JobNotFound
from .models import Contact, JobStatus, RecipientStatus, TargetSpec, TERMINAL_JOB_STATUSES, parse_payload, payload_to_dict

LOGGER = logging.getLogger(__name__)

ACTIVE_JOB_STATUSES = (JobStatus.PENDING.value, JobStatus.PROCESSING.value)


def truncate_error(message: Any, limit: int = ERROR_MAX_LENGTH) -> str:
    text = str(message or "").strip() or "Unknown delivery error"
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


# ------------------------------- Jobs -------------------------------

def create_job(
    session_factory: sessionmaker,
    kind: str,
    target: TargetSpec,
    payload: Dict[str, Any],
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    batch_delay: float = DEFAULT_BATCH_DELAY,
) -> str:
    parsed = parse_payload(kind, payload)
    batch_size = int(batch_size)
    batch_delay = float(batch_delay)
    if not 1 <= batch_size <= MAX_BATCH_SIZE:
        raise ValueError(f"batch_size must be between 1 and {MAX_BATCH_SIZE}")
    if not 0 <= batch_delay <= MAX_BATCH_DELAY:
        raise ValueError(f"batch_delay must be between 0 and {MAX_BATCH_DELAY} seconds")

    with session_factory.begin() as session:
        job = BroadcastJobModel(
            kind=kind,
            status=JobStatus.PENDING.value,
            target_all_users=target.targets_everyone,
            target_plans=list(target.plans),
            payload=payload_to_dict(parsed),
            batch_size=batch_size,
            batch_delay=batch_delay,
        )
        session.add(job)
        session.flush()
        job_id = job.id
    LOGGER.info("Created %s broadcast job %s (target=%s)", kind, job_id, target.to_dict())
    return job_id


def get_job(session: Session, job_id: str) -> BroadcastJobModel:
    job = session.get(BroadcastJobModel, job_id)
    if job is None:
        raise JobNotFound(job_id)
    return job


def load_job(session_factory: sessionmaker, job_id: str) -> BroadcastJobModel:
    with session_factory() as session:
        return get_job(session, job_id)


def record_fanout_failure(session_factory: sessionmaker, job_id: str, reason: str) -> bool:
    """Count a failed fan-out attempt; returns True when the job gave up."""
    with session_factory.begin() as session:
        job = session.get(BroadcastJobModel, job_id)
        if job is None or job.status in TERMINAL_JOB_STATUSES:
            return False
        job.fanout_attempts = (job.fanout_attempts or 0) + 1
        job.last_error = truncate_error(reason)
        if job.fanout_attempts >= MAX_FANOUT_ATTEMPTS:
            job.status = JobStatus.FAILED.value
            job.completed_at = datetime.utcnow()
            LOGGER.error("Job %s failed after %d fan-out attempts", job_id, job.fanout_attempts)
            return True
    LOGGER.warning("Fan-out attempt failed for job %s: %s", job_id, reason)
    return False


def mark_processing(session_factory: sessionmaker, job_id: str) -> bool:
    now = datetime.utcnow()
    with session_factory.begin() as session:
        result = session.execute(
            update(BroadcastJobModel)
            .where(BroadcastJobModel.id == job_id, BroadcastJobModel.status == JobStatus.PENDING.value)
            .values(
                status=JobStatus.PROCESSING.value,
                started_at=func.coalesce(BroadcastJobModel.started_at, now),
            )
            .execution_options(synchronize_session=False)
        )
    return result.rowcount == 1


def mark_completed(session_factory: sessionmaker, job_id: str) -> bool:
    with session_factory.begin() as session:
        result = session.execute(
            update(BroadcastJobModel)
            .where(BroadcastJobModel.id == job_id, BroadcastJobModel.status == JobStatus.PROCESSING.value)
            .values(status=JobStatus.COMPLETED.value, completed_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
    return result.rowcount == 1


def mark_failed(session_factory: sessionmaker, job_id: str, reason: str) -> bool:
    with session_factory.begin() as session:
        result = session.execute(
            update(BroadcastJobModel)
            .where(BroadcastJobModel.id == job_id, BroadcastJobModel.status.in_(ACTIVE_JOB_STATUSES))
            .values(
                status=JobStatus.FAILED.value,
                last_error=truncate_error(reason),
                completed_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
    return result.rowcount == 1


def acquire_lease(session_factory: sessionmaker, job_id: str, owner: str, seconds: int) -> bool:
    """Take the per-job lease unless another live worker holds it."""
    now = datetime.utcnow()
    with session_factory.begin() as session:
        result = session.execute(
            update(BroadcastJobModel)
            .where(
                BroadcastJobModel.id == job_id,
                BroadcastJobModel.status.in_(ACTIVE_JOB_STATUSES),
                or_(
                    BroadcastJobModel.lease_owner.is_(None),
                    BroadcastJobModel.lease_owner == owner,
                    BroadcastJobModel.lease_expires_at < now,
                ),
            )
            .values(lease_owner=owner, lease_expires_at=now + timedelta(seconds=seconds))
            .execution_options(synchronize_session=False)
        )
    return result.rowcount == 1


def renew_lease(
    session_factory: sessionmaker,
    job_id: str,
    owner: str,
    seconds: int,
    claim_token: Optional[str] = None,
) -> bool:
    """Extend a held lease and keep the owner's claimed recipients fresh.

    Returns False once the lease belongs to someone else; the caller must
    stop delivering.
    """
    now = datetime.utcnow()
    with session_factory.begin() as session:
        result = session.execute(
            update(BroadcastJobModel)
            .where(
                BroadcastJobModel.id == job_id,
                BroadcastJobModel.lease_owner == owner,
                BroadcastJobModel.status.in_(ACTIVE_JOB_STATUSES),
            )
            .values(lease_expires_at=now + timedelta(seconds=seconds), updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        if claim_token is not None:
            session.execute(
                update(BroadcastRecipientModel)
                .where(
                    BroadcastRecipientModel.claim_token == claim_token,
                    BroadcastRecipientModel.status == RecipientStatus.PENDING.value,
                )
                .values(claimed_at=now)
                .execution_options(synchronize_session=False)
            )
    return True


def release_lease(session_factory: sessionmaker, job_id: str, owner: str) -> None:
    with session_factory.begin() as session:
        session.execute(
            update(BroadcastJobModel)
            .where(BroadcastJobModel.id == job_id, BroadcastJobModel.lease_owner == owner)
            .values(lease_owner=None, lease_expires_at=None)
            .execution_options(synchronize_session=False)
        )


def find_stalled_jobs(session_factory: sessionmaker, horizon_seconds: int) -> List[str]:
    """Jobs the watchdog should re-trigger.

    Processing jobs untouched for longer than the horizon, and pending jobs
    created before it that never got going.
    """
    cutoff = datetime.utcnow() - timedelta(seconds=horizon_seconds)
    with session_factory() as session:
        rows = session.scalars(
            select(BroadcastJobModel.id)
            .where(
                or_(
                    and_(
                        BroadcastJobModel.status == JobStatus.PROCESSING.value,
                        BroadcastJobModel.updated_at < cutoff,
                    ),
                    and_(
                        BroadcastJobModel.status == JobStatus.PENDING.value,
                        BroadcastJobModel.created_at < cutoff,
                    ),
                )
            )
            .order_by(BroadcastJobModel.created_at)
        ).all()
    return list(rows)


# ------------------------------- Recipients -------------------------------

def clear_recipients(session: Session, job_id: str) -> None:
    session.execute(
        delete(BroadcastRecipientModel)
        .where(BroadcastRecipientModel.job_id == job_id)
        .execution_options(synchronize_session=False)
    )


def insert_recipients(
    session: Session,
    job_id: str,
    contacts: Iterable[Contact],
    *,
    chunk_size: int = FANOUT_CHUNK,
) -> int:
    """Insert pending recipient rows in chunks, preserving the given order."""
    rows = [
        {
            "job_id": job_id,
            "user_id": contact.user_id,
            "contact_address": contact.contact_address,
            "status": RecipientStatus.PENDING.value,
            "created_at": datetime.utcnow(),
        }
        for contact in contacts
    ]
    for start in range(0, len(rows), chunk_size):
        session.execute(insert(BroadcastRecipientModel), rows[start : start + chunk_size])
    return len(rows)


def _claimable(now: datetime, claim_ttl: int):
    expired = now - timedelta(seconds=claim_ttl)
    return and_(
        BroadcastRecipientModel.status == RecipientStatus.PENDING.value,
        or_(BroadcastRecipientModel.claim_token.is_(None), BroadcastRecipientModel.claimed_at < expired),
    )


def claim_batch(
    session_factory: sessionmaker,
    job_id: str,
    limit: int,
    *,
    claim_ttl: int = CLAIM_TTL,
) -> List[BroadcastRecipientModel]:
    """Atomically claim up to ``limit`` pending recipients, oldest first."""
    now = datetime.utcnow()
    token = str(uuid.uuid4())
    with session_factory.begin() as session:
        candidate_ids = session.scalars(
            select(BroadcastRecipientModel.id)
            .where(BroadcastRecipientModel.job_id == job_id, _claimable(now, claim_ttl))
            .order_by(BroadcastRecipientModel.id)
            .limit(limit)
        ).all()
        if not candidate_ids:
            return []
        # Conditional update: a row claimed by someone else in the meantime is skipped.
        session.execute(
            update(BroadcastRecipientModel)
            .where(BroadcastRecipientModel.id.in_(candidate_ids), _claimable(now, claim_ttl))
            .values(claim_token=token, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
    with session_factory() as session:
        return (
            session.query(BroadcastRecipientModel)
            .filter(BroadcastRecipientModel.claim_token == token)
            .order_by(BroadcastRecipientModel.id)
            .all()
        )


def record_outcome(
    session_factory: sessionmaker,
    recipient_id: int,
    ok: bool,
    error: Optional[str] = None,
) -> bool:
    """Move a recipient from pending to its terminal status exactly once."""
    if ok:
        values = {
            "status": RecipientStatus.SENT.value,
            "sent_at": datetime.utcnow(),
            "error_message": None,
        }
    else:
        values = {"status": RecipientStatus.FAILED.value, "error_message": truncate_error(error)}
    values["claim_token"] = None
    with session_factory.begin() as session:
        result = session.execute(
            update(BroadcastRecipientModel)
            .where(
                BroadcastRecipientModel.id == recipient_id,
                BroadcastRecipientModel.status == RecipientStatus.PENDING.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
    return result.rowcount == 1


def release_claim(session_factory: sessionmaker, recipient_id: int) -> None:
    with session_factory.begin() as session:
        session.execute(
            update(BroadcastRecipientModel)
            .where(
                BroadcastRecipientModel.id == recipient_id,
                BroadcastRecipientModel.status == RecipientStatus.PENDING.value,
            )
            .values(claim_token=None, claimed_at=None)
            .execution_options(synchronize_session=False)
        )


def release_claims(session_factory: sessionmaker, claim_token: str) -> None:
    with session_factory.begin() as session:
        session.execute(
            update(BroadcastRecipientModel)
            .where(
                BroadcastRecipientModel.claim_token == claim_token,
                BroadcastRecipientModel.status == RecipientStatus.PENDING.value,
            )
            .values(claim_token=None, claimed_at=None)
            .execution_options(synchronize_session=False)
        )


def count_pending(session_factory: sessionmaker, job_id: str) -> int:
    with session_factory() as session:
        return session.scalar(
            select(func.count(BroadcastRecipientModel.id)).where(
                BroadcastRecipientModel.job_id == job_id,
                BroadcastRecipientModel.status == RecipientStatus.PENDING.value,
            )
        ) or 0


def refresh_counters(session_factory: sessionmaker, job_id: str) -> Tuple[int, int, int]:
    """Rewrite the job counters from recipient statuses in one update.

    Returns ``(processed, success, failed)``.
    """
    sent_expr = func.sum(case((BroadcastRecipientModel.status == RecipientStatus.SENT.value, 1), else_=0))
    failed_expr = func.sum(case((BroadcastRecipientModel.status == RecipientStatus.FAILED.value, 1), else_=0))
    with session_factory.begin() as session:
        sent, failed = session.execute(
            select(sent_expr, failed_expr).where(BroadcastRecipientModel.job_id == job_id)
        ).one()
        sent = int(sent or 0)
        failed = int(failed or 0)
        session.execute(
            update(BroadcastJobModel)
            .where(BroadcastJobModel.id == job_id)
            .values(processed_count=sent + failed, success_count=sent, failed_count=failed)
            .execution_options(synchronize_session=False)
        )
    return sent + failed, sent, failed


def list_recipients(
    session_factory: sessionmaker,
    job_id: str,
    *,
    status: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[BroadcastRecipientModel]:
    with session_factory() as session:
        query = session.query(BroadcastRecipientModel).filter(BroadcastRecipientModel.job_id == job_id)
        if status:
            query = query.filter(BroadcastRecipientModel.status == status)
        return query.order_by(BroadcastRecipientModel.id).offset(offset).limit(limit).all()


def job_to_dict(job: BroadcastJobModel) -> Dict[str, Any]:
    return {
        "id": job.id,
        "kind": job.kind,
        "status": job.status,
        "target": {"all_users": job.target_all_users, "plans": list(job.target_plans or [])},
        "total_recipients": job.total_recipients,
        "processed_count": job.processed_count,
        "success_count": job.success_count,
        "failed_count": job.failed_count,
        "batch_size": job.batch_size,
        "batch_delay": job.batch_delay,
        "last_error": job.last_error,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
    }


def recipient_to_dict(row: BroadcastRecipientModel) -> Dict[str, Any]:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "contact_address": row.contact_address,
        "status": row.status,
        "error_message": row.error_message,
        "sent_at": row.sent_at.isoformat() if row.sent_at else None,
    }
