from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from . import store
from .config import FANOUT_CHUNK
from .db import BroadcastJobModel
from .errors import DirectoryUnavailable, FanOutError, JobNotFound
from .models import Contact, TargetSpec

LOGGER = logging.getLogger(__name__)


def _unique_contacts(contacts: Iterable[Contact]) -> List[Contact]:
    seen = set()
    unique: List[Contact] = []
    for contact in contacts:
        if not contact.user_id or contact.user_id in seen:
            continue
        seen.add(contact.user_id)
        unique.append(contact)
    return unique


def resolve_audience(target: TargetSpec, directory) -> List[Contact]:
    """Compute the recipients a target spec covers right now.

    Users without an active subscription count as the free tier, so a
    target that names ``free`` picks them up alongside matching plans.
    """
    users = directory.list_active_users()
    if target.targets_everyone:
        return _unique_contacts(users)

    plans = directory.active_plans()
    wanted = set(target.plans)
    selected: List[Contact] = []
    for contact in users:
        plan = plans.get(contact.user_id)
        if plan is None:
            if target.includes_free:
                selected.append(contact)
        elif plan in wanted:
            selected.append(contact)
    return _unique_contacts(selected)


def fan_out(session_factory: sessionmaker, job_id: str, directory, *, chunk_size: int = FANOUT_CHUNK) -> int:
    """Expand the job's audience into recipient rows, all or nothing.

    Returns the frozen recipient total. Raises FanOutError when the
    population or the write is unavailable; the job is left pending.
    """
    with session_factory() as session:
        job = session.get(BroadcastJobModel, job_id)
        if job is None:
            raise JobNotFound(job_id)
        if job.fanned_out_at is not None:
            return job.total_recipients
        target = TargetSpec.from_dict({"all_users": job.target_all_users, "plans": job.target_plans or []})

    try:
        contacts = resolve_audience(target, directory)
    except DirectoryUnavailable as exc:
        store.record_fanout_failure(session_factory, job_id, f"Recipient lookup failed: {exc}")
        raise FanOutError(str(exc)) from exc

    try:
        with session_factory.begin() as session:
            job = session.get(BroadcastJobModel, job_id, with_for_update=True)
            if job.fanned_out_at is not None:
                return job.total_recipients
            store.clear_recipients(session, job_id)
            store.insert_recipients(session, job_id, contacts, chunk_size=chunk_size)
            job.total_recipients = len(contacts)
            job.fanned_out_at = datetime.utcnow()
    except SQLAlchemyError as exc:
        LOGGER.exception("Fan-out write failed for job %s", job_id)
        store.record_fanout_failure(session_factory, job_id, f"Recipient write failed: {exc}")
        raise FanOutError(str(exc)) from exc

    LOGGER.info("Fanned out job %s to %d recipients", job_id, len(contacts))
    return len(contacts)
