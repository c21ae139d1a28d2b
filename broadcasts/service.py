from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional, Union

from sqlalchemy.orm import sessionmaker

from . import scheduler, sequences, store
from .channels import BroadcastDispatcher, EmailChannel, NotificationChannel, build_transport
from .config import DEFAULT_BATCH_DELAY, DEFAULT_BATCH_SIZE
from .db import get_session_factory
from .directory import UserDirectory
from .models import JobKind, RecipientStatus, StepSummary, TargetSpec
from .scheduler import Enqueue
from .templates import TemplateRenderer

LOGGER = logging.getLogger(__name__)


def build_dispatcher(session_factory: sessionmaker, directory=None, transport=None) -> BroadcastDispatcher:
    directory = directory or UserDirectory(session_factory)
    email = EmailChannel(directory, transport or build_transport(), TemplateRenderer(session_factory))
    return BroadcastDispatcher(NotificationChannel(session_factory), email)


def create_job(
    kind: Union[str, JobKind],
    target: Union[TargetSpec, Mapping[str, Any], None],
    payload: Mapping[str, Any],
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    batch_delay: float = DEFAULT_BATCH_DELAY,
    session_factory: Optional[sessionmaker] = None,
) -> str:
    """Create a pending broadcast job and return its id."""
    session_factory = session_factory or get_session_factory()
    kind_value = kind.value if isinstance(kind, JobKind) else str(kind or "").lower()
    if not isinstance(target, TargetSpec):
        target = TargetSpec.from_dict(target)
    return store.create_job(
        session_factory,
        kind_value,
        target,
        dict(payload or {}),
        batch_size=batch_size,
        batch_delay=batch_delay,
    )


def trigger_job(
    job_id: str,
    *,
    enqueue: Optional[Enqueue] = None,
    session_factory: Optional[sessionmaker] = None,
    directory=None,
    dispatcher: Optional[BroadcastDispatcher] = None,
) -> StepSummary:
    session_factory = session_factory or get_session_factory()
    directory = directory or UserDirectory(session_factory)
    dispatcher = dispatcher or build_dispatcher(session_factory, directory)
    return scheduler.run_step(
        session_factory,
        job_id,
        directory=directory,
        dispatcher=dispatcher,
        enqueue=enqueue,
    )


def cancel_job(job_id: str, *, session_factory: Optional[sessionmaker] = None) -> bool:
    return scheduler.cancel_job(session_factory or get_session_factory(), job_id)


def job_report(job_id: str, *, failures_limit: int = 100, session_factory: Optional[sessionmaker] = None) -> Dict[str, Any]:
    """Live counters plus the itemized list of failed recipients."""
    session_factory = session_factory or get_session_factory()
    job = store.load_job(session_factory, job_id)
    report = store.job_to_dict(job)
    report["pending"] = store.count_pending(session_factory, job_id)
    report["failures"] = [
        store.recipient_to_dict(row)
        for row in store.list_recipients(
            session_factory, job_id, status=RecipientStatus.FAILED.value, limit=failures_limit
        )
    ]
    return report


def enroll_user(sequence_key: str, user_id: str, *, session_factory: Optional[sessionmaker] = None) -> int:
    return sequences.enroll_user(session_factory or get_session_factory(), sequence_key, user_id)


def process_sequences(*, session_factory: Optional[sessionmaker] = None, directory=None, transport=None) -> Dict[str, int]:
    session_factory = session_factory or get_session_factory()
    return sequences.process_due_enrollments(
        session_factory,
        directory or UserDirectory(session_factory),
        transport or build_transport(),
    )
