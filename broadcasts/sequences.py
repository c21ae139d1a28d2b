"""Multi-step nurture sequences.

Each enrollment walks the active steps of its sequence in order. A step's
skip rule is checked against the account's plan right before sending, so an
account that upgraded between steps ends ``converted`` instead of receiving
the rest of the sequence.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from .channels import call_with_timeout
from .config import (
    DEFAULT_LOCALE,
    DELIVERY_TIMEOUT,
    EARLY_ACCESS_TOTAL_SPOTS,
    MAIL_FROM_NAME,
    SEQUENCE_BATCH_LIMIT,
    SEQUENCE_MAX_ATTEMPTS,
    SITE_URL,
)
from .db import EmailSequenceModel, EmailSequenceStepModel, EnrollmentModel
from .errors import DirectoryUnavailable, MissingContactAddress, SequenceNotFound, TemplateRenderingError
from .models import AccountState, EnrollmentStatus
from .processor import describe_error
from .rules import parse_rule, should_skip
from .store import truncate_error
from .templates import TemplateRenderer, localize, normalize_locale, render_string, wrap_html

LOGGER = logging.getLogger(__name__)


def create_sequence(session_factory: sessionmaker, key: str, steps: Iterable[Mapping[str, Any]], *, name: Optional[str] = None) -> int:
    with session_factory.begin() as session:
        sequence = EmailSequenceModel(key=key, name=name or key)
        for order, step in enumerate(steps, start=1):
            rule = step.get("skip_rule")
            if rule is not None:
                parse_rule(rule)
            sequence.steps.append(
                EmailSequenceStepModel(
                    step_order=step.get("step_order", order),
                    delay_hours=int(step.get("delay_hours", 0)),
                    subject=dict(step["subject"]),
                    body=dict(step["body"]),
                    template_key=step.get("template_key"),
                    is_active=step.get("is_active", True),
                    skip_rule=rule,
                )
            )
        session.add(sequence)
        session.flush()
        return sequence.id


def _active_steps(session, sequence_id: int) -> List[EmailSequenceStepModel]:
    return (
        session.query(EmailSequenceStepModel)
        .filter(EmailSequenceStepModel.sequence_id == sequence_id, EmailSequenceStepModel.is_active.is_(True))
        .order_by(EmailSequenceStepModel.step_order)
        .all()
    )


def _step_after(steps: List[EmailSequenceStepModel], order: int) -> Optional[EmailSequenceStepModel]:
    return next((step for step in steps if step.step_order > order), None)


def enroll_user(session_factory: sessionmaker, sequence_key: str, user_id: str, *, now: Optional[datetime] = None) -> int:
    """Enroll a user; enrolling twice returns the existing enrollment."""
    now = now or datetime.utcnow()
    with session_factory() as session:
        sequence = (
            session.query(EmailSequenceModel)
            .filter(EmailSequenceModel.key == sequence_key, EmailSequenceModel.is_active.is_(True))
            .first()
        )
        if sequence is None:
            raise SequenceNotFound(sequence_key)
        existing = (
            session.query(EnrollmentModel)
            .filter(EnrollmentModel.user_id == user_id, EnrollmentModel.sequence_id == sequence.id)
            .first()
        )
        if existing is not None:
            return existing.id
        first = _step_after(_active_steps(session, sequence.id), 0)
        enrollment = EnrollmentModel(
            user_id=user_id,
            sequence_id=sequence.id,
            current_step=0,
            status=EnrollmentStatus.ACTIVE.value if first else EnrollmentStatus.COMPLETED.value,
            next_send_at=now + timedelta(hours=first.delay_hours) if first else None,
            completed_at=None if first else now,
        )
        session.add(enrollment)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            existing = (
                session.query(EnrollmentModel)
                .filter(EnrollmentModel.user_id == user_id, EnrollmentModel.sequence_id == sequence.id)
                .one()
            )
            return existing.id
        LOGGER.info("Enrolled user %s in sequence %s", user_id, sequence_key)
        return enrollment.id


def compose_step(
    step: EmailSequenceStepModel,
    profile: Mapping[str, Any],
    renderer: TemplateRenderer,
    *,
    now: datetime,
    spots_remaining: int = EARLY_ACCESS_TOTAL_SPOTS,
) -> Tuple[str, str]:
    locale = normalize_locale(profile.get("preferred_language"))
    subject = localize(step.subject, locale, DEFAULT_LOCALE) or ""
    body = localize(step.body, locale, DEFAULT_LOCALE) or ""
    if step.template_key:
        try:
            subject, body = renderer.load(step.template_key)
        except TemplateRenderingError:
            LOGGER.warning("Template %s not found; sending the step text instead", step.template_key)

    first_name = (profile.get("full_name") or "").split(" ")[0]
    data: Dict[str, Any] = {
        "name": f", {first_name}" if first_name else "",
        "fromName": MAIL_FROM_NAME,
        "siteUrl": SITE_URL,
        "dashboardUrl": f"{SITE_URL}/dashboard",
        "dashboard_url": f"{SITE_URL}/dashboard",
        "earlyAccessUrl": f"{SITE_URL}/pricing",
        "early_access_url": f"{SITE_URL}/pricing",
        "spotsRemaining": spots_remaining,
        "spots_remaining": spots_remaining,
        "year": now.year,
    }
    return render_string(subject, data), wrap_html(render_string(body, data), year=now.year)


def _advance(
    session_factory, enrollment_id: int, directory, transport, renderer, now: datetime, spots_remaining: int
) -> str:
    with session_factory() as session:
        enrollment = session.get(EnrollmentModel, enrollment_id)
        if enrollment is None or enrollment.status != EnrollmentStatus.ACTIVE.value:
            return "skipped"
        steps = _active_steps(session, enrollment.sequence_id)
        step = _step_after(steps, enrollment.current_step)

        if step is None:
            enrollment.status = EnrollmentStatus.COMPLETED.value
            enrollment.completed_at = now
            session.commit()
            LOGGER.info("Enrollment %s completed (no more steps)", enrollment_id)
            return "completed"

        account = AccountState(user_id=enrollment.user_id, plan_tier=directory.get_active_plan(enrollment.user_id))
        if should_skip(parse_rule(step.skip_rule), account):
            enrollment.status = EnrollmentStatus.CONVERTED.value
            enrollment.completed_at = now
            session.commit()
            LOGGER.info("Enrollment %s converted (user on %s)", enrollment_id, account.plan_tier)
            return "converted"

        profile = directory.get_profile(enrollment.user_id)
        address = profile.get("email")
        if not address:
            raise MissingContactAddress(f"No contact address for user {enrollment.user_id}")
        subject, body = compose_step(step, profile, renderer, now=now, spots_remaining=spots_remaining)
        call_with_timeout(partial(transport.deliver, timeout=DELIVERY_TIMEOUT), DELIVERY_TIMEOUT, address, subject, body)

        following = _step_after(steps, step.step_order)
        enrollment.current_step = step.step_order
        enrollment.attempts = 0
        enrollment.last_error = None
        if following is not None:
            enrollment.next_send_at = now + timedelta(hours=following.delay_hours)
        else:
            enrollment.status = EnrollmentStatus.COMPLETED.value
            enrollment.completed_at = now
        session.commit()
        LOGGER.info("Sent step %d of enrollment %s to %s", step.step_order, enrollment_id, address)
        return "sent"


def _record_failure(session_factory, enrollment_id: int, error: str, now: datetime) -> None:
    with session_factory.begin() as session:
        enrollment = session.get(EnrollmentModel, enrollment_id)
        if enrollment is None:
            return
        enrollment.attempts = (enrollment.attempts or 0) + 1
        enrollment.last_error = truncate_error(error)
        if enrollment.attempts >= SEQUENCE_MAX_ATTEMPTS:
            enrollment.status = EnrollmentStatus.FAILED.value
            enrollment.completed_at = now
            LOGGER.error("Enrollment %s failed after %d attempts", enrollment_id, enrollment.attempts)


def process_due_enrollments(
    session_factory: sessionmaker,
    directory,
    transport,
    *,
    renderer: Optional[TemplateRenderer] = None,
    limit: int = SEQUENCE_BATCH_LIMIT,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """Send the next step for every enrollment that is due."""
    now = now or datetime.utcnow()
    renderer = renderer or TemplateRenderer(session_factory)
    try:
        spots_remaining = max(0, EARLY_ACCESS_TOTAL_SPOTS - directory.count_paid_subscribers())
    except DirectoryUnavailable:
        LOGGER.warning("Could not count paid subscribers; using the full early access allocation")
        spots_remaining = EARLY_ACCESS_TOTAL_SPOTS
    with session_factory() as session:
        due_ids = [
            row.id
            for row in session.query(EnrollmentModel.id)
            .filter(EnrollmentModel.status == EnrollmentStatus.ACTIVE.value, EnrollmentModel.next_send_at <= now)
            .order_by(EnrollmentModel.next_send_at, EnrollmentModel.id)
            .limit(limit)
            .all()
        ]

    counts = {"sent": 0, "converted": 0, "completed": 0, "failed": 0}
    for enrollment_id in due_ids:
        try:
            outcome = _advance(session_factory, enrollment_id, directory, transport, renderer, now, spots_remaining)
        except Exception as exc:
            error = describe_error(exc)
            LOGGER.warning("Error processing enrollment %s: %s", enrollment_id, error)
            _record_failure(session_factory, enrollment_id, error, now)
            counts["failed"] += 1
            continue
        if outcome in counts:
            counts[outcome] += 1

    LOGGER.info("Sequence queue processed: %s", counts)
    return counts
