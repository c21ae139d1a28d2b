from __future__ import annotations

import logging
from functools import partial
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from . import store
from .channels import call_with_timeout
from .config import CLAIM_TTL, DELIVERY_TIMEOUT, LEASE_SECONDS
from .db import BroadcastJobModel
from .models import BatchResult, DeliveryOutcome

LOGGER = logging.getLogger(__name__)


def describe_error(exc: BaseException) -> str:
    text = str(exc).strip()
    return text or exc.__class__.__name__


def _leave_pending(session_factory: sessionmaker, recipient_id: int) -> None:
    try:
        store.release_claim(session_factory, recipient_id)
    except SQLAlchemyError:
        # The claim expires on its own after the claim TTL.
        LOGGER.exception("Could not release claim on recipient %s", recipient_id)


def process_batch(
    session_factory: sessionmaker,
    job: BroadcastJobModel,
    dispatcher,
    *,
    timeout: Optional[float] = DELIVERY_TIMEOUT,
    claim_ttl: int = CLAIM_TTL,
    lease_owner: Optional[str] = None,
    lease_seconds: int = LEASE_SECONDS,
) -> BatchResult:
    """Deliver to at most ``job.batch_size`` pending recipients.

    Every recipient succeeds or fails on its own; a failing adapter call is
    recorded against that recipient and the loop moves on. Counters are
    written once, after the whole batch.

    With a ``lease_owner`` the job lease and the batch's claims are renewed
    before each delivery, so neither can expire under a long batch. If the
    lease has passed to another worker the batch stops and hands back the
    recipients it has not reached.
    """
    recipients = store.claim_batch(session_factory, job.id, job.batch_size, claim_ttl=claim_ttl)
    result = BatchResult(claimed=len(recipients))
    if not recipients:
        return result

    claim_token = recipients[0].claim_token
    deliver = partial(dispatcher.deliver, timeout=timeout) if timeout else dispatcher.deliver

    LOGGER.info("Processing batch of %d recipients for job %s", len(recipients), job.id)
    for recipient in recipients:
        if lease_owner is not None and not store.renew_lease(
            session_factory, job.id, lease_owner, lease_seconds, claim_token
        ):
            LOGGER.warning("Lost the lease on job %s mid-batch; returning unsent recipients", job.id)
            store.release_claims(session_factory, claim_token)
            result.lease_lost = True
            return result

        try:
            call_with_timeout(deliver, timeout, job.id, job.kind, job.payload, recipient)
        except Exception as exc:
            ok, error = False, describe_error(exc)
            LOGGER.warning("Delivery to recipient %s (user %s) failed: %s", recipient.id, recipient.user_id, error)
        else:
            ok, error = True, None

        try:
            recorded = store.record_outcome(session_factory, recipient.id, ok, error)
        except SQLAlchemyError:
            LOGGER.exception("Could not record outcome for recipient %s; leaving it pending", recipient.id)
            _leave_pending(session_factory, recipient.id)
            recorded = False
        else:
            if not recorded:
                LOGGER.info("Recipient %s already reached a terminal status", recipient.id)

        result.add(DeliveryOutcome(recipient_id=recipient.id, user_id=recipient.user_id, ok=ok, error=error, recorded=recorded))

    processed, succeeded, failed = store.refresh_counters(session_factory, job.id)
    LOGGER.info(
        "Batch done for job %s: %d sent, %d failed (job totals: processed=%d success=%d failed=%d)",
        job.id,
        result.succeeded,
        result.failed,
        processed,
        succeeded,
        failed,
    )
    return result
