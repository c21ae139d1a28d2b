from datetime import datetime, timedelta

import pytest

from broadcasts import scheduler, store
from broadcasts.channels import BroadcastDispatcher, EmailChannel, NotificationChannel
from broadcasts.db import NotificationModel
from broadcasts.errors import FanOutError, JobNotFound
from broadcasts.models import TargetSpec

from conftest import NOTIFICATION_PAYLOAD, FakeDirectory, FakeDispatcher, RecordingTransport, make_users


class Queue:
    def __init__(self, fail=False):
        self.items = []
        self.fail = fail

    def __call__(self, job_id, delay):
        if self.fail:
            raise ConnectionError("broker unreachable")
        self.items.append((job_id, delay))


def _dispatcher(session_factory, directory):
    return BroadcastDispatcher(NotificationChannel(session_factory), EmailChannel(directory, RecordingTransport()))


def _step(session_factory, job_id, directory, dispatcher=None, enqueue=None, **kwargs):
    return scheduler.run_step(
        session_factory,
        job_id,
        directory=directory,
        dispatcher=dispatcher or _dispatcher(session_factory, directory),
        enqueue=enqueue,
        **kwargs,
    )


def test_notification_campaign_completes_over_two_triggers(session_factory):
    directory = FakeDirectory(make_users(3))
    job_id = store.create_job(
        session_factory, "notification", TargetSpec.everyone(), NOTIFICATION_PAYLOAD, batch_size=2, batch_delay=1.5
    )
    queue = Queue()

    first = _step(session_factory, job_id, directory, enqueue=queue)

    assert first.status == "processing"
    assert first.total_recipients == 3
    assert first.processed == 2
    assert first.remaining == 1
    assert first.rescheduled is True
    assert queue.items == [(job_id, 1.5)]
    assert store.load_job(session_factory, job_id).started_at is not None

    second = _step(session_factory, job_id, directory, enqueue=queue)

    assert second.status == "completed"
    assert (second.processed, second.success_count, second.failed_count) == (3, 3, 0)
    assert second.remaining == 0
    assert len(queue.items) == 1
    job = store.load_job(session_factory, job_id)
    assert job.completed_at is not None

    with session_factory() as session:
        notifications = session.query(NotificationModel).filter_by(broadcast_job_id=job_id).all()
    assert sorted(n.user_id for n in notifications) == ["user-1", "user-2", "user-3"]
    assert notifications[0].title == NOTIFICATION_PAYLOAD["title"]


def test_retriggering_completed_job_is_noop(session_factory):
    directory = FakeDirectory(make_users(2))
    job_id = store.create_job(session_factory, "notification", TargetSpec.everyone(), NOTIFICATION_PAYLOAD)
    _step(session_factory, job_id, directory)
    before = store.load_job(session_factory, job_id)
    dispatcher = FakeDispatcher()

    summary = _step(session_factory, job_id, directory, dispatcher=dispatcher)

    after = store.load_job(session_factory, job_id)
    assert summary.noop is True
    assert summary.status == "completed"
    assert dispatcher.calls == []
    assert (after.processed_count, after.success_count, after.failed_count) == (
        before.processed_count,
        before.success_count,
        before.failed_count,
    )
    assert after.completed_at == before.completed_at


def test_processing_job_with_no_pending_recipients_completes(session_factory):
    directory = FakeDirectory(make_users(2))
    job_id = store.create_job(session_factory, "notification", TargetSpec.everyone(), NOTIFICATION_PAYLOAD)
    _step(session_factory, job_id, directory, dispatcher=FakeDispatcher())
    # Simulate a crash between the last batch and completion.
    with session_factory.begin() as session:
        job = store.get_job(session, job_id)
        job.status = "processing"
        job.completed_at = None
    statuses_before = [(r.id, r.status, r.sent_at) for r in store.list_recipients(session_factory, job_id)]

    summary = _step(session_factory, job_id, directory, dispatcher=FakeDispatcher())

    assert summary.status == "completed"
    assert [(r.id, r.status, r.sent_at) for r in store.list_recipients(session_factory, job_id)] == statuses_before


def test_empty_audience_completes_immediately(session_factory):
    directory = FakeDirectory(make_users(2))
    job_id = store.create_job(session_factory, "notification", TargetSpec.tiers("agency"), NOTIFICATION_PAYLOAD)

    summary = _step(session_factory, job_id, directory)

    assert summary.status == "completed"
    assert summary.total_recipients == 0


def test_fan_out_error_keeps_job_pending(session_factory):
    directory = FakeDirectory(make_users(2))
    directory.unavailable = True
    job_id = store.create_job(session_factory, "notification", TargetSpec.everyone(), NOTIFICATION_PAYLOAD)

    with pytest.raises(FanOutError):
        _step(session_factory, job_id, directory)

    job = store.load_job(session_factory, job_id)
    assert job.status == "pending"
    assert job.lease_owner is None

    directory.unavailable = False
    assert _step(session_factory, job_id, directory).status == "completed"


def test_unknown_job_raises(session_factory):
    with pytest.raises(JobNotFound):
        _step(session_factory, "missing", FakeDirectory([]))


def test_leased_job_is_reported_busy(session_factory):
    directory = FakeDirectory(make_users(2))
    job_id = store.create_job(session_factory, "notification", TargetSpec.everyone(), NOTIFICATION_PAYLOAD)
    assert store.acquire_lease(session_factory, job_id, "other-worker", 300)
    dispatcher = FakeDispatcher()

    summary = _step(session_factory, job_id, directory, dispatcher=dispatcher)

    assert summary.busy is True
    assert dispatcher.calls == []
    assert store.load_job(session_factory, job_id).status == "pending"


def test_expired_lease_can_be_taken_over(session_factory):
    directory = FakeDirectory(make_users(1))
    job_id = store.create_job(session_factory, "notification", TargetSpec.everyone(), NOTIFICATION_PAYLOAD)
    assert store.acquire_lease(session_factory, job_id, "dead-worker", -1)

    summary = _step(session_factory, job_id, directory)

    assert summary.status == "completed"


def test_cancelled_job_is_not_rescheduled(session_factory):
    directory = FakeDirectory(make_users(4))
    job_id = store.create_job(
        session_factory, "notification", TargetSpec.everyone(), NOTIFICATION_PAYLOAD, batch_size=2
    )
    queue = Queue()

    class CancellingDispatcher(FakeDispatcher):
        def deliver(self, job_id, kind, payload, recipient, timeout=None):
            super().deliver(job_id, kind, payload, recipient)
            scheduler.cancel_job(session_factory, job_id)

    dispatcher = CancellingDispatcher()
    summary = _step(session_factory, job_id, directory, dispatcher=dispatcher, enqueue=queue)

    assert summary.status == "failed"
    assert summary.rescheduled is False
    assert queue.items == []
    assert store.load_job(session_factory, job_id).last_error == "cancelled"

    again = _step(session_factory, job_id, directory, enqueue=queue)
    assert again.noop is True
    # The batch stops at the next recipient once the job is cancelled.
    assert dispatcher.calls == ["user-1"]
    assert store.count_pending(session_factory, job_id) == 3
    assert store.load_job(session_factory, job_id).processed_count == 1


def test_cancel_terminal_job_returns_false(session_factory):
    directory = FakeDirectory(make_users(1))
    job_id = store.create_job(session_factory, "notification", TargetSpec.everyone(), NOTIFICATION_PAYLOAD)
    _step(session_factory, job_id, directory)

    assert scheduler.cancel_job(session_factory, job_id) is False
    assert store.load_job(session_factory, job_id).status == "completed"


def test_scheduling_failure_leaves_job_processing(session_factory):
    directory = FakeDirectory(make_users(3))
    job_id = store.create_job(
        session_factory, "notification", TargetSpec.everyone(), NOTIFICATION_PAYLOAD, batch_size=1
    )

    summary = _step(session_factory, job_id, directory, enqueue=Queue(fail=True))

    assert summary.status == "processing"
    assert summary.rescheduled is False
    assert summary.remaining == 2


def test_resume_stalled_enqueues_old_jobs(session_factory):
    directory = FakeDirectory(make_users(3))
    stalled = store.create_job(session_factory, "notification", TargetSpec.everyone(), NOTIFICATION_PAYLOAD, batch_size=1)
    _step(session_factory, stalled, directory)
    done = store.create_job(session_factory, "notification", TargetSpec.everyone(), NOTIFICATION_PAYLOAD)
    _step(session_factory, done, directory)
    queue = Queue()

    assert scheduler.resume_stalled(session_factory, queue, horizon=3600) == 0
    resumed = scheduler.resume_stalled(session_factory, queue, horizon=-60)

    assert resumed == 1
    assert queue.items == [(stalled, 0)]


LONG_AGO = datetime(2000, 1, 1)


class BackdatingDispatcher(FakeDispatcher):
    """Ages the lease and claims after each send, as a very slow batch would."""

    def __init__(self, session_factory):
        super().__init__()
        self.session_factory = session_factory
        self.observed = []

    def deliver(self, job_id, kind, payload, recipient, timeout=None):
        super().deliver(job_id, kind, payload, recipient)
        job = store.load_job(self.session_factory, job_id)
        claimed = [r for r in store.list_recipients(self.session_factory, job_id) if r.claim_token]
        self.observed.append(
            {
                "lease_expires_at": job.lease_expires_at,
                "claimed_at": [r.claimed_at for r in claimed],
                "other_claims": store.claim_batch(self.session_factory, job_id, 10),
                "other_lease": store.acquire_lease(self.session_factory, job_id, "other-worker", 300),
            }
        )
        with self.session_factory.begin() as session:
            job = store.get_job(session, job_id)
            job.lease_expires_at = LONG_AGO
            for row in job.recipients:
                if row.claim_token:
                    row.claimed_at = LONG_AGO


def test_lease_and_claims_are_renewed_during_a_long_batch(session_factory):
    directory = FakeDirectory(make_users(3))
    job_id = store.create_job(session_factory, "notification", TargetSpec.everyone(), NOTIFICATION_PAYLOAD, batch_size=3)
    dispatcher = BackdatingDispatcher(session_factory)

    summary = _step(session_factory, job_id, directory, dispatcher=dispatcher, timeout=None)

    assert summary.status == "completed"
    assert dispatcher.calls == ["user-1", "user-2", "user-3"]
    for seen in dispatcher.observed[1:]:
        assert seen["lease_expires_at"] > datetime.utcnow()
        assert seen["claimed_at"] and all(at > LONG_AGO for at in seen["claimed_at"])
        assert seen["other_claims"] == []
        assert seen["other_lease"] is False


def test_step_stops_when_lease_is_taken_over_mid_batch(session_factory):
    directory = FakeDirectory(make_users(3))
    job_id = store.create_job(session_factory, "notification", TargetSpec.everyone(), NOTIFICATION_PAYLOAD, batch_size=3)
    queue = Queue()

    class TakeoverDispatcher(FakeDispatcher):
        def deliver(self, job_id, kind, payload, recipient, timeout=None):
            super().deliver(job_id, kind, payload, recipient)
            # Our lease lapses and a second worker picks the job up.
            with session_factory.begin() as session:
                job = store.get_job(session, job_id)
                job.lease_owner = "other-worker"
                job.lease_expires_at = datetime.utcnow() + timedelta(seconds=300)

    dispatcher = TakeoverDispatcher()
    summary = _step(session_factory, job_id, directory, dispatcher=dispatcher, enqueue=queue, timeout=None)

    assert dispatcher.calls == ["user-1"]
    assert summary.busy is True
    assert summary.rescheduled is False
    assert summary.status == "processing"
    assert queue.items == []
    job = store.load_job(session_factory, job_id)
    assert job.lease_owner == "other-worker"
    # Unsent recipients are handed back unclaimed for the new lease holder.
    assert [r.user_id for r in store.claim_batch(session_factory, job_id, 10)] == ["user-2", "user-3"]
