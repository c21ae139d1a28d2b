import pytest

from broadcasts import resolver, store
from broadcasts.db import BroadcastRecipientModel
from broadcasts.errors import FanOutError
from broadcasts.models import TargetSpec

from conftest import NOTIFICATION_PAYLOAD, FakeDirectory, make_users


PLANS = {"user-2": "creator", "user-3": "agency", "user-4": "free"}


def _ids(contacts):
    return [c.user_id for c in contacts]


def test_all_users_targets_every_active_account():
    directory = FakeDirectory(make_users(4), plans=PLANS)
    contacts = resolver.resolve_audience(TargetSpec.everyone(), directory)
    assert _ids(contacts) == ["user-1", "user-2", "user-3", "user-4"]


def test_free_tier_includes_users_without_paid_subscription():
    directory = FakeDirectory(make_users(5), plans=PLANS)
    contacts = resolver.resolve_audience(TargetSpec.tiers("free"), directory)
    # user-1 and user-5 have no subscription, user-4 is explicitly on free.
    assert _ids(contacts) == ["user-1", "user-4", "user-5"]


def test_paid_tier_excludes_free_users():
    directory = FakeDirectory(make_users(5), plans=PLANS)
    contacts = resolver.resolve_audience(TargetSpec.tiers("creator", "agency"), directory)
    assert _ids(contacts) == ["user-2", "user-3"]


def test_duplicate_users_resolve_once():
    directory = FakeDirectory([("user-1", "a@example.com"), ("user-1", "a@example.com"), ("user-2", None)])
    contacts = resolver.resolve_audience(TargetSpec.everyone(), directory)
    assert _ids(contacts) == ["user-1", "user-2"]


@pytest.mark.parametrize(
    "raw, everyone, plans",
    [
        (None, True, ()),
        ({"all_users": True, "plans": ["pro"]}, True, ("pro",)),
        ({"all_users": False, "plans": []}, True, ()),
        ({"plans": "Free, Creator"}, False, ("free", "creator")),
    ],
)
def test_target_spec_from_dict(raw, everyone, plans):
    target = TargetSpec.from_dict(raw)
    assert target.targets_everyone is everyone
    if not everyone:
        assert target.plans == plans


@pytest.mark.parametrize(
    "raw",
    [
        ["free"],
        "all",
        {"tiers": [""]},
        {"plans": " , "},
        {"plans": {"free": True}},
    ],
)
def test_target_spec_rejects_unusable_targets(raw):
    with pytest.raises(ValueError):
        TargetSpec.from_dict(raw)


def test_blank_tier_names_never_target_everyone():
    with pytest.raises(ValueError):
        TargetSpec.tiers("", "  ")


def _create(session_factory, target=None):
    return store.create_job(session_factory, "notification", target or TargetSpec.everyone(), NOTIFICATION_PAYLOAD)


def test_fan_out_inserts_in_chunks_preserving_order(session_factory):
    job_id = _create(session_factory)
    directory = FakeDirectory(make_users(5))

    total = resolver.fan_out(session_factory, job_id, directory, chunk_size=2)

    assert total == 5
    rows = store.list_recipients(session_factory, job_id)
    assert [r.user_id for r in rows] == ["user-1", "user-2", "user-3", "user-4", "user-5"]
    assert all(r.status == "pending" for r in rows)
    assert rows[0].contact_address == "user1@example.com"
    job = store.load_job(session_factory, job_id)
    assert job.total_recipients == 5
    assert job.fanned_out_at is not None


def test_fan_out_runs_once(session_factory):
    job_id = _create(session_factory)
    directory = FakeDirectory(make_users(3))

    resolver.fan_out(session_factory, job_id, directory)
    directory.users.append(("late-user", "late@example.com"))
    total = resolver.fan_out(session_factory, job_id, directory)

    assert total == 3
    with session_factory() as session:
        assert session.query(BroadcastRecipientModel).filter_by(job_id=job_id).count() == 3


def test_fan_out_failure_leaves_job_pending(session_factory):
    job_id = _create(session_factory)
    directory = FakeDirectory(make_users(3))
    directory.unavailable = True

    with pytest.raises(FanOutError):
        resolver.fan_out(session_factory, job_id, directory)

    job = store.load_job(session_factory, job_id)
    assert job.status == "pending"
    assert job.total_recipients == 0
    assert job.fanout_attempts == 1
    assert store.list_recipients(session_factory, job_id) == []

    directory.unavailable = False
    assert resolver.fan_out(session_factory, job_id, directory) == 3


def test_fan_out_gives_up_after_max_attempts(session_factory, monkeypatch):
    monkeypatch.setattr(store, "MAX_FANOUT_ATTEMPTS", 2)
    job_id = _create(session_factory)
    directory = FakeDirectory([])
    directory.unavailable = True

    for _ in range(2):
        with pytest.raises(FanOutError):
            resolver.fan_out(session_factory, job_id, directory)

    job = store.load_job(session_factory, job_id)
    assert job.status == "failed"
    assert "Recipient lookup failed" in job.last_error
