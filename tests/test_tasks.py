from broadcasts import service, store, tasks
from broadcasts.db import UserModel
from broadcasts.errors import DirectoryUnavailable

from conftest import NOTIFICATION_PAYLOAD


def _seed_users(session_factory, count):
    with session_factory.begin() as session:
        for i in range(1, count + 1):
            session.add(UserModel(id=f"user-{i}", email=f"user{i}@example.com"))


def test_process_broadcast_reschedules_until_done(session_factory, monkeypatch):
    _seed_users(session_factory, 3)
    job_id = service.create_job("notification", {"all_users": True}, NOTIFICATION_PAYLOAD, batch_size=2, batch_delay=0.5)
    queued = []
    monkeypatch.setattr(tasks, "_enqueue_next", lambda jid, delay: queued.append((jid, delay)))

    first = tasks.process_broadcast(job_id)
    assert first["status"] == "processing"
    assert first["rescheduled"] is True
    assert queued == [(job_id, 0.5)]

    second = tasks.process_broadcast(job_id)
    assert second["status"] == "completed"
    assert len(queued) == 1


def test_process_broadcast_handles_unknown_job(session_factory):
    assert tasks.process_broadcast("missing") == {"job_id": "missing", "error": "not_found"}


def test_process_broadcast_survives_fan_out_error(session_factory, monkeypatch):
    job_id = service.create_job("notification", None, NOTIFICATION_PAYLOAD)

    def broken_users(self):
        raise DirectoryUnavailable("down")

    monkeypatch.setattr(service.UserDirectory, "list_active_users", broken_users)

    result = tasks.process_broadcast(job_id)

    assert "down" in result["error"]
    assert store.load_job(session_factory, job_id).status == "pending"


def test_resume_stalled_broadcasts_uses_queue(session_factory, monkeypatch):
    _seed_users(session_factory, 1)
    job_id = service.create_job("notification", None, NOTIFICATION_PAYLOAD)
    queued = []
    monkeypatch.setattr(tasks, "_enqueue_next", lambda jid, delay: queued.append((jid, delay)))
    monkeypatch.setattr(tasks, "STALL_HORIZON", -60)

    assert tasks.resume_stalled_broadcasts() == "1"
    assert queued == [(job_id, 0)]
