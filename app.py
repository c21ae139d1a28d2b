# app.py
import logging
import os

from flask import Flask, jsonify, request

from broadcasts import service, store
from broadcasts.db import get_session_factory
from broadcasts.errors import FanOutError, JobNotFound, SequenceNotFound
from broadcasts.models import RecipientStatus
from broadcasts.tasks import process_broadcast
from celery_app import celery_app  # noqa: F401  binds shared tasks to the configured broker

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
LOGGER = logging.getLogger(__name__)

app = Flask(__name__)
app.secret_key = os.getenv("SECRET_KEY", "dev-only-key")

APP_MODE = os.environ.get("APP_MODE", "prod").lower()
MAX_PAGE_SIZE = 500


def enqueue_job(job_id: str, delay: float = 0.0) -> None:
    process_broadcast.apply_async((job_id,), countdown=delay)


def _json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _int_arg(name: str, default: int, maximum: int) -> int:
    try:
        value = int(request.args.get(name, default))
    except (TypeError, ValueError):
        return default
    return max(0, min(value, maximum))


@app.errorhandler(JobNotFound)
def job_not_found(exc):
    return jsonify({"error": str(exc)}), 404


@app.get("/healthz")
def healthz():
    return {"ok": True, "mode": APP_MODE}, 200


# ------------------------------- Broadcasts -------------------------------
@app.post("/api/broadcasts")
def create_broadcast():
    data = _json_body()
    try:
        job_id = service.create_job(
            data.get("kind"),
            data.get("target"),
            data.get("payload") or {},
            batch_size=data.get("batch_size", service.DEFAULT_BATCH_SIZE),
            batch_delay=data.get("batch_delay", service.DEFAULT_BATCH_DELAY),
        )
    except (TypeError, ValueError) as exc:
        return jsonify({"error": str(exc)}), 400

    try:
        enqueue_job(job_id)
    except Exception:
        # The stalled-job scan picks up pending jobs that never started.
        LOGGER.exception("Could not enqueue broadcast job %s", job_id)
    return jsonify({"job_id": job_id, "status": "pending"}), 201


@app.post("/api/broadcasts/<job_id>/trigger")
def trigger_broadcast(job_id):
    try:
        summary = service.trigger_job(job_id, enqueue=enqueue_job)
    except FanOutError as exc:
        return jsonify({"error": f"Recipient resolution failed: {exc}", "job_id": job_id}), 503
    return jsonify(summary.to_dict())


@app.post("/api/broadcasts/<job_id>/cancel")
def cancel_broadcast(job_id):
    cancelled = service.cancel_job(job_id)
    if not cancelled:
        return jsonify({"error": "Job already finished", "job_id": job_id}), 409
    return jsonify({"job_id": job_id, "status": "failed", "cancelled": True})


@app.get("/api/broadcasts/<job_id>")
def broadcast_report(job_id):
    return jsonify(service.job_report(job_id))


@app.get("/api/broadcasts/<job_id>/recipients")
def broadcast_recipients(job_id):
    session_factory = get_session_factory()
    store.load_job(session_factory, job_id)
    status = (request.args.get("status") or "").lower() or None
    if status and status not in {s.value for s in RecipientStatus}:
        return jsonify({"error": "invalid status"}), 400
    rows = store.list_recipients(
        session_factory,
        job_id,
        status=status,
        limit=_int_arg("limit", 100, MAX_PAGE_SIZE) or 100,
        offset=_int_arg("offset", 0, 10**9),
    )
    return jsonify([store.recipient_to_dict(row) for row in rows])


# ------------------------------- Sequences -------------------------------
@app.post("/api/sequences/<key>/enrollments")
def enroll_in_sequence(key):
    user_id = str(_json_body().get("user_id") or "").strip()
    if not user_id:
        return jsonify({"error": "Missing user_id"}), 400
    try:
        enrollment_id = service.enroll_user(key, user_id)
    except SequenceNotFound as exc:
        return jsonify({"error": str(exc)}), 404
    return jsonify({"enrollment_id": enrollment_id, "user_id": user_id}), 201


if __name__ == "__main__":
    app.run(debug=APP_MODE != "prod")
