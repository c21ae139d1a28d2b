import pytest

from broadcasts import db
from broadcasts.errors import DeliveryError, DirectoryUnavailable
from broadcasts.models import Contact


class FakeDirectory:
    """In-memory user/plan lookup."""

    def __init__(self, users, plans=None, locales=None, names=None):
        self.users = list(users)
        self.plans = dict(plans or {})
        self.locales = dict(locales or {})
        self.names = dict(names or {})
        self.unavailable = False

    def list_active_users(self):
        if self.unavailable:
            raise DirectoryUnavailable("user store offline")
        return [Contact(user_id=uid, contact_address=addr) for uid, addr in self.users]

    def active_plans(self):
        if self.unavailable:
            raise DirectoryUnavailable("subscription store offline")
        return dict(self.plans)

    def get_active_plan(self, user_id):
        return self.plans.get(user_id)

    def count_paid_subscribers(self):
        return sum(1 for plan in self.plans.values() if plan in ("creator", "agency"))

    def get_locale(self, user_id):
        return self.locales.get(user_id)

    def get_profile(self, user_id):
        address = dict(self.users).get(user_id)
        return {
            "email": address,
            "full_name": self.names.get(user_id),
            "preferred_language": self.locales.get(user_id),
        }


class RecordingTransport:
    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.sent = []

    def deliver(self, address, subject, body, timeout=None):
        if address in self.fail_for:
            raise DeliveryError(f"550 mailbox unavailable: {address}")
        self.sent.append({"to": address, "subject": subject, "body": body})


class FakeDispatcher:
    def __init__(self, fail_users=()):
        self.fail_users = set(fail_users)
        self.calls = []

    def deliver(self, job_id, kind, payload, recipient, timeout=None):
        self.calls.append(recipient.user_id)
        if recipient.user_id in self.fail_users:
            raise DeliveryError(f"rejected {recipient.user_id}")


def make_users(count, prefix="user"):
    return [(f"{prefix}-{i}", f"{prefix}{i}@example.com") for i in range(1, count + 1)]


NOTIFICATION_PAYLOAD = {
    "title": {"pt": "Novidade", "en": "News"},
    "message": {"pt": "Temos novidades", "en": "We have news"},
    "action_url": "/dashboard",
}

EMAIL_PAYLOAD = {
    "subject": {"pt": "Olá", "en": "Hello"},
    "title": {"pt": "Título", "en": "Title"},
    "content": {"pt": "Conteúdo", "en": "Content"},
    "cta_text": "Open",
    "cta_url": "https://example.com/dashboard",
}


@pytest.fixture
def session_factory(tmp_path):
    factory = db.init_engine(f"sqlite:///{tmp_path / 'broadcasts.db'}")
    yield factory
    db.engine.dispose()
