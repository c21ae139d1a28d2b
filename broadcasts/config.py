"""Shared configuration defaults for the broadcast delivery engine."""
from __future__ import annotations

import os


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


DATABASE_URL = os.getenv("DATABASE_URL") or os.getenv("SQLALCHEMY_DATABASE_URI") or "sqlite:///broadcasts.db"

DEFAULT_BATCH_SIZE = _env_int("BROADCAST_BATCH_SIZE", 50)
DEFAULT_BATCH_DELAY = _env_float("BROADCAST_BATCH_DELAY", 1.0)  # seconds
MAX_BATCH_SIZE = _env_int("BROADCAST_MAX_BATCH_SIZE", 500)
MAX_BATCH_DELAY = _env_float("BROADCAST_MAX_BATCH_DELAY", 300.0)

FANOUT_CHUNK = _env_int("BROADCAST_FANOUT_CHUNK", 100)
MAX_FANOUT_ATTEMPTS = _env_int("BROADCAST_MAX_FANOUT_ATTEMPTS", 5)

DELIVERY_TIMEOUT = _env_float("BROADCAST_DELIVERY_TIMEOUT", 30.0)
ERROR_MAX_LENGTH = _env_int("BROADCAST_ERROR_MAX_LENGTH", 500)

LEASE_SECONDS = _env_int("BROADCAST_LEASE_SECONDS", 300)
CLAIM_TTL = _env_int("BROADCAST_CLAIM_TTL", 600)
STALL_HORIZON = _env_int("BROADCAST_STALL_HORIZON", 900)

DEFAULT_LOCALE = os.getenv("BROADCAST_DEFAULT_LOCALE", "pt")
SUPPORTED_LOCALES = ("pt", "en", "es")
FREE_TIER = "free"
PAID_TIERS = ("creator", "agency")

DEFAULT_NOTIFICATION_TYPE = "announcement"
DEFAULT_TEMPLATE_KEY = "announcement"

SEQUENCE_BATCH_LIMIT = _env_int("SEQUENCE_BATCH_LIMIT", 50)
SEQUENCE_MAX_ATTEMPTS = _env_int("SEQUENCE_MAX_ATTEMPTS", 3)
EARLY_ACCESS_TOTAL_SPOTS = _env_int("EARLY_ACCESS_TOTAL_SPOTS", 500)

MAIL_TRANSPORT = os.getenv("MAIL_TRANSPORT", "smtp").lower()  # smtp, http
MAIL_FROM_NAME = os.getenv("MAIL_FROM_NAME", "Broadcasts")
MAIL_FROM_ADDRESS = os.getenv("MAIL_FROM_ADDRESS") or os.getenv("SMTP_DEFAULT_SENDER")
MAIL_API_URL = os.getenv("MAIL_API_URL")
MAIL_API_KEY = os.getenv("MAIL_API_KEY")
SITE_URL = os.getenv("SITE_URL", "http://localhost:5000")

VALID_KINDS = {"notification", "email"}
