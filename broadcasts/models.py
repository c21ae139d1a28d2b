from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .config import DEFAULT_NOTIFICATION_TYPE, DEFAULT_TEMPLATE_KEY, FREE_TIER, VALID_KINDS


class JobKind(str, Enum):
    NOTIFICATION = "notification"
    EMAIL = "email"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_JOB_STATUSES = {JobStatus.COMPLETED.value, JobStatus.FAILED.value}


class RecipientStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class EnrollmentStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CONVERTED = "converted"
    FAILED = "failed"


LocalizedText = Dict[str, str]


@dataclass(slots=True, frozen=True)
class TargetSpec:
    """Audience declaration: every active user, or a set of plan tiers."""

    all_users: bool = True
    plans: Tuple[str, ...] = ()

    @classmethod
    def everyone(cls) -> "TargetSpec":
        return cls(all_users=True)

    @classmethod
    def tiers(cls, *plans: str) -> "TargetSpec":
        labels = tuple(str(p).strip().lower() for p in plans if p is not None and str(p).strip())
        if not labels:
            # Blank labels must never widen into a send to everyone.
            raise ValueError("tier filter has no usable tier names")
        return cls(all_users=False, plans=labels)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "TargetSpec":
        if data is None:
            return cls.everyone()
        if not isinstance(data, Mapping):
            raise ValueError("target must be an object")
        if not data:
            return cls.everyone()
        plans = data.get("plans") or data.get("tiers") or []
        if isinstance(plans, str):
            plans = plans.split(",")
        elif not isinstance(plans, (list, tuple)):
            raise ValueError("target plans must be a list or a comma separated string")
        if data.get("all_users") or not plans:
            return cls.everyone()
        return cls.tiers(*plans)

    @property
    def targets_everyone(self) -> bool:
        # An empty tier list means the whole population.
        return self.all_users or not self.plans

    @property
    def includes_free(self) -> bool:
        return FREE_TIER in self.plans

    def to_dict(self) -> Dict[str, Any]:
        return {"all_users": self.all_users, "plans": list(self.plans)}


@dataclass(slots=True)
class NotificationPayload:
    """Content of an in-app announcement, one text per locale."""

    title: LocalizedText
    message: LocalizedText
    action_url: Optional[str] = None
    notification_type: str = DEFAULT_NOTIFICATION_TYPE


@dataclass(slots=True)
class EmailPayload:
    """Template reference plus the localized fields fed into it."""

    subject: LocalizedText
    title: LocalizedText = field(default_factory=dict)
    content: LocalizedText = field(default_factory=dict)
    cta_text: Optional[str] = None
    cta_url: Optional[str] = None
    template_key: str = DEFAULT_TEMPLATE_KEY
    template_data: Dict[str, Any] = field(default_factory=dict)


def _localized(value: Any, field_name: str) -> LocalizedText:
    if value is None:
        return {}
    if isinstance(value, str):
        return {"default": value}
    if not isinstance(value, Mapping):
        raise ValueError(f"{field_name} must be a string or a locale map")
    return {str(k).lower(): str(v) for k, v in value.items() if v}


def parse_payload(kind: str, data: Mapping[str, Any]) -> NotificationPayload | EmailPayload:
    """Validate a raw payload dict for the given job kind."""
    if kind not in VALID_KINDS:
        raise ValueError(f"Unknown broadcast kind: {kind!r}")
    data = data or {}
    if kind == JobKind.NOTIFICATION.value:
        title = _localized(data.get("title"), "title")
        message = _localized(data.get("message"), "message")
        if not title or not message:
            raise ValueError("Notification payload requires a title and a message")
        return NotificationPayload(
            title=title,
            message=message,
            action_url=data.get("action_url") or None,
            notification_type=data.get("notification_type") or DEFAULT_NOTIFICATION_TYPE,
        )

    subject = _localized(data.get("subject"), "subject")
    if not subject:
        raise ValueError("Email payload requires a subject")
    template_data = data.get("template_data") or {}
    if not isinstance(template_data, Mapping):
        raise ValueError("template_data must be a flat mapping")
    return EmailPayload(
        subject=subject,
        title=_localized(data.get("title"), "title"),
        content=_localized(data.get("content"), "content"),
        cta_text=data.get("cta_text") or None,
        cta_url=data.get("cta_url") or None,
        template_key=data.get("template_key") or DEFAULT_TEMPLATE_KEY,
        template_data=dict(template_data),
    )


def payload_to_dict(payload: NotificationPayload | EmailPayload) -> Dict[str, Any]:
    return asdict(payload)


@dataclass(slots=True, frozen=True)
class Contact:
    """Active account as seen by the resolver at fan-out time."""

    user_id: str
    contact_address: Optional[str] = None


@dataclass(slots=True, frozen=True)
class AccountState:
    user_id: str
    plan_tier: Optional[str] = None


@dataclass(slots=True)
class DeliveryOutcome:
    recipient_id: int
    user_id: str
    ok: bool
    error: Optional[str] = None
    recorded: bool = True


@dataclass(slots=True)
class BatchResult:
    """Per-batch tally returned by the batch processor."""

    claimed: int = 0
    succeeded: int = 0
    failed: int = 0
    outcomes: List[DeliveryOutcome] = field(default_factory=list)
    lease_lost: bool = False

    def add(self, outcome: DeliveryOutcome) -> None:
        self.outcomes.append(outcome)
        if not outcome.recorded:
            return
        if outcome.ok:
            self.succeeded += 1
        else:
            self.failed += 1


@dataclass(slots=True)
class StepSummary:
    """What a single trigger of a job did and where the job stands."""

    job_id: str
    status: str
    processed: int = 0
    success_count: int = 0
    failed_count: int = 0
    remaining: int = 0
    total_recipients: int = 0
    batch_processed: int = 0
    noop: bool = False
    busy: bool = False
    rescheduled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
