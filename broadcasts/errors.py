from __future__ import annotations


class BroadcastError(Exception):
    """Base exception for broadcast delivery operations."""


class JobNotFound(BroadcastError, LookupError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Broadcast job {job_id} not found")
        self.job_id = job_id


class DirectoryUnavailable(BroadcastError):
    """The user/plan population could not be read."""


class FanOutError(BroadcastError):
    """Recipient resolution failed; the job stays retryable."""


class DeliveryError(BroadcastError):
    """A single recipient could not be delivered to."""


class DeliveryTimeout(DeliveryError):
    pass


class MissingContactAddress(DeliveryError):
    pass


class TransportNotConfigured(DeliveryError):
    pass


class TemplateRenderingError(DeliveryError):
    pass


class SequenceNotFound(BroadcastError, LookupError):
    def __init__(self, key: str) -> None:
        super().__init__(f"Email sequence {key!r} not found")
        self.key = key
