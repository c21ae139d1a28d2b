from __future__ import annotations

import logging
import os
import time
import smtplib
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import datetime
from email.message import EmailMessage
from email.utils import formataddr
from typing import Any, Callable, Dict, Mapping, Optional

import requests
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from .config import (
    DEFAULT_LOCALE,
    DEFAULT_NOTIFICATION_TYPE,
    DEFAULT_TEMPLATE_KEY,
    MAIL_API_KEY,
    MAIL_API_URL,
    MAIL_FROM_ADDRESS,
    MAIL_FROM_NAME,
    MAIL_TRANSPORT,
    SITE_URL,
)
from .db import NotificationModel
from .errors import DeliveryError, DeliveryTimeout, MissingContactAddress, TransportNotConfigured
from .models import JobKind
from .templates import TemplateRenderer, localize, normalize_locale

LOGGER = logging.getLogger(__name__)


def call_with_timeout(func: Callable[..., Any], timeout: Optional[float], *args, **kwargs) -> Any:
    """Run ``func`` on a worker thread, giving up after ``timeout`` seconds.

    Python threads cannot be killed: a call that overruns keeps running in
    the background until it returns. The adapters are handed the same
    timeout (socket timeouts for mail, a commit deadline for notifications)
    so an abandoned call ends on its own; a notification that misses its
    deadline is rolled back rather than committed.
    """
    if not timeout:
        return func(*args, **kwargs)
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="delivery")
    future = executor.submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout as exc:
        future.cancel()
        raise DeliveryTimeout(f"Delivery timed out after {timeout:g}s") from exc
    finally:
        executor.shutdown(wait=False)


# ------------------------------- Mail transports -------------------------------

def _smtp_connection(timeout: Optional[float] = None):
    host = os.getenv("SMTP_HOST")
    port = int(os.getenv("SMTP_PORT", "587"))
    username = os.getenv("SMTP_USERNAME")
    password = os.getenv("SMTP_PASSWORD")
    use_tls = os.getenv("SMTP_USE_TLS", "1") not in {"0", "false", "False"}
    timeout = timeout or float(os.getenv("SMTP_TIMEOUT", "10"))

    if not host:
        return None

    server = smtplib.SMTP(host, port, timeout=timeout)
    try:
        if use_tls:
            server.starttls()
        if username and password:
            server.login(username, password)
    except Exception:
        server.quit()
        raise
    return server


class SmtpTransport:
    """Sends one HTML message per call over SMTP."""

    def __init__(self, from_address: Optional[str] = MAIL_FROM_ADDRESS, from_name: str = MAIL_FROM_NAME) -> None:
        self.from_address = from_address
        self.from_name = from_name

    def deliver(self, address: str, subject: str, body: str, timeout: Optional[float] = None) -> None:
        if not self.from_address:
            raise TransportNotConfigured("MAIL_FROM_ADDRESS not configured")

        email = EmailMessage()
        email["Subject"] = subject
        email["From"] = formataddr((self.from_name, self.from_address))
        email["To"] = address
        email.set_content("This message requires an HTML capable mail client.")
        email.add_alternative(body, subtype="html")

        try:
            server = _smtp_connection(timeout)
        except (smtplib.SMTPException, OSError) as exc:
            raise DeliveryError(f"SMTP connection failed: {exc}") from exc
        if server is None:
            raise TransportNotConfigured("SMTP_HOST not configured")
        try:
            with server:
                server.send_message(email)
        except (smtplib.SMTPException, OSError) as exc:
            raise DeliveryError(f"SMTP send failed: {exc}") from exc
        LOGGER.info("Sent email '%s' to %s", subject, address)


class HttpMailTransport:
    """Hands each message to an HTTP mail API."""

    def __init__(self, url: Optional[str] = MAIL_API_URL, api_key: Optional[str] = MAIL_API_KEY, timeout: float = 10.0) -> None:
        self.url = url
        self.api_key = api_key
        self.timeout = timeout

    def deliver(self, address: str, subject: str, body: str, timeout: Optional[float] = None) -> None:
        if not self.url:
            raise TransportNotConfigured("MAIL_API_URL not configured")
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {
            "to": address,
            "subject": subject,
            "html": body,
            "from": formataddr((MAIL_FROM_NAME, MAIL_FROM_ADDRESS or "")),
        }
        try:
            resp = requests.post(self.url, headers=headers, json=payload, timeout=timeout or self.timeout)
        except requests.RequestException as exc:
            raise DeliveryError(f"Mail API request failed: {exc}") from exc
        if resp.status_code >= 400:
            raise DeliveryError(f"Mail API responded with {resp.status_code}: {resp.text[:120]}")
        LOGGER.info("Queued email '%s' to %s via mail API", subject, address)


def build_transport(name: str = MAIL_TRANSPORT):
    if name == "http":
        return HttpMailTransport()
    if name == "smtp":
        return SmtpTransport()
    raise ValueError(f"Unknown mail transport: {name}")


# ------------------------------- Broadcast channels -------------------------------

class NotificationChannel:
    """Writes the in-app notification; the write itself is the delivery."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def deliver(
        self,
        user_id: str,
        title: Mapping[str, str],
        message: Mapping[str, str],
        action_url: Optional[str] = None,
        *,
        job_id: Optional[str] = None,
        notification_type: str = DEFAULT_NOTIFICATION_TYPE,
        timeout: Optional[float] = None,
    ) -> bool:
        """Returns False when the notification already existed.

        With a ``timeout`` the write is rolled back instead of committed once
        the deadline has passed.
        """
        deadline = time.monotonic() + timeout if timeout else None
        with self._session_factory() as session:
            if job_id is not None:
                existing = (
                    session.query(NotificationModel.id)
                    .filter(NotificationModel.user_id == user_id, NotificationModel.broadcast_job_id == job_id)
                    .first()
                )
                if existing:
                    LOGGER.info("Notification for job %s already delivered to %s", job_id, user_id)
                    return False
            session.add(
                NotificationModel(
                    user_id=user_id,
                    broadcast_job_id=job_id,
                    type=notification_type,
                    title=dict(title),
                    message=dict(message),
                    action_url=action_url,
                )
            )
            if deadline is not None and time.monotonic() >= deadline:
                session.rollback()
                raise DeliveryTimeout(f"Notification write for user {user_id} exceeded {timeout:g}s")
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                LOGGER.info("Duplicate notification for job %s and user %s ignored", job_id, user_id)
                return False
        return True


class EmailChannel:
    """Localizes the broadcast email for one recipient and sends it."""

    def __init__(self, directory, transport, renderer: Optional[TemplateRenderer] = None) -> None:
        self.directory = directory
        self.transport = transport
        self.renderer = renderer or TemplateRenderer()

    def build_message(self, user_id: str, payload: Mapping[str, Any]) -> tuple[str, str]:
        locale = normalize_locale(self.directory.get_locale(user_id))
        subject = localize(payload.get("subject"), locale, DEFAULT_LOCALE) or ""
        data: Dict[str, Any] = dict(payload.get("template_data") or {})
        data.update(
            {
                "subject": subject,
                "title": localize(payload.get("title"), locale, DEFAULT_LOCALE) or "",
                "content": localize(payload.get("content"), locale, DEFAULT_LOCALE) or "",
                "ctaText": payload.get("cta_text"),
                "ctaUrl": payload.get("cta_url"),
                "fromName": MAIL_FROM_NAME,
                "siteUrl": SITE_URL,
                "year": datetime.utcnow().year,
            }
        )
        return self.renderer.render(payload.get("template_key") or DEFAULT_TEMPLATE_KEY, data)

    def deliver(
        self, user_id: str, address: Optional[str], payload: Mapping[str, Any], timeout: Optional[float] = None
    ) -> None:
        if not address:
            raise MissingContactAddress(f"No contact address for user {user_id}")
        subject, body = self.build_message(user_id, payload)
        self.transport.deliver(address, subject, body, timeout=timeout)


class BroadcastDispatcher:
    """Routes a recipient to the channel matching the job kind."""

    def __init__(self, notifications: NotificationChannel, email: EmailChannel) -> None:
        self.notifications = notifications
        self.email = email

    def deliver(
        self, job_id: str, kind: str, payload: Mapping[str, Any], recipient, timeout: Optional[float] = None
    ) -> None:
        if kind == JobKind.NOTIFICATION.value:
            self.notifications.deliver(
                recipient.user_id,
                payload.get("title") or {},
                payload.get("message") or {},
                payload.get("action_url"),
                job_id=job_id,
                notification_type=payload.get("notification_type") or DEFAULT_NOTIFICATION_TYPE,
                timeout=timeout,
            )
        elif kind == JobKind.EMAIL.value:
            self.email.deliver(recipient.user_id, recipient.contact_address, payload, timeout=timeout)
        else:
            raise DeliveryError(f"Unsupported broadcast kind: {kind}")
