from __future__ import annotations

import json
import logging
import smtplib
from datetime import datetime
from email.message import EmailMessage
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models.lending_models import NotificationQueue
from ..settings import SmtpSettings


LOGGER = logging.getLogger("lending_engine.notifications")

NOTIFICATION_EVENTS = {"otp", "approved", "rejected", "returned"}
MAX_DELIVERY_ATTEMPTS = 5
# Never written to the queue table.
SECRET_FIELDS = {"code"}
# Only deliverable with the in-memory payload, so dispatch_pending skips them.
TRANSIENT_EVENTS = {"otp"}


class Notifier:
    """Fire-and-forget notification contract. Implementations must never raise."""

    def notify(self, event: str, recipient_email: str, payload: dict[str, Any]) -> None:
        raise NotImplementedError


class EmailSender:
    def send(self, recipient: str, subject: str, body: str) -> None:
        raise NotImplementedError


class SmtpEmailSender(EmailSender):
    def __init__(self, smtp: SmtpSettings, timeout: int = 20):
        self.smtp = smtp
        self.timeout = timeout

    def send(self, recipient: str, subject: str, body: str) -> None:
        message = EmailMessage()
        message["From"] = self.smtp.sender
        message["To"] = recipient
        message["Subject"] = subject
        message.set_content(body)
        with smtplib.SMTP(self.smtp.host, self.smtp.port, timeout=self.timeout) as client:
            if self.smtp.use_tls:
                client.starttls()
            if self.smtp.username:
                client.login(self.smtp.username, self.smtp.password or "")
            client.send_message(message)


def render_message(event: str, payload: dict[str, Any]) -> tuple[str, str]:
    name = str(payload.get("name") or "Borrower").strip()
    equipment = payload.get("equipmentName") or "the requested equipment"
    reference = payload.get("reference") or ""
    remarks = (payload.get("remarks") or "").strip()

    if event == "otp":
        minutes = max(1, int(payload.get("ttlSeconds") or 300) // 60)
        return (
            "Email Verification Code",
            f"Hello {name},\n\n"
            f"Your verification code is: {payload.get('code')}\n"
            f"This code is valid for {minutes} minutes only. Do not share it with anyone.\n",
        )
    if event == "approved":
        subject = "Equipment Borrowing Request Approved"
        body = f"Dear {name},\n\nYour request {reference} to borrow {equipment} has been approved."
    elif event == "rejected":
        subject = "Equipment Borrowing Request Update"
        body = f"Dear {name},\n\nYour request {reference} to borrow {equipment} was not approved."
    else:
        subject = "Equipment Return Recorded"
        body = f"Dear {name},\n\nThe return of {equipment} for request {reference} has been recorded."
        total_fee = payload.get("totalFee")
        if total_fee not in (None, "0", "0.00", 0):
            body += f"\nOutstanding fee: {total_fee}"
    if remarks:
        body += f"\n\nRemarks: {remarks}"
    return subject, body + "\n"


def _deliver(row: NotificationQueue, sender: EmailSender, payload: dict[str, Any] | None = None) -> bool:
    row.Attempts = int(row.Attempts or 0) + 1
    try:
        if payload is None:
            payload = json.loads(row.Payload or "{}")
        subject, body = render_message(row.Event, payload)
        sender.send(row.RecipientEmail, subject, body)
    except Exception as exc:
        row.LastError = str(exc)[:500]
        LOGGER.warning(
            "Notification %s (%s) delivery failed on attempt %s",
            row.NotificationID,
            row.Event,
            row.Attempts,
            exc_info=True,
        )
        return False
    row.SentAt = datetime.now()
    row.LastError = None
    return True


def _stored_payload(payload: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in payload.items() if key not in SECRET_FIELDS}


class QueueNotifier(Notifier):
    """Persists each notification in its own transaction, then tries to send it.

    Rows that could not be sent stay in the queue for ``dispatch_pending``.
    """

    def __init__(self, session_factory: Callable[[], Session], sender: EmailSender | None = None):
        self.session_factory = session_factory
        self.sender = sender

    def notify(self, event: str, recipient_email: str, payload: dict[str, Any]) -> None:
        if event not in NOTIFICATION_EVENTS:
            LOGGER.warning("Dropping notification with unknown event %r", event)
            return
        recipient = (recipient_email or "").strip()
        if not recipient:
            LOGGER.warning("Dropping %s notification without recipient", event)
            return
        try:
            db = self.session_factory()
            try:
                row = NotificationQueue(
                    Event=event,
                    RecipientEmail=recipient,
                    Payload=json.dumps(_stored_payload(payload), default=str, ensure_ascii=True),
                    Attempts=0,
                    CreatedAt=datetime.now(),
                )
                db.add(row)
                db.commit()
                if self.sender is not None:
                    _deliver(row, self.sender, payload)
                    db.commit()
            finally:
                db.close()
        except Exception:
            LOGGER.warning("Could not queue %s notification for %s", event, recipient, exc_info=True)


def notify_safely(notifier: Notifier | None, event: str, recipient_email: str, payload: dict[str, Any]) -> None:
    if notifier is None:
        return
    try:
        notifier.notify(event, recipient_email, payload)
    except Exception:
        LOGGER.warning("Notifier raised while sending %s to %s", event, recipient_email, exc_info=True)


def dispatch_pending(db: Session, sender: EmailSender, limit: int = 100) -> dict:
    rows = db.execute(
        select(NotificationQueue)
        .where(NotificationQueue.SentAt.is_(None))
        .where(NotificationQueue.Attempts < MAX_DELIVERY_ATTEMPTS)
        .where(NotificationQueue.Event.notin_(TRANSIENT_EVENTS))
        .order_by(NotificationQueue.NotificationID)
        .limit(max(1, limit))
    ).scalars().all()
    sent = 0
    failed = 0
    for row in rows:
        if _deliver(row, sender):
            sent += 1
        else:
            failed += 1
    db.commit()
    LOGGER.info("Notification dispatch finished: sent=%s failed=%s", sent, failed)
    return {"sent": sent, "failed": failed}


def list_pending(db: Session) -> list[dict]:
    rows = db.execute(
        select(NotificationQueue)
        .where(NotificationQueue.SentAt.is_(None))
        .order_by(NotificationQueue.NotificationID)
    ).scalars().all()
    return [
        {
            "notificationID": n.NotificationID,
            "event": n.Event,
            "recipientEmail": n.RecipientEmail,
            "attempts": n.Attempts,
            "lastError": n.LastError,
            "createdAt": n.CreatedAt,
        }
        for n in rows
    ]
