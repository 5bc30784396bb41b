from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Callable, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from resource_office.models.inventory_models import BorrowTransaction, NotificationQueue

LOGGER = logging.getLogger("resource_office.notifications")


class NotificationKind:
    BORROW_COMMITTED = "BorrowCommitted"
    DUE_SOON = "DueSoon"
    DUE_TODAY = "DueToday"
    OVERDUE = "Overdue"
    RETURN_REJECTED = "ReturnRejected"
    RETURN_COMPLETED = "ReturnCompleted"

    ALL = (BORROW_COMMITTED, DUE_SOON, DUE_TODAY, OVERDUE, RETURN_REJECTED, RETURN_COMPLETED)


class NotificationSink(Protocol):
    def notify(self, kind: str, transaction: BorrowTransaction, **extra) -> None:
        ...


def build_payload(kind: str, transaction: BorrowTransaction, **extra) -> dict:
    payload = {
        "kind": kind,
        "transactionID": transaction.TransactionID,
        "transactionNumber": transaction.TransactionNumber,
        "borrowerRef": transaction.BorrowerRef,
        "borrowerName": transaction.BorrowerName,
        "expectedReturnDate": transaction.ExpectedReturnDate.isoformat() if transaction.ExpectedReturnDate else None,
        "status": transaction.Status,
    }
    payload.update({key: value for key, value in extra.items() if value is not None})
    return payload


class QueueNotificationSink:
    """Writes notifications to the ``NotificationQueue`` outbox.

    Each row is committed on its own session so a notification never rides on
    (or rolls back with) the business transaction that triggered it.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def notify(self, kind: str, transaction: BorrowTransaction, **extra) -> None:
        payload = build_payload(kind, transaction, **extra)
        db = self.session_factory()
        try:
            db.add(
                NotificationQueue(
                    TransactionID=transaction.TransactionID,
                    NotificationType=kind,
                    Recipient=transaction.BorrowerEmail or transaction.BorrowerRef,
                    Payload=json.dumps(payload, default=str),
                    Attempts=0,
                    CreatedAt=datetime.now(),
                )
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        LOGGER.info("Notification queued kind=%s transaction=%s", kind, transaction.TransactionID)


class RecordingNotificationSink:
    def __init__(self):
        self.sent: list[tuple[str, int, dict]] = []

    def notify(self, kind: str, transaction: BorrowTransaction, **extra) -> None:
        self.sent.append((kind, transaction.TransactionID, build_payload(kind, transaction, **extra)))

    def kinds(self) -> list[str]:
        return [kind for kind, _, _ in self.sent]


def safe_notify(sink: NotificationSink | None, kind: str, transaction: BorrowTransaction, **extra) -> bool:
    if sink is None:
        return False
    try:
        sink.notify(kind, transaction, **extra)
        return True
    except Exception:
        LOGGER.exception("Notification failed kind=%s transaction=%s", kind, transaction.TransactionID)
        return False


# ---------------------------------------------------------------------------
# Outbox delivery
# ---------------------------------------------------------------------------


class LoggingTransport:
    def send(self, notification: NotificationQueue) -> None:
        LOGGER.info(
            "Delivering notification id=%s kind=%s recipient=%s",
            notification.NotificationID,
            notification.NotificationType,
            notification.Recipient,
        )


def serialize_notification(notification: NotificationQueue) -> dict:
    try:
        payload = json.loads(notification.Payload) if notification.Payload else None
    except ValueError:
        payload = notification.Payload
    return {
        "notificationID": notification.NotificationID,
        "transactionID": notification.TransactionID,
        "type": notification.NotificationType,
        "recipient": notification.Recipient,
        "payload": payload,
        "attempts": notification.Attempts,
        "lastError": notification.LastError,
        "createdAt": notification.CreatedAt,
        "sentAt": notification.SentAt,
    }


def list_pending(db: Session, max_attempts: int | None = None) -> list[NotificationQueue]:
    stmt = select(NotificationQueue).where(NotificationQueue.SentAt.is_(None))
    if max_attempts is not None:
        stmt = stmt.where(NotificationQueue.Attempts < max_attempts)
    return list(db.execute(stmt.order_by(NotificationQueue.NotificationID)).scalars().all())


def deliver_pending(db: Session, transport, max_attempts: int = 5) -> dict:
    sent = 0
    failed = 0
    for notification in list_pending(db, max_attempts=max_attempts):
        notification.Attempts = int(notification.Attempts or 0) + 1
        try:
            transport.send(notification)
        except Exception as exc:
            failed += 1
            notification.LastError = str(exc)[:500]
            LOGGER.warning(
                "Notification delivery failed id=%s attempt=%s error=%s",
                notification.NotificationID,
                notification.Attempts,
                exc,
            )
        else:
            sent += 1
            notification.SentAt = datetime.now()
            notification.LastError = None
        db.commit()

    if sent or failed:
        LOGGER.info("Notification delivery finished sent=%s failed=%s", sent, failed)
    return {"sent": sent, "failed": failed}
