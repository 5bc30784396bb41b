from __future__ import annotations

import logging
from datetime import date, datetime, timedelta

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from resource_office.config import overdue_reminder_interval_hours
from resource_office.models.inventory_models import BorrowTransaction
from resource_office.services.audit_service import log_audit
from resource_office.services.notification_service import NotificationKind, NotificationSink, safe_notify

LOGGER = logging.getLogger("resource_office.overdue")

WATCHED_STATES = ("Borrowed", "ReturnSubmitted")


def _claim(db: Session, transaction_id: int, *criteria, **values) -> bool:
    """Conditionally stamp a transaction row; True when this call made the change."""
    result = db.execute(
        update(BorrowTransaction)
        .where(BorrowTransaction.TransactionID == transaction_id)
        .where(BorrowTransaction.Status.in_(WATCHED_STATES))
        .where(*criteria)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


REMINDER_STAMPS = {
    NotificationKind.OVERDUE: "OverdueNotifiedAt",
    NotificationKind.DUE_TODAY: "DueTodayNotifiedAt",
    NotificationKind.DUE_SOON: "DueSoonNotifiedAt",
}


def _release_stamp(db: Session, kind: str, transaction_id: int, stamped_at: datetime) -> None:
    """Undo a reminder claim whose notification never reached the sink, so the
    next sweep sends it again."""
    column = getattr(BorrowTransaction, REMINDER_STAMPS[kind])
    try:
        db.execute(
            update(BorrowTransaction)
            .where(BorrowTransaction.TransactionID == transaction_id)
            .where(column == stamped_at)
            .values({column: None})
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    LOGGER.warning("Reminder will be retried kind=%s transaction=%s", kind, transaction_id)


def run_overdue_sweep(
    db: Session,
    notifier: NotificationSink | None = None,
    today: date | None = None,
    now: datetime | None = None,
    reminder_interval_hours: int | None = None,
) -> dict:
    current_day = today or date.today()
    current_time = now or datetime.now()
    tomorrow = current_day + timedelta(days=1)
    interval = timedelta(hours=reminder_interval_hours or overdue_reminder_interval_hours())
    reminder_cutoff = current_time - interval

    candidates = db.execute(
        select(BorrowTransaction.TransactionID, BorrowTransaction.ExpectedReturnDate)
        .where(BorrowTransaction.Status.in_(WATCHED_STATES))
        .where(BorrowTransaction.ExpectedReturnDate <= tomorrow)
        .order_by(BorrowTransaction.TransactionID)
    ).all()

    summary = {"checked": len(candidates), "flaggedOverdue": 0, "overdue": 0, "dueToday": 0, "dueSoon": 0}
    pending: list[tuple[str, int]] = []
    try:
        for transaction_id, due in candidates:
            if due < current_day:
                if _claim(
                    db,
                    transaction_id,
                    BorrowTransaction.IsOverdue == False,  # noqa: E712
                    IsOverdue=True,
                    OverdueSince=current_time,
                    UpdatedDate=current_time,
                ):
                    summary["flaggedOverdue"] += 1
                    log_audit(db, "BorrowTransaction", transaction_id, "FlagOverdue", f"due={due}")
                if _claim(
                    db,
                    transaction_id,
                    or_(
                        BorrowTransaction.OverdueNotifiedAt.is_(None),
                        BorrowTransaction.OverdueNotifiedAt <= reminder_cutoff,
                    ),
                    OverdueNotifiedAt=current_time,
                ):
                    summary["overdue"] += 1
                    pending.append((NotificationKind.OVERDUE, transaction_id))
            elif due == current_day:
                if _claim(
                    db,
                    transaction_id,
                    BorrowTransaction.DueTodayNotifiedAt.is_(None),
                    DueTodayNotifiedAt=current_time,
                ):
                    summary["dueToday"] += 1
                    pending.append((NotificationKind.DUE_TODAY, transaction_id))
            elif due == tomorrow:
                if _claim(
                    db,
                    transaction_id,
                    BorrowTransaction.DueSoonNotifiedAt.is_(None),
                    DueSoonNotifiedAt=current_time,
                ):
                    summary["dueSoon"] += 1
                    pending.append((NotificationKind.DUE_SOON, transaction_id))
        db.commit()
    except Exception:
        db.rollback()
        LOGGER.exception("Overdue sweep failed")
        raise

    notified = 0
    for kind, transaction_id in pending:
        transaction = db.get(BorrowTransaction, transaction_id, populate_existing=True)
        if not transaction:
            continue
        if safe_notify(notifier, kind, transaction):
            notified += 1
        elif notifier is not None:
            _release_stamp(db, kind, transaction_id, current_time)
    summary["notified"] = notified

    LOGGER.info(
        "Overdue sweep finished checked=%s flagged=%s overdue=%s due_today=%s due_soon=%s",
        summary["checked"],
        summary["flaggedOverdue"],
        summary["overdue"],
        summary["dueToday"],
        summary["dueSoon"],
    )
    return summary
