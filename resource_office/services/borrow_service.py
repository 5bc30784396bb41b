from __future__ import annotations

import logging
import uuid
from collections import OrderedDict
from datetime import date, datetime
from typing import Any, Callable, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from resource_office.models.inventory_models import BorrowLine, BorrowTransaction
from resource_office.services import catalog_service
from resource_office.services.audit_service import log_audit
from resource_office.services.borrower_directory_service import lookup_borrower
from resource_office.services.errors import (
    BorrowError,
    EmptyRequest,
    InvalidDateRange,
    InvalidQuantity,
    InvalidStateTransition,
    ResourceOfficeError,
    UnknownBorrower,
    UnknownTransaction,
)
from resource_office.services.notification_service import NotificationKind, NotificationSink, safe_notify

LOGGER = logging.getLogger("resource_office.borrow")

BorrowerLookup = Callable[[str], "dict[str, Any] | None"]

OPEN_STATES = {"Borrowed", "ReturnSubmitted"}
TERMINAL_STATES = {"Returned", "Rejected"}
# "Pending" and "Rejected" are reserved for an approval gate; submission commits stock immediately.
STATE_TRANSITIONS = {
    "Pending": {"Borrowed", "Rejected"},
    "Borrowed": {"ReturnSubmitted", "Returned"},
    "ReturnSubmitted": {"Borrowed", "Returned"},
    "Returned": set(),
    "Rejected": set(),
}


def transition_state(transaction: BorrowTransaction, target_state: str) -> None:
    current = transaction.Status
    if target_state == current:
        return
    if current not in STATE_TRANSITIONS or target_state not in STATE_TRANSITIONS[current]:
        raise InvalidStateTransition(current, target_state)
    transaction.Status = target_state
    transaction.UpdatedDate = datetime.now()


def format_transaction_number(transaction_id: int, prefix: str = "BRW") -> str:
    return f"{prefix}-{transaction_id:04d}"


def _line_values(line: Any) -> tuple[Any, Any]:
    if isinstance(line, dict):
        return line.get("itemID", line.get("item_id")), line.get("quantity")
    if hasattr(line, "item_id"):
        return line.item_id, line.quantity
    item_id, quantity = line
    return item_id, quantity


def merge_lines(lines: Iterable[Any]) -> "OrderedDict[int, int]":
    """Validate request lines and merge them per item, in ascending item id order."""
    merged: dict[int, int] = {}
    for raw in lines or []:
        item_id, quantity = _line_values(raw)
        try:
            item_id = int(item_id)
            quantity = int(quantity)
        except (TypeError, ValueError) as exc:
            raise InvalidQuantity(f"Invalid borrow line {raw!r}.") from exc
        if quantity <= 0:
            raise InvalidQuantity(
                f"Quantity for item {item_id} must be positive, got {quantity}.",
                itemID=item_id,
                quantity=quantity,
            )
        merged[item_id] = merged.get(item_id, 0) + quantity
    if not merged:
        raise EmptyRequest()
    return OrderedDict(sorted(merged.items()))


def submit_borrow(
    db: Session,
    *,
    borrower_ref: str,
    expected_return_date: date,
    purpose: str,
    lines: Iterable[Any],
    location: str | None = None,
    notes: str | None = None,
    borrower_lookup: BorrowerLookup | None = None,
    notifier: NotificationSink | None = None,
    today: date | None = None,
) -> BorrowTransaction:
    current_day = today or date.today()
    lookup = borrower_lookup or lookup_borrower

    borrower = lookup(borrower_ref) if borrower_ref else None
    if not borrower:
        LOGGER.warning("Borrow refused unknown borrower=%s", borrower_ref)
        raise UnknownBorrower(borrower_ref)

    if expected_return_date is None or expected_return_date <= current_day:
        raise InvalidDateRange(
            "Expected return date must be after today.",
            expectedReturnDate=str(expected_return_date),
            today=str(current_day),
        )
    merged = merge_lines(lines)
    purpose_text = (purpose or "").strip()
    if not purpose_text:
        raise BorrowError("Purpose is required.")

    try:
        for item_id, quantity in merged.items():
            catalog_service.reserve(db, item_id, quantity)

        now = datetime.now()
        transaction = BorrowTransaction(
            TransactionNumber=f"TMP-{uuid.uuid4().hex}",
            BorrowerRef=borrower.get("ref") or borrower_ref,
            BorrowerName=borrower.get("name"),
            BorrowerEmail=borrower.get("email") or None,
            Purpose=purpose_text,
            Location=location,
            Notes=notes,
            BorrowDate=current_day,
            ExpectedReturnDate=expected_return_date,
            Status="Borrowed",
            IsOverdue=False,
            CreatedDate=now,
            UpdatedDate=now,
        )
        for item_id, quantity in merged.items():
            transaction.Lines.append(BorrowLine(ItemID=item_id, Quantity=quantity, Status="Borrowed"))
        db.add(transaction)
        db.flush()
        transaction.TransactionNumber = format_transaction_number(transaction.TransactionID)

        log_audit(
            db,
            "BorrowTransaction",
            transaction.TransactionID,
            "Borrow",
            ", ".join(f"item={item_id} qty={quantity}" for item_id, quantity in merged.items()),
            user_id=transaction.BorrowerRef,
        )
        db.commit()
    except ResourceOfficeError as exc:
        db.rollback()
        LOGGER.warning("Borrow rejected borrower=%s code=%s detail=%s", borrower_ref, exc.code, exc.message)
        raise
    except Exception:
        db.rollback()
        LOGGER.exception("Borrow failed borrower=%s", borrower_ref)
        raise

    LOGGER.info(
        "Borrow committed transaction=%s borrower=%s lines=%s",
        transaction.TransactionNumber,
        transaction.BorrowerRef,
        len(merged),
    )
    safe_notify(notifier, NotificationKind.BORROW_COMMITTED, transaction)
    return transaction


def get_transaction(db: Session, transaction_id: int) -> BorrowTransaction:
    transaction = db.execute(
        select(BorrowTransaction)
        .options(selectinload(BorrowTransaction.Lines), selectinload(BorrowTransaction.Verifications))
        .where(BorrowTransaction.TransactionID == transaction_id)
        .execution_options(populate_existing=True)
    ).scalars().first()
    if not transaction:
        raise UnknownTransaction(transaction_id)
    return transaction


def list_transactions(
    db: Session,
    status: str | None = None,
    borrower_ref: str | None = None,
    overdue: bool | None = None,
) -> list[BorrowTransaction]:
    stmt = select(BorrowTransaction).options(selectinload(BorrowTransaction.Lines))
    if status:
        stmt = stmt.where(BorrowTransaction.Status == status)
    if borrower_ref:
        stmt = stmt.where(BorrowTransaction.BorrowerRef == borrower_ref)
    if overdue is not None:
        stmt = stmt.where(BorrowTransaction.IsOverdue == overdue)
    return list(db.execute(stmt.order_by(BorrowTransaction.TransactionID.desc())).scalars().all())


def list_borrower_transactions(db: Session, borrower_ref: str, status: str | None = None) -> list[BorrowTransaction]:
    return list_transactions(db, status=status, borrower_ref=borrower_ref)


def extend_return_date(
    db: Session,
    transaction_id: int,
    new_return_date: date,
    reason: str | None = None,
    user_id: str | None = None,
    today: date | None = None,
) -> BorrowTransaction:
    current_day = today or date.today()
    transaction = get_transaction(db, transaction_id)
    if transaction.Status not in OPEN_STATES:
        raise InvalidStateTransition(transaction.Status, "Extended")
    if new_return_date is None or new_return_date <= current_day:
        raise InvalidDateRange(
            "New return date must be after today.",
            expectedReturnDate=str(new_return_date),
            today=str(current_day),
        )

    previous = transaction.ExpectedReturnDate
    now = datetime.now()
    transaction.ExpectedReturnDate = new_return_date
    transaction.IsOverdue = False
    transaction.OverdueSince = None
    transaction.OverdueNotifiedAt = None
    transaction.DueSoonNotifiedAt = None
    transaction.DueTodayNotifiedAt = None
    transaction.UpdatedDate = now

    note = f"[{now:%Y-%m-%d %H:%M}] Return date extended from {previous} to {new_return_date}"
    if reason:
        note = f"{note}: {reason.strip()}"
    transaction.Notes = f"{transaction.Notes}\n{note}" if transaction.Notes else note

    log_audit(db, "BorrowTransaction", transaction_id, "Extend", f"{previous} -> {new_return_date}", user_id=user_id)
    db.commit()
    LOGGER.info("Return date extended transaction=%s from=%s to=%s", transaction.TransactionNumber, previous, new_return_date)
    return transaction


def serialize_line(line: BorrowLine) -> dict:
    return {
        "lineID": line.LineID,
        "itemID": line.ItemID,
        "itemName": line.Item.ItemName if line.Item else None,
        "itemCode": line.Item.ItemCode if line.Item else None,
        "quantity": line.Quantity,
        "status": line.Status,
        "returnedAt": line.ReturnedAt,
    }


def serialize_transaction(transaction: BorrowTransaction, include_verifications: bool = False) -> dict:
    data = {
        "transactionID": transaction.TransactionID,
        "transactionNumber": transaction.TransactionNumber,
        "borrowerRef": transaction.BorrowerRef,
        "borrowerName": transaction.BorrowerName,
        "borrowerEmail": transaction.BorrowerEmail,
        "purpose": transaction.Purpose,
        "location": transaction.Location,
        "notes": transaction.Notes,
        "borrowDate": transaction.BorrowDate,
        "expectedReturnDate": transaction.ExpectedReturnDate,
        "actualReturnDate": transaction.ActualReturnDate,
        "status": transaction.Status,
        "isOverdue": bool(transaction.IsOverdue),
        "overdueSince": transaction.OverdueSince,
        "createdDate": transaction.CreatedDate,
        "updatedDate": transaction.UpdatedDate,
        "lines": [serialize_line(line) for line in transaction.Lines],
    }
    if include_verifications:
        data["verifications"] = [
            {
                "verificationID": v.VerificationID,
                "verificationNumber": v.VerificationNumber,
                "lineID": v.LineID,
                "status": v.Status,
                "batchID": v.BatchID,
                "conditionNotes": v.ConditionNotes,
                "resolvedAt": v.ResolvedAt,
            }
            for v in transaction.Verifications
        ]
    return data
