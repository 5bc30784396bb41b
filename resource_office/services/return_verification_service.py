from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time

from sqlalchemy import exists, select, update
from sqlalchemy.orm import Session, selectinload

from resource_office.models.inventory_models import BorrowLine, BorrowTransaction, ReturnVerification
from resource_office.services import catalog_service
from resource_office.services.audit_service import log_audit
from resource_office.services.borrow_service import transition_state
from resource_office.services.errors import (
    ConsistencyViolation,
    InvalidOutcome,
    InvalidReturnLines,
    NotTransactionOwner,
    RejectionReasonRequired,
    TransactionNotReturnable,
    UnknownTransaction,
    UnknownVerification,
    VerificationAlreadyPending,
)
from resource_office.services.notification_service import NotificationKind, NotificationSink, safe_notify

LOGGER = logging.getLogger("resource_office.returns")

PENDING = "Pending"
VERIFIED = "Verified"
REJECTED = "Rejected"
OUTCOMES = {"verified": VERIFIED, "rejected": REJECTED}


@dataclass
class ResolutionResult:
    verification: ReturnVerification
    outcome: str
    already_resolved: bool
    transaction_status: str


def format_verification_number(verification_id: int, prefix: str = "RV") -> str:
    return f"{prefix}-{verification_id:04d}"


def _pending_verification_ids(db: Session, transaction_id: int) -> list[int]:
    return list(
        db.execute(
            select(ReturnVerification.VerificationID)
            .where(ReturnVerification.TransactionID == transaction_id)
            .where(ReturnVerification.Status == PENDING)
            .order_by(ReturnVerification.VerificationID)
        ).scalars().all()
    )


def _refuse_return(db: Session, transaction_id: int, status: str) -> None:
    pending_ids = _pending_verification_ids(db, transaction_id)
    if status == "ReturnSubmitted" or pending_ids:
        raise VerificationAlreadyPending(transaction_id, pending_ids)
    raise TransactionNotReturnable(transaction_id, status)


def _same_borrower(left: str | None, right: str | None) -> bool:
    return (left or "").strip().upper() == (right or "").strip().upper()


def submit_return(
    db: Session,
    transaction_id: int,
    line_ids: list[int] | None = None,
    return_notes: str | None = None,
    borrower_ref: str | None = None,
) -> list[ReturnVerification]:
    """Move a borrowed transaction to ``ReturnSubmitted`` and open one pending
    verification per returned line.

    An empty ``line_ids`` returns every outstanding line.
    """
    transaction = db.execute(
        select(BorrowTransaction)
        .options(selectinload(BorrowTransaction.Lines))
        .where(BorrowTransaction.TransactionID == transaction_id)
        .execution_options(populate_existing=True)
    ).scalars().first()
    if not transaction:
        raise UnknownTransaction(transaction_id)
    if borrower_ref and not _same_borrower(borrower_ref, transaction.BorrowerRef):
        raise NotTransactionOwner(transaction_id)
    # Lines left pending after a rejection still block a new submission.
    if transaction.Status != "Borrowed" or _pending_verification_ids(db, transaction_id):
        _refuse_return(db, transaction_id, transaction.Status)

    outstanding = {line.LineID: line for line in transaction.Lines if line.Status == "Borrowed"}
    requested = [int(line_id) for line_id in (line_ids or [])]
    if requested:
        invalid = sorted({line_id for line_id in requested if line_id not in outstanding})
        if invalid:
            raise InvalidReturnLines(
                "Some lines are not outstanding on this transaction.",
                transactionID=transaction_id,
                lineIDs=invalid,
            )
        selected = [outstanding[line_id] for line_id in sorted(set(requested))]
    else:
        selected = [outstanding[line_id] for line_id in sorted(outstanding)]
    if not selected:
        raise InvalidReturnLines("Nothing left to return on this transaction.", transactionID=transaction_id)

    now = datetime.now()
    try:
        result = db.execute(
            update(BorrowTransaction)
            .where(BorrowTransaction.TransactionID == transaction_id)
            .where(BorrowTransaction.Status == "Borrowed")
            .where(
                ~exists().where(
                    ReturnVerification.TransactionID == transaction_id,
                    ReturnVerification.Status == PENDING,
                )
            )
            .values(Status="ReturnSubmitted", UpdatedDate=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            current = db.execute(
                select(BorrowTransaction.Status).where(BorrowTransaction.TransactionID == transaction_id)
            ).scalar()
            LOGGER.warning("Return refused transaction=%s status=%s", transaction_id, current)
            _refuse_return(db, transaction_id, current)

        batch_id = uuid.uuid4().hex
        verifications = []
        for line in selected:
            verification = ReturnVerification(
                VerificationNumber=f"TMP-{uuid.uuid4().hex}",
                TransactionID=transaction_id,
                LineID=line.LineID,
                ItemID=line.ItemID,
                Quantity=line.Quantity,
                BatchID=batch_id,
                Status=PENDING,
                ReturnNotes=return_notes,
                CreatedDate=now,
            )
            db.add(verification)
            verifications.append(verification)
        db.flush()
        for verification in verifications:
            verification.VerificationNumber = format_verification_number(verification.VerificationID)

        log_audit(
            db,
            "BorrowTransaction",
            transaction_id,
            "ReturnSubmitted",
            f"batch={batch_id} lines={[line.LineID for line in selected]}",
            user_id=borrower_ref or transaction.BorrowerRef,
        )
        db.commit()
    except (VerificationAlreadyPending, TransactionNotReturnable):
        raise
    except Exception:
        db.rollback()
        raise

    db.refresh(transaction)
    LOGGER.info(
        "Return submitted transaction=%s batch=%s verifications=%s",
        transaction.TransactionNumber,
        batch_id,
        [v.VerificationID for v in verifications],
    )
    return verifications


def normalize_outcome(outcome: str | None) -> str:
    key = (outcome or "").strip().lower()
    if key not in OUTCOMES:
        raise InvalidOutcome(outcome or "")
    return OUTCOMES[key]


def _decide_parent_status(db: Session, verification: ReturnVerification) -> str:
    line_statuses = db.execute(
        select(BorrowLine.Status).where(BorrowLine.TransactionID == verification.TransactionID)
    ).scalars().all()
    if line_statuses and all(status == "Returned" for status in line_statuses):
        return "Returned"

    rows = db.execute(
        select(ReturnVerification.BatchID, ReturnVerification.Status).where(
            ReturnVerification.TransactionID == verification.TransactionID
        )
    ).all()
    if any(batch == verification.BatchID and status == REJECTED for batch, status in rows):
        return "Borrowed"

    if any(status == PENDING for _, status in rows):
        return "ReturnSubmitted"
    return "Borrowed"


def resolve_verification(
    db: Session,
    verification_id: int,
    outcome: str,
    resolver_id: str | None = None,
    condition_notes: str | None = None,
    notifier: NotificationSink | None = None,
    today: date | None = None,
) -> ResolutionResult:
    target = normalize_outcome(outcome)
    notes = (condition_notes or "").strip()
    if target == REJECTED and not notes:
        raise RejectionReasonRequired()

    verification = db.get(ReturnVerification, verification_id)
    if not verification:
        raise UnknownVerification(verification_id)

    now = datetime.now()
    try:
        transaction = db.execute(
            select(BorrowTransaction)
            .where(BorrowTransaction.TransactionID == verification.TransactionID)
            .with_for_update()
        ).scalars().one()

        result = db.execute(
            update(ReturnVerification)
            .where(ReturnVerification.VerificationID == verification_id)
            .where(ReturnVerification.Status == PENDING)
            .values(Status=target, ResolvedBy=resolver_id, ResolvedAt=now, ConditionNotes=notes or None)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            db.refresh(verification)
            db.refresh(transaction)
            LOGGER.info(
                "Verification already resolved verification=%s outcome=%s requested=%s",
                verification_id,
                verification.Status,
                target,
            )
            return ResolutionResult(
                verification=verification,
                outcome=verification.Status,
                already_resolved=True,
                transaction_status=transaction.Status,
            )

        if target == VERIFIED:
            line_result = db.execute(
                update(BorrowLine)
                .where(BorrowLine.LineID == verification.LineID)
                .where(BorrowLine.Status == "Borrowed")
                .values(Status="Returned", ReturnedAt=now)
                .execution_options(synchronize_session=False)
            )
            if line_result.rowcount != 1:
                LOGGER.error(
                    "Verified line already returned verification=%s line=%s",
                    verification_id,
                    verification.LineID,
                )
                raise ConsistencyViolation(
                    f"Line {verification.LineID} was already returned.",
                    verificationID=verification_id,
                    lineID=verification.LineID,
                )
            catalog_service.release(db, verification.ItemID, verification.Quantity)

        db.refresh(transaction)
        previous_status = transaction.Status
        parent_status = _decide_parent_status(db, verification)
        transition_state(transaction, parent_status)
        if parent_status == "Returned":
            transaction.ActualReturnDate = today or date.today()
            transaction.IsOverdue = False
            transaction.OverdueSince = None

        log_audit(
            db,
            "ReturnVerification",
            verification_id,
            target,
            f"transaction={transaction.TransactionID} {previous_status} -> {transaction.Status}"
            + (f" notes={notes}" if notes else ""),
            user_id=resolver_id,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(verification)
    LOGGER.info(
        "Verification resolved verification=%s outcome=%s transaction=%s status=%s",
        verification_id,
        target,
        transaction.TransactionNumber,
        transaction.Status,
    )

    if transaction.Status == "Returned" and previous_status != "Returned":
        safe_notify(notifier, NotificationKind.RETURN_COMPLETED, transaction)
    elif target == REJECTED:
        safe_notify(
            notifier,
            NotificationKind.RETURN_REJECTED,
            transaction,
            reason=notes,
            verificationID=verification_id,
            itemID=verification.ItemID,
        )

    return ResolutionResult(
        verification=verification,
        outcome=target,
        already_resolved=False,
        transaction_status=transaction.Status,
    )


def list_verifications(
    db: Session,
    status: str | None = PENDING,
    date_from: date | None = None,
    date_to: date | None = None,
    transaction_id: int | None = None,
) -> list[ReturnVerification]:
    stmt = select(ReturnVerification).options(
        selectinload(ReturnVerification.Transaction),
        selectinload(ReturnVerification.Item),
    )
    if status and status.lower() != "all":
        stmt = stmt.where(ReturnVerification.Status == status.capitalize())
    if date_from:
        stmt = stmt.where(ReturnVerification.CreatedDate >= datetime.combine(date_from, time.min))
    if date_to:
        stmt = stmt.where(ReturnVerification.CreatedDate <= datetime.combine(date_to, time.max))
    if transaction_id is not None:
        stmt = stmt.where(ReturnVerification.TransactionID == transaction_id)
    return list(db.execute(stmt.order_by(ReturnVerification.VerificationID)).scalars().all())


def serialize_verification(verification: ReturnVerification) -> dict:
    transaction = verification.Transaction
    item = verification.Item
    return {
        "verificationID": verification.VerificationID,
        "verificationNumber": verification.VerificationNumber,
        "transactionID": verification.TransactionID,
        "transactionNumber": transaction.TransactionNumber if transaction else None,
        "borrowerRef": transaction.BorrowerRef if transaction else None,
        "borrowerName": transaction.BorrowerName if transaction else None,
        "lineID": verification.LineID,
        "itemID": verification.ItemID,
        "itemName": item.ItemName if item else None,
        "quantity": verification.Quantity,
        "batchID": verification.BatchID,
        "status": verification.Status,
        "returnNotes": verification.ReturnNotes,
        "conditionNotes": verification.ConditionNotes,
        "resolvedBy": verification.ResolvedBy,
        "resolvedAt": verification.ResolvedAt,
        "createdDate": verification.CreatedDate,
    }


def serialize_resolution(result: ResolutionResult) -> dict:
    return {
        "verificationID": result.verification.VerificationID,
        "outcome": result.outcome,
        "alreadyResolved": result.already_resolved,
        "transactionStatus": result.transaction_status,
    }
