from __future__ import annotations

from typing import Any


class ResourceOfficeError(Exception):
    status_code = 400
    code = "error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    @property
    def detail(self) -> dict[str, Any]:
        payload = {"code": self.code, "message": self.message}
        payload.update(self.context)
        return payload


# Borrow side -----------------------------------------------------------------


class BorrowError(ResourceOfficeError):
    code = "borrow_error"


class UnknownBorrower(BorrowError):
    status_code = 404
    code = "unknown_borrower"

    def __init__(self, borrower_ref: str) -> None:
        super().__init__(f"Borrower {borrower_ref} not found.", borrowerRef=borrower_ref)
        self.borrower_ref = borrower_ref


class InvalidDateRange(BorrowError):
    code = "invalid_date_range"


class EmptyRequest(BorrowError):
    code = "empty_request"

    def __init__(self) -> None:
        super().__init__("No borrow lines supplied.")


class InvalidQuantity(BorrowError):
    code = "invalid_quantity"


class UnknownItem(BorrowError):
    status_code = 404
    code = "unknown_item"

    def __init__(self, item_id: int) -> None:
        super().__init__(f"Item {item_id} not found.", itemID=item_id)
        self.item_id = item_id


class ItemNotBorrowable(BorrowError):
    status_code = 409
    code = "item_not_borrowable"

    def __init__(self, item_id: int, status: str) -> None:
        super().__init__(f"Item {item_id} is {status} and cannot be borrowed.", itemID=item_id, itemStatus=status)
        self.item_id = item_id
        self.item_status = status


class InsufficientAvailability(BorrowError):
    status_code = 409
    code = "insufficient_availability"

    def __init__(self, item_id: int, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient quantity for item {item_id}. Requested: {requested}, Available: {available}",
            itemID=item_id,
            requested=requested,
            available=available,
        )
        self.item_id = item_id
        self.requested = requested
        self.available = available


# Transaction / verification side ----------------------------------------------


class UnknownTransaction(ResourceOfficeError):
    status_code = 404
    code = "unknown_transaction"

    def __init__(self, transaction_id: int) -> None:
        super().__init__(f"Transaction {transaction_id} not found.", transactionID=transaction_id)


class UnknownVerification(ResourceOfficeError):
    status_code = 404
    code = "unknown_verification"

    def __init__(self, verification_id: int) -> None:
        super().__init__(f"Return verification {verification_id} not found.", verificationID=verification_id)


class VerificationAlreadyPending(ResourceOfficeError):
    status_code = 409
    code = "verification_already_pending"

    def __init__(self, transaction_id: int, pending_ids: list[int]) -> None:
        super().__init__(
            f"Transaction {transaction_id} already has a return awaiting verification.",
            transactionID=transaction_id,
            pendingVerificationIDs=pending_ids,
        )
        self.pending_ids = pending_ids


class TransactionNotReturnable(ResourceOfficeError):
    status_code = 409
    code = "transaction_not_returnable"

    def __init__(self, transaction_id: int, status: str) -> None:
        super().__init__(
            f"Transaction {transaction_id} is {status}; only borrowed items can be returned.",
            transactionID=transaction_id,
            transactionStatus=status,
        )


class InvalidStateTransition(ResourceOfficeError):
    status_code = 409
    code = "invalid_state_transition"

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Invalid state transition: {current} -> {target}", current=current, target=target)


class InvalidReturnLines(ResourceOfficeError):
    code = "invalid_return_lines"


class NotTransactionOwner(ResourceOfficeError):
    status_code = 403
    code = "not_transaction_owner"

    def __init__(self, transaction_id: int) -> None:
        super().__init__(f"Transaction {transaction_id} does not belong to this borrower.", transactionID=transaction_id)


class InvalidOutcome(ResourceOfficeError):
    code = "invalid_outcome"

    def __init__(self, outcome: str) -> None:
        super().__init__(f"Outcome must be Verified or Rejected, got {outcome!r}.", outcome=outcome)


class RejectionReasonRequired(ResourceOfficeError):
    code = "rejection_reason_required"

    def __init__(self) -> None:
        super().__init__("A reason is required to reject a return.")


# Collaborators / consistency --------------------------------------------------


class BorrowerDirectoryError(ResourceOfficeError):
    status_code = 503
    code = "borrower_directory_unavailable"


class ConsistencyViolation(ResourceOfficeError):
    status_code = 500
    code = "consistency_violation"


class DuplicateItemCode(ResourceOfficeError):
    status_code = 409
    code = "duplicate_item_code"

    def __init__(self, item_code: str) -> None:
        super().__init__(f"Item code {item_code} is already in use.", itemCode=item_code)
        self.item_code = item_code
