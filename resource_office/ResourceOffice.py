import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.orm import Session

from resource_office.config import _env_bool, _parse_csv_env, notification_max_attempts
from resource_office.db.base import Base
from resource_office.db.deps import get_office_db
from resource_office.db.session import SessionLocalOffice, engine_office
from resource_office.models import inventory_models  # noqa: F401
from resource_office.schemas.borrowing import (
    BorrowRequestDto,
    ExtendReturnDateRequest,
    ResolveVerificationRequest,
    ReturnSubmissionRequest,
    StatusCheckRequest,
)
from resource_office.schemas.inventory import InventoryItemCreate, ItemStatusUpdate, RestockRequest
from resource_office.services import borrow_service, catalog_service, return_verification_service
from resource_office.services.borrower_directory_service import get_directory_status, lookup_borrower
from resource_office.services.errors import ResourceOfficeError
from resource_office.services.notification_service import (
    LoggingTransport,
    QueueNotificationSink,
    deliver_pending,
    list_pending,
    serialize_notification,
)
from resource_office.services.overdue_service import run_overdue_sweep
from resource_office.services.status_service import check_status
from resource_office.tasks.scheduler import start_scheduler, stop_scheduler

LOGGER = logging.getLogger("resource_office.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if _env_bool("RESOURCE_OFFICE_CREATE_SCHEMA", True):
        Base.metadata.create_all(bind=engine_office)
    scheduler = None
    if _env_bool("SCHEDULER_ENABLED", True):
        scheduler = start_scheduler(SessionLocalOffice)
    try:
        yield
    finally:
        stop_scheduler(scheduler)


app = FastAPI(title="Resource Office", lifespan=lifespan)

_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5173,http://localhost:5173",
)
_CORS_ALLOW_CREDENTIALS = _env_bool("CORS_ALLOW_CREDENTIALS", True)
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_borrower_lookup():
    return lookup_borrower


def get_notifier():
    return QueueNotificationSink(SessionLocalOffice)


def get_notification_transport():
    return LoggingTransport()


def _http_error(exc: ResourceOfficeError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.detail)


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_office_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


# ---------------------------------------------------------------------------
# Borrowers
# ---------------------------------------------------------------------------


@app.get("/api/borrowers/status")
def borrower_directory_status():
    return get_directory_status()


@app.get("/api/borrowers/{borrower_ref}/transactions")
def borrower_transactions(
    borrower_ref: str,
    status: Optional[str] = None,
    db: Session = Depends(get_office_db),
):
    rows = borrow_service.list_borrower_transactions(db, borrower_ref, status=status)
    return [borrow_service.serialize_transaction(row) for row in rows]


# ---------------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------------


@app.get("/api/inventory")
def list_inventory(
    search: Optional[str] = None,
    category: Optional[str] = None,
    lowStockOnly: bool = False,
    db: Session = Depends(get_office_db),
):
    rows = [catalog_service.serialize_item(item) for item in catalog_service.list_items(db, search, category)]
    if lowStockOnly:
        rows = [row for row in rows if row["lowStock"]]
    return rows


@app.post("/api/inventory")
def create_inventory_item(payload: InventoryItemCreate, db: Session = Depends(get_office_db)):
    try:
        item = catalog_service.create_item(
            db,
            item_name=payload.itemName,
            total_quantity=payload.totalQuantity,
            category=payload.category,
            description=payload.description,
            item_code=payload.itemCode,
            low_stock_threshold=payload.lowStockThreshold,
        )
    except ResourceOfficeError as exc:
        raise _http_error(exc) from exc
    return catalog_service.serialize_item(item)


@app.get("/api/inventory/consistency")
def inventory_consistency(db: Session = Depends(get_office_db)):
    return catalog_service.check_consistency(db)


@app.get("/api/inventory/{item_id}")
def inventory_item_status(item_id: int, db: Session = Depends(get_office_db)):
    try:
        snapshot = catalog_service.status(db, item_id)
        item = catalog_service.get_item(db, item_id)
    except ResourceOfficeError as exc:
        raise _http_error(exc) from exc
    snapshot.update(itemCode=item.ItemCode, itemName=item.ItemName, category=item.Category)
    return snapshot


@app.post("/api/inventory/{item_id}/restock")
def restock_inventory_item(item_id: int, payload: RestockRequest, db: Session = Depends(get_office_db)):
    try:
        return catalog_service.restock(
            db,
            item_id,
            payload.quantityChange,
            reason=payload.reason,
            user_id=payload.requestedBy,
        )
    except ResourceOfficeError as exc:
        raise _http_error(exc) from exc


@app.put("/api/inventory/{item_id}/status")
def update_inventory_status(item_id: int, payload: ItemStatusUpdate, db: Session = Depends(get_office_db)):
    try:
        item = catalog_service.set_item_status(db, item_id, payload.status, user_id=payload.requestedBy)
    except ResourceOfficeError as exc:
        raise _http_error(exc) from exc
    return catalog_service.serialize_item(item)


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


@app.post("/api/transactions")
def submit_borrow_request(
    payload: BorrowRequestDto,
    db: Session = Depends(get_office_db),
    borrower_lookup=Depends(get_borrower_lookup),
    notifier=Depends(get_notifier),
):
    try:
        transaction = borrow_service.submit_borrow(
            db,
            borrower_ref=payload.borrowerRef,
            expected_return_date=payload.expectedReturnDate,
            purpose=payload.purpose,
            location=payload.location,
            notes=payload.notes,
            lines=[(line.itemID, line.quantity) for line in payload.lines],
            borrower_lookup=borrower_lookup,
            notifier=notifier,
        )
    except ResourceOfficeError as exc:
        raise _http_error(exc) from exc
    return borrow_service.serialize_transaction(transaction)


@app.get("/api/transactions")
def list_borrow_transactions(
    status: Optional[str] = None,
    borrowerRef: Optional[str] = None,
    overdue: Optional[bool] = None,
    db: Session = Depends(get_office_db),
):
    rows = borrow_service.list_transactions(db, status=status, borrower_ref=borrowerRef, overdue=overdue)
    return [borrow_service.serialize_transaction(row) for row in rows]


@app.get("/api/transactions/{transaction_id}")
def get_borrow_transaction(transaction_id: int, db: Session = Depends(get_office_db)):
    try:
        transaction = borrow_service.get_transaction(db, transaction_id)
    except ResourceOfficeError as exc:
        raise _http_error(exc) from exc
    return borrow_service.serialize_transaction(transaction, include_verifications=True)


@app.post("/api/transactions/{transaction_id}/extend")
def extend_borrow_transaction(
    transaction_id: int,
    payload: ExtendReturnDateRequest,
    db: Session = Depends(get_office_db),
):
    try:
        transaction = borrow_service.extend_return_date(
            db,
            transaction_id,
            payload.newReturnDate,
            reason=payload.reason,
            user_id=payload.requestedBy,
        )
    except ResourceOfficeError as exc:
        raise _http_error(exc) from exc
    return borrow_service.serialize_transaction(transaction)


@app.post("/api/transactions/{transaction_id}/returns")
def submit_return_request(
    transaction_id: int,
    payload: ReturnSubmissionRequest,
    db: Session = Depends(get_office_db),
):
    try:
        verifications = return_verification_service.submit_return(
            db,
            transaction_id,
            line_ids=payload.lineIDs,
            return_notes=payload.notes,
            borrower_ref=payload.borrowerRef,
        )
    except ResourceOfficeError as exc:
        raise _http_error(exc) from exc
    return {
        "transactionID": transaction_id,
        "verificationIDs": [v.VerificationID for v in verifications],
        "verificationNumbers": [v.VerificationNumber for v in verifications],
        "batchID": verifications[0].BatchID if verifications else None,
    }


# ---------------------------------------------------------------------------
# Verifications
# ---------------------------------------------------------------------------


@app.get("/api/verifications")
def verification_lounge(
    status: Optional[str] = "Pending",
    dateFrom: Optional[date] = None,
    dateTo: Optional[date] = None,
    transactionID: Optional[int] = None,
    db: Session = Depends(get_office_db),
):
    rows = return_verification_service.list_verifications(
        db,
        status=status,
        date_from=dateFrom,
        date_to=dateTo,
        transaction_id=transactionID,
    )
    return [return_verification_service.serialize_verification(row) for row in rows]


@app.post("/api/verifications/status")
def verification_status(payload: StatusCheckRequest, db: Session = Depends(get_office_db)):
    return check_status(db, payload.verificationIDs)


@app.post("/api/verifications/{verification_id}/resolve")
def resolve_verification(
    verification_id: int,
    payload: ResolveVerificationRequest,
    db: Session = Depends(get_office_db),
    notifier=Depends(get_notifier),
):
    try:
        result = return_verification_service.resolve_verification(
            db,
            verification_id,
            payload.outcome,
            resolver_id=payload.resolverRef,
            condition_notes=payload.conditionNotes,
            notifier=notifier,
        )
    except ResourceOfficeError as exc:
        raise _http_error(exc) from exc
    return return_verification_service.serialize_resolution(result)


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


@app.post("/api/notifications/run")
def run_notifications(db: Session = Depends(get_office_db), notifier=Depends(get_notifier)):
    return run_overdue_sweep(db, notifier)


@app.get("/api/notifications/pending")
def get_pending_notifications(db: Session = Depends(get_office_db)):
    return [serialize_notification(row) for row in list_pending(db)]


@app.post("/api/notifications/deliver")
def deliver_notifications(
    maxAttempts: Optional[int] = Query(default=None, ge=1),
    db: Session = Depends(get_office_db),
    transport=Depends(get_notification_transport),
):
    return deliver_pending(db, transport, max_attempts=maxAttempts or notification_max_attempts())
