"""Item catalog: owns per-item total and available quantities.

``reserve`` and ``release`` are the only writers of ``AvailableQuantity`` and
never commit; they run inside the caller's unit of work. Both are single
conditional UPDATE statements, so the check and the write happen atomically at
the row, whatever the backend.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from resource_office.models.inventory_models import BorrowLine, BorrowTransaction, InventoryItem
from resource_office.services.audit_service import log_audit
from resource_office.services.errors import (
    ConsistencyViolation,
    DuplicateItemCode,
    InsufficientAvailability,
    InvalidQuantity,
    ItemNotBorrowable,
    ResourceOfficeError,
    UnknownItem,
)

LOGGER = logging.getLogger("resource_office.catalog")

ITEM_STATUSES = {"Active", "Maintenance", "Lost"}
BORROWABLE_STATUS = "Active"
OPEN_TRANSACTION_STATES = {"Borrowed", "ReturnSubmitted"}
DEFAULT_LOW_STOCK_THRESHOLD = 30
CODE_GENERATION_ATTEMPTS = 3


def generate_item_code(db: Session, prefix: str = "INV") -> str:
    token = (prefix or "INV").upper()
    last = db.execute(
        select(InventoryItem)
        .where(InventoryItem.ItemCode.like(f"{token}-%"))
        .order_by(InventoryItem.ItemID.desc())
    ).scalars().first()
    next_number = 1
    if last and last.ItemCode:
        raw = last.ItemCode.replace(f"{token}-", "")
        try:
            next_number = int(raw) + 1
        except ValueError:
            next_number = 1
    return f"{token}-{next_number:03d}"


def is_low_stock(total: int, available: int, threshold_percent: int | None = None) -> bool:
    if total <= 0:
        return False
    threshold = DEFAULT_LOW_STOCK_THRESHOLD if threshold_percent is None else threshold_percent
    return available * 100 <= total * threshold


def serialize_item(item: InventoryItem) -> dict:
    total = int(item.TotalQuantity or 0)
    available = int(item.AvailableQuantity or 0)
    return {
        "itemID": item.ItemID,
        "itemCode": item.ItemCode,
        "itemName": item.ItemName,
        "category": item.Category,
        "description": item.Description,
        "totalQuantity": total,
        "availableQuantity": available,
        "borrowedQuantity": total - available,
        "status": item.Status,
        "lowStock": is_low_stock(total, available, item.LowStockThreshold),
        "createdDate": item.CreatedDate,
        "updatedDate": item.UpdatedDate,
    }


def _validate_quantity(quantity: int) -> int:
    try:
        value = int(quantity)
    except (TypeError, ValueError) as exc:
        raise InvalidQuantity(f"Quantity must be an integer, got {quantity!r}.") from exc
    if value <= 0:
        raise InvalidQuantity(f"Quantity must be positive, got {value}.", quantity=value)
    return value


# ---------------------------------------------------------------------------
# Reservation primitives
# ---------------------------------------------------------------------------


def reserve(db: Session, item_id: int, quantity: int) -> None:
    wanted = _validate_quantity(quantity)
    result = db.execute(
        update(InventoryItem)
        .where(InventoryItem.ItemID == item_id)
        .where(InventoryItem.Status == BORROWABLE_STATUS)
        .where(InventoryItem.AvailableQuantity >= wanted)
        .values(
            AvailableQuantity=InventoryItem.AvailableQuantity - wanted,
            UpdatedDate=datetime.now(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        return

    row = db.execute(
        select(InventoryItem.Status, InventoryItem.AvailableQuantity).where(InventoryItem.ItemID == item_id)
    ).first()
    if row is None:
        raise UnknownItem(item_id)
    item_status, available = row
    if item_status != BORROWABLE_STATUS:
        raise ItemNotBorrowable(item_id, item_status)
    raise InsufficientAvailability(item_id, wanted, int(available or 0))


def release(db: Session, item_id: int, quantity: int) -> None:
    count = _validate_quantity(quantity)
    result = db.execute(
        update(InventoryItem)
        .where(InventoryItem.ItemID == item_id)
        .where(InventoryItem.AvailableQuantity + count <= InventoryItem.TotalQuantity)
        .values(
            AvailableQuantity=InventoryItem.AvailableQuantity + count,
            UpdatedDate=datetime.now(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        return

    row = db.execute(
        select(InventoryItem.TotalQuantity, InventoryItem.AvailableQuantity).where(InventoryItem.ItemID == item_id)
    ).first()
    if row is None:
        LOGGER.error("Release against missing item item=%s quantity=%s", item_id, count)
        raise ConsistencyViolation(f"Cannot release stock for missing item {item_id}.", itemID=item_id)
    total, available = row
    LOGGER.error(
        "Release would exceed total item=%s quantity=%s available=%s total=%s",
        item_id,
        count,
        available,
        total,
    )
    raise ConsistencyViolation(
        f"Releasing {count} of item {item_id} would exceed its total quantity.",
        itemID=item_id,
        quantity=count,
        available=int(available or 0),
        total=int(total or 0),
    )


def status(db: Session, item_id: int) -> dict:
    row = db.execute(
        select(
            InventoryItem.TotalQuantity,
            InventoryItem.AvailableQuantity,
            InventoryItem.Status,
            InventoryItem.LowStockThreshold,
        ).where(InventoryItem.ItemID == item_id)
    ).first()
    if row is None:
        raise UnknownItem(item_id)
    total, available, item_status, threshold = row
    return {
        "itemID": item_id,
        "total": int(total or 0),
        "available": int(available or 0),
        "status": item_status,
        "lowStock": is_low_stock(int(total or 0), int(available or 0), threshold),
    }


# ---------------------------------------------------------------------------
# Catalog administration
# ---------------------------------------------------------------------------


def get_item(db: Session, item_id: int) -> InventoryItem:
    item = db.get(InventoryItem, item_id)
    if not item:
        raise UnknownItem(item_id)
    return item


def list_items(db: Session, search: str | None = None, category: str | None = None) -> list[InventoryItem]:
    stmt = select(InventoryItem)
    query = (search or "").strip()
    if query:
        stmt = stmt.where(
            or_(
                InventoryItem.ItemName.ilike(f"%{query}%"),
                InventoryItem.ItemCode.ilike(f"%{query}%"),
            )
        )
    if category:
        stmt = stmt.where(InventoryItem.Category == category)
    return list(db.execute(stmt.order_by(InventoryItem.ItemID)).scalars().all())


def create_item(
    db: Session,
    *,
    item_name: str,
    total_quantity: int,
    category: str | None = None,
    description: str | None = None,
    item_code: str | None = None,
    low_stock_threshold: int | None = None,
    user_id: str | None = None,
) -> InventoryItem:
    name = (item_name or "").strip()
    if not name:
        raise ResourceOfficeError("Item name is required.")
    if total_quantity is None or int(total_quantity) < 0:
        raise InvalidQuantity("Total quantity must be zero or more.", quantity=total_quantity)

    requested_code = (item_code or "").strip().upper()
    # Generated codes are read-then-write; a concurrent create may take the same one.
    attempts = 1 if requested_code else CODE_GENERATION_ATTEMPTS
    for attempt in range(1, attempts + 1):
        code = requested_code or generate_item_code(db)
        item = InventoryItem(
            ItemCode=code,
            ItemName=name,
            Category=category,
            Description=description,
            TotalQuantity=int(total_quantity),
            AvailableQuantity=int(total_quantity),
            Status=BORROWABLE_STATUS,
            LowStockThreshold=DEFAULT_LOW_STOCK_THRESHOLD if low_stock_threshold is None else int(low_stock_threshold),
            CreatedDate=datetime.now(),
            UpdatedDate=datetime.now(),
        )
        try:
            db.add(item)
            db.flush()
            log_audit(db, "InventoryItem", item.ItemID, "CreateItem", f"total={item.TotalQuantity}", user_id=user_id)
            db.commit()
            break
        except IntegrityError:
            db.rollback()
            LOGGER.warning("Item code taken code=%s attempt=%s", code, attempt)
            if attempt == attempts:
                raise DuplicateItemCode(code)
    LOGGER.info("Item created item=%s code=%s total=%s", item.ItemID, item.ItemCode, item.TotalQuantity)
    return item


def restock(db: Session, item_id: int, quantity_change: int, reason: str | None = None, user_id: str | None = None) -> dict:
    """Move total and available together by ``quantity_change``.

    Negative changes only remove units that are on the shelf; units out on
    loan are never written off here.
    """
    try:
        delta = int(quantity_change)
    except (TypeError, ValueError) as exc:
        raise InvalidQuantity(f"Quantity change must be an integer, got {quantity_change!r}.") from exc
    if delta == 0:
        raise InvalidQuantity("Quantity change must not be zero.")

    result = db.execute(
        update(InventoryItem)
        .where(InventoryItem.ItemID == item_id)
        .where(InventoryItem.AvailableQuantity + delta >= 0)
        .values(
            TotalQuantity=InventoryItem.TotalQuantity + delta,
            AvailableQuantity=InventoryItem.AvailableQuantity + delta,
            UpdatedDate=datetime.now(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        snapshot = status(db, item_id)
        raise InsufficientAvailability(item_id, -delta, snapshot["available"])

    log_audit(db, "InventoryItem", item_id, "Restock", f"change={delta} reason={reason or ''}".strip(), user_id=user_id)
    db.commit()
    LOGGER.info("Item restocked item=%s change=%s", item_id, delta)
    return status(db, item_id)


def set_item_status(db: Session, item_id: int, new_status: str, user_id: str | None = None) -> InventoryItem:
    target = (new_status or "").strip().capitalize()
    if target not in ITEM_STATUSES:
        raise ResourceOfficeError(
            f"Item status must be one of {', '.join(sorted(ITEM_STATUSES))}.",
            status=new_status,
        )
    item = get_item(db, item_id)
    previous = item.Status
    item.Status = target
    item.UpdatedDate = datetime.now()
    log_audit(db, "InventoryItem", item_id, "SetStatus", f"{previous} -> {target}", user_id=user_id)
    db.commit()
    LOGGER.info("Item status changed item=%s from=%s to=%s", item_id, previous, target)
    return item


# ---------------------------------------------------------------------------
# Invariant report
# ---------------------------------------------------------------------------


def outstanding_quantities(db: Session) -> dict[int, int]:
    rows = db.execute(
        select(BorrowLine.ItemID, func.coalesce(func.sum(BorrowLine.Quantity), 0))
        .join(BorrowTransaction, BorrowTransaction.TransactionID == BorrowLine.TransactionID)
        .where(BorrowTransaction.Status.in_(OPEN_TRANSACTION_STATES))
        .where(BorrowLine.Status == "Borrowed")
        .group_by(BorrowLine.ItemID)
    ).all()
    return {int(item_id): int(total or 0) for item_id, total in rows}


def check_consistency(db: Session) -> dict:
    outstanding = outstanding_quantities(db)
    rows = db.execute(
        select(InventoryItem.ItemID, InventoryItem.TotalQuantity, InventoryItem.AvailableQuantity)
    ).all()

    violations = []
    for item_id, total, available in rows:
        total = int(total or 0)
        available = int(available or 0)
        lent = outstanding.get(int(item_id), 0)
        problems = []
        if available < 0:
            problems.append("available_negative")
        if available > total:
            problems.append("available_exceeds_total")
        if total - available != lent:
            problems.append("borrowed_mismatch")
        if problems:
            violations.append(
                {
                    "itemID": item_id,
                    "total": total,
                    "available": available,
                    "outstanding": lent,
                    "problems": problems,
                }
            )

    if violations:
        LOGGER.error("Availability invariant violated items=%s", [v["itemID"] for v in violations])
    return {"ok": not violations, "checkedCount": len(rows), "violations": violations}
