#!/usr/bin/env python3
"""Database overview and availability checks for the resource office."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine


EXPECTED_COLUMNS: dict[str, list[str]] = {
    "InventoryItems": ["ItemID", "ItemCode", "ItemName", "TotalQuantity", "AvailableQuantity", "Status"],
    "BorrowTransactions": [
        "TransactionID",
        "TransactionNumber",
        "BorrowerRef",
        "ExpectedReturnDate",
        "Status",
        "IsOverdue",
        "OverdueNotifiedAt",
        "DueSoonNotifiedAt",
        "DueTodayNotifiedAt",
    ],
    "BorrowLines": ["LineID", "TransactionID", "ItemID", "Quantity", "Status"],
    "ReturnVerifications": ["VerificationID", "TransactionID", "LineID", "ItemID", "Quantity", "BatchID", "Status"],
    "AuditLogs": ["AuditID", "EntityType", "EntityID", "Action", "Details", "UserID", "CreatedAt"],
    "NotificationQueue": ["NotificationID", "NotificationType", "Attempts", "SentAt"],
}
EXPECTED_TABLES = list(EXPECTED_COLUMNS)


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _get_engine(db_url: str) -> Engine:
    return create_engine(db_url, pool_pre_ping=True, future=True)


def _scalar(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).scalar()


def _rows(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).all()


def _count_check(engine: Engine, name: str, sql: str) -> CheckResult:
    count = int(_scalar(engine, sql) or 0)
    return CheckResult(name, count == 0, f"count={count}")


def run_existence_checks(engine: Engine) -> list[CheckResult]:
    present = set(inspect(engine).get_table_names())
    return [
        CheckResult(f"table:{table}", table in present, "present" if table in present else "missing")
        for table in EXPECTED_TABLES
    ]


def run_column_checks(engine: Engine) -> list[CheckResult]:
    inspector = inspect(engine)
    present = set(inspector.get_table_names())
    results: list[CheckResult] = []
    for table, expected in EXPECTED_COLUMNS.items():
        if table not in present:
            results.append(CheckResult(f"columns:{table}", False, "table missing"))
            continue
        actual = {column["name"] for column in inspector.get_columns(table)}
        missing = [name for name in expected if name not in actual]
        results.append(
            CheckResult(
                f"columns:{table}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def run_integrity_checks(engine: Engine) -> list[CheckResult]:
    present = set(inspect(engine).get_table_names())
    checks: list[CheckResult] = []

    if "InventoryItems" in present:
        checks.append(
            _count_check(
                engine,
                "inventory:available_out_of_range",
                "SELECT COUNT(*) FROM InventoryItems WHERE AvailableQuantity < 0 OR AvailableQuantity > TotalQuantity",
            )
        )

    if {"InventoryItems", "BorrowLines", "BorrowTransactions"} <= present:
        checks.append(
            _count_check(
                engine,
                "inventory:borrowed_mismatch",
                """
                SELECT COUNT(*)
                FROM InventoryItems i
                LEFT JOIN (
                    SELECT l.ItemID, SUM(l.Quantity) AS Outstanding
                    FROM BorrowLines l
                    JOIN BorrowTransactions t ON t.TransactionID = l.TransactionID
                    WHERE t.Status IN ('Borrowed', 'ReturnSubmitted') AND l.Status = 'Borrowed'
                    GROUP BY l.ItemID
                ) o ON o.ItemID = i.ItemID
                WHERE i.TotalQuantity - i.AvailableQuantity <> COALESCE(o.Outstanding, 0)
                """,
            )
        )
        checks.append(
            _count_check(
                engine,
                "borrowlines:orphan_itemid",
                """
                SELECT COUNT(*)
                FROM BorrowLines l
                LEFT JOIN InventoryItems i ON i.ItemID = l.ItemID
                WHERE i.ItemID IS NULL
                """,
            )
        )

    if {"ReturnVerifications", "BorrowTransactions"} <= present:
        checks.append(
            _count_check(
                engine,
                "verifications:pending_on_closed_transaction",
                """
                SELECT COUNT(*)
                FROM ReturnVerifications v
                JOIN BorrowTransactions t ON t.TransactionID = v.TransactionID
                WHERE v.Status = 'Pending' AND t.Status IN ('Returned', 'Rejected')
                """,
            )
        )

    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine) -> None:
    _print_section("Row Counts")
    present = set(inspect(engine).get_table_names())
    for table in EXPECTED_TABLES:
        if table not in present:
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def _print_samples(engine: Engine, sample_size: int) -> None:
    _print_section("Sample Values")
    sample_size = max(1, sample_size)
    present = set(inspect(engine).get_table_names())

    if "BorrowTransactions" in present:
        rows = _rows(
            engine,
            """
            SELECT TransactionID, TransactionNumber, BorrowerRef, Status, ExpectedReturnDate, IsOverdue
            FROM BorrowTransactions
            ORDER BY TransactionID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("BorrowTransactions (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")

    if "AuditLogs" in present:
        rows = _rows(
            engine,
            """
            SELECT AuditID, EntityType, Action, UserID, CreatedAt
            FROM AuditLogs
            ORDER BY AuditID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("AuditLogs (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Resource office DB overview")
    parser.add_argument("--db-url", default=os.environ.get("RESOURCE_OFFICE_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    args = parser.parse_args(argv)

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("RESOURCE_OFFICE_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    integrity = run_integrity_checks(engine)
    _print_results("Table Existence", run_existence_checks(engine))
    _print_results("Column Checks", run_column_checks(engine))
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine)
    _print_samples(engine, args.samples)
    return 0 if all(check.ok for check in integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
