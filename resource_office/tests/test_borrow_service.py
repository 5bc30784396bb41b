import threading
import unittest
from datetime import timedelta

from sqlalchemy import func, select

from resource_office.tests._support import FailingNotifier, OfficeTestCase, fake_borrower_lookup
from resource_office.db.session import SessionLocalOffice
from resource_office.models.inventory_models import AuditLog, BorrowTransaction
from resource_office.services import borrow_service, catalog_service
from resource_office.services.errors import (
    EmptyRequest,
    InsufficientAvailability,
    InvalidDateRange,
    InvalidQuantity,
    InvalidStateTransition,
    UnknownBorrower,
    UnknownItem,
)
from resource_office.services.notification_service import RecordingNotificationSink


class BorrowSubmissionTests(OfficeTestCase):
    def test_borrowing_all_stock_then_second_request_fails(self):
        item = self.make_item("Projector", 5)

        transaction = self.borrow([(item.ItemID, 5)])

        self.assertEqual(transaction.Status, "Borrowed")
        self.assertEqual(self.available(item.ItemID), 0)
        with self.assertRaises(InsufficientAvailability) as ctx:
            self.borrow([(item.ItemID, 1)], borrower_ref="S-1002")
        self.assertEqual((ctx.exception.item_id, ctx.exception.requested, ctx.exception.available), (item.ItemID, 1, 0))

    def test_transaction_numbers_and_borrower_details(self):
        item = self.make_item("Laptop", 5)

        first = self.borrow([(item.ItemID, 1)])
        second = self.borrow([(item.ItemID, 1)], borrower_ref="s-1002")

        self.assertEqual(first.TransactionNumber, "BRW-0001")
        self.assertEqual(second.TransactionNumber, "BRW-0002")
        self.assertEqual(second.BorrowerRef, "S-1002")
        self.assertEqual(second.BorrowerName, "Ben Cruz")
        self.assertEqual(first.BorrowDate, self.today)

    def test_duplicate_item_lines_are_merged_in_item_order(self):
        first = self.make_item("Cable", 10)
        second = self.make_item("Adapter", 10)

        transaction = self.borrow([(second.ItemID, 1), {"itemID": first.ItemID, "quantity": 2}, (second.ItemID, 2)])

        self.assertEqual(
            [(line.ItemID, line.Quantity) for line in transaction.Lines],
            [(first.ItemID, 2), (second.ItemID, 3)],
        )
        self.assertEqual(self.available(second.ItemID), 7)

    def test_failed_line_rolls_back_every_reservation(self):
        plenty = self.make_item("Chair", 5)
        scarce = self.make_item("Table", 1)

        with self.assertRaises(InsufficientAvailability) as ctx:
            self.borrow([(plenty.ItemID, 2), (scarce.ItemID, 3)])

        self.assertEqual(ctx.exception.item_id, scarce.ItemID)
        self.assertEqual(self.available(plenty.ItemID), 5)
        self.assertEqual(self.available(scarce.ItemID), 1)
        count = self.db.execute(select(func.count()).select_from(BorrowTransaction)).scalar()
        self.assertEqual(count, 0)

    def test_unknown_item_rolls_back(self):
        item = self.make_item("Tripod", 2)
        with self.assertRaises(UnknownItem):
            self.borrow([(item.ItemID, 1), (item.ItemID + 50, 1)])
        self.assertEqual(self.available(item.ItemID), 2)

    def test_unknown_borrower(self):
        item = self.make_item("Tripod", 2)
        with self.assertRaises(UnknownBorrower):
            self.borrow([(item.ItemID, 1)], borrower_ref="X-404")

    def test_return_date_must_be_after_today(self):
        item = self.make_item("Tripod", 2)
        for days in (0, -1):
            with self.assertRaises(InvalidDateRange):
                self.borrow([(item.ItemID, 1)], due_in_days=days)
        self.assertEqual(self.available(item.ItemID), 2)

    def test_empty_and_non_positive_lines(self):
        item = self.make_item("Tripod", 2)
        with self.assertRaises(EmptyRequest):
            self.borrow([])
        with self.assertRaises(InvalidQuantity):
            self.borrow([(item.ItemID, 0)])

    def test_borrow_writes_audit_row(self):
        item = self.make_item("Camera", 2)
        transaction = self.borrow([(item.ItemID, 1)])

        actions = self.db.execute(
            select(AuditLog.Action)
            .where(AuditLog.EntityType == "BorrowTransaction")
            .where(AuditLog.EntityID == transaction.TransactionID)
        ).scalars().all()
        self.assertEqual(actions, ["Borrow"])

    def test_notifier_receives_committed_borrow(self):
        item = self.make_item("Camera", 2)
        sink = RecordingNotificationSink()

        transaction = self.borrow([(item.ItemID, 1)], notifier=sink)

        self.assertEqual(sink.sent[0][:2], ("BorrowCommitted", transaction.TransactionID))

    def test_notifier_failure_does_not_undo_borrow(self):
        item = self.make_item("Camera", 2)

        with self.assertLogs("resource_office.notifications", level="ERROR"):
            transaction = self.borrow([(item.ItemID, 1)], notifier=FailingNotifier())

        self.assertEqual(self.available(item.ItemID), 1)
        self.assertIsNotNone(self.db.get(BorrowTransaction, transaction.TransactionID))


class ExtendReturnDateTests(OfficeTestCase):
    def test_extend_clears_overdue_flag_and_appends_note(self):
        item = self.make_item("Drill", 1)
        transaction = self.borrow([(item.ItemID, 1)], today=self.today - timedelta(days=5), due_in_days=3)
        transaction.IsOverdue = True
        self.db.commit()

        new_date = self.today + timedelta(days=4)
        updated = borrow_service.extend_return_date(self.db, transaction.TransactionID, new_date, reason="Thesis run")

        self.assertEqual(updated.ExpectedReturnDate, new_date)
        self.assertFalse(updated.IsOverdue)
        self.assertIn("Thesis run", updated.Notes)

    def test_extend_requires_future_date(self):
        item = self.make_item("Drill", 1)
        transaction = self.borrow([(item.ItemID, 1)])
        with self.assertRaises(InvalidDateRange):
            borrow_service.extend_return_date(self.db, transaction.TransactionID, self.today)


class StateMachineTests(unittest.TestCase):
    def test_terminal_states_have_no_exits(self):
        transaction = BorrowTransaction(Status="Returned")
        with self.assertRaises(InvalidStateTransition):
            borrow_service.transition_state(transaction, "Borrowed")

    def test_return_loop_back_to_borrowed(self):
        transaction = BorrowTransaction(Status="ReturnSubmitted")
        borrow_service.transition_state(transaction, "Borrowed")
        self.assertEqual(transaction.Status, "Borrowed")


class ConcurrentBorrowTests(OfficeTestCase):
    def test_parallel_requests_never_oversell(self):
        workers = 8
        item = self.make_item("Graphing calculator", workers - 1)
        barrier = threading.Barrier(workers)
        outcomes = []
        lock = threading.Lock()

        def submit(index):
            session = SessionLocalOffice()
            try:
                barrier.wait()
                borrow_service.submit_borrow(
                    session,
                    borrower_ref="S-1001" if index % 2 else "S-1002",
                    expected_return_date=self.today + timedelta(days=3),
                    purpose="Exam",
                    lines=[(item.ItemID, 1)],
                    borrower_lookup=fake_borrower_lookup,
                )
                result = "ok"
            except InsufficientAvailability:
                result = "insufficient"
            except Exception as exc:
                result = f"error:{exc!r}"
            finally:
                session.close()
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=submit, args=(index,)) for index in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        self.assertEqual(sorted(outcomes), ["insufficient"] + ["ok"] * (workers - 1))
        self.assertEqual(self.available(item.ItemID), 0)
        self.assertTrue(catalog_service.check_consistency(self.db)["ok"])


if __name__ == "__main__":
    unittest.main()
