import json
import os
import unittest
from unittest import mock

from sqlalchemy import select

from resource_office.tests._support import FailingNotifier, OfficeTestCase
from resource_office.db.session import SessionLocalOffice
from resource_office.models.inventory_models import NotificationQueue
from resource_office.services import borrower_directory_service
from resource_office.services.errors import BorrowerDirectoryError
from resource_office.services.notification_service import (
    QueueNotificationSink,
    deliver_pending,
    list_pending,
    safe_notify,
    serialize_notification,
)


class FlakyTransport:
    def __init__(self, failures):
        self.failures = failures
        self.delivered = []

    def send(self, notification):
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("smtp timeout")
        self.delivered.append(notification.NotificationID)


class OutboxTests(OfficeTestCase):
    def setUp(self):
        super().setUp()
        item = self.make_item("Tablet", 3)
        self.transaction = self.borrow([(item.ItemID, 1)])
        QueueNotificationSink(SessionLocalOffice).notify("DueSoon", self.transaction)

    def test_queue_sink_stores_json_payload(self):
        row = self.db.execute(select(NotificationQueue)).scalars().one()
        payload = json.loads(row.Payload)

        self.assertEqual(row.NotificationType, "DueSoon")
        self.assertEqual(payload["transactionNumber"], self.transaction.TransactionNumber)
        self.assertEqual(payload["expectedReturnDate"], self.transaction.ExpectedReturnDate.isoformat())
        self.assertEqual(serialize_notification(row)["payload"]["kind"], "DueSoon")

    def test_delivery_retries_until_sent(self):
        transport = FlakyTransport(failures=1)

        with self.assertLogs("resource_office.notifications", level="WARNING"):
            first = deliver_pending(self.db, transport, max_attempts=3)
        second = deliver_pending(self.db, transport, max_attempts=3)

        self.assertEqual(first, {"sent": 0, "failed": 1})
        self.assertEqual(second, {"sent": 1, "failed": 0})
        row = self.db.execute(select(NotificationQueue)).scalars().one()
        self.assertEqual(row.Attempts, 2)
        self.assertIsNotNone(row.SentAt)
        self.assertIsNone(row.LastError)
        self.assertEqual(list_pending(self.db), [])

    def test_delivery_gives_up_after_max_attempts(self):
        transport = FlakyTransport(failures=10)

        for _ in range(4):
            deliver_pending(self.db, transport, max_attempts=2)

        row = self.db.execute(select(NotificationQueue)).scalars().one()
        self.assertEqual(row.Attempts, 2)
        self.assertEqual(row.LastError, "smtp timeout")
        self.assertEqual(list_pending(self.db, max_attempts=2), [])
        self.assertEqual(len(list_pending(self.db)), 1)

    def test_safe_notify_logs_and_swallows_sink_errors(self):
        with self.assertLogs("resource_office.notifications", level="ERROR"):
            delivered = safe_notify(FailingNotifier(), "Overdue", self.transaction)
        self.assertFalse(delivered)
        self.assertFalse(safe_notify(None, "Overdue", self.transaction))


class _FakeResponse:
    def __init__(self, payload, status=200):
        self.status = status
        self._body = json.dumps(payload).encode("utf-8")

    def read(self):
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class BorrowerDirectoryTests(unittest.TestCase):
    ROWS = [
        {"id": "s-1001", "firstName": "Ana", "lastName": "Reyes", "email": "ana@example.edu", "type": "Student"},
        {"id": "E-2001", "name": "Carla Santos", "type": "Employee"},
        {"id": "", "name": "No Id"},
    ]

    def setUp(self):
        borrower_directory_service.reset_cache()
        self.env = mock.patch.dict(
            os.environ,
            {"BORROWER_API_BASE_URL": "https://directory.example.edu/api/", "BORROWER_API_TOKEN": "secret"},
        )
        self.env.start()

    def tearDown(self):
        self.env.stop()
        borrower_directory_service.reset_cache()

    def test_lookup_normalizes_and_caches(self):
        with mock.patch.object(
            borrower_directory_service.urllib.request,
            "urlopen",
            return_value=_FakeResponse(self.ROWS),
        ) as urlopen:
            entry = borrower_directory_service.lookup_borrower(" S-1001 ")
            again = borrower_directory_service.lookup_borrower("s-1001")

        self.assertEqual(entry["name"], "Ana Reyes")
        self.assertEqual(again["email"], "ana@example.edu")
        self.assertEqual(urlopen.call_count, 1)
        request = urlopen.call_args[0][0]
        self.assertEqual(request.full_url, "https://directory.example.edu/api/Borrowers/all")
        self.assertEqual(request.get_header("Authorization"), "secret")

    def test_unknown_borrower_returns_none(self):
        with mock.patch.object(
            borrower_directory_service.urllib.request,
            "urlopen",
            return_value=_FakeResponse(self.ROWS),
        ):
            self.assertIsNone(borrower_directory_service.lookup_borrower("X-9"))
            self.assertIsNone(borrower_directory_service.lookup_borrower(""))

    def test_unknown_refs_do_not_refetch_every_time(self):
        with mock.patch.object(
            borrower_directory_service.urllib.request,
            "urlopen",
            return_value=_FakeResponse(self.ROWS),
        ) as urlopen:
            for ref in ("X-1", "X-2", "X-3", "X-4"):
                self.assertIsNone(borrower_directory_service.lookup_borrower(ref))

        self.assertEqual(urlopen.call_count, 1)

    def test_miss_refresh_picks_up_new_borrowers(self):
        newcomer = {"id": "S-3001", "name": "Lea Cruz"}
        responses = [_FakeResponse(self.ROWS), _FakeResponse(self.ROWS + [newcomer])]
        with mock.patch.dict(os.environ, {"BORROWER_MISS_REFRESH_SECONDS": "0"}):
            with mock.patch.object(
                borrower_directory_service.urllib.request,
                "urlopen",
                side_effect=responses,
            ) as urlopen:
                self.assertIsNotNone(borrower_directory_service.lookup_borrower("S-1001"))
                entry = borrower_directory_service.lookup_borrower("s-3001")

        self.assertEqual(entry["name"], "Lea Cruz")
        self.assertEqual(urlopen.call_count, 2)

    def test_missing_configuration_raises(self):
        with mock.patch.dict(os.environ, {"BORROWER_API_BASE_URL": ""}):
            with self.assertLogs("resource_office.borrowers", level="ERROR"):
                with self.assertRaises(BorrowerDirectoryError):
                    borrower_directory_service.lookup_borrower("S-1001")

    def test_status_reports_cache(self):
        with mock.patch.object(
            borrower_directory_service.urllib.request,
            "urlopen",
            return_value=_FakeResponse(self.ROWS),
        ):
            borrower_directory_service.get_borrower_directory()

        status = borrower_directory_service.get_directory_status()
        self.assertTrue(status["configured"])
        self.assertEqual(status["cachedCount"], 2)
        self.assertTrue(status["cacheFresh"])


if __name__ == "__main__":
    unittest.main()
