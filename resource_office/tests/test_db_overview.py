import io
import os
import unittest
from contextlib import redirect_stdout

from sqlalchemy import text, update

from resource_office.tests._support import OfficeTestCase
from resource_office.db.session import engine_office
from resource_office.models.inventory_models import InventoryItem
from resource_office.scripts import db_overview


def _by_name(results):
    return {result.name: result for result in results}


class DbOverviewTests(OfficeTestCase):
    def setUp(self):
        super().setUp()
        self.item = self.make_item("Soldering iron", 4)
        self.borrow([(self.item.ItemID, 1)])

    def test_schema_checks_pass_on_fresh_database(self):
        existence = db_overview.run_existence_checks(engine_office)
        columns = db_overview.run_column_checks(engine_office)

        self.assertEqual(len(existence), len(db_overview.EXPECTED_TABLES))
        self.assertTrue(all(check.ok for check in existence))
        self.assertTrue(all(check.ok for check in columns))

    def test_missing_table_is_reported(self):
        self.db.rollback()
        with engine_office.begin() as conn:
            conn.execute(text("DROP TABLE NotificationQueue"))

        existence = _by_name(db_overview.run_existence_checks(engine_office))
        columns = _by_name(db_overview.run_column_checks(engine_office))

        self.assertFalse(existence["table:NotificationQueue"].ok)
        self.assertEqual(columns["columns:NotificationQueue"].detail, "table missing")

    def test_integrity_checks_follow_outstanding_loans(self):
        clean = _by_name(db_overview.run_integrity_checks(engine_office))
        self.assertTrue(all(check.ok for check in clean.values()))
        self.assertIn("inventory:borrowed_mismatch", clean)

        self.db.execute(update(InventoryItem).where(InventoryItem.ItemID == self.item.ItemID).values(AvailableQuantity=4))
        self.db.commit()

        drifted = _by_name(db_overview.run_integrity_checks(engine_office))
        self.assertFalse(drifted["inventory:borrowed_mismatch"].ok)
        self.assertEqual(drifted["inventory:borrowed_mismatch"].detail, "count=1")
        self.assertTrue(drifted["inventory:available_out_of_range"].ok)

    def test_main_exit_codes(self):
        db_url = os.environ["RESOURCE_OFFICE_DB_URL"]
        out = io.StringIO()
        with redirect_stdout(out):
            healthy = db_overview.main(["--db-url", db_url, "--samples", "2"])
        self.assertEqual(healthy, 0)
        self.assertIn("=== Integrity Checks ===", out.getvalue())
        self.assertIn("BorrowTransactions: 1", out.getvalue())

        self.db.execute(update(InventoryItem).values(AvailableQuantity=9))
        self.db.commit()
        with redirect_stdout(io.StringIO()):
            broken = db_overview.main(["--db-url", db_url])
        self.assertEqual(broken, 1)

    def test_main_requires_database_url(self):
        out = io.StringIO()
        with redirect_stdout(out):
            code = db_overview.main(["--db-url", ""])
        self.assertEqual(code, 2)
        self.assertIn("RESOURCE_OFFICE_DB_URL is not set", out.getvalue())


if __name__ == "__main__":
    unittest.main()
