import unittest

from sqlalchemy import create_engine, update

from lending_engine.models.lending_models import EquipmentItem
from lending_engine.scripts.ledger_overview import collect_checks
from lending_engine.tests._support import LendingTestCase


class LedgerOverviewTests(LendingTestCase):
    def _failures(self):
        return [row.name for row in collect_checks(self.engine) if not row.ok]

    def test_consistent_ledger_passes_every_check(self):
        item = self.make_item(total=4, item_code="AV-0001")
        self.released_borrowing(item.EquipmentID, quantity=2)
        pending = self.released_borrowing(item.EquipmentID)
        self.regular.return_item(self.db, pending, damage_severity="Severe")

        self.assertEqual(self._failures(), [])

    def test_drifted_borrowed_bucket_is_reported(self):
        item = self.make_item(total=4, item_code="AV-0002")
        self.released_borrowing(item.EquipmentID, quantity=2)
        self.db.execute(
            update(EquipmentItem)
            .where(EquipmentItem.EquipmentID == item.EquipmentID)
            .values(BorrowedQuantity=1, AvailableQuantity=3)
        )
        self.db.commit()

        self.assertEqual(self._failures(), ["ledger:AV-0002:borrowed_matches_requests"])

    def test_missing_tables_stop_further_checks(self):
        empty = create_engine("sqlite+pysqlite:///:memory:", future=True)
        try:
            results = collect_checks(empty)
        finally:
            empty.dispose()

        self.assertTrue(results)
        self.assertTrue(all(row.name.startswith("table:") for row in results))
        self.assertFalse(any(row.ok for row in results))


if __name__ == "__main__":
    unittest.main()
