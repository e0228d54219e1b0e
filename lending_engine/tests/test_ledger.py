import unittest
from datetime import date

from lending_engine.services import ledger_service
from lending_engine.services.equipment_service import (
    borrowing_available,
    check_can_borrow,
    create_equipment,
    generate_next_item_code,
    verify_invariant,
)
from lending_engine.services.errors import ActionResult, InsufficientStock, NotFound, ValidationError
from lending_engine.services.workflow import run_action
from lending_engine.tests._support import LendingTestCase


class LedgerTests(LendingTestCase):
    def test_reserve_then_release_restores_available(self):
        item = self.make_item(total=5)

        reserved = ledger_service.reserve_and_commit(self.db, item.EquipmentID, 3)
        self.assertEqual((reserved.available, reserved.borrowed), (2, 3))
        released = ledger_service.release(self.db, item.EquipmentID, 3)
        self.db.commit()

        self.assertEqual((released.available, released.borrowed), (5, 0))
        self.assertEqual(ledger_service.get_available(self.db, item.EquipmentID), 5)
        self.assertTrue(verify_invariant(self.item_state(item.EquipmentID)))

    def test_reserve_beyond_available_fails_without_touching_row(self):
        item = self.make_item(total=2)

        with self.assertRaises(InsufficientStock) as ctx:
            ledger_service.reserve_and_commit(self.db, item.EquipmentID, 3)
        self.db.rollback()

        self.assertEqual(ctx.exception.details["onHand"], 2)
        state = self.item_state(item.EquipmentID)
        self.assertEqual((state.AvailableQuantity, state.BorrowedQuantity), (2, 0))

    def test_release_is_clamped_to_borrowed(self):
        item = self.make_item(total=4)
        ledger_service.reserve_and_commit(self.db, item.EquipmentID, 1)

        result = ledger_service.release(self.db, item.EquipmentID, 3)
        self.db.commit()

        self.assertEqual(result.quantity, 1)
        self.assertEqual((result.available, result.borrowed), (4, 0))

    def test_release_with_nothing_borrowed_moves_nothing(self):
        item = self.make_item(total=4)
        result = ledger_service.release(self.db, item.EquipmentID, 2)
        self.assertEqual(result.quantity, 0)
        self.assertEqual(result.available, 4)

    def test_quantity_must_be_positive(self):
        item = self.make_item(total=4)
        with self.assertRaises(ValidationError):
            ledger_service.reserve_and_commit(self.db, item.EquipmentID, 0)

    def test_unknown_equipment_is_not_found(self):
        with self.assertRaises(NotFound):
            ledger_service.get_available(self.db, 999)

    def test_maintenance_and_disposal_keep_the_sum(self):
        item = self.make_item(total=10)

        ledger_service.send_to_maintenance(self.db, item.EquipmentID, 3)
        ledger_service.restore_from_maintenance(self.db, item.EquipmentID, 1)
        ledger_service.dispose(self.db, item.EquipmentID, 2, from_maintenance=True)
        result = ledger_service.dispose(self.db, item.EquipmentID, 1)
        self.db.commit()

        self.assertEqual(
            (result.available, result.borrowed, result.maintenance, result.disposal),
            (7, 0, 0, 3),
        )
        self.assertTrue(verify_invariant(self.item_state(item.EquipmentID)))

    def test_restore_more_than_in_maintenance_is_rejected(self):
        item = self.make_item(total=3)
        with self.assertRaises(ValidationError):
            ledger_service.restore_from_maintenance(self.db, item.EquipmentID, 1)

    def test_database_rejects_a_broken_quantity_tuple(self):
        item = self.make_item(total=3)

        def _corrupt(outbox):
            state = self.item_state(item.EquipmentID)
            state.AvailableQuantity = 7
            self.db.flush()
            return ActionResult.ok()

        result = run_action(self.db, _corrupt)

        self.assertFalse(result.success)
        self.assertEqual(result.error.kind, "ValidationError")
        self.assertEqual(self.item_state(item.EquipmentID).AvailableQuantity, 3)


class EquipmentRuleTests(LendingTestCase):
    def test_item_codes_are_sequential_per_year(self):
        create_equipment(self.db, name="Camera", total=1, item_code="EQP2026-0007")
        self.db.commit()
        self.assertEqual(generate_next_item_code(self.db, date(2026, 5, 1)), "EQP2026-0008")
        self.assertEqual(generate_next_item_code(self.db, date(2027, 1, 1)), "EQP2027-0001")

    def test_borrowing_available_follows_condition_and_switches(self):
        item = self.make_item(total=4)
        self.assertEqual(borrowing_available(item), 4)

        item.Condition = "Poor"
        self.assertEqual(borrowing_available(item), 0)
        self.assertIn("Poor", check_can_borrow(item, 1)["reason"])

        item.Condition = "Good"
        item.MaintenanceNeeds = "Yes"
        self.assertEqual(borrowing_available(item), 0)

        item.MaintenanceNeeds = "No"
        item.CanBeBorrowed = False
        verdict = check_can_borrow(item, 1)
        self.assertFalse(verdict["canBorrow"])
        self.assertEqual(verdict["reason"], "This equipment is not available for borrowing")

    def test_partial_availability_is_reported(self):
        item = self.make_item(total=2)
        verdict = check_can_borrow(item, 5)
        self.assertFalse(verdict["canBorrow"])
        self.assertEqual(verdict["reason"], "Only 2 units available for borrowing")

    def test_equipment_name_is_required(self):
        with self.assertRaises(ValidationError):
            create_equipment(self.db, name="  ", total=1)


if __name__ == "__main__":
    unittest.main()
