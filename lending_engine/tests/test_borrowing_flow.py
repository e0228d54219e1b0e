import os
import tempfile
import threading
import unittest
from datetime import timedelta

from lending_engine.models.lending_models import BorrowingRequest, EquipmentItem
from lending_engine.services.audit_service import list_audit_entries
from lending_engine.services.borrowing_service import RegularBorrowingWorkflow, is_overdue
from lending_engine.services.equipment_service import create_equipment, verify_invariant
from lending_engine.settings import LendingSettings
from lending_engine.tests._support import (
    Clock,
    FailingNotifier,
    LendingTestCase,
    RecordingNotifier,
    file_engine,
    session_factory,
)


class RegularBorrowingTests(LendingTestCase):
    def test_submit_then_approve_moves_stock(self):
        item = self.make_item(total=5)

        borrowing_id = self.submit(item.EquipmentID, quantity=3)
        self.assertEqual(self.regular.get(self.db, borrowing_id).record["status"], "pending")
        self.assertEqual(self.item_state(item.EquipmentID).AvailableQuantity, 5)

        result = self.regular.approve(self.db, borrowing_id, actor_id="admin-1")

        self.assertTrue(result.success)
        self.assertEqual(result.record["status"], "approved")
        self.assertEqual(result.record["approvedBy"], "admin-1")
        state = self.item_state(item.EquipmentID)
        self.assertEqual((state.AvailableQuantity, state.BorrowedQuantity), (2, 3))
        self.assertEqual(self.notifier.events(), ["approved"])

    def test_approval_fails_when_stock_ran_out(self):
        item = self.make_item(total=5)
        first = self.submit(item.EquipmentID, quantity=3)
        second = self.submit(item.EquipmentID, quantity=3)
        self.assertTrue(self.regular.approve(self.db, first).success)

        result = self.regular.approve(self.db, second)

        self.assertFalse(result.success)
        self.assertEqual(result.error.kind, "InsufficientStock")
        self.assertEqual(result.status_code, 409)
        self.assertEqual(self.regular.get(self.db, second).record["status"], "pending")
        self.assertEqual(self.item_state(item.EquipmentID).AvailableQuantity, 2)

    def test_reapproving_is_a_no_op(self):
        item = self.make_item(total=5)
        borrowing_id = self.submit(item.EquipmentID, quantity=2)
        self.regular.approve(self.db, borrowing_id)

        again = self.regular.approve(self.db, borrowing_id)
        via_status = self.regular.apply_action(self.db, borrowing_id, "approved")

        self.assertTrue(again.success)
        self.assertTrue(via_status.success)
        self.assertEqual(again.message, "Already approved.")
        self.assertEqual(self.item_state(item.EquipmentID).AvailableQuantity, 3)
        approvals = [e for e in list_audit_entries(self.db, "Borrowing", borrowing_id) if e["action"] == "Approve"]
        self.assertEqual(len(approvals), 1)

    def test_reject_is_terminal_and_leaves_stock(self):
        item = self.make_item(total=5)
        borrowing_id = self.submit(item.EquipmentID, quantity=2)

        result = self.regular.apply_action(self.db, borrowing_id, "rejected", remarks="Item reserved for exams")

        self.assertTrue(result.success)
        self.assertEqual(result.record["adminRemarks"], "Item reserved for exams")
        self.assertEqual(self.item_state(item.EquipmentID).AvailableQuantity, 5)
        self.assertEqual(self.notifier.events(), ["rejected"])

        retry = self.regular.apply_action(self.db, borrowing_id, "approved")
        self.assertFalse(retry.success)
        self.assertEqual(retry.error.kind, "InvalidTransition")

    def test_release_records_handoff(self):
        item = self.make_item(total=5, condition="Excellent")
        borrowing_id = self.submit(item.EquipmentID)
        self.regular.approve(self.db, borrowing_id)

        result = self.regular.apply_action(self.db, borrowing_id, "released", actor_id="admin-2")

        self.assertTrue(result.success)
        self.assertEqual(result.record["status"], "released")
        self.assertEqual(result.record["releasedBy"], "admin-2")
        self.assertEqual(result.record["conditionOnBorrow"], "Excellent")
        self.assertIsNotNone(result.record["releasedDate"])

    def test_release_requires_approval(self):
        item = self.make_item(total=5)
        borrowing_id = self.submit(item.EquipmentID)
        result = self.regular.release(self.db, borrowing_id)
        self.assertFalse(result.success)
        self.assertEqual(result.error.kind, "InvalidTransition")

    def test_unknown_target_status_is_a_validation_error(self):
        item = self.make_item(total=5)
        borrowing_id = self.submit(item.EquipmentID)
        result = self.regular.apply_action(self.db, borrowing_id, "overdue")
        self.assertFalse(result.success)
        self.assertEqual(result.error.kind, "ValidationError")

    def test_missing_request_is_not_found(self):
        result = self.regular.approve(self.db, 404)
        self.assertFalse(result.success)
        self.assertEqual(result.status_code, 404)

    def test_submission_is_validated(self):
        item = self.make_item(total=2)

        too_many = self.regular.submit(self.db, self.borrowing_request(item.EquipmentID, quantity=3))
        backwards = self.regular.submit(
            self.db,
            self.borrowing_request(item.EquipmentID, intendedReturnDate=self.clock() - timedelta(days=1)),
        )
        zero = self.regular.submit(self.db, self.borrowing_request(item.EquipmentID, quantity=0))

        self.assertEqual(too_many.error.kind, "InsufficientStock")
        self.assertEqual(backwards.error.kind, "ValidationError")
        self.assertEqual(zero.error.kind, "ValidationError")
        self.assertEqual(self.db.query(BorrowingRequest).count(), 0)

    def test_locked_equipment_cannot_be_requested(self):
        item = self.make_item(total=2, can_be_borrowed=False)
        result = self.regular.submit(self.db, self.borrowing_request(item.EquipmentID))
        self.assertEqual(result.error.kind, "ValidationError")

    def test_overdue_is_derived_from_intended_return(self):
        item = self.make_item(total=5)
        borrowing_id = self.released_borrowing(item.EquipmentID)
        record = self.db.get(BorrowingRequest, borrowing_id)

        self.assertFalse(is_overdue(record, self.clock()))
        self.clock.advance(days=4)
        self.assertTrue(is_overdue(record, self.clock()))

        overdue = self.regular.list_requests(self.db, overdue_only=True)
        self.assertEqual([row["borrowingID"] for row in overdue], [borrowing_id])
        self.assertTrue(overdue[0]["isOverdue"])

    def test_list_filters_by_status_and_borrower(self):
        item = self.make_item(total=5)
        mine = self.submit(item.EquipmentID)
        other = self.submit(item.EquipmentID, borrowerID="2019-11111", borrowerName="Sam Cruz")
        self.regular.approve(self.db, other)

        pending = self.regular.list_requests(self.db, status="pending")
        by_borrower = self.regular.list_requests(self.db, borrower_id="2019-11111")

        self.assertEqual([row["borrowingID"] for row in pending], [mine])
        self.assertEqual([row["borrowingID"] for row in by_borrower], [other])


class NotificationFailureTests(LendingTestCase):
    notifier_class = FailingNotifier

    def test_failed_notification_does_not_roll_back_approval(self):
        item = self.make_item(total=5)
        borrowing_id = self.submit(item.EquipmentID, quantity=1)

        result = self.regular.approve(self.db, borrowing_id)

        self.assertTrue(result.success)
        self.assertEqual(self.notifier.calls, 1)
        self.assertEqual(self.regular.get(self.db, borrowing_id).record["status"], "approved")
        self.assertEqual(self.item_state(item.EquipmentID).AvailableQuantity, 4)


class ConcurrentApprovalTests(unittest.TestCase):
    def setUp(self):
        handle, self.path = tempfile.mkstemp(suffix=".db")
        os.close(handle)
        self.engine = file_engine(self.path)
        self.Session = session_factory(self.engine)
        self.clock = Clock()
        self.workflow = RegularBorrowingWorkflow(LendingSettings(), RecordingNotifier(), clock=self.clock)

        db = self.Session()
        try:
            item = create_equipment(db, name="Oscilloscope", total=5, now=self.clock())
            self.equipment_id = item.EquipmentID
            self.borrowing_ids = []
            for index in range(4):
                record = BorrowingRequest(
                    EquipmentID=self.equipment_id,
                    BorrowerID=f"2020-{index:05d}",
                    BorrowerType="student",
                    BorrowerName=f"Borrower {index}",
                    BorrowerEmail=f"borrower{index}@example.edu",
                    Quantity=2,
                    Purpose="Lab work",
                    Status="pending",
                    RequestedDate=self.clock(),
                    IntendedBorrowDate=self.clock(),
                    IntendedReturnDate=self.clock() + timedelta(days=2),
                    PenaltyFee=0,
                )
                db.add(record)
                db.flush()
                self.borrowing_ids.append(record.BorrowingID)
            db.commit()
        finally:
            db.close()

    def tearDown(self):
        self.engine.dispose()
        os.remove(self.path)

    def _item(self):
        db = self.Session()
        try:
            return db.get(EquipmentItem, self.equipment_id)
        finally:
            db.close()

    def test_stale_session_cannot_oversell(self):
        first = self.Session()
        second = self.Session()
        try:
            self.assertEqual(second.get(EquipmentItem, self.equipment_id).AvailableQuantity, 5)
            self.assertTrue(self.workflow.approve(first, self.borrowing_ids[0]).success)
            self.assertTrue(self.workflow.approve(first, self.borrowing_ids[1]).success)

            late = self.workflow.approve(second, self.borrowing_ids[2])

            self.assertFalse(late.success)
            self.assertEqual(late.error.kind, "InsufficientStock")
        finally:
            first.close()
            second.close()
        item = self._item()
        self.assertEqual((item.AvailableQuantity, item.BorrowedQuantity), (1, 4))
        self.assertTrue(verify_invariant(item))

    def test_two_admins_approving_the_same_request_decrement_once(self):
        first = self.Session()
        second = self.Session()
        try:
            target = self.borrowing_ids[0]
            self.assertEqual(second.get(BorrowingRequest, target).Status, "pending")

            self.assertTrue(self.workflow.approve(first, target).success)
            racing = self.workflow.approve(second, target)

            self.assertTrue(racing.success)
            self.assertEqual(racing.message, "Already approved.")
        finally:
            first.close()
            second.close()
        item = self._item()
        self.assertEqual((item.AvailableQuantity, item.BorrowedQuantity), (3, 2))

    def test_threaded_approvals_never_exceed_stock(self):
        barrier = threading.Barrier(len(self.borrowing_ids))
        results = {}

        def _approve(borrowing_id):
            db = self.Session()
            try:
                barrier.wait()
                results[borrowing_id] = self.workflow.approve(db, borrowing_id)
            finally:
                db.close()

        threads = [threading.Thread(target=_approve, args=(bid,)) for bid in self.borrowing_ids]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        outcomes = list(results.values())
        self.assertEqual(len(outcomes), 4)
        self.assertEqual(sum(1 for r in outcomes if r.success), 2)
        self.assertTrue(all(r.error.kind == "InsufficientStock" for r in outcomes if not r.success))
        item = self._item()
        self.assertEqual((item.AvailableQuantity, item.BorrowedQuantity), (1, 4))
        self.assertTrue(verify_invariant(item))


if __name__ == "__main__":
    unittest.main()
