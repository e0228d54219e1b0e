import json
import re
import unittest

from lending_engine.models.lending_models import NotificationQueue
from lending_engine.services.notification_service import (
    EmailSender,
    QueueNotifier,
    dispatch_pending,
    list_pending,
    render_message,
)
from lending_engine.services.otp_service import send_otp
from lending_engine.settings import LendingSettings
from lending_engine.tests._support import memory_engine, session_factory


class CollectingSender(EmailSender):
    def __init__(self):
        self.outbox = []

    def send(self, recipient, subject, body):
        self.outbox.append((recipient, subject, body))


class BrokenSender(EmailSender):
    def send(self, recipient, subject, body):
        raise ConnectionError("relay refused")


class QueueNotifierTests(unittest.TestCase):
    def setUp(self):
        self.engine = memory_engine()
        self.Session = session_factory(self.engine)
        self.db = self.Session()

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _rows(self):
        return self.db.query(NotificationQueue).populate_existing().order_by(NotificationQueue.NotificationID).all()

    def test_delivered_notification_is_marked_sent(self):
        sender = CollectingSender()
        QueueNotifier(self.Session, sender).notify(
            "approved", "dana@example.edu", {"name": "Dana", "equipmentName": "Projector", "reference": "BRW-4"}
        )

        rows = self._rows()
        self.assertEqual(len(rows), 1)
        self.assertIsNotNone(rows[0].SentAt)
        self.assertEqual(json.loads(rows[0].Payload)["reference"], "BRW-4")
        recipient, subject, body = sender.outbox[0]
        self.assertEqual(recipient, "dana@example.edu")
        self.assertIn("Approved", subject)
        self.assertIn("BRW-4", body)

    def test_failed_delivery_stays_queued_for_retry(self):
        QueueNotifier(self.Session, BrokenSender()).notify("rejected", "dana@example.edu", {"name": "Dana"})

        rows = self._rows()
        self.assertIsNone(rows[0].SentAt)
        self.assertEqual(rows[0].Attempts, 1)
        self.assertIn("relay refused", rows[0].LastError)
        self.assertEqual(len(list_pending(self.db)), 1)

        retry = CollectingSender()
        outcome = dispatch_pending(self.db, retry)

        self.assertEqual(outcome, {"sent": 1, "failed": 0})
        self.assertEqual(list_pending(self.db), [])

    def test_without_sender_rows_are_only_queued(self):
        QueueNotifier(self.Session).notify("returned", "dana@example.edu", {"totalFee": "10.00"})
        self.assertEqual(len(list_pending(self.db)), 1)

    def test_unknown_events_and_blank_recipients_are_dropped(self):
        notifier = QueueNotifier(self.Session)
        notifier.notify("reminder", "dana@example.edu", {})
        notifier.notify("approved", "  ", {})
        self.assertEqual(self._rows(), [])

    def test_otp_code_is_sent_but_never_stored(self):
        sender = CollectingSender()
        sent = send_otp(self.db, LendingSettings(), QueueNotifier(self.Session, sender), "lia@example.edu", "Lia", "Santos")
        self.assertTrue(sent.success)

        rows = self._rows()
        self.assertEqual(len(rows), 1)
        self.assertNotIn("code", json.loads(rows[0].Payload))
        code = re.search(r"code is: (\d{6})", sender.outbox[0][2]).group(1)
        self.assertNotIn(code, rows[0].Payload)

    def test_unsent_otp_is_not_redelivered_from_the_queue(self):
        QueueNotifier(self.Session, BrokenSender()).notify("otp", "lia@example.edu", {"code": "482913", "name": "Lia"})
        QueueNotifier(self.Session).notify("approved", "dana@example.edu", {"name": "Dana"})

        rows = self._rows()
        self.assertNotIn("482913", rows[0].Payload)
        retry = CollectingSender()
        outcome = dispatch_pending(self.db, retry)

        self.assertEqual(outcome, {"sent": 1, "failed": 0})
        self.assertEqual([recipient for recipient, _, _ in retry.outbox], ["dana@example.edu"])

    def test_storage_failure_never_escapes(self):
        def _broken_factory():
            raise RuntimeError("database offline")

        QueueNotifier(_broken_factory).notify("approved", "dana@example.edu", {})


class RenderTests(unittest.TestCase):
    def test_otp_message_states_validity(self):
        subject, body = render_message("otp", {"code": "123456", "name": "Lia", "ttlSeconds": 300})
        self.assertEqual(subject, "Email Verification Code")
        self.assertIn("123456", body)
        self.assertIn("5 minutes", body)

    def test_returned_message_lists_outstanding_fee(self):
        _, body = render_message("returned", {"name": "Dana", "totalFee": "60.00"})
        self.assertIn("Outstanding fee: 60.00", body)
        _, clean = render_message("returned", {"name": "Dana", "totalFee": "0.00"})
        self.assertNotIn("Outstanding fee", clean)


if __name__ == "__main__":
    unittest.main()
