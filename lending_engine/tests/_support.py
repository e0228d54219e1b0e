import unittest
from datetime import datetime, timedelta

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from lending_engine.db.base import Base
from lending_engine.models import lending_models  # noqa: F401
from lending_engine.models.lending_models import EquipmentItem
from lending_engine.schemas.borrowings import BorrowingCreate
from lending_engine.services.borrowing_service import RegularBorrowingWorkflow
from lending_engine.services.equipment_service import create_equipment
from lending_engine.services.guest_borrowing_service import GuestBorrowingWorkflow
from lending_engine.services.notification_service import Notifier
from lending_engine.services.return_service import ReturnReviewService
from lending_engine.settings import LendingSettings


FIXED_NOW = datetime(2026, 3, 2, 9, 0, 0)


class Clock:
    def __init__(self, now: datetime = FIXED_NOW):
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta) -> None:
        self.current += timedelta(**delta)


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent = []

    def notify(self, event, recipient_email, payload):
        self.sent.append((event, recipient_email, dict(payload)))

    def events(self) -> list[str]:
        return [event for event, _, _ in self.sent]

    def last_code(self) -> str:
        for event, _, payload in reversed(self.sent):
            if event == "otp":
                return payload["code"]
        raise AssertionError("no otp notification recorded")


class FailingNotifier(Notifier):
    def __init__(self):
        self.calls = 0

    def notify(self, event, recipient_email, payload):
        self.calls += 1
        raise RuntimeError("mail relay unavailable")


def memory_engine():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    return engine


def file_engine(path: str):
    engine = create_engine(
        f"sqlite+pysqlite:///{path}",
        connect_args={"check_same_thread": False, "timeout": 30},
        future=True,
    )
    Base.metadata.create_all(engine)
    return engine


def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)


class LendingTestCase(unittest.TestCase):
    """Fresh in-memory database and workflows with a controllable clock."""

    notifier_class = RecordingNotifier

    def setUp(self):
        self.engine = memory_engine()
        self.Session = session_factory(self.engine)
        self.db = self.Session()
        self.clock = Clock()
        self.notifier = self.notifier_class()
        self.settings = LendingSettings()
        self.regular = RegularBorrowingWorkflow(self.settings, self.notifier, clock=self.clock)
        self.guest = GuestBorrowingWorkflow(self.settings, self.notifier, clock=self.clock)
        self.reviews = ReturnReviewService(self.settings, self.notifier, clock=self.clock)

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def make_item(self, total: int = 5, name: str = "Projector", **kwargs) -> EquipmentItem:
        item = create_equipment(self.db, name=name, total=total, now=self.clock(), **kwargs)
        self.db.commit()
        return item

    def item_state(self, equipment_id: int) -> EquipmentItem:
        return self.db.get(EquipmentItem, equipment_id, populate_existing=True)

    def borrowing_request(self, equipment_id: int, quantity: int = 1, **overrides) -> BorrowingCreate:
        fields = {
            "equipmentID": equipment_id,
            "borrowerID": "2021-00451",
            "borrowerName": "Dana Reyes",
            "borrowerEmail": "dana.reyes@example.edu",
            "borrowerType": "student",
            "quantity": quantity,
            "purpose": "Thesis presentation",
            "intendedBorrowDate": self.clock(),
            "intendedReturnDate": self.clock() + timedelta(days=3),
        }
        fields.update(overrides)
        return BorrowingCreate(**fields)

    def submit(self, equipment_id: int, quantity: int = 1, **overrides) -> int:
        result = self.regular.submit(self.db, self.borrowing_request(equipment_id, quantity, **overrides))
        self.assertTrue(result.success, result.message)
        return result.record["borrowingID"]

    def released_borrowing(self, equipment_id: int, quantity: int = 1) -> int:
        borrowing_id = self.submit(equipment_id, quantity)
        self.assertTrue(self.regular.approve(self.db, borrowing_id, actor_id="admin-1").success)
        self.assertTrue(self.regular.release(self.db, borrowing_id, actor_id="admin-1").success)
        return borrowing_id
