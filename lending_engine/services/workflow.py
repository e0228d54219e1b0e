from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from sqlalchemy import inspect, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import (
    ActionResult,
    InvalidTransition,
    LendingError,
    NotFound,
    StorageUnavailable,
    ValidationError,
)
from .notification_service import Notifier, notify_safely


LOGGER = logging.getLogger("lending_engine.workflow")


class RegularStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    RELEASED = "released"
    RETURN_REQUESTED = "return_requested"
    RETURN_APPROVED = "return_approved"
    RETURN_REJECTED = "return_rejected"
    RETURNED = "returned"


class RegularAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    RELEASE = "release"
    REQUEST_RETURN = "request_return"
    APPROVE_RETURN = "approve_return"
    REJECT_RETURN = "reject_return"
    COMPLETE_RETURN = "complete_return"
    CANCEL_RETURN = "cancel_return"


REGULAR_TRANSITIONS: dict[tuple[RegularStatus, RegularAction], RegularStatus] = {
    (RegularStatus.PENDING, RegularAction.APPROVE): RegularStatus.APPROVED,
    (RegularStatus.PENDING, RegularAction.REJECT): RegularStatus.REJECTED,
    (RegularStatus.APPROVED, RegularAction.RELEASE): RegularStatus.RELEASED,
    (RegularStatus.RELEASED, RegularAction.REQUEST_RETURN): RegularStatus.RETURN_REQUESTED,
    (RegularStatus.RETURN_REJECTED, RegularAction.REQUEST_RETURN): RegularStatus.RETURN_REQUESTED,
    (RegularStatus.RETURN_REQUESTED, RegularAction.APPROVE_RETURN): RegularStatus.RETURN_APPROVED,
    (RegularStatus.RETURN_REQUESTED, RegularAction.REJECT_RETURN): RegularStatus.RETURN_REJECTED,
    (RegularStatus.RETURN_REQUESTED, RegularAction.CANCEL_RETURN): RegularStatus.RELEASED,
    (RegularStatus.RETURN_APPROVED, RegularAction.COMPLETE_RETURN): RegularStatus.RETURNED,
}

# Statuses in which the borrower still holds the equipment.
OUTSTANDING_STATUSES = {
    RegularStatus.RELEASED,
    RegularStatus.RETURN_REQUESTED,
    RegularStatus.RETURN_REJECTED,
}


class GuestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"
    RETURNED = "returned"


class GuestAction(str, Enum):
    APPROVE = "approve"
    DECLINE = "decline"
    MARK_RETURNED = "mark_returned"


GUEST_TRANSITIONS: dict[tuple[GuestStatus, GuestAction], GuestStatus] = {
    (GuestStatus.PENDING, GuestAction.APPROVE): GuestStatus.APPROVED,
    (GuestStatus.PENDING, GuestAction.DECLINE): GuestStatus.DECLINED,
    (GuestStatus.APPROVED, GuestAction.MARK_RETURNED): GuestStatus.RETURNED,
}


class ReturnStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"


class DamageSeverity(str, Enum):
    NONE = "None"
    MINOR = "Minor"
    MODERATE = "Moderate"
    SEVERE = "Severe"


AUTO_APPROVED_SEVERITIES = {DamageSeverity.NONE, DamageSeverity.MINOR}


def parse_severity(raw: str | DamageSeverity | None) -> DamageSeverity:
    if isinstance(raw, DamageSeverity):
        return raw
    value = (raw or "None").strip().lower()
    for severity in DamageSeverity:
        if severity.value.lower() == value:
            return severity
    raise ValidationError(
        f"Unknown damage severity: {raw}. Expected one of None, Minor, Moderate, Severe.",
        damageSeverity=raw,
    )


def next_state(table: dict, current: Enum, action: Enum) -> Enum:
    target = table.get((current, action))
    if target is None:
        raise InvalidTransition(
            f"Invalid state transition: {current.value} -> {action.value}",
            currentStatus=current.value,
            action=action.value,
        )
    return target


def resolve_action(table: dict, current: Enum, target: Enum) -> Enum:
    for (state, action), to_state in table.items():
        if state == current and to_state == target:
            return action
    raise InvalidTransition(
        f"Invalid state transition: {current.value} -> {target.value}",
        currentStatus=current.value,
        targetStatus=target.value,
    )


def compare_and_set_status(db: Session, record: Any, expected: str, new_status: str, **values) -> bool:
    """Conditional ``UPDATE … WHERE pk = ? AND Status = expected``, then reloads ``record``.

    Pending changes are flushed first so the reload cannot discard them.
    """
    db.flush()
    model = type(record)
    key = inspect(model).primary_key[0]
    flipped = db.execute(
        update(model)
        .where(key == inspect(record).identity[0])
        .where(model.Status == expected)
        .values(Status=new_status, **values)
        .execution_options(synchronize_session=False)
    ).rowcount
    db.refresh(record)
    return flipped == 1


def claim_transition(db: Session, record: Any, table: dict, status_enum: type[Enum], action: Enum, **values) -> bool:
    """Applies ``action`` only if the stored status still matches the one this session saw.

    Returns False when a concurrent session already moved the record to the
    same target, and raises ``InvalidTransition`` when it moved elsewhere.
    """
    current = status_enum(record.Status)
    target = next_state(table, current, action)
    if compare_and_set_status(db, record, current.value, target.value, **values):
        return True
    if record.Status == target.value:
        return False
    raise InvalidTransition(
        f"Invalid state transition: {record.Status} -> {action.value}",
        currentStatus=record.Status,
        action=action.value,
    )


Outbox = list[Callable[[], None]]


def run_action(db: Session, fn: Callable[[Outbox], ActionResult]) -> ActionResult:
    """Runs ``fn`` as one transaction and turns failures into a typed result.

    Notifications queued by ``fn`` in the outbox are sent only after commit.
    """
    outbox: Outbox = []
    try:
        result = fn(outbox)
        db.commit()
    except LendingError as exc:
        db.rollback()
        LOGGER.warning("Action rejected (%s): %s", exc.kind, exc.message)
        return ActionResult.fail(exc)
    except IntegrityError as exc:
        db.rollback()
        LOGGER.warning("Action violated a data constraint: %s", exc.orig)
        return ActionResult.fail(ValidationError("The change was rejected by data constraints."))
    except SQLAlchemyError:
        db.rollback()
        LOGGER.exception("Storage failure while running action")
        return ActionResult.fail(StorageUnavailable("Storage is temporarily unavailable. Please retry."))
    for send in outbox:
        send()
    return result


class BorrowingWorkflow(ABC):
    """Capability shared by the regular and guest borrowing flows."""

    entity_type = ""
    transitions: dict = {}
    status_enum: type[Enum]

    def __init__(
        self,
        settings,
        notifier: Notifier,
        clock: Callable[[], datetime] | None = None,
    ):
        self.settings = settings
        self.notifier = notifier
        self.clock = clock or datetime.now

    def now(self) -> datetime:
        return self.clock()

    def _queue_notification(self, outbox: Outbox, event: str, recipient: str, payload: dict) -> None:
        outbox.append(lambda: notify_safely(self.notifier, event, recipient, payload))

    def _claim(self, db: Session, record, action: Enum, **values) -> bool:
        return claim_transition(db, record, self.transitions, self.status_enum, action, **values)

    @abstractmethod
    def _load(self, db: Session, record_id: int):
        ...

    @abstractmethod
    def serialize(self, record) -> dict:
        ...

    @abstractmethod
    def _action_handlers(self) -> dict:
        ...

    @abstractmethod
    def submit(self, db: Session, request, **kwargs) -> ActionResult:
        ...

    @abstractmethod
    def approve(self, db: Session, record_id: int, actor_id=None, remarks: str | None = None, **options) -> ActionResult:
        ...

    @abstractmethod
    def reject(self, db: Session, record_id: int, actor_id=None, remarks: str | None = None, **options) -> ActionResult:
        ...

    @abstractmethod
    def release(self, db: Session, record_id: int, actor_id=None, remarks: str | None = None, **options) -> ActionResult:
        ...

    @abstractmethod
    def return_item(self, db: Session, record_id: int, actor_id=None, remarks: str | None = None, **options) -> ActionResult:
        ...

    def get(self, db: Session, record_id: int) -> ActionResult:
        try:
            record = self._load(db, record_id)
        except NotFound as exc:
            return ActionResult.fail(exc)
        return ActionResult.ok(self.serialize(record))

    def apply_action(
        self,
        db: Session,
        record_id: int,
        target_status: str,
        remarks: str | None = None,
        actor_id=None,
        **kwargs,
    ) -> ActionResult:
        try:
            target = self.status_enum(str(target_status or "").strip().lower())
        except ValueError:
            return ActionResult.fail(
                ValidationError(f"Unknown status: {target_status}", targetStatus=target_status)
            )
        try:
            record = self._load(db, record_id)
            current = self.status_enum(record.Status)
            if current == target:
                # Re-targeting the current status is a no-op, never a second ledger move.
                return ActionResult.ok(self.serialize(record), message=f"Already {current.value}.")
            action = resolve_action(self.transitions, current, target)
        except LendingError as exc:
            db.rollback()
            return ActionResult.fail(exc)
        handler = self._action_handlers()[action]
        return handler(db, record_id, actor_id=actor_id, remarks=remarks, **kwargs)
