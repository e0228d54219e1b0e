"""Return records: creation, routing, admin review and fee settlement.

A return with no or minor damage is finalized on submission and credits the
ledger at once. Moderate or severe damage parks the record as ``pending`` and
the ledger stays untouched until an admin approves it.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Callable

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from ..models.lending_models import BorrowingRequest, GuestBorrowingRequest, ReturnRecord
from . import ledger_service
from .audit_service import log_audit
from .errors import ActionResult, DuplicateRequest, InvalidTransition, NotFound, ValidationError
from .fee_service import assess_return, money, routed_status, settled_status
from .notification_service import Notifier, notify_safely
from .workflow import (
    REGULAR_TRANSITIONS,
    RegularAction,
    RegularStatus,
    ReturnStatus,
    claim_transition,
    compare_and_set_status,
    run_action,
)


LOGGER = logging.getLogger("lending_engine.returns")


def _claim_borrowing(db: Session, borrowing: BorrowingRequest, action: RegularAction, **values) -> bool:
    return claim_transition(db, borrowing, REGULAR_TRANSITIONS, RegularStatus, action, **values)


def _apply_assessment(record: ReturnRecord, assessment) -> None:
    record.DamageSeverity = assessment.severity.value
    record.LateDays = assessment.late_days
    record.IsLate = assessment.is_late
    record.PenaltyFee = assessment.penalty_fee
    record.DamageFee = assessment.damage_fee
    record.TotalFee = assessment.total_fee


def get_return(db: Session, return_id: int) -> ReturnRecord:
    record = db.get(ReturnRecord, return_id)
    if not record:
        raise NotFound(f"Return record {return_id} not found.", returnID=return_id)
    return record


def find_open_return(db: Session, borrowing_id: int) -> ReturnRecord | None:
    return db.execute(
        select(ReturnRecord)
        .where(ReturnRecord.BorrowingID == borrowing_id)
        .order_by(ReturnRecord.ReturnID.desc())
    ).scalars().first()


def finalize_return(
    db: Session,
    record: ReturnRecord,
    borrowing: BorrowingRequest,
    actor_id=None,
    now: datetime | None = None,
) -> ReturnStatus:
    stamp = now or datetime.now()
    status = settled_status(record.TotalFee, bool(record.IsFeePaid))
    claimed = _claim_borrowing(
        db,
        borrowing,
        RegularAction.APPROVE_RETURN,
        ReturnApprovedDate=stamp,
        PenaltyFee=record.TotalFee,
        ReturnStatus=status.value,
        UpdatedDate=stamp,
    )
    if not claimed:
        raise InvalidTransition(
            f"Return for borrowing {borrowing.BorrowingID} was already approved.",
            borrowingID=borrowing.BorrowingID,
        )
    # Stock goes back only after the status flip above has been won.
    ledger_service.release(db, borrowing.EquipmentID, borrowing.Quantity, now=stamp)
    record.Status = status.value
    record.ReviewedBy = str(actor_id) if actor_id is not None else record.ReviewedBy
    record.UpdatedDate = stamp
    if status == ReturnStatus.COMPLETED:
        complete_borrowing(db, borrowing, record, actor_id, stamp)
    LOGGER.info(
        "Return %s finalized as %s for borrowing %s (totalFee=%s)",
        record.ReturnID,
        status.value,
        borrowing.BorrowingID,
        record.TotalFee,
    )
    return status


def complete_borrowing(
    db: Session,
    borrowing: BorrowingRequest,
    record: ReturnRecord,
    actor_id,
    now: datetime,
) -> None:
    _claim_borrowing(
        db,
        borrowing,
        RegularAction.COMPLETE_RETURN,
        ActualReturnDate=record.ActualReturnDate,
        ReceivedBy=str(actor_id) if actor_id is not None else borrowing.ReceivedBy,
        ReturnStatus=ReturnStatus.COMPLETED.value,
        UpdatedDate=now,
    )
    record.Status = ReturnStatus.COMPLETED.value
    record.UpdatedDate = now


def open_return(
    db: Session,
    settings,
    borrowing: BorrowingRequest,
    *,
    condition_after: str | None = None,
    damage_description: str | None = None,
    damage_severity: str | None = None,
    now: datetime | None = None,
    actor_id=None,
) -> ReturnRecord:
    stamp = now or datetime.now()
    assessment = assess_return(settings, borrowing.IntendedReturnDate, stamp, damage_severity)

    claimed = _claim_borrowing(
        db,
        borrowing,
        RegularAction.REQUEST_RETURN,
        ReturnRequestDate=stamp,
        ReturnStatus=ReturnStatus.PENDING.value,
        UpdatedDate=stamp,
    )
    if not claimed:
        raise DuplicateRequest(
            "A return request already exists for this borrowing.",
            borrowingID=borrowing.BorrowingID,
        )
    record = find_open_return(db, borrowing.BorrowingID)
    if record is not None and record.Status != ReturnStatus.REJECTED.value:
        raise DuplicateRequest(
            "A return request already exists for this borrowing.",
            returnID=record.ReturnID,
        )
    if record is None:
        record = ReturnRecord(
            BorrowingID=borrowing.BorrowingID,
            EquipmentID=borrowing.EquipmentID,
            BorrowerType=borrowing.BorrowerType,
            Quantity=borrowing.Quantity,
            IntendedReturnDate=borrowing.IntendedReturnDate,
            ConditionBefore=borrowing.ConditionOnBorrow or "Good",
            IsFeePaid=False,
            CreatedDate=stamp,
        )
        db.add(record)
    record.ActualReturnDate = stamp
    record.ConditionAfter = (condition_after or "").strip() or "Good"
    record.DamageDescription = (damage_description or "").strip()
    record.Remarks = "Return request submitted by borrower"
    _apply_assessment(record, assessment)
    record.Status = routed_status(assessment, bool(record.IsFeePaid)).value
    record.UpdatedDate = stamp

    borrowing.ConditionOnReturn = record.ConditionAfter
    borrowing.DamageReport = record.DamageDescription
    db.flush()

    if assessment.needs_review:
        LOGGER.info(
            "Return %s for borrowing %s requires manual review (severity=%s)",
            record.ReturnID,
            borrowing.BorrowingID,
            assessment.severity.value,
        )
    else:
        finalize_return(db, record, borrowing, actor_id=None, now=stamp)
    log_audit(
        db,
        "Borrowing",
        borrowing.BorrowingID,
        "RequestReturn",
        f"Return {record.ReturnID} severity={assessment.severity.value} status={record.Status} totalFee={record.TotalFee}",
        user_id=actor_id,
    )
    return record


def cancel_return(db: Session, borrowing: BorrowingRequest, now: datetime | None = None) -> None:
    stamp = now or datetime.now()
    record = find_open_return(db, borrowing.BorrowingID)
    if record is not None and record.Status != ReturnStatus.PENDING.value:
        raise InvalidTransition(
            f"Return record {record.ReturnID} is already {record.Status} and cannot be cancelled.",
            returnID=record.ReturnID,
        )
    claimed = _claim_borrowing(
        db,
        borrowing,
        RegularAction.CANCEL_RETURN,
        ConditionOnReturn=None,
        DamageReport=None,
        ReturnRequestDate=None,
        ReturnStatus=None,
        UpdatedDate=stamp,
    )
    if claimed and record is not None:
        db.delete(record)


def _check_pending(record: ReturnRecord) -> None:
    if record.Status != ReturnStatus.PENDING.value:
        raise InvalidTransition(
            f"Return record {record.ReturnID} is {record.Status}, not pending review.",
            returnID=record.ReturnID,
        )


def _parse_fee(raw) -> Decimal:
    try:
        value = money(raw)
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError("Damage fee must be a number.") from exc
    if value < 0:
        raise ValidationError("Damage fee cannot be negative.")
    return value


def approve_pending_return(
    db: Session,
    record: ReturnRecord,
    damage_fee=None,
    remarks: str | None = None,
    actor_id=None,
    now: datetime | None = None,
) -> ReturnStatus | None:
    """Approves a pending return and credits the ledger.

    Returns None when a concurrent review already approved the same record.
    """
    stamp = now or datetime.now()
    _check_pending(record)
    borrowing = record.Borrowing
    if borrowing is None:
        raise InvalidTransition("Only borrower-submitted returns can be reviewed.", returnID=record.ReturnID)
    fee = _parse_fee(damage_fee) if damage_fee is not None else None
    won = compare_and_set_status(
        db, record, ReturnStatus.PENDING.value, ReturnStatus.APPROVED.value, UpdatedDate=stamp
    )
    if not won:
        if record.Status in {ReturnStatus.APPROVED.value, ReturnStatus.COMPLETED.value}:
            return None
        _check_pending(record)
    if fee is not None:
        record.DamageFee = fee
        record.TotalFee = money(money(record.PenaltyFee) + record.DamageFee)
    if remarks:
        record.Remarks = remarks.strip()
    status = finalize_return(db, record, borrowing, actor_id=actor_id, now=stamp)
    log_audit(db, "Return", record.ReturnID, "ApproveReturn", f"Approved; totalFee={record.TotalFee}", user_id=actor_id)
    return status


def reject_pending_return(
    db: Session,
    record: ReturnRecord,
    remarks: str | None = None,
    actor_id=None,
    now: datetime | None = None,
) -> bool:
    """Rejects a pending return; False when a concurrent review already rejected it."""
    stamp = now or datetime.now()
    _check_pending(record)
    borrowing = record.Borrowing
    if borrowing is None:
        raise InvalidTransition("Only borrower-submitted returns can be reviewed.", returnID=record.ReturnID)
    note = (remarks or "").strip()
    won = compare_and_set_status(
        db,
        record,
        ReturnStatus.PENDING.value,
        ReturnStatus.REJECTED.value,
        Remarks=note or record.Remarks,
        ReviewedBy=str(actor_id) if actor_id is not None else None,
        UpdatedDate=stamp,
    )
    if not won:
        if record.Status == ReturnStatus.REJECTED.value:
            return False
        _check_pending(record)
    _claim_borrowing(
        db,
        borrowing,
        RegularAction.REJECT_RETURN,
        ReturnStatus=ReturnStatus.REJECTED.value,
        AdminRemarks=note or borrowing.AdminRemarks,
        UpdatedDate=stamp,
    )
    log_audit(db, "Return", record.ReturnID, "RejectReturn", remarks, user_id=actor_id)
    return True


def complete_with_settled_fee(
    db: Session,
    borrowing: BorrowingRequest,
    actor_id=None,
    now: datetime | None = None,
) -> ReturnRecord:
    stamp = now or datetime.now()
    record = find_open_return(db, borrowing.BorrowingID)
    if record is None:
        raise NotFound(f"No return record for borrowing {borrowing.BorrowingID}.")
    if settled_status(record.TotalFee, bool(record.IsFeePaid)) != ReturnStatus.COMPLETED:
        raise ValidationError(
            f"Outstanding fee of {money(record.TotalFee)} must be settled before completing the return.",
            returnID=record.ReturnID,
            totalFee=str(money(record.TotalFee)),
        )
    complete_borrowing(db, borrowing, record, actor_id, stamp)
    return record


def settle_fee_for(
    db: Session,
    record: ReturnRecord,
    actor_id=None,
    now: datetime | None = None,
) -> bool:
    """Marks the fee paid; False when it was already paid, possibly by a concurrent session."""
    stamp = now or datetime.now()
    if record.IsFeePaid:
        return False
    db.flush()
    paid = db.execute(
        update(ReturnRecord)
        .where(ReturnRecord.ReturnID == record.ReturnID)
        .where(or_(ReturnRecord.IsFeePaid == False, ReturnRecord.IsFeePaid.is_(None)))  # noqa: E712
        .values(IsFeePaid=True, UpdatedDate=stamp)
        .execution_options(synchronize_session=False)
    ).rowcount
    db.refresh(record)
    if paid != 1:
        return False
    borrowing = record.Borrowing
    if record.Status == ReturnStatus.APPROVED.value:
        if borrowing is not None and borrowing.Status == RegularStatus.RETURN_APPROVED.value:
            complete_borrowing(db, borrowing, record, actor_id, stamp)
        else:
            record.Status = ReturnStatus.COMPLETED.value
    log_audit(db, "Return", record.ReturnID, "SettleFee", f"Fee {money(record.TotalFee)} paid", user_id=actor_id)
    return True


def record_guest_return(
    db: Session,
    settings,
    guest_request: GuestBorrowingRequest,
    intended_return_date: datetime,
    *,
    condition_after: str | None = None,
    damage_description: str | None = None,
    damage_severity: str | None = None,
    actor_id=None,
    now: datetime | None = None,
) -> ReturnRecord:
    stamp = now or datetime.now()
    assessment = assess_return(settings, intended_return_date, stamp, damage_severity)
    record = ReturnRecord(
        GuestRequestID=guest_request.GuestRequestID,
        EquipmentID=guest_request.EquipmentID,
        BorrowerType="guest",
        Quantity=1,
        IntendedReturnDate=intended_return_date,
        ActualReturnDate=stamp,
        ConditionBefore="Good",
        ConditionAfter=(condition_after or "").strip() or "Good",
        DamageDescription=(damage_description or "").strip(),
        IsFeePaid=False,
        Remarks="Return recorded by admin",
        ReviewedBy=str(actor_id) if actor_id is not None else None,
        CreatedDate=stamp,
        UpdatedDate=stamp,
    )
    _apply_assessment(record, assessment)
    record.Status = settled_status(assessment.total_fee, False).value
    db.add(record)
    db.flush()
    return record


def list_returns(
    db: Session,
    status: str | None = None,
    borrowing_id: int | None = None,
    borrower_type: str | None = None,
) -> list[ReturnRecord]:
    stmt = select(ReturnRecord).order_by(ReturnRecord.CreatedDate.desc(), ReturnRecord.ReturnID.desc())
    if status:
        stmt = stmt.where(ReturnRecord.Status == status)
    if borrowing_id is not None:
        stmt = stmt.where(ReturnRecord.BorrowingID == borrowing_id)
    if borrower_type:
        stmt = stmt.where(ReturnRecord.BorrowerType == borrower_type)
    return list(db.execute(stmt).scalars().all())


def serialize_return(record: ReturnRecord) -> dict:
    return {
        "returnID": record.ReturnID,
        "borrowingID": record.BorrowingID,
        "guestRequestID": record.GuestRequestID,
        "equipmentID": record.EquipmentID,
        "borrowerType": record.BorrowerType,
        "quantity": record.Quantity,
        "intendedReturnDate": record.IntendedReturnDate,
        "actualReturnDate": record.ActualReturnDate,
        "conditionBefore": record.ConditionBefore,
        "conditionAfter": record.ConditionAfter,
        "damageDescription": record.DamageDescription,
        "damageSeverity": record.DamageSeverity,
        "isLate": bool(record.IsLate),
        "lateDays": record.LateDays,
        "penaltyFee": str(money(record.PenaltyFee)),
        "damageFee": str(money(record.DamageFee)),
        "totalFee": str(money(record.TotalFee)),
        "isFeePaid": bool(record.IsFeePaid),
        "status": record.Status,
        "remarks": record.Remarks,
        "reviewedBy": record.ReviewedBy,
        "createdDate": record.CreatedDate,
        "updatedDate": record.UpdatedDate,
    }


def _returned_payload(record: ReturnRecord) -> dict:
    borrowing = record.Borrowing
    equipment = borrowing.Equipment if borrowing is not None else None
    return {
        "name": borrowing.BorrowerName if borrowing is not None else None,
        "equipmentName": equipment.Name if equipment is not None else None,
        "reference": f"BRW-{borrowing.BorrowingID}" if borrowing is not None else None,
        "totalFee": str(money(record.TotalFee)),
        "remarks": record.Remarks,
    }


class ReturnReviewService:
    """Admin-facing review of borrower returns, one transaction per call."""

    def __init__(self, settings, notifier: Notifier, clock: Callable[[], datetime] | None = None):
        self.settings = settings
        self.notifier = notifier
        self.clock = clock or datetime.now

    def _queue_returned(self, outbox, record: ReturnRecord) -> None:
        borrowing = record.Borrowing
        if borrowing is None or borrowing.Status != RegularStatus.RETURNED.value:
            return
        payload = _returned_payload(record)
        recipient = borrowing.BorrowerEmail
        outbox.append(lambda: notify_safely(self.notifier, "returned", recipient, payload))

    def get(self, db: Session, return_id: int) -> ActionResult:
        try:
            return ActionResult.ok(serialize_return(get_return(db, return_id)))
        except NotFound as exc:
            return ActionResult.fail(exc)

    def review(
        self,
        db: Session,
        return_id: int,
        decision: str,
        damage_fee=None,
        remarks: str | None = None,
        actor_id=None,
    ) -> ActionResult:
        def _review(outbox):
            record = get_return(db, return_id)
            target = (decision or "").strip().lower()
            if target == record.Status:
                return ActionResult.ok(serialize_return(record), message=f"Already {record.Status}.")
            if target in {ReturnStatus.APPROVED.value, ReturnStatus.COMPLETED.value}:
                if approve_pending_return(db, record, damage_fee, remarks, actor_id, self.clock()) is None:
                    return ActionResult.ok(serialize_return(record), message=f"Already {record.Status}.")
                self._queue_returned(outbox, record)
                return ActionResult.ok(serialize_return(record), message=f"Return {record.Status}.")
            if target == ReturnStatus.REJECTED.value:
                if not reject_pending_return(db, record, remarks, actor_id, self.clock()):
                    return ActionResult.ok(serialize_return(record), message="Already rejected.")
                return ActionResult.ok(serialize_return(record), message="Return rejected.")
            raise ValidationError(f"Unknown review decision: {decision}", decision=decision)

        return run_action(db, _review)

    def settle_fee(self, db: Session, return_id: int, actor_id=None) -> ActionResult:
        def _settle(outbox):
            record = get_return(db, return_id)
            if not settle_fee_for(db, record, actor_id, self.clock()):
                return ActionResult.ok(serialize_return(record), message="Fee already settled.")
            self._queue_returned(outbox, record)
            return ActionResult.ok(serialize_return(record), message="Fee settled.")

        return run_action(db, _settle)
