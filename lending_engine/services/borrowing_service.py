from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models.lending_models import BorrowingRequest, ReturnRecord
from . import ledger_service
from .audit_service import log_audit
from .equipment_service import check_can_borrow, get_equipment
from .errors import ActionResult, InsufficientStock, NotFound, Unauthorized, ValidationError
from .fee_service import money
from .return_service import (
    approve_pending_return,
    cancel_return,
    complete_with_settled_fee,
    find_open_return,
    open_return,
    reject_pending_return,
    serialize_return,
)
from .workflow import (
    OUTSTANDING_STATUSES,
    REGULAR_TRANSITIONS,
    BorrowingWorkflow,
    RegularAction,
    RegularStatus,
    run_action,
)


LOGGER = logging.getLogger("lending_engine.borrowing")

BORROWER_TYPES = {"student", "faculty"}


def is_overdue(record: BorrowingRequest, now: datetime | None = None) -> bool:
    if RegularStatus(record.Status) not in OUTSTANDING_STATUSES:
        return False
    if record.IntendedReturnDate is None:
        return False
    return (now or datetime.now()) > record.IntendedReturnDate


def _clean(value: str | None) -> str:
    return (value or "").strip()


def _check_owner(record: BorrowingRequest, borrower_id) -> None:
    if borrower_id is None:
        return
    if str(borrower_id).strip() != record.BorrowerID:
        raise Unauthorized(
            "Only the borrower who created this request can change its return.",
            borrowingID=record.BorrowingID,
        )


class RegularBorrowingWorkflow(BorrowingWorkflow):
    """Borrowing lifecycle for registered students and faculty."""

    entity_type = "Borrowing"
    transitions = REGULAR_TRANSITIONS
    status_enum = RegularStatus

    def _load(self, db: Session, record_id: int) -> BorrowingRequest:
        record = db.get(BorrowingRequest, record_id)
        if not record:
            raise NotFound(f"Borrowing request {record_id} not found.", borrowingID=record_id)
        return record

    def _action_handlers(self) -> dict:
        return {
            RegularAction.APPROVE: self.approve,
            RegularAction.REJECT: self.reject,
            RegularAction.RELEASE: self.release,
            RegularAction.REQUEST_RETURN: self.return_item,
            RegularAction.APPROVE_RETURN: self.approve_return,
            RegularAction.REJECT_RETURN: self.reject_return,
            RegularAction.COMPLETE_RETURN: self.complete_return,
            RegularAction.CANCEL_RETURN: self.cancel_return,
        }

    def serialize(self, record: BorrowingRequest) -> dict:
        equipment = record.Equipment
        return {
            "borrowingID": record.BorrowingID,
            "equipmentID": record.EquipmentID,
            "equipmentName": equipment.Name if equipment else None,
            "itemCode": equipment.ItemCode if equipment else None,
            "borrowerID": record.BorrowerID,
            "borrowerType": record.BorrowerType,
            "borrowerName": record.BorrowerName,
            "borrowerEmail": record.BorrowerEmail,
            "quantity": record.Quantity,
            "purpose": record.Purpose,
            "description": record.Description,
            "status": record.Status,
            "isOverdue": is_overdue(record, self.now()),
            "requestedDate": record.RequestedDate,
            "intendedBorrowDate": record.IntendedBorrowDate,
            "intendedReturnDate": record.IntendedReturnDate,
            "approvedDate": record.ApprovedDate,
            "releasedDate": record.ReleasedDate,
            "actualReturnDate": record.ActualReturnDate,
            "approvedBy": record.ApprovedBy,
            "releasedBy": record.ReleasedBy,
            "receivedBy": record.ReceivedBy,
            "adminRemarks": record.AdminRemarks,
            "conditionOnBorrow": record.ConditionOnBorrow,
            "conditionOnReturn": record.ConditionOnReturn,
            "damageReport": record.DamageReport,
            "penaltyFee": str(money(record.PenaltyFee)),
            "returnStatus": record.ReturnStatus,
            "returnRequestDate": record.ReturnRequestDate,
            "returnApprovedDate": record.ReturnApprovedDate,
            "roomAssigned": record.RoomAssigned,
            "createdDate": record.CreatedDate,
            "updatedDate": record.UpdatedDate,
        }

    def _notification_payload(self, record: BorrowingRequest, remarks: str | None = None, **extra) -> dict:
        payload = {
            "name": record.BorrowerName,
            "equipmentName": record.Equipment.Name if record.Equipment else None,
            "reference": f"BRW-{record.BorrowingID}",
            "remarks": remarks,
        }
        payload.update(extra)
        return payload

    def _queue_if_returned(self, outbox, record: BorrowingRequest, return_record: ReturnRecord | None) -> None:
        if record.Status != RegularStatus.RETURNED.value:
            return
        total_fee = str(money(return_record.TotalFee)) if return_record is not None else None
        self._queue_notification(
            outbox,
            "returned",
            record.BorrowerEmail,
            self._notification_payload(record, totalFee=total_fee),
        )

    def submit(self, db: Session, request, **options) -> ActionResult:
        def _submit(outbox):
            stamp = self.now()
            borrower_id = _clean(request.borrowerID)
            borrower_name = _clean(request.borrowerName)
            borrower_email = _clean(request.borrowerEmail).lower()
            borrower_type = _clean(request.borrowerType).lower() or "student"
            purpose = _clean(request.purpose)
            if not borrower_id:
                raise ValidationError("Borrower ID is required.")
            if not borrower_name or not borrower_email:
                raise ValidationError("Borrower name and email are required.")
            if borrower_type not in BORROWER_TYPES:
                raise ValidationError(
                    f"Borrower type must be one of: {', '.join(sorted(BORROWER_TYPES))}.",
                    borrowerType=borrower_type,
                )
            if not purpose:
                raise ValidationError("Purpose is required.")
            quantity = int(request.quantity or 0)
            if quantity < 1:
                raise ValidationError("Quantity must be at least 1.")
            if request.intendedReturnDate <= request.intendedBorrowDate:
                raise ValidationError("Intended return date must be after the intended borrow date.")

            item = get_equipment(db, request.equipmentID)
            availability = check_can_borrow(item, quantity)
            if not availability["canBorrow"]:
                if not item.CanBeBorrowed:
                    raise ValidationError(availability["reason"], equipmentID=item.EquipmentID)
                raise InsufficientStock(
                    availability["reason"],
                    equipmentID=item.EquipmentID,
                    requested=quantity,
                    borrowingAvailableQuantity=availability["borrowingAvailableQuantity"],
                )

            record = BorrowingRequest(
                EquipmentID=item.EquipmentID,
                BorrowerID=borrower_id,
                BorrowerType=borrower_type,
                BorrowerName=borrower_name,
                BorrowerEmail=borrower_email,
                Quantity=quantity,
                Purpose=purpose,
                Description=_clean(request.description) or None,
                Status=RegularStatus.PENDING.value,
                RequestedDate=stamp,
                IntendedBorrowDate=request.intendedBorrowDate,
                IntendedReturnDate=request.intendedReturnDate,
                PenaltyFee=0,
                RoomAssigned=_clean(request.roomAssigned) or item.RoomAssigned,
                CreatedDate=stamp,
                UpdatedDate=stamp,
            )
            db.add(record)
            db.flush()
            log_audit(db, self.entity_type, record.BorrowingID, "Submit", f"qty={quantity}", user_id=borrower_id)
            LOGGER.info(
                "Borrowing %s submitted by %s for equipment %s qty=%s",
                record.BorrowingID,
                borrower_id,
                item.EquipmentID,
                quantity,
            )
            return ActionResult.ok(self.serialize(record), message="Borrowing request submitted.")

        return run_action(db, _submit)

    def approve(self, db: Session, record_id: int, actor_id=None, remarks: str | None = None, **options) -> ActionResult:
        def _approve(outbox):
            record = self._load(db, record_id)
            if record.Status == RegularStatus.APPROVED.value:
                return ActionResult.ok(self.serialize(record), message="Already approved.")

            stamp = self.now()
            values = {
                "ApprovedDate": stamp,
                "ApprovedBy": str(actor_id) if actor_id is not None else None,
                "UpdatedDate": stamp,
            }
            if _clean(remarks):
                values["AdminRemarks"] = _clean(remarks)
            if not self._claim(db, record, RegularAction.APPROVE, **values):
                return ActionResult.ok(self.serialize(record), message="Already approved.")

            ledger = ledger_service.reserve_and_commit(db, record.EquipmentID, record.Quantity, now=stamp)
            log_audit(db, self.entity_type, record_id, "Approve", remarks, user_id=actor_id)
            self._queue_notification(
                outbox, "approved", record.BorrowerEmail, self._notification_payload(record, remarks)
            )
            LOGGER.info(
                "Borrowing %s approved; equipment %s available=%s borrowed=%s",
                record_id,
                record.EquipmentID,
                ledger.available,
                ledger.borrowed,
            )
            return ActionResult.ok(self.serialize(record), message="Borrowing request approved.", ledger=ledger.to_dict())

        return run_action(db, _approve)

    def reject(self, db: Session, record_id: int, actor_id=None, remarks: str | None = None, **options) -> ActionResult:
        def _reject(outbox):
            record = self._load(db, record_id)
            stamp = self.now()
            values = {"UpdatedDate": stamp}
            if _clean(remarks):
                values["AdminRemarks"] = _clean(remarks)
            if not self._claim(db, record, RegularAction.REJECT, **values):
                return ActionResult.ok(self.serialize(record), message="Already rejected.")
            log_audit(db, self.entity_type, record_id, "Reject", remarks, user_id=actor_id)
            self._queue_notification(
                outbox, "rejected", record.BorrowerEmail, self._notification_payload(record, remarks)
            )
            LOGGER.info("Borrowing %s rejected", record_id)
            return ActionResult.ok(self.serialize(record), message="Borrowing request rejected.")

        return run_action(db, _reject)

    def release(self, db: Session, record_id: int, actor_id=None, remarks: str | None = None, **options) -> ActionResult:
        def _release(outbox):
            record = self._load(db, record_id)
            stamp = self.now()
            values = {
                "ReleasedDate": stamp,
                "ReleasedBy": str(actor_id) if actor_id is not None else None,
                "ConditionOnBorrow": (
                    _clean(options.get("condition_on_borrow"))
                    or (record.Equipment.Condition if record.Equipment else None)
                    or "Good"
                ),
                "UpdatedDate": stamp,
            }
            if _clean(remarks):
                values["AdminRemarks"] = _clean(remarks)
            if not self._claim(db, record, RegularAction.RELEASE, **values):
                return ActionResult.ok(self.serialize(record), message="Already released.")
            log_audit(db, self.entity_type, record_id, "Release", remarks, user_id=actor_id)
            LOGGER.info("Borrowing %s released to %s", record_id, record.BorrowerID)
            return ActionResult.ok(self.serialize(record), message="Equipment released to borrower.")

        return run_action(db, _release)

    def return_item(self, db: Session, record_id: int, actor_id=None, remarks: str | None = None, **options) -> ActionResult:
        """Borrower submits a return; routing decides whether an admin has to review it."""

        def _return(outbox):
            record = self._load(db, record_id)
            _check_owner(record, options.get("borrower_id"))
            return_record = open_return(
                db,
                self.settings,
                record,
                condition_after=options.get("condition_after"),
                damage_description=options.get("damage_description"),
                damage_severity=options.get("damage_severity"),
                now=self.now(),
                actor_id=options.get("borrower_id") or actor_id,
            )
            self._queue_if_returned(outbox, record, return_record)
            return ActionResult.ok(
                self.serialize(record),
                message=f"Return request submitted ({return_record.Status}).",
                returnRecord=serialize_return(return_record),
            )

        return run_action(db, _return)

    def _pending_return(self, db: Session, record: BorrowingRequest) -> ReturnRecord:
        return_record = find_open_return(db, record.BorrowingID)
        if return_record is None:
            raise NotFound(f"No return record for borrowing {record.BorrowingID}.", borrowingID=record.BorrowingID)
        return return_record

    def approve_return(self, db: Session, record_id: int, actor_id=None, remarks: str | None = None, **options) -> ActionResult:
        def _approve_return(outbox):
            record = self._load(db, record_id)
            return_record = self._pending_return(db, record)
            status = approve_pending_return(db, return_record, options.get("damage_fee"), remarks, actor_id, self.now())
            if status is None:
                db.refresh(record)
                return ActionResult.ok(
                    self.serialize(record),
                    message=f"Return already {return_record.Status}.",
                    returnRecord=serialize_return(return_record),
                )
            self._queue_if_returned(outbox, record, return_record)
            return ActionResult.ok(
                self.serialize(record),
                message="Return approved.",
                returnRecord=serialize_return(return_record),
            )

        return run_action(db, _approve_return)

    def reject_return(self, db: Session, record_id: int, actor_id=None, remarks: str | None = None, **options) -> ActionResult:
        def _reject_return(outbox):
            record = self._load(db, record_id)
            return_record = self._pending_return(db, record)
            rejected = reject_pending_return(db, return_record, remarks, actor_id, self.now())
            if not rejected:
                db.refresh(record)
            return ActionResult.ok(
                self.serialize(record),
                message="Return rejected." if rejected else "Return already rejected.",
                returnRecord=serialize_return(return_record),
            )

        return run_action(db, _reject_return)

    def complete_return(self, db: Session, record_id: int, actor_id=None, remarks: str | None = None, **options) -> ActionResult:
        def _complete(outbox):
            record = self._load(db, record_id)
            return_record = complete_with_settled_fee(db, record, actor_id, self.now())
            log_audit(db, self.entity_type, record_id, "CompleteReturn", remarks, user_id=actor_id)
            self._queue_if_returned(outbox, record, return_record)
            return ActionResult.ok(self.serialize(record), message="Return completed.")

        return run_action(db, _complete)

    def cancel_return(self, db: Session, record_id: int, actor_id=None, remarks: str | None = None, **options) -> ActionResult:
        def _cancel(outbox):
            record = self._load(db, record_id)
            _check_owner(record, options.get("borrower_id"))
            cancel_return(db, record, self.now())
            log_audit(db, self.entity_type, record_id, "CancelReturn", remarks, user_id=options.get("borrower_id") or actor_id)
            LOGGER.info("Return request for borrowing %s cancelled", record_id)
            return ActionResult.ok(self.serialize(record), message="Return request cancelled.")

        return run_action(db, _cancel)

    def list_requests(
        self,
        db: Session,
        status: str | None = None,
        borrower_id: str | None = None,
        equipment_id: int | None = None,
        overdue_only: bool = False,
    ) -> list[dict]:
        stmt = select(BorrowingRequest).order_by(BorrowingRequest.RequestedDate.desc(), BorrowingRequest.BorrowingID.desc())
        if status:
            stmt = stmt.where(BorrowingRequest.Status == status.strip().lower())
        if borrower_id:
            stmt = stmt.where(BorrowingRequest.BorrowerID == str(borrower_id).strip())
        if equipment_id is not None:
            stmt = stmt.where(BorrowingRequest.EquipmentID == equipment_id)
        if overdue_only:
            stmt = stmt.where(BorrowingRequest.Status.in_([s.value for s in OUTSTANDING_STATUSES]))
            stmt = stmt.where(BorrowingRequest.IntendedReturnDate < self.now())
        rows = db.execute(stmt).scalars().all()
        return [self.serialize(row) for row in rows]
