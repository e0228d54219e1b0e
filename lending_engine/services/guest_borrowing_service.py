from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models.lending_models import GuestBorrowingRequest
from . import ledger_service
from .audit_service import log_audit
from .equipment_service import borrowing_available, get_equipment
from .errors import ActionResult, DuplicateRequest, InsufficientStock, InvalidTransition, NotFound, ValidationError
from .fee_service import money
from .otp_service import consume_verification, normalize_email
from .return_service import record_guest_return, serialize_return
from .workflow import (
    GUEST_TRANSITIONS,
    BorrowingWorkflow,
    GuestAction,
    GuestStatus,
    run_action,
)


LOGGER = logging.getLogger("lending_engine.guest")

BORROW_DURATIONS = {
    "1 day": timedelta(days=1),
    "3 days": timedelta(days=3),
    "1 week": timedelta(weeks=1),
    "2 weeks": timedelta(weeks=2),
    "1 month": timedelta(days=30),
}

_REQUIRED_FIELDS = (
    ("schoolId", "School ID"),
    ("firstName", "First name"),
    ("lastName", "Last name"),
    ("course", "Course"),
    ("year", "Year"),
    ("section", "Section"),
    ("purpose", "Purpose"),
)


def intended_return_date(record: GuestBorrowingRequest) -> datetime | None:
    start = record.ApprovedDate or record.RequestedDate
    if start is None:
        return None
    return start + BORROW_DURATIONS.get(record.BorrowDuration, BORROW_DURATIONS["1 week"])


def generate_request_number(now: datetime) -> str:
    millis = int(now.timestamp() * 1000)
    return f"GBR-{uuid.uuid4().hex[:8].upper()}-{millis % 10000:04d}"


class GuestBorrowingWorkflow(BorrowingWorkflow):
    """Borrowing for unauthenticated guests, gated by email verification.

    Guests always borrow a single unit and have no release or return-request
    step: an admin approves and later records the return directly.
    """

    entity_type = "GuestBorrowing"
    transitions = GUEST_TRANSITIONS
    status_enum = GuestStatus

    def _load(self, db: Session, record_id: int) -> GuestBorrowingRequest:
        record = db.get(GuestBorrowingRequest, record_id)
        if not record:
            raise NotFound(f"Guest request {record_id} not found.", guestRequestID=record_id)
        return record

    def _action_handlers(self) -> dict:
        return {
            GuestAction.APPROVE: self.approve,
            GuestAction.DECLINE: self.reject,
            GuestAction.MARK_RETURNED: self.return_item,
        }

    def serialize(self, record: GuestBorrowingRequest) -> dict:
        return {
            "guestRequestID": record.GuestRequestID,
            "requestId": record.RequestNumber,
            "schoolId": record.SchoolID,
            "firstName": record.FirstName,
            "lastName": record.LastName,
            "email": record.Email,
            "course": record.Course,
            "year": record.Year,
            "section": record.Section,
            "purpose": record.Purpose,
            "equipmentID": record.EquipmentID,
            "equipmentName": record.EquipmentName,
            "borrowDuration": record.BorrowDuration,
            "status": record.Status,
            "adminNotes": record.AdminNotes,
            "requestedDate": record.RequestedDate,
            "approvedDate": record.ApprovedDate,
            "intendedReturnDate": intended_return_date(record) if record.ApprovedDate else None,
            "returnedDate": record.ReturnedDate,
            "createdDate": record.CreatedDate,
            "updatedDate": record.UpdatedDate,
        }

    def _payload(self, record: GuestBorrowingRequest, remarks: str | None = None, **extra) -> dict:
        payload = {
            "name": f"{record.FirstName} {record.LastName}".strip(),
            "equipmentName": record.EquipmentName,
            "reference": record.RequestNumber,
            "remarks": remarks,
        }
        payload.update(extra)
        return payload

    def submit(self, db: Session, request, **options) -> ActionResult:
        def _submit(outbox):
            stamp = self.now()
            email = normalize_email(request.email)
            for attr, label in _REQUIRED_FIELDS:
                if not (getattr(request, attr, None) or "").strip():
                    raise ValidationError(f"{label} is required.", field=attr)
            duration = (request.borrowDuration or "1 week").strip()
            if duration not in BORROW_DURATIONS:
                raise ValidationError(
                    f"Borrow duration must be one of: {', '.join(BORROW_DURATIONS)}.",
                    borrowDuration=duration,
                )

            consume_verification(db, self.settings, email, stamp)

            item = get_equipment(db, request.equipmentID)
            duplicate = db.execute(
                select(GuestBorrowingRequest.GuestRequestID)
                .where(GuestBorrowingRequest.Email == email)
                .where(GuestBorrowingRequest.EquipmentID == item.EquipmentID)
                .where(GuestBorrowingRequest.Status == GuestStatus.PENDING.value)
            ).first()
            if duplicate:
                raise DuplicateRequest(
                    "You already have a pending request for this equipment.",
                    guestRequestID=duplicate[0],
                )
            if borrowing_available(item) < 1:
                raise InsufficientStock(
                    "Equipment is not available for borrowing at the moment.",
                    equipmentID=item.EquipmentID,
                )

            record = GuestBorrowingRequest(
                RequestNumber=generate_request_number(stamp),
                SchoolID=request.schoolId.strip(),
                FirstName=request.firstName.strip(),
                LastName=request.lastName.strip(),
                Email=email,
                Course=request.course.strip(),
                Year=request.year.strip(),
                Section=request.section.strip(),
                Purpose=request.purpose.strip(),
                EquipmentID=item.EquipmentID,
                EquipmentName=item.Name,
                BorrowDuration=duration,
                RequestedDate=stamp,
                Status=GuestStatus.PENDING.value,
                CreatedDate=stamp,
                UpdatedDate=stamp,
            )
            db.add(record)
            db.flush()
            log_audit(db, self.entity_type, record.GuestRequestID, "Submit", record.RequestNumber, user_id=email)
            LOGGER.info("Guest request %s submitted by %s", record.RequestNumber, email)
            return ActionResult.ok(
                self.serialize(record),
                message="Borrow request submitted successfully.",
                requestId=record.RequestNumber,
            )

        return run_action(db, _submit)

    def approve(self, db: Session, record_id: int, actor_id=None, remarks: str | None = None, **options) -> ActionResult:
        def _approve(outbox):
            record = self._load(db, record_id)
            if record.Status == GuestStatus.APPROVED.value:
                return ActionResult.ok(self.serialize(record), message="Already approved.")
            stamp = self.now()
            values = {"ApprovedDate": stamp, "UpdatedDate": stamp}
            if (remarks or "").strip():
                values["AdminNotes"] = remarks.strip()
            if not self._claim(db, record, GuestAction.APPROVE, **values):
                return ActionResult.ok(self.serialize(record), message="Already approved.")
            ledger_service.reserve_and_commit(db, record.EquipmentID, 1, now=stamp)
            log_audit(db, self.entity_type, record_id, "Approve", remarks, user_id=actor_id)
            self._queue_notification(outbox, "approved", record.Email, self._payload(record, remarks))
            LOGGER.info("Guest request %s approved", record.RequestNumber)
            return ActionResult.ok(self.serialize(record), message="Guest request approved.")

        return run_action(db, _approve)

    def reject(self, db: Session, record_id: int, actor_id=None, remarks: str | None = None, **options) -> ActionResult:
        def _decline(outbox):
            record = self._load(db, record_id)
            values = {"UpdatedDate": self.now()}
            if (remarks or "").strip():
                values["AdminNotes"] = remarks.strip()
            if not self._claim(db, record, GuestAction.DECLINE, **values):
                return ActionResult.ok(self.serialize(record), message="Already declined.")
            log_audit(db, self.entity_type, record_id, "Decline", remarks, user_id=actor_id)
            self._queue_notification(outbox, "rejected", record.Email, self._payload(record, remarks))
            LOGGER.info("Guest request %s declined", record.RequestNumber)
            return ActionResult.ok(self.serialize(record), message="Guest request declined.")

        return run_action(db, _decline)

    def release(self, db: Session, record_id: int, actor_id=None, remarks: str | None = None, **options) -> ActionResult:
        return ActionResult.fail(
            InvalidTransition(
                "Guest requests have no release step; approval hands the item over.",
                guestRequestID=record_id,
            )
        )

    def return_item(self, db: Session, record_id: int, actor_id=None, remarks: str | None = None, **options) -> ActionResult:
        def _mark_returned(outbox):
            record = self._load(db, record_id)
            if record.Status == GuestStatus.RETURNED.value:
                return ActionResult.ok(self.serialize(record), message="Already returned.")
            stamp = self.now()
            values = {"ReturnedDate": stamp, "UpdatedDate": stamp}
            if (remarks or "").strip():
                values["AdminNotes"] = remarks.strip()
            if not self._claim(db, record, GuestAction.MARK_RETURNED, **values):
                return ActionResult.ok(self.serialize(record), message="Already returned.")
            ledger_service.release(db, record.EquipmentID, 1, now=stamp)
            return_record = record_guest_return(
                db,
                self.settings,
                record,
                intended_return_date(record),
                condition_after=options.get("condition_after"),
                damage_description=options.get("damage_description"),
                damage_severity=options.get("damage_severity"),
                actor_id=actor_id,
                now=stamp,
            )
            log_audit(
                db,
                self.entity_type,
                record_id,
                "MarkReturned",
                f"Return {return_record.ReturnID} totalFee={return_record.TotalFee}",
                user_id=actor_id,
            )
            self._queue_notification(
                outbox,
                "returned",
                record.Email,
                self._payload(record, remarks, totalFee=str(money(return_record.TotalFee))),
            )
            LOGGER.info("Guest request %s returned", record.RequestNumber)
            return ActionResult.ok(
                self.serialize(record),
                message="Guest return recorded.",
                returnRecord=serialize_return(return_record),
            )

        return run_action(db, _mark_returned)

    def find_by_school_id(self, db: Session, school_id: str) -> list[dict]:
        rows = db.execute(
            select(GuestBorrowingRequest)
            .where(GuestBorrowingRequest.SchoolID == (school_id or "").strip())
            .order_by(GuestBorrowingRequest.RequestedDate.desc())
        ).scalars().all()
        return [self.serialize(row) for row in rows]

    def find_by_email(self, db: Session, email: str) -> list[dict]:
        rows = db.execute(
            select(GuestBorrowingRequest)
            .where(GuestBorrowingRequest.Email == (email or "").strip().lower())
            .order_by(GuestBorrowingRequest.RequestedDate.desc())
        ).scalars().all()
        return [self.serialize(row) for row in rows]

    def list_requests(self, db: Session, status: str | None = None) -> list[dict]:
        stmt = select(GuestBorrowingRequest).order_by(
            GuestBorrowingRequest.RequestedDate.desc(), GuestBorrowingRequest.GuestRequestID.desc()
        )
        if status:
            stmt = stmt.where(GuestBorrowingRequest.Status == status.strip().lower())
        return [self.serialize(row) for row in db.execute(stmt).scalars().all()]
