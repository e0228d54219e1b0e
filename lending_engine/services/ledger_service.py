"""Quantity ledger for equipment items.

Every mutation is a single guarded UPDATE against the Equipment row, so two
sessions racing for the same units serialize in the database instead of in
Python. Callers own the transaction: a failed step raises and the caller rolls
back, which discards any earlier ledger write made in the same transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..models.lending_models import EquipmentItem
from .errors import InsufficientStock, LendingError, NotFound, ValidationError


LOGGER = logging.getLogger("lending_engine.ledger")

_RELEASE_CAS_RETRIES = 5

_BUCKETS = {
    "available": EquipmentItem.AvailableQuantity,
    "borrowed": EquipmentItem.BorrowedQuantity,
    "maintenance": EquipmentItem.MaintenanceQuantity,
    "disposal": EquipmentItem.DisposalQuantity,
}


@dataclass
class LedgerResult:
    success: bool
    equipment_id: int
    quantity: int
    available: int
    borrowed: int
    maintenance: int
    disposal: int
    total: int

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "equipmentID": self.equipment_id,
            "quantity": self.quantity,
            "availableQuantity": self.available,
            "borrowedQuantity": self.borrowed,
            "maintenanceQuantity": self.maintenance,
            "disposalQuantity": self.disposal,
            "totalQuantity": self.total,
        }


def _require_positive(qty: int) -> int:
    try:
        value = int(qty)
    except (TypeError, ValueError) as exc:
        raise ValidationError("Quantity must be a whole number.") from exc
    if value < 1:
        raise ValidationError("Quantity must be at least 1.")
    return value


def _snapshot(db: Session, equipment_id: int, moved: int) -> LedgerResult:
    item = db.get(EquipmentItem, equipment_id, populate_existing=True)
    if not item:
        raise NotFound(f"Equipment {equipment_id} not found.", equipmentID=equipment_id)
    return LedgerResult(
        success=True,
        equipment_id=equipment_id,
        quantity=moved,
        available=item.AvailableQuantity,
        borrowed=item.BorrowedQuantity,
        maintenance=item.MaintenanceQuantity,
        disposal=item.DisposalQuantity,
        total=item.TotalQuantity,
    )


def _current_bucket(db: Session, equipment_id: int, bucket: str) -> int:
    value = db.execute(
        select(_BUCKETS[bucket]).where(EquipmentItem.EquipmentID == equipment_id)
    ).scalar_one_or_none()
    if value is None:
        raise NotFound(f"Equipment {equipment_id} not found.", equipmentID=equipment_id)
    return int(value)


def _guarded_move(
    db: Session,
    equipment_id: int,
    qty: int,
    source: str,
    target: str,
    shortage_error: type[LendingError],
    now: datetime | None = None,
) -> LedgerResult:
    qty = _require_positive(qty)
    source_col = _BUCKETS[source]
    target_col = _BUCKETS[target]
    stmt = (
        update(EquipmentItem)
        .where(EquipmentItem.EquipmentID == equipment_id)
        .where(source_col >= qty)
        .values(
            {
                source_col: source_col - qty,
                target_col: target_col + qty,
                EquipmentItem.UpdatedDate: now or datetime.now(),
            }
        )
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    if result.rowcount != 1:
        on_hand = _current_bucket(db, equipment_id, source)
        LOGGER.warning(
            "Ledger move refused: equipment=%s %s->%s requested=%s on_hand=%s",
            equipment_id,
            source,
            target,
            qty,
            on_hand,
        )
        raise shortage_error(
            f"Not enough items {source}. Requested: {qty}, {source.capitalize()}: {on_hand}",
            equipmentID=equipment_id,
            requested=qty,
            onHand=on_hand,
        )
    LOGGER.info("Ledger move: equipment=%s %s->%s qty=%s", equipment_id, source, target, qty)
    return _snapshot(db, equipment_id, qty)


def get_available(db: Session, equipment_id: int) -> int:
    return _current_bucket(db, equipment_id, "available")


def reserve_and_commit(db: Session, equipment_id: int, qty: int, now: datetime | None = None) -> LedgerResult:
    return _guarded_move(db, equipment_id, qty, "available", "borrowed", InsufficientStock, now)


def release(db: Session, equipment_id: int, qty: int, now: datetime | None = None) -> LedgerResult:
    qty = _require_positive(qty)
    for _ in range(_RELEASE_CAS_RETRIES):
        observed = _current_bucket(db, equipment_id, "borrowed")
        moved = min(qty, observed)
        if moved <= 0:
            LOGGER.warning("Ledger release with nothing borrowed: equipment=%s requested=%s", equipment_id, qty)
            return _snapshot(db, equipment_id, 0)
        stmt = (
            update(EquipmentItem)
            .where(EquipmentItem.EquipmentID == equipment_id)
            .where(EquipmentItem.BorrowedQuantity == observed)
            .values(
                BorrowedQuantity=EquipmentItem.BorrowedQuantity - moved,
                AvailableQuantity=EquipmentItem.AvailableQuantity + moved,
                UpdatedDate=now or datetime.now(),
            )
            .execution_options(synchronize_session=False)
        )
        if db.execute(stmt).rowcount == 1:
            if moved < qty:
                LOGGER.warning(
                    "Ledger release clamped: equipment=%s requested=%s released=%s",
                    equipment_id,
                    qty,
                    moved,
                )
            LOGGER.info("Ledger move: equipment=%s borrowed->available qty=%s", equipment_id, moved)
            return _snapshot(db, equipment_id, moved)
    raise ValidationError(
        "Equipment quantities changed concurrently. Please retry.",
        equipmentID=equipment_id,
    )


def send_to_maintenance(db: Session, equipment_id: int, qty: int, now: datetime | None = None) -> LedgerResult:
    return _guarded_move(db, equipment_id, qty, "available", "maintenance", InsufficientStock, now)


def restore_from_maintenance(db: Session, equipment_id: int, qty: int, now: datetime | None = None) -> LedgerResult:
    return _guarded_move(db, equipment_id, qty, "maintenance", "available", ValidationError, now)


def dispose(
    db: Session,
    equipment_id: int,
    qty: int,
    from_maintenance: bool = False,
    now: datetime | None = None,
) -> LedgerResult:
    if from_maintenance:
        return _guarded_move(db, equipment_id, qty, "maintenance", "disposal", ValidationError, now)
    return _guarded_move(db, equipment_id, qty, "available", "disposal", InsufficientStock, now)
