from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models.lending_models import EquipmentItem
from .errors import NotFound, ValidationError


BORROWABLE_CONDITIONS = {"Excellent", "Good", "Fair"}


def _parse_seq(item_code: str) -> Optional[int]:
    parts = item_code.split("-")
    if len(parts) != 2:
        return None
    try:
        return int(parts[1])
    except ValueError:
        return None


def generate_next_item_code(db: Session, today: date | None = None) -> str:
    year = (today or date.today()).year
    prefix = f"EQP{year}-"

    existing = db.execute(
        select(EquipmentItem.ItemCode).where(EquipmentItem.ItemCode.startswith(prefix))
    ).scalars().all()

    max_seq = 0
    for code in existing:
        if not code:
            continue
        seq = _parse_seq(code)
        if seq and seq > max_seq:
            max_seq = seq
    return f"{prefix}{max_seq + 1:04d}"


def get_equipment(db: Session, equipment_id: int) -> EquipmentItem:
    item = db.get(EquipmentItem, equipment_id)
    if not item:
        raise NotFound(f"Equipment {equipment_id} not found.", equipmentID=equipment_id)
    return item


def create_equipment(
    db: Session,
    *,
    name: str,
    total: int,
    category: str | None = None,
    condition: str = "Good",
    room_assigned: str | None = None,
    item_code: str | None = None,
    can_be_borrowed: bool = True,
    now: datetime | None = None,
) -> EquipmentItem:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Equipment name is required.")
    if total is None or int(total) < 0:
        raise ValidationError("Total quantity must be zero or greater.")
    stamp = now or datetime.now()
    item = EquipmentItem(
        ItemCode=(item_code or "").strip() or generate_next_item_code(db, stamp.date()),
        Name=name,
        Category=category,
        Condition=condition or "Good",
        RoomAssigned=room_assigned,
        TotalQuantity=int(total),
        AvailableQuantity=int(total),
        BorrowedQuantity=0,
        MaintenanceQuantity=0,
        DisposalQuantity=0,
        Status="Active",
        MaintenanceNeeds="No",
        CanBeBorrowed=bool(can_be_borrowed),
        CreatedDate=stamp,
        UpdatedDate=stamp,
    )
    db.add(item)
    db.flush()
    return item


def borrowing_available(item: EquipmentItem) -> int:
    if not item.CanBeBorrowed:
        return 0
    if (
        item.Condition in BORROWABLE_CONDITIONS
        and (item.MaintenanceNeeds or "No") == "No"
        and (item.Status or "Active") == "Active"
    ):
        return max(0, int(item.AvailableQuantity or 0))
    return 0


def check_can_borrow(item: EquipmentItem, requested_quantity: int = 1) -> dict:
    if not item.CanBeBorrowed:
        return {
            "canBorrow": False,
            "reason": "This equipment is not available for borrowing",
            "borrowingAvailableQuantity": 0,
        }
    available = borrowing_available(item)
    if available >= requested_quantity:
        reason = "Available for borrowing"
    elif available > 0:
        reason = f"Only {available} units available for borrowing"
    else:
        reason = (
            f"Equipment condition: {item.Condition}, Maintenance: {item.MaintenanceNeeds}, Status: {item.Status}"
            if int(item.AvailableQuantity or 0) > 0
            else "Equipment is currently unavailable for borrowing"
        )
    return {
        "canBorrow": available >= requested_quantity,
        "reason": reason,
        "borrowingAvailableQuantity": available,
    }


def verify_invariant(item: EquipmentItem) -> bool:
    buckets = (
        int(item.AvailableQuantity or 0),
        int(item.BorrowedQuantity or 0),
        int(item.MaintenanceQuantity or 0),
        int(item.DisposalQuantity or 0),
    )
    return min(buckets) >= 0 and sum(buckets) == int(item.TotalQuantity or 0)


def serialize_equipment(item: EquipmentItem) -> dict:
    return {
        "equipmentID": item.EquipmentID,
        "itemCode": item.ItemCode,
        "name": item.Name,
        "category": item.Category,
        "condition": item.Condition,
        "roomAssigned": item.RoomAssigned,
        "totalQuantity": item.TotalQuantity,
        "availableQuantity": item.AvailableQuantity,
        "borrowedQuantity": item.BorrowedQuantity,
        "maintenanceQuantity": item.MaintenanceQuantity,
        "disposalQuantity": item.DisposalQuantity,
        "borrowingAvailableQuantity": borrowing_available(item),
        "status": item.Status,
        "maintenanceNeeds": item.MaintenanceNeeds,
        "canBeBorrowed": bool(item.CanBeBorrowed),
        "createdDate": item.CreatedDate,
        "updatedDate": item.UpdatedDate,
    }
