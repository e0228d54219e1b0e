from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


class BorrowingCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentID: int
    borrowerID: str
    borrowerName: str
    borrowerEmail: str
    borrowerType: Literal["student", "faculty"] = "student"
    quantity: int = 1
    purpose: str
    description: Optional[str] = None
    intendedBorrowDate: datetime
    intendedReturnDate: datetime
    roomAssigned: Optional[str] = None


class BorrowingStatusUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: str
    remarks: Optional[str] = None
    actorID: Optional[str] = None
    borrowerID: Optional[str] = None
    conditionOnBorrow: Optional[str] = None
    conditionAfter: Optional[str] = None
    damageDescription: Optional[str] = None
    damageSeverity: Optional[str] = None
    damageFee: Optional[Decimal] = None


class ReturnSubmission(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    borrowerID: Optional[str] = None
    conditionAfter: Optional[str] = None
    damageDescription: Optional[str] = None
    damageSeverity: Optional[str] = "None"
