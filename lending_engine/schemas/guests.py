from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr


class OtpRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    email: EmailStr
    firstName: Optional[str] = None
    lastName: Optional[str] = None


class OtpVerification(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    email: EmailStr
    otp: str


class GuestBorrowRequestCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    schoolId: str
    firstName: str
    lastName: str
    email: EmailStr
    course: str
    year: str
    section: str
    purpose: str
    equipmentID: int
    borrowDuration: Literal["1 day", "3 days", "1 week", "2 weeks", "1 month"] = "1 week"


class GuestStatusUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: str
    adminNotes: Optional[str] = None
    actorID: Optional[str] = None
    conditionAfter: Optional[str] = None
    damageDescription: Optional[str] = None
    damageSeverity: Optional[str] = None
