from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..db.base import Base


class EquipmentItem(Base):
    __tablename__ = "Equipment"
    __table_args__ = (
        CheckConstraint("AvailableQuantity >= 0", name="ck_equipment_available_nonnegative"),
        CheckConstraint("BorrowedQuantity >= 0", name="ck_equipment_borrowed_nonnegative"),
        CheckConstraint("MaintenanceQuantity >= 0", name="ck_equipment_maintenance_nonnegative"),
        CheckConstraint("DisposalQuantity >= 0", name="ck_equipment_disposal_nonnegative"),
        CheckConstraint(
            "AvailableQuantity + BorrowedQuantity + MaintenanceQuantity + DisposalQuantity = TotalQuantity",
            name="ck_equipment_quantity_sum",
        ),
    )

    EquipmentID = Column(Integer, primary_key=True)
    ItemCode = Column(String(50), nullable=False, unique=True)
    Name = Column(String(255), nullable=False)
    Category = Column(String(100))
    Condition = Column(String(50), default="Good")
    RoomAssigned = Column(String(100))
    TotalQuantity = Column(Integer, nullable=False, default=0)
    AvailableQuantity = Column(Integer, nullable=False, default=0)
    BorrowedQuantity = Column(Integer, nullable=False, default=0)
    MaintenanceQuantity = Column(Integer, nullable=False, default=0)
    DisposalQuantity = Column(Integer, nullable=False, default=0)
    Status = Column(String(20), default="Active")
    MaintenanceNeeds = Column(String(10), default="No")
    CanBeBorrowed = Column(Boolean, default=True)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    BorrowingRequests = relationship("BorrowingRequest", back_populates="Equipment")
    GuestBorrowingRequests = relationship("GuestBorrowingRequest", back_populates="Equipment")


class BorrowingRequest(Base):
    __tablename__ = "Borrowings"
    __table_args__ = (
        CheckConstraint("Quantity >= 1", name="ck_borrowing_quantity_positive"),
        Index("ix_borrowings_equipment_status", "EquipmentID", "Status"),
        Index("ix_borrowings_borrower_status", "BorrowerID", "Status"),
    )

    BorrowingID = Column(Integer, primary_key=True)
    EquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"), nullable=False)
    BorrowerID = Column(String(100), nullable=False)
    BorrowerType = Column(String(20), nullable=False, default="student")
    BorrowerName = Column(String(255), nullable=False)
    BorrowerEmail = Column(String(255), nullable=False)
    Quantity = Column(Integer, nullable=False, default=1)
    Purpose = Column(String(1000), nullable=False)
    Description = Column(String(1000))
    Status = Column(String(30), nullable=False, default="pending")
    RequestedDate = Column(DateTime, nullable=False)
    IntendedBorrowDate = Column(DateTime, nullable=False)
    IntendedReturnDate = Column(DateTime, nullable=False)
    ApprovedDate = Column(DateTime)
    ReleasedDate = Column(DateTime)
    ActualReturnDate = Column(DateTime)
    ApprovedBy = Column(String(100))
    ReleasedBy = Column(String(100))
    ReceivedBy = Column(String(100))
    AdminRemarks = Column(String(1000))
    ConditionOnBorrow = Column(String(100))
    ConditionOnReturn = Column(String(100))
    DamageReport = Column(String(2000))
    PenaltyFee = Column(Numeric(10, 2), nullable=False, default=0)
    ReturnStatus = Column(String(20))
    ReturnRequestDate = Column(DateTime)
    ReturnApprovedDate = Column(DateTime)
    RoomAssigned = Column(String(100))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Equipment = relationship("EquipmentItem", back_populates="BorrowingRequests")
    ReturnRecords = relationship("ReturnRecord", back_populates="Borrowing")


class GuestBorrowingRequest(Base):
    __tablename__ = "GuestBorrowings"
    __table_args__ = (
        Index("ix_guest_borrowings_email_equipment_status", "Email", "EquipmentID", "Status"),
    )

    GuestRequestID = Column(Integer, primary_key=True)
    RequestNumber = Column(String(40), nullable=False, unique=True)
    SchoolID = Column(String(50), nullable=False)
    FirstName = Column(String(50), nullable=False)
    LastName = Column(String(50), nullable=False)
    Email = Column(String(255), nullable=False)
    Course = Column(String(100), nullable=False)
    Year = Column(String(20), nullable=False)
    Section = Column(String(20), nullable=False)
    Purpose = Column(String(1000), nullable=False)
    EquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"), nullable=False)
    EquipmentName = Column(String(255), nullable=False)
    BorrowDuration = Column(String(20), nullable=False, default="1 week")
    RequestedDate = Column(DateTime, nullable=False)
    Status = Column(String(20), nullable=False, default="pending")
    AdminNotes = Column(String(500))
    ApprovedDate = Column(DateTime)
    ReturnedDate = Column(DateTime)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Equipment = relationship("EquipmentItem", back_populates="GuestBorrowingRequests")
    ReturnRecords = relationship("ReturnRecord", back_populates="GuestRequest")


class ReturnRecord(Base):
    __tablename__ = "Returns"
    __table_args__ = (
        Index("ix_returns_status", "Status"),
        Index("ix_returns_borrowing", "BorrowingID"),
    )

    ReturnID = Column(Integer, primary_key=True)
    BorrowingID = Column(Integer, ForeignKey("Borrowings.BorrowingID"))
    GuestRequestID = Column(Integer, ForeignKey("GuestBorrowings.GuestRequestID"))
    EquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"), nullable=False)
    BorrowerType = Column(String(20), nullable=False, default="student")
    Quantity = Column(Integer, nullable=False, default=1)
    IntendedReturnDate = Column(DateTime, nullable=False)
    ActualReturnDate = Column(DateTime, nullable=False)
    ConditionBefore = Column(String(100), nullable=False, default="Good")
    ConditionAfter = Column(String(100), nullable=False, default="Good")
    DamageDescription = Column(String(2000), default="")
    DamageSeverity = Column(String(20), nullable=False, default="None")
    IsLate = Column(Boolean, nullable=False, default=False)
    LateDays = Column(Integer, nullable=False, default=0)
    PenaltyFee = Column(Numeric(10, 2), nullable=False, default=0)
    DamageFee = Column(Numeric(10, 2), nullable=False, default=0)
    TotalFee = Column(Numeric(10, 2), nullable=False, default=0)
    IsFeePaid = Column(Boolean, nullable=False, default=False)
    Status = Column(String(20), nullable=False, default="pending")
    Remarks = Column(String(1000), default="")
    ReviewedBy = Column(String(100))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Borrowing = relationship("BorrowingRequest", back_populates="ReturnRecords")
    GuestRequest = relationship("GuestBorrowingRequest", back_populates="ReturnRecords")


class OtpSession(Base):
    __tablename__ = "OtpSessions"

    OtpID = Column(Integer, primary_key=True)
    Email = Column(String(255), nullable=False, unique=True)
    CodeHash = Column(String(128), nullable=False)
    CodeSalt = Column(String(64), nullable=False)
    FirstName = Column(String(50))
    LastName = Column(String(50))
    IssuedAt = Column(DateTime, nullable=False)
    ExpiresAt = Column(DateTime, nullable=False)
    Attempts = Column(Integer, nullable=False, default=0)
    Consumed = Column(Boolean, nullable=False, default=False)
    VerifiedAt = Column(DateTime)


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(String(100))
    CreatedAt = Column(DateTime, server_default=func.now())


class NotificationQueue(Base):
    __tablename__ = "NotificationQueue"

    NotificationID = Column(Integer, primary_key=True)
    Event = Column(String(20), nullable=False)
    RecipientEmail = Column(String(255), nullable=False)
    Payload = Column(String(4000))
    Attempts = Column(Integer, nullable=False, default=0)
    LastError = Column(String(500))
    CreatedAt = Column(DateTime, server_default=func.now())
    SentAt = Column(DateTime)
