from sqlalchemy import Boolean, CheckConstraint, Column, Date, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from resource_office.db.base import Base


class InventoryItem(Base):
    __tablename__ = "InventoryItems"
    __table_args__ = (
        CheckConstraint("TotalQuantity >= 0", name="ck_inventoryitems_total_nonnegative"),
        CheckConstraint("AvailableQuantity >= 0", name="ck_inventoryitems_available_nonnegative"),
        CheckConstraint("AvailableQuantity <= TotalQuantity", name="ck_inventoryitems_available_le_total"),
    )

    ItemID = Column(Integer, primary_key=True)
    ItemCode = Column(String(50), nullable=False, unique=True)
    ItemName = Column(String(255), nullable=False)
    Category = Column(String(100))
    Description = Column(String(1000))
    TotalQuantity = Column(Integer, nullable=False, default=0)
    AvailableQuantity = Column(Integer, nullable=False, default=0)
    Status = Column(String(20), nullable=False, default="Active")
    LowStockThreshold = Column(Integer, nullable=False, default=30)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    BorrowLines = relationship("BorrowLine", back_populates="Item")


class BorrowTransaction(Base):
    __tablename__ = "BorrowTransactions"
    __table_args__ = (
        Index("ix_borrowtransactions_status_due", "Status", "ExpectedReturnDate"),
    )

    TransactionID = Column(Integer, primary_key=True)
    TransactionNumber = Column(String(50), nullable=False, unique=True)
    BorrowerRef = Column(String(100), nullable=False, index=True)
    BorrowerName = Column(String(255))
    BorrowerEmail = Column(String(255))
    Purpose = Column(String(255), nullable=False)
    Location = Column(String(255))
    Notes = Column(Text)
    BorrowDate = Column(Date, nullable=False)
    ExpectedReturnDate = Column(Date, nullable=False)
    ActualReturnDate = Column(Date)
    Status = Column(String(20), nullable=False, default="Borrowed")
    IsOverdue = Column(Boolean, nullable=False, default=False)
    OverdueSince = Column(DateTime)
    OverdueNotifiedAt = Column(DateTime)
    DueSoonNotifiedAt = Column(DateTime)
    DueTodayNotifiedAt = Column(DateTime)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Lines = relationship(
        "BorrowLine",
        back_populates="Transaction",
        cascade="all, delete-orphan",
        order_by="BorrowLine.ItemID",
    )
    Verifications = relationship(
        "ReturnVerification",
        back_populates="Transaction",
        order_by="ReturnVerification.VerificationID",
    )


class BorrowLine(Base):
    __tablename__ = "BorrowLines"
    __table_args__ = (
        CheckConstraint("Quantity > 0", name="ck_borrowlines_quantity_positive"),
    )

    LineID = Column(Integer, primary_key=True)
    TransactionID = Column(Integer, ForeignKey("BorrowTransactions.TransactionID"), nullable=False, index=True)
    ItemID = Column(Integer, ForeignKey("InventoryItems.ItemID"), nullable=False, index=True)
    Quantity = Column(Integer, nullable=False)
    Status = Column(String(20), nullable=False, default="Borrowed")
    ReturnedAt = Column(DateTime)

    Transaction = relationship("BorrowTransaction", back_populates="Lines")
    Item = relationship("InventoryItem", back_populates="BorrowLines")


class ReturnVerification(Base):
    __tablename__ = "ReturnVerifications"

    VerificationID = Column(Integer, primary_key=True)
    VerificationNumber = Column(String(50), nullable=False, unique=True)
    TransactionID = Column(Integer, ForeignKey("BorrowTransactions.TransactionID"), nullable=False, index=True)
    LineID = Column(Integer, ForeignKey("BorrowLines.LineID"), nullable=False, index=True)
    ItemID = Column(Integer, ForeignKey("InventoryItems.ItemID"), nullable=False)
    Quantity = Column(Integer, nullable=False)
    BatchID = Column(String(32), nullable=False, index=True)
    Status = Column(String(20), nullable=False, default="Pending", index=True)
    ReturnNotes = Column(String(1000))
    ConditionNotes = Column(String(1000))
    ResolvedBy = Column(String(100))
    ResolvedAt = Column(DateTime)
    CreatedDate = Column(DateTime, server_default=func.now())

    Transaction = relationship("BorrowTransaction", back_populates="Verifications")
    Line = relationship("BorrowLine")
    Item = relationship("InventoryItem")


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
    TransactionID = Column(Integer, index=True)
    NotificationType = Column(String(50), nullable=False)
    Recipient = Column(String(255))
    Payload = Column(String(2000))
    Attempts = Column(Integer, nullable=False, default=0)
    LastError = Column(String(500))
    CreatedAt = Column(DateTime, server_default=func.now())
    SentAt = Column(DateTime)
