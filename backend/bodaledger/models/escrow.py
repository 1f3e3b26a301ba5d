"""Escrow tracking and remittance batch models.

Every payment receipt leaves its premium portion in the UBA escrow account
until it is remitted to the underwriter.  Day 1 premiums go out in a daily
batch; the Days 2-31 premiums accumulate and go out in a monthly bulk batch.
"""

import enum
from datetime import date, datetime

from sqlalchemy import (
    String,
    Integer,
    BigInteger,
    Enum,
    DateTime,
    Date,
    ForeignKey,
    Text,
    Index,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bodaledger.database import Base


# ===================================================================
# Enums
# ===================================================================

class EscrowType(str, enum.Enum):
    DAY_1_IMMEDIATE = "day_1_immediate"
    DAYS_2_31_ACCUMULATED = "days_2_31_accumulated"


class RemittanceStatus(str, enum.Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    REMITTED = "remitted"
    REFUNDED = "refunded"


class RemittanceBatchType(str, enum.Enum):
    DAY_1_IMMEDIATE = "day_1_immediate"
    MONTHLY_BULK = "monthly_bulk"


class RemittanceBatchStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    COMPLETED = "completed"
    FAILED = "failed"


# Escrow type whose records each batch type collects
BATCH_ESCROW_TYPES = {
    RemittanceBatchType.DAY_1_IMMEDIATE: EscrowType.DAY_1_IMMEDIATE,
    RemittanceBatchType.MONTHLY_BULK: EscrowType.DAYS_2_31_ACCUMULATED,
}


# ===================================================================
# Models
# ===================================================================

class RemittanceBatch(Base):
    __tablename__ = "remittance_batches"
    __table_args__ = (
        Index("ix_remittance_batch_type", "batch_type"),
        Index("ix_remittance_batch_status", "status"),
        Index("ix_remittance_batch_date", "batch_date"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    batch_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    batch_type: Mapped[RemittanceBatchType] = mapped_column(
        Enum(RemittanceBatchType), nullable=False
    )
    batch_date: Mapped[date] = mapped_column(Date, nullable=False)
    total_premium_amount: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_records: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[RemittanceBatchStatus] = mapped_column(
        Enum(RemittanceBatchStatus), default=RemittanceBatchStatus.PENDING, nullable=False
    )

    approved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    bank_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    journal_entry_id: Mapped[int | None] = mapped_column(
        ForeignKey("gl_journal_entries.id"), nullable=True
    )
    status_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    escrow_records = relationship(
        "EscrowRecord",
        back_populates="remittance_batch",
        order_by="EscrowRecord.id",
    )

    @property
    def can_be_approved(self) -> bool:
        return self.status == RemittanceBatchStatus.PENDING and self.total_records > 0

    @property
    def can_be_processed(self) -> bool:
        return self.status == RemittanceBatchStatus.APPROVED

    @property
    def is_day1_batch(self) -> bool:
        return self.batch_type == RemittanceBatchType.DAY_1_IMMEDIATE


class EscrowRecord(Base):
    """Premium held in escrow for one paid day of a payment receipt."""

    __tablename__ = "escrow_tracking"
    __table_args__ = (
        UniqueConstraint("transaction_id", "day_index", name="uq_escrow_transaction_day"),
        Index("ix_escrow_rider", "rider_id", "payment_date"),
        Index("ix_escrow_status_type", "remittance_status", "escrow_type"),
        Index("ix_escrow_batch", "remittance_batch_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    rider_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    transaction_id: Mapped[str] = mapped_column(String(100), nullable=False)
    receipt_entry_id: Mapped[int | None] = mapped_column(
        ForeignKey("gl_journal_entries.id"), nullable=True
    )
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    day_index: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    premium_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    service_fee_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    escrow_type: Mapped[EscrowType] = mapped_column(Enum(EscrowType), nullable=False)
    remittance_status: Mapped[RemittanceStatus] = mapped_column(
        Enum(RemittanceStatus), default=RemittanceStatus.PENDING, nullable=False
    )

    remittance_batch_id: Mapped[int | None] = mapped_column(
        ForeignKey("remittance_batches.id"), nullable=True
    )
    remitted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    bank_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    remittance_entry_id: Mapped[int | None] = mapped_column(
        ForeignKey("gl_journal_entries.id"), nullable=True
    )
    refund_transaction_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    remittance_batch = relationship("RemittanceBatch", back_populates="escrow_records")
