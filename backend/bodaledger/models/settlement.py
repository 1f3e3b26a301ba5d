"""Partner settlement models.

A settlement is a payable obligation (service fees or commission) owed to an
external partner, moved through an approval and payout lifecycle.  Status
transitions are the only mutations; completed, failed and cancelled rows are
terminal.
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
    JSON,
    Index,
    CheckConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bodaledger.database import Base


class PartnerType(str, enum.Enum):
    DEFINITE_ASSURANCE = "definite_assurance"
    KBA = "kba"
    ROBS_INSURANCE = "robs_insurance"
    ATRONACH = "atronach"


class SettlementType(str, enum.Enum):
    SERVICE_FEE = "service_fee"
    COMMISSION = "commission"


class SettlementStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (
    SettlementStatus.COMPLETED,
    SettlementStatus.FAILED,
    SettlementStatus.CANCELLED,
)

OPEN_STATUSES = (
    SettlementStatus.PENDING,
    SettlementStatus.APPROVED,
    SettlementStatus.PROCESSING,
)


class PartnerSettlement(Base):
    __tablename__ = "partner_settlements"
    __table_args__ = (
        CheckConstraint("total_amount > 0", name="ck_settlement_positive_amount"),
        Index("ix_settlement_partner_status", "partner_type", "status"),
        Index("ix_settlement_period", "period_start", "period_end"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    settlement_number: Mapped[str] = mapped_column(
        String(30), unique=True, nullable=False
    )
    partner_type: Mapped[PartnerType] = mapped_column(
        Enum(PartnerType), nullable=False
    )
    settlement_type: Mapped[SettlementType] = mapped_column(
        Enum(SettlementType), nullable=False
    )
    status: Mapped[SettlementStatus] = mapped_column(
        Enum(SettlementStatus), default=SettlementStatus.PENDING, nullable=False
    )
    total_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)

    bank_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    confirmation_reference: Mapped[str | None] = mapped_column(
        String(100), nullable=True
    )
    status_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    approved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    settled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    accrual_entry_id: Mapped[int | None] = mapped_column(
        ForeignKey("gl_journal_entries.id"), nullable=True
    )
    payout_entry_id: Mapped[int | None] = mapped_column(
        ForeignKey("gl_journal_entries.id"), nullable=True
    )

    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    line_items = relationship(
        "SettlementLineItem",
        back_populates="settlement",
        cascade="all, delete-orphan",
        order_by="SettlementLineItem.line_date",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class SettlementLineItem(Base):
    """Per-day breakdown of a settlement amount."""

    __tablename__ = "settlement_line_items"
    __table_args__ = (
        Index("ix_settlement_line_settlement", "settlement_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    settlement_id: Mapped[int] = mapped_column(
        ForeignKey("partner_settlements.id", ondelete="CASCADE"), nullable=False
    )
    line_date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    transaction_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    settlement = relationship("PartnerSettlement", back_populates="line_items")
