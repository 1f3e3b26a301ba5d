"""Statement reconciliation models.

A record is created per reconciliation run and owns one item per statement
line.  Records are never deleted; items move from unmatched to matched
(manual match) or resolved (written off / explained).
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
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bodaledger.database import Base


class ReconciliationType(str, enum.Enum):
    DAILY_MOBILE_MONEY = "daily_mobile_money"
    MONTHLY_BANK = "monthly_bank"
    PARTNER_SETTLEMENT = "partner_settlement"


class ReconciliationStatus(str, enum.Enum):
    MATCHED = "matched"
    PARTIALLY_MATCHED = "partially_matched"
    UNMATCHED = "unmatched"


class ReconciliationItemStatus(str, enum.Enum):
    MATCHED = "matched"
    UNMATCHED = "unmatched"
    RESOLVED = "resolved"


class MatchType(str, enum.Enum):
    EXACT = "exact"
    AMOUNT_ONLY = "amount_only"
    REFERENCE_ONLY = "reference_only"
    FUZZY = "fuzzy"
    MANUAL = "manual"
    NONE = "none"


class ReconciliationRecord(Base):
    __tablename__ = "reconciliation_records"
    __table_args__ = (
        Index("ix_recon_type_date", "reconciliation_type", "reconciliation_date"),
        Index("ix_recon_status", "status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    reconciliation_type: Mapped[ReconciliationType] = mapped_column(
        Enum(ReconciliationType), nullable=False
    )
    reconciliation_date: Mapped[date] = mapped_column(Date, nullable=False)
    source_name: Mapped[str] = mapped_column(String(200), nullable=False)

    source_balance: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    ledger_balance: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    variance: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    status: Mapped[ReconciliationStatus] = mapped_column(
        Enum(ReconciliationStatus), nullable=False
    )
    total_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    matched_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    unmatched_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    manual_matched_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    items = relationship(
        "ReconciliationItem",
        back_populates="reconciliation",
        cascade="all, delete-orphan",
        order_by="ReconciliationItem.position",
    )


class ReconciliationItem(Base):
    __tablename__ = "reconciliation_items"
    __table_args__ = (
        Index("ix_recon_item_record", "reconciliation_id"),
        Index("ix_recon_item_status", "status"),
        Index("ix_recon_item_reference", "source_reference"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    reconciliation_id: Mapped[int] = mapped_column(
        ForeignKey("reconciliation_records.id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)

    source_reference: Mapped[str] = mapped_column(String(100), nullable=False)
    source_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    source_date: Mapped[date] = mapped_column(Date, nullable=False)
    source_description: Mapped[str | None] = mapped_column(Text, nullable=True)

    matched_transaction_id: Mapped[str | None] = mapped_column(
        String(100), nullable=True
    )
    ledger_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    match_type: Mapped[MatchType] = mapped_column(
        Enum(MatchType), default=MatchType.NONE, nullable=False
    )
    match_confidence: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[ReconciliationItemStatus] = mapped_column(
        Enum(ReconciliationItemStatus),
        default=ReconciliationItemStatus.UNMATCHED,
        nullable=False,
    )

    resolved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    reconciliation = relationship("ReconciliationRecord", back_populates="items")
