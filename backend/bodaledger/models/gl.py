"""General Ledger models.

Double-entry bookkeeping for premium collection:
- Flat chart of accounts with an optional display hierarchy
- Stored running balances in integer cents
- Immutable journal entries, idempotent per source transaction
"""

import enum
from datetime import date, datetime

from sqlalchemy import (
    String,
    Integer,
    BigInteger,
    Boolean,
    Enum,
    DateTime,
    Date,
    ForeignKey,
    Text,
    JSON,
    Index,
    CheckConstraint,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bodaledger.database import Base


# ===================================================================
# Enumerations
# ===================================================================


class AccountType(str, enum.Enum):
    ASSET = "asset"
    LIABILITY = "liability"
    EQUITY = "equity"
    INCOME = "income"
    EXPENSE = "expense"


class NormalBalance(str, enum.Enum):
    DEBIT = "debit"
    CREDIT = "credit"


class AccountStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class JournalEntryStatus(str, enum.Enum):
    DRAFT = "draft"
    POSTED = "posted"
    REVERSED = "reversed"


class JournalEntryType(str, enum.Enum):
    PAYMENT_RECEIPT_DAY1 = "payment_receipt_day1"
    PAYMENT_RECEIPT_DAILY = "payment_receipt_daily"
    PREMIUM_REMITTANCE_DAY1 = "premium_remittance_day1"
    PREMIUM_REMITTANCE_BULK = "premium_remittance_bulk"
    SERVICE_FEE_DISTRIBUTION = "service_fee_distribution"
    REFUND_INITIATION = "refund_initiation"
    REFUND_EXECUTION = "refund_execution"
    COMMISSION_ACCRUAL = "commission_accrual"
    COMMISSION_DISTRIBUTION = "commission_distribution"
    REVERSAL = "reversal"
    MANUAL_ADJUSTMENT = "manual_adjustment"


PAYMENT_RECEIPT_TYPES = (
    JournalEntryType.PAYMENT_RECEIPT_DAY1,
    JournalEntryType.PAYMENT_RECEIPT_DAILY,
)

# Entries whose lines count towards balances.  A reversed entry keeps its
# effect; the reversing entry offsets it.
LEDGER_STATUSES = (JournalEntryStatus.POSTED, JournalEntryStatus.REVERSED)

DEBIT_NORMAL_TYPES = (AccountType.ASSET, AccountType.EXPENSE)


def normal_balance_for(account_type: AccountType) -> NormalBalance:
    if account_type in DEBIT_NORMAL_TYPES:
        return NormalBalance.DEBIT
    return NormalBalance.CREDIT


# ===================================================================
# Chart of Accounts
# ===================================================================


class GLAccount(Base):
    """Chart of Accounts entry with its running balance in cents."""

    __tablename__ = "gl_accounts"
    __table_args__ = (
        Index("ix_gl_accounts_type", "account_type"),
        Index("ix_gl_accounts_parent", "parent_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    account_code: Mapped[str] = mapped_column(
        String(20), unique=True, nullable=False
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    account_type: Mapped[AccountType] = mapped_column(
        Enum(AccountType), nullable=False
    )
    normal_balance: Mapped[NormalBalance] = mapped_column(
        Enum(NormalBalance), nullable=False
    )
    balance: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    parent_id: Mapped[int | None] = mapped_column(
        ForeignKey("gl_accounts.id"), nullable=True
    )
    is_system_account: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[AccountStatus] = mapped_column(
        Enum(AccountStatus), default=AccountStatus.ACTIVE, nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    parent = relationship("GLAccount", remote_side="GLAccount.id")
    journal_lines = relationship("JournalEntryLine", back_populates="gl_account")

    @property
    def is_debit_normal(self) -> bool:
        return self.normal_balance == NormalBalance.DEBIT


# ===================================================================
# Journal Entries
# ===================================================================


class JournalEntry(Base):
    """Immutable double-entry journal entry header.

    Once posted, entries cannot be modified: corrections are made via
    reversing entries only.  ``source_transaction_id`` is the idempotency
    key of the business event that produced the entry.
    """

    __tablename__ = "gl_journal_entries"
    __table_args__ = (
        UniqueConstraint("source_transaction_id", name="uq_gl_je_source_transaction"),
        Index("ix_gl_je_entry_date", "entry_date"),
        Index("ix_gl_je_type_date", "entry_type", "entry_date"),
        Index("ix_gl_je_rider", "rider_id"),
        Index("ix_gl_je_status", "status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    entry_number: Mapped[str] = mapped_column(
        String(24), unique=True, nullable=False
    )
    entry_type: Mapped[JournalEntryType] = mapped_column(
        Enum(JournalEntryType), nullable=False
    )
    entry_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[JournalEntryStatus] = mapped_column(
        Enum(JournalEntryStatus), default=JournalEntryStatus.DRAFT, nullable=False
    )

    source_transaction_id: Mapped[str | None] = mapped_column(
        String(100), nullable=True
    )
    rider_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    external_reference: Mapped[str | None] = mapped_column(
        String(100), nullable=True
    )
    description: Mapped[str] = mapped_column(Text, nullable=False)

    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    posted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Reversal linkage
    reversal_of_id: Mapped[int | None] = mapped_column(
        ForeignKey("gl_journal_entries.id"), nullable=True
    )
    reversed_by_id: Mapped[int | None] = mapped_column(
        ForeignKey("gl_journal_entries.id"), nullable=True
    )

    metadata_: Mapped[dict | None] = mapped_column(
        "metadata", JSON, nullable=True
    )

    lines = relationship(
        "JournalEntryLine",
        back_populates="journal_entry",
        cascade="all, delete-orphan",
        order_by="JournalEntryLine.line_number",
    )

    @property
    def total_debits(self) -> int:
        return sum(ln.debit_amount for ln in self.lines)

    @property
    def total_credits(self) -> int:
        return sum(ln.credit_amount for ln in self.lines)

    @property
    def is_balanced(self) -> bool:
        return self.total_debits == self.total_credits


class JournalEntryLine(Base):
    """Single debit or credit line within a journal entry."""

    __tablename__ = "gl_journal_entry_lines"
    __table_args__ = (
        CheckConstraint(
            "debit_amount >= 0 AND credit_amount >= 0",
            name="ck_gl_jel_non_negative",
        ),
        CheckConstraint(
            "NOT (debit_amount > 0 AND credit_amount > 0)",
            name="ck_gl_jel_one_sided",
        ),
        Index("ix_gl_jel_entry", "journal_entry_id"),
        Index("ix_gl_jel_account", "gl_account_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    journal_entry_id: Mapped[int] = mapped_column(
        ForeignKey("gl_journal_entries.id", ondelete="CASCADE"), nullable=False
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    gl_account_id: Mapped[int] = mapped_column(
        ForeignKey("gl_accounts.id"), nullable=False
    )
    debit_amount: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    credit_amount: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    journal_entry = relationship("JournalEntry", back_populates="lines")
    gl_account = relationship("GLAccount", back_populates="journal_lines")
