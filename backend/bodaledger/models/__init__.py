"""SQLAlchemy models for the BodaLedger accounting core."""

from bodaledger.models.gl import (
    AccountType,
    NormalBalance,
    AccountStatus,
    JournalEntryStatus,
    JournalEntryType,
    GLAccount,
    JournalEntry,
    JournalEntryLine,
)
from bodaledger.models.reconciliation import (
    ReconciliationType,
    ReconciliationStatus,
    ReconciliationItemStatus,
    MatchType,
    ReconciliationRecord,
    ReconciliationItem,
)
from bodaledger.models.settlement import (
    PartnerType,
    SettlementType,
    SettlementStatus,
    PartnerSettlement,
    SettlementLineItem,
)
from bodaledger.models.escrow import (
    EscrowType,
    RemittanceStatus,
    RemittanceBatchType,
    RemittanceBatchStatus,
    EscrowRecord,
    RemittanceBatch,
)

__all__ = [
    # General Ledger
    "AccountType",
    "NormalBalance",
    "AccountStatus",
    "JournalEntryStatus",
    "JournalEntryType",
    "GLAccount",
    "JournalEntry",
    "JournalEntryLine",
    # Reconciliation
    "ReconciliationType",
    "ReconciliationStatus",
    "ReconciliationItemStatus",
    "MatchType",
    "ReconciliationRecord",
    "ReconciliationItem",
    # Settlements
    "PartnerType",
    "SettlementType",
    "SettlementStatus",
    "PartnerSettlement",
    "SettlementLineItem",
    # Escrow and remittance
    "EscrowType",
    "RemittanceStatus",
    "RemittanceBatchType",
    "RemittanceBatchStatus",
    "EscrowRecord",
    "RemittanceBatch",
]
