"""Pydantic schemas for business events and operation results."""

import datetime
from datetime import date
from typing import Any, Optional, Literal
from pydantic import BaseModel, Field, model_validator

from bodaledger.models.settlement import PartnerType


# ── Business events (posting engine input) ────────────

class PaymentReceipt(BaseModel):
    """A confirmed mobile-money payment."""
    transaction_id: str = Field(min_length=1, max_length=100)
    rider_id: Optional[str] = None
    payment_type: Literal["day1", "daily"]
    amount: int = Field(gt=0, description="Amount in cents")
    days_count: int = Field(default=1, ge=1)
    receipt_number: Optional[str] = Field(None, max_length=100)
    payment_date: Optional[date] = None

    @model_validator(mode="after")
    def _day1_is_single_day(self) -> "PaymentReceipt":
        if self.payment_type == "day1" and self.days_count != 1:
            raise ValueError("Day 1 payments cover exactly one day")
        return self


class RefundRequest(BaseModel):
    refund_id: str = Field(min_length=1, max_length=100)
    rider_id: Optional[str] = None
    amount: int = Field(gt=0, description="Amount being refunded in cents")
    days_count: int = Field(ge=1)
    refund_date: Optional[date] = None


class RefundPayout(BaseModel):
    payout_id: str = Field(min_length=1, max_length=100)
    refund_id: Optional[str] = None
    rider_id: Optional[str] = None
    amount: int = Field(gt=0)
    payout_date: Optional[date] = None


class Remittance(BaseModel):
    remittance_id: str = Field(min_length=1, max_length=100)
    remittance_type: Literal["day1", "bulk"]
    amount: int = Field(gt=0)
    rider_id: Optional[str] = None
    bank_reference: Optional[str] = None
    remittance_date: Optional[date] = None


class PartnerPosting(BaseModel):
    """A payout or accrual owed to a partner (settlement side effects)."""
    source_transaction_id: str = Field(min_length=1, max_length=100)
    partner_type: PartnerType
    amount: int = Field(gt=0)
    reference: Optional[str] = None
    posting_date: Optional[date] = None


class StatementItem(BaseModel):
    """One line of an external (mobile-money / bank) statement."""
    reference: str = Field(min_length=1, max_length=100)
    amount: int = Field(description="Amount in cents")
    date: datetime.date
    description: Optional[str] = None


# ── Results ───────────────────────────────────────────

class PostingResult(BaseModel):
    success: bool
    journal_entry_id: Optional[int] = None
    entry_number: Optional[str] = None
    already_posted: bool = False
    message: Optional[str] = None
    error_kind: Optional[str] = None


class ReconciliationResult(BaseModel):
    skipped: bool = False
    reconciliation_id: Optional[int] = None
    status: Optional[str] = None
    total_items: int = 0
    matched_count: int = 0
    unmatched_count: int = 0
    source_balance: int = 0
    ledger_balance: int = 0
    variance: int = 0
    message: Optional[str] = None


class SettlementCreationResult(BaseModel):
    created: bool
    settlement_id: Optional[int] = None
    settlement_number: Optional[str] = None
    total_amount: int = 0
    message: Optional[str] = None


class BatchCreationResult(BaseModel):
    created: bool
    batch_id: Optional[int] = None
    batch_number: Optional[str] = None
    total_records: int = 0
    total_amount: int = 0
    message: Optional[str] = None


class JobRunSummary(BaseModel):
    job: str
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    details: list[dict[str, Any]] = Field(default_factory=list)
