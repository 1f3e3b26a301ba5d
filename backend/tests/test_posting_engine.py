"""Tests for the posting engine.

Tests cover:
- Each business event produces one balanced, posted entry
- Idempotency per source transaction id
- Stored balances change exactly once per line
- Rejected events return a failure result and write nothing
- The trial balance stays in balance after any mix of events
"""

from datetime import date
from unittest.mock import patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bodaledger.models.gl import JournalEntryStatus, JournalEntryType
from bodaledger.models.settlement import PartnerType
from bodaledger.schemas import (
    PartnerPosting,
    PaymentReceipt,
    RefundPayout,
    RefundRequest,
    Remittance,
)
from bodaledger.database import unit_of_work
from bodaledger.services.gl import coa_service, journal_engine, posting_rules
from bodaledger.services.gl.posting_engine import PostingEngine
from bodaledger.services.gl.posting_rules import AccountCode as C

DAY = date(2025, 1, 15)


async def _entry(session_factory, source_id):
    async with session_factory() as db:
        return await journal_engine.get_by_source_transaction_id(db, source_id)


def _assert_double_entry(balances: dict[str, int]):
    debit_normal = sum(v for k, v in balances.items() if k[0] in "15")
    credit_normal = sum(v for k, v in balances.items() if k[0] in "234")
    assert debit_normal == credit_normal


# ===================================================================
# Payment receipts
# ===================================================================


class TestPaymentReceipts:

    @pytest.mark.asyncio
    async def test_day1_payment_posts_and_updates_balances(self, pay, session_factory, balances):
        result = await pay("tx-day1", day1=True, receipt="MP0001")
        assert result.already_posted is False
        assert result.entry_number == "JE-20250115-00001"

        entry = await _entry(session_factory, "tx-day1")
        assert entry.status == JournalEntryStatus.POSTED
        assert entry.entry_type == JournalEntryType.PAYMENT_RECEIPT_DAY1
        assert entry.external_reference == "MP0001"
        assert entry.rider_id == "rider-1"
        assert entry.is_balanced
        assert entry.total_debits == 104_800

        b = await balances()
        assert b[C.CASH_UBA_ESCROW] == 104_800
        assert b[C.PREMIUM_PAYABLE_DEFINITE] == 104_500
        assert b[C.SERVICE_FEE_PAYABLE_KBA] == 100
        assert b[C.SERVICE_FEE_PAYABLE_ROBS] == 100
        assert b[C.PLATFORM_SERVICE_FEE_INCOME] == 100
        _assert_double_entry(b)

    @pytest.mark.asyncio
    async def test_multi_day_payment_is_single_entry(self, pay, session_factory, balances):
        await pay("tx-3days", days=3)

        entry = await _entry(session_factory, "tx-3days")
        assert entry.entry_type == JournalEntryType.PAYMENT_RECEIPT_DAILY
        assert entry.metadata_["days_count"] == 3
        assert (await balances())[C.PREMIUM_PAYABLE_DEFINITE] == 25_200

    @pytest.mark.asyncio
    async def test_entry_numbers_are_sequential_per_day(self, pay):
        first = await pay("tx-a")
        second = await pay("tx-b")
        other_day = await pay("tx-c", on=date(2025, 1, 16))
        assert first.entry_number == "JE-20250115-00001"
        assert second.entry_number == "JE-20250115-00002"
        assert other_day.entry_number == "JE-20250116-00001"


# ===================================================================
# Idempotency
# ===================================================================


class TestIdempotency:

    @pytest.mark.asyncio
    async def test_duplicate_event_is_a_no_op(self, pay, balances):
        first = await pay("tx-dup", days=2)
        before = await balances()

        second = await pay("tx-dup", days=2)

        assert second.success is True
        assert second.already_posted is True
        assert second.journal_entry_id == first.journal_entry_id
        assert second.entry_number == first.entry_number
        assert await balances() == before

    @pytest.mark.asyncio
    async def test_duplicate_with_different_payload_still_returns_original(
        self, pay, posting_engine, balances
    ):
        first = await pay("tx-same-id", days=1)
        before = await balances()

        result = await posting_engine.post_payment_receipt(PaymentReceipt(
            transaction_id="tx-same-id", payment_type="daily", amount=17_400, days_count=2,
        ))
        assert result.already_posted is True
        assert result.journal_entry_id == first.journal_entry_id
        assert await balances() == before

    @pytest.mark.asyncio
    async def test_concurrent_delivery_inserts_once(self, session_factory, balances):
        event = PaymentReceipt(
            transaction_id="tx-race", rider_id="rider-1", payment_type="daily",
            amount=8_700, days_count=1, payment_date=DAY,
        )
        first = PostingEngine(session_factory)
        second = PostingEngine(session_factory)
        lookup = journal_engine.get_by_source_transaction_id
        calls = []
        first_results = []

        async def lookup_while_other_delivery_commits(db, source_transaction_id):
            calls.append(source_transaction_id)
            if len(calls) == 1:
                # The other delivery commits between this lookup and the insert.
                first_results.append(await first.post_payment_receipt(event))
                return None
            return await lookup(db, source_transaction_id)

        with patch.object(
            journal_engine, "get_by_source_transaction_id",
            new=lookup_while_other_delivery_commits,
        ):
            result = await second.post_payment_receipt(event)

        winner = first_results[0]
        assert winner.success is True
        assert winner.already_posted is False
        assert result.success is True
        assert result.already_posted is True
        assert result.journal_entry_id == winner.journal_entry_id
        assert len(calls) == 3

        async with session_factory() as db:
            entries = await journal_engine.get_by_date_range(db, DAY, DAY)
        assert [e.source_transaction_id for e in entries] == ["tx-race"]

        after = await balances()
        assert after[C.CASH_UBA_ESCROW] == 8_700
        assert after[C.PREMIUM_PAYABLE_DEFINITE] == 8_400


# ===================================================================
# Rejections
# ===================================================================


class TestRejections:

    @pytest.mark.asyncio
    async def test_wrong_day1_amount_returns_failure(self, posting_engine, session_factory, balances):
        result = await posting_engine.post_payment_receipt(PaymentReceipt(
            transaction_id="tx-bad", payment_type="day1", amount=100_000, payment_date=DAY,
        ))
        assert result.success is False
        assert result.error_kind == "validation_failure"
        assert result.journal_entry_id is None
        assert await _entry(session_factory, "tx-bad") is None
        assert all(v == 0 for v in (await balances()).values())

    @pytest.mark.asyncio
    async def test_inactive_account_rolls_back_everything(self, posting_engine, session_factory, pay):
        async with unit_of_work(session_factory) as db:
            acct = await coa_service.get_account_by_code(db, C.PLATFORM_REVERSAL_FEE_INCOME)
            await coa_service.deactivate_account(db, acct.id)

        await pay("tx-paid", days=1)
        result = await posting_engine.post_refund(RefundRequest(
            refund_id="refund-1", amount=8_700, days_count=1, refund_date=DAY,
        ))
        assert result.success is False
        assert result.error_kind == "validation_failure"
        assert await _entry(session_factory, "refund-1") is None

    @pytest.mark.asyncio
    async def test_missing_chart_reports_not_found(self, db_engine):
        empty = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
        result = await PostingEngine(empty).post_remittance(Remittance(
            remittance_id="rem-1", remittance_type="bulk", amount=5_000, remittance_date=DAY,
        ))
        assert result.success is False
        assert result.error_kind == "not_found"

    @pytest.mark.asyncio
    async def test_partner_without_payable_account(self, posting_engine):
        result = await posting_engine.post_service_fee_distribution(PartnerPosting(
            source_transaction_id="sf-def", partner_type=PartnerType.DEFINITE_ASSURANCE,
            amount=100,
        ))
        assert result.success is False
        assert result.error_kind == "validation_failure"

    @pytest.mark.asyncio
    async def test_unexpected_storage_error_is_returned(self, posting_engine, session_factory):
        with patch.object(
            journal_engine, "create_journal_entry",
            side_effect=OSError("connection reset by peer"),
        ):
            result = await posting_engine.post_payment_receipt(PaymentReceipt(
                transaction_id="tx-os", payment_type="daily", amount=8_700, payment_date=DAY,
            ))
        assert result.success is False
        assert "connection reset by peer" in result.message
        assert await _entry(session_factory, "tx-os") is None

    @pytest.mark.asyncio
    async def test_unexpected_builder_error_is_returned(self, posting_engine):
        with patch.object(posting_rules, "daily_payment_lines", side_effect=KeyError("2001")):
            result = await posting_engine.post_payment_receipt(PaymentReceipt(
                transaction_id="tx-key", payment_type="daily", amount=8_700, payment_date=DAY,
            ))
        assert result.success is False
        assert result.journal_entry_id is None


# ===================================================================
# Refunds, remittances and partner postings
# ===================================================================


class TestOtherEvents:

    @pytest.mark.asyncio
    async def test_refund_then_payout(self, pay, posting_engine, session_factory, balances):
        await pay("tx-1", days=1)
        refund = await posting_engine.post_refund(RefundRequest(
            refund_id="refund-1", rider_id="rider-1", amount=8_700, days_count=1,
            refund_date=DAY,
        ))
        assert refund.success, refund.message

        b = await balances()
        assert b[C.PREMIUM_PAYABLE_DEFINITE] == 0
        assert b[C.PLATFORM_SERVICE_FEE_INCOME] == 0
        assert b[C.REFUND_PAYABLE_RIDERS] == 7_830
        assert b[C.PLATFORM_REVERSAL_FEE_INCOME] == 609
        assert b[C.SERVICE_FEE_PAYABLE_KBA] == 130
        assert b[C.SERVICE_FEE_PAYABLE_ROBS] == 131
        assert b[C.CASH_UBA_ESCROW] == 8_700

        entry = await _entry(session_factory, "refund-1")
        assert entry.entry_type == JournalEntryType.REFUND_INITIATION
        assert entry.metadata_["rider_refund"] == 7_830

        payout = await posting_engine.post_refund_payout(RefundPayout(
            payout_id="payout-1", refund_id="refund-1", amount=7_830, payout_date=DAY,
        ))
        assert payout.success

        b = await balances()
        assert b[C.REFUND_PAYABLE_RIDERS] == 0
        assert b[C.CASH_PLATFORM_OPERATING] == -7_830
        _assert_double_entry(b)

    @pytest.mark.asyncio
    async def test_day1_remittance(self, pay, posting_engine, session_factory, balances):
        await pay("tx-1", day1=True)
        result = await posting_engine.post_remittance(Remittance(
            remittance_id="rem-day1", remittance_type="day1", amount=104_500,
            rider_id="rider-1", bank_reference="UBA-778", remittance_date=DAY,
        ))
        assert result.success

        entry = await _entry(session_factory, "rem-day1")
        assert entry.entry_type == JournalEntryType.PREMIUM_REMITTANCE_DAY1
        b = await balances()
        assert b[C.PREMIUM_PAYABLE_DEFINITE] == 0
        assert b[C.CASH_UBA_ESCROW] == 300

    @pytest.mark.asyncio
    async def test_partner_postings(self, posting_engine, balances):
        accrual = await posting_engine.post_commission_accrual(PartnerPosting(
            source_transaction_id="acc-1", partner_type=PartnerType.KBA, amount=8_900,
        ))
        payout = await posting_engine.post_commission_distribution(PartnerPosting(
            source_transaction_id="dist-1", partner_type=PartnerType.KBA, amount=8_900,
        ))
        assert accrual.success and payout.success

        b = await balances()
        assert b[C.RECEIVABLE_DEFINITE_COMMISSION] == 8_900
        assert b[C.COMMISSION_PAYABLE_KBA] == 0
        assert b[C.CASH_PLATFORM_OPERATING] == -8_900


# ===================================================================
# Ledger-wide invariants
# ===================================================================


class TestLedgerInvariants:

    @pytest.mark.asyncio
    async def test_trial_balance_after_mixed_activity(self, pay, posting_engine, session_factory):
        await pay("tx-1", day1=True, rider_id="r1")
        await pay("tx-2", days=4, rider_id="r2")
        await pay("tx-3", days=2, rider_id="r3")
        await posting_engine.post_refund(RefundRequest(
            refund_id="refund-r3", rider_id="r3", amount=17_400, days_count=2, refund_date=DAY,
        ))
        await posting_engine.post_remittance(Remittance(
            remittance_id="rem-1", remittance_type="bulk", amount=33_600, remittance_date=DAY,
        ))
        await posting_engine.post_service_fee_distribution(PartnerPosting(
            source_transaction_id="sf-kba", partner_type=PartnerType.KBA, amount=500,
        ))

        async with session_factory() as db:
            report = await coa_service.get_trial_balance(db)

        assert report["is_balanced"] is True
        assert report["total_debits_cents"] == report["total_credits_cents"]
        assert report["total_debits_cents"] > 0

    @pytest.mark.asyncio
    async def test_stored_balances_match_line_sums(self, pay, session_factory, balances):
        for i in range(5):
            await pay(f"tx-{i}", days=i + 1)

        async with session_factory() as db:
            entries = await journal_engine.get_by_date_range(db, DAY, DAY)
            accounts = {a.id: a for a in await coa_service.list_accounts(db)}

        derived: dict[str, int] = {}
        for e in entries:
            for ln in e.lines:
                a = accounts[ln.gl_account_id]
                change = (
                    ln.debit_amount - ln.credit_amount if a.is_debit_normal
                    else ln.credit_amount - ln.debit_amount
                )
                derived[a.account_code] = derived.get(a.account_code, 0) + change

        stored = await balances()
        for code, amount in derived.items():
            assert stored[code] == amount
