"""Tests for the money helpers and the posting rule builders.

Pure functions only, no DB.  Every builder must return balanced lines in
integer cents and reject amounts that do not match the fixed tariffs.
"""

from decimal import Decimal

import pytest

from bodaledger.models.settlement import PartnerType
from bodaledger.money import (
    ensure_cents,
    format_amount,
    from_major,
    percent_floor,
    round_div,
    split_two,
    to_major,
)
from bodaledger.services.gl.errors import ErrorKind, ValidationFailure
from bodaledger.services.gl.posting_rules import (
    AccountCode,
    commission_accrual_lines,
    commission_distribution_lines,
    daily_payment_lines,
    day1_payment_lines,
    refund_lines,
    refund_payout_lines,
    refund_split,
    remittance_lines,
    service_fee_distribution_lines,
)


def _totals(lines):
    return (
        sum(ln["debit_amount"] for ln in lines),
        sum(ln["credit_amount"] for ln in lines),
    )


def _by_code(lines, side):
    out = {}
    for ln in lines:
        if ln[side]:
            out[ln["account_code"]] = out.get(ln["account_code"], 0) + ln[side]
    return out


# ===================================================================
# Money helpers
# ===================================================================


class TestMoney:

    def test_to_major_two_places(self):
        assert to_major(104800) == Decimal("1048.00")
        assert to_major(-5) == Decimal("-0.05")

    def test_from_major_rounds_half_up(self):
        assert from_major("10.005") == 1001
        assert from_major(Decimal("87")) == 8700

    def test_round_div_half_up(self):
        assert round_div(5, 2) == 3
        assert round_div(4, 3) == 1
        assert round_div(-7, 2) == -3

    def test_round_div_rejects_non_positive_denominator(self):
        with pytest.raises(ValueError):
            round_div(1, 0)

    def test_split_two_keeps_total(self):
        assert split_two(10_001) == (5_001, 5_000)
        assert sum(split_two(7)) == 7

    def test_percent_floor(self):
        assert percent_floor(870, 15) == 130

    def test_format_amount(self):
        assert format_amount(8_900) == "KES 89.00"
        assert format_amount(123_456_78, "USD") == "USD 123,456.78"

    @pytest.mark.parametrize("bad", [1.5, Decimal("1"), True, "100"])
    def test_ensure_cents_rejects_non_integers(self, bad):
        with pytest.raises(TypeError):
            ensure_cents(bad)


# ===================================================================
# Payments
# ===================================================================


class TestPaymentLines:

    def test_day1_split(self):
        lines = day1_payment_lines(104_800)
        assert _totals(lines) == (104_800, 104_800)
        assert _by_code(lines, "debit_amount") == {AccountCode.CASH_UBA_ESCROW: 104_800}
        assert _by_code(lines, "credit_amount") == {
            AccountCode.PREMIUM_PAYABLE_DEFINITE: 104_500,
            AccountCode.SERVICE_FEE_PAYABLE_KBA: 100,
            AccountCode.SERVICE_FEE_PAYABLE_ROBS: 100,
            AccountCode.PLATFORM_SERVICE_FEE_INCOME: 100,
        }

    def test_day1_wrong_amount_rejected(self):
        with pytest.raises(ValidationFailure, match="104800") as exc:
            day1_payment_lines(104_700)
        assert exc.value.kind == ErrorKind.VALIDATION_FAILURE

    def test_daily_single_day(self):
        lines = daily_payment_lines(8_700)
        assert _totals(lines) == (8_700, 8_700)
        assert _by_code(lines, "credit_amount")[AccountCode.PREMIUM_PAYABLE_DEFINITE] == 8_400

    def test_daily_multiple_days_is_one_entry(self):
        lines = daily_payment_lines(26_100, days_count=3)
        assert len(lines) == 5
        assert _by_code(lines, "credit_amount") == {
            AccountCode.PREMIUM_PAYABLE_DEFINITE: 25_200,
            AccountCode.SERVICE_FEE_PAYABLE_KBA: 300,
            AccountCode.SERVICE_FEE_PAYABLE_ROBS: 300,
            AccountCode.PLATFORM_SERVICE_FEE_INCOME: 300,
        }

    def test_daily_amount_must_match_days(self):
        with pytest.raises(ValidationFailure):
            daily_payment_lines(8_700, days_count=2)

    def test_daily_zero_days_rejected(self):
        with pytest.raises(ValidationFailure, match="days_count"):
            daily_payment_lines(0, days_count=0)

    def test_float_amount_rejected(self):
        with pytest.raises(TypeError):
            daily_payment_lines(8700.0)


# ===================================================================
# Refunds
# ===================================================================


class TestRefunds:

    def test_split_single_day(self):
        assert refund_split(8_700) == {
            "rider_refund": 7_830,
            "reversal_fee": 870,
            "platform_fee": 609,
            "kba_fee": 130,
            "robs_fee": 131,
        }

    def test_split_shares_sum_to_amount(self):
        for amount in (8_700, 17_400, 26_100, 1, 99):
            s = refund_split(amount)
            assert s["rider_refund"] + s["reversal_fee"] == amount
            assert s["platform_fee"] + s["kba_fee"] + s["robs_fee"] == s["reversal_fee"]

    def test_refund_lines_balance(self):
        lines = refund_lines(8_700, 1)
        assert _totals(lines) == (8_700, 8_700)
        credits = _by_code(lines, "credit_amount")
        assert credits[AccountCode.REFUND_PAYABLE_RIDERS] == 7_830
        assert credits[AccountCode.PLATFORM_REVERSAL_FEE_INCOME] == 609
        assert credits[AccountCode.SERVICE_FEE_PAYABLE_KBA] == 130
        assert credits[AccountCode.SERVICE_FEE_PAYABLE_ROBS] == 131

    def test_refund_amount_must_match_days(self):
        with pytest.raises(ValidationFailure):
            refund_lines(8_000, 1)

    def test_refund_payout(self):
        lines = refund_payout_lines(7_830)
        assert _by_code(lines, "debit_amount") == {AccountCode.REFUND_PAYABLE_RIDERS: 7_830}
        assert _by_code(lines, "credit_amount") == {AccountCode.CASH_PLATFORM_OPERATING: 7_830}


# ===================================================================
# Remittances and partner postings
# ===================================================================


class TestPartnerLines:

    def test_remittance(self):
        lines = remittance_lines(104_500)
        assert _by_code(lines, "debit_amount") == {AccountCode.PREMIUM_PAYABLE_DEFINITE: 104_500}
        assert _by_code(lines, "credit_amount") == {AccountCode.CASH_UBA_ESCROW: 104_500}

    def test_remittance_must_be_positive(self):
        with pytest.raises(ValidationFailure, match="positive"):
            remittance_lines(0)

    def test_service_fee_distribution_uses_partner_account(self):
        lines = service_fee_distribution_lines(PartnerType.ROBS_INSURANCE, 500)
        assert _by_code(lines, "debit_amount") == {AccountCode.SERVICE_FEE_PAYABLE_ROBS: 500}
        assert _by_code(lines, "credit_amount") == {AccountCode.CASH_PLATFORM_OPERATING: 500}

    def test_commission_accrual_and_distribution(self):
        accrual = commission_accrual_lines(PartnerType.KBA, 8_900)
        assert _by_code(accrual, "debit_amount") == {
            AccountCode.RECEIVABLE_DEFINITE_COMMISSION: 8_900
        }
        assert _by_code(accrual, "credit_amount") == {AccountCode.COMMISSION_PAYABLE_KBA: 8_900}

        payout = commission_distribution_lines(PartnerType.KBA, 8_900)
        assert _by_code(payout, "debit_amount") == {AccountCode.COMMISSION_PAYABLE_KBA: 8_900}

    def test_partner_without_account_rejected(self):
        with pytest.raises(ValidationFailure):
            service_fee_distribution_lines(PartnerType.DEFINITE_ASSURANCE, 100)
        with pytest.raises(ValidationFailure):
            commission_accrual_lines(PartnerType.ATRONACH, 100)
