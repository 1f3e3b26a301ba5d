"""Fixed allocation table: business event → journal lines.

Pure functions, integer cents only.  Each builder returns a list of line
dicts (``account_code``, ``debit_amount``, ``credit_amount``,
``description``) that balance exactly; zero-amount lines are dropped.
"""

from bodaledger.models.settlement import PartnerType
from bodaledger.money import ensure_cents, percent_floor
from bodaledger.services.gl.errors import ValidationFailure


# ---------------------------------------------------------------------------
# Chart of accounts codes
# ---------------------------------------------------------------------------

class AccountCode:
    # Assets
    CASH_UBA_ESCROW = "1001"
    CASH_PLATFORM_OPERATING = "1002"
    RECEIVABLE_DEFINITE_COMMISSION = "1101"
    # Liabilities
    PREMIUM_PAYABLE_DEFINITE = "2001"
    SERVICE_FEE_PAYABLE_KBA = "2002"
    SERVICE_FEE_PAYABLE_ROBS = "2003"
    COMMISSION_PAYABLE_KBA = "2004"
    COMMISSION_PAYABLE_ROBS = "2005"
    REFUND_PAYABLE_RIDERS = "2101"
    # Income
    PLATFORM_SERVICE_FEE_INCOME = "4001"
    PLATFORM_COMMISSION_OM = "4002"
    PLATFORM_COMMISSION_PROFIT = "4003"
    PLATFORM_REVERSAL_FEE_INCOME = "4004"
    # Expenses
    PLATFORM_MAINTENANCE_COSTS = "5001"
    TRANSACTION_COSTS = "5002"


# ---------------------------------------------------------------------------
# Payment amounts (cents)
# ---------------------------------------------------------------------------

DAY1_TOTAL = 104_800
DAY1_PREMIUM = 104_500
DAILY_TOTAL = 8_700
DAILY_PREMIUM = 8_400
SERVICE_FEE_PER_PARTNER = 100  # platform, KBA and Robs each

RIDER_REFUND_PERCENT = 90
REVERSAL_FEE_PLATFORM_PERCENT = 70
REVERSAL_FEE_KBA_PERCENT = 15

SERVICE_FEE_ACCOUNTS = {
    PartnerType.KBA: AccountCode.SERVICE_FEE_PAYABLE_KBA,
    PartnerType.ROBS_INSURANCE: AccountCode.SERVICE_FEE_PAYABLE_ROBS,
}

COMMISSION_ACCOUNTS = {
    PartnerType.KBA: AccountCode.COMMISSION_PAYABLE_KBA,
    PartnerType.ROBS_INSURANCE: AccountCode.COMMISSION_PAYABLE_ROBS,
}


def _line(code: str, *, debit: int = 0, credit: int = 0, description: str) -> dict:
    return {
        "account_code": code,
        "debit_amount": debit,
        "credit_amount": credit,
        "description": description,
    }


def _non_zero(lines: list[dict]) -> list[dict]:
    return [ln for ln in lines if ln["debit_amount"] or ln["credit_amount"]]


def _require_days(days_count: int) -> int:
    ensure_cents(days_count, "days_count")
    if days_count < 1:
        raise ValidationFailure(f"days_count must be at least 1, got {days_count}")
    return days_count


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

def day1_payment_lines(amount: int) -> list[dict]:
    """Day 1 deposit: full premium plus three service fees."""
    ensure_cents(amount)
    if amount != DAY1_TOTAL:
        raise ValidationFailure(
            f"Day 1 payment must be {DAY1_TOTAL} cents, got {amount}"
        )
    return [
        _line(AccountCode.CASH_UBA_ESCROW, debit=amount,
              description="Day 1 payment received"),
        _line(AccountCode.PREMIUM_PAYABLE_DEFINITE, credit=DAY1_PREMIUM,
              description="Day 1 premium payable"),
        _line(AccountCode.SERVICE_FEE_PAYABLE_KBA, credit=SERVICE_FEE_PER_PARTNER,
              description="KBA service fee"),
        _line(AccountCode.SERVICE_FEE_PAYABLE_ROBS, credit=SERVICE_FEE_PER_PARTNER,
              description="Robs Insurance service fee"),
        _line(AccountCode.PLATFORM_SERVICE_FEE_INCOME, credit=SERVICE_FEE_PER_PARTNER,
              description="Platform service fee"),
    ]


def daily_payment_lines(amount: int, days_count: int = 1) -> list[dict]:
    """Daily payment covering ``days_count`` days, posted as one entry."""
    ensure_cents(amount)
    days = _require_days(days_count)
    expected = DAILY_TOTAL * days
    if amount != expected:
        raise ValidationFailure(
            f"Daily payment for {days} day(s) must be {expected} cents, got {amount}"
        )
    label = f"{days} day(s)"
    return [
        _line(AccountCode.CASH_UBA_ESCROW, debit=amount,
              description=f"Daily payment received ({label})"),
        _line(AccountCode.PREMIUM_PAYABLE_DEFINITE, credit=DAILY_PREMIUM * days,
              description=f"Daily premium payable ({label})"),
        _line(AccountCode.SERVICE_FEE_PAYABLE_KBA, credit=SERVICE_FEE_PER_PARTNER * days,
              description=f"KBA service fee ({label})"),
        _line(AccountCode.SERVICE_FEE_PAYABLE_ROBS, credit=SERVICE_FEE_PER_PARTNER * days,
              description=f"Robs Insurance service fee ({label})"),
        _line(AccountCode.PLATFORM_SERVICE_FEE_INCOME, credit=SERVICE_FEE_PER_PARTNER * days,
              description=f"Platform service fee ({label})"),
    ]


# ---------------------------------------------------------------------------
# Refunds
# ---------------------------------------------------------------------------

def refund_split(amount: int) -> dict[str, int]:
    """Split a refund into the rider's 90% and the reversal fee shares.

    The rider share is floored; the fee takes the remainder.  Within the fee,
    platform and KBA shares are floored and Robs takes what is left.
    """
    ensure_cents(amount)
    rider = percent_floor(amount, RIDER_REFUND_PERCENT)
    fee = amount - rider
    platform = percent_floor(fee, REVERSAL_FEE_PLATFORM_PERCENT)
    kba = percent_floor(fee, REVERSAL_FEE_KBA_PERCENT)
    robs = fee - platform - kba
    return {
        "rider_refund": rider,
        "reversal_fee": fee,
        "platform_fee": platform,
        "kba_fee": kba,
        "robs_fee": robs,
    }


def refund_lines(amount: int, days_count: int) -> list[dict]:
    """Unwind ``days_count`` daily payments into a rider refund plus reversal fee."""
    ensure_cents(amount)
    days = _require_days(days_count)
    expected = DAILY_TOTAL * days
    if amount != expected:
        raise ValidationFailure(
            f"Refund of {days} day(s) must be {expected} cents, got {amount}"
        )
    split = refund_split(amount)
    return _non_zero([
        _line(AccountCode.PREMIUM_PAYABLE_DEFINITE, debit=DAILY_PREMIUM * days,
              description="Premium reversed"),
        _line(AccountCode.SERVICE_FEE_PAYABLE_KBA, debit=SERVICE_FEE_PER_PARTNER * days,
              description="KBA service fee reversed"),
        _line(AccountCode.SERVICE_FEE_PAYABLE_ROBS, debit=SERVICE_FEE_PER_PARTNER * days,
              description="Robs Insurance service fee reversed"),
        _line(AccountCode.PLATFORM_SERVICE_FEE_INCOME, debit=SERVICE_FEE_PER_PARTNER * days,
              description="Platform service fee reversed"),
        _line(AccountCode.REFUND_PAYABLE_RIDERS, credit=split["rider_refund"],
              description="Refund payable to rider (90%)"),
        _line(AccountCode.PLATFORM_REVERSAL_FEE_INCOME, credit=split["platform_fee"],
              description="Reversal fee - platform share"),
        _line(AccountCode.SERVICE_FEE_PAYABLE_KBA, credit=split["kba_fee"],
              description="Reversal fee - KBA share"),
        _line(AccountCode.SERVICE_FEE_PAYABLE_ROBS, credit=split["robs_fee"],
              description="Reversal fee - Robs Insurance share"),
    ])


def refund_payout_lines(amount: int) -> list[dict]:
    ensure_cents(amount)
    _require_positive(amount, "Refund payout")
    return [
        _line(AccountCode.REFUND_PAYABLE_RIDERS, debit=amount,
              description="Refund paid to rider"),
        _line(AccountCode.CASH_PLATFORM_OPERATING, credit=amount,
              description="Refund payout from operating account"),
    ]


# ---------------------------------------------------------------------------
# Remittances and partner distributions
# ---------------------------------------------------------------------------

def remittance_lines(amount: int) -> list[dict]:
    """Premium remitted from escrow to the underwriter."""
    ensure_cents(amount)
    _require_positive(amount, "Remittance")
    return [
        _line(AccountCode.PREMIUM_PAYABLE_DEFINITE, debit=amount,
              description="Premium remitted to Definite Assurance"),
        _line(AccountCode.CASH_UBA_ESCROW, credit=amount,
              description="Escrow remittance"),
    ]


def service_fee_distribution_lines(partner: PartnerType, amount: int) -> list[dict]:
    ensure_cents(amount)
    _require_positive(amount, "Service fee distribution")
    code = _partner_account(SERVICE_FEE_ACCOUNTS, partner, "service fee")
    return [
        _line(code, debit=amount, description=f"Service fee paid to {partner.value}"),
        _line(AccountCode.CASH_PLATFORM_OPERATING, credit=amount,
              description="Service fee distribution"),
    ]


def commission_accrual_lines(partner: PartnerType, amount: int) -> list[dict]:
    ensure_cents(amount)
    _require_positive(amount, "Commission accrual")
    code = _partner_account(COMMISSION_ACCOUNTS, partner, "commission")
    return [
        _line(AccountCode.RECEIVABLE_DEFINITE_COMMISSION, debit=amount,
              description="Commission receivable from Definite Assurance"),
        _line(code, credit=amount, description=f"Commission payable to {partner.value}"),
    ]


def commission_distribution_lines(partner: PartnerType, amount: int) -> list[dict]:
    ensure_cents(amount)
    _require_positive(amount, "Commission distribution")
    code = _partner_account(COMMISSION_ACCOUNTS, partner, "commission")
    return [
        _line(code, debit=amount, description=f"Commission paid to {partner.value}"),
        _line(AccountCode.CASH_PLATFORM_OPERATING, credit=amount,
              description="Commission distribution"),
    ]


def _partner_account(table: dict, partner: PartnerType, what: str) -> str:
    code = table.get(partner)
    if code is None:
        raise ValidationFailure(f"No {what} payable account for partner {partner.value}")
    return code


def _require_positive(amount: int, what: str) -> None:
    if amount <= 0:
        raise ValidationFailure(f"{what} amount must be positive, got {amount}")
