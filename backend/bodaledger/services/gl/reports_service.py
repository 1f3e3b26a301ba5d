"""Financial statements.

Read-only aggregations over the chart of accounts and posted journal lines,
each returning structured dicts ready for the UI or the export rows.  Every
amount is given twice: ``*_cents`` (int) and the major-unit ``Decimal``.
Empty date ranges produce zero totals, never errors.
"""

import logging
from collections import defaultdict
from datetime import date, timedelta

from sqlalchemy import select, func as sa_func
from sqlalchemy.ext.asyncio import AsyncSession

from bodaledger.models.gl import (
    AccountType,
    GLAccount,
    JournalEntry,
    JournalEntryLine,
    LEDGER_STATUSES,
    NormalBalance,
)
from bodaledger.models.settlement import PartnerType
from bodaledger.money import to_major
from bodaledger.services.gl import coa_service, settlement_service
from bodaledger.services.gl.errors import NotFoundError
from bodaledger.services.gl.posting_rules import AccountCode

logger = logging.getLogger(__name__)

PARTNER_ACCOUNTS = {
    PartnerType.DEFINITE_ASSURANCE: [AccountCode.PREMIUM_PAYABLE_DEFINITE],
    PartnerType.KBA: [
        AccountCode.SERVICE_FEE_PAYABLE_KBA,
        AccountCode.COMMISSION_PAYABLE_KBA,
    ],
    PartnerType.ROBS_INSURANCE: [
        AccountCode.SERVICE_FEE_PAYABLE_ROBS,
        AccountCode.COMMISSION_PAYABLE_ROBS,
    ],
    PartnerType.ATRONACH: [
        AccountCode.PLATFORM_SERVICE_FEE_INCOME,
        AccountCode.PLATFORM_COMMISSION_OM,
        AccountCode.PLATFORM_COMMISSION_PROFIT,
        AccountCode.PLATFORM_REVERSAL_FEE_INCOME,
    ],
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _money(key: str, cents: int) -> dict:
    return {f"{key}_cents": cents, key: to_major(cents)}


def _signed(account: GLAccount, debit: int, credit: int) -> int:
    if account.normal_balance == NormalBalance.DEBIT:
        return debit - credit
    return credit - debit


async def _line_totals(
    db: AsyncSession,
    *,
    date_from: date | None = None,
    date_to: date | None = None,
) -> dict[int, tuple[int, int]]:
    """``{account_id: (debits, credits)}`` over ledger lines in the range."""
    q = (
        select(
            JournalEntryLine.gl_account_id,
            sa_func.coalesce(sa_func.sum(JournalEntryLine.debit_amount), 0),
            sa_func.coalesce(sa_func.sum(JournalEntryLine.credit_amount), 0),
        )
        .join(JournalEntry, JournalEntryLine.journal_entry_id == JournalEntry.id)
        .where(JournalEntry.status.in_(LEDGER_STATUSES))
        .group_by(JournalEntryLine.gl_account_id)
    )
    if date_from:
        q = q.where(JournalEntry.entry_date >= date_from)
    if date_to:
        q = q.where(JournalEntry.entry_date <= date_to)
    result = await db.execute(q)
    return {aid: (int(dr), int(cr)) for aid, dr, cr in result.all()}


async def _balances_as_of(db: AsyncSession, as_of: date) -> list[tuple[GLAccount, int]]:
    totals = await _line_totals(db, date_to=as_of)
    accounts = await coa_service.list_accounts(db)
    return [
        (a, _signed(a, *totals.get(a.id, (0, 0))))
        for a in accounts
    ]


def _section(rows: list[tuple[GLAccount, int]], account_type: AccountType) -> tuple[list[dict], int]:
    items = []
    total = 0
    for account, balance in rows:
        if account.account_type != account_type:
            continue
        if balance == 0:
            continue
        total += balance
        items.append({
            "account_code": account.account_code,
            "account_name": account.name,
            "account_type": account.account_type.value,
            **_money("amount", balance),
        })
    return items, total


# ---------------------------------------------------------------------------
# Balance Sheet
# ---------------------------------------------------------------------------

async def generate_balance_sheet(db: AsyncSession, as_of: date) -> dict:
    """Assets = Liabilities + Equity, with retained earnings computed."""
    rows = await _balances_as_of(db, as_of)

    assets, total_assets = _section(rows, AccountType.ASSET)
    liabilities, total_liabilities = _section(rows, AccountType.LIABILITY)
    equity, equity_accounts = _section(rows, AccountType.EQUITY)
    _, total_income = _section(rows, AccountType.INCOME)
    _, total_expenses = _section(rows, AccountType.EXPENSE)

    retained = total_income - total_expenses
    equity.append({
        "account_code": None,
        "account_name": "Retained Earnings (current)",
        "account_type": AccountType.EQUITY.value,
        **_money("amount", retained),
    })
    total_equity = equity_accounts + retained

    is_balanced = total_assets == total_liabilities + total_equity
    if not is_balanced:
        logger.error(
            "Balance sheet as of %s does not balance: assets=%d liabilities+equity=%d",
            as_of, total_assets, total_liabilities + total_equity,
        )

    return {
        "as_of_date": as_of.isoformat(),
        "assets": assets,
        "liabilities": liabilities,
        "equity": equity,
        **_money("total_assets", total_assets),
        **_money("total_liabilities", total_liabilities),
        **_money("retained_earnings", retained),
        **_money("total_equity", total_equity),
        **_money("total_liabilities_and_equity", total_liabilities + total_equity),
        "is_balanced": is_balanced,
    }


# ---------------------------------------------------------------------------
# Income Statement
# ---------------------------------------------------------------------------

async def generate_income_statement(db: AsyncSession, start: date, end: date) -> dict:
    """Income and expenses over [start, end]."""
    totals = await _line_totals(db, date_from=start, date_to=end)
    accounts = await coa_service.list_accounts(db)
    rows = [(a, _signed(a, *totals.get(a.id, (0, 0)))) for a in accounts]

    income, total_income = _section(rows, AccountType.INCOME)
    expenses, total_expenses = _section(rows, AccountType.EXPENSE)
    net = total_income - total_expenses

    return {
        "period_start": start.isoformat(),
        "period_end": end.isoformat(),
        "income": income,
        "expenses": expenses,
        **_money("total_income", total_income),
        **_money("total_expenses", total_expenses),
        **_money("net_income", net),
    }


# ---------------------------------------------------------------------------
# Trial Balance
# ---------------------------------------------------------------------------

async def generate_trial_balance(db: AsyncSession, as_of: date | None = None) -> dict:
    """Stored balances by default; derived from lines when *as_of* is given."""
    if as_of is None:
        report = await coa_service.get_trial_balance(db)
        report["as_of_date"] = None
        return report
    rows = [(a, bal) for a, bal in await _balances_as_of(db, as_of) if bal != 0]
    report = coa_service.build_trial_balance(rows)
    report["as_of_date"] = as_of.isoformat()
    return report


# ---------------------------------------------------------------------------
# Partner Statement
# ---------------------------------------------------------------------------

async def generate_partner_statement(
    db: AsyncSession, partner: PartnerType, start: date, end: date
) -> dict:
    """Chronological activity on a partner's accounts plus settlement summary.

    The running balance is credits minus debits: what the platform owes the
    partner (or, for the platform itself, what it has earned).
    """
    codes = PARTNER_ACCOUNTS[partner]
    result = await db.execute(select(GLAccount).where(GLAccount.account_code.in_(codes)))
    accounts = {a.id: a for a in result.scalars().all()}
    if not accounts:
        raise NotFoundError(f"No GL accounts configured for partner {partner.value}")

    opening_q = await db.execute(
        select(
            sa_func.coalesce(sa_func.sum(JournalEntryLine.credit_amount), 0),
            sa_func.coalesce(sa_func.sum(JournalEntryLine.debit_amount), 0),
        )
        .join(JournalEntry, JournalEntryLine.journal_entry_id == JournalEntry.id)
        .where(
            JournalEntryLine.gl_account_id.in_(accounts.keys()),
            JournalEntry.status.in_(LEDGER_STATUSES),
            JournalEntry.entry_date < start,
        )
    )
    opening_cr, opening_dr = opening_q.one()
    opening = int(opening_cr) - int(opening_dr)

    lines_q = await db.execute(
        select(JournalEntryLine, JournalEntry)
        .join(JournalEntry, JournalEntryLine.journal_entry_id == JournalEntry.id)
        .where(
            JournalEntryLine.gl_account_id.in_(accounts.keys()),
            JournalEntry.status.in_(LEDGER_STATUSES),
            JournalEntry.entry_date >= start,
            JournalEntry.entry_date <= end,
        )
        .order_by(JournalEntry.entry_date, JournalEntry.id, JournalEntryLine.line_number)
    )

    running = opening
    total_dr = total_cr = 0
    transactions = []
    for line, entry in lines_q.all():
        running += line.credit_amount - line.debit_amount
        total_dr += line.debit_amount
        total_cr += line.credit_amount
        account = accounts[line.gl_account_id]
        transactions.append({
            "date": entry.entry_date.isoformat(),
            "entry_number": entry.entry_number,
            "entry_type": entry.entry_type.value,
            "account_code": account.account_code,
            "account_name": account.name,
            "description": line.description or entry.description,
            **_money("debit", line.debit_amount),
            **_money("credit", line.credit_amount),
            **_money("running_balance", running),
        })

    return {
        "partner_type": partner.value,
        "period_start": start.isoformat(),
        "period_end": end.isoformat(),
        "accounts": sorted(a.account_code for a in accounts.values()),
        **_money("opening_balance", opening),
        "transactions": transactions,
        **_money("total_debits", total_dr),
        **_money("total_credits", total_cr),
        **_money("closing_balance", running),
        "settlements": await settlement_service.get_partner_summary(db, partner),
    }


# ---------------------------------------------------------------------------
# Account Activity
# ---------------------------------------------------------------------------

async def get_account_activity(
    db: AsyncSession, account_code: str, start: date, end: date
) -> dict:
    """Opening balance, lines and closing balance for one account."""
    account = await coa_service.get_account_by_code(db, account_code)
    if account is None:
        raise NotFoundError(f"GL account {account_code} not found")

    before = await _line_totals(db, date_to=start - timedelta(days=1))
    opening = _signed(account, *before.get(account.id, (0, 0)))

    result = await db.execute(
        select(JournalEntryLine, JournalEntry)
        .join(JournalEntry, JournalEntryLine.journal_entry_id == JournalEntry.id)
        .where(
            JournalEntryLine.gl_account_id == account.id,
            JournalEntry.status.in_(LEDGER_STATUSES),
            JournalEntry.entry_date >= start,
            JournalEntry.entry_date <= end,
        )
        .order_by(JournalEntry.entry_date, JournalEntry.id, JournalEntryLine.line_number)
    )

    running = opening
    by_type: dict[str, int] = defaultdict(int)
    lines = []
    for line, entry in result.all():
        change = _signed(account, line.debit_amount, line.credit_amount)
        running += change
        by_type[entry.entry_type.value] += change
        lines.append({
            "date": entry.entry_date.isoformat(),
            "entry_number": entry.entry_number,
            "entry_type": entry.entry_type.value,
            "description": line.description or entry.description,
            **_money("debit", line.debit_amount),
            **_money("credit", line.credit_amount),
            **_money("balance", running),
        })

    return {
        "account_code": account.account_code,
        "account_name": account.name,
        "normal_balance": account.normal_balance.value,
        **_money("opening_balance", opening),
        "lines": lines,
        "net_change_by_type": dict(by_type),
        **_money("closing_balance", running),
    }
