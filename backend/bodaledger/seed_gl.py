"""Seed data for the General Ledger.

Creates the standard chart of accounts (idempotent).  Existing accounts are
left untouched so balances are never reset.
"""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bodaledger.models.gl import (
    AccountStatus,
    AccountType,
    GLAccount,
    normal_balance_for,
)
from bodaledger.services.gl.posting_rules import AccountCode

logger = logging.getLogger(__name__)

A = AccountType.ASSET
L = AccountType.LIABILITY
I = AccountType.INCOME  # noqa: E741
X = AccountType.EXPENSE

STANDARD_ACCOUNTS: list[tuple[str, str, AccountType]] = [
    (AccountCode.CASH_UBA_ESCROW,                "Cash at Bank - UBA Escrow",                     A),
    (AccountCode.CASH_PLATFORM_OPERATING,        "Cash at Bank - Platform Operating",             A),
    (AccountCode.RECEIVABLE_DEFINITE_COMMISSION, "Accounts Receivable - Definite Commission",     A),
    (AccountCode.PREMIUM_PAYABLE_DEFINITE,       "Premium Payable to Definite Assurance",         L),
    (AccountCode.SERVICE_FEE_PAYABLE_KBA,        "Service Fee Payable to KBA",                    L),
    (AccountCode.SERVICE_FEE_PAYABLE_ROBS,       "Service Fee Payable to Robs Insurance",         L),
    (AccountCode.COMMISSION_PAYABLE_KBA,         "Commission Payable to KBA",                     L),
    (AccountCode.COMMISSION_PAYABLE_ROBS,        "Commission Payable to Robs Insurance",          L),
    (AccountCode.REFUND_PAYABLE_RIDERS,          "Refund Payable to Riders",                      L),
    (AccountCode.PLATFORM_SERVICE_FEE_INCOME,    "Platform Service Fee Income",                   I),
    (AccountCode.PLATFORM_COMMISSION_OM,         "Platform Commission Income - O&M",              I),
    (AccountCode.PLATFORM_COMMISSION_PROFIT,     "Platform Commission Income - Profit Share",     I),
    (AccountCode.PLATFORM_REVERSAL_FEE_INCOME,   "Platform Reversal Fee Income",                  I),
    (AccountCode.PLATFORM_MAINTENANCE_COSTS,     "Platform Maintenance Costs",                    X),
    (AccountCode.TRANSACTION_COSTS,              "Transaction Costs",                             X),
]


async def _get_or_create_account(
    db: AsyncSession, *, code: str, name: str, account_type: AccountType
) -> tuple[GLAccount, bool]:
    result = await db.execute(
        select(GLAccount).where(GLAccount.account_code == code)
    )
    acct = result.scalar_one_or_none()
    if acct:
        return acct, False
    acct = GLAccount(
        account_code=code,
        name=name,
        account_type=account_type,
        normal_balance=normal_balance_for(account_type),
        balance=0,
        is_system_account=True,
        status=AccountStatus.ACTIVE,
    )
    db.add(acct)
    await db.flush()
    return acct, True


async def seed_chart_of_accounts(db: AsyncSession) -> int:
    """Install any missing standard accounts; returns how many were created."""
    created = 0
    for code, name, account_type in STANDARD_ACCOUNTS:
        _, was_created = await _get_or_create_account(
            db, code=code, name=name, account_type=account_type
        )
        created += was_created
    if created:
        logger.info("Seeded %d GL accounts", created)
    return created
