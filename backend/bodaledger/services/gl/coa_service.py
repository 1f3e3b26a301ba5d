"""Chart of Accounts service.

Handles the GL account registry:
- Lookup by id / code, duplicate-safe creation
- Balance updates under a per-account row lock
- Deactivation (never delete; only at a zero balance)
- Trial balance over stored balances
"""

import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from bodaledger.models.gl import (
    GLAccount,
    AccountType,
    AccountStatus,
    NormalBalance,
    normal_balance_for,
)
from bodaledger.money import ensure_cents, to_major
from bodaledger.services.gl.errors import (
    DuplicateAccountError,
    NotFoundError,
    ValidationFailure,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

async def list_accounts(
    db: AsyncSession,
    *,
    account_type: AccountType | None = None,
    status: AccountStatus | None = None,
) -> list[GLAccount]:
    """Return accounts ordered by code, optionally filtered."""
    q = select(GLAccount).order_by(GLAccount.account_code)
    if account_type:
        q = q.where(GLAccount.account_type == account_type)
    if status:
        q = q.where(GLAccount.status == status)
    result = await db.execute(q)
    return list(result.scalars().all())


async def get_account(db: AsyncSession, account_id: int) -> GLAccount | None:
    result = await db.execute(select(GLAccount).where(GLAccount.id == account_id))
    return result.scalar_one_or_none()


async def get_account_by_code(db: AsyncSession, code: str) -> GLAccount | None:
    result = await db.execute(select(GLAccount).where(GLAccount.account_code == code))
    return result.scalar_one_or_none()


async def get_accounts_by_codes(
    db: AsyncSession, codes: list[str]
) -> dict[str, GLAccount]:
    """Resolve several codes at once; raises NotFoundError for any missing code."""
    wanted = sorted(set(codes))
    result = await db.execute(
        select(GLAccount).where(GLAccount.account_code.in_(wanted))
    )
    accounts = {a.account_code: a for a in result.scalars().all()}
    missing = [c for c in wanted if c not in accounts]
    if missing:
        raise NotFoundError(f"GL account(s) not found: {', '.join(missing)}")
    return accounts


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------

async def create_account(
    db: AsyncSession,
    *,
    code: str,
    name: str,
    account_type: AccountType,
    parent_id: int | None = None,
    description: str | None = None,
    is_system_account: bool = False,
) -> GLAccount:
    """Create a GL account.  The normal balance is derived from the type."""
    if await get_account_by_code(db, code) is not None:
        raise DuplicateAccountError(f"Account code '{code}' already exists")

    if parent_id is not None and await get_account(db, parent_id) is None:
        raise NotFoundError(f"Parent account {parent_id} not found")

    account = GLAccount(
        account_code=code,
        name=name,
        description=description,
        account_type=account_type,
        normal_balance=normal_balance_for(account_type),
        balance=0,
        parent_id=parent_id,
        is_system_account=is_system_account,
        status=AccountStatus.ACTIVE,
    )
    db.add(account)
    try:
        await db.flush()
    except IntegrityError as exc:
        # Lost a race on the unique code; the caller's transaction is rolled back.
        raise DuplicateAccountError(f"Account code '{code}' already exists") from exc

    logger.info("Created GL account %s %s (%s)", code, name, account_type.value)
    return account


async def update_balance(
    db: AsyncSession, account_id: int, debit_amount: int, credit_amount: int
) -> int:
    """Apply one line's effect to the stored balance and return the new balance.

    The row is locked for the rest of the transaction and the change is
    written as ``balance = balance + change``, so two postings touching the
    same account serialize instead of overwriting each other.
    """
    ensure_cents(debit_amount, "debit_amount")
    ensure_cents(credit_amount, "credit_amount")

    result = await db.execute(
        select(GLAccount).where(GLAccount.id == account_id).with_for_update()
    )
    account = result.scalar_one_or_none()
    if account is None:
        raise NotFoundError(f"GL account {account_id} not found")

    if account.normal_balance == NormalBalance.DEBIT:
        change = debit_amount - credit_amount
    else:
        change = credit_amount - debit_amount

    await db.execute(
        update(GLAccount)
        .where(GLAccount.id == account_id)
        .values(balance=GLAccount.balance + change)
        .execution_options(synchronize_session=False)
    )
    await db.refresh(account, ["balance"])
    return account.balance


async def deactivate_account(db: AsyncSession, account_id: int) -> GLAccount:
    """Mark an account inactive.  Only allowed once its balance is zero."""
    account = await get_account(db, account_id)
    if account is None:
        raise NotFoundError(f"GL account {account_id} not found")
    if account.balance != 0:
        raise ValidationFailure(
            f"Cannot deactivate {account.account_code}: balance is {account.balance} cents"
        )
    account.status = AccountStatus.INACTIVE
    await db.flush()
    logger.info("Deactivated GL account %s", account.account_code)
    return account


# ---------------------------------------------------------------------------
# Trial balance
# ---------------------------------------------------------------------------

def trial_balance_columns(normal_balance: NormalBalance, balance: int) -> tuple[int, int]:
    """Place a balance in the (debit, credit) column; negatives flip sides."""
    if normal_balance == NormalBalance.DEBIT:
        return (balance, 0) if balance >= 0 else (0, -balance)
    return (0, balance) if balance >= 0 else (-balance, 0)


def build_trial_balance(rows: list[tuple[GLAccount, int]]) -> dict:
    """Shape ``(account, balance)`` pairs into the trial balance report."""
    accounts = []
    total_dr = 0
    total_cr = 0
    for account, balance in rows:
        dr, cr = trial_balance_columns(account.normal_balance, balance)
        total_dr += dr
        total_cr += cr
        accounts.append({
            "account_code": account.account_code,
            "account_name": account.name,
            "account_type": account.account_type.value,
            "normal_balance": account.normal_balance.value,
            "debit_cents": dr,
            "credit_cents": cr,
            "debit": to_major(dr),
            "credit": to_major(cr),
        })

    is_balanced = total_dr == total_cr
    if not is_balanced:
        logger.error(
            "Trial balance out of balance: debits=%d credits=%d (difference %d)",
            total_dr, total_cr, total_dr - total_cr,
        )
    return {
        "accounts": accounts,
        "total_debits_cents": total_dr,
        "total_credits_cents": total_cr,
        "total_debits": to_major(total_dr),
        "total_credits": to_major(total_cr),
        "is_balanced": is_balanced,
    }


async def get_trial_balance(db: AsyncSession) -> dict:
    """Trial balance over every active account's stored balance."""
    accounts = await list_accounts(db, status=AccountStatus.ACTIVE)
    return build_trial_balance([(a, a.balance) for a in accounts])


async def get_chart_of_accounts(db: AsyncSession) -> list[dict]:
    accounts = await list_accounts(db)
    codes_by_id = {a.id: a.account_code for a in accounts}
    return [
        {
            "id": a.id,
            "account_code": a.account_code,
            "name": a.name,
            "account_type": a.account_type.value,
            "normal_balance": a.normal_balance.value,
            "status": a.status.value,
            "parent_code": codes_by_id.get(a.parent_id),
            "balance_cents": a.balance,
            "balance": to_major(a.balance),
        }
        for a in accounts
    ]
