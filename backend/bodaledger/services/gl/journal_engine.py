"""Core double-entry journal engine.

All monetary amounts flow through this engine.  The fundamental invariant is:
**total debits == total credits** for every journal entry, enforced at two
layers:

1. Application-level validation before anything is written
2. Database CHECK constraints on line amounts

Journal entries are immutable once posted.  Corrections are made exclusively
via reversing entries.  Posting an entry applies every line to the stored
account balances inside the caller's transaction, so the entry, its lines
and the balance updates commit or roll back together.
"""

import logging
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import select, func as sa_func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from bodaledger.models.gl import (
    AccountStatus,
    GLAccount,
    JournalEntry,
    JournalEntryLine,
    JournalEntryStatus,
    JournalEntryType,
)
from bodaledger.money import ensure_cents
from bodaledger.services.gl import coa_service
from bodaledger.services.gl.errors import (
    InvalidStateTransitionError,
    NotFoundError,
    UnbalancedEntryError,
    ValidationFailure,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Entry-number generation
# ---------------------------------------------------------------------------

async def _next_entry_number(db: AsyncSession, entry_date: date) -> str:
    """Generate the next sequential entry number: JE-YYYYMMDD-NNNNN."""
    prefix = f"JE-{entry_date:%Y%m%d}-"

    result = await db.execute(
        select(sa_func.max(JournalEntry.entry_number))
        .where(JournalEntry.entry_number.like(f"{prefix}%"))
    )
    last = result.scalar_one_or_none()

    if last:
        seq = int(last.replace(prefix, "")) + 1
    else:
        seq = 1

    return f"{prefix}{seq:05d}"


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------

def _validate_lines(lines: list[dict]) -> None:
    """Amounts must be non-negative integer cents with at most one side set."""
    for idx, ln in enumerate(lines, start=1):
        try:
            dr = ensure_cents(ln.get("debit_amount", 0), "debit_amount")
            cr = ensure_cents(ln.get("credit_amount", 0), "credit_amount")
        except TypeError as exc:
            raise ValidationFailure(f"Line {idx}: {exc}") from exc
        if dr < 0 or cr < 0:
            raise ValidationFailure(f"Line {idx}: amounts cannot be negative")
        if dr and cr:
            raise ValidationFailure(
                f"Line {idx}: a line carries either a debit or a credit, not both"
            )
        if not ln.get("account_code"):
            raise ValidationFailure(f"Line {idx}: account_code is required")


def _validate_balance(lines: list[dict]) -> tuple[int, int]:
    """Ensure total debits == total credits.  Returns (total_dr, total_cr)."""
    total_dr = sum(ln.get("debit_amount", 0) for ln in lines)
    total_cr = sum(ln.get("credit_amount", 0) for ln in lines)
    if total_dr != total_cr:
        raise UnbalancedEntryError(
            f"Entry is not balanced: debits={total_dr}, credits={total_cr}"
        )
    if total_dr == 0:
        raise UnbalancedEntryError("Entry has zero total: at least one non-zero line required")
    return total_dr, total_cr


def _check_active(accounts: dict[str, GLAccount]) -> None:
    for acct in accounts.values():
        if acct.status != AccountStatus.ACTIVE:
            raise ValidationFailure(
                f"GL account {acct.account_code} ({acct.name}) is {acct.status.value}"
            )


async def _apply_balances(db: AsyncSession, entry: JournalEntry) -> None:
    """Update stored balances once per line, locking accounts in id order."""
    for line in sorted(entry.lines, key=lambda ln: (ln.gl_account_id, ln.line_number)):
        await coa_service.update_balance(
            db, line.gl_account_id, line.debit_amount, line.credit_amount
        )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def create_journal_entry(
    db: AsyncSession,
    *,
    entry_type: JournalEntryType,
    lines: list[dict[str, Any]],
    description: str,
    source_transaction_id: str | None = None,
    entry_date: date | None = None,
    rider_id: str | None = None,
    external_reference: str | None = None,
    created_by: str | None = None,
    metadata: dict | None = None,
    auto_post: bool = False,
) -> JournalEntry:
    """Create a journal entry in DRAFT status, or POSTED with ``auto_post``.

    Parameters
    ----------
    lines : list of dicts
        Each dict must have ``account_code`` and integer ``debit_amount`` /
        ``credit_amount`` in cents, and optionally ``description``.
    auto_post : bool
        Post immediately and apply every line to the account balances.  Used
        for system-generated entries.
    """
    if not lines or len(lines) < 2:
        raise ValidationFailure("A journal entry requires at least two lines")

    # 1. Line and balance validation (nothing written yet)
    _validate_lines(lines)
    _validate_balance(lines)

    # 2. Account resolution
    accounts = await coa_service.get_accounts_by_codes(
        db, [ln["account_code"] for ln in lines]
    )
    _check_active(accounts)

    # 3. Entry number
    eff_date = entry_date or date.today()
    entry_number = await _next_entry_number(db, eff_date)

    # 4. Build entry and lines
    now = datetime.now(timezone.utc)
    entry = JournalEntry(
        entry_number=entry_number,
        entry_type=entry_type,
        entry_date=eff_date,
        status=JournalEntryStatus.POSTED if auto_post else JournalEntryStatus.DRAFT,
        source_transaction_id=source_transaction_id,
        rider_id=rider_id,
        external_reference=external_reference,
        description=description,
        created_by=created_by,
        posted_at=now if auto_post else None,
        metadata_=metadata,
    )
    for idx, ln in enumerate(lines, start=1):
        entry.lines.append(JournalEntryLine(
            line_number=idx,
            gl_account_id=accounts[ln["account_code"]].id,
            debit_amount=ln.get("debit_amount", 0),
            credit_amount=ln.get("credit_amount", 0),
            description=ln.get("description"),
        ))
    db.add(entry)
    await db.flush()

    # 5. Balances
    if auto_post:
        await _apply_balances(db, entry)

    logger.info(
        "Created journal entry %s (%s, status=%s, source=%s)",
        entry.entry_number, entry_type.value, entry.status.value, source_transaction_id,
    )
    return entry


async def get_journal_entry(
    db: AsyncSession, entry_id: int
) -> JournalEntry | None:
    """Load a journal entry with its lines."""
    result = await db.execute(
        select(JournalEntry)
        .where(JournalEntry.id == entry_id)
        .options(selectinload(JournalEntry.lines))
    )
    return result.scalar_one_or_none()


async def get_by_source_transaction_id(
    db: AsyncSession, source_transaction_id: str
) -> JournalEntry | None:
    result = await db.execute(
        select(JournalEntry)
        .where(JournalEntry.source_transaction_id == source_transaction_id)
        .options(selectinload(JournalEntry.lines))
    )
    return result.scalar_one_or_none()


async def get_by_date_range(
    db: AsyncSession,
    start: date,
    end: date,
    *,
    entry_type: JournalEntryType | None = None,
    status: JournalEntryStatus | None = None,
) -> list[JournalEntry]:
    q = (
        select(JournalEntry)
        .where(JournalEntry.entry_date >= start, JournalEntry.entry_date <= end)
        .options(selectinload(JournalEntry.lines))
        .order_by(JournalEntry.entry_date, JournalEntry.entry_number)
    )
    if entry_type:
        q = q.where(JournalEntry.entry_type == entry_type)
    if status:
        q = q.where(JournalEntry.status == status)
    result = await db.execute(q)
    return list(result.scalars().all())


async def post_entry(db: AsyncSession, entry_id: int) -> JournalEntry:
    """Transition DRAFT → POSTED and apply the lines to account balances."""
    entry = await get_journal_entry(db, entry_id)
    if entry is None:
        raise NotFoundError(f"Journal entry {entry_id} not found")
    if entry.status != JournalEntryStatus.DRAFT:
        raise InvalidStateTransitionError(
            f"Cannot post: entry is {entry.status.value}, expected DRAFT"
        )
    if not entry.is_balanced:
        raise UnbalancedEntryError(f"Entry {entry.entry_number} is not balanced")

    entry.status = JournalEntryStatus.POSTED
    entry.posted_at = datetime.now(timezone.utc)
    await db.flush()
    await _apply_balances(db, entry)
    logger.info("Posted %s", entry.entry_number)
    return entry


async def reverse_entry(
    db: AsyncSession,
    entry_id: int,
    *,
    reason: str,
    reversed_by: str | None = None,
    entry_date: date | None = None,
) -> JournalEntry:
    """Reverse a posted entry by creating a new mirror entry.

    The original entry status is changed to REVERSED, and the reversal
    entry is immediately posted.
    """
    original = await get_journal_entry(db, entry_id)
    if original is None:
        raise NotFoundError(f"Journal entry {entry_id} not found")
    if original.status != JournalEntryStatus.POSTED:
        raise InvalidStateTransitionError(
            f"Cannot reverse: entry is {original.status.value}, expected POSTED"
        )

    codes = await db.execute(
        select(GLAccount.id, GLAccount.account_code)
        .where(GLAccount.id.in_({ln.gl_account_id for ln in original.lines}))
    )
    code_by_id = dict(codes.all())

    # Flip debits ↔ credits
    reversal_lines = [
        {
            "account_code": code_by_id[ln.gl_account_id],
            "debit_amount": ln.credit_amount,
            "credit_amount": ln.debit_amount,
            "description": f"Reversal: {ln.description or ''}".strip(),
        }
        for ln in original.lines
    ]

    reversal = await create_journal_entry(
        db,
        entry_type=JournalEntryType.REVERSAL,
        lines=reversal_lines,
        description=f"Reversal of {original.entry_number}: {reason}",
        source_transaction_id=f"reversal:{original.id}",
        entry_date=entry_date,
        rider_id=original.rider_id,
        created_by=reversed_by,
        metadata={"reversed_entry_id": original.id, "reason": reason},
        auto_post=True,
    )

    reversal.reversal_of_id = original.id
    original.reversed_by_id = reversal.id
    original.status = JournalEntryStatus.REVERSED
    await db.flush()

    logger.info("Reversed %s → %s", original.entry_number, reversal.entry_number)
    return reversal
