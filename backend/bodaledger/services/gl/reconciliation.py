"""Statement reconciliation engine.

Matches an external statement (mobile-money settlement report, bank
statement) against the ledger's payment receipts for the same day:

- Tiered auto-matching with confidence scores
- Manual matching of leftovers by an operator
- Resolution (write-off / explanation) of items that will never match
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from difflib import SequenceMatcher

from sqlalchemy import select, update, func as sa_func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from bodaledger.config import settings
from bodaledger.models.gl import (
    GLAccount,
    JournalEntry,
    JournalEntryStatus,
    PAYMENT_RECEIPT_TYPES,
)
from bodaledger.models.reconciliation import (
    MatchType,
    ReconciliationItem,
    ReconciliationItemStatus,
    ReconciliationRecord,
    ReconciliationStatus,
    ReconciliationType,
)
from bodaledger.money import to_major
from bodaledger.schemas import ReconciliationResult, StatementItem
from bodaledger.services.gl import journal_engine
from bodaledger.services.gl.errors import (
    InvalidStateTransitionError,
    NotFoundError,
    ValidationFailure,
)
from bodaledger.services.gl.posting_rules import AccountCode

logger = logging.getLogger(__name__)

CONFIDENCE = {
    MatchType.EXACT: 100,
    MatchType.AMOUNT_ONLY: 80,
    MatchType.REFERENCE_ONLY: 70,
    MatchType.FUZZY: 60,
    MatchType.MANUAL: 100,
    MatchType.NONE: 0,
}


@dataclass
class LedgerTransaction:
    """A ledger-side candidate: one payment receipt entry."""
    transaction_id: str
    reference: str
    amount: int
    transaction_date: date


@dataclass
class MatchOutcome:
    match_type: MatchType
    transaction: LedgerTransaction | None = None

    @property
    def confidence(self) -> int:
        return CONFIDENCE[self.match_type]

    @property
    def matched(self) -> bool:
        return self.transaction is not None


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------

def _contains_either(a: str, b: str) -> bool:
    if not a or not b:
        return False
    return a == b or a in b or b in a


def _references_overlap(a: str, b: str, min_overlap: int) -> bool:
    """True when the references share a common run of *min_overlap* characters."""
    a, b = a.strip().upper(), b.strip().upper()
    if not a or not b:
        return False
    match = SequenceMatcher(None, a, b, autojunk=False).find_longest_match(0, len(a), 0, len(b))
    return match.size >= min_overlap


def match_statement_item(
    reference: str,
    amount: int,
    pool: list[LedgerTransaction],
    *,
    tolerance: int,
    min_overlap: int,
) -> MatchOutcome:
    """Find the best candidate for one statement line.

    Tiers are tried in order and the first candidate satisfying a tier wins;
    a lower tier is only consulted when no candidate satisfies a higher one.
    """
    tiers = (
        (MatchType.EXACT,
         lambda t: t.reference == reference and t.amount == amount),
        (MatchType.AMOUNT_ONLY,
         lambda t: t.amount == amount),
        (MatchType.REFERENCE_ONLY,
         lambda t: _contains_either(t.reference, reference)),
        (MatchType.FUZZY,
         lambda t: abs(t.amount - amount) <= tolerance
         and _references_overlap(t.reference, reference, min_overlap)),
    )
    for match_type, accepts in tiers:
        for candidate in pool:
            if accepts(candidate):
                return MatchOutcome(match_type, candidate)
    return MatchOutcome(MatchType.NONE)


def record_status(matched_count: int, unmatched_count: int) -> ReconciliationStatus:
    if unmatched_count == 0:
        return ReconciliationStatus.MATCHED
    if matched_count > 0:
        return ReconciliationStatus.PARTIALLY_MATCHED
    return ReconciliationStatus.UNMATCHED


# ---------------------------------------------------------------------------
# Ledger side
# ---------------------------------------------------------------------------

def _as_transaction(entry: JournalEntry, escrow_account_id: int | None) -> LedgerTransaction:
    if escrow_account_id is not None:
        amount = sum(
            ln.debit_amount for ln in entry.lines if ln.gl_account_id == escrow_account_id
        )
    else:
        amount = entry.total_debits
    return LedgerTransaction(
        transaction_id=entry.source_transaction_id or entry.entry_number,
        reference=entry.external_reference or "",
        amount=amount,
        transaction_date=entry.entry_date,
    )


async def _escrow_account_id(db: AsyncSession) -> int | None:
    result = await db.execute(
        select(GLAccount.id).where(GLAccount.account_code == AccountCode.CASH_UBA_ESCROW)
    )
    return result.scalar_one_or_none()


async def load_ledger_transactions(db: AsyncSession, day: date) -> list[LedgerTransaction]:
    """Payment receipts recorded on *day*, as reconciliation candidates.

    Reversed receipts are no longer collections and are left out.
    """
    result = await db.execute(
        select(JournalEntry)
        .where(
            JournalEntry.entry_type.in_(PAYMENT_RECEIPT_TYPES),
            JournalEntry.status == JournalEntryStatus.POSTED,
            JournalEntry.entry_date == day,
        )
        .options(selectinload(JournalEntry.lines))
        .order_by(JournalEntry.entry_number)
    )
    escrow_id = await _escrow_account_id(db)
    return [_as_transaction(e, escrow_id) for e in result.scalars().all()]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def create_reconciliation(
    db: AsyncSession,
    reconciliation_date: date,
    statement_items: list[StatementItem],
    *,
    actor_id: str | None = None,
    reconciliation_type: ReconciliationType = ReconciliationType.DAILY_MOBILE_MONEY,
    source_name: str | None = None,
    tolerance: int | None = None,
    min_overlap: int | None = None,
) -> ReconciliationResult:
    """Auto-match a statement against the day's ledger and persist the record."""
    if not statement_items:
        logger.info("No statement items for %s: reconciliation skipped", reconciliation_date)
        return ReconciliationResult(skipped=True, message="No statement items")

    tolerance = settings.reconciliation_fuzzy_tolerance_cents if tolerance is None else tolerance
    min_overlap = min_overlap or settings.reconciliation_fuzzy_min_overlap

    pool = await load_ledger_transactions(db, reconciliation_date)

    record = ReconciliationRecord(
        reconciliation_type=reconciliation_type,
        reconciliation_date=reconciliation_date,
        source_name=source_name or settings.reconciliation_source_name,
        status=ReconciliationStatus.UNMATCHED,
        created_by=actor_id,
    )

    matched = unmatched = 0
    source_balance = ledger_balance = 0
    for position, item in enumerate(statement_items, start=1):
        outcome = match_statement_item(
            item.reference, item.amount, pool,
            tolerance=tolerance, min_overlap=min_overlap,
        )
        source_balance += item.amount
        if outcome.matched:
            pool.remove(outcome.transaction)
            ledger_balance += outcome.transaction.amount
            matched += 1
        else:
            unmatched += 1

        record.items.append(ReconciliationItem(
            position=position,
            source_reference=item.reference,
            source_amount=item.amount,
            source_date=item.date,
            source_description=item.description,
            matched_transaction_id=outcome.transaction.transaction_id if outcome.matched else None,
            ledger_amount=outcome.transaction.amount if outcome.matched else None,
            match_type=outcome.match_type,
            match_confidence=outcome.confidence,
            status=(
                ReconciliationItemStatus.MATCHED if outcome.matched
                else ReconciliationItemStatus.UNMATCHED
            ),
        ))

    record.total_items = len(statement_items)
    record.matched_count = matched
    record.unmatched_count = unmatched
    record.manual_matched_count = 0
    record.source_balance = source_balance
    record.ledger_balance = ledger_balance
    record.variance = source_balance - ledger_balance
    record.status = record_status(matched, unmatched)

    db.add(record)
    await db.flush()

    logger.info(
        "Reconciliation %d for %s: %d/%d matched, variance %s",
        record.id, reconciliation_date, matched, len(statement_items), to_major(record.variance),
    )
    return ReconciliationResult(
        reconciliation_id=record.id,
        status=record.status.value,
        total_items=record.total_items,
        matched_count=matched,
        unmatched_count=unmatched,
        source_balance=source_balance,
        ledger_balance=ledger_balance,
        variance=record.variance,
    )


async def _lock_item(db: AsyncSession, item_id: int) -> ReconciliationItem:
    result = await db.execute(
        select(ReconciliationItem).where(ReconciliationItem.id == item_id).with_for_update()
    )
    item = result.scalar_one_or_none()
    if item is None:
        raise NotFoundError(f"Reconciliation item {item_id} not found")
    if item.status != ReconciliationItemStatus.UNMATCHED:
        raise InvalidStateTransitionError(
            f"Reconciliation item {item_id} is {item.status.value}, expected unmatched"
        )
    return item


async def manual_match(
    db: AsyncSession,
    item_id: int,
    transaction_id: str,
    actor_id: str,
    note: str | None = None,
) -> ReconciliationItem:
    """Link an unmatched item to a ledger transaction chosen by an operator."""
    item = await _lock_item(db, item_id)
    entry = await journal_engine.get_by_source_transaction_id(db, transaction_id)
    if entry is None:
        raise NotFoundError(f"Ledger transaction {transaction_id} not found")
    if entry.entry_type not in PAYMENT_RECEIPT_TYPES or entry.status != JournalEntryStatus.POSTED:
        raise ValidationFailure(
            f"Ledger transaction {transaction_id} is not a posted payment receipt"
        )

    already = await db.execute(
        select(ReconciliationItem.id).where(
            ReconciliationItem.reconciliation_id == item.reconciliation_id,
            ReconciliationItem.matched_transaction_id == transaction_id,
            ReconciliationItem.status == ReconciliationItemStatus.MATCHED,
        )
    )
    if already.first() is not None:
        raise InvalidStateTransitionError(
            f"Ledger transaction {transaction_id} is already matched in this reconciliation"
        )

    ledger_amount = _as_transaction(entry, await _escrow_account_id(db)).amount
    item.matched_transaction_id = transaction_id
    item.ledger_amount = ledger_amount
    item.match_type = MatchType.MANUAL
    item.match_confidence = CONFIDENCE[MatchType.MANUAL]
    item.status = ReconciliationItemStatus.MATCHED
    item.resolved_by = actor_id
    item.resolution_notes = note
    item.resolved_at = datetime.now(timezone.utc)

    # Counters are incremented in-row so concurrent matches on the same record
    # never lose an update.
    await db.execute(
        update(ReconciliationRecord)
        .where(ReconciliationRecord.id == item.reconciliation_id)
        .values(
            matched_count=ReconciliationRecord.matched_count + 1,
            unmatched_count=ReconciliationRecord.unmatched_count - 1,
            manual_matched_count=ReconciliationRecord.manual_matched_count + 1,
            ledger_balance=ReconciliationRecord.ledger_balance + ledger_amount,
            variance=ReconciliationRecord.variance - ledger_amount,
        )
        .execution_options(synchronize_session=False)
    )
    record = await db.get(ReconciliationRecord, item.reconciliation_id, populate_existing=True)
    record.status = record_status(record.matched_count, record.unmatched_count)
    await db.flush()

    logger.info(
        "Item %d manually matched to %s by %s", item.id, transaction_id, actor_id
    )
    return item


async def resolve_item(
    db: AsyncSession, item_id: int, actor_id: str, notes: str
) -> ReconciliationItem:
    """Mark an unmatched item as explained / written off.  Counts are unchanged."""
    item = await _lock_item(db, item_id)
    item.status = ReconciliationItemStatus.RESOLVED
    item.resolved_by = actor_id
    item.resolution_notes = notes
    item.resolved_at = datetime.now(timezone.utc)
    await db.flush()
    logger.info("Item %d resolved by %s", item.id, actor_id)
    return item


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def get_reconciliation(db: AsyncSession, reconciliation_id: int) -> ReconciliationRecord | None:
    result = await db.execute(
        select(ReconciliationRecord)
        .where(ReconciliationRecord.id == reconciliation_id)
        .options(selectinload(ReconciliationRecord.items))
    )
    return result.scalar_one_or_none()


async def get_reconciliations_by_date_range(
    db: AsyncSession,
    start: date,
    end: date,
    *,
    reconciliation_type: ReconciliationType | None = None,
) -> list[ReconciliationRecord]:
    q = (
        select(ReconciliationRecord)
        .where(
            ReconciliationRecord.reconciliation_date >= start,
            ReconciliationRecord.reconciliation_date <= end,
        )
        .order_by(ReconciliationRecord.reconciliation_date.desc(), ReconciliationRecord.id.desc())
    )
    if reconciliation_type:
        q = q.where(ReconciliationRecord.reconciliation_type == reconciliation_type)
    result = await db.execute(q)
    return list(result.scalars().all())


async def get_unmatched_items(
    db: AsyncSession, reconciliation_id: int | None = None
) -> list[ReconciliationItem]:
    q = (
        select(ReconciliationItem)
        .where(ReconciliationItem.status == ReconciliationItemStatus.UNMATCHED)
        .order_by(ReconciliationItem.source_date, ReconciliationItem.id)
    )
    if reconciliation_id is not None:
        q = q.where(ReconciliationItem.reconciliation_id == reconciliation_id)
    result = await db.execute(q)
    return list(result.scalars().all())


async def get_summary_stats(db: AsyncSession, start: date, end: date) -> dict:
    """Counts and totals across reconciliations in a date range."""
    result = await db.execute(
        select(
            ReconciliationRecord.status,
            sa_func.count(ReconciliationRecord.id),
            sa_func.coalesce(sa_func.sum(ReconciliationRecord.variance), 0),
            sa_func.coalesce(sa_func.sum(ReconciliationRecord.total_items), 0),
            sa_func.coalesce(sa_func.sum(ReconciliationRecord.matched_count), 0),
        )
        .where(
            ReconciliationRecord.reconciliation_date >= start,
            ReconciliationRecord.reconciliation_date <= end,
        )
        .group_by(ReconciliationRecord.status)
    )
    by_status = {s.value: 0 for s in ReconciliationStatus}
    total_variance = total_items = matched_items = 0
    for status, count, variance, items, matched in result.all():
        by_status[status.value] = count
        total_variance += int(variance)
        total_items += int(items)
        matched_items += int(matched)

    return {
        "total_reconciliations": sum(by_status.values()),
        "by_status": by_status,
        "total_items": total_items,
        "matched_items": matched_items,
        "match_rate": round(matched_items / total_items * 100, 1) if total_items else 0.0,
        "total_variance_cents": total_variance,
        "total_variance": to_major(total_variance),
    }
