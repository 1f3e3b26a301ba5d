"""Escrow tracking and premium remittance batches.

Each paid day of a payment receipt gets an escrow record holding its
premium until it is remitted to Definite Assurance:

  PENDING → SCHEDULED (in a batch) → REMITTED
  PENDING / SCHEDULED → REFUNDED

Batches move PENDING → APPROVED → COMPLETED.  Processing a batch posts the
remittance entry (Dr 2001 / Cr 1001) in the same transaction as the status
changes.  A batch that cannot be posted is marked FAILED and its records go
back to PENDING for the next batch.
"""

import logging
from datetime import date, datetime, timezone

from sqlalchemy import select, func as sa_func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from bodaledger.models.escrow import (
    BATCH_ESCROW_TYPES,
    EscrowRecord,
    EscrowType,
    RemittanceBatch,
    RemittanceBatchStatus,
    RemittanceBatchType,
    RemittanceStatus,
)
from bodaledger.models.gl import JournalEntry
from bodaledger.schemas import BatchCreationResult, PaymentReceipt, Remittance
from bodaledger.services.gl.errors import (
    InvalidStateTransitionError,
    NotFoundError,
    ValidationFailure,
)
from bodaledger.services.gl.posting_engine import PostingEngine
from bodaledger.services.gl.posting_rules import (
    DAILY_PREMIUM,
    DAILY_TOTAL,
    DAY1_PREMIUM,
    DAY1_TOTAL,
)

logger = logging.getLogger(__name__)

BATCH_PREFIXES = {
    RemittanceBatchType.DAY_1_IMMEDIATE: "RBD",
    RemittanceBatchType.MONTHLY_BULK: "RBM",
}

UNREMITTED = (RemittanceStatus.PENDING, RemittanceStatus.SCHEDULED)


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Escrow records
# ---------------------------------------------------------------------------

async def record_payment(
    db: AsyncSession, event: PaymentReceipt, entry: JournalEntry
) -> list[EscrowRecord]:
    """Create one escrow record per paid day of a posted receipt.

    Idempotent on the transaction id: a receipt already tracked returns its
    existing records.
    """
    existing = await get_by_transaction(db, event.transaction_id)
    if existing:
        return existing

    if event.payment_type == "day1":
        escrow_type = EscrowType.DAY_1_IMMEDIATE
        premium, fee = DAY1_PREMIUM, DAY1_TOTAL - DAY1_PREMIUM
    else:
        escrow_type = EscrowType.DAYS_2_31_ACCUMULATED
        premium, fee = DAILY_PREMIUM, DAILY_TOTAL - DAILY_PREMIUM

    records = [
        EscrowRecord(
            rider_id=event.rider_id,
            transaction_id=event.transaction_id,
            receipt_entry_id=entry.id,
            payment_date=entry.entry_date,
            day_index=day,
            premium_amount=premium,
            service_fee_amount=fee,
            escrow_type=escrow_type,
            remittance_status=RemittanceStatus.PENDING,
        )
        for day in range(1, event.days_count + 1)
    ]
    db.add_all(records)
    await db.flush()
    return records


async def get_by_transaction(db: AsyncSession, transaction_id: str) -> list[EscrowRecord]:
    result = await db.execute(
        select(EscrowRecord)
        .where(EscrowRecord.transaction_id == transaction_id)
        .order_by(EscrowRecord.day_index)
    )
    return list(result.scalars().all())


async def get_by_rider(db: AsyncSession, rider_id: str) -> list[EscrowRecord]:
    result = await db.execute(
        select(EscrowRecord)
        .where(EscrowRecord.rider_id == rider_id)
        .order_by(EscrowRecord.payment_date.desc(), EscrowRecord.id.desc())
    )
    return list(result.scalars().all())


async def get_rider_summary(db: AsyncSession, rider_id: str) -> dict:
    """Premium per remittance status for one rider, plus the paid-day count."""
    result = await db.execute(
        select(
            EscrowRecord.remittance_status,
            sa_func.count(EscrowRecord.id),
            sa_func.coalesce(sa_func.sum(EscrowRecord.premium_amount), 0),
        )
        .where(EscrowRecord.rider_id == rider_id)
        .group_by(EscrowRecord.remittance_status)
    )
    summary = {status.value: 0 for status in RemittanceStatus}
    days = 0
    for status, count, premium in result.all():
        summary[status.value] = int(premium)
        if status != RemittanceStatus.REFUNDED:
            days += count
    summary["days_paid"] = days
    return summary


async def get_pending_records(
    db: AsyncSession,
    escrow_type: EscrowType,
    *,
    up_to: date | None = None,
) -> list[EscrowRecord]:
    q = (
        select(EscrowRecord)
        .where(
            EscrowRecord.escrow_type == escrow_type,
            EscrowRecord.remittance_status == RemittanceStatus.PENDING,
        )
        .order_by(EscrowRecord.payment_date, EscrowRecord.id)
    )
    if up_to:
        q = q.where(EscrowRecord.payment_date <= up_to)
    result = await db.execute(q)
    return list(result.scalars().all())


async def get_total_pending_premium(db: AsyncSession) -> dict[str, int]:
    """Premium not yet placed in a batch, split into Day 1 and accumulated."""
    result = await db.execute(
        select(
            EscrowRecord.escrow_type,
            sa_func.coalesce(sa_func.sum(EscrowRecord.premium_amount), 0),
        )
        .where(EscrowRecord.remittance_status == RemittanceStatus.PENDING)
        .group_by(EscrowRecord.escrow_type)
    )
    totals = {row[0]: int(row[1]) for row in result.all()}
    return {
        "day1": totals.get(EscrowType.DAY_1_IMMEDIATE, 0),
        "accumulated": totals.get(EscrowType.DAYS_2_31_ACCUMULATED, 0),
    }


async def mark_as_refunded(
    db: AsyncSession, rider_id: str, refund_transaction_id: str, days: int
) -> int:
    """Release the rider's most recent unremitted daily records for a refund.

    Scheduled records leave their batch and the batch totals shrink.
    Returns the number of records marked.
    """
    result = await db.execute(
        select(EscrowRecord)
        .where(
            EscrowRecord.rider_id == rider_id,
            EscrowRecord.escrow_type == EscrowType.DAYS_2_31_ACCUMULATED,
            EscrowRecord.remittance_status.in_(UNREMITTED),
        )
        .order_by(EscrowRecord.payment_date.desc(), EscrowRecord.id.desc())
        .limit(days)
        .with_for_update()
    )
    records = list(result.scalars().all())
    if not records:
        logger.warning("No refundable escrow records for rider %s", rider_id)
        return 0

    now = _now()
    for record in records:
        if record.remittance_batch_id is not None:
            batch = await _locked_batch(db, record.remittance_batch_id)
            if batch.status not in (RemittanceBatchStatus.PENDING, RemittanceBatchStatus.APPROVED):
                raise InvalidStateTransitionError(
                    f"Escrow record {record.id} belongs to {batch.status.value} "
                    f"batch {batch.batch_number}"
                )
            batch.total_records -= 1
            batch.total_premium_amount -= record.premium_amount
            record.remittance_batch_id = None
        record.remittance_status = RemittanceStatus.REFUNDED
        record.refund_transaction_id = refund_transaction_id
        record.refunded_at = now

    await db.flush()
    if len(records) < days:
        logger.warning(
            "Refund %s covers %d day(s) but only %d escrow record(s) were open for rider %s",
            refund_transaction_id, days, len(records), rider_id,
        )
    logger.info(
        "Marked %d escrow record(s) refunded for rider %s (%s)",
        len(records), rider_id, refund_transaction_id,
    )
    return len(records)


# ---------------------------------------------------------------------------
# Remittance batches
# ---------------------------------------------------------------------------

async def _next_batch_number(
    db: AsyncSession, batch_type: RemittanceBatchType, on: date
) -> str:
    """Generate the next number: RBD|RBM-YYYYMMDD-NNN."""
    prefix = f"{BATCH_PREFIXES[batch_type]}-{on:%Y%m%d}-"
    result = await db.execute(
        select(sa_func.max(RemittanceBatch.batch_number))
        .where(RemittanceBatch.batch_number.like(f"{prefix}%"))
    )
    last = result.scalar_one_or_none()
    seq = int(last.replace(prefix, "")) + 1 if last else 1
    return f"{prefix}{seq:03d}"


async def create_day1_remittance_batch(
    db: AsyncSession, batch_date: date | None = None
) -> BatchCreationResult:
    return await _create_batch(db, RemittanceBatchType.DAY_1_IMMEDIATE, batch_date)


async def create_monthly_bulk_batch(
    db: AsyncSession, batch_date: date | None = None
) -> BatchCreationResult:
    return await _create_batch(db, RemittanceBatchType.MONTHLY_BULK, batch_date)


async def _create_batch(
    db: AsyncSession, batch_type: RemittanceBatchType, batch_date: date | None
) -> BatchCreationResult:
    on = batch_date or date.today()
    records = await get_pending_records(db, BATCH_ESCROW_TYPES[batch_type], up_to=on)
    if not records:
        return BatchCreationResult(
            created=False,
            message=f"No pending {BATCH_ESCROW_TYPES[batch_type].value} records to remit",
        )

    batch = RemittanceBatch(
        batch_number=await _next_batch_number(db, batch_type, on),
        batch_type=batch_type,
        batch_date=on,
        total_premium_amount=sum(r.premium_amount for r in records),
        total_records=len(records),
        status=RemittanceBatchStatus.PENDING,
    )
    db.add(batch)
    await db.flush()

    for record in records:
        record.remittance_status = RemittanceStatus.SCHEDULED
        record.remittance_batch_id = batch.id
    await db.flush()

    logger.info(
        "Created remittance batch %s: %d record(s), %d cents",
        batch.batch_number, batch.total_records, batch.total_premium_amount,
    )
    return BatchCreationResult(
        created=True,
        batch_id=batch.id,
        batch_number=batch.batch_number,
        total_records=batch.total_records,
        total_amount=batch.total_premium_amount,
    )


async def get_batch(db: AsyncSession, batch_id: int) -> RemittanceBatch | None:
    result = await db.execute(
        select(RemittanceBatch)
        .where(RemittanceBatch.id == batch_id)
        .options(selectinload(RemittanceBatch.escrow_records))
    )
    return result.scalar_one_or_none()


async def get_batches_by_status(
    db: AsyncSession, status: RemittanceBatchStatus
) -> list[RemittanceBatch]:
    result = await db.execute(
        select(RemittanceBatch)
        .where(RemittanceBatch.status == status)
        .order_by(RemittanceBatch.batch_date, RemittanceBatch.id)
    )
    return list(result.scalars().all())


async def get_batches_by_date_range(
    db: AsyncSession, start: date, end: date
) -> list[RemittanceBatch]:
    result = await db.execute(
        select(RemittanceBatch)
        .where(RemittanceBatch.batch_date >= start, RemittanceBatch.batch_date <= end)
        .order_by(RemittanceBatch.batch_date.desc(), RemittanceBatch.id.desc())
    )
    return list(result.scalars().all())


async def _locked_batch(db: AsyncSession, batch_id: int) -> RemittanceBatch:
    result = await db.execute(
        select(RemittanceBatch).where(RemittanceBatch.id == batch_id).with_for_update()
    )
    batch = result.scalar_one_or_none()
    if batch is None:
        raise NotFoundError(f"Remittance batch {batch_id} not found")
    return batch


async def approve_batch(db: AsyncSession, batch_id: int, approver_id: str) -> RemittanceBatch:
    batch = await _locked_batch(db, batch_id)
    if not batch.can_be_approved:
        raise InvalidStateTransitionError(
            f"Batch {batch.batch_number} cannot be approved "
            f"(status {batch.status.value}, {batch.total_records} record(s))"
        )
    batch.status = RemittanceBatchStatus.APPROVED
    batch.approved_by = approver_id
    batch.approved_at = _now()
    await db.flush()
    logger.info("Approved remittance batch %s", batch.batch_number)
    return batch


async def process_batch(
    db: AsyncSession,
    batch_id: int,
    bank_reference: str,
    *,
    remittance_date: date | None = None,
    posting_engine: PostingEngine | None = None,
) -> RemittanceBatch:
    """Post the remittance for an approved batch after the bank transfer."""
    batch = await _locked_batch(db, batch_id)
    if not batch.can_be_processed:
        raise InvalidStateTransitionError(
            f"Batch {batch.batch_number} cannot be processed (status {batch.status.value})"
        )
    if batch.total_premium_amount <= 0:
        raise ValidationFailure(f"Batch {batch.batch_number} has nothing left to remit")

    engine = posting_engine or PostingEngine()
    entry, _ = await engine.record_in(db, PostingEngine.remittance_request(Remittance(
        remittance_id=f"remittance-batch:{batch.batch_number}",
        remittance_type="day1" if batch.is_day1_batch else "bulk",
        amount=batch.total_premium_amount,
        bank_reference=bank_reference,
        remittance_date=remittance_date,
    )))

    now = _now()
    batch.status = RemittanceBatchStatus.COMPLETED
    batch.bank_reference = bank_reference
    batch.processed_at = now
    batch.journal_entry_id = entry.id

    for record in await _scheduled_records(db, batch.id):
        record.remittance_status = RemittanceStatus.REMITTED
        record.remitted_at = now
        record.bank_reference = bank_reference
        record.remittance_entry_id = entry.id

    await db.flush()
    logger.info(
        "Processed remittance batch %s as %s (%d cents, bank ref %s)",
        batch.batch_number, entry.entry_number, batch.total_premium_amount, bank_reference,
    )
    return batch


async def fail_batch(db: AsyncSession, batch_id: int, reason: str) -> RemittanceBatch:
    """Mark an unprocessed batch FAILED and return its records to PENDING."""
    batch = await _locked_batch(db, batch_id)
    if batch.status not in (RemittanceBatchStatus.PENDING, RemittanceBatchStatus.APPROVED):
        raise InvalidStateTransitionError(
            f"Batch {batch.batch_number} cannot fail from {batch.status.value}"
        )
    for record in await _scheduled_records(db, batch.id):
        record.remittance_status = RemittanceStatus.PENDING
        record.remittance_batch_id = None
    batch.status = RemittanceBatchStatus.FAILED
    batch.status_reason = reason
    await db.flush()
    logger.warning("Remittance batch %s failed: %s", batch.batch_number, reason)
    return batch


async def _scheduled_records(db: AsyncSession, batch_id: int) -> list[EscrowRecord]:
    result = await db.execute(
        select(EscrowRecord).where(
            EscrowRecord.remittance_batch_id == batch_id,
            EscrowRecord.remittance_status == RemittanceStatus.SCHEDULED,
        )
    )
    return list(result.scalars().all())
