"""Partner settlement generation and workflow.

Settlements turn amounts owed to partners (service fees, commission) into
payable obligations and move them through::

    pending → approved → processing → completed
    pending → cancelled
    processing → failed

Each transition runs as one unit of work with the settlement row locked.
GL side effects (commission accrual on approval, payout on completion) are
posted inside the same transaction, idempotently per settlement.  Partner
notifications go out after commit and never affect the transition.
"""

import logging
from datetime import date, datetime, timezone

from sqlalchemy import select, func as sa_func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from bodaledger.database import async_session, unit_of_work
from bodaledger.models.gl import (
    GLAccount,
    JournalEntry,
    JournalEntryLine,
    JournalEntryType,
    LEDGER_STATUSES,
)
from bodaledger.models.settlement import (
    OPEN_STATUSES,
    PartnerSettlement,
    PartnerType,
    SettlementLineItem,
    SettlementStatus,
    SettlementType,
)
from bodaledger.money import to_major
from bodaledger.schemas import PartnerPosting, SettlementCreationResult
from bodaledger.services.gl.errors import (
    InvalidStateTransitionError,
    NotFoundError,
    ValidationFailure,
)
from bodaledger.services.gl.posting_engine import PostingEngine
from bodaledger.services.gl.posting_rules import SERVICE_FEE_ACCOUNTS
from bodaledger.services.whatsapp_notifier import WhatsAppSettlementNotifier

logger = logging.getLogger(__name__)

PARTNER_CODES = {
    PartnerType.DEFINITE_ASSURANCE: "DEF",
    PartnerType.KBA: "KBA",
    PartnerType.ROBS_INSURANCE: "ROB",
    PartnerType.ATRONACH: "ATR",
}

TYPE_CODES = {
    SettlementType.SERVICE_FEE: "SF",
    SettlementType.COMMISSION: "CM",
}

SETTLEABLE_PARTNERS = (PartnerType.KBA, PartnerType.ROBS_INSURANCE)

# action → (required current status, resulting status)
TRANSITIONS = {
    "approve": (SettlementStatus.PENDING, SettlementStatus.APPROVED),
    "process": (SettlementStatus.APPROVED, SettlementStatus.PROCESSING),
    "complete": (SettlementStatus.PROCESSING, SettlementStatus.COMPLETED),
    "fail": (SettlementStatus.PROCESSING, SettlementStatus.FAILED),
    "cancel": (SettlementStatus.PENDING, SettlementStatus.CANCELLED),
}


def check_transition(current: SettlementStatus, action: str) -> SettlementStatus:
    """Return the target status, or raise if *action* is illegal from *current*."""
    required, target = TRANSITIONS[action]
    if current != required:
        raise InvalidStateTransitionError(
            f"Cannot {action}: settlement is {current.value}, expected {required.value}"
        )
    return target


def _require(value: str | None, what: str) -> str:
    if not value or not value.strip():
        raise ValidationFailure(f"{what} is required")
    return value.strip()


# ---------------------------------------------------------------------------
# Numbering and lookups
# ---------------------------------------------------------------------------

async def _next_settlement_number(
    db: AsyncSession, partner: PartnerType, settlement_type: SettlementType, on: date
) -> str:
    """Generate the next number: {PARTNER}-{TYPE}-YYYYMMDD-NNN."""
    prefix = f"{PARTNER_CODES[partner]}-{TYPE_CODES[settlement_type]}-{on:%Y%m%d}-"
    result = await db.execute(
        select(sa_func.max(PartnerSettlement.settlement_number))
        .where(PartnerSettlement.settlement_number.like(f"{prefix}%"))
    )
    last = result.scalar_one_or_none()
    seq = int(last.replace(prefix, "")) + 1 if last else 1
    return f"{prefix}{seq:03d}"


async def get_settlement(db: AsyncSession, settlement_id: int) -> PartnerSettlement | None:
    result = await db.execute(
        select(PartnerSettlement)
        .where(PartnerSettlement.id == settlement_id)
        .options(selectinload(PartnerSettlement.line_items))
    )
    return result.scalar_one_or_none()


async def get_settlements(
    db: AsyncSession,
    *,
    partner_type: PartnerType | None = None,
    settlement_type: SettlementType | None = None,
    status: SettlementStatus | None = None,
    period_start: date | None = None,
    period_end: date | None = None,
) -> list[PartnerSettlement]:
    """Settlements matching every given filter, newest period first."""
    q = (
        select(PartnerSettlement)
        .options(selectinload(PartnerSettlement.line_items))
        .order_by(PartnerSettlement.period_end.desc(), PartnerSettlement.id.desc())
    )
    if partner_type:
        q = q.where(PartnerSettlement.partner_type == partner_type)
    if settlement_type:
        q = q.where(PartnerSettlement.settlement_type == settlement_type)
    if status:
        q = q.where(PartnerSettlement.status == status)
    if period_start:
        q = q.where(PartnerSettlement.period_end >= period_start)
    if period_end:
        q = q.where(PartnerSettlement.period_start <= period_end)
    result = await db.execute(q)
    return list(result.scalars().all())


async def get_partner_summary(db: AsyncSession, partner: PartnerType) -> dict:
    """Totals settled (completed) and pending (not yet terminal) for a partner."""
    result = await db.execute(
        select(
            PartnerSettlement.status,
            sa_func.count(PartnerSettlement.id),
            sa_func.coalesce(sa_func.sum(PartnerSettlement.total_amount), 0),
        )
        .where(PartnerSettlement.partner_type == partner)
        .group_by(PartnerSettlement.status)
    )
    settled = pending = settled_count = pending_count = 0
    for status, count, total in result.all():
        if status == SettlementStatus.COMPLETED:
            settled += int(total)
            settled_count += count
        elif status in OPEN_STATUSES:
            pending += int(total)
            pending_count += count
    return {
        "partner_type": partner.value,
        "total_settled_cents": settled,
        "total_pending_cents": pending,
        "total_settled": to_major(settled),
        "total_pending": to_major(pending),
        "settled_count": settled_count,
        "pending_count": pending_count,
    }


async def _find_open_settlement(
    db: AsyncSession,
    partner: PartnerType,
    settlement_type: SettlementType,
    period_start: date,
    period_end: date,
) -> PartnerSettlement | None:
    result = await db.execute(
        select(PartnerSettlement).where(
            PartnerSettlement.partner_type == partner,
            PartnerSettlement.settlement_type == settlement_type,
            PartnerSettlement.period_start == period_start,
            PartnerSettlement.period_end == period_end,
            PartnerSettlement.status.in_([*OPEN_STATUSES, SettlementStatus.COMPLETED]),
        )
    )
    return result.scalars().first()


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

async def service_fee_activity(
    db: AsyncSession, partner: PartnerType, period_start: date, period_end: date
) -> list[dict]:
    """Per-day net service fees accrued to *partner*, excluding payouts."""
    code = SERVICE_FEE_ACCOUNTS.get(partner)
    if code is None:
        raise ValidationFailure(f"Partner {partner.value} has no service fee account")

    result = await db.execute(
        select(
            JournalEntry.entry_date,
            sa_func.coalesce(sa_func.sum(JournalEntryLine.credit_amount), 0),
            sa_func.coalesce(sa_func.sum(JournalEntryLine.debit_amount), 0),
            sa_func.count(sa_func.distinct(JournalEntry.id)),
        )
        .join(JournalEntry, JournalEntryLine.journal_entry_id == JournalEntry.id)
        .join(GLAccount, JournalEntryLine.gl_account_id == GLAccount.id)
        .where(
            GLAccount.account_code == code,
            JournalEntry.status.in_(LEDGER_STATUSES),
            JournalEntry.entry_type != JournalEntryType.SERVICE_FEE_DISTRIBUTION,
            JournalEntry.entry_date >= period_start,
            JournalEntry.entry_date <= period_end,
        )
        .group_by(JournalEntry.entry_date)
        .order_by(JournalEntry.entry_date)
    )
    return [
        {"date": day, "amount": int(cr) - int(dr), "transaction_count": count}
        for day, cr, dr, count in result.all()
    ]


async def create_service_fee_settlement(
    db: AsyncSession,
    partner: PartnerType,
    period_start: date,
    period_end: date,
) -> SettlementCreationResult:
    """Create a pending service-fee settlement for the period's net fees."""
    if partner not in SETTLEABLE_PARTNERS:
        raise ValidationFailure(f"Partner {partner.value} is not settled through this workflow")

    existing = await _find_open_settlement(
        db, partner, SettlementType.SERVICE_FEE, period_start, period_end
    )
    if existing is not None:
        return SettlementCreationResult(
            created=False,
            settlement_id=existing.id,
            settlement_number=existing.settlement_number,
            total_amount=existing.total_amount,
            message="Settlement already exists for this period",
        )

    days = await service_fee_activity(db, partner, period_start, period_end)
    total = sum(d["amount"] for d in days)
    if total <= 0:
        logger.info(
            "No service fees owed to %s for %s..%s", partner.value, period_start, period_end
        )
        return SettlementCreationResult(created=False, message="No service fees to settle")

    settlement = PartnerSettlement(
        settlement_number=await _next_settlement_number(
            db, partner, SettlementType.SERVICE_FEE, period_end
        ),
        partner_type=partner,
        settlement_type=SettlementType.SERVICE_FEE,
        status=SettlementStatus.PENDING,
        total_amount=total,
        period_start=period_start,
        period_end=period_end,
        metadata_={"transaction_count": sum(d["transaction_count"] for d in days)},
    )
    for d in days:
        if d["amount"]:
            settlement.line_items.append(SettlementLineItem(
                line_date=d["date"],
                description=f"Service fees for {d['date']:%Y-%m-%d}",
                amount=d["amount"],
                transaction_count=d["transaction_count"],
            ))
    db.add(settlement)
    await db.flush()

    logger.info(
        "Created service fee settlement %s for %s: %s",
        settlement.settlement_number, partner.value, to_major(total),
    )
    return SettlementCreationResult(
        created=True,
        settlement_id=settlement.id,
        settlement_number=settlement.settlement_number,
        total_amount=total,
    )


async def create_commission_settlement(
    db: AsyncSession,
    partner: PartnerType,
    period_start: date,
    period_end: date,
    amount: int,
    breakdown: dict | None = None,
) -> SettlementCreationResult:
    """Create a pending commission settlement; zero or negative amounts are skipped."""
    if partner not in SETTLEABLE_PARTNERS:
        raise ValidationFailure(f"Partner {partner.value} is not settled through this workflow")

    if amount <= 0:
        logger.warning(
            "Commission for %s is %d cents for %s..%s: no settlement created",
            partner.value, amount, period_start, period_end,
        )
        return SettlementCreationResult(created=False, message="No commission to settle")

    existing = await _find_open_settlement(
        db, partner, SettlementType.COMMISSION, period_start, period_end
    )
    if existing is not None:
        return SettlementCreationResult(
            created=False,
            settlement_id=existing.id,
            settlement_number=existing.settlement_number,
            total_amount=existing.total_amount,
            message="Settlement already exists for this period",
        )

    settlement = PartnerSettlement(
        settlement_number=await _next_settlement_number(
            db, partner, SettlementType.COMMISSION, period_end
        ),
        partner_type=partner,
        settlement_type=SettlementType.COMMISSION,
        status=SettlementStatus.PENDING,
        total_amount=amount,
        period_start=period_start,
        period_end=period_end,
        metadata_={"breakdown": breakdown} if breakdown else None,
    )
    settlement.line_items.append(SettlementLineItem(
        line_date=period_end,
        description=f"Commission for {period_start:%Y-%m-%d} to {period_end:%Y-%m-%d}",
        amount=amount,
        transaction_count=0,
    ))
    db.add(settlement)
    await db.flush()

    logger.info(
        "Created commission settlement %s for %s: %s",
        settlement.settlement_number, partner.value, to_major(amount),
    )
    return SettlementCreationResult(
        created=True,
        settlement_id=settlement.id,
        settlement_number=settlement.settlement_number,
        total_amount=amount,
    )


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------

class SettlementWorkflow:
    """Guarded settlement transitions with their GL and notification side effects.

    Notifications go to partners and operators over WhatsApp unless another
    notifier is supplied.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker | None = None,
        posting_engine: PostingEngine | None = None,
        notifier=None,
    ):
        self._session_factory = session_factory or async_session
        self._posting = posting_engine or PostingEngine(self._session_factory)
        self._notifier = notifier if notifier is not None else WhatsAppSettlementNotifier()

    async def approve(self, settlement_id: int, approver_id: str) -> PartnerSettlement:
        approver_id = _require(approver_id, "approver_id")

        async def apply(db: AsyncSession, s: PartnerSettlement) -> None:
            s.approved_by = approver_id
            s.approved_at = datetime.now(timezone.utc)
            if s.settlement_type == SettlementType.COMMISSION:
                await self._accrue(db, s)

        settlement = await self._transition(settlement_id, "approve", apply)
        await self._notify("settlement_approved", settlement)
        return settlement

    async def process(self, settlement_id: int, bank_reference: str) -> PartnerSettlement:
        bank_reference = _require(bank_reference, "bank_reference")

        async def apply(db: AsyncSession, s: PartnerSettlement) -> None:
            s.bank_reference = bank_reference

        return await self._transition(settlement_id, "process", apply)

    async def complete(
        self, settlement_id: int, confirmation_reference: str
    ) -> PartnerSettlement:
        confirmation_reference = _require(confirmation_reference, "confirmation_reference")

        async def apply(db: AsyncSession, s: PartnerSettlement) -> None:
            s.confirmation_reference = confirmation_reference
            s.settled_at = datetime.now(timezone.utc)
            if s.settlement_type == SettlementType.COMMISSION and s.accrual_entry_id is None:
                await self._accrue(db, s)
            await self._pay_out(db, s)

        settlement = await self._transition(settlement_id, "complete", apply)
        await self._notify("settlement_completed", settlement)
        return settlement

    async def fail(self, settlement_id: int, reason: str) -> PartnerSettlement:
        reason = _require(reason, "reason")

        async def apply(db: AsyncSession, s: PartnerSettlement) -> None:
            s.status_reason = reason

        return await self._transition(settlement_id, "fail", apply)

    async def cancel(self, settlement_id: int, reason: str) -> PartnerSettlement:
        reason = _require(reason, "reason")

        async def apply(db: AsyncSession, s: PartnerSettlement) -> None:
            s.status_reason = reason

        return await self._transition(settlement_id, "cancel", apply)

    # ------------------------------------------------------------------

    async def _transition(self, settlement_id: int, action: str, apply) -> PartnerSettlement:
        async with unit_of_work(self._session_factory) as db:
            result = await db.execute(
                select(PartnerSettlement)
                .where(PartnerSettlement.id == settlement_id)
                .options(selectinload(PartnerSettlement.line_items))
                .with_for_update()
            )
            settlement = result.scalar_one_or_none()
            if settlement is None:
                raise NotFoundError(f"Settlement {settlement_id} not found")

            previous = settlement.status
            target = check_transition(previous, action)
            await apply(db, settlement)
            settlement.status = target
            await db.flush()

        logger.info(
            "Settlement %s: %s → %s",
            settlement.settlement_number, previous.value, target.value,
        )
        return settlement

    async def _accrue(self, db: AsyncSession, s: PartnerSettlement) -> None:
        request = PostingEngine.commission_accrual_request(PartnerPosting(
            source_transaction_id=f"settlement:{s.settlement_number}:accrual",
            partner_type=s.partner_type,
            amount=s.total_amount,
            reference=s.settlement_number,
        ))
        entry, _ = await self._posting.record_in(db, request)
        s.accrual_entry_id = entry.id

    async def _pay_out(self, db: AsyncSession, s: PartnerSettlement) -> None:
        posting = PartnerPosting(
            source_transaction_id=f"settlement:{s.settlement_number}:payout",
            partner_type=s.partner_type,
            amount=s.total_amount,
            reference=s.bank_reference or s.settlement_number,
        )
        if s.settlement_type == SettlementType.COMMISSION:
            request = PostingEngine.commission_distribution_request(posting)
        else:
            request = PostingEngine.service_fee_distribution_request(posting)
        entry, _ = await self._posting.record_in(db, request)
        s.payout_entry_id = entry.id

    async def _notify(self, event: str, settlement: PartnerSettlement) -> None:
        try:
            await getattr(self._notifier, event)(settlement)
        except Exception:
            logger.exception(
                "Notification %s failed for settlement %s",
                event, settlement.settlement_number,
            )
