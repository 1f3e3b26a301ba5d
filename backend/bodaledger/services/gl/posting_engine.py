"""Posting engine: business events → posted journal entries.

Every ``post_*`` method is idempotent per source transaction id and never
raises: the caller gets a :class:`PostingResult` and decides its own retry
policy.  A posting runs as one unit of work (entry, lines and balance updates
commit together).  Concurrent duplicates are settled by the unique
constraint on ``source_transaction_id``; the losing attempt retries, finds
the winner's entry and reports ``already_posted``.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Awaitable, Callable

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bodaledger.config import settings
from bodaledger.database import async_session, unit_of_work
from bodaledger.models.gl import JournalEntry, JournalEntryType
from bodaledger.schemas import (
    PartnerPosting,
    PaymentReceipt,
    PostingResult,
    RefundPayout,
    RefundRequest,
    Remittance,
)
from bodaledger.services.gl import journal_engine, posting_rules
from bodaledger.services.gl.errors import LedgerError

logger = logging.getLogger(__name__)


@dataclass
class PostingRequest:
    """Everything the journal store needs to create one posted entry."""
    source_transaction_id: str
    entry_type: JournalEntryType
    lines: list[dict]
    description: str
    entry_date: date | None = None
    rider_id: str | None = None
    external_reference: str | None = None
    created_by: str | None = None
    metadata: dict = field(default_factory=dict)
    # Runs in the same transaction, only when the entry is newly inserted
    after_insert: Callable[[AsyncSession, JournalEntry], Awaitable[None]] | None = None


class PostingEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker | None = None,
        *,
        max_attempts: int | None = None,
    ):
        self._session_factory = session_factory or async_session
        self._max_attempts = max_attempts or settings.posting_max_attempts

    # ------------------------------------------------------------------
    # Business events
    # ------------------------------------------------------------------

    async def post_payment_receipt(self, event: PaymentReceipt) -> PostingResult:
        if event.payment_type == "day1":
            build = lambda: posting_rules.day1_payment_lines(event.amount)  # noqa: E731
            entry_type = JournalEntryType.PAYMENT_RECEIPT_DAY1
            description = "Day 1 payment received"
        else:
            build = lambda: posting_rules.daily_payment_lines(event.amount, event.days_count)  # noqa: E731
            entry_type = JournalEntryType.PAYMENT_RECEIPT_DAILY
            description = f"Daily payment received ({event.days_count} day(s))"

        return await self._post(
            event.transaction_id,
            build,
            entry_type=entry_type,
            description=description,
            entry_date=event.payment_date,
            rider_id=event.rider_id,
            external_reference=event.receipt_number,
            metadata={"days_count": event.days_count, "amount": event.amount},
            after_insert=lambda db, entry: self._track_escrow(db, event, entry),
        )

    async def post_refund(self, event: RefundRequest) -> PostingResult:
        async def release_escrow(db: AsyncSession, entry: JournalEntry) -> None:
            if event.rider_id:
                from bodaledger.services.gl import escrow_service
                await escrow_service.mark_as_refunded(
                    db, event.rider_id, event.refund_id, event.days_count
                )

        return await self._post(
            event.refund_id,
            lambda: posting_rules.refund_lines(event.amount, event.days_count),
            entry_type=JournalEntryType.REFUND_INITIATION,
            description=f"Refund initiated ({event.days_count} day(s))",
            entry_date=event.refund_date,
            rider_id=event.rider_id,
            metadata={
                "days_count": event.days_count,
                **posting_rules.refund_split(event.amount),
            },
            after_insert=release_escrow,
        )

    async def post_refund_payout(self, event: RefundPayout) -> PostingResult:
        return await self._post(
            event.payout_id,
            lambda: posting_rules.refund_payout_lines(event.amount),
            entry_type=JournalEntryType.REFUND_EXECUTION,
            description="Refund paid to rider",
            entry_date=event.payout_date,
            rider_id=event.rider_id,
            metadata={"refund_id": event.refund_id} if event.refund_id else {},
        )

    async def post_remittance(self, event: Remittance) -> PostingResult:
        return await self._post_built(self.remittance_request, event, event.remittance_id)

    async def post_service_fee_distribution(self, event: PartnerPosting) -> PostingResult:
        return await self._post_built(
            self.service_fee_distribution_request, event, event.source_transaction_id
        )

    async def post_commission_accrual(self, event: PartnerPosting) -> PostingResult:
        return await self._post_built(
            self.commission_accrual_request, event, event.source_transaction_id
        )

    async def post_commission_distribution(self, event: PartnerPosting) -> PostingResult:
        return await self._post_built(
            self.commission_distribution_request, event, event.source_transaction_id
        )

    @staticmethod
    async def _track_escrow(db: AsyncSession, event: PaymentReceipt, entry: JournalEntry) -> None:
        from bodaledger.services.gl import escrow_service
        await escrow_service.record_payment(db, event, entry)

    # ------------------------------------------------------------------
    # Requests (also used inside settlement and remittance transactions)
    # ------------------------------------------------------------------

    @staticmethod
    def remittance_request(event: Remittance) -> PostingRequest:
        if event.remittance_type == "day1":
            entry_type = JournalEntryType.PREMIUM_REMITTANCE_DAY1
            description = "Day 1 premium remitted to Definite Assurance"
        else:
            entry_type = JournalEntryType.PREMIUM_REMITTANCE_BULK
            description = "Bulk premium remittance to Definite Assurance"
        return PostingRequest(
            source_transaction_id=event.remittance_id,
            entry_type=entry_type,
            lines=posting_rules.remittance_lines(event.amount),
            description=description,
            entry_date=event.remittance_date,
            rider_id=event.rider_id,
            external_reference=event.bank_reference,
        )

    @staticmethod
    def service_fee_distribution_request(event: PartnerPosting) -> PostingRequest:
        return PostingRequest(
            source_transaction_id=event.source_transaction_id,
            entry_type=JournalEntryType.SERVICE_FEE_DISTRIBUTION,
            lines=posting_rules.service_fee_distribution_lines(event.partner_type, event.amount),
            description=f"Service fee distribution to {event.partner_type.value}",
            entry_date=event.posting_date,
            external_reference=event.reference,
        )

    @staticmethod
    def commission_accrual_request(event: PartnerPosting) -> PostingRequest:
        return PostingRequest(
            source_transaction_id=event.source_transaction_id,
            entry_type=JournalEntryType.COMMISSION_ACCRUAL,
            lines=posting_rules.commission_accrual_lines(event.partner_type, event.amount),
            description=f"Commission accrued for {event.partner_type.value}",
            entry_date=event.posting_date,
            external_reference=event.reference,
        )

    @staticmethod
    def commission_distribution_request(event: PartnerPosting) -> PostingRequest:
        return PostingRequest(
            source_transaction_id=event.source_transaction_id,
            entry_type=JournalEntryType.COMMISSION_DISTRIBUTION,
            lines=posting_rules.commission_distribution_lines(event.partner_type, event.amount),
            description=f"Commission distribution to {event.partner_type.value}",
            entry_date=event.posting_date,
            external_reference=event.reference,
        )

    async def record_in(
        self, db: AsyncSession, request: PostingRequest
    ) -> tuple[JournalEntry, bool]:
        """Post inside the caller's transaction.

        Returns ``(entry, already_posted)``.  Errors propagate so the caller's
        whole unit of work rolls back.
        """
        existing = await journal_engine.get_by_source_transaction_id(
            db, request.source_transaction_id
        )
        if existing is not None:
            return existing, True

        entry = await journal_engine.create_journal_entry(
            db,
            entry_type=request.entry_type,
            lines=request.lines,
            description=request.description,
            source_transaction_id=request.source_transaction_id,
            entry_date=request.entry_date,
            rider_id=request.rider_id,
            external_reference=request.external_reference,
            created_by=request.created_by,
            metadata=request.metadata or None,
            auto_post=True,
        )
        if request.after_insert is not None:
            await request.after_insert(db, entry)
        return entry, False

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _post(self, source_transaction_id: str, build_lines, **fields) -> PostingResult:
        try:
            lines = build_lines()
        except (LedgerError, TypeError) as exc:
            return self._failure(source_transaction_id, exc)
        except Exception as exc:
            logger.exception("Could not build lines for %s", source_transaction_id)
            return PostingResult(success=False, message=f"Unexpected failure: {exc}")
        request = PostingRequest(
            source_transaction_id=source_transaction_id, lines=lines, **fields
        )
        return await self._post_request(request)

    async def _post_built(self, make_request, event, source_transaction_id: str) -> PostingResult:
        try:
            request = make_request(event)
        except (LedgerError, TypeError) as exc:
            return self._failure(source_transaction_id, exc)
        except Exception as exc:
            logger.exception("Could not build request for %s", source_transaction_id)
            return PostingResult(success=False, message=f"Unexpected failure: {exc}")
        return await self._post_request(request)

    async def _post_request(self, request: PostingRequest) -> PostingResult:
        source_id = request.source_transaction_id
        for attempt in range(1, self._max_attempts + 1):
            try:
                async with unit_of_work(self._session_factory) as db:
                    entry, already_posted = await self.record_in(db, request)
                    result = PostingResult(
                        success=True,
                        journal_entry_id=entry.id,
                        entry_number=entry.entry_number,
                        already_posted=already_posted,
                    )
            except IntegrityError:
                # Lost a race on the source id or the entry number; the next
                # attempt either finds the winner's entry or takes a new number.
                logger.warning(
                    "Integrity conflict posting %s (attempt %d/%d)",
                    source_id, attempt, self._max_attempts,
                )
                continue
            except (LedgerError, TypeError) as exc:
                return self._failure(source_id, exc)
            except SQLAlchemyError as exc:
                logger.exception("Storage failure posting %s", source_id)
                return PostingResult(success=False, message=f"Storage failure: {exc}")
            except Exception as exc:
                logger.exception("Unexpected failure posting %s", source_id)
                return PostingResult(success=False, message=f"Unexpected failure: {exc}")

            if result.already_posted:
                logger.info("Source %s already posted as %s", source_id, result.entry_number)
            return result

        return PostingResult(
            success=False,
            message=f"Posting {source_id} failed after {self._max_attempts} attempts",
        )

    @staticmethod
    def _failure(source_id: str, exc: Exception) -> PostingResult:
        kind = getattr(exc, "kind", None)
        logger.warning("Posting %s rejected: %s", source_id, exc)
        return PostingResult(
            success=False,
            message=str(exc),
            error_kind=kind.value if kind else None,
        )
