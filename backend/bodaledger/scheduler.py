"""Accounting job scheduler.

The scheduler owns no schedule of its own: a trigger (Celery beat in
production, tests directly) names a job and hands over a config dict.  The
job-to-handler map is injected at construction time, and every run reports a
``JobRunSummary`` whether the handler succeeded, skipped work or blew up.

Config keys understood by the default handlers:

- ``date``: settlement / reconciliation / remittance day (date or ISO string);
  defaults to yesterday (today for remittances) in the scheduler timezone
- ``period_start`` / ``period_end``: commission period; defaults to the
  previous calendar month
- ``statement_items``: list of statement line dicts for reconciliation
- ``actor_id``: recorded as ``created_by`` on reconciliation records
- ``monthly``: also build the bulk remittance batch (always done on the 1st)
- ``auto_process``: post approved remittance batches instead of only listing
  them; ``bank_reference`` overrides the generated transfer reference
"""

import enum
import logging
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable, Mapping
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import async_sessionmaker

from bodaledger.config import settings
from bodaledger.database import async_session, unit_of_work
from bodaledger.models.escrow import RemittanceBatchStatus
from bodaledger.models.settlement import PartnerType
from bodaledger.schemas import JobRunSummary, StatementItem
from bodaledger.services.gl import commission, escrow_service, reconciliation, settlement_service
from bodaledger.services.gl.errors import LedgerError

logger = logging.getLogger(__name__)


class AccountingJob(str, enum.Enum):
    DAILY_SERVICE_FEE_SETTLEMENT = "daily_service_fee_settlement"
    MONTHLY_COMMISSION_SETTLEMENT = "monthly_commission_settlement"
    DAILY_MOBILE_MONEY_RECONCILIATION = "daily_mobile_money_reconciliation"
    REMITTANCE_BATCH_PROCESSING = "remittance_batch_processing"


JobHandler = Callable[[dict], Awaitable[JobRunSummary]]
StatementLoader = Callable[[date], Awaitable[list[StatementItem]]]


class AccountingScheduler:
    """Runs registered accounting jobs and normalises their outcome."""

    def __init__(self, handlers: Mapping[AccountingJob, JobHandler]):
        self._handlers = dict(handlers)

    @property
    def jobs(self) -> list[AccountingJob]:
        return list(self._handlers)

    async def run(self, job: AccountingJob | str, config: dict | None = None) -> JobRunSummary:
        name = job.value if isinstance(job, AccountingJob) else str(job)
        try:
            handler = self._handlers[AccountingJob(name)]
        except (ValueError, KeyError):
            logger.error("No handler registered for job %s", name)
            return JobRunSummary(
                job=name, failed=1, details=[{"error": f"No handler registered for {name}"}]
            )

        logger.info("Running accounting job %s", name)
        try:
            summary = await handler(dict(config or {}))
        except Exception as exc:
            logger.exception("Accounting job %s failed", name)
            return JobRunSummary(job=name, processed=1, failed=1, details=[{"error": str(exc)}])

        logger.info(
            "Job %s finished: processed=%d succeeded=%d failed=%d skipped=%d",
            name, summary.processed, summary.succeeded, summary.failed, summary.skipped,
        )
        return summary


# ---------------------------------------------------------------------------
# Date helpers
# ---------------------------------------------------------------------------

def local_today() -> date:
    return datetime.now(ZoneInfo(settings.scheduler_timezone)).date()


def previous_month(today: date) -> tuple[date, date]:
    """First and last day of the calendar month before *today*."""
    end = today.replace(day=1) - timedelta(days=1)
    return end.replace(day=1), end


def _as_date(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


# ---------------------------------------------------------------------------
# Default handlers
# ---------------------------------------------------------------------------

def build_default_handlers(
    session_factory: async_sessionmaker | None = None,
    statement_loader: StatementLoader | None = None,
) -> dict[AccountingJob, JobHandler]:
    """Wire the standard jobs against *session_factory*.

    *statement_loader* fetches a day's external statement when the trigger
    does not supply ``statement_items`` itself.
    """
    factory = session_factory or async_session

    async def daily_service_fee_settlement(config: dict) -> JobRunSummary:
        day = _as_date(config.get("date")) or local_today() - timedelta(days=1)
        summary = JobRunSummary(job=AccountingJob.DAILY_SERVICE_FEE_SETTLEMENT.value)

        for partner in settlement_service.SETTLEABLE_PARTNERS:
            summary.processed += 1
            try:
                async with unit_of_work(factory) as db:
                    result = await settlement_service.create_service_fee_settlement(
                        db, partner, day, day
                    )
            except LedgerError as exc:
                logger.warning("Service fee settlement for %s failed: %s", partner.value, exc)
                summary.failed += 1
                summary.details.append({"partner": partner.value, "error": str(exc)})
                continue

            if result.created:
                summary.succeeded += 1
            else:
                summary.skipped += 1
            summary.details.append({"partner": partner.value, **result.model_dump()})
        return summary

    async def monthly_commission_settlement(config: dict) -> JobRunSummary:
        start = _as_date(config.get("period_start"))
        end = _as_date(config.get("period_end"))
        if start is None or end is None:
            start, end = previous_month(local_today())
        summary = JobRunSummary(job=AccountingJob.MONTHLY_COMMISSION_SETTLEMENT.value)

        async with unit_of_work(factory) as db:
            riders = await commission.rider_premiums_for_period(db, start, end)
        if not riders:
            summary.skipped += 1
            summary.details.append({"message": f"No rider premiums for {start}..{end}"})
            return summary

        result = commission.calculate_commission(riders, start, end)
        amounts = {
            PartnerType.KBA: result.distribution.kba,
            PartnerType.ROBS_INSURANCE: result.distribution.robs,
        }
        for partner, amount in amounts.items():
            summary.processed += 1
            try:
                async with unit_of_work(factory) as db:
                    created = await settlement_service.create_commission_settlement(
                        db, partner, start, end, amount, breakdown=result.to_dict()
                    )
            except LedgerError as exc:
                logger.warning("Commission settlement for %s failed: %s", partner.value, exc)
                summary.failed += 1
                summary.details.append({"partner": partner.value, "error": str(exc)})
                continue

            if created.created:
                summary.succeeded += 1
            else:
                summary.skipped += 1
            summary.details.append({"partner": partner.value, **created.model_dump()})
        return summary

    async def daily_mobile_money_reconciliation(config: dict) -> JobRunSummary:
        day = _as_date(config.get("date")) or local_today() - timedelta(days=1)
        summary = JobRunSummary(job=AccountingJob.DAILY_MOBILE_MONEY_RECONCILIATION.value)

        raw_items = config.get("statement_items")
        if raw_items is not None:
            items = [StatementItem.model_validate(i) for i in raw_items]
        elif statement_loader is not None:
            items = await statement_loader(day)
        else:
            items = []

        async with unit_of_work(factory) as db:
            result = await reconciliation.create_reconciliation(
                db, day, items, actor_id=config.get("actor_id")
            )

        if result.skipped:
            summary.skipped += 1
        else:
            summary.processed += 1
            summary.succeeded += 1
        summary.details.append({"date": day.isoformat(), **result.model_dump()})
        return summary

    async def remittance_batch_processing(config: dict) -> JobRunSummary:
        day = _as_date(config.get("date")) or local_today()
        summary = JobRunSummary(job=AccountingJob.REMITTANCE_BATCH_PROCESSING.value)

        builders = [("day1", escrow_service.create_day1_remittance_batch)]
        if day.day == 1 or config.get("monthly"):
            builders.append(("monthly", escrow_service.create_monthly_bulk_batch))
        for kind, build in builders:
            summary.processed += 1
            async with unit_of_work(factory) as db:
                created = await build(db, day)
            if created.created:
                summary.succeeded += 1
            else:
                summary.skipped += 1
            summary.details.append({"batch": kind, **created.model_dump()})

        async with unit_of_work(factory) as db:
            approved = [
                (b.id, b.batch_number)
                for b in await escrow_service.get_batches_by_status(
                    db, RemittanceBatchStatus.APPROVED
                )
            ]

        for batch_id, batch_number in approved:
            summary.processed += 1
            if not config.get("auto_process"):
                summary.skipped += 1
                summary.details.append(
                    {"batch_number": batch_number, "status": "approved_pending_transfer"}
                )
                continue

            reference = config.get("bank_reference") or f"BANK-{day:%Y%m%d}-{batch_number}"
            try:
                async with unit_of_work(factory) as db:
                    await escrow_service.process_batch(
                        db, batch_id, reference, remittance_date=day
                    )
            except LedgerError as exc:
                logger.warning("Remittance batch %s failed: %s", batch_number, exc)
                async with unit_of_work(factory) as db:
                    await escrow_service.fail_batch(db, batch_id, str(exc))
                summary.failed += 1
                summary.details.append({"batch_number": batch_number, "error": str(exc)})
                continue

            summary.succeeded += 1
            summary.details.append(
                {"batch_number": batch_number, "status": "completed", "bank_reference": reference}
            )
        return summary

    return {
        AccountingJob.DAILY_SERVICE_FEE_SETTLEMENT: daily_service_fee_settlement,
        AccountingJob.MONTHLY_COMMISSION_SETTLEMENT: monthly_commission_settlement,
        AccountingJob.DAILY_MOBILE_MONEY_RECONCILIATION: daily_mobile_money_reconciliation,
        AccountingJob.REMITTANCE_BATCH_PROCESSING: remittance_batch_processing,
    }
