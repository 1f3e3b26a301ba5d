"""Celery tasks for the scheduled accounting jobs.

Each task builds a fresh engine for its own event loop, runs one job through
``AccountingScheduler`` and returns the JSON form of the run summary.
"""

import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession, AsyncEngine, create_async_engine, async_sessionmaker

from bodaledger.tasks import celery_app
from bodaledger.config import settings
from bodaledger.scheduler import AccountingJob, AccountingScheduler, build_default_handlers

logger = logging.getLogger(__name__)

__all__ = [
    "daily_service_fee_settlement",
    "daily_mobile_money_reconciliation",
    "monthly_commission_settlement",
    "remittance_batch_processing",
]


def _get_session() -> tuple[AsyncEngine, async_sessionmaker]:
    engine = create_async_engine(settings.database_url)
    return engine, async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def _run_job(job: AccountingJob, config: dict | None) -> dict:
    async def _run():
        engine, SessionLocal = _get_session()
        try:
            scheduler = AccountingScheduler(build_default_handlers(SessionLocal))
            summary = await scheduler.run(job, config)
        finally:
            await engine.dispose()
        logger.info(
            "%s: processed=%d succeeded=%d failed=%d skipped=%d",
            job.value, summary.processed, summary.succeeded, summary.failed, summary.skipped,
        )
        return summary.model_dump(mode="json")

    return asyncio.run(_run())


@celery_app.task(name="bodaledger.tasks.accounting_tasks.daily_service_fee_settlement")
def daily_service_fee_settlement(config: dict | None = None) -> dict:
    """Create yesterday's KBA and Robs service-fee settlements."""
    return _run_job(AccountingJob.DAILY_SERVICE_FEE_SETTLEMENT, config)


@celery_app.task(name="bodaledger.tasks.accounting_tasks.daily_mobile_money_reconciliation")
def daily_mobile_money_reconciliation(config: dict | None = None) -> dict:
    """Reconcile a day's mobile-money statement against the escrow ledger."""
    return _run_job(AccountingJob.DAILY_MOBILE_MONEY_RECONCILIATION, config)


@celery_app.task(name="bodaledger.tasks.accounting_tasks.monthly_commission_settlement")
def monthly_commission_settlement(config: dict | None = None) -> dict:
    """Calculate last month's commission and create partner settlements."""
    return _run_job(AccountingJob.MONTHLY_COMMISSION_SETTLEMENT, config)


@celery_app.task(name="bodaledger.tasks.accounting_tasks.remittance_batch_processing")
def remittance_batch_processing(config: dict | None = None) -> dict:
    """Batch escrowed premium for remittance and post approved batches."""
    return _run_job(AccountingJob.REMITTANCE_BATCH_PROCESSING, config)
