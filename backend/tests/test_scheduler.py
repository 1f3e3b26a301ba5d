"""Tests for the accounting job scheduler and its default handlers."""

from datetime import date
from unittest.mock import AsyncMock

import pytest

from bodaledger.database import unit_of_work
from bodaledger.models.escrow import RemittanceBatchStatus
from bodaledger.models.settlement import PartnerType, SettlementType
from bodaledger.scheduler import (
    AccountingJob,
    AccountingScheduler,
    build_default_handlers,
    previous_month,
)
from bodaledger.schemas import JobRunSummary, StatementItem
from bodaledger.services.gl import escrow_service, settlement_service
from bodaledger.services.gl.posting_rules import AccountCode as C
from bodaledger.tasks import celery_app

DAY = date(2025, 1, 15)


# ===================================================================
# Scheduler with injected handlers
# ===================================================================


class TestAccountingScheduler:

    @pytest.mark.asyncio
    async def test_runs_registered_handler(self):
        summary = JobRunSummary(job="daily_service_fee_settlement", processed=2, succeeded=2)
        handler = AsyncMock(return_value=summary)
        scheduler = AccountingScheduler({AccountingJob.DAILY_SERVICE_FEE_SETTLEMENT: handler})

        result = await scheduler.run("daily_service_fee_settlement", {"date": "2025-01-15"})

        assert result is summary
        handler.assert_awaited_once_with({"date": "2025-01-15"})
        assert scheduler.jobs == [AccountingJob.DAILY_SERVICE_FEE_SETTLEMENT]

    @pytest.mark.asyncio
    async def test_handler_error_becomes_failed_summary(self):
        handler = AsyncMock(side_effect=RuntimeError("database unavailable"))
        scheduler = AccountingScheduler({AccountingJob.MONTHLY_COMMISSION_SETTLEMENT: handler})

        result = await scheduler.run(AccountingJob.MONTHLY_COMMISSION_SETTLEMENT)

        assert result.failed == 1
        assert result.succeeded == 0
        assert result.details == [{"error": "database unavailable"}]

    @pytest.mark.asyncio
    async def test_unregistered_job(self):
        scheduler = AccountingScheduler({})
        for job in ("no_such_job", AccountingJob.DAILY_MOBILE_MONEY_RECONCILIATION):
            result = await scheduler.run(job)
            assert result.failed == 1
            assert "No handler registered" in result.details[0]["error"]


class TestPreviousMonth:

    def test_mid_month(self):
        assert previous_month(date(2025, 3, 15)) == (date(2025, 2, 1), date(2025, 2, 28))

    def test_january_wraps_year(self):
        assert previous_month(date(2025, 1, 1)) == (date(2024, 12, 1), date(2024, 12, 31))


# ===================================================================
# Default handlers against the ledger
# ===================================================================


class TestDefaultHandlers:

    @pytest.mark.asyncio
    async def test_service_fee_job(self, session_factory, pay):
        await pay("tx-1", days=2)
        scheduler = AccountingScheduler(build_default_handlers(session_factory))

        first = await scheduler.run(AccountingJob.DAILY_SERVICE_FEE_SETTLEMENT, {"date": DAY})
        assert (first.processed, first.succeeded, first.skipped) == (2, 2, 0)
        assert {d["partner"] for d in first.details} == {"kba", "robs_insurance"}

        again = await scheduler.run(
            AccountingJob.DAILY_SERVICE_FEE_SETTLEMENT, {"date": "2025-01-15"}
        )
        assert (again.succeeded, again.skipped) == (0, 2)

    @pytest.mark.asyncio
    async def test_service_fee_job_with_no_activity(self, session_factory):
        scheduler = AccountingScheduler(build_default_handlers(session_factory))
        result = await scheduler.run(AccountingJob.DAILY_SERVICE_FEE_SETTLEMENT, {"date": DAY})
        assert result.skipped == 2
        assert result.failed == 0

    @pytest.mark.asyncio
    async def test_commission_job(self, session_factory, pay):
        await pay("r1-day1", day1=True, rider_id="r1", on=date(2025, 1, 1))
        await pay("r1-daily", days=30, rider_id="r1", on=date(2025, 1, 2))
        scheduler = AccountingScheduler(build_default_handlers(session_factory))

        result = await scheduler.run(
            AccountingJob.MONTHLY_COMMISSION_SETTLEMENT,
            {"period_start": "2025-01-01", "period_end": "2025-01-31"},
        )
        assert (result.processed, result.succeeded) == (2, 2)

        async with session_factory() as db:
            settlements = await settlement_service.get_settlements(
                db, settlement_type=SettlementType.COMMISSION
            )
        amounts = {s.partner_type: s.total_amount for s in settlements}
        assert amounts == {PartnerType.KBA: 8_900, PartnerType.ROBS_INSURANCE: 8_900}

    @pytest.mark.asyncio
    async def test_commission_job_without_riders(self, session_factory):
        scheduler = AccountingScheduler(build_default_handlers(session_factory))
        result = await scheduler.run(
            AccountingJob.MONTHLY_COMMISSION_SETTLEMENT,
            {"period_start": "2025-01-01", "period_end": "2025-01-31"},
        )
        assert result.skipped == 1
        assert result.processed == 0

    @pytest.mark.asyncio
    async def test_reconciliation_job_from_config(self, session_factory, pay):
        await pay("tx-1", days=1, receipt="MP-77")
        scheduler = AccountingScheduler(build_default_handlers(session_factory))

        result = await scheduler.run(
            AccountingJob.DAILY_MOBILE_MONEY_RECONCILIATION,
            {
                "date": "2025-01-15",
                "actor_id": "scheduler",
                "statement_items": [
                    {"reference": "MP-77", "amount": 8_700, "date": "2025-01-15"},
                ],
            },
        )
        assert result.succeeded == 1
        assert result.details[0]["status"] == "matched"

    @pytest.mark.asyncio
    async def test_reconciliation_job_uses_loader(self, session_factory):
        loader = AsyncMock(return_value=[
            StatementItem(reference="NOT-IN-LEDGER", amount=500, date=DAY),
        ])
        scheduler = AccountingScheduler(build_default_handlers(session_factory, loader))

        result = await scheduler.run(AccountingJob.DAILY_MOBILE_MONEY_RECONCILIATION, {"date": DAY})

        loader.assert_awaited_once_with(DAY)
        assert result.details[0]["status"] == "unmatched"

    @pytest.mark.asyncio
    async def test_reconciliation_job_without_statement(self, session_factory):
        scheduler = AccountingScheduler(build_default_handlers(session_factory))
        result = await scheduler.run(AccountingJob.DAILY_MOBILE_MONEY_RECONCILIATION, {"date": DAY})
        assert result.skipped == 1
        assert result.details[0]["skipped"] is True

    @pytest.mark.asyncio
    async def test_remittance_job_builds_day1_batch(self, session_factory, pay):
        await pay("d1", day1=True)
        await pay("daily", days=2)
        scheduler = AccountingScheduler(build_default_handlers(session_factory))

        result = await scheduler.run(AccountingJob.REMITTANCE_BATCH_PROCESSING, {"date": DAY})

        assert (result.processed, result.succeeded) == (1, 1)
        assert result.details[0]["batch_number"] == "RBD-20250115-001"
        async with session_factory() as db:
            totals = await escrow_service.get_total_pending_premium(db)
        assert totals == {"day1": 0, "accumulated": 16_800}

    @pytest.mark.asyncio
    async def test_remittance_job_builds_bulk_batch_on_first_of_month(self, session_factory, pay):
        await pay("daily", days=2, on=date(2025, 1, 31))
        scheduler = AccountingScheduler(build_default_handlers(session_factory))

        result = await scheduler.run(
            AccountingJob.REMITTANCE_BATCH_PROCESSING, {"date": "2025-02-01"}
        )

        assert (result.processed, result.succeeded, result.skipped) == (2, 1, 1)
        assert result.details[1]["batch_number"] == "RBM-20250201-001"
        assert result.details[1]["total_amount"] == 16_800

    @pytest.mark.asyncio
    async def test_remittance_job_lists_approved_batches(self, session_factory, pay):
        await pay("d1", day1=True)
        async with unit_of_work(session_factory) as db:
            created = await escrow_service.create_day1_remittance_batch(db, DAY)
            await escrow_service.approve_batch(db, created.batch_id, "ops-1")
        scheduler = AccountingScheduler(build_default_handlers(session_factory))

        result = await scheduler.run(AccountingJob.REMITTANCE_BATCH_PROCESSING, {"date": DAY})

        assert result.skipped == 2
        assert result.details[-1] == {
            "batch_number": created.batch_number, "status": "approved_pending_transfer",
        }

    @pytest.mark.asyncio
    async def test_remittance_job_processes_approved_batches(self, session_factory, pay, balances):
        await pay("d1", day1=True)
        async with unit_of_work(session_factory) as db:
            created = await escrow_service.create_day1_remittance_batch(db, DAY)
            await escrow_service.approve_batch(db, created.batch_id, "ops-1")
        scheduler = AccountingScheduler(build_default_handlers(session_factory))

        result = await scheduler.run(
            AccountingJob.REMITTANCE_BATCH_PROCESSING,
            {"date": DAY, "auto_process": True, "bank_reference": "UBA-REM-1"},
        )

        assert (result.succeeded, result.failed) == (1, 0)
        assert result.details[-1]["status"] == "completed"
        b = await balances()
        assert b[C.PREMIUM_PAYABLE_DEFINITE] == 0
        assert b[C.CASH_UBA_ESCROW] == 300
        async with session_factory() as db:
            batch = await escrow_service.get_batch(db, created.batch_id)
        assert batch.status == RemittanceBatchStatus.COMPLETED
        assert batch.bank_reference == "UBA-REM-1"


# ===================================================================
# Celery wiring
# ===================================================================


class TestBeatSchedule:

    def test_jobs_are_scheduled(self):
        schedule = celery_app.conf.beat_schedule
        tasks = {entry["task"] for entry in schedule.values()}
        assert tasks == {
            "bodaledger.tasks.accounting_tasks.daily_service_fee_settlement",
            "bodaledger.tasks.accounting_tasks.daily_mobile_money_reconciliation",
            "bodaledger.tasks.accounting_tasks.monthly_commission_settlement",
            "bodaledger.tasks.accounting_tasks.remittance_batch_processing",
        }
        assert all(t in celery_app.tasks for t in tasks)

    def test_commission_runs_on_first_of_month(self):
        entry = celery_app.conf.beat_schedule["monthly-commission-settlement"]
        assert entry["schedule"].day_of_month == {1}
        assert entry["schedule"].hour == {8}

    def test_remittance_runs_daily_at_ten(self):
        entry = celery_app.conf.beat_schedule["remittance-batch-processing"]
        assert entry["schedule"].hour == {10}
        assert entry["schedule"].minute == {0}
