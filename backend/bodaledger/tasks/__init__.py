"""Celery app and beat schedule for the accounting jobs."""

from celery import Celery
from celery.schedules import crontab

from bodaledger.config import settings

celery_app = Celery(
    "bodaledger",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.scheduler_timezone,
    enable_utc=True,
)

# Periodic beat schedule (times are in the scheduler timezone)
celery_app.conf.beat_schedule = {
    "daily-service-fee-settlement": {
        "task": "bodaledger.tasks.accounting_tasks.daily_service_fee_settlement",
        "schedule": crontab(hour=6, minute=0),  # 6 AM daily
    },
    "daily-mobile-money-reconciliation": {
        "task": "bodaledger.tasks.accounting_tasks.daily_mobile_money_reconciliation",
        "schedule": crontab(hour=7, minute=0),  # 7 AM daily
    },
    "monthly-commission-settlement": {
        "task": "bodaledger.tasks.accounting_tasks.monthly_commission_settlement",
        "schedule": crontab(hour=8, minute=0, day_of_month=1),  # 8 AM on the 1st
    },
    "remittance-batch-processing": {
        "task": "bodaledger.tasks.accounting_tasks.remittance_batch_processing",
        "schedule": crontab(hour=10, minute=0),  # 10 AM daily
    },
}

# Import tasks so they get registered
from bodaledger.tasks.accounting_tasks import *  # noqa
