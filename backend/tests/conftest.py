"""Shared fixtures: an in-memory SQLite ledger with the standard chart seeded."""

from datetime import date

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from bodaledger.database import init_db, unit_of_work
from bodaledger.schemas import PaymentReceipt
from bodaledger.seed_gl import seed_chart_of_accounts
from bodaledger.services.gl import coa_service
from bodaledger.services.gl.posting_engine import PostingEngine
from bodaledger.services.gl.posting_rules import DAILY_TOTAL, DAY1_TOTAL

BUSINESS_DAY = date(2025, 1, 15)


@pytest_asyncio.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine):
    factory = async_sessionmaker(
        db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )
    async with unit_of_work(factory) as db:
        await seed_chart_of_accounts(db)
    return factory


@pytest.fixture
def posting_engine(session_factory):
    return PostingEngine(session_factory)


@pytest.fixture
def pay(posting_engine):
    """Post a payment receipt: ``await pay("tx-1", days=3, receipt="MP123")``."""
    async def _pay(
        transaction_id: str,
        *,
        day1: bool = False,
        days: int = 1,
        rider_id: str | None = "rider-1",
        receipt: str | None = None,
        on: date = BUSINESS_DAY,
    ):
        event = PaymentReceipt(
            transaction_id=transaction_id,
            rider_id=rider_id,
            payment_type="day1" if day1 else "daily",
            amount=DAY1_TOTAL if day1 else DAILY_TOTAL * days,
            days_count=1 if day1 else days,
            receipt_number=receipt,
            payment_date=on,
        )
        result = await posting_engine.post_payment_receipt(event)
        assert result.success, result.message
        return result

    return _pay


@pytest.fixture
def balances(session_factory):
    """Return ``{account_code: stored balance}`` for the whole chart."""
    async def _balances() -> dict[str, int]:
        async with session_factory() as db:
            return {a.account_code: a.balance for a in await coa_service.list_accounts(db)}

    return _balances
