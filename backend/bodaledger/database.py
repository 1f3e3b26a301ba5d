"""Database engine, session factory and the explicit unit-of-work wrapper.

Services never open their own transactions implicitly: callers either hold an
``AsyncSession`` inside ``unit_of_work`` or hand a session factory to the
components (posting engine, settlement workflow) that run one unit of work
per operation.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from bodaledger.config import settings


# Naming convention for constraints (keeps generated DDL stable)
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Base class for all ledger models."""
    metadata = MetaData(naming_convention=convention)


engine = create_async_engine(
    settings.database_url,
    echo=settings.database_echo,
    pool_pre_ping=True,
)

async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


@asynccontextmanager
async def unit_of_work(
    session_factory: async_sessionmaker | None = None,
) -> AsyncIterator[AsyncSession]:
    """Open a session and a transaction; commit on success, roll back on error."""
    factory = session_factory or async_session
    async with factory() as db:
        async with db.begin():
            yield db


async def init_db(bind=None) -> None:
    """Create all tables. Used for development and tests."""
    import bodaledger.models  # noqa: F401  (registers mappers)

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
