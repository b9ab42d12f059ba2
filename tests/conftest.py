"""Shared fixtures: a fresh SQLite database per test, seeded users, recording fakes."""

import os

# Point the app's default engine at SQLite before any api module is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./.pytest_storytime.db")

from typing import Callable, Optional

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from api.db.base import Base, PaymentAuditLog, PaymentTransaction, User
from api.services.ledger import PaymentLedger
from fakes import RecordingSink, RecordingSleep


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Fresh file-backed SQLite engine + schema."""
    eng = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'storytime.db'}",
        echo=False,
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield eng

    await eng.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest.fixture
def ledger(session_factory):
    return PaymentLedger(session_factory)


@pytest.fixture
def seed_user(session_factory) -> Callable:
    async def _seed(external_id: str = "user-1", credits: int = 3, email: Optional[str] = "reader@example.com"):
        async with session_factory() as session:
            session.add(User(external_id=external_id, email=email, name="Reader", credits=credits))
            await session.commit()
        return external_id

    return _seed


@pytest.fixture
def db_state(session_factory):
    """Read helpers for asserting on database contents."""

    class _State:
        async def credits(self, external_id: str) -> Optional[int]:
            async with session_factory() as session:
                result = await session.execute(select(User.credits).where(User.external_id == external_id))
                return result.scalar_one_or_none()

        async def transactions(self, order_id: Optional[str] = None) -> list[PaymentTransaction]:
            stmt = select(PaymentTransaction).order_by(PaymentTransaction.id)
            if order_id is not None:
                stmt = stmt.where(PaymentTransaction.order_id == order_id)
            async with session_factory() as session:
                return list((await session.execute(stmt)).scalars().all())

        async def audit_statuses(self, transaction_id: int) -> list[str]:
            async with session_factory() as session:
                result = await session.execute(
                    select(PaymentAuditLog.new_status)
                    .where(PaymentAuditLog.transaction_id == transaction_id)
                    .order_by(PaymentAuditLog.id)
                )
                return list(result.scalars().all())

        async def count(self, model) -> int:
            async with session_factory() as session:
                return (await session.execute(select(func.count()).select_from(model))).scalar_one()

    return _State()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def fake_sleep():
    return RecordingSleep()
