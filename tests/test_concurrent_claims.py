"""
Tests for racing claims - several sessions hit the same order at once

Every claimant gets its own connection to a file-backed SQLite database,
so the row lock and the exclusive claim index are exercised across real
connections and not through one shared session.
"""
import asyncio

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.db.database import Base
from app.db.models.order import Order, OrderStatus
from app.domain.outcomes import ClaimStatus
from app.domain.services.lifecycle_service import OrderLifecycleService
from app.domain.services.undo_service import UndoWindowTracker

from tests.conftest import FakeTransport, make_actor


@pytest.fixture
async def file_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/orders.db", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(file_engine) -> async_sessionmaker:
    return async_sessionmaker(file_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    """order_factory כותב לאותו קובץ שהמתחרים קוראים ממנו"""
    async with session_factory() as session:
        yield session


async def _claim_in_own_session(session_factory, order_id: int, actor_id: int):
    async with session_factory() as session:
        engine = OrderLifecycleService(session, FakeTransport(), undo=UndoWindowTracker())
        return await engine.claim(order_id, make_actor(actor_id))


class TestConcurrentClaims:
    @pytest.mark.asyncio
    async def test_single_winner_among_racing_drivers(self, session_factory, order_factory):
        """חמישה נהגים על אותה הזמנה - בדיוק אחד זוכה"""
        order = await order_factory()
        drivers = [101, 102, 103, 104, 105]

        outcomes = await asyncio.gather(
            *(_claim_in_own_session(session_factory, order.id, driver) for driver in drivers)
        )

        statuses = [outcome.status for outcome in outcomes]
        assert statuses.count(ClaimStatus.CLAIMED) == 1
        losers = [status for status in statuses if status != ClaimStatus.CLAIMED]
        assert set(losers) <= {ClaimStatus.ALREADY_TAKEN, ClaimStatus.ALREADY_PROCESSED}

        winner = drivers[statuses.index(ClaimStatus.CLAIMED)]
        async with session_factory() as session:
            stored = await session.get(Order, order.id)
        assert stored.status == OrderStatus.CLAIMED
        assert stored.claimed_by == winner

    @pytest.mark.asyncio
    async def test_exclusive_driver_racing_two_orders_keeps_one(self, session_factory, order_factory):
        """נהג אחד לוחץ על שתי הזמנות במקביל - רק אחת נתפסת"""
        first = await order_factory()
        second = await order_factory()

        outcomes = await asyncio.gather(
            _claim_in_own_session(session_factory, first.id, 101),
            _claim_in_own_session(session_factory, second.id, 101),
        )

        statuses = sorted(outcome.status.value for outcome in outcomes)
        assert statuses == sorted([ClaimStatus.CLAIMED.value, ClaimStatus.LIMIT_EXCEEDED.value])

        async with session_factory() as session:
            held = await session.scalar(
                select(func.count(Order.id)).where(
                    Order.status == OrderStatus.CLAIMED,
                    Order.claimed_by == 101,
                )
            )
        assert held == 1

        loser = outcomes[0] if outcomes[0].status == ClaimStatus.LIMIT_EXCEEDED else outcomes[1]
        loser_id = first.id if loser is outcomes[0] else second.id
        async with session_factory() as session:
            still_open = await session.get(Order, loser_id)
        assert still_open.status == OrderStatus.OPEN
        assert still_open.claimed_by is None
