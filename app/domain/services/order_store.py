"""
Order Store - guarded order transitions

Implements every mutation of the orders table as:
1. Lock the order row (SELECT ... FOR UPDATE)
2. Re-check the precondition on the locked row
3. Conditional UPDATE whose WHERE repeats the precondition
4. Return the refreshed order, or None when the precondition failed

The conditional WHERE keeps the update correct for callers that hold a
stale snapshot of the row, and under serializable isolation on PostgreSQL.
"""
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Iterable, Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import ActiveOrderLimitError
from app.core.logging import get_logger
from app.core.redis_client import get_redis
from app.db.models.order import Order, OrderKind, OrderStatus, ACTIVE_ORDER_STATUSES

logger = get_logger(__name__)


# ==================== Transition preconditions ====================
# נבדקות על השורה הנעולה, גם כאן וגם במנוע מחזור החיים

def can_claim(order: Optional[Order], city: Optional[str]) -> bool:
    return (
        order is not None
        and order.status == OrderStatus.OPEN
        and bool(city)
        and order.city == city
    )


def is_claimed_by(order: Optional[Order], actor_id: int) -> bool:
    return order is not None and order.status == OrderStatus.CLAIMED and order.claimed_by == actor_id


def is_reclaimable(order: Optional[Order]) -> bool:
    return order is not None and order.status == OrderStatus.OPEN and order.claimed_by is None


def is_completed_by(order: Optional[Order], actor_id: int) -> bool:
    return order is not None and order.status == OrderStatus.DONE and order.claimed_by == actor_id


def is_cancellable_by(order: Optional[Order], client_id: int) -> bool:
    return (
        order is not None
        and order.status in ACTIVE_ORDER_STATUSES
        and order.client_id == client_id
    )


class OrderStore:
    """
    Durable order storage.

    Low level ``lock_order`` / ``try_*`` methods must run inside
    ``transaction()``. The high level methods (``claim``, ``release`` ...)
    open their own transaction and return the updated order or None.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    def _dialect_name(self) -> str:
        return self.db.get_bind().dialect.name

    @asynccontextmanager
    async def transaction(self, serializable: bool = False) -> AsyncIterator["OrderStore"]:
        """
        Commit on success, roll back and re-raise on any error.

        SERIALIZABLE is applied on PostgreSQL only, and only when the
        session has not started a transaction yet.
        """
        if serializable and self._dialect_name() == "postgresql" and not self.db.in_transaction():
            await self.db.connection(execution_options={"isolation_level": "SERIALIZABLE"})
        try:
            yield self
        except Exception:
            await self.db.rollback()
            raise
        await self.db.commit()

    # ==================== Reads ====================

    async def get(self, order_id: int) -> Optional[Order]:
        result = await self.db.execute(
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def lock_order(self, order_id: int) -> Optional[Order]:
        """נעילת שורת ההזמנה עד סוף הטרנזקציה"""
        result = await self.db.execute(
            select(Order)
            .where(Order.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_claimed_order_id(
        self,
        actor_id: int,
        exclude_order_id: Optional[int] = None,
    ) -> Optional[int]:
        """הזמנה אחרת שהמבצע מחזיק כרגע בסטטוס claimed"""
        query = select(Order.id).where(
            Order.claimed_by == actor_id,
            Order.status == OrderStatus.CLAIMED,
        )
        if exclude_order_id is not None:
            query = query.where(Order.id != exclude_order_id)
        result = await self.db.execute(query.limit(1))
        return result.scalar_one_or_none()

    async def find_active_for_executor(self, actor_id: int) -> list[Order]:
        result = await self.db.execute(
            select(Order)
            .where(Order.claimed_by == actor_id, Order.status == OrderStatus.CLAIMED)
            .order_by(Order.claimed_at.desc())
        )
        return list(result.scalars().all())

    async def list_open_by_city(
        self,
        city: str,
        limit: int = 50,
        kinds: Optional[Iterable[OrderKind]] = None,
        exclude_ids: Optional[Iterable[int]] = None,
    ) -> list[Order]:
        """הזמנות פתוחות בעיר; הסינון נעשה בשאילתה כדי שה-limit יחול אחריו"""
        query = select(Order).where(Order.city == city, Order.status == OrderStatus.OPEN)
        if kinds is not None:
            query = query.where(Order.kind.in_(list(kinds)))
        excluded = list(exclude_ids or ())
        if excluded:
            query = query.where(Order.id.not_in(excluded))
        result = await self.db.execute(
            query.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit)
        )
        return list(result.scalars().all())

    async def count_active(self) -> int:
        result = await self.db.execute(
            select(func.count(Order.id)).where(Order.status.in_(ACTIVE_ORDER_STATUSES))
        )
        return int(result.scalar_one())

    # ==================== Conditional updates (inside transaction) ====================

    async def _conditional_update(
        self,
        order_id: int,
        conditions: tuple,
        values: dict[str, Any],
    ) -> Optional[Order]:
        result = await self.db.execute(
            update(Order)
            .where(Order.id == order_id, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return await self.db.get(Order, order_id, populate_existing=True)

    async def _exclusive_update(
        self,
        order_id: int,
        actor_id: int,
        conditions: tuple,
        values: dict[str, Any],
    ) -> Optional[Order]:
        """עדכון שעלול להפר את האינדקס החלקי של הזמנה פעילה אחת"""
        try:
            async with self.db.begin_nested():
                return await self._conditional_update(order_id, conditions, values)
        except IntegrityError as exc:
            logger.info(
                "Single active order index rejected transition",
                extra_data={"order_id": order_id, "actor_id": actor_id},
            )
            raise ActiveOrderLimitError(order_id, actor_id) from exc

    async def try_claim(
        self,
        order_id: int,
        actor_id: int,
        city: str,
        exclusive: bool = False,
    ) -> Optional[Order]:
        """open ∧ city match → claimed"""
        return await self._exclusive_update(
            order_id,
            actor_id,
            (
                Order.status == OrderStatus.OPEN,
                Order.city == city,
                Order.claimed_by.is_(None),
            ),
            {
                "status": OrderStatus.CLAIMED,
                "claimed_by": actor_id,
                "claimed_at": datetime.utcnow(),
                "exclusive_claim": exclusive,
                "channel_message_id": None,
            },
        )

    async def try_release(self, order_id: int, actor_id: int) -> Optional[Order]:
        """claimed ∧ claimed_by=actor → open"""
        return await self._conditional_update(
            order_id,
            (
                Order.status == OrderStatus.CLAIMED,
                Order.claimed_by == actor_id,
            ),
            {
                "status": OrderStatus.OPEN,
                "claimed_by": None,
                "claimed_at": None,
                "exclusive_claim": False,
                "channel_message_id": None,
            },
        )

    async def try_reclaim_after_release(
        self,
        order_id: int,
        actor_id: int,
        exclusive: bool = False,
    ) -> Optional[Order]:
        """open ∧ claimed_by IS NULL → claimed (undo release)"""
        return await self._exclusive_update(
            order_id,
            actor_id,
            (
                Order.status == OrderStatus.OPEN,
                Order.claimed_by.is_(None),
            ),
            {
                "status": OrderStatus.CLAIMED,
                "claimed_by": actor_id,
                "claimed_at": datetime.utcnow(),
                "exclusive_claim": exclusive,
                "channel_message_id": None,
            },
        )

    async def try_complete(self, order_id: int, actor_id: int) -> Optional[Order]:
        """claimed ∧ claimed_by=actor → done"""
        return await self._conditional_update(
            order_id,
            (
                Order.status == OrderStatus.CLAIMED,
                Order.claimed_by == actor_id,
            ),
            {
                "status": OrderStatus.DONE,
                "completed_at": datetime.utcnow(),
                "exclusive_claim": False,
            },
        )

    async def try_restore_completed(
        self,
        order_id: int,
        actor_id: int,
        exclusive: bool = False,
    ) -> Optional[Order]:
        """done ∧ claimed_by=actor → claimed (undo complete)"""
        return await self._exclusive_update(
            order_id,
            actor_id,
            (
                Order.status == OrderStatus.DONE,
                Order.claimed_by == actor_id,
            ),
            {
                "status": OrderStatus.CLAIMED,
                "completed_at": None,
                "exclusive_claim": exclusive,
            },
        )

    async def try_cancel_by_client(self, order_id: int, client_id: int) -> Optional[Order]:
        """status ∈ {open, claimed} ∧ client match → cancelled"""
        return await self._conditional_update(
            order_id,
            (
                Order.status.in_(ACTIVE_ORDER_STATUSES),
                Order.client_id == client_id,
            ),
            {
                "status": OrderStatus.CANCELLED,
                "claimed_by": None,
                "claimed_at": None,
                "exclusive_claim": False,
            },
        )

    async def set_channel_message_id(self, order_id: int, message_id: Optional[int]) -> None:
        await self.db.execute(
            update(Order)
            .where(Order.id == order_id)
            .values(channel_message_id=message_id)
            .execution_options(synchronize_session=False)
        )

    # ==================== Single-transaction operations ====================

    async def create(self, **fields: Any) -> Order:
        """יצירת הזמנה חדשה בסטטוס open"""
        order = Order(status=OrderStatus.OPEN, **fields)
        async with self.transaction():
            self.db.add(order)
        await self.db.refresh(order)
        logger.info(
            "Order created",
            extra_data={"order_id": order.id, "short_id": order.short_id, "city": order.city},
        )
        await self.refresh_active_gauge()
        return order

    async def _locked_transition(
        self,
        order_id: int,
        precondition: Callable[[Optional[Order]], bool],
        apply: Callable[[], Any],
    ) -> Optional[Order]:
        """lock → re-check → conditional update, in one transaction"""
        async with self.transaction(serializable=True):
            order = await self.lock_order(order_id)
            if not precondition(order):
                return None
            updated = await apply()
        if updated is not None:
            await self.refresh_active_gauge()
        return updated

    async def claim(
        self,
        order_id: int,
        actor_id: int,
        city: str,
        exclusive: bool = False,
    ) -> Optional[Order]:
        return await self._locked_transition(
            order_id,
            lambda order: can_claim(order, city),
            lambda: self.try_claim(order_id, actor_id, city, exclusive=exclusive),
        )

    async def release(self, order_id: int, actor_id: int) -> Optional[Order]:
        return await self._locked_transition(
            order_id,
            lambda order: is_claimed_by(order, actor_id),
            lambda: self.try_release(order_id, actor_id),
        )

    async def reclaim_after_release(
        self,
        order_id: int,
        actor_id: int,
        exclusive: bool = False,
    ) -> Optional[Order]:
        return await self._locked_transition(
            order_id,
            is_reclaimable,
            lambda: self.try_reclaim_after_release(order_id, actor_id, exclusive=exclusive),
        )

    async def complete(self, order_id: int, actor_id: int) -> Optional[Order]:
        return await self._locked_transition(
            order_id,
            lambda order: is_claimed_by(order, actor_id),
            lambda: self.try_complete(order_id, actor_id),
        )

    async def restore_completed(
        self,
        order_id: int,
        actor_id: int,
        exclusive: bool = False,
    ) -> Optional[Order]:
        return await self._locked_transition(
            order_id,
            lambda order: is_completed_by(order, actor_id),
            lambda: self.try_restore_completed(order_id, actor_id, exclusive=exclusive),
        )

    async def cancel_by_client(self, order_id: int, client_id: int) -> Optional[Order]:
        return await self._locked_transition(
            order_id,
            lambda order: is_cancellable_by(order, client_id),
            lambda: self.try_cancel_by_client(order_id, client_id),
        )

    # ==================== Derived gauge ====================

    async def refresh_active_gauge(self) -> None:
        """
        Write the open+claimed count to Redis after a committed mutation.

        Best effort: failures are logged and never raised.
        """
        try:
            count = await self.count_active()
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.warning(
                "Failed to count active orders for gauge",
                extra_data={"error": str(exc)},
            )
            return

        try:
            redis = await get_redis()
            await redis.set(settings.ACTIVE_ORDERS_GAUGE_KEY, str(count))
        except Exception as exc:
            logger.warning(
                "Failed to update active orders gauge",
                extra_data={"count": count, "error": str(exc)},
            )
