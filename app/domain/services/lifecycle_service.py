"""
Order Lifecycle Service - claim / decline / release / complete / undo / cancel

State machine:
    open ──claim──▶ claimed ──complete──▶ done
      ▲               │  ▲                 │
      └───release─────┘  └──undo complete──┘
    open (unclaimed) ──undo release──▶ claimed (same executor only)
    open / claimed ──client cancel──▶ cancelled

Every entry point returns a tagged outcome. Store misses are outcomes,
infrastructure failures raise StoreUnavailableError, and a conditional
update that misses right after a successful locked re-check raises
InconsistentTransitionError.
"""
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    ActiveOrderLimitError,
    InconsistentTransitionError,
    StoreUnavailableError,
)
from app.core.logging import get_logger, order_log_context
from app.db.models.executor import ExecutorRole
from app.db.models.order import Order, OrderKind, OrderStatus
from app.domain.outcomes import (
    ActorProfile,
    ClaimOutcome,
    ClaimStatus,
    CompleteOutcome,
    CompleteStatus,
    DeclineOutcome,
    DeclineStatus,
    PublishResult,
    PublishStatus,
    ReleaseOutcome,
    ReleaseStatus,
    UndoOutcome,
    UndoStatus,
)
from app.domain.services.notification_service import NotificationService
from app.domain.services.order_store import (
    OrderStore,
    can_claim,
    is_cancellable_by,
    is_claimed_by,
    is_completed_by,
    is_reclaimable,
)
from app.domain.services.publication_service import (
    AnnouncementRegistry,
    AnnouncementStatus,
    DismissalRegistry,
    PublicationService,
    announcement_registry,
    dismissal_registry,
)
from app.domain.services.telegram_transport import TelegramTransport
from app.domain.services.undo_service import UndoAction, UndoRecord, UndoWindowTracker, undo_tracker

logger = get_logger(__name__)

DRIVER = ExecutorRole.DRIVER.value
COURIER = ExecutorRole.COURIER.value


def _kind_gate(kind: OrderKind, actor: ActorProfile) -> Optional[ClaimStatus]:
    """
    הרשאת סוג ההזמנה למבצע.

    נסיעה: נהג מאומת בלבד. משלוח: שליח או נהג מאומתים.
    """
    if kind == OrderKind.RIDE:
        if actor.role != DRIVER:
            return ClaimStatus.FORBIDDEN_KIND
        if not actor.is_verified_as(DRIVER):
            return ClaimStatus.DRIVER_UNVERIFIED
        return None

    if actor.role == DRIVER:
        return None if actor.is_verified_as(DRIVER) else ClaimStatus.DRIVER_UNVERIFIED
    if actor.role == COURIER:
        return None if actor.is_verified_as(COURIER) else ClaimStatus.COURIER_UNVERIFIED
    return ClaimStatus.FORBIDDEN_KIND


def _announcement_target(order: Order) -> Optional[AnnouncementStatus]:
    if order.status in (OrderStatus.CLAIMED, OrderStatus.DONE):
        return AnnouncementStatus.CLAIMED
    if order.status == OrderStatus.CANCELLED:
        return AnnouncementStatus.DECLINED
    return None


class OrderLifecycleService:
    def __init__(
        self,
        db: AsyncSession,
        transport: TelegramTransport,
        undo: UndoWindowTracker = undo_tracker,
        announcements: AnnouncementRegistry = announcement_registry,
        dismissals: DismissalRegistry = dismissal_registry,
        undo_ttl_seconds: Optional[float] = None,
    ):
        self.db = db
        self.store = OrderStore(db)
        self.publication = PublicationService(
            db, transport, announcements=announcements, dismissals=dismissals
        )
        self.notifications = NotificationService(db)
        self.undo = undo
        self.dismissals = dismissals
        self.undo_ttl_seconds = undo_ttl_seconds

    @staticmethod
    def _is_exclusive(actor: ActorProfile) -> bool:
        return actor.role in settings.single_active_order_roles

    @asynccontextmanager
    async def _store_errors(self, operation: str, order_id: Optional[int]) -> AsyncIterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error(
                "Order store unavailable",
                extra_data={"operation": operation, "order_id": order_id, "error": str(exc)},
                exc_info=True,
            )
            raise StoreUnavailableError(operation, str(exc)) from exc

    async def _queue_after_commit(
        self,
        notice: Callable[[], Awaitable[Any]],
        order_id: int,
        message_type: str,
    ) -> bool:
        """
        הודעה שנכתבת אחרי שהמעבר כבר נשמר.

        כשל כאן לא מבטל את המעבר - נרשם ללוג בלבד.
        """
        try:
            await notice()
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error(
                "Failed to queue notification",
                extra_data={"order_id": order_id, "message_type": message_type, "error": str(exc)},
                exc_info=True,
            )
            return False
        return True

    # ==================== Creation & publication ====================

    async def create_order(self, **fields: Any) -> Order:
        async with self._store_errors("create_order", None):
            return await self.store.create(**fields)

    async def publish_order(self, order_id: int) -> PublishResult:
        with order_log_context(order_id):
            async with self._store_errors("publish_order", order_id):
                return await self.publication.publish(order_id)

    # ==================== Claim ====================

    async def _claim_locked(
        self,
        order_id: int,
        actor: ActorProfile,
    ) -> tuple[ClaimOutcome, Optional[int]]:
        async with self.store.transaction(serializable=True):
            order = await self.store.lock_order(order_id)
            if order is None:
                return ClaimOutcome(ClaimStatus.NOT_FOUND), None
            if order.status != OrderStatus.OPEN:
                return ClaimOutcome(ClaimStatus.ALREADY_PROCESSED, order), None
            if not can_claim(order, actor.city):
                return ClaimOutcome(ClaimStatus.CITY_MISMATCH, order), None

            gate = _kind_gate(order.kind, actor)
            if gate is not None:
                return ClaimOutcome(gate, order), None

            exclusive = self._is_exclusive(actor)
            if exclusive:
                held = await self.store.find_claimed_order_id(actor.actor_id, exclude_order_id=order_id)
                if held is not None:
                    return ClaimOutcome(ClaimStatus.LIMIT_EXCEEDED, order), None

            message_id = order.channel_message_id
            claimed = await self.store.try_claim(order_id, actor.actor_id, actor.city, exclusive=exclusive)
            if claimed is None:
                # טרנזקציה מקבילה ניצחה בין הנעילה לעדכון
                return ClaimOutcome(ClaimStatus.ALREADY_TAKEN, order), None
            return ClaimOutcome(ClaimStatus.CLAIMED, claimed), message_id

    async def claim(self, order_id: int, actor: ActorProfile) -> ClaimOutcome:
        with order_log_context(order_id):
            async with self._store_errors("claim", order_id):
                try:
                    outcome, message_id = await self._claim_locked(order_id, actor)
                except ActiveOrderLimitError:
                    return ClaimOutcome(ClaimStatus.LIMIT_EXCEEDED)

                if outcome.status != ClaimStatus.CLAIMED:
                    logger.info(
                        "Claim rejected",
                        extra_data={
                            "order_id": order_id,
                            "actor_id": actor.actor_id,
                            "outcome": outcome.status.value,
                        },
                    )
                    return outcome

                await self.store.refresh_active_gauge()
                self.dismissals.clear(order_id)
                await self.publication.reflect(
                    outcome.order,
                    AnnouncementStatus.CLAIMED,
                    actor_label=actor.display_name,
                    message_id=message_id,
                )
                logger.info(
                    "Order claimed",
                    extra_data={"order_id": order_id, "actor_id": actor.actor_id},
                )
                return outcome

    # ==================== Decline ====================

    async def decline(self, order_id: int, actor: ActorProfile) -> DeclineOutcome:
        with order_log_context(order_id):
            async with self._store_errors("decline", order_id):
                order = await self.store.get(order_id)
                await self.db.commit()
                if order is None:
                    return DeclineOutcome(DeclineStatus.NOT_FOUND)

                if order.status != OrderStatus.OPEN:
                    # פעולה על הזמנה שכבר יצאה מ-open: רק ניקוי וסנכרון ההודעה
                    self.dismissals.clear(order_id)
                    target = _announcement_target(order)
                    if target is not None:
                        await self.publication.reflect(order, target)
                    return DeclineOutcome(DeclineStatus.ALREADY_PROCESSED, order)

                if not self.dismissals.add(order_id, actor.actor_id):
                    return DeclineOutcome(DeclineStatus.ALREADY_DECLINED, order)

                logger.info(
                    "Order declined by executor",
                    extra_data={"order_id": order_id, "actor_id": actor.actor_id},
                )
                return DeclineOutcome(DeclineStatus.DECLINED, order)

    # ==================== Release ====================

    async def _release_locked(
        self,
        order_id: int,
        actor: ActorProfile,
    ) -> tuple[ReleaseStatus, Optional[Order], Optional[int]]:
        async with self.store.transaction(serializable=True):
            order = await self.store.lock_order(order_id)
            if order is None:
                return ReleaseStatus.NOT_FOUND, None, None
            if not is_claimed_by(order, actor.actor_id):
                if order.status == OrderStatus.CLAIMED:
                    return ReleaseStatus.FORBIDDEN, order, None
                return ReleaseStatus.NOT_CLAIMED, order, None

            message_id = order.channel_message_id
            released = await self.store.try_release(order_id, actor.actor_id)
            if released is None:
                raise InconsistentTransitionError(order_id, "release")
            return ReleaseStatus.RELEASED, released, message_id

    async def release(self, order_id: int, actor: ActorProfile) -> ReleaseOutcome:
        """
        שחרור הזמנה על ידי המבצע שמחזיק בה.

        אחרי השמירה: מחיקת ההודעה הישנה, פרסום מחדש, פתיחת חלון ביטול
        והודעה למזמין (חיפוש מבצע חדש או טיפול ידני כשהפרסום נכשל).
        """
        with order_log_context(order_id):
            async with self._store_errors("release", order_id):
                status, released, message_id = await self._release_locked(order_id, actor)
            if status != ReleaseStatus.RELEASED:
                return ReleaseOutcome(status, released)

            # מכאן השחרור שמור: כשלים בהמשך נרשמים ללוג ולא מבטלים אותו.
            # הצילום מנותק מה-session כדי ש-rollback מאוחר לא יפיג אותו
            self.db.expunge(released)
            self.undo.open(order_id, actor.actor_id, UndoAction.RELEASE, ttl_seconds=self.undo_ttl_seconds)
            self.dismissals.clear(order_id)
            await self.store.refresh_active_gauge()
            republish = await self._republish_after_release(order_id, message_id)

            if not republish.reachable:
                logger.warning(
                    "Released order could not be republished, manual handling required",
                    extra_data={"order_id": order_id, "publish_status": republish.status.value},
                )

            order = await self._reload_after_commit(order_id) or released
            queued = await self._queue_after_commit(
                lambda: self.notifications.queue_release_notice(order, rematching=republish.reachable),
                order_id,
                "order_released",
            )
            if not queued:
                order = released
            logger.info(
                "Order released",
                extra_data={
                    "order_id": order_id,
                    "actor_id": actor.actor_id,
                    "publish_status": republish.status.value,
                },
            )
            return ReleaseOutcome(ReleaseStatus.RELEASED, order, republish)

    async def _republish_after_release(self, order_id: int, message_id: Optional[int]) -> PublishResult:
        """
        מחיקת ההודעה הישנה ופרסום מחדש אחרי שהשחרור נשמר.

        כשל ב-store מדווח כ-publish_failed: ההזמנה נשארת פתוחה והמזמין
        מקבל הודעת טיפול ידני.
        """
        try:
            await self.publication.retract(order_id, message_id)
            return await self.publication.publish(order_id)
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error(
                "Failed to republish released order",
                extra_data={"order_id": order_id, "error": str(exc)},
                exc_info=True,
            )
            return PublishResult(PublishStatus.PUBLISH_FAILED)

    async def _reload_after_commit(self, order_id: int) -> Optional[Order]:
        try:
            order = await self.store.get(order_id)
            await self.db.commit()
            return order
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.warning(
                "Failed to reload order after commit",
                extra_data={"order_id": order_id, "error": str(exc)},
            )
            return None

    # ==================== Complete ====================

    async def _complete_locked(
        self,
        order_id: int,
        actor: ActorProfile,
    ) -> tuple[CompleteStatus, Optional[Order]]:
        async with self.store.transaction(serializable=True):
            order = await self.store.lock_order(order_id)
            if order is None:
                return CompleteStatus.NOT_FOUND, None
            if order.status != OrderStatus.CLAIMED:
                return CompleteStatus.NOT_CLAIMED, order
            if order.claimed_by != actor.actor_id:
                return CompleteStatus.FORBIDDEN, order

            completed = await self.store.try_complete(order_id, actor.actor_id)
            if completed is None:
                raise InconsistentTransitionError(order_id, "complete")
            await self.notifications.queue_completion_notice(completed)
            return CompleteStatus.COMPLETED, completed

    async def complete(self, order_id: int, actor: ActorProfile) -> CompleteOutcome:
        with order_log_context(order_id):
            async with self._store_errors("complete", order_id):
                status, order = await self._complete_locked(order_id, actor)
                if status != CompleteStatus.COMPLETED:
                    return CompleteOutcome(status, order)

                await self.store.refresh_active_gauge()
                self.dismissals.clear(order_id)
                self.undo.open(order_id, actor.actor_id, UndoAction.COMPLETE, ttl_seconds=self.undo_ttl_seconds)
                logger.info(
                    "Order completed",
                    extra_data={"order_id": order_id, "actor_id": actor.actor_id},
                )
                return CompleteOutcome(CompleteStatus.COMPLETED, order)

    # ==================== Undo ====================

    def _take_undo_record(
        self,
        order_id: int,
        actor: ActorProfile,
        action: UndoAction,
    ) -> tuple[Optional[UndoRecord], Optional[UndoStatus]]:
        """(הרשומה שנצרכה, None) או (None, הסטטוס לדחייה)"""
        record = self.undo.peek(order_id)
        if record is None:
            return None, UndoStatus.EXPIRED
        if record.executor_id != actor.actor_id or record.action != action:
            return None, UndoStatus.FORBIDDEN
        consumed = self.undo.consume(order_id, executor_id=actor.actor_id, action=action)
        if consumed is None:
            return None, UndoStatus.EXPIRED
        return consumed, None

    def _give_back_undo_record(self, record: UndoRecord) -> None:
        """כשל תשתית לא שורף את חלון הביטול; הרשומה חוזרת עם יתרת הזמן שלה"""
        if self.undo.restore(record):
            logger.info(
                "Undo record restored after store failure",
                extra_data={"order_id": record.order_id, "executor_id": record.executor_id},
            )

    async def _undo_release_locked(
        self,
        order_id: int,
        actor: ActorProfile,
    ) -> tuple[UndoStatus, Optional[Order], Optional[int]]:
        exclusive = self._is_exclusive(actor)
        async with self.store.transaction(serializable=True):
            order = await self.store.lock_order(order_id)
            if order is None:
                return UndoStatus.NOT_FOUND, None, None
            if not is_reclaimable(order):
                return UndoStatus.TOO_LATE, order, None
            if exclusive:
                held = await self.store.find_claimed_order_id(actor.actor_id, exclude_order_id=order_id)
                if held is not None:
                    return UndoStatus.LIMIT_EXCEEDED, order, None

            message_id = order.channel_message_id
            restored = await self.store.try_reclaim_after_release(order_id, actor.actor_id, exclusive=exclusive)
            if restored is None:
                return UndoStatus.TOO_LATE, order, None
            return UndoStatus.RESTORED, restored, message_id

    async def undo_release(self, order_id: int, actor: ActorProfile) -> UndoOutcome:
        with order_log_context(order_id):
            record, rejected = self._take_undo_record(order_id, actor, UndoAction.RELEASE)
            if rejected is not None:
                return UndoOutcome(rejected)

            try:
                async with self._store_errors("undo_release", order_id):
                    status, order, message_id = await self._undo_release_locked(order_id, actor)
            except ActiveOrderLimitError:
                return UndoOutcome(UndoStatus.LIMIT_EXCEEDED)
            except StoreUnavailableError:
                self._give_back_undo_record(record)
                raise

            if status != UndoStatus.RESTORED:
                logger.info(
                    "Undo release rejected",
                    extra_data={"order_id": order_id, "actor_id": actor.actor_id, "outcome": status.value},
                )
                return UndoOutcome(status, order)

            await self.store.refresh_active_gauge()
            self.dismissals.clear(order_id)
            # ההזמנה פורסמה מחדש בשחרור; מסירים את ההודעה החדשה
            await self.publication.reflect(
                order,
                AnnouncementStatus.CLAIMED,
                actor_label=actor.display_name,
                message_id=message_id,
            )
            await self._queue_after_commit(
                lambda: self.notifications.queue_resumed_notice(order),
                order_id,
                "order_resumed",
            )
            logger.info(
                "Order release undone",
                extra_data={"order_id": order_id, "actor_id": actor.actor_id},
            )
            return UndoOutcome(UndoStatus.RESTORED, order)

    async def _undo_complete_locked(
        self,
        order_id: int,
        actor: ActorProfile,
    ) -> tuple[UndoStatus, Optional[Order]]:
        exclusive = self._is_exclusive(actor)
        async with self.store.transaction(serializable=True):
            order = await self.store.lock_order(order_id)
            if order is None:
                return UndoStatus.NOT_FOUND, None
            if not is_completed_by(order, actor.actor_id):
                return UndoStatus.TOO_LATE, order
            if exclusive:
                held = await self.store.find_claimed_order_id(actor.actor_id, exclude_order_id=order_id)
                if held is not None:
                    return UndoStatus.LIMIT_EXCEEDED, order

            restored = await self.store.try_restore_completed(order_id, actor.actor_id, exclusive=exclusive)
            if restored is None:
                return UndoStatus.TOO_LATE, order
            await self.notifications.queue_restored_notice(restored)
            return UndoStatus.RESTORED, restored

    async def undo_complete(self, order_id: int, actor: ActorProfile) -> UndoOutcome:
        with order_log_context(order_id):
            record, rejected = self._take_undo_record(order_id, actor, UndoAction.COMPLETE)
            if rejected is not None:
                return UndoOutcome(rejected)

            try:
                async with self._store_errors("undo_complete", order_id):
                    status, order = await self._undo_complete_locked(order_id, actor)
            except ActiveOrderLimitError:
                return UndoOutcome(UndoStatus.LIMIT_EXCEEDED)
            except StoreUnavailableError:
                self._give_back_undo_record(record)
                raise

            if status != UndoStatus.RESTORED:
                logger.info(
                    "Undo complete rejected",
                    extra_data={"order_id": order_id, "actor_id": actor.actor_id, "outcome": status.value},
                )
                return UndoOutcome(status, order)

            await self.store.refresh_active_gauge()
            self.dismissals.clear(order_id)
            logger.info(
                "Order completion undone",
                extra_data={"order_id": order_id, "actor_id": actor.actor_id},
            )
            return UndoOutcome(UndoStatus.RESTORED, order)

    # ==================== Client cancel ====================

    async def _cancel_locked(self, order_id: int, client_id: int) -> Optional[Order]:
        async with self.store.transaction(serializable=True):
            order = await self.store.lock_order(order_id)
            if not is_cancellable_by(order, client_id):
                return None

            previous_executor = order.claimed_by
            cancelled = await self.store.try_cancel_by_client(order_id, client_id)
            if cancelled is None:
                raise InconsistentTransitionError(order_id, "cancel")
            if previous_executor is not None:
                await self.notifications.queue_client_cancel_notice(cancelled, previous_executor)
            return cancelled

    async def cancel_client_order(self, order_id: int, client_id: int) -> Optional[Order]:
        with order_log_context(order_id):
            async with self._store_errors("cancel_client_order", order_id):
                cancelled = await self._cancel_locked(order_id, client_id)
                if cancelled is None:
                    return None

                await self.store.refresh_active_gauge()
                self.dismissals.clear(order_id)
                self.undo.discard(order_id)
                await self.publication.reflect(cancelled, AnnouncementStatus.DECLINED)
                logger.info(
                    "Order cancelled by client",
                    extra_data={"order_id": order_id, "client_id": client_id},
                )
                return cancelled

    # ==================== Executor views ====================

    async def feed(self, actor: ActorProfile, limit: int = 10) -> list[Order]:
        """הזמנות פתוחות בעיר של המבצע, בלי אלה שכבר דחה"""
        if not actor.city:
            return []
        kinds = [kind for kind in OrderKind if _kind_gate(kind, actor) is None]
        if not kinds:
            return []
        async with self._store_errors("feed", None):
            orders = await self.store.list_open_by_city(
                actor.city,
                limit=limit,
                kinds=kinds,
                exclude_ids=self.dismissals.dismissed_by(actor.actor_id),
            )
            await self.db.commit()
        return orders

    async def active_orders(self, actor: ActorProfile) -> list[Order]:
        async with self._store_errors("active_orders", None):
            orders = await self.store.find_active_for_executor(actor.actor_id)
            await self.db.commit()
        return orders
