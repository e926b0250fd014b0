"""
Publication Service - one announcement message per open order

Keeps the drivers channel message of every open order in sync with the
order row: publish once, remove or freeze it when the order leaves open.

The announcement cache and the dismissal sets below are process-local
derived state. The order row is authoritative and both may be empty at
any time; a cache miss is rebuilt from the row.
"""
import enum
import math
import threading
import time
from dataclasses import dataclass, replace
from html import escape
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ExternalServiceException
from app.core.logging import get_logger
from app.db.models.order import Order, OrderKind, OrderStatus
from app.domain.outcomes import PublishResult, PublishStatus
from app.domain.services.channel_service import ChannelService, DRIVERS_CHANNEL
from app.domain.services.order_store import OrderStore
from app.domain.services.telegram_transport import InlineButton, Keyboard, TelegramTransport

logger = get_logger(__name__)

ACCEPT_ACTION_PREFIX = "order:accept"
DECLINE_ACTION_PREFIX = "order:decline"

_KIND_LABELS = {
    OrderKind.RIDE: "נסיעה",
    OrderKind.DELIVERY: "משלוח",
}


class AnnouncementStatus(str, enum.Enum):
    PENDING = "pending"
    CLAIMED = "claimed"
    DECLINED = "declined"


@dataclass(frozen=True)
class AnnouncementState:
    order_id: int
    chat_id: int
    message_id: int
    base_text: str
    status: AnnouncementStatus = AnnouncementStatus.PENDING
    rendered_status: Optional[AnnouncementStatus] = None
    decided_by: Optional[str] = None
    decided_at: Optional[float] = None
    deleted: bool = False


class AnnouncementRegistry:
    """order_id → AnnouncementState, thread-safe"""

    def __init__(self):
        self._states: dict[int, AnnouncementState] = {}
        self._lock = threading.Lock()

    def get(self, order_id: int) -> Optional[AnnouncementState]:
        with self._lock:
            return self._states.get(order_id)

    def put(self, state: AnnouncementState) -> None:
        with self._lock:
            self._states[state.order_id] = state

    def pop(self, order_id: int) -> Optional[AnnouncementState]:
        with self._lock:
            return self._states.pop(order_id, None)

    def reset(self) -> None:
        with self._lock:
            self._states.clear()


class DismissalRegistry:
    """order_id → executors who declined it; suppresses repeat prompts"""

    def __init__(self):
        self._dismissed: dict[int, set[int]] = {}
        self._lock = threading.Lock()

    def add(self, order_id: int, actor_id: int) -> bool:
        """True אם המבצע נוסף עכשיו, False אם כבר דחה קודם"""
        with self._lock:
            actors = self._dismissed.setdefault(order_id, set())
            if actor_id in actors:
                return False
            actors.add(actor_id)
            return True

    def has(self, order_id: int, actor_id: int) -> bool:
        with self._lock:
            return actor_id in self._dismissed.get(order_id, ())

    def dismissed_by(self, actor_id: int) -> set[int]:
        """כל ההזמנות שהמבצע דחה, לסינון בשאילתת הפיד"""
        with self._lock:
            return {order_id for order_id, actors in self._dismissed.items() if actor_id in actors}

    def clear(self, order_id: int) -> None:
        with self._lock:
            self._dismissed.pop(order_id, None)

    def reset(self) -> None:
        with self._lock:
            self._dismissed.clear()


announcement_registry = AnnouncementRegistry()
dismissal_registry = DismissalRegistry()


def _format_distance(distance_km: Optional[float]) -> str:
    if distance_km is None or not math.isfinite(distance_km):
        return "לא ידוע"
    if distance_km < 0.1:
        return "<0.1"
    return f"{distance_km:.1f}"


def _format_price(amount: int, currency: str) -> str:
    return f"{amount:,} {currency}"


def build_announcement_text(order: Order) -> str:
    lines = [
        f"🆕 הזמנה חדשה ({_KIND_LABELS.get(order.kind, order.kind)})",
        f"№{escape(order.short_id)}",
        "",
        f"📍 איסוף: {escape(order.pickup_address)}",
        f"🎯 יעד: {escape(order.dropoff_address)}",
        f"📏 מרחק: {_format_distance(order.distance_km)} ק\"מ",
        f"💰 מחיר: {_format_price(order.price_amount, escape(order.price_currency))}",
    ]
    if order.eta_minutes:
        lines.append(f"⏱ זמן משוער: {order.eta_minutes} דק'")
    if order.client_phone:
        lines.append(f"📞 טלפון: {escape(order.client_phone)}")
    if order.notes and order.notes.strip():
        lines.extend(["", f"📝 הערות: {escape(order.notes.strip())}"])
    return "\n".join(lines)


def build_action_keyboard(order_id: int) -> Keyboard:
    return [
        [InlineButton("✅ לוקח את ההזמנה", f"{ACCEPT_ACTION_PREFIX}:{order_id}")],
        [InlineButton("❌ לא רלוונטי עבורי", f"{DECLINE_ACTION_PREFIX}:{order_id}")],
    ]


def _status_from_order(order: Order) -> AnnouncementStatus:
    if order.status in (OrderStatus.CLAIMED, OrderStatus.DONE):
        return AnnouncementStatus.CLAIMED
    if order.status == OrderStatus.CANCELLED:
        return AnnouncementStatus.DECLINED
    return AnnouncementStatus.PENDING


def _decision_suffix(state: AnnouncementState) -> str:
    label = state.decided_by or "משתתף לא ידוע"
    if state.status == AnnouncementStatus.CLAIMED:
        return f"✅ ההזמנה נלקחה: {escape(label)}."
    if state.status == AnnouncementStatus.DECLINED:
        if state.decided_by:
            return f"❌ ההזמנה אינה זמינה. סימן: {escape(label)}."
        return "❌ ההזמנה אינה זמינה."
    return ""


class PublicationService:
    def __init__(
        self,
        db: AsyncSession,
        transport: TelegramTransport,
        announcements: AnnouncementRegistry = announcement_registry,
        dismissals: DismissalRegistry = dismissal_registry,
        channels: Optional[ChannelService] = None,
    ):
        self.db = db
        self.transport = transport
        self.announcements = announcements
        self.dismissals = dismissals
        self.channels = channels or ChannelService(db)
        self.store = OrderStore(db)

    async def publish(self, order_id: int) -> PublishResult:
        """
        פרסום ההזמנה בערוץ הנהגים, לכל היותר פעם אחת.

        הקריאה ושמירת message_id מתבצעות באותה טרנזקציה שמחזיקה את
        נעילת השורה, כך ששני פרסומים מקבילים לא ייצרו שתי הודעות.
        """
        sent: Optional[tuple[int, int]] = None
        try:
            async with self.store.transaction(serializable=True):
                chat_id = await self.channels.get_destination(DRIVERS_CHANNEL)
                if chat_id is None:
                    logger.warning(
                        "Drivers channel is not configured, skipping publish",
                        extra_data={"order_id": order_id},
                    )
                    return PublishResult(PublishStatus.MISSING_DESTINATION)

                order = await self.store.lock_order(order_id)
                if order is None:
                    return PublishResult(PublishStatus.NOT_FOUND)
                if order.status != OrderStatus.OPEN:
                    return PublishResult(PublishStatus.NOT_OPEN)

                text = build_announcement_text(order)
                if order.channel_message_id:
                    self.announcements.put(
                        AnnouncementState(
                            order_id=order.id,
                            chat_id=chat_id,
                            message_id=order.channel_message_id,
                            base_text=text,
                            status=_status_from_order(order),
                        )
                    )
                    return PublishResult(PublishStatus.ALREADY_PUBLISHED, order.channel_message_id)

                message_id = await self.transport.send_message(
                    chat_id, text, build_action_keyboard(order.id)
                )
                sent = (chat_id, message_id)
                await self.store.set_channel_message_id(order.id, message_id)
        except ExternalServiceException as exc:
            logger.error(
                "Failed to publish order to drivers channel",
                extra_data={"order_id": order_id, "error": exc.message},
            )
            return PublishResult(PublishStatus.PUBLISH_FAILED)
        except SQLAlchemyError:
            if sent is not None:
                # ההודעה נשלחה אבל message_id לא נשמר - לא להשאיר הודעה יתומה
                await self._safe_delete(sent[0], sent[1], order_id)
            raise

        self.announcements.put(
            AnnouncementState(
                order_id=order_id,
                chat_id=sent[0],
                message_id=sent[1],
                base_text=text,
            )
        )
        logger.info(
            "Order published to drivers channel",
            extra_data={"order_id": order_id, "message_id": sent[1]},
        )
        return PublishResult(PublishStatus.PUBLISHED, sent[1])

    async def _safe_delete(self, chat_id: int, message_id: int, order_id: int) -> bool:
        try:
            await self.transport.delete_message(chat_id, message_id)
            return True
        except ExternalServiceException as exc:
            logger.warning(
                "Failed to delete announcement message",
                extra_data={
                    "order_id": order_id,
                    "chat_id": chat_id,
                    "message_id": message_id,
                    "error": exc.message,
                },
            )
            return False

    async def _state_for(
        self,
        order: Order,
        message_id: Optional[int],
        chat_id: Optional[int],
    ) -> Optional[AnnouncementState]:
        state = self.announcements.get(order.id)
        if state is not None:
            if message_id is None or message_id == state.message_id:
                return state
            # הודעה חדשה יותר מזו שבמטמון
            state = None

        target_message = message_id or order.channel_message_id
        if target_message is None:
            return None
        destination = chat_id or await self.channels.get_destination(DRIVERS_CHANNEL)
        if destination is None:
            return None
        return AnnouncementState(
            order_id=order.id,
            chat_id=destination,
            message_id=target_message,
            base_text=build_announcement_text(order),
        )

    async def reflect(
        self,
        order: Order,
        target: AnnouncementStatus,
        actor_label: Optional[str] = None,
        message_id: Optional[int] = None,
        chat_id: Optional[int] = None,
    ) -> bool:
        """
        מסנכרן את הודעת הערוץ עם מצב ההזמנה.

        claimed: מחיקת ההודעה, ואם נכשל - עריכה עם סיומת והסרת כפתורים.
        declined: עריכה עם סיומת סופית והסרת כפתורים.

        Returns:
            True אם בוצעה כתיבה חיצונית.
        """
        state = await self._state_for(order, message_id, chat_id)
        if state is None:
            logger.debug(
                "No announcement to reflect",
                extra_data={"order_id": order.id, "target": target.value},
            )
            return False

        if state.rendered_status == target or state.deleted:
            return False

        state = replace(
            state,
            status=target,
            decided_by=actor_label or state.decided_by,
            decided_at=time.time(),
        )

        if target == AnnouncementStatus.CLAIMED:
            try:
                await self.transport.delete_message(state.chat_id, state.message_id)
                self.announcements.put(replace(state, rendered_status=target, deleted=True))
                return True
            except ExternalServiceException as exc:
                logger.debug(
                    "Failed to delete claimed announcement, editing instead",
                    extra_data={"order_id": order.id, "error": exc.message},
                )

        suffix = _decision_suffix(state)
        text = f"{state.base_text}\n\n{suffix}".strip() if suffix else state.base_text
        try:
            await self.transport.edit_message(state.chat_id, state.message_id, text, keyboard=[])
        except ExternalServiceException as exc:
            logger.warning(
                "Failed to update order message in drivers channel",
                extra_data={
                    "order_id": order.id,
                    "chat_id": state.chat_id,
                    "message_id": state.message_id,
                    "error": exc.message,
                },
            )
            self.announcements.put(state)
            return False

        self.announcements.put(replace(state, rendered_status=target))
        return True

    async def retract(
        self,
        order_id: int,
        message_id: Optional[int],
        chat_id: Optional[int] = None,
    ) -> bool:
        """מחיקת הודעה ישנה אחרי שחרור, לפני פרסום מחדש"""
        state = self.announcements.pop(order_id)
        if message_id is None and state is not None and not state.deleted:
            message_id = state.message_id
        if message_id is None:
            return False
        destination = chat_id or (state.chat_id if state else None)
        if destination is None:
            destination = await self.channels.get_destination(DRIVERS_CHANNEL)
        if destination is None:
            return False
        return await self._safe_delete(destination, message_id, order_id)

    def already_processed_text(self, order: Order) -> str:
        """הסבר למשתמש שלחץ על הזמנה שכבר טופלה"""
        state = self.announcements.get(order.id)
        label = state.decided_by if state else None
        status = _status_from_order(order)

        if order.status == OrderStatus.DONE:
            return "ההזמנה כבר הושלמה."
        if status == AnnouncementStatus.CLAIMED:
            return f"ההזמנה כבר נלקחה על ידי {label}." if label else "ההזמנה כבר נלקחה."
        if status == AnnouncementStatus.DECLINED:
            return "ההזמנה כבר הוסרה מהפרסום."
        return "ההזמנה כבר טופלה."
