"""
Notification Service - requester and executor messages tied to order transitions

Every notice goes through the outbox in the caller's transaction.
"""
from html import escape

from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.order import Order
from app.db.models.outbox_message import OutboxMessage
from app.domain.services.outbox_service import OutboxService


def _order_ref(order: Order) -> str:
    return f"№{escape(order.short_id)}"


class NotificationService:
    def __init__(self, db: AsyncSession):
        self.outbox = OutboxService(db)

    async def _queue(self, recipient_id: int, message_type: str, order: Order, text: str) -> OutboxMessage:
        return await self.outbox.queue_message(
            recipient_id=recipient_id,
            message_type=message_type,
            message_content={"order_id": order.id, "message_text": text},
            order_id=order.id,
        )

    async def queue_release_notice(self, order: Order, rematching: bool) -> OutboxMessage:
        """הודעה למזמין שהמבצע ויתר על ההזמנה"""
        follow_up = (
            "🔎 אנחנו מחפשים עבורך מבצע פנוי מחדש."
            if rematching
            else "📞 ניצור איתך קשר בהקדם להמשך טיפול."
        )
        text = f"⚠️ ההזמנה שלך {_order_ref(order)} בוטלה על ידי המבצע.\n{follow_up}"
        return await self._queue(order.client_id, "order_released", order, text)

    async def queue_completion_notice(self, order: Order) -> OutboxMessage:
        text = f"✅ ההזמנה שלך {_order_ref(order)} הושלמה. תודה!"
        return await self._queue(order.client_id, "order_completed", order, text)

    async def queue_resumed_notice(self, order: Order) -> OutboxMessage:
        """ביטול שחרור: המבצע חזר לטפל בהזמנה"""
        text = f"🔄 המבצע חזר לטפל בהזמנה שלך {_order_ref(order)}."
        return await self._queue(order.client_id, "order_resumed", order, text)

    async def queue_restored_notice(self, order: Order) -> OutboxMessage:
        """ביטול סיום: ההזמנה עדיין בביצוע"""
        text = f"🔄 ההזמנה שלך {_order_ref(order)} עדיין בביצוע. הסימון כהושלמה בוטל."
        return await self._queue(order.client_id, "order_restored", order, text)

    async def queue_client_cancel_notice(self, order: Order, executor_id: int) -> OutboxMessage:
        text = f"❌ המזמין ביטל את ההזמנה {_order_ref(order)}. אין צורך להמשיך בביצוע."
        return await self._queue(executor_id, "order_cancelled_by_client", order, text)
