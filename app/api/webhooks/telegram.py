"""
Telegram Webhook Handler - Dispatch Front Door

Inline button presses from the drivers channel and from executors'
private chats arrive here, are resolved to an executor, deduplicated by
the idempotency guard and handed to the lifecycle service. Every press
gets a short answer; infrastructure failures get a generic retry text.
"""
import re
from dataclasses import dataclass
from html import escape
from typing import Any, Optional, List

from fastapi import APIRouter, Depends, BackgroundTasks
from pydantic import BaseModel, Field, ConfigDict
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.webhook_auth import verify_telegram_webhook_token
from app.core.exceptions import AppException, ExternalServiceException
from app.core.logging import get_logger
from app.db.database import get_db
from app.db.models.order import Order
from app.domain.outcomes import (
    ActorProfile,
    ClaimStatus,
    CompleteStatus,
    DeclineStatus,
    GuardStatus,
    ReleaseStatus,
    UndoStatus,
)
from app.domain.services.eligibility_service import EligibilityService
from app.domain.services.idempotency_service import IdempotencyGuard
from app.domain.services.lifecycle_service import OrderLifecycleService
from app.domain.services.telegram_transport import (
    InlineButton,
    Keyboard,
    TelegramTransport,
    get_transport,
)

logger = get_logger(__name__)

router = APIRouter()

ACTION_CLAIM = "claim"
ACTION_DECLINE = "decline"
ACTION_RELEASE = "release"
ACTION_COMPLETE = "complete"
ACTION_UNDO_RELEASE = "undo_release"
ACTION_UNDO_COMPLETE = "undo_complete"
ACTION_FEED = "feed"

# (namespace, verb) → action
_CALLBACK_ACTIONS = {
    ("order", "accept"): ACTION_CLAIM,
    ("jobs", "accept"): ACTION_CLAIM,
    ("order", "decline"): ACTION_DECLINE,
    ("jobs", "release"): ACTION_RELEASE,
    ("jobs", "complete"): ACTION_COMPLETE,
    ("jobs", "undo_release"): ACTION_UNDO_RELEASE,
    ("jobs", "undo_complete"): ACTION_UNDO_COMPLETE,
}

_ORDER_CALLBACK_PATTERN = re.compile(r"^(order|jobs):([a-z_]+):(\d+)$")
_FEED_CALLBACK = "jobs:feed"
_FEED_COMMANDS = {"/jobs", "/orders"}

_GENERIC_ERROR_TEXT = "לא הצלחנו לעבד את הפעולה. נסו שוב בעוד רגע."
_NOT_REGISTERED_TEXT = "אינך רשום כמבצע במערכת. פנו לתמיכה להשלמת ההרשמה."
_UNKNOWN_ACTION_TEXT = "פעולה לא מוכרת."
_DUPLICATE_TEXT = "⏳ הבקשה כבר בטיפול."

_LIMIT_TEXT = "כבר יש לך הזמנה פעילה. יש לסיים אותה לפני לקיחת הזמנה חדשה."
_NOT_FOUND_TEXT = "ההזמנה לא נמצאה או שנמחקה."

_CLAIM_TEXTS = {
    ClaimStatus.CLAIMED: "✅ לקחת את ההזמנה. הפרטים נשלחו אליך בפרטי.",
    ClaimStatus.NOT_FOUND: _NOT_FOUND_TEXT,
    ClaimStatus.ALREADY_TAKEN: "ההזמנה כבר נלקחה על ידי מבצע אחר.",
    ClaimStatus.CITY_MISMATCH: "ההזמנה שייכת לעיר אחרת.",
    ClaimStatus.FORBIDDEN_KIND: "הזמנות מסוג זה זמינות לנהגים בלבד.",
    ClaimStatus.DRIVER_UNVERIFIED: "יש להשלים אימות נהג לפני לקיחת הזמנות.",
    ClaimStatus.COURIER_UNVERIFIED: "יש להשלים אימות שליח לפני לקיחת הזמנות.",
    ClaimStatus.LIMIT_EXCEEDED: _LIMIT_TEXT,
}

_DECLINE_TEXTS = {
    DeclineStatus.DECLINED: "ההזמנה הוסתרה עבורך.",
    DeclineStatus.ALREADY_DECLINED: "כבר סימנת שההזמנה לא רלוונטית עבורך.",
    DeclineStatus.NOT_FOUND: _NOT_FOUND_TEXT,
}

_RELEASE_TEXTS = {
    ReleaseStatus.NOT_FOUND: _NOT_FOUND_TEXT,
    ReleaseStatus.NOT_CLAIMED: "ההזמנה אינה בביצוע כרגע.",
    ReleaseStatus.FORBIDDEN: "ההזמנה משויכת למבצע אחר.",
}

_COMPLETE_TEXTS = {
    CompleteStatus.COMPLETED: "🏁 ההזמנה סומנה כהושלמה.",
    CompleteStatus.NOT_FOUND: _NOT_FOUND_TEXT,
    CompleteStatus.NOT_CLAIMED: "ההזמנה אינה בביצוע כרגע.",
    CompleteStatus.FORBIDDEN: "ההזמנה משויכת למבצע אחר.",
}

_UNDO_TEXTS = {
    UndoStatus.EXPIRED: "⌛ זמן הביטול עבר.",
    UndoStatus.FORBIDDEN: "אין לך אפשרות לבטל פעולה זו.",
    UndoStatus.TOO_LATE: "מאוחר מדי: מצב ההזמנה כבר השתנה.",
    UndoStatus.LIMIT_EXCEEDED: _LIMIT_TEXT,
    UndoStatus.NOT_FOUND: _NOT_FOUND_TEXT,
}

_SUCCESS_STATUSES = {
    ClaimStatus.CLAIMED,
    DeclineStatus.DECLINED,
    ReleaseStatus.RELEASED,
    CompleteStatus.COMPLETED,
    UndoStatus.RESTORED,
}


@dataclass(frozen=True)
class OrderCallback:
    action: str
    order_id: Optional[int] = None


@dataclass(frozen=True)
class _InboundTelegramEvent:
    """אירוע נכנס מנורמל מה-update של טלגרם"""

    # send_chat_id: לאן שולחים את התשובה (private chat / ערוץ)
    send_chat_id: Optional[int]
    # telegram_user_id: מי לחץ/כתב - לזיהוי המבצע
    telegram_user_id: Optional[int]
    text: str
    is_callback: bool
    callback_query_id: Optional[str]


class TelegramUser(BaseModel):
    id: int
    first_name: str
    last_name: Optional[str] = None
    username: Optional[str] = None


class TelegramChat(BaseModel):
    id: int
    type: str


class TelegramMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message_id: int
    from_user: Optional[TelegramUser] = Field(default=None, alias="from")
    chat: TelegramChat
    text: Optional[str] = None
    date: int


class TelegramCallbackQuery(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    from_user: Optional[TelegramUser] = Field(default=None, alias="from")
    message: Optional[TelegramMessage] = None
    data: Optional[str] = None


class TelegramUpdate(BaseModel):
    update_id: int
    message: Optional[TelegramMessage] = None
    callback_query: Optional[TelegramCallbackQuery] = None


def parse_callback_data(data: str) -> Optional[OrderCallback]:
    """callback_data → פעולה + מזהה הזמנה; None לכל דבר שלא מוכר"""
    data = (data or "").strip()
    if data == _FEED_CALLBACK:
        return OrderCallback(action=ACTION_FEED)
    match = _ORDER_CALLBACK_PATTERN.match(data)
    if not match:
        return None
    action = _CALLBACK_ACTIONS.get((match.group(1), match.group(2)))
    if action is None:
        return None
    return OrderCallback(action=action, order_id=int(match.group(3)))


def _parse_inbound_event(update: TelegramUpdate) -> Optional[_InboundTelegramEvent]:
    """נרמול update לאירוע אחיד (טקסט/כפתור)."""
    if update.callback_query:
        callback = update.callback_query
        message = callback.message
        return _InboundTelegramEvent(
            send_chat_id=message.chat.id if message else None,
            # זיהוי לפי from.id (מי לחץ), לא לפי chat.id (איפה ההודעה)
            telegram_user_id=callback.from_user.id if callback.from_user else None,
            text=callback.data or "",
            is_callback=True,
            callback_query_id=callback.id,
        )

    if update.message:
        message = update.message
        if message.chat.type == "private":
            telegram_user_id = message.chat.id
        else:
            telegram_user_id = message.from_user.id if message.from_user else None
        return _InboundTelegramEvent(
            send_chat_id=message.chat.id,
            telegram_user_id=telegram_user_id,
            text=message.text or "",
            is_callback=False,
            callback_query_id=None,
        )

    return None


async def _answer_safely(
    transport: TelegramTransport,
    callback_query_id: str,
    text: Optional[str] = None,
    show_alert: bool = False,
) -> None:
    try:
        await transport.answer_callback(callback_query_id, text, show_alert=show_alert)
    except ExternalServiceException as exc:
        logger.warning(
            "Failed to answer callback query",
            extra_data={"callback_query_id": callback_query_id, "error": exc.message},
        )


async def _send_safely(
    transport: TelegramTransport,
    chat_id: int,
    text: str,
    keyboard: Optional[Keyboard] = None,
) -> None:
    try:
        await transport.send_message(chat_id, text, keyboard)
    except ExternalServiceException as exc:
        logger.warning(
            "Failed to send private message to executor",
            extra_data={"chat_id": chat_id, "error": exc.message},
        )


def _order_summary(order: Order) -> str:
    return (
        f"№{escape(order.short_id)}\n"
        f"📍 איסוף: {escape(order.pickup_address)}\n"
        f"🎯 יעד: {escape(order.dropoff_address)}\n"
        f"💰 מחיר: {order.price_amount:,} {escape(order.price_currency)}"
    )


def _active_order_keyboard(order_id: int) -> Keyboard:
    return [
        [InlineButton("🏁 סיימתי", f"jobs:complete:{order_id}")],
        [InlineButton("↩️ שחרור ההזמנה", f"jobs:release:{order_id}")],
    ]


def _undo_keyboard(action: str, order_id: int) -> Keyboard:
    return [[InlineButton("↩️ ביטול", f"jobs:{action}:{order_id}")]]


def _outcome_text(engine: OrderLifecycleService, action: str, outcome: Any) -> str:
    status = outcome.status

    if action == ACTION_CLAIM:
        if status == ClaimStatus.ALREADY_PROCESSED and outcome.order is not None:
            return engine.publication.already_processed_text(outcome.order)
        return _CLAIM_TEXTS.get(status, "ההזמנה כבר טופלה.")

    if action == ACTION_DECLINE:
        if status == DeclineStatus.ALREADY_PROCESSED and outcome.order is not None:
            return engine.publication.already_processed_text(outcome.order)
        return _DECLINE_TEXTS.get(status, "ההזמנה כבר טופלה.")

    if action == ACTION_RELEASE:
        if status == ReleaseStatus.RELEASED:
            if outcome.republish is not None and outcome.republish.reachable:
                return "ההזמנה שוחררה ופורסמה מחדש."
            return "ההזמנה שוחררה. נציג יטפל בה ידנית."
        return _RELEASE_TEXTS[status]

    if action == ACTION_COMPLETE:
        return _COMPLETE_TEXTS[status]

    if status == UndoStatus.RESTORED:
        if action == ACTION_UNDO_RELEASE:
            return "↩️ ההזמנה חזרה אליך."
        return "↩️ סימון ההשלמה בוטל. ההזמנה שוב בביצוע."
    return _UNDO_TEXTS[status]


def _queue_follow_up(
    background_tasks: BackgroundTasks,
    transport: TelegramTransport,
    action: str,
    actor: ActorProfile,
    outcome: Any,
) -> None:
    """הודעה פרטית למבצע אחרי פעולה מוצלחת"""
    order = outcome.order
    if order is None:
        return

    if action == ACTION_CLAIM and outcome.status == ClaimStatus.CLAIMED:
        text = f"🚗 ההזמנה בביצוע שלך\n\n{_order_summary(order)}"
        if order.client_phone:
            text += f"\n📞 טלפון: {escape(order.client_phone)}"
        keyboard = _active_order_keyboard(order.id)
    elif action == ACTION_RELEASE and outcome.status == ReleaseStatus.RELEASED:
        text = f"ההזמנה №{escape(order.short_id)} שוחררה. אפשר לבטל את השחרור בשתי הדקות הקרובות."
        keyboard = _undo_keyboard(ACTION_UNDO_RELEASE, order.id)
    elif action == ACTION_COMPLETE and outcome.status == CompleteStatus.COMPLETED:
        text = f"ההזמנה №{escape(order.short_id)} הושלמה. אפשר לבטל את הסימון בשתי הדקות הקרובות."
        keyboard = _undo_keyboard(ACTION_UNDO_COMPLETE, order.id)
    elif action in (ACTION_UNDO_RELEASE, ACTION_UNDO_COMPLETE) and outcome.status == UndoStatus.RESTORED:
        text = f"🚗 ההזמנה שוב בביצוע שלך\n\n{_order_summary(order)}"
        keyboard = _active_order_keyboard(order.id)
    else:
        return

    background_tasks.add_task(_send_safely, transport, actor.actor_id, text, keyboard)


async def _dispatch(engine: OrderLifecycleService, callback: OrderCallback, actor: ActorProfile) -> Any:
    handlers = {
        ACTION_CLAIM: engine.claim,
        ACTION_DECLINE: engine.decline,
        ACTION_RELEASE: engine.release,
        ACTION_COMPLETE: engine.complete,
        ACTION_UNDO_RELEASE: engine.undo_release,
        ACTION_UNDO_COMPLETE: engine.undo_complete,
    }
    return await handlers[callback.action](callback.order_id, actor)


async def _build_feed(engine: OrderLifecycleService, actor: ActorProfile) -> tuple[str, Keyboard]:
    """רשימת ההזמנות הפתוחות בעיר + ההזמנה הפעילה של המבצע"""
    active = await engine.active_orders(actor)
    open_orders = await engine.feed(actor)

    lines: list[str] = []
    keyboard: list[list[InlineButton]] = []
    for order in active:
        lines.append(f"🚗 בביצוע: {_order_summary(order)}")
        keyboard.extend(_active_order_keyboard(order.id))

    if open_orders:
        lines.append(f"📋 הזמנות פתוחות ב{escape(actor.city or '')}:")
        for order in open_orders:
            lines.append(
                f"• №{escape(order.short_id)}: {escape(order.pickup_address)} → {escape(order.dropoff_address)}"
            )
            keyboard.append(
                [InlineButton(
                    f"✅ №{order.short_id} · {order.price_amount:,} {order.price_currency}",
                    f"jobs:accept:{order.id}",
                )]
            )
    elif not active:
        lines.append("אין כרגע הזמנות פתוחות בעיר שלך.")

    keyboard.append([InlineButton("🔄 רענון", _FEED_CALLBACK)])
    return "\n\n".join(lines), keyboard


async def _resolve_actor(
    db: AsyncSession,
    event: _InboundTelegramEvent,
    action: str,
) -> Optional[ActorProfile]:
    """זיהוי המבצע; כשל תשתית נרשם ללוג ומועבר הלאה לתשובה גנרית"""
    try:
        return await EligibilityService(db).resolve(event.telegram_user_id)
    except (AppException, SQLAlchemyError) as exc:
        await db.rollback()
        logger.error(
            "Actor lookup failed",
            extra_data={
                "telegram_user_id": event.telegram_user_id,
                "action": action,
                "error": str(exc),
            },
            exc_info=True,
        )
        raise


async def _handle_feed(
    db: AsyncSession,
    transport: TelegramTransport,
    background_tasks: BackgroundTasks,
    event: _InboundTelegramEvent,
) -> dict[str, Any]:
    try:
        actor = await _resolve_actor(db, event, ACTION_FEED)
    except (AppException, SQLAlchemyError):
        if event.callback_query_id:
            background_tasks.add_task(_answer_safely, transport, event.callback_query_id, _GENERIC_ERROR_TEXT, True)
        else:
            background_tasks.add_task(_send_safely, transport, event.send_chat_id, _GENERIC_ERROR_TEXT)
        return {"ok": True, "action": ACTION_FEED, "outcome": "error"}

    if actor is None:
        if event.callback_query_id:
            background_tasks.add_task(_answer_safely, transport, event.callback_query_id, _NOT_REGISTERED_TEXT, True)
        else:
            background_tasks.add_task(_send_safely, transport, event.send_chat_id, _NOT_REGISTERED_TEXT)
        return {"ok": True, "action": ACTION_FEED, "outcome": "not_registered"}

    engine = OrderLifecycleService(db, transport)
    try:
        text, keyboard = await _build_feed(engine, actor)
    except AppException as exc:
        logger.error(
            "Failed to build executor feed",
            extra_data={"actor_id": actor.actor_id, "error": exc.message},
            exc_info=True,
        )
        text, keyboard = _GENERIC_ERROR_TEXT, None

    if event.callback_query_id:
        background_tasks.add_task(_answer_safely, transport, event.callback_query_id)
    background_tasks.add_task(_send_safely, transport, actor.actor_id, text, keyboard)
    return {"ok": True, "action": ACTION_FEED, "outcome": "sent"}


async def _handle_order_callback(
    db: AsyncSession,
    transport: TelegramTransport,
    background_tasks: BackgroundTasks,
    event: _InboundTelegramEvent,
    callback: OrderCallback,
) -> dict[str, Any]:
    try:
        actor = await _resolve_actor(db, event, callback.action)
    except (AppException, SQLAlchemyError):
        background_tasks.add_task(_answer_safely, transport, event.callback_query_id, _GENERIC_ERROR_TEXT, True)
        return {"ok": True, "action": callback.action, "outcome": "error"}

    if actor is None:
        logger.info(
            "Order action from unregistered user",
            extra_data={"telegram_user_id": event.telegram_user_id, "action": callback.action},
        )
        background_tasks.add_task(_answer_safely, transport, event.callback_query_id, _NOT_REGISTERED_TEXT, True)
        return {"ok": True, "action": callback.action, "outcome": "not_registered"}

    engine = OrderLifecycleService(db, transport)
    guard = IdempotencyGuard(db)

    try:
        guarded = await guard.guard(
            actor.actor_id,
            callback.action,
            str(callback.order_id),
            lambda: _dispatch(engine, callback, actor),
        )
    except (AppException, SQLAlchemyError) as exc:
        logger.error(
            "Order action failed",
            extra_data={
                "actor_id": actor.actor_id,
                "action": callback.action,
                "order_id": callback.order_id,
                "error": str(exc),
            },
            exc_info=True,
        )
        background_tasks.add_task(_answer_safely, transport, event.callback_query_id, _GENERIC_ERROR_TEXT, True)
        return {"ok": True, "action": callback.action, "outcome": "error"}

    if guarded.status == GuardStatus.DUPLICATE:
        background_tasks.add_task(_answer_safely, transport, event.callback_query_id, _DUPLICATE_TEXT)
        return {"ok": True, "action": callback.action, "outcome": "duplicate"}

    outcome = guarded.result
    text = _outcome_text(engine, callback.action, outcome)
    background_tasks.add_task(
        _answer_safely,
        transport,
        event.callback_query_id,
        text,
        outcome.status not in _SUCCESS_STATUSES,
    )
    _queue_follow_up(background_tasks, transport, callback.action, actor, outcome)

    return {"ok": True, "action": callback.action, "outcome": outcome.status.value}


@router.post(
    "/webhook",
    summary="Webhook - Telegram (קבלת עדכונים נכנסים)",
    description=(
        "נקודת כניסה לעדכונים מ-Telegram Bot API: "
        "לחיצות על כפתורי הזמנה בערוץ הנהגים ובצ'אט הפרטי, ופקודת /jobs."
    ),
)
async def telegram_webhook(
    update: TelegramUpdate,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    transport: TelegramTransport = Depends(get_transport),
    _: None = Depends(verify_telegram_webhook_token),
) -> dict[str, Any]:
    event = _parse_inbound_event(update)
    if event is None:
        return {"ok": True}

    if event.is_callback:
        if event.telegram_user_id is None:
            # נענה כדי להסיר loading, בלי עיבוד ללא מזהה משתמש אמין
            background_tasks.add_task(_answer_safely, transport, event.callback_query_id)
            logger.warning(
                "Telegram callback_query without from_user; skipping processing",
                extra_data={"callback_query_id": event.callback_query_id},
            )
            return {"ok": True}

        callback = parse_callback_data(event.text)
        if callback is None:
            background_tasks.add_task(_answer_safely, transport, event.callback_query_id, _UNKNOWN_ACTION_TEXT)
            return {"ok": True, "action": None, "outcome": "unknown_action"}

        if callback.action == ACTION_FEED:
            return await _handle_feed(db, transport, background_tasks, event)
        return await _handle_order_callback(db, transport, background_tasks, event, callback)

    command = event.text.strip().split("@", 1)[0].lower()
    if command in _FEED_COMMANDS and event.telegram_user_id is not None:
        return await _handle_feed(db, transport, background_tasks, event)

    return {"ok": True}
