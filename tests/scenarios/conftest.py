"""
Fixtures ו-helpers לבדיקות תרחיש מקצה לקצה.

מספק:
- בוני payload ל-Telegram (הודעת טקסט, לחיצת כפתור)
- פונקציות שליחה תמציתיות ל-webhook ול-API הניהול
- פונקציות אימות DB (סטטוס הזמנה, outbox)
"""
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.order import Order, OrderStatus
from app.db.models.outbox_message import OutboxMessage

from tests.conftest import CITY, DRIVERS_CHAT_ID, TEST_ADMIN_API_KEY


# ============================================================================
# בוני Payload - Telegram
# ============================================================================

_update_counter = 0


def _next_update_id() -> int:
    """מייצר update_id ייחודי למניעת כפילויות"""
    global _update_counter
    _update_counter += 1
    return _update_counter


def build_tg_message(
    chat_id: int,
    text: str,
    *,
    name: str = "Test",
) -> dict:
    """בניית payload הודעת טקסט טלגרם"""
    uid = _next_update_id()
    return {
        "update_id": uid,
        "message": {
            "message_id": uid,
            "chat": {"id": chat_id, "type": "private"},
            "text": text,
            "date": 1700000000 + uid,
            "from": {"id": chat_id, "first_name": name},
        },
    }


def build_tg_callback(
    user_id: int,
    data: str,
    *,
    chat_id: Optional[int] = None,
    name: str = "Test",
    username: Optional[str] = None,
) -> dict:
    """
    בניית payload לחיצת כפתור inline טלגרם.

    chat_id=None: לחיצה בצ'אט הפרטי של המשתמש.
    """
    uid = _next_update_id()
    chat = chat_id if chat_id is not None else user_id
    sender = {"id": user_id, "first_name": name}
    if username:
        sender["username"] = username
    return {
        "update_id": uid,
        "callback_query": {
            "id": f"cb-{uid}",
            "data": data,
            "from": sender,
            "message": {
                "message_id": uid,
                "chat": {"id": chat, "type": "channel" if chat < 0 else "private"},
                "text": "",
                "date": 1700000000 + uid,
            },
        },
    }


# ============================================================================
# פונקציות שליחה תמציתיות
# ============================================================================

async def send_tg(client, chat_id: int, text: str, **kwargs) -> dict:
    """שליחת הודעת טקסט לטלגרם webhook - assert 200 ומחזיר JSON"""
    resp = await client.post(
        "/api/telegram/webhook",
        json=build_tg_message(chat_id, text, **kwargs),
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


async def send_tg_callback(client, user_id: int, data: str, **kwargs) -> dict:
    """לחיצת כפתור inline - assert 200 ומחזיר JSON"""
    resp = await client.post(
        "/api/telegram/webhook",
        json=build_tg_callback(user_id, data, **kwargs),
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


async def press_in_channel(client, user_id: int, data: str, **kwargs) -> dict:
    """לחיצה על כפתור בהודעת ערוץ הנהגים"""
    return await send_tg_callback(client, user_id, data, chat_id=DRIVERS_CHAT_ID, **kwargs)


async def create_order_via_api(client, *, client_id: int = 555, publish: bool = True, kind: str = "ride") -> dict:
    """יצירת הזמנה דרך API הניהול ופרסומה לערוץ"""
    resp = await client.post(
        "/api/orders",
        params={"publish": "true" if publish else "false"},
        json={
            "kind": kind,
            "city": CITY,
            "pickup": {"query": "הרצל 10", "address": "רחוב הרצל 10", "latitude": 32.08, "longitude": 34.78},
            "dropoff": {"query": "דיזנגוף 100", "address": "רחוב דיזנגוף 100", "latitude": 32.08, "longitude": 34.77},
            "price": {"amount": 38, "currency": "ILS", "distance_km": 2.1, "eta_minutes": 9},
            "client_id": client_id,
        },
        headers={"X-Admin-API-Key": TEST_ADMIN_API_KEY},
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


# ============================================================================
# פונקציות אימות DB
# ============================================================================

async def get_order(db: AsyncSession, order_id: int) -> Order:
    result = await db.execute(
        select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def assert_order_status(
    db: AsyncSession,
    order_id: int,
    expected: OrderStatus,
    *,
    claimed_by: Optional[int] = None,
) -> Order:
    """אימות שסטטוס ההזמנה תואם ומחזיר אותה"""
    order = await get_order(db, order_id)
    assert order.status == expected, (
        f"הזמנה {order_id}: צפוי {expected.value}, התקבל {order.status.value}"
    )
    if claimed_by is not None:
        assert order.claimed_by == claimed_by
    return order


async def assert_outbox_count(
    db: AsyncSession,
    expected: int,
    *,
    message_type: Optional[str] = None,
    recipient_id: Optional[str] = None,
) -> None:
    """אימות מספר הודעות outbox לפי סוג ו/או נמען"""
    query = select(func.count()).select_from(OutboxMessage)
    if message_type:
        query = query.where(OutboxMessage.message_type == message_type)
    if recipient_id:
        query = query.where(OutboxMessage.recipient_id == recipient_id)
    count = (await db.execute(query)).scalar()
    assert count == expected, f"outbox: צפוי {expected}, התקבל {count}"
