"""
Celery Tasks for Async Message Processing

Worker side of the Transactional Outbox pattern: pending requester and
executor notifications are delivered through the Telegram transport.
Also runs storage hygiene for the idempotency records.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

from sqlalchemy import select

from app.workers.celery_app import celery_app
from app.db.database import get_task_session
from app.db.models.outbox_message import OutboxMessage
from app.domain.services.idempotency_service import IdempotencyGuard
from app.domain.services.outbox_service import OutboxService
from app.domain.services.telegram_transport import InlineButton, TelegramTransport
from app.core.logging import get_logger, log_async_operation, set_correlation_id
from app.core.exceptions import ExternalServiceException

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # סגירת Redis singleton לפני סגירת ה-loop - מונע שימוש חוזר
            # ב-client שמחובר ל-event loop סגור בהרצה הבאה
            from app.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "כשלון בסגירת Redis בסיום task",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


def _keyboard_from_content(content: dict[str, Any]) -> Optional[list[list[InlineButton]]]:
    rows = content.get("inline_keyboard")
    if not rows:
        return None
    return [
        [InlineButton(button["text"], button["callback_data"]) for button in row]
        for row in rows
    ]


async def _process_single_message(
    db: "AsyncSession",
    message: OutboxMessage,
    transport: TelegramTransport,
) -> tuple[bool, str]:
    """שליחת הודעת outbox אחת ועדכון הסטטוס שלה"""
    outbox_service = OutboxService(db)
    await outbox_service.mark_as_processing(message.id)

    content = message.message_content or {}
    text = content.get("message_text", "")
    if not text:
        await outbox_service.mark_as_failed(message.id, "Empty message text")
        return False, "Empty message text"

    try:
        await transport.send_message(
            message.recipient_id,
            text,
            _keyboard_from_content(content),
        )
    except ExternalServiceException as exc:
        logger.error(
            "Telegram send error",
            extra_data={
                "message_id": message.id,
                "order_id": message.order_id,
                "recipient_id": message.recipient_id,
                "error": exc.message,
            },
        )
        await outbox_service.mark_as_failed(message.id, exc.message)
        return False, exc.message

    await outbox_service.mark_as_sent(message.id)
    return True, "Message sent successfully"


@log_async_operation("process_outbox")
async def process_pending_messages(
    db: "AsyncSession",
    transport: Optional[TelegramTransport] = None,
    limit: int = 50,
) -> list[dict[str, Any]]:
    transport = transport or TelegramTransport()
    outbox_service = OutboxService(db)
    messages = await outbox_service.get_pending_messages(limit=limit)

    results = []
    for message in messages:
        success, result = await _process_single_message(db, message, transport)
        results.append({
            "message_id": message.id,
            "success": success,
            "result": result,
        })
    return results


@celery_app.task(name="app.workers.tasks.process_outbox_messages")
def process_outbox_messages():
    """
    Process pending messages from the outbox.
    This task runs periodically to ensure reliable message delivery.
    """

    async def _process():
        async with get_task_session() as db:
            return await process_pending_messages(db)

    return run_async(_process())


@celery_app.task(name="app.workers.tasks.send_message")
def send_message(message_id: int):
    """Send a specific message by ID"""

    async def _send():
        async with get_task_session() as db:
            result = await db.execute(
                select(OutboxMessage).where(OutboxMessage.id == message_id)
            )
            message = result.scalar_one_or_none()

            if not message:
                return {"error": "Message not found"}

            success, result = await _process_single_message(db, message, TelegramTransport())
            return {"success": success, "result": result}

    return run_async(_send())


@celery_app.task(name="app.workers.tasks.cleanup_old_messages")
def cleanup_old_messages(days: int = 30):
    """Clean up old processed messages from the outbox"""

    async def _cleanup():
        async with get_task_session() as db:
            deleted = await OutboxService(db).cleanup_old_messages(days=days)
            return {"deleted": deleted}

    return run_async(_cleanup())


@celery_app.task(name="app.workers.tasks.cleanup_expired_recent_actions")
def cleanup_expired_recent_actions():
    """
    ניקוי רשומות idempotency שפג תוקפן.

    התפוגה עצמה לא תלויה במשימה הזו (נמחקות גם בקריאה הבאה של אותו מבצע);
    זו רק היגיינת אחסון.
    """

    async def _cleanup():
        async with get_task_session() as db:
            deleted = await IdempotencyGuard(db).purge_expired()
            if deleted:
                logger.info(
                    "Expired idempotency records purged",
                    extra_data={"deleted": deleted},
                )
            return {"deleted": deleted}

    return run_async(_cleanup())
