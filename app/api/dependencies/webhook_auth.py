"""
אימות בקשות webhook נכנסות מטלגרם.

טלגרם מצרף את ``X-Telegram-Bot-Api-Secret-Token`` לכל עדכון כאשר
``setWebhook`` נקרא עם ``secret_token``. בלי הבדיקה הזו כל אחד יכול
לשלוח לחיצות מזויפות על כפתורי הזמנה.
"""
import hmac

from fastapi import Header, HTTPException, status

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)


async def verify_telegram_webhook_token(
    x_telegram_bot_api_secret_token: str | None = Header(None),
) -> None:
    """
    - ``TELEGRAM_WEBHOOK_SECRET_TOKEN`` ריק: אין אימות (אזהרה נרשמת בטעינת ההגדרות).
    - כותרת חסרה או שגויה: 403.
    """
    expected = settings.TELEGRAM_WEBHOOK_SECRET_TOKEN
    if not expected:
        return

    provided = x_telegram_bot_api_secret_token or ""
    if not provided:
        logger.warning("בקשת webhook ללא כותרת X-Telegram-Bot-Api-Secret-Token")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="חסר טוקן אימות webhook",
        )

    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        logger.warning(
            "בקשת webhook עם טוקן שגוי",
            extra_data={"provided_length": len(provided)},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="טוקן אימות webhook לא תקין",
        )
