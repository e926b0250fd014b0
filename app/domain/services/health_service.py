"""
שירות בדיקת בריאות - בדיקות תלויות (DB, Redis, Telegram, Celery broker).

- liveness: האם התהליך חי (ללא בדיקת תלויות)
- readiness: בדיקה של כל התלויות החיצוניות
"""
from typing import Any

import redis.asyncio as aioredis
from sqlalchemy import text

from app.core.circuit_breaker import CircuitState, get_telegram_circuit_breaker
from app.core.config import settings
from app.core.logging import get_logger
from app.core.redis_client import get_redis
from app.db.database import AsyncSessionLocal

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

# הודעות שגיאה מסוננות - ללא חשיפת פרטי תשתית
_ERROR_DB = "error: db_unavailable"
_ERROR_REDIS = "error: redis_unavailable"
_ERROR_TELEGRAM_CIRCUIT_OPEN = "error: telegram_circuit_open"
_ERROR_CELERY = "error: celery_unavailable"


async def _check_db() -> str:
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("בדיקת בריאות DB נכשלה", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_redis() -> str:
    try:
        client = await get_redis()
        await client.ping()
        return _CHECK_OK
    except Exception as e:
        logger.warning("בדיקת בריאות Redis נכשלה", extra_data={"error": str(e)})
        return _ERROR_REDIS


def _check_telegram() -> str:
    """בלי קריאת רשת: מצב ה-circuit breaker משקף את הכשלונות האחרונים."""
    if get_telegram_circuit_breaker().state == CircuitState.OPEN:
        return _ERROR_TELEGRAM_CIRCUIT_OPEN
    return _CHECK_OK


async def _check_celery() -> str:
    """ping ל-broker של Celery (Redis)."""
    try:
        client = aioredis.from_url(settings.CELERY_BROKER_URL, decode_responses=True)
        try:
            await client.ping()
            return _CHECK_OK
        finally:
            await client.aclose()
    except Exception as e:
        logger.warning("בדיקת בריאות Celery נכשלה", extra_data={"error": str(e)})
        return _ERROR_CELERY


async def check_readiness() -> dict[str, Any]:
    """
    status: "healthy" אם הכל תקין, אחרת "degraded".
    db / redis / telegram / celery: "ok" או "error: ...".
    """
    checks = {
        "db": await _check_db(),
        "redis": await _check_redis(),
        "telegram": _check_telegram(),
        "celery": await _check_celery(),
    }

    all_ok = all(v == _CHECK_OK for v in checks.values())
    overall_status = _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED

    if not all_ok:
        logger.warning(
            "בדיקת מוכנות - המערכת במצב degraded",
            extra_data=checks,
        )

    return {"status": overall_status, **checks}
