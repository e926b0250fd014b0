"""
מפתח API לממשק הניהול של הזמנות, ערוצים ומבצעים.

כל ה-router של /api/orders, /api/channels ו-/api/executors מוגן דרך
``dependencies=[Depends(require_admin_api_key)]``.
"""
import hmac

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

ADMIN_API_KEY_HEADER = "X-Admin-API-Key"

_api_key_header = APIKeyHeader(name=ADMIN_API_KEY_HEADER, auto_error=False)


async def require_admin_api_key(
    api_key: str | None = Depends(_api_key_header),
) -> None:
    """
    401 כשהמפתח חסר, 403 כשהוא שגוי.
    כש-ADMIN_API_KEY לא מוגדר בסביבה הממשק סגור לגמרי.
    """
    if not settings.ADMIN_API_KEY:
        logger.warning("גישה לממשק הניהול נדחתה: ADMIN_API_KEY לא מוגדר")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="ADMIN_API_KEY לא מוגדר בסביבה",
        )

    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"חסר מפתח API. נדרש header: {ADMIN_API_KEY_HEADER}",
        )

    if not hmac.compare_digest(api_key.encode("utf-8"), settings.ADMIN_API_KEY.encode("utf-8")):
        logger.warning("גישה לממשק הניהול נדחתה: מפתח API שגוי")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="מפתח API לא תקין",
        )
