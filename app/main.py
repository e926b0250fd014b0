"""
Order Dispatch Bot - Main FastAPI Application
"""
from fastapi import FastAPI
from starlette.responses import JSONResponse

from app.core.circuit_breaker import get_telegram_circuit_breaker
from app.core.config import settings
from app.core.logging import setup_logging, get_logger
from app.core.middleware import setup_middleware, setup_exception_handlers
from app.api.routes import router as api_router
from app.db.database import engine, Base

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


_OPENAPI_TAGS = [
    {
        "name": "Orders",
        "description": "קליטת הזמנות, פרסום לערוץ הנהגים וביטול בשם המזמין.",
    },
    {"name": "Channels", "description": "שיוך ערוץ לוגי (drivers) לצ'אט טלגרם."},
    {"name": "Executors", "description": "רישום נהגים ושליחים ותוצאת האימות שלהם."},
    {"name": "Webhooks", "description": "Webhook לקבלת לחיצות כפתורים ופקודות מ-Telegram."},
    {"name": "Health", "description": "בדיקות liveness / readiness."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description=(
        "מנוע מחזור חיים ופרסום להזמנות נסיעה ומשלוח: "
        "פרסום לערוץ, לקיחה, שחרור, השלמה וביטול פעולה."
    ),
    openapi_tags=_OPENAPI_TAGS,
    openapi_url="/openapi.json",
)

# Setup middleware (correlation ID, request logging)
setup_middleware(app)
setup_exception_handlers(app)

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables on startup"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    from app.core.redis_client import close_redis
    await close_redis()
    # סגירת חיבורי מסד הנתונים למניעת connection pool exhaustion
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="בדיקת חיוּת (Liveness)",
    description="בדיקה קלה שהתהליך חי ומגיב, בלי בדיקת תלויות חיצוניות.",
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    """Liveness check - התהליך חי ומגיב."""
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="בדיקת מוכנות (Readiness)",
    description=(
        "בדיקה של התלויות: DB, Redis, Telegram (לפי מצב ה-circuit breaker) ו-Celery broker. "
        "מחזיר 200 כשהכל תקין, אחרת 503 עם פירוט."
    ),
    responses={
        200: {"description": "כל התלויות תקינות"},
        503: {"description": "לפחות תלות אחת לא זמינה"},
    },
    tags=["Health"],
)
async def readiness_check() -> JSONResponse:
    """Readiness check - בדיקת כל התלויות החיצוניות."""
    from app.domain.services.health_service import check_readiness

    result = await check_readiness()
    result["circuit_breakers"] = [get_telegram_circuit_breaker().snapshot()]
    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)
