"""
API Routes
"""
from fastapi import APIRouter, Depends

from app.api.dependencies.admin_auth import require_admin_api_key
from app.api.routes.orders import router as orders_router
from app.api.routes.channels import router as channels_router
from app.api.routes.executors import router as executors_router
from app.api.webhooks.telegram import router as telegram_router

router = APIRouter()

_admin_only = [Depends(require_admin_api_key)]

router.include_router(orders_router, prefix="/orders", tags=["orders"], dependencies=_admin_only)
router.include_router(channels_router, prefix="/channels", tags=["channels"], dependencies=_admin_only)
router.include_router(executors_router, prefix="/executors", tags=["executors"], dependencies=_admin_only)
# Canonical webhook endpoint (documented)
router.include_router(telegram_router, prefix="/telegram", tags=["webhooks"])

# Backwards-compatible webhook endpoint
router.include_router(
    telegram_router,
    prefix="/webhooks/telegram",
    tags=["webhooks"],
    include_in_schema=False
)
