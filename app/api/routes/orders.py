"""
Order API Routes

Entry points for the requester side (order intake, cancellation) and for
operators (manual publication). Executor actions arrive through the
Telegram webhook, not here.
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import OrderNotFoundError, OrderStateError
from app.core.logging import get_logger
from app.db.database import get_db
from app.db.models.order import OrderKind, OrderStatus
from app.domain.outcomes import PublishStatus
from app.domain.services.lifecycle_service import OrderLifecycleService
from app.domain.services.order_store import OrderStore
from app.domain.services.telegram_transport import TelegramTransport, get_transport

logger = get_logger(__name__)

router = APIRouter()


class LocationIn(BaseModel):
    """מיקום שכבר עבר geocoding מחוץ למערכת"""
    query: str = Field(min_length=1, max_length=500)
    address: str = Field(min_length=1, max_length=500)
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class PriceIn(BaseModel):
    amount: int = Field(ge=0)
    currency: str = Field(min_length=1, max_length=8)
    distance_km: float = Field(default=0.0, ge=0)
    eta_minutes: Optional[int] = Field(default=None, ge=0)

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        return v.strip().upper()


class OrderCreate(BaseModel):
    """Schema for creating a new order"""
    kind: OrderKind
    city: str = Field(min_length=1, max_length=64)
    pickup: LocationIn
    dropoff: LocationIn
    price: PriceIn
    client_id: int
    client_phone: Optional[str] = Field(default=None, max_length=32)
    notes: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("city")
    @classmethod
    def normalize_city(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("city must not be blank")
        return v

    @field_validator("notes")
    @classmethod
    def strip_notes(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None

    def to_order_fields(self) -> dict:
        return {
            "kind": self.kind,
            "city": self.city,
            "pickup_query": self.pickup.query,
            "pickup_address": self.pickup.address,
            "pickup_lat": self.pickup.latitude,
            "pickup_lon": self.pickup.longitude,
            "dropoff_query": self.dropoff.query,
            "dropoff_address": self.dropoff.address,
            "dropoff_lat": self.dropoff.latitude,
            "dropoff_lon": self.dropoff.longitude,
            "price_amount": self.price.amount,
            "price_currency": self.price.currency,
            "distance_km": self.price.distance_km,
            "eta_minutes": self.price.eta_minutes,
            "client_id": self.client_id,
            "client_phone": self.client_phone,
            "notes": self.notes,
        }


class OrderResponse(BaseModel):
    """Response schema for order data"""
    id: int
    short_id: str
    kind: OrderKind
    city: str
    status: OrderStatus
    pickup_address: str
    dropoff_address: str
    price_amount: int
    price_currency: str
    distance_km: float
    client_id: int
    claimed_by: Optional[int] = None
    channel_message_id: Optional[int] = None
    created_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class PublishResponse(BaseModel):
    status: PublishStatus
    message_id: Optional[int] = None


class OrderCreatedResponse(BaseModel):
    order: OrderResponse
    publish: Optional[PublishResponse] = None


class CancelRequest(BaseModel):
    client_id: int


@router.post(
    "",
    response_model=OrderCreatedResponse,
    status_code=201,
    summary="Create a new order",
    description="Creates an open order; with publish=true also announces it in the drivers channel.",
    responses={
        201: {"description": "Order created"},
        422: {"description": "Validation error in request data"},
    },
    tags=["Orders"],
)
async def create_order(
    order_data: OrderCreate,
    publish: bool = Query(False, description="Publish to the drivers channel right away"),
    db: AsyncSession = Depends(get_db),
    transport: TelegramTransport = Depends(get_transport),
) -> OrderCreatedResponse:
    logger.info(
        "Creating new order",
        extra_data={"client_id": order_data.client_id, "city": order_data.city, "kind": order_data.kind.value},
    )
    service = OrderLifecycleService(db, transport)
    order = await service.create_order(**order_data.to_order_fields())

    publish_response = None
    if publish:
        result = await service.publish_order(order.id)
        publish_response = PublishResponse(status=result.status, message_id=result.message_id)
        order = await OrderStore(db).get(order.id)

    return OrderCreatedResponse(
        order=OrderResponse.model_validate(order),
        publish=publish_response,
    )


@router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get order by ID",
    responses={
        200: {"description": "Order found"},
        404: {"description": "Order not found"},
    },
    tags=["Orders"],
)
async def get_order(
    order_id: int,
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    order = await OrderStore(db).get(order_id)
    if order is None:
        raise OrderNotFoundError(order_id)
    return OrderResponse.model_validate(order)


@router.post(
    "/{order_id}/publish",
    response_model=PublishResponse,
    summary="Publish an order to the drivers channel",
    description=(
        "Idempotent: an order that already has an announcement returns already_published. "
        "missing_destination / publish_failed leave the order open for manual handling."
    ),
    responses={
        200: {"description": "Publication outcome"},
        404: {"description": "Order not found"},
    },
    tags=["Orders"],
)
async def publish_order(
    order_id: int,
    db: AsyncSession = Depends(get_db),
    transport: TelegramTransport = Depends(get_transport),
) -> PublishResponse:
    logger.info("Publish order request", extra_data={"order_id": order_id})
    result = await OrderLifecycleService(db, transport).publish_order(order_id)
    if result.status == PublishStatus.NOT_FOUND:
        raise OrderNotFoundError(order_id)
    return PublishResponse(status=result.status, message_id=result.message_id)


@router.post(
    "/{order_id}/cancel",
    response_model=OrderResponse,
    summary="Cancel an order on behalf of its requester",
    responses={
        200: {"description": "Order cancelled"},
        404: {"description": "Order not found"},
        409: {"description": "Order is no longer cancellable"},
    },
    tags=["Orders"],
)
async def cancel_order(
    order_id: int,
    cancel_data: CancelRequest,
    db: AsyncSession = Depends(get_db),
    transport: TelegramTransport = Depends(get_transport),
) -> OrderResponse:
    logger.info(
        "Cancel order request",
        extra_data={"order_id": order_id, "client_id": cancel_data.client_id},
    )
    service = OrderLifecycleService(db, transport)
    cancelled = await service.cancel_client_order(order_id, cancel_data.client_id)
    if cancelled is not None:
        return OrderResponse.model_validate(cancelled)

    order = await OrderStore(db).get(order_id)
    if order is None or order.client_id != cancel_data.client_id:
        raise OrderNotFoundError(order_id)
    raise OrderStateError(order_id, order.status.value, "cancel")
