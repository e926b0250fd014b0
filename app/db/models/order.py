"""
Order Model - dispatched ride/delivery orders
"""
import enum
import secrets
import string
from datetime import datetime
from sqlalchemy import (
    Column,
    Integer,
    BigInteger,
    String,
    DateTime,
    Enum as SQLEnum,
    Float,
    Boolean,
    Text,
    Index,
    text,
)

from app.db.database import Base

_SHORT_ID_ALPHABET = string.digits + string.ascii_lowercase
SHORT_ID_LENGTH = 8


def generate_short_id() -> str:
    """קוד תצוגה קצר להזמנה: 8 תווים base36"""
    return "".join(secrets.choice(_SHORT_ID_ALPHABET) for _ in range(SHORT_ID_LENGTH))


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class OrderKind(str, enum.Enum):
    RIDE = "ride"
    DELIVERY = "delivery"


class OrderStatus(str, enum.Enum):
    OPEN = "open"
    CLAIMED = "claimed"
    CANCELLED = "cancelled"
    DONE = "done"


ACTIVE_ORDER_STATUSES = (OrderStatus.OPEN, OrderStatus.CLAIMED)


class Order(Base):
    """
    Dispatched order.

    Invariants held by the order store:
    - claimed_by is set iff status is claimed or done
    - claimed_at is set on entering claimed, cleared on return to open
    - completed_at is set on entering done, cleared when restored
    - channel_message_id is cleared on claim and on release
    """

    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    short_id = Column(String(16), unique=True, nullable=False, default=generate_short_id, index=True)

    kind = Column(SQLEnum(OrderKind, name="order_kind", values_callable=_enum_values), nullable=False)
    city = Column(String(64), nullable=False, index=True)
    status = Column(
        SQLEnum(OrderStatus, name="order_status", values_callable=_enum_values),
        nullable=False,
        default=OrderStatus.OPEN,
        index=True,
    )

    # Pickup
    pickup_query = Column(String(500), nullable=False)
    pickup_address = Column(String(500), nullable=False)
    pickup_lat = Column(Float, nullable=False)
    pickup_lon = Column(Float, nullable=False)

    # Dropoff
    dropoff_query = Column(String(500), nullable=False)
    dropoff_address = Column(String(500), nullable=False)
    dropoff_lat = Column(Float, nullable=False)
    dropoff_lon = Column(Float, nullable=False)

    # Price (מגיע מוכן מחישוב המחיר החיצוני)
    price_amount = Column(Integer, nullable=False)
    price_currency = Column(String(8), nullable=False)
    distance_km = Column(Float, nullable=False, default=0.0)
    eta_minutes = Column(Integer, nullable=True)

    # Requester
    client_id = Column(BigInteger, nullable=False, index=True)
    client_phone = Column(String(32), nullable=True)
    notes = Column(Text, nullable=True)

    # Executor
    claimed_by = Column(BigInteger, nullable=True, index=True)
    # True כשהמבצע כפוף למדיניות הזמנה פעילה אחת - נאכף באינדקס החלקי
    exclusive_claim = Column(Boolean, nullable=False, default=False)
    claimed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    # Publication
    channel_message_id = Column(BigInteger, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index(
            "uq_orders_exclusive_claim",
            "claimed_by",
            unique=True,
            postgresql_where=text("status = 'claimed' AND exclusive_claim"),
            sqlite_where=text("status = 'claimed' AND exclusive_claim = 1"),
        ),
    )
