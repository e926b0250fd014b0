"""
Executor Model - drivers and couriers identified by their Telegram id
"""
import enum
from datetime import datetime
from sqlalchemy import Column, BigInteger, String, DateTime, Enum as SQLEnum, Boolean

from app.db.database import Base


class ExecutorRole(str, enum.Enum):
    DRIVER = "driver"
    COURIER = "courier"


class Executor(Base):
    """
    Executor profile.

    Verification itself happens outside this service; the result arrives
    as the comma separated ``verified_kinds`` column (subset of roles).
    """

    __tablename__ = "executors"

    telegram_id = Column(BigInteger, primary_key=True, autoincrement=False)
    name = Column(String(100), nullable=True)
    username = Column(String(64), nullable=True)
    role = Column(
        SQLEnum(
            ExecutorRole,
            name="executor_role",
            values_callable=lambda enum_cls: [member.value for member in enum_cls],
        ),
        nullable=False,
    )
    verified_kinds = Column(String(64), nullable=False, default="")
    city = Column(String(64), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def verified_roles(self) -> frozenset[str]:
        return frozenset(kind.strip() for kind in (self.verified_kinds or "").split(",") if kind.strip())
