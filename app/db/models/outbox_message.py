"""
Outbox Message Model - Transactional Outbox Pattern

Requester and executor notifications are written in the same transaction
as the order transition that caused them and delivered by the worker.
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, JSON, Index

from app.db.database import Base


class MessageStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class OutboxMessage(Base):
    """Pending notifications with retry tracking"""

    __tablename__ = "outbox_messages"

    id = Column(Integer, primary_key=True, index=True)

    recipient_id = Column(String(50), nullable=False)  # Telegram chat id
    order_id = Column(Integer, nullable=True, index=True)

    message_type = Column(String(50), nullable=False)  # e.g. "order_released", "order_completed"
    message_content = Column(JSON, nullable=False)

    status = Column(SQLEnum(MessageStatus), default=MessageStatus.PENDING, index=True)
    retry_count = Column(Integer, default=0)
    max_retries = Column(Integer, default=3)

    created_at = Column(DateTime, default=datetime.utcnow)
    processed_at = Column(DateTime, nullable=True)
    next_retry_at = Column(DateTime, nullable=True)

    last_error = Column(String(1000), nullable=True)

    __table_args__ = (
        Index("ix_outbox_messages_status_next_retry", "status", "next_retry_at"),
    )
