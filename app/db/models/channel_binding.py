"""
Channel Binding Model - logical channel name to Telegram chat id
"""
from datetime import datetime
from sqlalchemy import Column, BigInteger, String, DateTime

from app.db.database import Base


class ChannelBinding(Base):
    __tablename__ = "channel_bindings"

    channel = Column(String(50), primary_key=True)  # e.g. "drivers"
    chat_id = Column(BigInteger, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
