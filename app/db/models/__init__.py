"""
Database Models
"""
from app.db.models.order import Order
from app.db.models.executor import Executor
from app.db.models.recent_action import RecentAction
from app.db.models.channel_binding import ChannelBinding
from app.db.models.outbox_message import OutboxMessage

__all__ = [
    "Order",
    "Executor",
    "RecentAction",
    "ChannelBinding",
    "OutboxMessage",
]
