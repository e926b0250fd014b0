"""
Domain Services
"""
from app.domain.services.order_store import OrderStore
from app.domain.services.idempotency_service import IdempotencyGuard
from app.domain.services.undo_service import UndoWindowTracker, undo_tracker
from app.domain.services.publication_service import PublicationService
from app.domain.services.lifecycle_service import OrderLifecycleService
from app.domain.services.outbox_service import OutboxService
from app.domain.services.notification_service import NotificationService
from app.domain.services.channel_service import ChannelService
from app.domain.services.eligibility_service import EligibilityService

__all__ = [
    "OrderStore",
    "IdempotencyGuard",
    "UndoWindowTracker",
    "undo_tracker",
    "PublicationService",
    "OrderLifecycleService",
    "OutboxService",
    "NotificationService",
    "ChannelService",
    "EligibilityService",
]
