"""
Undo Window Tracker - who may reverse the last release/completion of an order

Process-local and best-effort: a restart drops every open window, which
only means the executor can no longer undo. The order row stays the
source of truth.
"""
import enum
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)


class UndoAction(str, enum.Enum):
    RELEASE = "release"
    COMPLETE = "complete"


@dataclass(frozen=True)
class UndoRecord:
    order_id: int
    executor_id: int
    action: UndoAction
    expires_at: float

    def is_live(self, now: float) -> bool:
        return now < self.expires_at


class UndoWindowTracker:
    """
    One record per order, guarded by a lock so ``consume`` is a single
    read-and-delete even when called from several threads.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._records: dict[int, UndoRecord] = {}
        self._lock = threading.Lock()

    def open(
        self,
        order_id: int,
        executor_id: int,
        action: UndoAction,
        ttl_seconds: Optional[float] = None,
    ) -> UndoRecord:
        ttl = settings.UNDO_WINDOW_SECONDS if ttl_seconds is None else ttl_seconds
        record = UndoRecord(
            order_id=order_id,
            executor_id=executor_id,
            action=action,
            expires_at=self._clock() + ttl,
        )
        with self._lock:
            self._records[order_id] = record
        logger.debug(
            "Undo window opened",
            extra_data={
                "order_id": order_id,
                "executor_id": executor_id,
                "action": action.value,
                "ttl_seconds": ttl,
            },
        )
        return record

    def _live_record_locked(self, order_id: int) -> Optional[UndoRecord]:
        record = self._records.get(order_id)
        if record is None:
            return None
        if not record.is_live(self._clock()):
            del self._records[order_id]
            return None
        return record

    def peek(self, order_id: int) -> Optional[UndoRecord]:
        """קריאה בלי מחיקה - לבדיקה מקדימה לפני פעולה יקרה"""
        with self._lock:
            return self._live_record_locked(order_id)

    def consume(
        self,
        order_id: int,
        executor_id: Optional[int] = None,
        action: Optional[UndoAction] = None,
    ) -> Optional[UndoRecord]:
        """
        קריאה ומחיקה אטומית; None אם אין רשומה בתוקף.

        כשמועברים executor_id / action, רשומה שלא תואמת להם נשארת במקומה.
        """
        with self._lock:
            record = self._live_record_locked(order_id)
            if record is None:
                return None
            if executor_id is not None and record.executor_id != executor_id:
                return None
            if action is not None and record.action != action:
                return None
            del self._records[order_id]
            return record

    def restore(self, record: UndoRecord) -> bool:
        """
        החזרת רשומה שנצרכה אחרי שהפעולה נכשלה בתשתית.

        שומרת על expires_at המקורי, ולא דורסת רשומה חדשה יותר להזמנה.
        """
        with self._lock:
            if not record.is_live(self._clock()) or record.order_id in self._records:
                return False
            self._records[record.order_id] = record
            return True

    def discard(self, order_id: int) -> None:
        with self._lock:
            self._records.pop(order_id, None)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [oid for oid, rec in self._records.items() if not rec.is_live(now)]
            for oid in expired:
                del self._records[oid]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


undo_tracker = UndoWindowTracker()
