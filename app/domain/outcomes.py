"""
Tagged results of order transitions.

Every store miss is a normal outcome; callers switch on ``status`` and
the front door maps each value to a user-facing answer.
"""
import enum
from dataclasses import dataclass, field
from typing import Generic, Optional, TypeVar

from app.db.models.order import Order

T = TypeVar("T")


@dataclass(frozen=True)
class ActorProfile:
    """מבצע מזוהה כפי שמגיע מה-eligibility resolver"""

    actor_id: int
    role: str
    verified_kinds: frozenset[str] = field(default_factory=frozenset)
    city: Optional[str] = None
    display_name: Optional[str] = None

    def is_verified_as(self, kind: str) -> bool:
        return kind in self.verified_kinds


class PublishStatus(str, enum.Enum):
    PUBLISHED = "published"
    ALREADY_PUBLISHED = "already_published"
    MISSING_DESTINATION = "missing_destination"
    PUBLISH_FAILED = "publish_failed"
    NOT_FOUND = "not_found"
    NOT_OPEN = "not_open"


@dataclass(frozen=True)
class PublishResult:
    status: PublishStatus
    message_id: Optional[int] = None

    @property
    def reachable(self) -> bool:
        """ההזמנה מופיעה בערוץ אחרי הפעולה"""
        return self.status in (PublishStatus.PUBLISHED, PublishStatus.ALREADY_PUBLISHED)


class ClaimStatus(str, enum.Enum):
    CLAIMED = "claimed"
    NOT_FOUND = "not_found"
    ALREADY_PROCESSED = "already_processed"
    ALREADY_TAKEN = "already_taken"
    CITY_MISMATCH = "city_mismatch"
    FORBIDDEN_KIND = "forbidden_kind"
    DRIVER_UNVERIFIED = "driver_unverified"
    COURIER_UNVERIFIED = "courier_unverified"
    LIMIT_EXCEEDED = "limit_exceeded"


@dataclass(frozen=True)
class ClaimOutcome:
    status: ClaimStatus
    order: Optional[Order] = None


class DeclineStatus(str, enum.Enum):
    DECLINED = "declined"
    ALREADY_DECLINED = "already_declined"
    ALREADY_PROCESSED = "already_processed"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class DeclineOutcome:
    status: DeclineStatus
    order: Optional[Order] = None


class ReleaseStatus(str, enum.Enum):
    RELEASED = "released"
    NOT_FOUND = "not_found"
    NOT_CLAIMED = "not_claimed"
    FORBIDDEN = "forbidden"


@dataclass(frozen=True)
class ReleaseOutcome:
    status: ReleaseStatus
    order: Optional[Order] = None
    republish: Optional[PublishResult] = None


class CompleteStatus(str, enum.Enum):
    COMPLETED = "completed"
    NOT_FOUND = "not_found"
    NOT_CLAIMED = "not_claimed"
    FORBIDDEN = "forbidden"


@dataclass(frozen=True)
class CompleteOutcome:
    status: CompleteStatus
    order: Optional[Order] = None


class UndoStatus(str, enum.Enum):
    RESTORED = "restored"
    EXPIRED = "expired"
    FORBIDDEN = "forbidden"
    TOO_LATE = "too_late"
    LIMIT_EXCEEDED = "limit_exceeded"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class UndoOutcome:
    status: UndoStatus
    order: Optional[Order] = None


class GuardStatus(str, enum.Enum):
    OK = "ok"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class GuardResult(Generic[T]):
    status: GuardStatus
    result: Optional[T] = None
    # False כשה-guard store לא זמין והפעולה רצה בלי הגנה (fail open)
    guarded: bool = True
