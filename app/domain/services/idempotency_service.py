"""
Idempotency Guard - at-most-once execution of actor actions

Each (actor, action, payload) gets a sha1 key stored in ``recent_actions``
with a short TTL. The insert runs inside a savepoint so a concurrent
duplicate shows up as IntegrityError and the handler is skipped.

If the guard store itself fails, the action runs unguarded: availability
wins over exactness here and the failure is logged at ERROR.
"""
import hashlib
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy import delete, insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import get_logger
from app.db.models.recent_action import RecentAction
from app.domain.outcomes import GuardResult, GuardStatus

logger = get_logger(__name__)

T = TypeVar("T")


def build_idempotency_key(actor_id: int, action: str, payload: Optional[str] = None) -> str:
    """מפתח דטרמיניסטי: sha1 של actor:action:payload"""
    raw = f"{actor_id}:{action}:{payload or ''}"
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()


class IdempotencyGuard:
    def __init__(
        self,
        db: AsyncSession,
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.db = db
        self.ttl_seconds = ttl_seconds or settings.IDEMPOTENCY_TTL_SECONDS
        self._clock = clock

    async def _acquire(self, actor_id: int, key: str) -> bool:
        """
        מנסה לרשום את המפתח. מחזיר False אם כבר קיים רישום בתוקף.

        רשומות שפג תוקפן של אותו מבצע נמחקות לפני ההכנסה (pull-based expiry).
        """
        now = self._clock()
        await self.db.execute(
            delete(RecentAction).where(
                RecentAction.actor_id == actor_id,
                RecentAction.expires_at <= now,
            )
        )
        try:
            # insert ישיר ולא session.add: ההכרעה על כפילות שייכת ל-DB בלבד
            async with self.db.begin_nested():
                await self.db.execute(
                    insert(RecentAction).values(
                        actor_id=actor_id,
                        key=key,
                        expires_at=now + timedelta(seconds=self.ttl_seconds),
                        created_at=now,
                    )
                )
        except IntegrityError:
            await self.db.commit()
            return False

        await self.db.commit()
        return True

    async def _forget(self, actor_id: int, key: str) -> None:
        try:
            await self.db.execute(
                delete(RecentAction).where(
                    RecentAction.actor_id == actor_id,
                    RecentAction.key == key,
                )
            )
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.warning(
                "Failed to drop idempotency record after handler error",
                extra_data={"actor_id": actor_id, "error": str(exc)},
            )

    async def guard(
        self,
        actor_id: int,
        action: str,
        payload: Optional[str],
        handler: Callable[[], Awaitable[T]],
    ) -> GuardResult[T]:
        """
        מריץ את ה-handler לכל היותר פעם אחת בחלון ה-TTL.

        Returns:
            GuardResult(DUPLICATE) בלי להריץ את ה-handler אם המפתח קיים,
            אחרת GuardResult(OK, result).

        Raises:
            כל חריגה של ה-handler, אחרי מחיקת הרישום כדי לאפשר ניסיון חוזר.
        """
        key = build_idempotency_key(actor_id, action, payload)

        try:
            acquired = await self._acquire(actor_id, key)
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error(
                "Idempotency store unavailable, running action unguarded",
                extra_data={"actor_id": actor_id, "action": action, "error": str(exc)},
                exc_info=True,
            )
            return GuardResult(status=GuardStatus.OK, result=await handler(), guarded=False)

        if not acquired:
            logger.info(
                "Duplicate action suppressed",
                extra_data={"actor_id": actor_id, "action": action, "payload": payload},
            )
            return GuardResult(status=GuardStatus.DUPLICATE)

        try:
            result = await handler()
        except Exception:
            await self._forget(actor_id, key)
            raise

        return GuardResult(status=GuardStatus.OK, result=result)

    async def purge_expired(self) -> int:
        """ניקוי תקופתי של כל הרשומות שפג תוקפן"""
        result = await self.db.execute(
            delete(RecentAction).where(RecentAction.expires_at <= self._clock())
        )
        await self.db.commit()
        return result.rowcount or 0
