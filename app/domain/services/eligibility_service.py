"""
Eligibility Service - resolves a Telegram user into an executor profile
"""
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.executor import Executor, ExecutorRole
from app.domain.outcomes import ActorProfile


def format_executor_label(executor: Executor) -> str:
    """תווית תצוגה: @username, אחרת שם + מזהה"""
    if executor.username:
        return f"@{executor.username}"
    if executor.name and executor.name.strip():
        return f"{executor.name.strip()} (ID {executor.telegram_id})"
    return f"ID {executor.telegram_id}"


class EligibilityService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_executor(self, telegram_id: int) -> Optional[Executor]:
        result = await self.db.execute(
            select(Executor).where(Executor.telegram_id == telegram_id)
        )
        return result.scalar_one_or_none()

    async def resolve(self, telegram_id: int) -> Optional[ActorProfile]:
        """פרופיל המבצע, או None אם אינו רשום או לא פעיל"""
        executor = await self.get_executor(telegram_id)
        if executor is None or not executor.is_active:
            return None
        return ActorProfile(
            actor_id=executor.telegram_id,
            role=executor.role.value,
            verified_kinds=executor.verified_roles,
            city=executor.city,
            display_name=format_executor_label(executor),
        )

    async def register(
        self,
        telegram_id: int,
        role: ExecutorRole,
        city: Optional[str] = None,
        verified_kinds: Iterable[str] = (),
        name: Optional[str] = None,
        username: Optional[str] = None,
        is_active: bool = True,
    ) -> Executor:
        """
        יצירה או עדכון של מבצע.

        אימות המבצע מתבצע מחוץ לשירות; כאן נשמרת רק התוצאה.
        """
        executor = await self.get_executor(telegram_id)
        kinds = ",".join(sorted({kind.strip() for kind in verified_kinds if kind.strip()}))
        if executor is None:
            executor = Executor(telegram_id=telegram_id)
            self.db.add(executor)
        executor.role = role
        executor.city = city
        executor.verified_kinds = kinds
        executor.name = name
        executor.username = username
        executor.is_active = is_active
        await self.db.commit()
        await self.db.refresh(executor)
        return executor
