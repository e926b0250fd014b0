"""
Channel Service - logical channel name to physical Telegram chat
"""
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import get_logger
from app.db.models.channel_binding import ChannelBinding

logger = get_logger(__name__)

DRIVERS_CHANNEL = "drivers"


class ChannelService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_destination(self, channel: str = DRIVERS_CHANNEL) -> Optional[int]:
        """chat_id של הערוץ, או None אם לא הוגדר"""
        result = await self.db.execute(
            select(ChannelBinding.chat_id).where(ChannelBinding.channel == channel)
        )
        chat_id = result.scalar_one_or_none()
        if chat_id is not None:
            return chat_id
        if channel == DRIVERS_CHANNEL and settings.DRIVERS_CHANNEL_ID:
            return settings.DRIVERS_CHANNEL_ID
        return None

    async def bind(self, channel: str, chat_id: int) -> ChannelBinding:
        result = await self.db.execute(
            select(ChannelBinding).where(ChannelBinding.channel == channel)
        )
        binding = result.scalar_one_or_none()
        if binding is None:
            binding = ChannelBinding(channel=channel, chat_id=chat_id)
            self.db.add(binding)
        else:
            binding.chat_id = chat_id
        await self.db.commit()
        await self.db.refresh(binding)

        logger.info(
            "Channel bound",
            extra_data={"channel": channel, "chat_id": chat_id},
        )
        return binding
