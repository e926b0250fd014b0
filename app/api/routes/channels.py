"""
Channel API Routes - bind a logical channel to a Telegram chat
"""
from fastapi import APIRouter, Depends, Path
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.database import get_db
from app.domain.services.channel_service import ChannelService

router = APIRouter()


class ChannelBindRequest(BaseModel):
    chat_id: int


class ChannelBindingResponse(BaseModel):
    channel: str
    chat_id: int

    model_config = {"from_attributes": True}


@router.put(
    "/{name}",
    response_model=ChannelBindingResponse,
    summary="Bind a channel",
    description="Sets the Telegram chat that receives announcements for the named channel (e.g. drivers).",
    tags=["Channels"],
)
async def bind_channel(
    bind_data: ChannelBindRequest,
    name: str = Path(min_length=1, max_length=32),
    db: AsyncSession = Depends(get_db),
) -> ChannelBindingResponse:
    binding = await ChannelService(db).bind(name, bind_data.chat_id)
    return ChannelBindingResponse.model_validate(binding)
