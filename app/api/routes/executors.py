"""
Executor API Routes

Onboarding and verification happen elsewhere; this endpoint stores their
result so the webhook can resolve who pressed a button.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFoundException
from app.core.logging import get_logger
from app.db.database import get_db
from app.db.models.executor import ExecutorRole
from app.domain.services.eligibility_service import EligibilityService

logger = get_logger(__name__)

router = APIRouter()


class ExecutorUpsert(BaseModel):
    role: ExecutorRole
    city: Optional[str] = Field(default=None, max_length=64)
    verified_kinds: List[ExecutorRole] = Field(default_factory=list)
    name: Optional[str] = Field(default=None, max_length=100)
    username: Optional[str] = Field(default=None, max_length=64)
    is_active: bool = True

    @field_validator("username")
    @classmethod
    def strip_at(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip().lstrip("@") or None

    @field_validator("city")
    @classmethod
    def normalize_city(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None


class ExecutorResponse(BaseModel):
    telegram_id: int
    role: ExecutorRole
    city: Optional[str] = None
    verified_kinds: List[str]
    name: Optional[str] = None
    username: Optional[str] = None
    is_active: bool


def _to_response(executor) -> ExecutorResponse:
    return ExecutorResponse(
        telegram_id=executor.telegram_id,
        role=executor.role,
        city=executor.city,
        verified_kinds=sorted(executor.verified_roles),
        name=executor.name,
        username=executor.username,
        is_active=executor.is_active,
    )


@router.put(
    "/{telegram_id}",
    response_model=ExecutorResponse,
    summary="Register or update an executor",
    tags=["Executors"],
)
async def upsert_executor(
    telegram_id: int,
    executor_data: ExecutorUpsert,
    db: AsyncSession = Depends(get_db),
) -> ExecutorResponse:
    logger.info(
        "Upserting executor",
        extra_data={"telegram_id": telegram_id, "role": executor_data.role.value, "city": executor_data.city},
    )
    executor = await EligibilityService(db).register(
        telegram_id,
        role=executor_data.role,
        city=executor_data.city,
        verified_kinds=[kind.value for kind in executor_data.verified_kinds],
        name=executor_data.name,
        username=executor_data.username,
        is_active=executor_data.is_active,
    )
    return _to_response(executor)


@router.get(
    "/{telegram_id}",
    response_model=ExecutorResponse,
    summary="Get executor",
    responses={404: {"description": "Executor not found"}},
    tags=["Executors"],
)
async def get_executor(
    telegram_id: int,
    db: AsyncSession = Depends(get_db),
) -> ExecutorResponse:
    executor = await EligibilityService(db).get_executor(telegram_id)
    if executor is None:
        raise NotFoundException("executor", telegram_id)
    return _to_response(executor)
