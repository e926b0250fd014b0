"""
בדיקות יחידה ל-Health Check endpoints - liveness ו-readiness.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

import httpx

from app.core.circuit_breaker import get_telegram_circuit_breaker
from app.domain.services import health_service


def _open_telegram_circuit() -> None:
    breaker = get_telegram_circuit_breaker()
    for _ in range(breaker.config.failure_threshold):
        breaker.record_failure(RuntimeError("telegram down"))


def _patch_infra(db: str = "ok", celery: str = "ok"):
    """DB ו-Celery broker אמיתיים לא זמינים בבדיקות - מחליפים את הבדיקות שלהם"""
    return (
        patch("app.domain.services.health_service._check_db", new_callable=AsyncMock, return_value=db),
        patch("app.domain.services.health_service._check_celery", new_callable=AsyncMock, return_value=celery),
    )


class TestLivenessCheck:
    @pytest.mark.unit
    async def test_liveness_returns_healthy(self, test_client: httpx.AsyncClient) -> None:
        """liveness check מחזיר status=healthy תמיד."""
        response = await test_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


class TestReadinessCheck:
    @pytest.mark.unit
    async def test_readiness_all_healthy(self, test_client: httpx.AsyncClient) -> None:
        db_patch, celery_patch = _patch_infra()
        with db_patch, celery_patch:
            response = await test_client.get("/health/ready")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["db"] == "ok"
        assert data["redis"] == "ok"
        assert data["telegram"] == "ok"
        assert data["celery"] == "ok"
        assert data["circuit_breakers"] == [{
            "service": "telegram",
            "state": "closed",
            "failure_count": 0,
            "retry_after_seconds": 0.0,
        }]

    @pytest.mark.unit
    async def test_readiness_db_down(self, test_client: httpx.AsyncClient) -> None:
        db_patch, celery_patch = _patch_infra(db="error: db_unavailable")
        with db_patch, celery_patch:
            response = await test_client.get("/health/ready")

        assert response.status_code == 503
        data = response.json()
        assert data["status"] == "degraded"
        assert data["db"] == "error: db_unavailable"

    @pytest.mark.unit
    async def test_readiness_reports_open_telegram_circuit(self, test_client: httpx.AsyncClient) -> None:
        _open_telegram_circuit()

        db_patch, celery_patch = _patch_infra()
        with db_patch, celery_patch:
            response = await test_client.get("/health/ready")

        assert response.status_code == 503
        data = response.json()
        assert data["telegram"] == "error: telegram_circuit_open"
        assert data["circuit_breakers"][0]["state"] == "open"
        assert data["circuit_breakers"][0]["failure_count"] == 5


class TestDependencyChecks:
    @pytest.mark.unit
    async def test_check_redis_ok_with_fake(self) -> None:
        assert await health_service._check_redis() == "ok"

    @pytest.mark.unit
    async def test_check_redis_failure_is_sanitized(self) -> None:
        broken = MagicMock()
        broken.ping = AsyncMock(side_effect=ConnectionError("redis://user:pw@host refused"))

        with patch(
            "app.domain.services.health_service.get_redis",
            new_callable=AsyncMock,
            return_value=broken,
        ):
            result = await health_service._check_redis()

        assert result == "error: redis_unavailable"

    @pytest.mark.unit
    def test_check_telegram_follows_circuit(self) -> None:
        assert health_service._check_telegram() == "ok"
        _open_telegram_circuit()
        assert health_service._check_telegram() == "error: telegram_circuit_open"

    @pytest.mark.unit
    async def test_check_db_uses_session(self, async_engine) -> None:
        from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

        session_factory = async_sessionmaker(async_engine, class_=AsyncSession)
        with patch("app.domain.services.health_service.AsyncSessionLocal", session_factory):
            assert await health_service._check_db() == "ok"

    @pytest.mark.unit
    async def test_check_db_failure(self) -> None:
        with patch(
            "app.domain.services.health_service.AsyncSessionLocal",
            side_effect=RuntimeError("connection refused"),
        ):
            assert await health_service._check_db() == "error: db_unavailable"

    @pytest.mark.unit
    async def test_check_celery_pings_broker(self) -> None:
        client = MagicMock()
        client.ping = AsyncMock(return_value=True)
        client.aclose = AsyncMock()

        with patch("app.domain.services.health_service.aioredis.from_url", return_value=client):
            assert await health_service._check_celery() == "ok"
        client.aclose.assert_awaited_once()

    @pytest.mark.unit
    async def test_check_celery_failure(self) -> None:
        client = MagicMock()
        client.ping = AsyncMock(side_effect=ConnectionError("refused"))
        client.aclose = AsyncMock()

        with patch("app.domain.services.health_service.aioredis.from_url", return_value=client):
            assert await health_service._check_celery() == "error: celery_unavailable"
        client.aclose.assert_awaited_once()
