"""
בדיקות יחידה ל-Health Check endpoints - liveness ו-readiness.
"""
from contextlib import contextmanager
from unittest.mock import AsyncMock, patch

import httpx
import pytest


@contextmanager
def _checks(db: str = "ok", redis: str = "ok", celery: str = "ok"):
    with patch(
        "app.domain.services.health_service._check_db",
        new_callable=AsyncMock,
        return_value=db,
    ), patch(
        "app.domain.services.health_service._check_redis",
        new_callable=AsyncMock,
        return_value=redis,
    ), patch(
        "app.domain.services.health_service._check_celery",
        new_callable=AsyncMock,
        return_value=celery,
    ):
        yield


# ============================================================================
# Liveness - GET /health
# ============================================================================


class TestLiveness:

    @pytest.mark.unit
    async def test_liveness_returns_healthy(self, test_client: httpx.AsyncClient) -> None:
        """Liveness never checks dependencies."""
        with _checks(db="error: db_unavailable"):
            response = await test_client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


# ============================================================================
# Readiness - GET /health/ready
# ============================================================================


class TestReadiness:

    @pytest.mark.unit
    async def test_readiness_all_healthy(self, test_client: httpx.AsyncClient) -> None:
        with _checks():
            response = await test_client.get("/health/ready")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "db": "ok", "redis": "ok", "celery": "ok"}

    @pytest.mark.unit
    async def test_readiness_db_down(self, test_client: httpx.AsyncClient) -> None:
        with _checks(db="error: db_unavailable"):
            response = await test_client.get("/health/ready")

        assert response.status_code == 503
        data = response.json()
        assert data["status"] == "degraded"
        assert data["db"] == "error: db_unavailable"
        assert data["redis"] == "ok"

    @pytest.mark.unit
    async def test_readiness_multiple_failures(self, test_client: httpx.AsyncClient) -> None:
        with _checks(redis="error: redis_unavailable", celery="error: celery_unavailable"):
            response = await test_client.get("/health/ready")

        assert response.status_code == 503
        data = response.json()
        assert data["redis"].startswith("error:")
        assert data["celery"].startswith("error:")


# ============================================================================
# Individual checks
# ============================================================================


class TestHealthCheckFunctions:

    @pytest.mark.unit
    async def test_check_db_success(self) -> None:
        mock_session = AsyncMock()
        mock_session.execute = AsyncMock()
        mock_session.__aenter__ = AsyncMock(return_value=mock_session)
        mock_session.__aexit__ = AsyncMock(return_value=None)

        with patch(
            "app.domain.services.health_service.AsyncSessionLocal",
            return_value=mock_session,
        ):
            from app.domain.services.health_service import _check_db
            result = await _check_db()

        assert result == "ok"

    @pytest.mark.unit
    async def test_check_db_failure_hides_details(self) -> None:
        mock_session = AsyncMock()
        mock_session.execute = AsyncMock(side_effect=ConnectionError("refused by 10.0.0.5"))
        mock_session.__aenter__ = AsyncMock(return_value=mock_session)
        mock_session.__aexit__ = AsyncMock(return_value=None)

        with patch(
            "app.domain.services.health_service.AsyncSessionLocal",
            return_value=mock_session,
        ):
            from app.domain.services.health_service import _check_db
            result = await _check_db()

        assert result == "error: db_unavailable"

    @pytest.mark.unit
    async def test_check_redis_uses_shared_client(self, fake_redis) -> None:
        from app.domain.services.health_service import _check_redis

        assert await _check_redis() == "ok"

    @pytest.mark.unit
    async def test_check_redis_failure(self) -> None:
        with patch(
            "app.domain.services.health_service.get_redis",
            new_callable=AsyncMock,
            side_effect=ConnectionError("refused"),
        ):
            from app.domain.services.health_service import _check_redis
            result = await _check_redis()

        assert result == "error: redis_unavailable"

    @pytest.mark.unit
    async def test_check_celery_success(self) -> None:
        mock_client = AsyncMock()
        mock_client.ping = AsyncMock(return_value=True)
        mock_client.aclose = AsyncMock()

        with patch(
            "app.domain.services.health_service.aioredis.from_url",
            return_value=mock_client,
        ):
            from app.domain.services.health_service import _check_celery
            result = await _check_celery()

        assert result == "ok"
        mock_client.aclose.assert_awaited_once()

    @pytest.mark.unit
    async def test_check_celery_failure(self) -> None:
        mock_client = AsyncMock()
        mock_client.ping = AsyncMock(side_effect=ConnectionError("refused"))
        mock_client.aclose = AsyncMock()

        with patch(
            "app.domain.services.health_service.aioredis.from_url",
            return_value=mock_client,
        ):
            from app.domain.services.health_service import _check_celery
            result = await _check_celery()

        assert result == "error: celery_unavailable"
        mock_client.aclose.assert_awaited_once()
