"""
tests/test_health.py

ヘルスチェックとデバッグエンドポイントのテスト
"""
from app.models import DataSource
from app.services.errors import CacheUnavailableError, UpstreamHTTPError


class TestHealthCheck:
    """ヘルスチェックエンドポイントのテスト"""

    async def test_health_returns_healthy(self, async_client, mock_velib_client):
        """GET /health が healthy を返す"""
        response = await async_client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["reference_source"] == "live"
        assert data["cache"] == {"reference_entries": 6, "realtime_entries": 6}
        mock_velib_client.test_connectivity.assert_awaited_once()

    async def test_health_degraded_on_stale_cache(self, async_client, mock_velib_client):
        mock_velib_client.test_connectivity.return_value = DataSource.STALE_CACHE

        response = await async_client.get("/health")
        assert response.json()["status"] == "degraded"

    async def test_health_unhealthy_without_data(self, async_client, mock_velib_client):
        mock_velib_client.test_connectivity.side_effect = CacheUnavailableError("reference")

        response = await async_client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "unhealthy"
        assert data["error"] == "CACHE_UNAVAILABLE"

    async def test_health_reports_error_metrics(self, async_client, metrics):
        metrics.record(UpstreamHTTPError("down", "https://example.test", status_code=503))
        await async_client.get("/api/stations/search", params={"q": "x"})

        response = await async_client.get("/health")
        assert response.json()["errors"] == {"HTTP_ERROR": 1, "QUERY_TOO_SHORT": 1}


class TestDebugEndpoints:
    """デバッグエンドポイントのテスト"""

    async def test_config(self, async_client):
        """GET /debug/config が設定を返す"""
        response = await async_client.get("/debug/config")

        assert response.status_code == 200
        data = response.json()
        assert "reference_url" in data
        assert "realtime_url" in data
        assert data["retry_max_attempts"] >= 0
