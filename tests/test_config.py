"""
tests/test_config.py

環境変数からの設定読み込みのテスト
"""
import logging
from datetime import timedelta

from app.config import DEFAULT_CORS_ORIGINS, Settings
from app.services.feed_fetcher import VELIB_REFERENCE_URL


class TestSettingsFromEnv:
    """Settings.from_env のテスト"""

    def test_defaults(self):
        settings = Settings.from_env({})

        assert settings.reference_url == VELIB_REFERENCE_URL
        assert settings.page_size == 100
        assert settings.max_offset == 10_000
        assert settings.reference_cache_ttl == timedelta(minutes=30)
        assert settings.realtime_cache_ttl == timedelta(minutes=2)
        assert settings.retry_max_attempts == 3
        assert settings.retry_use_jitter is True
        assert settings.circuit_breaker_enabled is True
        assert settings.cache_cleanup_interval == 300
        assert settings.log_level == "INFO"
        assert settings.cors_origins == DEFAULT_CORS_ORIGINS

    def test_overrides(self):
        settings = Settings.from_env({
            "VELIB_REALTIME_URL": "https://example.test/realtime",
            "VELIB_PAGE_SIZE": "50",
            "REALTIME_CACHE_TTL_SECONDS": "60",
            "RETRY_MAX_ATTEMPTS": "5",
            "RETRY_USE_JITTER": "false",
            "CIRCUIT_BREAKER_ENABLED": "no",
            "LOG_LEVEL": "debug",
            "CORS_ORIGINS": "https://a.example, https://b.example",
        })

        assert settings.realtime_url == "https://example.test/realtime"
        assert settings.page_size == 50
        assert settings.realtime_cache_ttl == timedelta(seconds=60)
        assert settings.retry_max_attempts == 5
        assert settings.retry_use_jitter is False
        assert settings.circuit_breaker_enabled is False
        assert settings.log_level == "DEBUG"
        assert settings.cors_origins == ["https://a.example", "https://b.example"]

    def test_malformed_values_fall_back(self, caplog):
        """不正な値はデフォルトに戻し、警告を出す"""
        with caplog.at_level(logging.WARNING, logger="app.config"):
            settings = Settings.from_env({
                "VELIB_PAGE_SIZE": "lots",
                "RETRY_BASE_DELAY_SECONDS": "-1",
                "RETRY_USE_JITTER": "maybe",
                "CIRCUIT_FAILURE_THRESHOLD": "0",
            })

        assert settings.page_size == 100
        assert settings.retry_base_delay == 1.0
        assert settings.retry_use_jitter is True
        assert settings.circuit_failure_threshold == 5
        assert len(caplog.records) == 4

    def test_retry_config(self):
        settings = Settings.from_env({"FETCH_TIMEOUT_SECONDS": "12.5", "RETRY_MAX_DELAY_SECONDS": "20"})
        config = settings.retry_config

        assert config.attempt_timeout == 12.5
        assert config.max_delay == 20.0
        assert config.max_attempts == 3
