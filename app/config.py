"""
app/config.py

アプリケーション設定

環境変数から読み込む。.env ファイルは app.main で load_dotenv() 済み。
数値・真偽値の形式が不正な場合は警告を出してデフォルト値を使う（起動は止めない）。

環境変数:
  VELIB_REFERENCE_URL / VELIB_REALTIME_URL: フィードのURL
  VELIB_PAGE_SIZE: 1ページの件数 (デフォルト: 100)
  VELIB_MAX_OFFSET: ページングの安全上限 (デフォルト: 10000)
  REFERENCE_CACHE_TTL_SECONDS: 静的情報のTTL (デフォルト: 1800)
  REALTIME_CACHE_TTL_SECONDS: リアルタイムのTTL (デフォルト: 120)
  RETRY_MAX_ATTEMPTS / RETRY_BASE_DELAY_SECONDS / RETRY_MAX_DELAY_SECONDS / RETRY_USE_JITTER
  FETCH_TIMEOUT_SECONDS: 1回の取得の制限秒数 (デフォルト: 30)
  CIRCUIT_BREAKER_ENABLED / CIRCUIT_FAILURE_THRESHOLD / CIRCUIT_RECOVERY_SECONDS
  CACHE_CLEANUP_INTERVAL_SECONDS: キャッシュ掃除の間隔、0で無効 (デフォルト: 300)
  LOG_LEVEL: ログレベル (デフォルト: INFO)
  CORS_ORIGINS: 許可するオリジン（カンマ区切り）
"""
import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Mapping, Optional

from app.services.feed_fetcher import VELIB_REALTIME_URL, VELIB_REFERENCE_URL
from app.services.retry import RetryConfig

logger = logging.getLogger(__name__)

DEFAULT_CORS_ORIGINS = [
    "http://localhost:5173",      # Vite開発サーバー
    "http://localhost:3000",      # その他
]


# =============================================================================
# 環境変数のパース
# =============================================================================

def _env_int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid %s=%r, using default %s", name, raw, default)
        return default
    if value < minimum:
        logger.warning("%s=%d is below %d, using default %s", name, value, minimum, default)
        return default
    return value


def _env_float(env: Mapping[str, str], name: str, default: float, minimum: float = 0.0) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Invalid %s=%r, using default %s", name, raw, default)
        return default
    if value < minimum:
        logger.warning("%s=%g is below %g, using default %s", name, value, minimum, default)
        return default
    return value


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    normalized = raw.strip().lower()
    if normalized in ("1", "true", "yes", "on"):
        return True
    if normalized in ("0", "false", "no", "off"):
        return False
    logger.warning("Invalid %s=%r, using default %s", name, raw, default)
    return default


def _env_list(env: Mapping[str, str], name: str, default: list[str]) -> list[str]:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


# =============================================================================
# 設定
# =============================================================================

@dataclass
class Settings:
    """アプリケーション設定"""
    reference_url: str = VELIB_REFERENCE_URL
    realtime_url: str = VELIB_REALTIME_URL
    page_size: int = 100
    max_offset: int = 10_000

    reference_cache_ttl: timedelta = timedelta(seconds=1800)
    realtime_cache_ttl: timedelta = timedelta(seconds=120)

    retry_max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 60.0
    retry_use_jitter: bool = True
    fetch_timeout: float = 30.0

    circuit_breaker_enabled: bool = True
    circuit_failure_threshold: int = 5
    circuit_recovery_seconds: float = 30.0

    cache_cleanup_interval: float = 300.0

    log_level: str = "INFO"
    cors_origins: list[str] = field(default_factory=lambda: list(DEFAULT_CORS_ORIGINS))

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """環境変数から設定を生成（env 省略時は os.environ）"""
        env = os.environ if env is None else env
        defaults = cls()
        return cls(
            reference_url=env.get("VELIB_REFERENCE_URL") or defaults.reference_url,
            realtime_url=env.get("VELIB_REALTIME_URL") or defaults.realtime_url,
            page_size=_env_int(env, "VELIB_PAGE_SIZE", defaults.page_size, minimum=1),
            max_offset=_env_int(env, "VELIB_MAX_OFFSET", defaults.max_offset, minimum=1),
            reference_cache_ttl=timedelta(seconds=_env_float(
                env, "REFERENCE_CACHE_TTL_SECONDS", defaults.reference_cache_ttl.total_seconds(),
            )),
            realtime_cache_ttl=timedelta(seconds=_env_float(
                env, "REALTIME_CACHE_TTL_SECONDS", defaults.realtime_cache_ttl.total_seconds(),
            )),
            retry_max_attempts=_env_int(env, "RETRY_MAX_ATTEMPTS", defaults.retry_max_attempts),
            retry_base_delay=_env_float(env, "RETRY_BASE_DELAY_SECONDS", defaults.retry_base_delay),
            retry_max_delay=_env_float(env, "RETRY_MAX_DELAY_SECONDS", defaults.retry_max_delay),
            retry_use_jitter=_env_bool(env, "RETRY_USE_JITTER", defaults.retry_use_jitter),
            fetch_timeout=_env_float(env, "FETCH_TIMEOUT_SECONDS", defaults.fetch_timeout, minimum=0.001),
            circuit_breaker_enabled=_env_bool(env, "CIRCUIT_BREAKER_ENABLED", defaults.circuit_breaker_enabled),
            circuit_failure_threshold=_env_int(
                env, "CIRCUIT_FAILURE_THRESHOLD", defaults.circuit_failure_threshold, minimum=1,
            ),
            circuit_recovery_seconds=_env_float(env, "CIRCUIT_RECOVERY_SECONDS", defaults.circuit_recovery_seconds),
            cache_cleanup_interval=_env_float(env, "CACHE_CLEANUP_INTERVAL_SECONDS", defaults.cache_cleanup_interval),
            log_level=(env.get("LOG_LEVEL") or defaults.log_level).upper(),
            cors_origins=_env_list(env, "CORS_ORIGINS", defaults.cors_origins),
        )

    @property
    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_attempts=self.retry_max_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            use_jitter=self.retry_use_jitter,
            attempt_timeout=self.fetch_timeout,
        )
