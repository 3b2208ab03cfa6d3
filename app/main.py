"""
app/main.py

パリ Vélib' ステーション検索 API - メインアプリケーション

起動コマンド:
  uvicorn app.main:app --reload --host 0.0.0.0 --port 8000

環境変数:
  app/config.py を参照
"""
import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

# .envファイルを読み込む（設定の読み込みより前に実行）
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from app.config import Settings
from app.models import DataSource
from app.routers.stations import router as stations_router
from app.services.errors import VelibError
from app.services.feed_fetcher import HttpFeedFetcher
from app.services.metrics import ErrorMetrics
from app.services.retry import CircuitBreaker, RetryPolicy
from app.services.station_query import StationQueryService
from app.services.velib_client import VelibClient


# =============================================================================
# 設定
# =============================================================================

settings = Settings.from_env()

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


# =============================================================================
# サービス生成
# =============================================================================

def create_velib_client(fetcher: HttpFeedFetcher, config: Settings, metrics: ErrorMetrics) -> VelibClient:
    """設定から VelibClient を組み立てる"""
    breaker = None
    if config.circuit_breaker_enabled:
        breaker = CircuitBreaker(
            failure_threshold=config.circuit_failure_threshold,
            recovery_timeout=config.circuit_recovery_seconds,
        )
    return VelibClient(
        fetcher,
        retry_policy=RetryPolicy(config.retry_config, metrics=metrics),
        circuit_breaker=breaker,
        metrics=metrics,
        reference_url=config.reference_url,
        realtime_url=config.realtime_url,
        reference_ttl=config.reference_cache_ttl,
        realtime_ttl=config.realtime_cache_ttl,
        page_size=config.page_size,
        max_offset=config.max_offset,
    )


async def run_cache_cleanup(client: VelibClient, interval: float):
    """期限切れキャッシュを定期的に削除"""
    while True:
        await asyncio.sleep(interval)
        reference_removed, realtime_removed = client.cleanup_cache()
        if reference_removed or realtime_removed:
            logger.info(
                "Cache cleanup: removed %d reference / %d realtime entries",
                reference_removed, realtime_removed,
            )


# =============================================================================
# Lifespan（起動・終了処理）
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    アプリケーションライフサイクル管理

    参照: https://fastapi.tiangolo.com/advanced/events/

    Startup:
    1. HttpFeedFetcher（httpx.AsyncClient）を生成
    2. VelibClient と StationQueryService を初期化
    3. キャッシュ掃除タスクを開始

    Shutdown:
    1. 掃除タスクを停止
    2. HTTPクライアントのクローズ
    """
    # === Startup ===
    logger.info("Starting Paris Velib API...")

    metrics = ErrorMetrics()
    fetcher = HttpFeedFetcher()
    velib_client = create_velib_client(fetcher, settings, metrics)

    app.state.metrics = metrics
    app.state.velib_client = velib_client
    app.state.query_service = StationQueryService(velib_client, metrics=metrics)

    cleanup_task = None
    if settings.cache_cleanup_interval > 0:
        cleanup_task = asyncio.create_task(
            run_cache_cleanup(velib_client, settings.cache_cleanup_interval)
        )

    logger.info("API Ready!")

    yield  # アプリケーション実行中

    # === Shutdown ===
    logger.info("Shutting down...")

    if cleanup_task is not None:
        cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await cleanup_task

    await fetcher.close()

    logger.info("Shutdown complete.")


# =============================================================================
# FastAPIアプリケーション
# =============================================================================

app = FastAPI(
    title="パリ Vélib' ステーション検索 API",
    description="""
パリのシェアサイクル Vélib' Métropole のステーション情報を検索するAPI

## 機能
- 周辺ステーション検索（空き状況フィルタ付き）
- ステーション名検索
- エリア統計
- 借りる/返すステーションの推奨（移動プラン）

## データソース
- パリ市オープンデータ（静的情報: 30分キャッシュ、リアルタイム: 2分キャッシュ）
- 取得に失敗した場合は直前のデータを返す
    """,
    version="1.0.0",
    lifespan=lifespan,
)

# CORS設定
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET"],
    allow_headers=["*"],
)

# ルーター登録
app.include_router(stations_router)


# =============================================================================
# ヘルスチェック・デバッグエンドポイント
# =============================================================================

@app.get("/health", tags=["system"])
async def health_check(request: Request):
    """
    ヘルスチェック

    - healthy: 静的情報を上流またはキャッシュから取得できる
    - degraded: 上流に到達できず、期限切れキャッシュで応答している
    - unhealthy: データを取得できない
    """
    velib_client: VelibClient = request.app.state.velib_client
    metrics: ErrorMetrics = request.app.state.metrics

    reference_count, realtime_count = velib_client.cache_stats()
    body = {
        "cache": {
            "reference_entries": reference_count,
            "realtime_entries": realtime_count,
        },
        "errors": metrics.snapshot(),
    }

    try:
        source = await velib_client.test_connectivity()
    except VelibError as e:
        logger.warning("Health check failed: %s", e)
        return {"status": "unhealthy", "error": e.code, **body}

    status = "degraded" if source == DataSource.STALE_CACHE else "healthy"
    return {"status": status, "reference_source": source.value, **body}


@app.get("/debug/config", tags=["debug"])
async def get_config():
    """設定確認（デバッグ用）"""
    return {
        "reference_url": settings.reference_url,
        "realtime_url": settings.realtime_url,
        "reference_cache_ttl_seconds": settings.reference_cache_ttl.total_seconds(),
        "realtime_cache_ttl_seconds": settings.realtime_cache_ttl.total_seconds(),
        "retry_max_attempts": settings.retry_max_attempts,
        "fetch_timeout_seconds": settings.fetch_timeout,
        "circuit_breaker_enabled": settings.circuit_breaker_enabled,
    }


# =============================================================================
# メイン（直接実行時）
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )
