"""
app/services/feed_fetcher.py

パリ市オープンデータ API のページ取得クライアント

Explore API v2.1 の records エンドポイントから1ページ分のレコードを取得する。
ページングのループ（offset の加算と終了判定）は VelibClient 側が持つ。

HTTPエラーの分類:
- 429            → RateLimitedError（Retry-After を保持）
- 408 / 5xx      → UpstreamHTTPError（リトライ可）
- その他の 4xx   → UpstreamHTTPError（リトライ不可）
- 接続失敗など   → UpstreamHTTPError（status_code=None、リトライ可）
- JSON不正・構造不正 → FeedParseError（リトライ不可）

公式ドキュメント:
- Explore API v2.1: https://help.opendatasoft.com/apis/ods-explore-v2/
- httpx AsyncClient: https://www.python-httpx.org/async/
"""
import logging
from typing import Any, Optional, Protocol

import httpx

from app.services.errors import FeedParseError, RateLimitedError, UpstreamHTTPError

logger = logging.getLogger(__name__)


# =============================================================================
# 定数定義
# =============================================================================

VELIB_REFERENCE_URL = (
    "https://opendata.paris.fr/api/explore/v2.1/catalog/datasets/"
    "velib-emplacement-des-stations/records"
)
VELIB_REALTIME_URL = (
    "https://opendata.paris.fr/api/explore/v2.1/catalog/datasets/"
    "velib-disponibilite-en-temps-reel/records"
)


class FeedFetcher(Protocol):
    """1ページ分のレコードを返す取得インターフェース"""

    async def fetch_page(self, url: str, offset: int, limit: int) -> list[dict[str, Any]]:
        ...


# =============================================================================
# HTTP実装
# =============================================================================

class HttpFeedFetcher:
    """
    httpx による FeedFetcher 実装

    httpx.AsyncClient を共有してコネクションを再利用する。
    参照: https://www.python-httpx.org/async/

    使用例:
        async with HttpFeedFetcher() as fetcher:
            records = await fetcher.fetch_page(VELIB_REFERENCE_URL, offset=0, limit=100)
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        """
        Args:
            client: 既存のクライアント（テストでは MockTransport 付きを渡す）

        httpx.AsyncClient の設定:
        - timeout: connect=5秒, read=10秒
        - limits: 最大100接続, キープアライブ20接続

        参照: https://www.python-httpx.org/advanced/timeouts/
        """
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(connect=5.0, read=10.0, write=5.0, pool=10.0),
            limits=httpx.Limits(
                max_connections=100,
                max_keepalive_connections=20,
            ),
            headers={
                "User-Agent": "ParisVelibApi/1.0",
                "Accept": "application/json",
            },
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        """クライアントをクローズ（FastAPI の lifespan で呼び出す）"""
        await self._client.aclose()

    async def fetch_page(self, url: str, offset: int, limit: int) -> list[dict[str, Any]]:
        """
        1ページ分のレコードを取得

        Args:
            url: records エンドポイント
            offset: 先頭からのオフセット
            limit: 1ページの件数

        Returns:
            レスポンスの results 配列
        """
        logger.debug("GET %s offset=%d limit=%d", url, offset, limit)
        try:
            response = await self._client.get(url, params={"limit": limit, "offset": offset})
        except httpx.TimeoutException as e:
            raise UpstreamHTTPError(f"上流APIがタイムアウトしました: {e}", url) from e
        except httpx.HTTPError as e:
            raise UpstreamHTTPError(f"上流APIに接続できません: {e}", url) from e

        if response.status_code == 429:
            raise RateLimitedError(url, _parse_retry_after(response.headers.get("Retry-After")))
        if response.status_code >= 400:
            raise UpstreamHTTPError(
                f"上流APIエラー ({response.status_code}): {response.text[:200]}",
                url,
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise FeedParseError(f"JSONのデコードに失敗しました: {e}", context=url) from e

        results = payload.get("results") if isinstance(payload, dict) else None
        if not isinstance(results, list):
            raise FeedParseError("レスポンスに results 配列がありません", context=url)
        return results


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After ヘッダ（秒数形式のみ対応）"""
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None
