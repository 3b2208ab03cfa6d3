"""
app/services/velib_client.py

Vélib' データ集約クライアント

パリ市オープンデータの2つのフィードを取得・キャッシュし、
ステーションコードで統合した Station のリストを提供する。

- 静的情報（velib-emplacement-des-stations）: 長めのTTL（デフォルト30分）
- リアルタイム（velib-disponibilite-en-temps-reel）: 短いTTL（デフォルト2分）

2つのフィードは上流での更新間隔が異なるため、キャッシュは独立して持つ。

取得失敗時の方針:
- 各ページの取得は RetryPolicy（と任意の CircuitBreaker）を経由する
- 取得に失敗したら最後に成功したデータを期限切れでも返す（stale fallback）
- 一度も取得できていなければ CacheUnavailableError
- リアルタイムの失敗は致命的にせず、静的情報のみで応答する

公式ドキュメント:
- Explore API v2.1: https://help.opendatasoft.com/apis/ods-explore-v2/
- asyncio.Lock: https://docs.python.org/3/library/asyncio-sync.html#asyncio.Lock
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Generic, Optional, TypeVar

import pydantic

from app.models.station import (
    BikeAvailability,
    Coordinates,
    DataSource,
    RealTimeStatus,
    ServiceCapabilities,
    Station,
    StationReference,
    StationSnapshot,
    StationStatus,
)
from app.services.cache import TTLCache
from app.services.errors import CacheUnavailableError, CapacityInvariantError, VelibError
from app.services.feed_fetcher import VELIB_REALTIME_URL, VELIB_REFERENCE_URL, FeedFetcher
from app.services.geo import is_plausible_region
from app.services.metrics import ErrorMetrics
from app.services.retry import CircuitBreaker, RetryPolicy

logger = logging.getLogger(__name__)

V = TypeVar("V")


# =============================================================================
# 定数定義
# =============================================================================

REFERENCE_CACHE_TTL = timedelta(minutes=30)
REALTIME_CACHE_TTL = timedelta(minutes=2)

# Explore API の1リクエストあたり最大件数
PAGE_SIZE = 100

# ページングの安全上限（空ページを返さない上流への対策）
MAX_PAGINATION_OFFSET = 10_000


# =============================================================================
# レコードのパース
# =============================================================================

_TRUE_VALUES = {"OUI", "YES", "TRUE", "1"}
_FALSE_VALUES = {"NON", "NO", "FALSE", "0"}


def _parse_flag(value: Any) -> Optional[bool]:
    """'OUI' / 'NON' 形式のフラグ。解釈できなければ None"""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().upper()
        if normalized in _TRUE_VALUES:
            return True
        if normalized in _FALSE_VALUES:
            return False
    return None


def _parse_code(value: Any) -> str:
    """ステーションコード（数値で届くこともある）"""
    if value is None or isinstance(value, (bool, dict, list)):
        raise TypeError(f"invalid station code: {value!r}")
    return str(value).strip()


def _parse_timestamp(value: Any, now: datetime) -> datetime:
    """ISO 8601 の更新時刻。解釈できなければ現在時刻"""
    if isinstance(value, str):
        # fromisoformat は 3.10 では末尾の "Z" を受け付けない
        if value.endswith(("Z", "z")):
            value = value[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return now
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return now


def parse_reference_record(record: dict[str, Any]) -> Optional[StationReference]:
    """
    静的情報レコードをパース

    必須フィールドの欠落・不正値・対応エリア外の座標は None（そのレコードのみ破棄）。

    レコード例:
        {"stationcode": "16107", "name": "Benjamin Godard - Victor Hugo",
         "capacity": 35, "coordonnees_geo": {"lat": 48.8659, "lon": 2.2753}}
    """
    try:
        geo = record["coordonnees_geo"]
        reference = StationReference(
            station_code=_parse_code(record["stationcode"]),
            name=record["name"],
            coordinates=Coordinates(latitude=geo["lat"], longitude=geo["lon"]),
            capacity=record["capacity"],
            capabilities=ServiceCapabilities(
                accepts_credit_card=bool(_parse_flag(record.get("credit_card"))),
                has_charging_station=bool(_parse_flag(record.get("charging_station"))),
                is_virtual_station=bool(_parse_flag(record.get("virtual_station"))),
            ),
        )
    except (KeyError, TypeError, pydantic.ValidationError):
        return None

    if not reference.name.strip() or not is_plausible_region(reference.coordinates):
        return None
    return reference


def parse_realtime_record(record: dict[str, Any], now: Optional[datetime] = None) -> Optional[RealTimeStatus]:
    """
    リアルタイムレコードをパース

    レコード例:
        {"stationcode": "16107", "numdocksavailable": 20, "mechanical": 8, "ebike": 4,
         "is_installed": "OUI", "is_renting": "OUI", "is_returning": "OUI",
         "duedate": "2024-05-01T10:15:00+00:00"}
    """
    now = now or datetime.now(timezone.utc)
    try:
        station_code = _parse_code(record["stationcode"])
        docks = record["numdocksavailable"]
        installed = _parse_flag(record["is_installed"])
        renting = _parse_flag(record["is_renting"])
        returning = _parse_flag(record["is_returning"])
    except (KeyError, TypeError):
        return None

    if not station_code or docks is None or None in (installed, renting, returning):
        return None

    if not installed:
        status = StationStatus.OUT_OF_SERVICE
    elif renting and returning:
        status = StationStatus.OPERATIONAL
    elif renting or returning:
        status = StationStatus.INSTALLED
    else:
        status = StationStatus.MAINTENANCE

    try:
        return RealTimeStatus.create(
            station_code=station_code,
            bikes=BikeAvailability(
                mechanical=record.get("mechanical") or 0,
                electric=record.get("ebike") or 0,
            ),
            available_docks=docks,
            status=status,
            renting_enabled=renting,
            returning_enabled=returning,
            last_updated=_parse_timestamp(record.get("duedate"), now),
            now=now,
        )
    except (TypeError, pydantic.ValidationError):
        return None


# =============================================================================
# フィード
# =============================================================================

@dataclass
class _Feed(Generic[V]):
    """1つのフィードのキャッシュと取得状態"""
    name: str
    url: str
    cache: TTLCache[str, V]
    parse: Callable[[dict[str, Any]], Optional[V]]
    key: Callable[[V], str]
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    # 最後に取得に成功した時点のキャッシュ期限（0件の取得結果も有効なキャッシュとして扱う）
    fresh_until: Optional[float] = None
    last_good: Optional[dict[str, V]] = None


# =============================================================================
# 集約クライアント
# =============================================================================

class VelibClient:
    """
    Vélib' データ集約クライアント

    キャッシュ（TTLCache x2）とサーキットブレーカーの状態はこのクラスが所有し、
    クエリ側は返されたスナップショットを読むだけ。

    Attributes:
        page_size (int): 1ページの件数
        max_offset (int): ページングの安全上限

    使用例:
        async with HttpFeedFetcher() as fetcher:
            client = VelibClient(fetcher)
            stations = await client.get_all_stations(include_realtime=True)
    """

    def __init__(
        self,
        fetcher: FeedFetcher,
        retry_policy: Optional[RetryPolicy] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        metrics: Optional[ErrorMetrics] = None,
        reference_url: str = VELIB_REFERENCE_URL,
        realtime_url: str = VELIB_REALTIME_URL,
        reference_ttl: timedelta = REFERENCE_CACHE_TTL,
        realtime_ttl: timedelta = REALTIME_CACHE_TTL,
        page_size: int = PAGE_SIZE,
        max_offset: int = MAX_PAGINATION_OFFSET,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetcher = fetcher
        self._metrics = metrics or ErrorMetrics()
        self._retry = retry_policy or RetryPolicy(metrics=self._metrics)
        self._breaker = circuit_breaker
        self._clock = clock
        self.page_size = page_size
        self.max_offset = max_offset

        self._reference: _Feed[StationReference] = _Feed(
            name="reference",
            url=reference_url,
            cache=TTLCache(reference_ttl, clock),
            parse=parse_reference_record,
            key=lambda ref: ref.station_code,
        )
        self._realtime: _Feed[RealTimeStatus] = _Feed(
            name="realtime",
            url=realtime_url,
            cache=TTLCache(realtime_ttl, clock),
            parse=parse_realtime_record,
            key=lambda status: status.station_code,
        )

    # =========================================================================
    # 取得
    # =========================================================================

    async def _fetch_page(self, feed: _Feed, offset: int) -> list[dict[str, Any]]:
        """1ページ取得（リトライ・サーキットブレーカー経由）"""
        return await self._retry.execute(
            lambda: self._fetcher.fetch_page(feed.url, offset, self.page_size),
            operation_name=f"{feed.name} fetch (offset={offset})",
            circuit_breaker=self._breaker,
        )

    async def _fetch_all(self, feed: _Feed) -> list[dict[str, Any]]:
        """
        全ページ取得

        件数が page_size 未満のページ（空ページを含む）で終了。
        offset が max_offset に達したら打ち切る。
        """
        records: list[dict[str, Any]] = []
        offset = 0
        while True:
            page = await self._fetch_page(feed, offset)
            records.extend(page)
            if len(page) < self.page_size:
                break
            offset += self.page_size
            if offset >= self.max_offset:
                logger.warning(
                    "Hit pagination safety limit for %s feed at offset %d (%d records)",
                    feed.name, offset, len(records),
                )
                break
        return records

    def _parse_all(self, feed: _Feed[V], records: list[dict[str, Any]]) -> dict[str, V]:
        parsed: dict[str, V] = {}
        dropped = 0
        for record in records:
            item = feed.parse(record) if isinstance(record, dict) else None
            if item is None:
                dropped += 1
                continue
            parsed[feed.key(item)] = item
        if dropped:
            logger.warning("Dropped %d malformed %s records", dropped, feed.name)
        return parsed

    def _cached(self, feed: _Feed[V]) -> Optional[dict[str, V]]:
        """有効期限内に取得済みならキャッシュの内容（0件もありうる）、未取得・期限切れなら None"""
        if feed.fresh_until is None or self._clock() >= feed.fresh_until:
            return None
        return feed.cache.snapshot()

    async def _load(self, feed: _Feed[V]) -> tuple[dict[str, V], DataSource]:
        """
        フィードのデータを取得（キャッシュ → 上流 → 期限切れキャッシュ の順）

        同じフィードの同時リフレッシュは1件にまとめる。
        """
        cached = self._cached(feed)
        if cached is not None:
            return cached, DataSource.CACHE

        async with feed.lock:
            # 待機中に他のリクエストが更新済みの場合
            cached = self._cached(feed)
            if cached is not None:
                return cached, DataSource.CACHE

            logger.info("Fetching %s stations from API", feed.name)
            try:
                records = await self._fetch_all(feed)
            except VelibError as e:
                if feed.last_good is not None:
                    logger.warning(
                        "Fetching %s feed failed (%s), serving %d stale entries",
                        feed.name, e.code, len(feed.last_good),
                    )
                    return dict(feed.last_good), DataSource.STALE_CACHE
                unavailable = CacheUnavailableError(feed.name)
                self._metrics.record(unavailable)
                raise unavailable from e

            parsed = self._parse_all(feed, records)
            feed.fresh_until = self._clock() + feed.cache.default_ttl.total_seconds()
            feed.cache.replace_all(parsed)
            feed.last_good = parsed
            logger.info("Fetched %d %s records", len(parsed), feed.name)
            return dict(parsed), DataSource.LIVE

    async def _load_realtime_soft(self) -> tuple[dict[str, RealTimeStatus], DataSource, Optional[str]]:
        """リアルタイム取得。失敗しても例外にせず UNAVAILABLE を返す"""
        try:
            realtime, source = await self._load(self._realtime)
        except VelibError as e:
            logger.warning("Real-time data unavailable, serving reference data only: %s", e)
            return {}, DataSource.UNAVAILABLE, e.code
        return realtime, source, None

    # =========================================================================
    # 統合
    # =========================================================================

    def _merge(
        self,
        references: dict[str, StationReference],
        realtime: dict[str, RealTimeStatus],
    ) -> list[Station]:
        """
        静的情報にリアルタイム情報を結合

        台数の整合性に違反するステーションは結果から除外する。
        """
        stations: list[Station] = []
        dropped = 0
        for code in sorted(references):
            station = Station(reference=references[code], real_time=realtime.get(code))
            try:
                station.validate_capacity()
            except CapacityInvariantError as e:
                dropped += 1
                self._metrics.record(e)
                logger.debug("Dropping station: %s", e)
                continue
            stations.append(station)
        if dropped:
            logger.warning("Dropped %d stations violating capacity invariant", dropped)
        return stations

    # =========================================================================
    # 公開API
    # =========================================================================

    async def get_station_snapshot(self, include_realtime: bool = True) -> StationSnapshot:
        """
        統合ステーションのスナップショットを取得

        Args:
            include_realtime: リアルタイム情報を結合するか

        Returns:
            StationSnapshot: ステーションと各フィードの出所

        Raises:
            CacheUnavailableError: 静的情報を取得できず、キャッシュもない場合
        """
        references, reference_source = await self._load(self._reference)
        if not include_realtime:
            return StationSnapshot(
                stations=self._merge(references, {}),
                reference_source=reference_source,
            )

        realtime, realtime_source, realtime_error = await self._load_realtime_soft()
        return StationSnapshot(
            stations=self._merge(references, realtime),
            reference_source=reference_source,
            realtime_source=realtime_source,
            realtime_error=realtime_error,
        )

    async def get_all_stations(self, include_realtime: bool = True) -> list[Station]:
        snapshot = await self.get_station_snapshot(include_realtime)
        return snapshot.stations

    async def get_station_by_code(self, station_code: str, include_realtime: bool = True) -> Optional[Station]:
        """
        ステーションコードで取得

        Returns:
            Station、存在しなければ None

        Raises:
            CapacityInvariantError: 該当ステーションの台数が不整合な場合
        """
        references, _ = await self._load(self._reference)
        reference = references.get(station_code)
        if reference is None:
            return None

        station = Station(reference=reference)
        if include_realtime:
            realtime, _, _ = await self._load_realtime_soft()
            status = realtime.get(station_code)
            if status is not None:
                station = station.with_real_time(status)

        try:
            station.validate_capacity()
        except CapacityInvariantError as e:
            self._metrics.record(e)
            raise
        return station

    async def fetch_reference_stations(self) -> dict[str, StationReference]:
        references, _ = await self._load(self._reference)
        return references

    async def fetch_realtime_status(self) -> dict[str, RealTimeStatus]:
        realtime, _ = await self._load(self._realtime)
        return realtime

    async def test_connectivity(self) -> DataSource:
        """
        ヘルスチェック用の疎通確認（静的情報のみ、リアルタイムは取得しない）

        Returns:
            静的情報の出所（STALE_CACHE なら上流に到達できていない）
        """
        _, source = await self._load(self._reference)
        return source

    # =========================================================================
    # メンテナンス
    # =========================================================================

    def cache_stats(self) -> tuple[int, int]:
        """(静的情報のエントリ数, リアルタイムのエントリ数)"""
        return self._reference.cache.size(), self._realtime.cache.size()

    def cleanup_cache(self) -> tuple[int, int]:
        """期限切れエントリを削除し、削除数を返す"""
        removed = (self._reference.cache.cleanup_expired(), self._realtime.cache.cleanup_expired())
        if any(removed):
            logger.debug("Cache cleanup removed %d reference / %d realtime entries", *removed)
        return removed

    @property
    def metrics(self) -> ErrorMetrics:
        return self._metrics
