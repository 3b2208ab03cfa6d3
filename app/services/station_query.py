"""
app/services/station_query.py

ステーション検索サービス

VelibClient が返す統合スナップショットに対する読み取り専用クエリ。
各オペレーションの処理順:
    入力検証 → スナップショット取得 → フィルタ・スコア計算 → ソート → 件数制限

入力検証で失敗した場合はデータ取得（上流API呼び出し）を行わない。
共有状態（キャッシュ）の変更は行わない。
"""
import logging
import time
from contextlib import contextmanager
from typing import Iterator, Optional

from app.models.query import (
    AreaStatistics,
    AvailabilityFilter,
    AvailableBikesStats,
    BikeJourney,
    FindNearbyStationsInput,
    FindNearbyStationsOutput,
    GeographicBounds,
    GetAreaStatisticsInput,
    GetAreaStatisticsOutput,
    GetStationByCodeInput,
    GetStationByCodeOutput,
    JourneyPreferences,
    JourneyRecommendation,
    PlanBikeJourneyInput,
    PlanBikeJourneyOutput,
    SearchMetadata,
    SearchStationsByNameInput,
    SearchStationsByNameOutput,
    StationWithDistance,
    TextSearchMetadata,
)
from app.models.station import BikeTypeFilter, Coordinates, Station
from app.services.errors import (
    InvalidCoordinatesError,
    QueryTooShortError,
    ResultLimitExceededError,
    SearchRadiusTooLargeError,
    ValidationError,
    VelibError,
)
from app.services.geo import haversine_distance, is_in_bounds, validate_query_point
from app.services.metrics import ErrorMetrics
from app.services.velib_client import VelibClient

logger = logging.getLogger(__name__)


# =============================================================================
# 定数定義
# =============================================================================

MAX_SEARCH_RADIUS = 5000        # メートル
MAX_RESULT_LIMIT = 100
MAX_NAME_SEARCH_LIMIT = 50
MIN_QUERY_LENGTH = 2
MAX_WALK_DISTANCE = 2000        # メートル
JOURNEY_CANDIDATE_LIMIT = 3
MAX_RECOMMENDATIONS = 3

WALK_SPEED = 1.4       # m/s（時速5km）
BICYCLE_SPEED = 4.17   # m/s（時速15km）

# 推奨度の重み（合計1.0）
WALK_WEIGHT = 0.6
BIKES_WEIGHT = 0.2
DOCKS_WEIGHT = 0.2
# この台数以上は推奨度に差をつけない
AVAILABILITY_CAP = 10


def calculate_confidence_score(
    walk_to_pickup: float,
    walk_from_dropoff: float,
    bikes_available: int,
    docks_available: int,
    max_walk_distance: float,
) -> float:
    """
    推奨度スコア [0, 1]

        walk  = 1 - (walk_to_pickup + walk_from_dropoff) / (2 * max_walk_distance)
        bikes = min(bikes_available, 10) / 10
        docks = min(docks_available, 10) / 10
        score = 0.6 * walk + 0.2 * bikes + 0.2 * docks

    徒歩距離が増えると単調に減少し、空き台数・空きドック数が増えると
    上限（10台）まで単調に増加する。
    """
    if max_walk_distance <= 0:
        return 0.0
    walk = 1.0 - (walk_to_pickup + walk_from_dropoff) / (2 * max_walk_distance)
    bikes = min(max(bikes_available, 0), AVAILABILITY_CAP) / AVAILABILITY_CAP
    docks = min(max(docks_available, 0), AVAILABILITY_CAP) / AVAILABILITY_CAP
    score = WALK_WEIGHT * walk + BIKES_WEIGHT * bikes + DOCKS_WEIGHT * docks
    return max(0.0, min(1.0, score))


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 3)


def _matches_filter(station: Station, availability: Optional[AvailabilityFilter]) -> bool:
    """周辺検索のフィルタ判定（フィルタ未指定時は稼働中のみ）"""
    if availability is None:
        return station.is_operational()

    if availability.exclude_out_of_service and not station.is_operational():
        return False

    bike_type = availability.bike_type or BikeTypeFilter.ANY
    if availability.min_bikes or bike_type != BikeTypeFilter.ANY:
        if not station.has_available_bikes(bike_type, availability.min_bikes or 1):
            return False

    if availability.min_docks and not station.has_available_docks(availability.min_docks):
        return False
    return True


# =============================================================================
# 検索サービス
# =============================================================================

class StationQueryService:
    """
    ステーション検索サービス

    Attributes:
        client: データ取得クライアント
    """

    def __init__(self, client: VelibClient, metrics: Optional[ErrorMetrics] = None):
        self.client = client
        self._metrics = metrics or ErrorMetrics()

    @contextmanager
    def _validating(self) -> Iterator[None]:
        """入力検証エラーをメトリクスに記録して再送出"""
        try:
            yield
        except VelibError as e:
            self._metrics.record(e)
            raise

    # =========================================================================
    # 周辺検索
    # =========================================================================

    async def find_nearby_stations(self, params: FindNearbyStationsInput) -> FindNearbyStationsOutput:
        """
        周辺ステーション検索

        半径内・稼働中・フィルタ条件を満たすステーションを距離の近い順に返す。
        同距離の場合はステーションコード順。

        Raises:
            SearchRadiusTooLargeError: radius_meters > MAX_SEARCH_RADIUS
            ResultLimitExceededError: limit > MAX_RESULT_LIMIT
            InvalidCoordinatesError / OutsideServiceAreaError: 検索地点が対象外
        """
        started = time.perf_counter()
        query_point = Coordinates(latitude=params.latitude, longitude=params.longitude)

        with self._validating():
            if params.radius_meters > MAX_SEARCH_RADIUS:
                raise SearchRadiusTooLargeError(params.radius_meters, MAX_SEARCH_RADIUS)
            if params.radius_meters <= 0:
                raise ValidationError(
                    f"検索半径は正の値を指定してください: {params.radius_meters}",
                    field="radius_meters",
                    value=params.radius_meters,
                    limit=MAX_SEARCH_RADIUS,
                )
            self._validate_limit(params.limit, MAX_RESULT_LIMIT)
            validate_query_point(query_point)

        snapshot = await self.client.get_station_snapshot(include_realtime=True)

        matches = []
        for station in snapshot.stations:
            distance = haversine_distance(query_point, station.reference.coordinates)
            if distance > params.radius_meters:
                continue
            if not _matches_filter(station, params.availability_filter):
                continue
            matches.append((distance, station))

        matches.sort(key=lambda item: (item[0], item[1].station_code))
        results = [
            StationWithDistance(station=station, distance_meters=round(distance, 1))
            for distance, station in matches[:params.limit]
        ]

        return FindNearbyStationsOutput(
            stations=results,
            search_metadata=SearchMetadata(
                query_point=query_point,
                radius_meters=params.radius_meters,
                total_found=len(results),
                search_time_ms=_elapsed_ms(started),
                realtime_available=snapshot.realtime_available,
            ),
        )

    # =========================================================================
    # コード指定取得
    # =========================================================================

    async def get_station_by_code(self, params: GetStationByCodeInput) -> GetStationByCodeOutput:
        """
        ステーションコードで取得

        存在しない場合はエラーではなく found=False を返す。

        Raises:
            CapacityInvariantError: 該当ステーションの台数が不整合な場合
        """
        station_code = params.station_code.strip()
        with self._validating():
            if not station_code:
                raise ValidationError("ステーションコードを指定してください", field="station_code", value=params.station_code)

        station = await self.client.get_station_by_code(station_code, params.include_real_time)
        return GetStationByCodeOutput(station=station, found=station is not None)

    # =========================================================================
    # 名称検索
    # =========================================================================

    async def search_stations_by_name(self, params: SearchStationsByNameInput) -> SearchStationsByNameOutput:
        """
        名称検索（大文字小文字を区別しない）

        - fuzzy=True: 部分一致
        - fuzzy=False: 前方一致

        並び順: 前方一致するものを先に、その中で名称順、同名はコード順。
        """
        started = time.perf_counter()
        query = params.query.strip()

        with self._validating():
            if len(query) < MIN_QUERY_LENGTH:
                raise QueryTooShortError(query, MIN_QUERY_LENGTH)
            self._validate_limit(params.limit, MAX_NAME_SEARCH_LIMIT)

        needle = query.casefold()
        stations = await self.client.get_all_stations(include_realtime=True)

        matches = []
        for station in stations:
            name = station.reference.name.casefold()
            is_prefix = name.startswith(needle)
            if is_prefix or (params.fuzzy and needle in name):
                matches.append((not is_prefix, name, station.station_code, station))

        matches.sort(key=lambda item: item[:3])
        results = [item[3] for item in matches[:params.limit]]

        return SearchStationsByNameOutput(
            stations=results,
            search_metadata=TextSearchMetadata(
                query=query,
                total_found=len(results),
                fuzzy_enabled=params.fuzzy,
                search_time_ms=_elapsed_ms(started),
            ),
        )

    # =========================================================================
    # エリア統計
    # =========================================================================

    async def get_area_statistics(self, params: GetAreaStatisticsInput) -> GetAreaStatisticsOutput:
        """
        矩形範囲内のステーション統計

        空き台数・空きドック数はリアルタイム情報のあるステーションのみ集計する。
        occupancy_rate = 利用可能台数 / 収容台数（収容台数0なら0）
        """
        bounds = params.bounds
        with self._validating():
            self._validate_bounds(bounds)

        stations = await self.client.get_all_stations(include_realtime=params.include_real_time)

        total_stations = 0
        operational = 0
        with_realtime = 0
        capacity = 0
        mechanical = 0
        electric = 0
        docks = 0
        for station in stations:
            if not is_in_bounds(station.reference.coordinates, bounds):
                continue
            total_stations += 1
            capacity += station.reference.capacity
            if station.is_operational():
                operational += 1
            if station.real_time is not None:
                with_realtime += 1
                mechanical += station.real_time.bikes.mechanical
                electric += station.real_time.bikes.electric
                docks += station.real_time.available_docks

        total_bikes = mechanical + electric
        occupancy_rate = total_bikes / capacity if capacity > 0 else 0.0

        return GetAreaStatisticsOutput(
            area_stats=AreaStatistics(
                total_stations=total_stations,
                operational_stations=operational,
                stations_with_realtime=with_realtime,
                total_capacity=capacity,
                available_bikes=AvailableBikesStats(
                    mechanical=mechanical,
                    electric=electric,
                    total=total_bikes,
                ),
                available_docks=docks,
                occupancy_rate=occupancy_rate,
            ),
            bounds=bounds,
        )

    # =========================================================================
    # 移動プラン
    # =========================================================================

    async def plan_bike_journey(self, params: PlanBikeJourneyInput) -> PlanBikeJourneyOutput:
        """
        移動プラン作成

        1. 出発地から徒歩圏内で自転車のあるステーション（近い順に最大3件）
        2. 目的地から徒歩圏内でドックの空いているステーション（近い順に最大3件）
        3. 同一ステーションを除く全組み合わせを推奨度順に最大3件
        """
        preferences = params.preferences or JourneyPreferences()

        with self._validating():
            if not 0 < preferences.max_walk_distance <= MAX_WALK_DISTANCE:
                raise ValidationError(
                    f"徒歩距離の上限が不正です: {preferences.max_walk_distance}m（上限 {MAX_WALK_DISTANCE}m）",
                    field="max_walk_distance",
                    value=preferences.max_walk_distance,
                    limit=MAX_WALK_DISTANCE,
                )
            validate_query_point(params.origin, field="origin")
            validate_query_point(params.destination, field="destination")

        snapshot = await self.client.get_station_snapshot(include_realtime=True)

        pickups = self._find_candidates(
            snapshot.stations,
            params.origin,
            preferences.max_walk_distance,
            lambda station: station.has_available_bikes(preferences.bike_type),
        )
        dropoffs = self._find_candidates(
            snapshot.stations,
            params.destination,
            preferences.max_walk_distance,
            lambda station: station.has_available_docks(preferences.min_docks),
        )

        recommendations = []
        for pickup in pickups:
            for dropoff in dropoffs:
                if pickup.station.station_code == dropoff.station.station_code:
                    continue
                recommendations.append(self._recommend(pickup, dropoff, preferences))

        recommendations.sort(key=lambda r: (
            -r.confidence_score,
            r.walk_to_pickup + r.walk_from_dropoff,
            r.pickup_station.station_code,
            r.dropoff_station.station_code,
        ))

        if not recommendations:
            logger.info(
                "No journey found (%d pickup / %d dropoff candidates)",
                len(pickups), len(dropoffs),
            )

        return PlanBikeJourneyOutput(
            journey=BikeJourney(
                pickup_stations=pickups,
                dropoff_stations=dropoffs,
                recommendations=recommendations[:MAX_RECOMMENDATIONS],
            ),
            realtime_available=snapshot.realtime_available,
        )

    # =========================================================================
    # ヘルパーメソッド
    # =========================================================================

    @staticmethod
    def _validate_limit(limit: int, maximum: int) -> None:
        if limit > maximum:
            raise ResultLimitExceededError(limit, maximum)
        if limit < 1:
            raise ValidationError(
                f"取得件数は1以上を指定してください: {limit}",
                field="limit",
                value=limit,
                limit=maximum,
            )

    @staticmethod
    def _validate_bounds(bounds: GeographicBounds) -> None:
        corners = (
            Coordinates(latitude=bounds.north, longitude=bounds.east),
            Coordinates(latitude=bounds.south, longitude=bounds.west),
        )
        for corner in corners:
            if not corner.is_valid():
                raise InvalidCoordinatesError(corner.latitude, corner.longitude, field="bounds")
        if bounds.south > bounds.north or bounds.west > bounds.east:
            raise ValidationError(
                "範囲指定が不正です（south <= north, west <= east）",
                field="bounds",
                value=bounds.model_dump(),
            )

    @staticmethod
    def _find_candidates(
        stations: list[Station],
        point: Coordinates,
        max_distance: float,
        predicate,
    ) -> list[StationWithDistance]:
        """徒歩圏内・稼働中・条件を満たすステーションを近い順に"""
        candidates = []
        for station in stations:
            if not station.is_operational() or not predicate(station):
                continue
            distance = haversine_distance(point, station.reference.coordinates)
            if distance <= max_distance:
                candidates.append((distance, station))

        candidates.sort(key=lambda item: (item[0], item[1].station_code))
        return [
            StationWithDistance(station=station, distance_meters=round(distance, 1))
            for distance, station in candidates[:JOURNEY_CANDIDATE_LIMIT]
        ]

    @staticmethod
    def _recommend(
        pickup: StationWithDistance,
        dropoff: StationWithDistance,
        preferences: JourneyPreferences,
    ) -> JourneyRecommendation:
        bike_distance = haversine_distance(
            pickup.station.reference.coordinates,
            dropoff.station.reference.coordinates,
        )
        walk_distance = pickup.distance_meters + dropoff.distance_meters
        # 候補はリアルタイム情報ありのステーションに限られる
        bikes = pickup.station.real_time.bikes.count(preferences.bike_type)
        docks = dropoff.station.real_time.available_docks

        return JourneyRecommendation(
            pickup_station=pickup.station,
            dropoff_station=dropoff.station,
            walk_to_pickup=pickup.distance_meters,
            bike_distance=round(bike_distance, 1),
            walk_from_dropoff=dropoff.distance_meters,
            estimated_duration_seconds=round(walk_distance / WALK_SPEED + bike_distance / BICYCLE_SPEED, 1),
            confidence_score=calculate_confidence_score(
                pickup.distance_meters,
                dropoff.distance_meters,
                bikes,
                docks,
                preferences.max_walk_distance,
            ),
        )
