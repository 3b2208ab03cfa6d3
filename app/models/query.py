"""
app/models/query.py

検索・集計クエリの入出力モデル

5つの読み取り専用オペレーションの入出力を定義する:
- find_nearby_stations: 周辺ステーション検索
- get_station_by_code: ステーションコードで取得
- search_stations_by_name: 名称検索
- get_area_statistics: エリア統計
- plan_bike_journey: 移動プラン作成

数値の上限（半径、件数、検索語長）は app.services.station_query の定数で検証する。
モデル側で上限を持たせないのは、違反を専用のエラーコードで返すため。
"""
from typing import Optional
from pydantic import BaseModel, Field

from app.models.station import BikeTypeFilter, Coordinates, Station


# =============================================================================
# 共通
# =============================================================================

class GeographicBounds(BaseModel):
    """矩形範囲（北端・南端の緯度、東端・西端の経度）"""
    north: float = Field(..., examples=[48.87])
    south: float = Field(..., examples=[48.85])
    east: float = Field(..., examples=[2.36])
    west: float = Field(..., examples=[2.33])

    class Config:
        frozen = True


class AvailabilityFilter(BaseModel):
    """空き状況フィルタ"""
    min_bikes: Optional[int] = Field(default=None, ge=0)
    min_docks: Optional[int] = Field(default=None, ge=0)
    bike_type: Optional[BikeTypeFilter] = None
    exclude_out_of_service: bool = True


class StationWithDistance(BaseModel):
    """基準点からの距離付きステーション"""
    station: Station
    distance_meters: float


# =============================================================================
# 周辺検索
# =============================================================================

class FindNearbyStationsInput(BaseModel):
    latitude: float
    longitude: float
    radius_meters: float = 500
    limit: int = 10
    availability_filter: Optional[AvailabilityFilter] = None


class SearchMetadata(BaseModel):
    query_point: Coordinates
    radius_meters: float
    total_found: int
    search_time_ms: float
    realtime_available: bool


class FindNearbyStationsOutput(BaseModel):
    stations: list[StationWithDistance]
    search_metadata: SearchMetadata


# =============================================================================
# コード指定取得
# =============================================================================

class GetStationByCodeInput(BaseModel):
    station_code: str
    include_real_time: bool = True


class GetStationByCodeOutput(BaseModel):
    station: Optional[Station] = None
    found: bool


# =============================================================================
# 名称検索
# =============================================================================

class SearchStationsByNameInput(BaseModel):
    query: str
    limit: int = 10
    fuzzy: bool = True


class TextSearchMetadata(BaseModel):
    query: str
    total_found: int
    fuzzy_enabled: bool
    search_time_ms: float


class SearchStationsByNameOutput(BaseModel):
    stations: list[Station]
    search_metadata: TextSearchMetadata


# =============================================================================
# エリア統計
# =============================================================================

class GetAreaStatisticsInput(BaseModel):
    bounds: GeographicBounds
    include_real_time: bool = True


class AvailableBikesStats(BaseModel):
    mechanical: int
    electric: int
    total: int


class AreaStatistics(BaseModel):
    """
    エリア統計

    occupancy_rate = 利用可能台数の合計 / 収容台数の合計（収容台数0なら0）
    """
    total_stations: int
    operational_stations: int
    stations_with_realtime: int
    total_capacity: int
    available_bikes: AvailableBikesStats
    available_docks: int
    occupancy_rate: float


class GetAreaStatisticsOutput(BaseModel):
    area_stats: AreaStatistics
    bounds: GeographicBounds


# =============================================================================
# 移動プラン
# =============================================================================

class JourneyPreferences(BaseModel):
    bike_type: BikeTypeFilter = BikeTypeFilter.ANY
    max_walk_distance: float = 500
    min_docks: int = Field(default=1, ge=1)


class PlanBikeJourneyInput(BaseModel):
    origin: Coordinates
    destination: Coordinates
    preferences: Optional[JourneyPreferences] = None


class JourneyRecommendation(BaseModel):
    """
    推奨される借りる/返すステーションの組

    Attributes:
        walk_to_pickup: 出発地 → 借りるステーション（メートル）
        bike_distance: 借りるステーション → 返すステーション（直線距離、メートル）
        walk_from_dropoff: 返すステーション → 目的地（メートル）
        estimated_duration_seconds: 徒歩 + 自転車の所要時間の目安
        confidence_score: 推奨度 [0, 1]
    """
    pickup_station: Station
    dropoff_station: Station
    walk_to_pickup: float
    bike_distance: float
    walk_from_dropoff: float
    estimated_duration_seconds: float
    confidence_score: float = Field(..., ge=0.0, le=1.0)


class BikeJourney(BaseModel):
    pickup_stations: list[StationWithDistance]
    dropoff_stations: list[StationWithDistance]
    recommendations: list[JourneyRecommendation]


class PlanBikeJourneyOutput(BaseModel):
    journey: BikeJourney
    realtime_available: bool
