"""
app/models/__init__.py

モデルパッケージ

すべてのモデルをこのパッケージからインポート可能にする。

使用例:
    from app.models import ApiResponse, Station, FindNearbyStationsInput
"""
from .common import (
    ApiResponse,
    ErrorDetail,
    create_success_response,
    create_error_response,
)
from .station import (
    MAX_STATION_CAPACITY,
    StationStatus,
    DataFreshness,
    BikeTypeFilter,
    DataSource,
    Coordinates,
    ServiceCapabilities,
    BikeAvailability,
    StationReference,
    RealTimeStatus,
    Station,
    StationSnapshot,
)
from .query import (
    GeographicBounds,
    AvailabilityFilter,
    StationWithDistance,
    FindNearbyStationsInput,
    SearchMetadata,
    FindNearbyStationsOutput,
    GetStationByCodeInput,
    GetStationByCodeOutput,
    SearchStationsByNameInput,
    TextSearchMetadata,
    SearchStationsByNameOutput,
    GetAreaStatisticsInput,
    AvailableBikesStats,
    AreaStatistics,
    GetAreaStatisticsOutput,
    JourneyPreferences,
    PlanBikeJourneyInput,
    JourneyRecommendation,
    BikeJourney,
    PlanBikeJourneyOutput,
)
__all__ = [
    # common
    "ApiResponse",
    "ErrorDetail",
    "create_success_response",
    "create_error_response",
    # station
    "MAX_STATION_CAPACITY",
    "StationStatus",
    "DataFreshness",
    "BikeTypeFilter",
    "DataSource",
    "Coordinates",
    "ServiceCapabilities",
    "BikeAvailability",
    "StationReference",
    "RealTimeStatus",
    "Station",
    "StationSnapshot",
    # query
    "GeographicBounds",
    "AvailabilityFilter",
    "StationWithDistance",
    "FindNearbyStationsInput",
    "SearchMetadata",
    "FindNearbyStationsOutput",
    "GetStationByCodeInput",
    "GetStationByCodeOutput",
    "SearchStationsByNameInput",
    "TextSearchMetadata",
    "SearchStationsByNameOutput",
    "GetAreaStatisticsInput",
    "AvailableBikesStats",
    "AreaStatistics",
    "GetAreaStatisticsOutput",
    "JourneyPreferences",
    "PlanBikeJourneyInput",
    "JourneyRecommendation",
    "BikeJourney",
    "PlanBikeJourneyOutput",
]
