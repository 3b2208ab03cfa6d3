"""
app/routers/stations.py

Vélib' ステーションAPIエンドポイント

GET /api/stations/nearby            - 周辺ステーション検索
GET /api/stations/search            - 名称検索
GET /api/stations/area-statistics   - エリア統計
GET /api/stations/{code}            - ステーションコードで取得
GET /api/stations                   - 全ステーション
GET /api/journey                    - 移動プラン
GET /api/limits                     - 検索の上限値

エラーはすべて HTTP 200 + ApiResponse(success=False) で返す。
半径・件数などの上限はクエリパラメータ側では制限せず、
サービス層で検証して専用のエラーコードで返す。

公式ドキュメント:
- Paris Open Data: https://opendata.paris.fr/explore/dataset/velib-disponibilite-en-temps-reel/
"""
import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, Request

from app.models import (
    ApiResponse,
    AvailabilityFilter,
    BikeTypeFilter,
    Coordinates,
    FindNearbyStationsInput,
    FindNearbyStationsOutput,
    GeographicBounds,
    GetAreaStatisticsInput,
    GetAreaStatisticsOutput,
    GetStationByCodeInput,
    JourneyPreferences,
    PlanBikeJourneyInput,
    PlanBikeJourneyOutput,
    SearchStationsByNameInput,
    SearchStationsByNameOutput,
    Station,
    StationSnapshot,
    create_error_response,
    create_success_response,
)
from app.services.errors import StationNotFoundError, VelibError
from app.services.station_query import (
    JOURNEY_CANDIDATE_LIMIT,
    MAX_NAME_SEARCH_LIMIT,
    MAX_RECOMMENDATIONS,
    MAX_RESULT_LIMIT,
    MAX_SEARCH_RADIUS,
    MAX_WALK_DISTANCE,
    MIN_QUERY_LENGTH,
    StationQueryService,
)

logger = logging.getLogger(__name__)


# =============================================================================
# ルーター定義
# =============================================================================

router = APIRouter(prefix="/api", tags=["stations"])


# =============================================================================
# 依存性注入
# =============================================================================

def get_query_service(request: Request) -> StationQueryService:
    """StationQueryServiceの依存性注入"""
    return request.app.state.query_service


def _error_response(error: Exception) -> ApiResponse:
    if isinstance(error, VelibError):
        return create_error_response(error.code, error.message, error.details)
    logger.exception("Unexpected error in stations API")
    return create_error_response("INTERNAL_ERROR", f"内部エラー: {error}")


# =============================================================================
# エンドポイント
# =============================================================================

@router.get(
    "/stations/nearby",
    response_model=ApiResponse[FindNearbyStationsOutput],
    summary="周辺ステーション検索",
    description=f"""
指定地点から半径内のステーションを近い順に返す。

- `radius`: 半径（メートル、上限 {MAX_SEARCH_RADIUS}）
- `limit`: 最大件数（上限 {MAX_RESULT_LIMIT}）
- `minBikes` / `minDocks` / `bikeType`: 空き状況フィルタ
- `includeOutOfService`: 稼働停止中のステーションも含める
    """,
)
async def find_nearby_stations(
    lat: Annotated[float, Query(description="緯度", examples=[48.8566])],
    lon: Annotated[float, Query(description="経度", examples=[2.3522])],
    radius: Annotated[float, Query(description="半径（メートル）")] = 500,
    limit: Annotated[int, Query(description="最大件数")] = 10,
    minBikes: Annotated[Optional[int], Query(ge=0, description="最低空き台数")] = None,
    minDocks: Annotated[Optional[int], Query(ge=0, description="最低空きドック数")] = None,
    bikeType: Annotated[Optional[BikeTypeFilter], Query(description="自転車種別")] = None,
    includeOutOfService: Annotated[bool, Query(description="稼働停止中も含める")] = False,
    service: StationQueryService = Depends(get_query_service),
) -> ApiResponse[FindNearbyStationsOutput]:
    try:
        availability = None
        if minBikes is not None or minDocks is not None or bikeType is not None or includeOutOfService:
            availability = AvailabilityFilter(
                min_bikes=minBikes,
                min_docks=minDocks,
                bike_type=bikeType,
                exclude_out_of_service=not includeOutOfService,
            )
        result = await service.find_nearby_stations(FindNearbyStationsInput(
            latitude=lat,
            longitude=lon,
            radius_meters=radius,
            limit=limit,
            availability_filter=availability,
        ))
        return create_success_response(result)
    except Exception as e:
        return _error_response(e)


@router.get(
    "/stations/search",
    response_model=ApiResponse[SearchStationsByNameOutput],
    summary="ステーション名称検索",
    description=f"""
ステーション名で検索（大文字小文字を区別しない）。

- `q`: 検索語（{MIN_QUERY_LENGTH}文字以上）
- `fuzzy=true`: 部分一致 / `fuzzy=false`: 前方一致
- `limit`: 最大件数（上限 {MAX_NAME_SEARCH_LIMIT}）
    """,
)
async def search_stations(
    q: Annotated[str, Query(description="検索語", examples=["Bastille"])],
    limit: Annotated[int, Query(description="最大件数")] = 10,
    fuzzy: Annotated[bool, Query(description="部分一致で検索")] = True,
    service: StationQueryService = Depends(get_query_service),
) -> ApiResponse[SearchStationsByNameOutput]:
    try:
        result = await service.search_stations_by_name(
            SearchStationsByNameInput(query=q, limit=limit, fuzzy=fuzzy)
        )
        return create_success_response(result)
    except Exception as e:
        return _error_response(e)


@router.get(
    "/stations/area-statistics",
    response_model=ApiResponse[GetAreaStatisticsOutput],
    summary="エリア統計",
)
async def get_area_statistics(
    north: Annotated[float, Query(description="北端の緯度")],
    south: Annotated[float, Query(description="南端の緯度")],
    east: Annotated[float, Query(description="東端の経度")],
    west: Annotated[float, Query(description="西端の経度")],
    includeRealtime: Annotated[bool, Query(description="リアルタイム情報を集計する")] = True,
    service: StationQueryService = Depends(get_query_service),
) -> ApiResponse[GetAreaStatisticsOutput]:
    """矩形範囲内のステーション数・収容台数・空き状況・利用率"""
    try:
        result = await service.get_area_statistics(GetAreaStatisticsInput(
            bounds=GeographicBounds(north=north, south=south, east=east, west=west),
            include_real_time=includeRealtime,
        ))
        return create_success_response(result)
    except Exception as e:
        return _error_response(e)


@router.get(
    "/stations/{code}",
    response_model=ApiResponse[Station],
    summary="ステーション取得",
)
async def get_station(
    code: str,
    includeRealtime: Annotated[bool, Query(description="リアルタイム情報を含める")] = True,
    service: StationQueryService = Depends(get_query_service),
) -> ApiResponse[Station]:
    try:
        result = await service.get_station_by_code(
            GetStationByCodeInput(station_code=code, include_real_time=includeRealtime)
        )
        if not result.found:
            raise StationNotFoundError(code)
        return create_success_response(result.station)
    except Exception as e:
        return _error_response(e)


@router.get(
    "/stations",
    response_model=ApiResponse[StationSnapshot],
    summary="全ステーション取得",
)
async def get_all_stations(
    includeRealtime: Annotated[bool, Query(description="リアルタイム情報を含める")] = True,
    service: StationQueryService = Depends(get_query_service),
) -> ApiResponse[StationSnapshot]:
    """
    全ステーション取得

    reference_source / realtime_source でデータの出所（live / cache / stale_cache）を示す。
    """
    try:
        snapshot = await service.client.get_station_snapshot(include_realtime=includeRealtime)
        return create_success_response(snapshot)
    except Exception as e:
        return _error_response(e)


@router.get(
    "/journey",
    response_model=ApiResponse[PlanBikeJourneyOutput],
    summary="移動プラン作成",
    description=f"""
出発地・目的地の徒歩圏内から、借りるステーションと返すステーションの組を推奨する。

- `maxWalk`: 徒歩距離の上限（メートル、上限 {MAX_WALK_DISTANCE}）
- 候補は各 {JOURNEY_CANDIDATE_LIMIT} 件、推奨は最大 {MAX_RECOMMENDATIONS} 件
    """,
)
async def plan_journey(
    originLat: Annotated[float, Query(description="出発地の緯度")],
    originLon: Annotated[float, Query(description="出発地の経度")],
    destLat: Annotated[float, Query(description="目的地の緯度")],
    destLon: Annotated[float, Query(description="目的地の経度")],
    bikeType: Annotated[BikeTypeFilter, Query(description="自転車種別")] = BikeTypeFilter.ANY,
    maxWalk: Annotated[float, Query(description="徒歩距離の上限（メートル）")] = 500,
    minDocks: Annotated[int, Query(ge=1, description="返却先の最低空きドック数")] = 1,
    service: StationQueryService = Depends(get_query_service),
) -> ApiResponse[PlanBikeJourneyOutput]:
    try:
        result = await service.plan_bike_journey(PlanBikeJourneyInput(
            origin=Coordinates(latitude=originLat, longitude=originLon),
            destination=Coordinates(latitude=destLat, longitude=destLon),
            preferences=JourneyPreferences(
                bike_type=bikeType,
                max_walk_distance=maxWalk,
                min_docks=minDocks,
            ),
        ))
        return create_success_response(result)
    except Exception as e:
        return _error_response(e)


@router.get("/limits", summary="検索の上限値")
async def get_limits() -> ApiResponse[dict]:
    return create_success_response({
        "max_search_radius_meters": MAX_SEARCH_RADIUS,
        "max_result_limit": MAX_RESULT_LIMIT,
        "max_name_search_limit": MAX_NAME_SEARCH_LIMIT,
        "min_query_length": MIN_QUERY_LENGTH,
        "max_walk_distance_meters": MAX_WALK_DISTANCE,
        "journey_candidate_limit": JOURNEY_CANDIDATE_LIMIT,
        "max_recommendations": MAX_RECOMMENDATIONS,
    })
