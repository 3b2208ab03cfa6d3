"""
app/services/geo.py

地理計算ユーティリティ

すべての空間クエリで使用する距離計算と範囲判定。

判定は2段階:
1. 対応エリアの矩形（イル＝ド＝フランス全域の粗い範囲）→ 外なら INVALID_COORDINATES
2. パリ市庁舎から半径 50km → 外なら OUTSIDE_SERVICE_AREA

矩形の四隅は市庁舎から 50km より遠いため、斜め方向では半径判定の方が厳しい。

参照:
- Haversine formula: https://en.wikipedia.org/wiki/Haversine_formula
"""
import math

from app.models.query import GeographicBounds
from app.models.station import Coordinates
from app.services.errors import InvalidCoordinatesError, OutsideServiceAreaError


# =============================================================================
# 定数定義
# =============================================================================

EARTH_RADIUS_METERS = 6_371_000

# サービスエリアの基準点（パリ市庁舎 Hôtel de Ville）
PARIS_CITY_HALL = Coordinates(latitude=48.8565, longitude=2.3514)
MAX_SERVICE_RADIUS_METERS = 50_000

# 対応エリアの矩形
METRO_BOUNDS = GeographicBounds(north=49.25, south=48.10, east=3.56, west=1.45)


# =============================================================================
# 距離・範囲判定
# =============================================================================

def haversine_distance(a: Coordinates, b: Coordinates) -> float:
    """
    2点間のHaversine距離（メートル）
    """
    phi1, phi2 = math.radians(a.latitude), math.radians(b.latitude)
    delta_phi = math.radians(b.latitude - a.latitude)
    delta_lambda = math.radians(b.longitude - a.longitude)

    h = (math.sin(delta_phi / 2) ** 2 +
         math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return EARTH_RADIUS_METERS * c


def is_in_bounds(point: Coordinates, bounds: GeographicBounds) -> bool:
    """矩形内か（境界を含む）"""
    return (bounds.south <= point.latitude <= bounds.north and
            bounds.west <= point.longitude <= bounds.east)


def is_plausible_region(point: Coordinates) -> bool:
    """座標として有効かつ対応エリアの矩形内か"""
    return point.is_valid() and is_in_bounds(point, METRO_BOUNDS)


def is_within_service_area(point: Coordinates) -> bool:
    """パリ市庁舎から MAX_SERVICE_RADIUS_METERS 以内か"""
    return haversine_distance(point, PARIS_CITY_HALL) <= MAX_SERVICE_RADIUS_METERS


def validate_query_point(point: Coordinates, field: str = "coordinates") -> None:
    """
    クエリ地点の検証

    Raises:
        InvalidCoordinatesError: 範囲外の値、または対応エリアの矩形外
        OutsideServiceAreaError: 矩形内だがサービスエリア半径の外
    """
    if not is_plausible_region(point):
        raise InvalidCoordinatesError(point.latitude, point.longitude, field=field)
    if not is_within_service_area(point):
        distance = haversine_distance(point, PARIS_CITY_HALL)
        raise OutsideServiceAreaError(distance / 1000, MAX_SERVICE_RADIUS_METERS / 1000, field=field)
